# durq/core/models/queue_config.py
from __future__ import annotations
from typing import Self
from pydantic import BaseModel, ConfigDict, Field, model_validator
from durq.core.defaults import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_QUEUE_TABLE,
    DEFAULT_VISIBILITY_TIMEOUT_SECS,
)
from durq.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)
from durq.core.utils.db import is_valid_identifier


class QueueConfig(BaseModel):
    """
    Which table a store operates on, and the per-item defaults applied at enqueue.

    One engine serves any number of queues: each queue is a table with the same
    schema, selected by table_name (e.g. 'durq_queue' and 'durq_event_queue').

    Fields:
    - table_name: lowercase SQL identifier of the queue table
    - default_max_retries: max_retries used when enqueue() omits it
    - default_visibility_timeout_secs: lease length used when enqueue() omits it
    """

    model_config = ConfigDict(frozen=True)

    table_name: str = DEFAULT_QUEUE_TABLE
    default_max_retries: int = Field(default=DEFAULT_MAX_RETRIES)
    default_visibility_timeout_secs: int = Field(default=DEFAULT_VISIBILITY_TIMEOUT_SECS)

    @model_validator(mode='after')
    def validate_queue(self) -> Self:
        report = ValidationReport('queue')

        if not is_valid_identifier(self.table_name):
            report.add(
                ConfigurationError(
                    message='invalid queue table name',
                    code=ErrorCode.CONFIG_INVALID_TABLE_NAME,
                    notes=[f'got table_name={self.table_name!r}'],
                    help_text='use a lowercase identifier of at most 63 characters: [a-z_][a-z0-9_]*',
                )
            )

        if self.default_max_retries < 0:
            report.add(
                ConfigurationError(
                    message='default_max_retries must be non-negative',
                    code=ErrorCode.CONFIG_INVALID_QUEUE_DEFAULTS,
                    notes=[f'got default_max_retries={self.default_max_retries}'],
                    help_text='use 0 to dead-letter on the first failure',
                )
            )

        if self.default_visibility_timeout_secs <= 0:
            report.add(
                ConfigurationError(
                    message='default_visibility_timeout_secs must be positive',
                    code=ErrorCode.CONFIG_INVALID_QUEUE_DEFAULTS,
                    notes=[
                        f'got default_visibility_timeout_secs={self.default_visibility_timeout_secs}',
                    ],
                    help_text='set it longer than the slowest handler is expected to run',
                )
            )

        raise_collected(report)
        return self
