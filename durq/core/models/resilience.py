# durq/core/models/resilience.py
from __future__ import annotations

from typing import Annotated, Self
from pydantic import BaseModel, Field, model_validator
from durq.core.errors import ConfigurationError, ErrorCode, ValidationReport, raise_collected


class WorkerResilienceConfig(BaseModel):
    """
    Backoff applied by the worker loop (and CLI schema setup) when the store
    reports a retryable infrastructure error: database unreachable, pool
    timeout, serialization failure.

    Unrelated to the per-item failure backoff; this only keeps a worker from
    hammering a database that is down.
    """

    db_retry_initial_ms: Annotated[int, Field(ge=100, le=60_000)] = Field(
        default=500,
        description='First delay after a transient store error, in ms',
    )
    db_retry_max_ms: Annotated[int, Field(ge=500, le=300_000)] = Field(
        default=30_000,
        description='Ceiling for the doubling delay, in ms',
    )
    db_retry_max_attempts: Annotated[int, Field(ge=0, le=10_000)] = Field(
        default=0,
        description='Consecutive transient errors tolerated before giving up; 0 retries forever',
    )

    @model_validator(mode='after')
    def validate_backoff(self) -> Self:
        report = ValidationReport('resilience')
        if self.db_retry_max_ms < self.db_retry_initial_ms:
            report.add(
                ConfigurationError(
                    message='db_retry_max_ms is below db_retry_initial_ms',
                    code=ErrorCode.CONFIG_INVALID_RESILIENCE,
                    notes=[
                        f'db_retry_initial_ms={self.db_retry_initial_ms}ms',
                        f'db_retry_max_ms={self.db_retry_max_ms}ms',
                    ],
                    help_text='the ceiling must be at least the first delay',
                )
            )

        raise_collected(report)
        return self
