# durq/core/models/app.py
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict
from durq.core.models.broker import PostgresConfig
from durq.core.models.queue_config import QueueConfig
from durq.core.models.resilience import WorkerResilienceConfig
from durq.core.worker.config import WorkerConfig
from durq.core.utils.url import mask_database_url
import logging


class AppConfig(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    broker: PostgresConfig
    queue: QueueConfig = Field(default_factory=QueueConfig)
    # Defaults for workers created by the app; the CLI may override per process.
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    resilience: WorkerResilienceConfig = Field(
        default_factory=WorkerResilienceConfig
    )

    def log_config(self, logger: Optional[logging.Logger] = None) -> None:
        """
        Log the AppConfig in a human-readable format.
        Masks sensitive data like database passwords.

        Args:
            logger: Logger instance to use. If None, uses root logger.
        """
        if logger is None:
            logger = logging.getLogger()

        formatted = self._format_for_logging()
        logger.info('AppConfig:\n%s', formatted)

    def _format_for_logging(self) -> str:
        lines: list[str] = []

        masked_url = mask_database_url(self.broker.database_url)
        lines.append('  broker:')
        lines.append(f'    database_url: {masked_url}')
        lines.append(f'    pool_size: {self.broker.pool_size}')
        lines.append(f'    max_overflow: {self.broker.max_overflow}')

        lines.append('  queue:')
        lines.append(f'    table_name: {self.queue.table_name}')
        lines.append(f'    default_max_retries: {self.queue.default_max_retries}')
        lines.append(
            f'    default_visibility_timeout: {self.queue.default_visibility_timeout_secs}s'
        )

        lines.append('  worker:')
        lines.append(f'    poll_interval: {self.worker.poll_interval_ms}ms')
        lines.append(
            f'    backoff: base={self.worker.backoff_base}, max={self.worker.max_backoff_seconds}s'
        )
        lines.append(f'    enabled: {self.worker.enabled}')

        lines.append('  resilience:')
        lines.append(
            f'    db_retry_initial_ms: {self.resilience.db_retry_initial_ms}ms'
        )
        lines.append(f'    db_retry_max_ms: {self.resilience.db_retry_max_ms}ms')
        max_attempts = self.resilience.db_retry_max_attempts
        lines.append(
            f'    db_retry_max_attempts: {max_attempts if max_attempts else "infinite"}'
        )

        return '\n'.join(lines)
