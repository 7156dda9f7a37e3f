# durq/core/app.py
from typing import Any, Callable, Mapping, Optional, TypeVar
from datetime import datetime
import importlib
import inspect
import os
import uuid
from durq.core.models.app import AppConfig
from durq.core.models.queue_config import QueueConfig
from durq.core.logging import get_logger
from durq.core.registry.handlers import HandlerRegistry, handler_source
from durq.core.store.postgres import PostgresQueueStore
from durq.core.store.result_types import StoreResult
from durq.core.types.result import is_err
from durq.core.worker.config import WorkerConfig
from durq.core.worker.worker import QueueWorker
from durq.core.errors import (
    ConfigurationError,
    DurqError,
    MultipleValidationErrors,
    RegistryError,
    ErrorCode,
    SourceLocation,
)
from durq.core.utils.imports import import_by_path

_E = TypeVar('_E', bound=DurqError)
_F = TypeVar('_F', bound=Callable[..., Any])


def _no_location(error: _E) -> _E:
    """Strip the auto-detected source location from a programmatic error.

    Used for errors created inside durq internals where the auto-detected
    frame (e.g., CLI entry point) is misleading.
    """
    error.location = None
    return error


def _accepts_single_item(fn: Callable[..., Any]) -> bool:
    try:
        inspect.signature(fn).bind(object())
    except TypeError:
        return False
    except ValueError:
        # Builtins without a retrievable signature.
        return True
    return True


class Durq:
    """
    Configuration-driven queue app: owns the store, the handler registry and
    the defaults for workers.
    """

    def __init__(self, config: AppConfig):
        self.config = config
        self.handlers = HandlerRegistry()
        self.logger = get_logger('app')
        self._store: Optional[PostgresQueueStore] = None
        self._extra_stores: dict[str, PostgresQueueStore] = {}
        self._discovered_handler_modules: list[str] = []

        self.logger.info(f'durq initialized for table {config.queue.table_name}')

    # -------- handlers --------

    def handler(self, item_type: str) -> Callable[[_F], _F]:
        """
        Decorator registering a function as the handler for `item_type`.

        The handler receives the claimed QueueItem; returning means success,
        raising means failure. Both plain and async functions are accepted.
        """

        def decorator(fn: _F) -> _F:
            if not _accepts_single_item(fn):
                raise RegistryError(
                    message=f"handler for '{item_type}' must accept one argument (the item)",
                    code=ErrorCode.HANDLER_INVALID,
                    location=SourceLocation.from_function(fn),
                    notes=[f'{getattr(fn, "__qualname__", fn)!s} has signature {inspect.signature(fn)}'],
                    help_text='define it as `def handle(item: QueueItem) -> None`',
                )
            self.handlers.register(fn, item_type=item_type, source=handler_source(fn))
            return fn

        return decorator

    def list_handlers(self) -> list[str]:
        """Item types with a registered handler"""
        return self.handlers.keys_list()

    def discover_handlers(self, modules: list[str]) -> None:
        """
        Record handler modules (dotted paths or .py files) for later import.

        Nothing is imported here; see import_handler_modules() and check().
        """
        if self._discovered_handler_modules:
            self.logger.warning(
                f'discover_handlers() called again, replacing '
                f'{len(self._discovered_handler_modules)} previously registered module(s)'
            )
        self._discovered_handler_modules = list(modules)
        if modules:
            self.logger.info(f'Registered {len(modules)} handler module(s) for discovery')

    def get_discovered_handler_modules(self) -> list[str]:
        return self._discovered_handler_modules.copy()

    def import_handler_modules(self, modules: Optional[list[str]] = None) -> list[str]:
        """Import handler modules so their @app.handler decorators run.

        Returns the list of module identifiers that were imported.
        """
        to_import = self._discovered_handler_modules if modules is None else modules
        imported: list[str] = []
        for module in to_import:
            if module.endswith('.py') or os.path.sep in module:
                abs_path = os.path.realpath(module)
                if not os.path.exists(abs_path):
                    self.logger.warning(f'Handler module not found: {module}')
                    continue
                import_by_path(abs_path)
                imported.append(abs_path)
            else:
                importlib.import_module(module)
                imported.append(module)
        return imported

    # -------- store --------

    def get_store(self) -> PostgresQueueStore:
        """Get the store for the configured queue table (created on first use)."""
        if self._store is None:
            self._store = PostgresQueueStore(self.config.broker, self.config.queue)
        return self._store

    @property
    def store(self) -> PostgresQueueStore:
        return self.get_store()

    def get_queue_store(self, queue: QueueConfig) -> PostgresQueueStore:
        """
        Store for another queue table on the same database.

        Shares the primary store's engine and sync loop runner, so both
        queues draw from one connection pool bound to one event loop.
        """
        primary = self.get_store()
        if queue.table_name == primary.table_name:
            return primary
        store = self._extra_stores.get(queue.table_name)
        if store is None:
            store = PostgresQueueStore(
                self.config.broker,
                queue,
                engine=primary.async_engine,
                loop_runner=primary._loop_runner,
            )
            self._extra_stores[queue.table_name] = store
        return store

    async def enqueue_async(
        self,
        item_type: str,
        payload: Mapping[str, Any],
        *,
        item_id: Optional[str] = None,
        max_retries: Optional[int] = None,
        visibility_timeout_secs: Optional[int] = None,
        visible_at: Optional[datetime] = None,
    ) -> StoreResult[str]:
        """Enqueue on the primary queue; a uuid4 id is generated when omitted."""
        return await self.get_store().enqueue_async(
            item_id or str(uuid.uuid4()),
            item_type,
            payload,
            max_retries=max_retries,
            visibility_timeout_secs=visibility_timeout_secs,
            visible_at=visible_at,
        )

    def enqueue(
        self,
        item_type: str,
        payload: Mapping[str, Any],
        *,
        item_id: Optional[str] = None,
        max_retries: Optional[int] = None,
        visibility_timeout_secs: Optional[int] = None,
        visible_at: Optional[datetime] = None,
    ) -> StoreResult[str]:
        """Synchronous wrapper for enqueue_async()."""
        return self.get_store().enqueue(
            item_id or str(uuid.uuid4()),
            item_type,
            payload,
            max_retries=max_retries,
            visibility_timeout_secs=visibility_timeout_secs,
            visible_at=visible_at,
        )

    def create_worker(
        self,
        worker_config: Optional[WorkerConfig] = None,
        *,
        store: Optional[PostgresQueueStore] = None,
    ) -> QueueWorker:
        """Worker over the primary queue (or `store`) using this app's handlers."""
        return QueueWorker(
            store or self.get_store(),
            self.handlers,
            worker_config or self.config.worker,
            self.config.resilience,
        )

    # -------- validation --------

    def check(self, *, live: bool = False) -> list[DurqError]:
        """Run phased validation and return all errors found.

        Phase 1: Config, already validated at construction.
        Phase 2: Handler module imports.
        Phase 3: At least one handler registered.
        Phase 4 (if live): Database connectivity via SELECT 1.

        Returns:
            Empty list when all validations passed.
        """
        all_errors: list[DurqError] = []

        all_errors.extend(self._check_handler_imports())
        if all_errors:
            return all_errors

        if not self.handlers:
            all_errors.append(
                _no_location(
                    RegistryError(
                        message='no handlers registered',
                        code=ErrorCode.HANDLER_NONE_REGISTERED,
                        notes=[f'queue table: {self.config.queue.table_name}'],
                        help_text=(
                            'decorate functions with @app.handler("type") and list their\n'
                            'modules in app.discover_handlers([...])'
                        ),
                    )
                )
            )
            return all_errors

        if live:
            all_errors.extend(self._check_store_connectivity())

        return all_errors

    def _check_handler_imports(self) -> list[DurqError]:
        errors: list[DurqError] = []
        for module_path in self._discovered_handler_modules:
            try:
                if module_path.endswith('.py') or os.path.sep in module_path:
                    abs_path = os.path.realpath(module_path)
                    if not os.path.exists(abs_path):
                        errors.append(
                            _no_location(
                                ConfigurationError(
                                    message=f'handler module not found: {module_path}',
                                    code=ErrorCode.CLI_INVALID_ARGS,
                                    notes=[f'resolved path: {abs_path}'],
                                    help_text='remove it from app.discover_handlers([...]) or fix the path',
                                )
                            )
                        )
                        continue
                    import_by_path(abs_path)
                else:
                    importlib.import_module(module_path)
            except MultipleValidationErrors as exc:
                errors.extend(exc.report.errors)
            except DurqError as exc:
                errors.append(exc)
            except (ModuleNotFoundError, ImportError) as exc:
                errors.append(
                    _no_location(
                        ConfigurationError(
                            message=f'failed to import module: {module_path}',
                            code=ErrorCode.CLI_INVALID_ARGS,
                            notes=[str(exc)],
                            help_text=(
                                'ensure the module is importable; '
                                'for dotted paths verify PYTHONPATH or run from the project root'
                            ),
                        )
                    )
                )
            except Exception as exc:
                errors.append(
                    _no_location(
                        ConfigurationError(
                            message=f'error while importing module: {module_path}',
                            code=ErrorCode.MODULE_EXEC_ERROR,
                            notes=[f'{type(exc).__name__}: {exc}'],
                            help_text='the module was found but raised an error during import',
                        )
                    )
                )
        return errors

    def _check_store_connectivity(self) -> list[DurqError]:
        """Ping the database through a short-lived store.

        A separate store keeps the app's long-lived pool and runner out of
        the check.
        """
        failure: Optional[str] = None
        try:
            health_store = PostgresQueueStore(self.config.broker, self.config.queue)
        except Exception as exc:
            failure = f'{type(exc).__name__}: {exc}'
        else:
            try:
                pinged = health_store.ping()
            finally:
                health_store.close()
            if is_err(pinged):
                failure = pinged.err_value.message

        if failure is None:
            return []
        return [
            _no_location(
                ConfigurationError(
                    message='database connectivity check failed',
                    code=ErrorCode.BROKER_UNREACHABLE,
                    notes=[failure],
                    help_text='check database_url in PostgresConfig',
                )
            )
        ]

    def close(self) -> None:
        """Close every store opened by this app (shared engine last)."""
        for store in self._extra_stores.values():
            store.close()
        self._extra_stores.clear()
        if self._store is not None:
            self._store.close()
            self._store = None
