# durq/core/cli.py
"""
CLI for durq: schema setup, workers, inspection and config checks.

Module path resolution follows Celery's approach:
1. User provides dotted module path: `durq worker myproject.queue_app:app`
2. User is responsible for PYTHONPATH / running from correct directory
3. Convenience: if cwd has pyproject.toml, we add cwd to sys.path
"""

import argparse
import asyncio
import importlib
import logging
import os
import random
import signal
import sys
from typing import Any

from durq.core.app import Durq
from durq.core.errors import ConfigurationError, ErrorCode, DurqError, ValidationReport
from durq.core.logging import get_logger
from durq.core.models.resilience import WorkerResilienceConfig
from durq.core.types.result import is_err
from durq.core.worker.config import WorkerConfig
from durq.core.utils.imports import (
    import_file_path,
    setup_sys_path_from_cwd,
)

_LOGLEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


def _resolve_module_argument(args: argparse.Namespace) -> str:
    """Return module path from --module or positional, error if missing."""
    module_path = getattr(args, 'module', None) or getattr(args, 'module_pos', None)
    if not module_path:
        raise ConfigurationError(
            message='module path is required',
            code=ErrorCode.CLI_INVALID_ARGS,
            notes=['no --module flag or positional module argument provided'],
            help_text=(
                'provide module path in one of these formats:\n'
                '  durq worker myproject.queue_app:app  (recommended)\n'
                '  durq worker myproject/queue_app.py:app  (file path)\n'
                '  durq worker myproject.queue_app  (auto-discover app variable)'
            ),
        )
    return module_path


def _parse_locator(locator: str) -> tuple[str, str | None]:
    """
    Parse a module locator into (module_path, attribute_name).

    - "pkg.queue_app:app" -> ("pkg.queue_app", "app")
    - "pkg.queue_app" -> ("pkg.queue_app", None)
    - "/path/to/file.py:app" -> ("/path/to/file.py", "app")
    """
    if ':' in locator:
        module_part, attr = locator.rsplit(':', 1)
        return (module_part, attr)
    return (locator, None)


def _is_file_path(path: str) -> bool:
    """Check if path looks like a file path (vs dotted module path)."""
    return path.endswith('.py') or os.path.sep in path or '/' in path


def discover_app(module_locator: str) -> tuple[Durq, str, str]:
    """
    Import module and find the Durq instance.

    Returns:
        (app_instance, variable_name, module_name)
    """
    logger = get_logger('cli')

    project_root = setup_sys_path_from_cwd()
    if project_root:
        logger.info(f'Added project root to sys.path: {project_root}')

    module_path, attr_name = _parse_locator(module_locator)

    if _is_file_path(module_path):
        if not module_path.endswith('.py'):
            module_path += '.py'
        file_path = os.path.realpath(module_path)
        if not os.path.exists(file_path):
            raise ConfigurationError(
                message=f'module file not found: {module_path}',
                code=ErrorCode.CLI_APP_NOT_FOUND,
                notes=[f'resolved path: {file_path}'],
                help_text='check the path, or use a dotted module path: pkg.module:app',
            )
        module = import_file_path(file_path)
        module_name = module.__name__
    else:
        try:
            module = importlib.import_module(module_path)
        except ModuleNotFoundError as e:
            raise ConfigurationError(
                message=f'module not found: {module_path}',
                code=ErrorCode.CLI_APP_NOT_FOUND,
                notes=[
                    str(e),
                    f'sys.path: {sys.path[:5]}...',
                ],
                help_text=(
                    'ensure you are running from the correct directory\n'
                    'or set PYTHONPATH to include your project root'
                ),
            )
        module_name = module_path

    if attr_name:
        obj = getattr(module, attr_name, None)
        if not isinstance(obj, Durq):
            raise ConfigurationError(
                message=f"'{attr_name}' in module '{module_name}' is not a Durq instance",
                code=ErrorCode.CLI_APP_NOT_FOUND,
                notes=[f'got {type(obj).__name__}'],
                help_text='point the locator at the variable holding Durq(AppConfig(...))',
            )
        app = obj
        var_name = attr_name
    else:
        app_instances: list[tuple[Durq, str]] = [
            (obj, name)
            for name, obj in vars(module).items()
            if not name.startswith('_') and isinstance(obj, Durq)
        ]
        if len(app_instances) != 1:
            found = [name for _, name in app_instances]
            raise ConfigurationError(
                message=(
                    f'no Durq instance found in {module_name}'
                    if not app_instances
                    else f'multiple Durq instances found in {module_name}: {found}'
                ),
                code=ErrorCode.CLI_APP_NOT_FOUND,
                help_text='specify the variable name: module.path:variable',
            )
        app, var_name = app_instances[0]

    logger.info(f"Discovered durq app '{var_name}' from {module_name}")
    return app, var_name, module_name


def setup_logging(loglevel: str) -> None:
    """Configure logging level globally."""
    from durq.core.logging import set_default_level

    level = getattr(logging, loglevel.upper(), logging.INFO)
    set_default_level(level)

    for name in list(logging.Logger.manager.loggerDict):
        if isinstance(name, str) and (name == 'durq' or name.startswith('durq.')):
            lgr = logging.getLogger(name)
            lgr.setLevel(level)
            for handler in lgr.handlers:
                handler.setLevel(level)


def _load_app(args: argparse.Namespace) -> Durq:
    """Discover the app or exit(1) with the error logged."""
    logger = get_logger('cli')
    try:
        module_locator: str = _resolve_module_argument(args)
        app, _var_name, _module_name = discover_app(module_locator)
    except DurqError as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        logger.error(f'Failed to discover app: {e}')
        sys.exit(1)
    return app


async def _ensure_schema_with_retry(
    store: Any,
    resilience: WorkerResilienceConfig,
    logger: logging.Logger,
) -> None:
    """Create the queue table, retrying transient database errors.

    Raises RuntimeError on a non-retryable error or when attempts run out.
    """
    attempts = 0
    while True:
        result = await store.ensure_schema_initialized()
        if not is_err(result):
            return
        err = result.err_value
        if not err.retryable:
            raise RuntimeError(err.message)
        attempts += 1
        if resilience.db_retry_max_attempts and attempts > resilience.db_retry_max_attempts:
            raise RuntimeError(err.message)
        base_ms = min(
            resilience.db_retry_max_ms,
            resilience.db_retry_initial_ms * (2 ** (attempts - 1)),
        )
        jitter = random.uniform(-base_ms * 0.25, base_ms * 0.25)
        delay = max(0.1, (base_ms + jitter) / 1000.0)
        logger.warning(
            f'Schema initialization failed: {err.message}. Retrying in {delay:.1f}s '
            f'(attempt {attempts}/{resilience.db_retry_max_attempts or "inf"})'
        )
        await asyncio.sleep(delay)


def init_schema_command(args: argparse.Namespace) -> None:
    """Handle init-schema command."""
    logger = get_logger('cli')
    setup_logging(args.loglevel)
    app = _load_app(args)
    store = app.get_store()

    async def run() -> None:
        try:
            await _ensure_schema_with_retry(store, app.config.resilience, logger)
        finally:
            await store.close_async()

    try:
        asyncio.run(run())
    except Exception as e:
        logger.error(f'Failed to initialize database schema: {e}')
        sys.exit(1)
    print(f'ok: table {store.table_name} is ready')


def worker_command(args: argparse.Namespace) -> None:
    """Handle worker command."""
    logger = get_logger('cli')

    loglevel: str = args.loglevel
    setup_logging(loglevel)
    logger.info(f'Starting durq worker with loglevel={loglevel}')

    app = _load_app(args)
    try:
        app.import_handler_modules()
    except Exception as e:
        logger.error(f'Failed to import handler modules: {e}')
        sys.exit(1)

    handler_types = app.list_handlers()
    if handler_types:
        logger.info(f'Handlers: {", ".join(sorted(handler_types))}')
    else:
        logger.warning('No handlers registered; every claimed item will be failed')

    base = app.config.worker
    try:
        worker_config = WorkerConfig(
            worker_id=args.worker_id or base.worker_id,
            poll_interval_ms=args.poll_interval_ms or base.poll_interval_ms,
            backoff_base=base.backoff_base,
            max_backoff_seconds=base.max_backoff_seconds,
            enabled=base.enabled,
        )
    except DurqError as e:
        logger.error(str(e))
        sys.exit(1)

    app.config.log_config(logger)
    store = app.get_store()

    async def run_worker() -> None:
        try:
            logger.info('Ensuring queue table is initialized...')
            await _ensure_schema_with_retry(store, app.config.resilience, logger)

            worker = app.create_worker(worker_config, store=store)

            loop = asyncio.get_running_loop()

            def signal_handler() -> None:
                logger.info('Received interrupt signal, stopping worker...')
                worker.request_stop()

            for sig in (signal.SIGTERM, signal.SIGINT):
                try:
                    loop.add_signal_handler(sig, signal_handler)
                except NotImplementedError:
                    pass

            await worker.run_forever()
        finally:
            await store.close_async()

    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info('Worker interrupted by user')
        return
    except Exception as e:
        logger.error(f'Worker failed: {e}')
        sys.exit(1)


def list_command(args: argparse.Namespace) -> None:
    """Handle list command: print items of one type, newest first."""
    logger = get_logger('cli')
    setup_logging(args.loglevel)
    app = _load_app(args)
    store = app.get_store()

    async def run() -> Any:
        try:
            return await store.list_by_type_async(args.type, args.limit)
        finally:
            await store.close_async()

    result = asyncio.run(run())
    if is_err(result):
        logger.error(f'Failed to list items: {result.err_value.message}')
        sys.exit(1)

    items = result.ok_value
    if not items:
        print(f'no items of type {args.type}')
        return
    for item in items:
        line = (
            f'{item.id}  {item.status.value:<10}  '
            f'attempts={item.retry_count}/{item.max_retries + 1}  '
            f'created={item.created_at.isoformat()}  '
            f'visible_at={item.visible_at.isoformat()}'
        )
        if item.worker_id:
            line += f'  worker={item.worker_id}'
        if item.error_message:
            line += f'  error={item.error_message!r}'
        print(line)


def check_command(args: argparse.Namespace) -> None:
    """Handle check command: validate app configuration without starting services."""
    setup_logging(args.loglevel)
    app = _load_app(args)

    errors = app.check(live=args.live)

    if errors:
        report = ValidationReport('check')
        for error in errors:
            report.add(error)
        print(report.format_rust_style(), file=sys.stderr)
        sys.exit(1)
    else:
        handler_count = len(app.list_handlers())
        print(f'ok: all validations passed\n  {handler_count} handler(s) registered')
        sys.exit(0)


def _add_common_arguments(
    parser: argparse.ArgumentParser,
    *,
    default_loglevel: str = 'INFO',
) -> None:
    parser.add_argument(
        '-m',
        '--module',
        dest='module',
        help='Module path (e.g., myproject.queue_app:app)',
    )
    parser.add_argument(
        'module_pos',
        nargs='?',
        help='Module path (e.g., myproject.queue_app:app)',
    )
    parser.add_argument(
        '--loglevel',
        choices=_LOGLEVELS,
        default=default_loglevel,
        type=str.upper,
        help=f'Logging level (default: {default_loglevel})',
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='durq',
        description='durq durable work queue - schema, workers and inspection',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  durq init-schema myproject.queue_app:app
  durq worker myproject.queue_app:app --worker-id worker-1
  durq list myproject.queue_app:app --type send_email --limit 20
  durq check myproject.queue_app:app --live
""",
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    init_parser = subparsers.add_parser(
        'init-schema',
        help='Create the queue table and its indices',
    )
    _add_common_arguments(init_parser)

    worker_parser = subparsers.add_parser(
        'worker',
        help='Start a worker polling the queue',
    )
    _add_common_arguments(worker_parser)
    worker_parser.add_argument(
        '--worker-id',
        default=None,
        help='Lease holder id (default: hostname:pid:random)',
    )
    worker_parser.add_argument(
        '--poll-interval-ms',
        type=int,
        default=None,
        help='Idle sleep between polls (default: from app config)',
    )

    list_parser = subparsers.add_parser(
        'list',
        help='List items of one type, newest first',
    )
    _add_common_arguments(list_parser, default_loglevel='WARNING')
    list_parser.add_argument('--type', required=True, help='Item type')
    list_parser.add_argument(
        '--limit',
        type=int,
        default=50,
        help='Maximum number of items (default: 50)',
    )

    check_parser = subparsers.add_parser(
        'check',
        help='Validate app configuration without starting services',
    )
    _add_common_arguments(check_parser, default_loglevel='WARNING')
    check_parser.add_argument(
        '--live',
        action='store_true',
        default=False,
        help='Also check database connectivity (SELECT 1)',
    )
    return parser


def main() -> None:
    """Main CLI entry point."""
    try:
        parser = build_parser()
        args = parser.parse_args()

        match args.command:
            case 'init-schema':
                init_schema_command(args)
            case 'worker':
                worker_command(args)
            case 'list':
                if args.limit <= 0:
                    parser.error('--limit must be positive')
                list_command(args)
            case 'check':
                check_command(args)
            case _:
                parser.print_help()
                sys.exit(1)
    except KeyboardInterrupt:
        print('\nInterrupted by user')
        sys.exit(0)


if __name__ == '__main__':
    main()
