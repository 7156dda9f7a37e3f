# durq/core/registry/handlers.py
from __future__ import annotations
import inspect
from typing import Any, Awaitable, Callable, Dict, Iterator, MutableMapping, Union
from durq.core.errors import RegistryError, ErrorCode
from durq.core.models.queue import QueueItem

Handler = Callable[[QueueItem], Union[None, Awaitable[None]]]
"""
A handler receives the claimed item and either returns (success) or raises
(failure). Coroutine functions are awaited; plain functions run in a thread.
"""


class NotRegistered(RegistryError, KeyError):
    """Raised when no handler is registered for an item type.

    Inherits from KeyError so MutableMapping.__contains__ works correctly
    (it catches KeyError to implement the ``in`` operator).
    """

    def __init__(self, item_type: str) -> None:
        RegistryError.__init__(
            self,
            message=f"no handler registered for item type '{item_type}'",
            code=ErrorCode.HANDLER_NOT_REGISTERED,
            notes=[f"requested type: '{item_type}'"],
            help_text='register one with @app.handler(item_type)\nor make sure the module defining it is imported',
        )
        self.item_type = item_type


class DuplicateHandlerError(RegistryError):
    """Raised when an item type is registered more than once within the same app."""

    def __init__(self, item_type: str, context: str = '') -> None:
        super().__init__(
            message=f"duplicate handler for item type '{item_type}'",
            code=ErrorCode.HANDLER_DUPLICATE_TYPE,
            notes=[context] if context else [],
            help_text='each item type is processed by exactly one handler',
        )
        self.item_type = item_type


def handler_source(fn: Callable[..., Any]) -> str | None:
    """'file:lineno' of a handler's definition, used to detect re-imports."""
    try:
        code = fn.__code__
    except AttributeError:
        return None
    return f'{code.co_filename}:{code.co_firstlineno}'


def is_async_handler(fn: Callable[..., Any]) -> bool:
    if inspect.iscoroutinefunction(fn):
        return True
    call = getattr(fn, '__call__', None)
    return call is not None and inspect.iscoroutinefunction(call)


class HandlerRegistry(MutableMapping[str, Handler]):
    """Registry mapping item type -> handler.

    Tracks source locations to detect duplicate registrations:
    - Same type + same source: silently skip (re-import scenario)
    - Same type + different source: raise DuplicateHandlerError
    """

    def __init__(self, initial: Dict[str, Handler] | None = None) -> None:
        self._data: Dict[str, Handler] = dict(initial or {})
        self._sources: Dict[str, str] = {}  # item_type -> "file:lineno"

    def __getitem__(self, key: str) -> Handler:
        try:
            return self._data[key]
        except KeyError:
            raise NotRegistered(key)

    def __setitem__(self, key: str, value: Handler) -> None:
        """Discourage direct assignment; enforce uniqueness like register()."""
        if key in self._data:
            raise DuplicateHandlerError(key, 'detected via direct assignment')
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]
        self._sources.pop(key, None)

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Handler | None = None) -> Handler | None:  # type: ignore[override]
        return self._data.get(key, default)

    def register(self, handler: Handler, *, item_type: str, source: str | None = None) -> Handler:
        """Register `handler` for `item_type`, enforcing one handler per type.

        Returns:
            The registered handler (the existing one on re-import).

        Raises:
            RegistryError: if item_type is empty or handler is not callable.
            DuplicateHandlerError: if the type is registered from a different source.
        """
        if not item_type:
            raise RegistryError(
                message='handler item type must be a non-empty string',
                code=ErrorCode.HANDLER_INVALID,
                help_text='use @app.handler("my_type")',
            )
        if not callable(handler):
            raise RegistryError(
                message=f"handler for '{item_type}' is not callable",
                code=ErrorCode.HANDLER_INVALID,
                notes=[f'got {type(handler).__name__}'],
            )
        source = source or handler_source(handler)
        if item_type in self._data:
            existing_source = self._sources.get(item_type)
            if existing_source and source and existing_source == source:
                return self._data[item_type]
            raise DuplicateHandlerError(
                item_type,
                f'already registered at {existing_source}' if existing_source else '',
            )
        self._data[item_type] = handler
        if source:
            self._sources[item_type] = source
        return handler

    def unregister(self, item_type: str) -> None:
        self._data.pop(item_type, None)
        self._sources.pop(item_type, None)

    def keys_list(self) -> list[str]:
        return list(self._data.keys())
