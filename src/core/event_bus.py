import inspect
import itertools
import logging
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar, Union

T = TypeVar("T")

Handler = Callable[[T], Union[None, Awaitable[None]]]
Unsubscribe = Callable[[], bool]


class EventBus(Generic[T]):
    """Typed publish/subscribe registry.

    Handlers run in registration order. A failing handler is logged and
    skipped; the rest of the cycle still runs. Handlers may unsubscribe
    themselves or others while a publish is in progress.
    """

    def __init__(self, name: str, logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self._handlers: Dict[int, Handler] = {}
        self._ids = itertools.count()
        self.published = 0
        self.handler_errors = 0

    def subscribe(self, handler: Handler) -> Unsubscribe:
        """Register handler. Returns a function that removes it again."""
        handler_id = next(self._ids)
        self._handlers[handler_id] = handler

        def unsubscribe() -> bool:
            return self._handlers.pop(handler_id, None) is not None

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    async def publish(self, event: T) -> None:
        self.published += 1
        # Snapshot so handlers can (un)subscribe during the cycle
        for handler_id, handler in list(self._handlers.items()):
            if handler_id not in self._handlers:
                continue
            try:
                result: Any = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.handler_errors += 1
                self.logger.error(f"Error in {self.name} handler {getattr(handler, '__name__', handler)}: {str(e)}")
