import logging
from typing import Awaitable, Callable

from boardcache.models import AggregateKey

logger = logging.getLogger(__name__)

Handler = Callable[[AggregateKey], Awaitable[None]]


class CacheInvalidationBus:
    """
    In-process "aggregate changed" fan-out.

    Handlers run one after another in subscription order. A failing handler
    is logged and does not stop the remaining ones.
    """

    def __init__(self):
        self._handlers: list[Handler] = []
        self.published = 0

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe():
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def publish(self, aggregate_key: AggregateKey):
        self.published += 1
        logger.debug(f"Aggregate {aggregate_key} changed")
        for handler in list(self._handlers):
            try:
                await handler(aggregate_key)
            except Exception:
                logger.exception(f"Invalidation handler failed for {aggregate_key}")
