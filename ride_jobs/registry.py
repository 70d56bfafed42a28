"""Job handler registry."""

from collections.abc import Callable
from typing import Optional

from ride_jobs.errors import HandlerNotFoundError


class JobRegistry:
    """Registry mapping queue names to job handlers."""

    def __init__(self):
        self._handlers: dict[str, Callable] = {}

    def handler(self, queue_name: str):
        """
        Decorator to register a job handler.

        Usage:
            @registry.handler("payout-processing")
            async def process_payout(ctx, payload):
                ...
        """

        def decorator(func: Callable):
            self.register(queue_name, func)
            return func

        return decorator

    def register(self, queue_name: str, func: Callable) -> None:
        """Register ``func`` as the handler of ``queue_name``, replacing any previous one."""
        self._handlers[queue_name] = func

    def get_handler(self, queue_name: str) -> Optional[Callable]:
        """Get a handler by queue name."""
        return self._handlers.get(queue_name)

    def require_handler(self, queue_name: str) -> Callable:
        handler = self._handlers.get(queue_name)
        if handler is None:
            raise HandlerNotFoundError(queue_name)
        return handler

    def all_handlers(self) -> dict[str, Callable]:
        """Get all registered handlers."""
        return self._handlers.copy()
