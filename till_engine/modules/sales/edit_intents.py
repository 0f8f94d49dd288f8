"""
"Edit this sale" intents

Other views (sales history, credit list) ask the cart to load a persisted
sale by calling start_edit(sale_id, line_id). The cart subscribes once; an
intent published while nobody listens is kept until consumed.
"""

import logging
from typing import Awaitable, Callable, List, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class EditIntent(BaseModel):
    sale_id: int
    line_id: Optional[int] = None

    model_config = {"frozen": True}


IntentHandler = Callable[[EditIntent], Awaitable[None]]


class EditIntentCoordinator:
    def __init__(self):
        self._pending: Optional[EditIntent] = None
        self._handlers: List[IntentHandler] = []

    @property
    def pending(self) -> Optional[EditIntent]:
        return self._pending

    def subscribe(self, handler: IntentHandler) -> Callable[[], None]:
        """Register a handler; returns a function that unsubscribes it"""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def start_edit(self, sale_id: int, line_id: Optional[int] = None) -> None:
        intent = EditIntent(sale_id=int(sale_id), line_id=int(line_id) if line_id is not None else None)
        self._pending = intent
        logger.debug(f"Edit intent for sale #{intent.sale_id} (line {intent.line_id})")
        for handler in list(self._handlers):
            await handler(intent)

    def consume(self) -> Optional[EditIntent]:
        """Take the pending intent and clear it"""
        intent, self._pending = self._pending, None
        return intent

    def clear(self) -> None:
        self._pending = None
