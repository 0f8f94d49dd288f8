"""
Request coordination for backend fetches

Every component that talks to the backend issues its fetches through a
RequestCoordinator:

- Generations: each resource key (e.g. "system-totals:12") carries a
  monotonically increasing counter; only the latest generation may apply
  its response.
- Cancellation: a new fetch for a resource cancels the in-flight one
  (best-effort; the generation check still protects correctness when a
  fetch ignores cancellation).
- Throttle: automatic refresh triggers share one gate with a minimum
  interval; manual refreshes bypass it.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Set, TypeVar

from till_engine.common.exceptions import StaleResponse

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestCoordinator:
    """Latest-wins, cancellable request issuance per resource key"""

    def __init__(self):
        self._generations: Dict[str, int] = {}
        self._inflight: Dict[str, asyncio.Future] = {}
        self._superseded: Set[asyncio.Future] = set()

    def generation(self, resource: str) -> int:
        """Latest generation issued for the resource (0 if none)"""
        return self._generations.get(resource, 0)

    def is_current(self, resource: str, generation: int) -> bool:
        return self._generations.get(resource, 0) == generation

    def invalidate(self, resource: str) -> None:
        """Supersede whatever is in flight for the resource without issuing a new fetch"""
        self._generations[resource] = self.generation(resource) + 1
        self._cancel_inflight(resource)

    async def run(self, resource: str, factory: Callable[[], Awaitable[T]]) -> T:
        """
        Issue a fetch for `resource` and wait for it.

        Returns the result only if this is still the latest generation for the
        resource once it completes. Otherwise raises StaleResponse, also when
        the superseded fetch failed or was cancelled.
        """
        generation = self.generation(resource) + 1
        self._generations[resource] = generation
        self._cancel_inflight(resource)

        task = asyncio.ensure_future(factory())
        self._inflight[resource] = task

        try:
            result = await task
        except asyncio.CancelledError:
            if task in self._superseded:
                raise StaleResponse(resource, generation)
            raise
        except Exception:
            if not self.is_current(resource, generation):
                logger.debug(f"Discarding failure of superseded {resource} generation {generation}")
                raise StaleResponse(resource, generation)
            raise
        finally:
            self._superseded.discard(task)
            if self._inflight.get(resource) is task:
                del self._inflight[resource]

        if not self.is_current(resource, generation):
            logger.debug(f"Discarding stale {resource} generation {generation}")
            raise StaleResponse(resource, generation)

        return result

    def _cancel_inflight(self, resource: str) -> None:
        previous = self._inflight.pop(resource, None)
        if previous is not None and not previous.done():
            self._superseded.add(previous)
            previous.cancel()


class Throttle:
    """
    Shared gate for automatic refresh triggers.

    `allow()` lets a call through when at least `min_interval` seconds passed
    since the last call that went through, and records it. `force()` records
    a call unconditionally (manual refreshes).
    """

    def __init__(self, min_interval: float, clock: Callable[[], float] = time.monotonic):
        self.min_interval = min_interval
        self._clock = clock
        self._last_tick: Optional[float] = None

    def allow(self, min_interval: Optional[float] = None) -> bool:
        interval = self.min_interval if min_interval is None else min_interval
        now = self._clock()
        if self._last_tick is not None and now - self._last_tick < interval:
            return False
        self._last_tick = now
        return True

    def force(self) -> None:
        self._last_tick = self._clock()

    def reset(self) -> None:
        self._last_tick = None
