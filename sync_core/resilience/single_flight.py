"""
InvoiceSync Single-Flight.

Collapses concurrent calls for the same key into one in-flight execution.
Every caller awaiting a key gets the same result (or the same exception).
Once the call settles the key is released, so a later call runs again.
"""
from __future__ import annotations
from typing import Any, Awaitable, Callable
import asyncio


class SingleFlight:
    """Per-key in-flight call deduplication."""

    def __init__(self):
        self._inflight: dict[str, asyncio.Future] = {}
        self.executions = 0

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    async def do(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run `fn` once for `key`; concurrent callers share its result."""
        future = self._inflight.get(key)
        if future is not None:
            return await asyncio.shield(future)

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        self.executions += 1
        try:
            result = await fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved so an unshared failure doesn't warn on GC
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._inflight.pop(key, None)
