"""
Cooperative cancellation for pipeline executions.

A token is created per execution, passed through every call boundary and
checked before each external call (cache, model, audit).
"""

import asyncio
from typing import Optional

from .exceptions import PipelineCancelledError


class CancellationToken:
    """Signal shared between an orchestrator and the executions it started."""

    def __init__(self, execution_id: Optional[str] = None) -> None:
        self.execution_id = execution_id
        self.reason: Optional[str] = None
        self._event = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PipelineCancelledError(self.execution_id)

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, awaitable):
        """Await ``awaitable`` unless the token fires first.

        The pending work is cancelled when the token wins, so an in-flight
        model call does not keep running after the caller gave up.
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work in done:
            return work.result()

        work.cancel()
        raise PipelineCancelledError(self.execution_id)


def check_cancelled(token: Optional[CancellationToken]) -> None:
    """Raise if ``token`` has been signalled; a missing token never cancels."""
    if token is not None:
        token.raise_if_cancelled()
