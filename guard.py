"""At-most-one-execution-per-stream admission.

A lease is a short-lived claim on a stream. The holder renews it while the
execution runs; a holder that dies simply stops renewing and the lease
becomes reclaimable once it expires. try_acquire does its test-and-set
without awaiting, so it is atomic with respect to other tasks on the loop.

Example:
    >>> guard = ConcurrencyGuard(lease_seconds=300)
    >>> token = guard.try_acquire("stream-1")
    >>> if token:
    ...     async with guard.hold(token):
    ...         await engine.run(execution)
"""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from errors import ConcurrencyConflict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeaseToken:
    """Proof of admission for one stream."""

    stream_id: str
    token: str


class ConcurrencyGuard:
    """In-process lease table keyed by stream id."""

    def __init__(self, lease_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        """Initialize the guard.

        Args:
            lease_seconds: Lease length; holders renew at a third of this
            clock: Monotonic clock (injectable for tests)
        """
        self.lease_seconds = lease_seconds
        self._clock = clock
        self._leases: dict[str, tuple[str, float]] = {}

    def try_acquire(self, stream_id: str) -> LeaseToken | None:
        """Claim the stream, or return None if a live lease exists."""
        now = self._clock()
        current = self._leases.get(stream_id)
        if current is not None:
            if current[1] > now:
                return None
            logger.warning("Expired lease reclaimed | stream=%s", stream_id)
        token = LeaseToken(stream_id=stream_id, token=uuid.uuid4().hex)
        self._leases[stream_id] = (token.token, now + self.lease_seconds)
        return token

    def renew(self, token: LeaseToken) -> bool:
        """Extend a live lease. Returns False if the token is stale."""
        current = self._leases.get(token.stream_id)
        if current is None or current[0] != token.token:
            return False
        self._leases[token.stream_id] = (token.token, self._clock() + self.lease_seconds)
        return True

    def release(self, token: LeaseToken) -> None:
        """Drop the lease. Stale tokens are ignored."""
        current = self._leases.get(token.stream_id)
        if current is not None and current[0] == token.token:
            del self._leases[token.stream_id]

    def is_held(self, stream_id: str) -> bool:
        current = self._leases.get(stream_id)
        return current is not None and current[1] > self._clock()

    def held_streams(self) -> list[str]:
        now = self._clock()
        return [stream_id for stream_id, (_, expires) in self._leases.items() if expires > now]

    @asynccontextmanager
    async def hold(self, token: LeaseToken) -> AsyncIterator[LeaseToken]:
        """Keep the lease renewed for the duration of the block, then release it.

        The lease is checked on entry, so a request that sat in a queue past
        its lease never starts. A renewal failure cancels the block.

        Raises:
            ConcurrencyConflict: The lease had already expired, or was lost
                while the block ran
        """
        if not self.renew(token):
            logger.warning("Lease expired before start | stream=%s", token.stream_id)
            raise ConcurrencyConflict(token.stream_id)

        body = asyncio.current_task()
        lost = False

        async def renew_loop() -> None:
            nonlocal lost
            while True:
                await asyncio.sleep(self.lease_seconds / 3)
                if not self.renew(token):
                    logger.warning("Lease lost while held, cancelling | stream=%s", token.stream_id)
                    lost = True
                    body.cancel()
                    return

        renewer = asyncio.create_task(renew_loop())
        try:
            yield token
        except asyncio.CancelledError:
            if not lost:
                raise
            body.uncancel()
            raise ConcurrencyConflict(token.stream_id) from None
        finally:
            renewer.cancel()
            try:
                await renewer
            except asyncio.CancelledError:
                pass
            self.release(token)
