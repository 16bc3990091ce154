"""
Correlation of outstanding JSON-RPC requests with their responses.

The MCP server answers on a single stdout stream and may answer in any
order (or never). Every request that expects a reply is registered here
under its id with a deadline; exactly one of three events resolves it:

- the matching response arrives (complete)
- its deadline passes (expire)
- the MCP server goes away (drain_all)

The first resolution wins and removes the entry. Later resolutions for
the same id are no-ops, so a response that shows up after its timeout is
simply discarded.

Threading model:
- Only touched from the event loop thread (reader task, timers, dispatcher)
- No locks: every mutation happens inside a single callback
"""

import asyncio
import time
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, Optional

from ..ipc.stdio_bridge import (
    BridgeError,
    ChildExitedError,
    DuplicateRequestIdError,
    RequestTimeoutError,
)

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    """A request waiting for its response."""
    request_id: Hashable
    deadline: float  # Seconds allowed from registration
    completion: asyncio.Future
    created_at: float = field(default_factory=time.monotonic)
    timer: Optional[asyncio.TimerHandle] = None

    @property
    def age_seconds(self) -> float:
        """Time since registration."""
        return time.monotonic() - self.created_at


class CorrelationTable:
    """
    Maps outstanding request ids to single-assignment completion slots.

    Usage:
        completion = table.register(request_id, deadline=120.0)
        await write_to_child(message)
        response = await completion  # or RequestTimeoutError / ChildExitedError
    """

    def __init__(self):
        self._pending: Dict[Hashable, PendingRequest] = {}
        self.total_registered = 0
        self.total_completed = 0
        self.total_timeouts = 0
        self.total_drained = 0

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: Hashable) -> bool:
        return request_id in self._pending

    def register(self, request_id: Hashable, deadline: float) -> asyncio.Future:
        """
        Register a request and start its deadline timer.

        Must be called from within the running event loop.

        Args:
            request_id: Id the request carries on the wire
            deadline: Seconds to wait for the response

        Returns:
            Future resolved with the response message, or failed with
            RequestTimeoutError / ChildExitedError

        Raises:
            DuplicateRequestIdError: If request_id is already outstanding
        """
        if request_id in self._pending:
            raise DuplicateRequestIdError(request_id)

        loop = asyncio.get_running_loop()
        entry = PendingRequest(
            request_id=request_id,
            deadline=deadline,
            completion=loop.create_future()
        )
        entry.timer = loop.call_later(deadline, self.expire, request_id)
        self._pending[request_id] = entry
        self.total_registered += 1

        logger.debug(f"[{request_id}] Registered (deadline={deadline}s, outstanding={len(self._pending)})")
        return entry.completion

    def complete(self, request_id: Hashable, message: Dict[str, Any]) -> bool:
        """
        Resolve a request with its response.

        Args:
            request_id: Id from the response
            message: Full response document

        Returns:
            True if a pending request was resolved, False if the id is unknown
            (already timed out, already completed, or never registered)
        """
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False

        self._cancel_timer(entry)
        if not entry.completion.done():
            entry.completion.set_result(message)
        self.total_completed += 1

        logger.debug(f"[{request_id}] Completed after {entry.age_seconds * 1000:.0f}ms")
        return True

    def expire(self, request_id: Hashable) -> bool:
        """
        Fail a request with a timeout. Called by its deadline timer.

        Returns:
            True if the request was still pending
        """
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False

        self._cancel_timer(entry)
        if not entry.completion.done():
            entry.completion.set_exception(RequestTimeoutError(request_id, entry.deadline))
        self.total_timeouts += 1

        logger.warning(f"[{request_id}] Request timeout after {entry.deadline}s")
        return True

    def fail(self, request_id: Hashable, error: BaseException) -> bool:
        """
        Fail a single request with an arbitrary error (e.g. its write failed).

        Returns:
            True if the request was still pending
        """
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False

        self._cancel_timer(entry)
        if not entry.completion.done():
            entry.completion.set_exception(error)
        return True

    def drain_all(self, reason: str) -> int:
        """
        Fail every outstanding request and clear the table.

        Called when the MCP server exits or the bridge shuts down, so no
        caller waits across a restart.

        Args:
            reason: Failure reason carried by each ChildExitedError

        Returns:
            Number of requests failed
        """
        entries = list(self._pending.values())
        self._pending.clear()

        for entry in entries:
            self._cancel_timer(entry)
            if not entry.completion.done():
                entry.completion.set_exception(ChildExitedError(reason))

        self.total_drained += len(entries)
        if entries:
            logger.warning(f"Drained {len(entries)} pending request(s): {reason}")
        return len(entries)

    def get_stats(self) -> Dict[str, int]:
        """Counters snapshot."""
        return {
            "outstanding": len(self._pending),
            "total_registered": self.total_registered,
            "total_completed": self.total_completed,
            "total_timeouts": self.total_timeouts,
            "total_drained": self.total_drained,
        }

    @staticmethod
    def _cancel_timer(entry: PendingRequest) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None


class RequestIdAllocator:
    """
    Monotonic request id counter that wraps below a bound.

    Ids stay small and positive: 1, 2, ..., bound-1, 1, ... and an id that
    is still outstanding in the correlation table is skipped.
    """

    def __init__(self, table: CorrelationTable, bound: int = 1_000_000):
        if bound < 2:
            raise ValueError("bound must be at least 2")
        self._table = table
        self._bound = bound
        self._last = 0

    def next_id(self) -> int:
        """
        Return the next free id.

        Raises:
            BridgeError: If every id below the bound is outstanding
        """
        for _ in range(self._bound):
            self._last = (self._last + 1) % self._bound
            if self._last == 0:
                self._last = 1
            if self._last not in self._table:
                return self._last
        raise BridgeError(f"No free request id below {self._bound}")
