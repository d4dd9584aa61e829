"""Request/response correlation over the gateway connection.

Each request gets a process-unique id and a pending entry holding a future
and a deadline timer.  The entry is removed exactly once by whichever
happens first:

- a ``res`` frame with the same id (resolves or fails the future),
- the deadline timer (fails with RequestTimeoutError),
- ``fail_all()`` during an intentional connection reset,
- the caller abandoning the request (task cancellation).

Everything runs on the event loop, so removal is a plain ``dict.pop``: the
first party to pop the entry settles it and every later party finds
nothing and does nothing.
"""

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from gateway_sdk.errors import (
    GatewayError,
    RemoteError,
    RequestTimeoutError,
    TransportError,
)
from gateway_sdk.frames import RequestFrame, ResponseFrame

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 120.0
GENERIC_FAILURE_MESSAGE = "request failed"


@dataclass
class PendingRequest:
    """An in-flight request awaiting its response."""
    id: str
    method: str
    future: asyncio.Future
    created_at: float = field(default_factory=time.monotonic)
    deadline: Optional[asyncio.TimerHandle] = None


class RequestCorrelator:
    """Issues requests and matches responses to them by id."""

    def __init__(self, connection: Any, timeout: float = DEFAULT_REQUEST_TIMEOUT):
        """Initialize the correlator.

        Args:
            connection: Object providing ``ensure_writable(handshake)``,
                ``send(frame)`` and ``send_handshake(frame)`` (normally a
                ConnectionManager).
            timeout: Seconds before a pending request fails.
        """
        self._connection = connection
        self.timeout = timeout
        self._pending: Dict[str, PendingRequest] = {}
        self._counter = itertools.count(1)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, request_id: str) -> bool:
        return request_id in self._pending

    def next_id(self) -> str:
        """Generate a request id unique within this process run."""
        return f"r{next(self._counter)}_{time.time_ns()}"

    async def request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        handshake: bool = False,
        timeout: Optional[float] = None,
    ) -> Any:
        """Send a request and wait for its payload.

        Args:
            method: Gateway method name.
            params: Method parameters.
            handshake: Send on the open-but-unauthenticated transport (only
                for the ``connect`` request).
            timeout: Override of the default timeout.

        Returns:
            The response ``payload`` (an empty dict when absent).

        Raises:
            NotConnectedError: If the connection cannot carry the request;
                nothing is registered or written.
            RequestTimeoutError: If no response arrived in time.
            RemoteError: If the gateway answered ``ok: false``.
            ReconnectingError: If the connection was reset meanwhile.
            TransportError: If writing the frame failed.
        """
        self._connection.ensure_writable(handshake)

        loop = asyncio.get_running_loop()
        request_id = self.next_id()
        pending = PendingRequest(id=request_id, method=method, future=loop.create_future())
        pending.deadline = loop.call_later(
            self.timeout if timeout is None else timeout,
            self._expire,
            request_id,
        )
        self._pending[request_id] = pending

        frame = RequestFrame(id=request_id, method=method, params=params or {})
        try:
            if handshake:
                await self._connection.send_handshake(frame)
            else:
                await self._connection.send(frame)
        except GatewayError as e:
            self._settle(request_id, error=e)
        except Exception as e:
            self._settle(request_id, error=TransportError(str(e)))

        try:
            return await pending.future
        finally:
            # No-op unless the caller was cancelled before settlement
            self._discard(request_id)

    def handle_response(self, frame: ResponseFrame) -> bool:
        """Settle the pending request matching a response frame.

        Returns:
            True if a pending request was settled; False for unknown or
            already-settled ids (late responses after a timeout).
        """
        if frame.ok:
            payload = frame.payload if frame.payload is not None else {}
            settled = self._settle(frame.id, result=payload)
        else:
            error = RemoteError(
                frame.error_message or GENERIC_FAILURE_MESSAGE,
                code=frame.error_code,
            )
            settled = self._settle(frame.id, error=error)

        if not settled:
            logger.debug(f"Dropping response for unknown request {frame.id}")
        return settled

    def fail_all(self, error: GatewayError) -> int:
        """Fail and clear every pending request.

        Returns:
            Number of requests failed.
        """
        request_ids = list(self._pending)
        for request_id in request_ids:
            self._settle(request_id, error=error)
        if request_ids:
            logger.info(f"Failed {len(request_ids)} pending request(s): {error}")
        return len(request_ids)

    def _expire(self, request_id: str) -> None:
        pending = self._pending.get(request_id)
        if pending is None:
            return
        logger.warning(f"Request {pending.method} ({request_id}) timed out")
        self._settle(request_id, error=RequestTimeoutError())

    def _settle(
        self,
        request_id: str,
        result: Any = None,
        error: Optional[BaseException] = None,
    ) -> bool:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return False
        if pending.deadline is not None:
            pending.deadline.cancel()
        if pending.future.done():
            return False
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(result)
        return True

    def _discard(self, request_id: str) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is not None and pending.deadline is not None:
            pending.deadline.cancel()


__all__ = [
    "DEFAULT_REQUEST_TIMEOUT",
    "PendingRequest",
    "RequestCorrelator",
]
