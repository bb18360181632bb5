# nodespeed/core/transport.py

import asyncio
import itertools
import logging
from typing import Dict, Optional, TYPE_CHECKING, Union

from .errors import TransportError, TransportTimeout
from .message import Message
from .naming import Address

log = logging.getLogger(__name__)

if TYPE_CHECKING:
    from ..interfaces.router import Router

InboxItem = Union[Message, TransportError]


class ProcessTransport:
    """
    Per-process handle onto a Router.

    Provides the three primitives the measurement code consumes:
    fire-and-forget send, send-and-await-response with a timeout, and a
    blocking receive of the next inbound message. Requests are numbered
    here; responses are correlated back to them by request_id.
    """

    def __init__(self, address: Address, router: 'Router'):
        self.address: Address = address
        self.router: 'Router' = router
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._request_ids = itertools.count(start=1)

        # Requests whose reply is consumed by send_and_await_response (request_id -> Future)
        self._awaiting: Dict[int, asyncio.Future] = {}
        # Requests sent with send() that expect a reply through the inbox (request_id -> timer)
        self._expiry_timers: Dict[int, asyncio.TimerHandle] = {}
        self._closed = False

        log.debug(f"Transport for '{self.address}' created.")

    def _next_request_id(self) -> int:
        return next(self._request_ids)

    # --- Sending ---
    async def send(self, message: Message) -> int:
        """
        Sends a request without waiting for anything.

        If the request expects a response, an expiry timer is armed; should no
        correlated response arrive before it fires, a TransportTimeout is put
        in the inbox and raised by the next receive().
        Returns the request_id assigned to the message.
        """
        if self._closed:
            raise TransportError(f"Transport for '{self.address}' is closed")
        message.request_id = self._next_request_id()
        if message.expects_response is not None:
            loop = asyncio.get_running_loop()
            self._expiry_timers[message.request_id] = loop.call_later(
                message.expects_response, self._expire, message.request_id
            )
        try:
            await self.router.route(message)
        except TransportError:
            self.cancel_expiry(message.request_id)
            raise
        return message.request_id

    async def send_and_await_response(self, message: Message, timeout: int) -> Message:
        """Sends a request and waits up to `timeout` seconds for its response."""
        if self._closed:
            raise TransportError(f"Transport for '{self.address}' is closed")
        message.request_id = self._next_request_id()
        message.expects_response = timeout
        future = asyncio.get_running_loop().create_future()
        self._awaiting[message.request_id] = future
        try:
            await self.router.route(message)
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            raise TransportTimeout(f"no response within {timeout}s", message.request_id) from None
        finally:
            self._awaiting.pop(message.request_id, None)

    async def respond(self, request: Message, body: bytes = b"", blob: Optional[bytes] = None):
        """Replies to `request`, addressed back to its source."""
        await self.router.route(Message.response_to(request, body=body, blob=blob))

    # --- Receiving ---
    async def receive(self) -> Message:
        """Blocks until the next inbound message. Raises a queued TransportError instead, if that comes first."""
        item: InboxItem = await self._inbox.get()
        if isinstance(item, TransportError):
            raise item
        return item

    def deliver(self, message: Message):
        """Called by the router for every message addressed to this process."""
        if message.is_response:
            self.cancel_expiry(message.request_id)
            future = self._awaiting.get(message.request_id)
            if future is not None:
                if not future.done():
                    future.set_result(message)
                return
        self._inbox.put_nowait(message)

    # --- Timers ---
    def _expire(self, request_id: int):
        if self._expiry_timers.pop(request_id, None) is None:
            return
        log.debug(f"Transport '{self.address}': request {request_id} expired without a response.")
        self._inbox.put_nowait(TransportTimeout(f"request {request_id} timed out", request_id))

    def cancel_expiry(self, request_id: int):
        """Stops waiting for a reply to `request_id`; no timeout will be queued for it."""
        timer = self._expiry_timers.pop(request_id, None)
        if timer:
            timer.cancel()

    def close(self):
        """Cancels outstanding timers and fails any pending awaits."""
        self._closed = True
        for timer in self._expiry_timers.values():
            timer.cancel()
        self._expiry_timers.clear()
        for request_id, future in list(self._awaiting.items()):
            if not future.done():
                future.set_exception(TransportError(f"Transport for '{self.address}' closed", request_id))
        self._awaiting.clear()
        log.debug(f"Transport for '{self.address}' closed.")

    def __repr__(self) -> str:
        return (f"ProcessTransport(address='{self.address}', inbox={self._inbox.qsize()}, "
                f"awaiting={len(self._awaiting)}, expiring={len(self._expiry_timers)})")
