import logging

from .errors import TransportError
from .message import Message
from .transport import ProcessTransport

log = logging.getLogger(__name__)


class Responder:
    """
    Passive endpoint of a measurement.

    Silently accepts requests that do not expect a response and answers
    those that do with an empty response. Anything else is ignored; the
    loop never exits on its own.
    """

    def __init__(self, transport: ProcessTransport):
        self.transport = transport
        self.requests_seen = 0
        self.replies_sent = 0

    async def run(self):
        log.info(f"{self.transport.address.process.process}: start")
        try:
            while True:
                await self.handle_next()
        finally:
            log.info(f"{self.transport.address.process.process}: stopped after "
                     f"{self.requests_seen} requests, {self.replies_sent} replies")

    async def handle_next(self):
        """Receives and handles exactly one inbound message."""
        try:
            message = await self.transport.receive()
        except TransportError as e:
            log.debug(f"Responder '{self.transport.address}': ignoring transport error: {e}")
            return
        await self.handle_message(message)

    async def handle_message(self, message: Message):
        if not message.is_request:
            log.debug(f"Responder '{self.transport.address}': ignoring {message!r}")
            return
        self.requests_seen += 1
        if message.expects_response is None:
            return
        try:
            await self.transport.respond(message)
            self.replies_sent += 1
        except TransportError as e:
            log.warning(f"Responder '{self.transport.address}': could not reply to {message.source}: {e}")
