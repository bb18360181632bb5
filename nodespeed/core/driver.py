# nodespeed/core/driver.py

import logging
import time
from typing import Callable, Optional

import psutil

from .errors import InvalidInput, NodespeedError, ProbeFailure, ProbeTimeout, SelfTestRejected, \
    TransportError, TransportTimeout, TrialFailure
from .message import Message
from .naming import Address, NodeId
from .request import BandwidthTest, Speedtest, TestRequest, parse_test_request
from .transport import ProcessTransport
from .trial import TrialResult, TrialState

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60  # seconds, for probes and final acknowledgements
DEFAULT_RESPONDER_NAME = "receiver"

# (payload, message count) for each bandwidth trial of a full speedtest, in order
SPEEDTEST_TRIALS = (
    (b"this is exactly 24 bytes", 10_000),
    (bytes(1024), 1_000),
    (bytes(60_000), 1_000),
    (bytes(102_400), 100),
    (bytes(1_048_576), 10),
)

Report = Callable[[str], None]


def format_elapsed(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.3f}ms"
    return f"{seconds:.3f}s"


class MeasurementDriver:
    """
    Active endpoint of a measurement.

    Runs latency probes and bandwidth trials against the responder process
    of a peer node and reports elapsed times and throughput through `report`.
    Trials run strictly one after another.
    """

    def __init__(self,
                 transport: ProcessTransport,
                 responder_name: str = DEFAULT_RESPONDER_NAME,
                 timeout: int = DEFAULT_TIMEOUT,
                 report: Report = print,
                 clock: Callable[[], float] = time.perf_counter):
        self.transport = transport
        self.responder_name = responder_name
        self.timeout = timeout
        self.report = report
        self.clock = clock
        self.trial_state: TrialState = TrialState.IDLE

    @property
    def our(self) -> Address:
        return self.transport.address

    def _say(self, line: str):
        log.debug(line)
        self.report(line)

    def responder_address(self, peer: NodeId) -> Address:
        """The responder process on `peer`, in our own package/publisher namespace."""
        return self.our.sibling(peer, self.responder_name)

    # --- Command intake ---
    async def run(self):
        """Waits for one test command, validates it and runs it."""
        name = self.our.process.process
        self._say(f"{name}: start")
        try:
            request = await self.receive_test_request()
        except (InvalidInput, TransportError) as e:
            self._say(f"invalid test request: {e}")
            return
        try:
            await self.handle(request)
        except NodespeedError as e:
            self._say(f"test failed: {e}")
        self._say(f"{name}: end")

    async def receive_test_request(self) -> TestRequest:
        message = await self.transport.receive()
        if not message.is_request:
            raise InvalidInput("expected a request")
        if message.source.node != self.our.node:
            log.warning(f"Driver '{self.our}': rejecting command from foreign node '{message.source.node}'")
            raise InvalidInput(f"source '{message.source}' is not on this node")
        return parse_test_request(message.body)

    def _check_peer(self, peer: NodeId, test_name: str):
        if peer == self.our.node:
            raise SelfTestRejected(f"cannot {test_name} with ourselves")

    async def handle(self, request: TestRequest):
        """Runs `request`. A test against our own node is reported and skipped."""
        try:
            if isinstance(request, Speedtest):
                self._check_peer(request.peer, "speedtest")
                await self.speedtest(request.peer)
            elif isinstance(request, BandwidthTest):
                self._check_peer(request.peer, "bandwidth test")
                await self.bandwidth_trial(request.peer, bytes(request.message_bytes), request.message_count)
            else:
                raise InvalidInput(f"unsupported test request {request!r}")
        except SelfTestRejected as e:
            self._say(str(e))

    # --- Composite scenario ---
    async def speedtest(self, peer: NodeId):
        """
        Measures realistic end-to-end transfer speed to `peer`.

        Two pings come first, so the second one does not include the time
        taken to establish a connection. Then a series of bandwidth trials
        with growing payloads; a failed trial does not stop the next one.
        """
        self._say(f"speedtest with {peer}")

        for index in (1, 2):
            try:
                await self.latency_probe(peer, index)
            except ProbeFailure:
                pass  # already reported

        for payload, count in SPEEDTEST_TRIALS:
            try:
                await self.bandwidth_trial(peer, payload, count)
            except TrialFailure as e:
                self._say(f"bandwidth test failed: {e}")

        rss = psutil.Process().memory_info().rss
        self._say(f"memory usage: {rss / (1024 * 1024):.2f} MB")

    # --- Latency ---
    async def latency_probe(self, peer: NodeId, index: int) -> float:
        """Sends one empty request and waits for its reply. Returns elapsed seconds."""
        request = Message.request(self.our, self.responder_address(peer))
        start = self.clock()
        try:
            await self.transport.send_and_await_response(request, self.timeout)
        except TransportTimeout as e:
            self._say(f"ping #{index} failed: {e}")
            raise ProbeTimeout(str(e)) from e
        except TransportError as e:
            self._say(f"ping #{index} failed: {e}")
            raise ProbeFailure(str(e)) from e
        elapsed = self.clock() - start
        self._say(f"ping #{index}: {format_elapsed(elapsed)}")
        return elapsed

    # --- Bandwidth ---
    async def bandwidth_trial(self, peer: NodeId, payload: bytes, message_count: int) -> TrialResult:
        """
        Sends `message_count` copies of `payload` to the peer's responder.

        All but the last are fire-and-forget. The last expects a response,
        and the trial is over when that response arrives.
        """
        if message_count < 1:
            raise InvalidInput(f"message_count must be >= 1, got {message_count}")
        target = self.responder_address(peer)
        self._say(f"measuring bandwidth ({len(payload)} bytes per message)...")

        final_id: Optional[int] = None
        start = self.clock()
        try:
            self.trial_state = TrialState.SENDING
            for _ in range(message_count - 1):
                await self.transport.send(Message.request(self.our, target, blob=payload))

            final_id = await self.transport.send(
                Message.request(self.our, target, blob=payload, expects_response=self.timeout))
            self.trial_state = TrialState.AWAITING_FINAL_ACK
            await self._await_final_ack(final_id)
        except (TransportError, TrialFailure) as e:
            self.trial_state = TrialState.FAILED
            # No timeout for this trial may reach the next one
            if final_id is not None:
                self.transport.cancel_expiry(final_id)
            if isinstance(e, TrialFailure):
                raise
            raise TrialFailure(str(e)) from e
        elapsed = self.clock() - start
        self.trial_state = TrialState.COMPLETED

        result = TrialResult(payload_size=len(payload), message_count=message_count, elapsed=elapsed)
        self._say(f"bandwidth test completed in: {format_elapsed(elapsed)}")
        self._say(str(result))
        return result

    async def _await_final_ack(self, request_id: int):
        while True:
            try:
                message = await self.transport.receive()
            except TransportTimeout as e:
                if e.request_id is None or e.request_id == request_id:
                    raise
                log.info(f"Driver '{self.our}': skipping timeout of earlier request {e.request_id}")
                continue
            if not message.is_response:
                raise TrialFailure(f"expected a response, got {message!r}")
            if message.request_id == request_id:
                return
            # A late reply to an earlier request; ours is still bounded by its own timeout
            log.info(f"Driver '{self.our}': skipping uncorrelated response {message!r}")

    def __repr__(self) -> str:
        return f"MeasurementDriver(address='{self.our}', timeout={self.timeout}, state={self.trial_state.name})"
