import asyncio
import itertools
import unittest

from nodespeed.core.driver import MeasurementDriver, SPEEDTEST_TRIALS
from nodespeed.core.errors import InvalidInput, PeerOffline, ProbeFailure, ProbeTimeout, \
    TransportTimeout, TrialFailure
from nodespeed.core.message import Message
from nodespeed.core.naming import Address, NodeId
from nodespeed.core.request import BandwidthTest, Speedtest, dump_test_request
from nodespeed.core.responder import Responder
from nodespeed.core.trial import TrialState
from nodespeed.interfaces.router import LocalRouter

OUR = Address.from_str("alice.os@tester:speedtest:sys")
PEER = NodeId("bob.os")
PEER_RESPONDER = Address.from_str("bob.os@receiver:speedtest:sys")
TERMINAL = Address.from_str("alice.os@terminal:speedtest:sys")


class FakeTransport:
    """Records every send and answers acked sends unless told otherwise."""

    def __init__(self, address: Address):
        self.address = address
        self.sends = []      # messages passed to send()
        self.awaited = []    # messages passed to send_and_await_response()
        self.inbox = []      # messages or exceptions handed out by receive()
        self.auto_ack = True
        self.probe_error = None
        self.cancelled = []  # request ids passed to cancel_expiry()
        self._ids = itertools.count(start=1)

    async def send(self, message):
        message.request_id = next(self._ids)
        self.sends.append(message)
        if message.expects_response is not None and self.auto_ack:
            self.inbox.append(Message.response_to(message))
        return message.request_id

    async def send_and_await_response(self, message, timeout):
        message.request_id = next(self._ids)
        message.expects_response = timeout
        self.awaited.append(message)
        if self.probe_error:
            raise self.probe_error
        return Message.response_to(message)

    def cancel_expiry(self, request_id):
        self.cancelled.append(request_id)

    async def receive(self):
        if not self.inbox:
            raise TransportTimeout("nothing left to receive")
        item = self.inbox.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    @property
    def fire_and_forget(self):
        return [m for m in self.sends if m.expects_response is None]

    @property
    def acked(self):
        return [m for m in self.sends if m.expects_response is not None]


def make_clock(*values):
    return iter(values).__next__


class DriverTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.transport = FakeTransport(OUR)
        self.lines = []
        self.driver = MeasurementDriver(self.transport, report=self.lines.append)


class TestBandwidthTrial(DriverTestCase):

    async def test_concrete_scenario(self):
        self.driver.clock = make_clock(10.0, 12.0)
        payload = bytes(100)

        result = await self.driver.bandwidth_trial(PEER, payload, 5)

        self.assertEqual(len(self.transport.fire_and_forget), 4)
        self.assertEqual(len(self.transport.acked), 1)
        # The acked send is the last one
        self.assertIs(self.transport.sends[-1], self.transport.acked[0])
        for message in self.transport.sends:
            self.assertEqual(message.target, PEER_RESPONDER)
            self.assertEqual(message.source, OUR)
            self.assertEqual(message.blob, payload)
            self.assertEqual(message.body, b"")
        self.assertEqual(self.transport.acked[0].expects_response, 60)

        self.assertEqual(result.total_bytes, 500)
        self.assertEqual(result.elapsed, 2.0)
        self.assertAlmostEqual(result.throughput, 500 / 2.0 / 1_000_000)
        self.assertEqual(self.driver.trial_state, TrialState.COMPLETED)
        self.assertEqual(self.lines, [
            "measuring bandwidth (100 bytes per message)...",
            "bandwidth test completed in: 2.000s",
            "bandwidth: 0.00 MB/s",
        ])

    async def test_single_message_is_one_acked_send(self):
        await self.driver.bandwidth_trial(PEER, bytes(10), 1)
        self.assertEqual(len(self.transport.fire_and_forget), 0)
        self.assertEqual(len(self.transport.acked), 1)

    async def test_fire_and_forget_count_for_several_sizes(self):
        for count in (2, 3, 17):
            with self.subTest(count=count):
                self.transport.sends.clear()
                await self.driver.bandwidth_trial(PEER, b"abc", count)
                self.assertEqual(len(self.transport.fire_and_forget), count - 1)
                self.assertEqual(len(self.transport.acked), 1)

    async def test_missing_ack_fails_trial(self):
        self.transport.auto_ack = False
        self.transport.inbox.append(TransportTimeout("request 3 timed out", 3))
        with self.assertRaises(TrialFailure):
            await self.driver.bandwidth_trial(PEER, bytes(24), 3)
        self.assertEqual(self.driver.trial_state, TrialState.FAILED)

    async def test_request_instead_of_response_fails_trial(self):
        self.transport.auto_ack = False
        self.transport.inbox.append(Message.request(PEER_RESPONDER, OUR))
        with self.assertRaises(TrialFailure):
            await self.driver.bandwidth_trial(PEER, bytes(24), 2)
        self.assertEqual(self.driver.trial_state, TrialState.FAILED)
        self.assertEqual(self.transport.cancelled, [2])

    async def test_uncorrelated_response_is_skipped(self):
        stale = Message.request(OUR, PEER_RESPONDER)
        stale.request_id = 999
        self.transport.inbox.append(Message.response_to(stale))

        result = await self.driver.bandwidth_trial(PEER, bytes(24), 2)

        self.assertEqual(result.message_count, 2)
        self.assertEqual(self.transport.inbox, [])

    async def test_timeout_of_earlier_request_is_skipped(self):
        self.transport.inbox.append(TransportTimeout("request 999 timed out", 999))

        result = await self.driver.bandwidth_trial(PEER, bytes(24), 2)

        self.assertEqual(result.message_count, 2)
        self.assertEqual(self.driver.trial_state, TrialState.COMPLETED)

    async def test_send_failure_fails_trial(self):
        async def offline(message):
            raise PeerOffline("Node 'bob.os' is not in the address book")
        self.transport.send = offline
        with self.assertRaises(TrialFailure):
            await self.driver.bandwidth_trial(PEER, bytes(24), 2)

    async def test_rejects_zero_count(self):
        with self.assertRaises(InvalidInput):
            await self.driver.bandwidth_trial(PEER, bytes(24), 0)
        self.assertEqual(self.transport.sends, [])


class TestLatencyProbe(DriverTestCase):

    async def test_probe_reports_elapsed(self):
        self.driver.clock = make_clock(1.0, 1.25)
        elapsed = await self.driver.latency_probe(PEER, 1)
        self.assertEqual(elapsed, 0.25)
        self.assertEqual(self.lines, ["ping #1: 250.000ms"])
        probe = self.transport.awaited[0]
        self.assertEqual(probe.target, PEER_RESPONDER)
        self.assertEqual(probe.body, b"")
        self.assertIsNone(probe.blob)
        self.assertEqual(probe.expects_response, 60)

    async def test_probe_timeout(self):
        self.transport.probe_error = TransportTimeout("no response within 60s")
        with self.assertRaises(ProbeTimeout):
            await self.driver.latency_probe(PEER, 2)
        self.assertEqual(self.lines, ["ping #2 failed: no response within 60s"])

    async def test_probe_failure(self):
        self.transport.probe_error = PeerOffline("gone")
        with self.assertRaises(ProbeFailure):
            await self.driver.latency_probe(PEER, 1)


class TestSpeedtest(DriverTestCase):

    def _trials(self):
        """(payload size, message count) per trial, from the recorded sends."""
        trials = []
        count = 0
        for message in self.transport.sends:
            count += 1
            if message.expects_response is not None:
                trials.append((len(message.blob), count))
                count = 0
        return trials

    async def test_runs_two_probes_then_five_trials_in_order(self):
        await self.driver.speedtest(PEER)

        self.assertEqual(len(self.transport.awaited), 2)
        self.assertEqual(self._trials(), [
            (24, 10_000), (1024, 1_000), (60_000, 1_000), (102_400, 100), (1_048_576, 10)])
        self.assertEqual(self.transport.sends[0].blob, b"this is exactly 24 bytes")
        self.assertEqual(self.lines[0], "speedtest with bob.os")
        self.assertTrue(self.lines[-1].startswith("memory usage: "))
        self.assertEqual(sum(line.startswith("bandwidth: ") for line in self.lines), 5)

    async def test_failures_do_not_stop_later_steps(self):
        self.transport.probe_error = TransportTimeout("no response within 60s")
        self.transport.auto_ack = False

        await self.driver.speedtest(PEER)

        self.assertEqual(len(self.transport.awaited), 2)
        self.assertEqual(self._trials(), [(len(p), c) for p, c in SPEEDTEST_TRIALS])
        self.assertEqual(sum(line.startswith("ping #") and "failed" in line for line in self.lines), 2)
        self.assertEqual(sum(line.startswith("bandwidth test failed") for line in self.lines), 5)


class TestCommandIntake(DriverTestCase):

    def _command(self, request, source=TERMINAL):
        return Message.request(source, OUR, body=dump_test_request(request))

    async def test_speedtest_with_self_is_rejected(self):
        self.transport.inbox.append(self._command(Speedtest(OUR.node)))
        await self.driver.run()
        self.assertEqual(self.transport.sends, [])
        self.assertEqual(self.transport.awaited, [])
        self.assertEqual(self.lines, ["tester: start", "cannot speedtest with ourselves", "tester: end"])

    async def test_bandwidth_test_with_self_is_rejected(self):
        await self.driver.handle(BandwidthTest(OUR.node, 100, 5))
        self.assertEqual(self.transport.sends, [])
        self.assertEqual(self.lines, ["cannot bandwidth test with ourselves"])

    async def test_bandwidth_command(self):
        self.transport.inbox.append(self._command(BandwidthTest(PEER, 100, 5)))
        await self.driver.run()
        self.assertEqual(len(self.transport.fire_and_forget), 4)
        self.assertEqual(len(self.transport.acked), 1)
        self.assertEqual(len(self.transport.sends[0].blob), 100)
        self.assertEqual(self.lines[-1], "tester: end")

    async def test_failed_bandwidth_command_is_reported(self):
        self.transport.auto_ack = False
        self.transport.inbox.append(self._command(BandwidthTest(PEER, 100, 2)))
        await self.driver.run()
        self.assertTrue(any(line.startswith("test failed: ") for line in self.lines))
        self.assertEqual(self.lines[-1], "tester: end")

    async def test_foreign_source_is_rejected(self):
        foreign = Address.from_str("mallory.os@terminal:speedtest:sys")
        self.transport.inbox.append(self._command(Speedtest(PEER), source=foreign))
        await self.driver.run()
        self.assertEqual(self.transport.sends, [])
        self.assertEqual(self.transport.awaited, [])
        self.assertTrue(self.lines[-1].startswith("invalid test request: "))
        self.assertNotIn("tester: end", self.lines)

    async def test_malformed_command_is_rejected(self):
        self.transport.inbox.append(Message.request(TERMINAL, OUR, body=b"{\"Speedtest\": 4}"))
        await self.driver.run()
        self.assertEqual(self.transport.sends, [])
        self.assertTrue(self.lines[-1].startswith("invalid test request: "))

    async def test_response_instead_of_command_is_rejected(self):
        stray = Message.request(OUR, PEER_RESPONDER)
        self.transport.inbox.append(Message.response_to(stray))
        await self.driver.run()
        self.assertEqual(self.lines[-1], "invalid test request: expected a request")


class TestTrialsOverProcessTransport(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.router = LocalRouter()
        await self.router.start()
        self.transport = self.router.attach(OUR)
        self.peer_transport = self.router.attach(PEER_RESPONDER)
        self.lines = []
        self.driver = MeasurementDriver(self.transport, timeout=1, report=self.lines.append)
        self.responder_task = None

    async def asyncTearDown(self):
        if self.responder_task:
            self.responder_task.cancel()
            await asyncio.gather(self.responder_task, return_exceptions=True)
        await self.router.stop()

    def _start_responder(self):
        self.responder_task = asyncio.create_task(Responder(self.peer_transport).run())

    async def test_failed_trial_does_not_fail_the_next_one(self):
        # A stray request arrives while the peer is still silent
        self.transport.deliver(Message.request(TERMINAL, OUR))
        with self.assertRaises(TrialFailure):
            await self.driver.bandwidth_trial(PEER, bytes(24), 3)
        self.assertEqual(self.transport._expiry_timers, {})

        # Past the first trial's timeout, with the peer now answering
        await asyncio.sleep(1.2)
        self._start_responder()
        result = await self.driver.bandwidth_trial(PEER, bytes(24), 3)

        self.assertEqual(result.message_count, 3)
        self.assertEqual(self.driver.trial_state, TrialState.COMPLETED)

    async def test_expired_earlier_request_is_skipped(self):
        await self.transport.send(Message.request(OUR, PEER_RESPONDER, expects_response=0))
        await asyncio.sleep(0.05)
        self.assertEqual(self.transport._inbox.qsize(), 1)

        self._start_responder()
        result = await self.driver.bandwidth_trial(PEER, bytes(24), 2)

        self.assertEqual(result.message_count, 2)
        self.assertEqual(self.driver.trial_state, TrialState.COMPLETED)


if __name__ == '__main__':
    unittest.main()
