"""
Core components of nodespeed.

This package contains the measurement driver, the responder, the message
model and the per-process transport handle they communicate through.
"""

from .driver import MeasurementDriver
from .message import Message, MessageKind
from .naming import Address, NodeId, ProcessId
from .request import BandwidthTest, Speedtest, parse_test_request
from .responder import Responder
from .transport import ProcessTransport
from .trial import TrialResult, TrialState, compute_throughput

__all__ = [
    "MeasurementDriver",
    "Message",
    "MessageKind",
    "Address",
    "NodeId",
    "ProcessId",
    "BandwidthTest",
    "Speedtest",
    "parse_test_request",
    "Responder",
    "ProcessTransport",
    "TrialResult",
    "TrialState",
    "compute_throughput",
]
