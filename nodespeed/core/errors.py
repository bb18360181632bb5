"""
Exceptions raised by the nodespeed core.

Nothing here is fatal to the hosting process: the driver catches these at
its call sites and reports them as diagnostic lines.
"""

from typing import Optional


class NodespeedError(Exception):
    """Base class for all nodespeed errors."""


class InvalidInput(NodespeedError):
    """The test command could not be parsed, or came from an untrusted source."""


class SelfTestRejected(NodespeedError):
    """The requested peer is the local node."""


class ProbeFailure(NodespeedError):
    """A latency probe did not receive its reply."""


class ProbeTimeout(ProbeFailure):
    pass


class TrialFailure(NodespeedError):
    """A bandwidth trial did not receive its final acknowledgement."""


class ConfigError(NodespeedError):
    pass


class TransportError(NodespeedError):
    """The transport could not deliver a message, or a reply never came."""

    def __init__(self, message: str, request_id: Optional[int] = None):
        super().__init__(message)
        self.request_id = request_id


class TransportTimeout(TransportError):
    pass


class PeerOffline(TransportError):
    pass
