import json
from dataclasses import dataclass
from typing import Union

from .errors import InvalidInput
from .naming import NodeId


@dataclass(frozen=True)
class Speedtest:
    """Run the full composite scenario against `peer`."""
    peer: NodeId


@dataclass(frozen=True)
class BandwidthTest:
    """Run a single bandwidth trial with an explicit payload size and count."""
    peer: NodeId
    message_bytes: int
    message_count: int

    def __post_init__(self):
        if self.message_bytes < 0:
            raise InvalidInput(f"message_bytes must be >= 0, got {self.message_bytes}")
        if self.message_count < 1:
            raise InvalidInput(f"message_count must be >= 1, got {self.message_count}")


TestRequest = Union[Speedtest, BandwidthTest]


def _require_int(data: dict, key: str) -> int:
    value = data.get(key)
    # bool is an int subclass, reject it explicitly
    if not isinstance(value, int) or isinstance(value, bool):
        raise InvalidInput(f"'{key}' must be an integer, got {value!r}")
    return value


def _require_node(value) -> NodeId:
    if not isinstance(value, str) or not value:
        raise InvalidInput(f"node id must be a non-empty string, got {value!r}")
    return NodeId(value)


def parse_test_request(body: bytes) -> TestRequest:
    """
    Deserializes an externally tagged JSON test command.

    Accepted forms:
        {"Speedtest": "<node>"}
        {"BandwidthTest": {"node_id": "<node>", "message_bytes": N, "message_count": M}}

    Raises InvalidInput for anything else.
    """
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidInput(f"not valid JSON: {e}") from e

    if not isinstance(data, dict) or len(data) != 1:
        raise InvalidInput("expected an object with exactly one variant key")

    variant, content = next(iter(data.items()))
    if variant == "Speedtest":
        return Speedtest(_require_node(content))
    if variant == "BandwidthTest":
        if not isinstance(content, dict):
            raise InvalidInput("BandwidthTest must wrap an object")
        return BandwidthTest(
            peer=_require_node(content.get("node_id")),
            message_bytes=_require_int(content, "message_bytes"),
            message_count=_require_int(content, "message_count"),
        )
    raise InvalidInput(f"unknown variant '{variant}'")


def dump_test_request(request: TestRequest) -> bytes:
    """Serializes a test request into the JSON form parse_test_request accepts."""
    if isinstance(request, Speedtest):
        data = {"Speedtest": str(request.peer)}
    else:
        data = {"BandwidthTest": {
            "node_id": str(request.peer),
            "message_bytes": request.message_bytes,
            "message_count": request.message_count,
        }}
    return json.dumps(data).encode("utf-8")
