import struct
import logging
from dataclasses import dataclass, field
from enum import IntEnum, IntFlag
from typing import Optional

from .naming import Address

log = logging.getLogger(__name__)

# ! = network byte order (big-endian)
# KIND, REQUEST_ID, TIMEOUT, FLAGS, SRC_LEN, DST_LEN, BODY_LEN, BLOB_LEN
HEADER_FORMAT = "!BIIBHHII"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)


class MessageKind(IntEnum):
    REQUEST = 1
    RESPONSE = 2


class MessageFlags(IntFlag):
    NONE = 0
    EXPECTS_RESPONSE = 1  # TIMEOUT field is valid
    HAS_BLOB = 2          # BLOB section is present (it may still be empty)


@dataclass
class Message:
    """
    A request or a response travelling between two process addresses.

    request_id is assigned by the sending transport; a response carries the
    id of the request it answers. expects_response is the reply timeout in
    whole seconds and is only meaningful on requests.
    """
    kind: MessageKind
    source: Address
    target: Address
    request_id: int = 0
    expects_response: Optional[int] = None
    body: bytes = field(default_factory=bytes)
    blob: Optional[bytes] = None

    @classmethod
    def request(cls, source: Address, target: Address, body: bytes = b"",
                blob: Optional[bytes] = None, expects_response: Optional[int] = None) -> 'Message':
        return cls(MessageKind.REQUEST, source, target, expects_response=expects_response,
                   body=body, blob=blob)

    @classmethod
    def response_to(cls, request: 'Message', body: bytes = b"", blob: Optional[bytes] = None) -> 'Message':
        """Builds the reply to `request`, addressed back to its source."""
        return cls(MessageKind.RESPONSE, request.target, request.source,
                   request_id=request.request_id, body=body, blob=blob)

    @property
    def is_request(self) -> bool:
        return self.kind == MessageKind.REQUEST

    @property
    def is_response(self) -> bool:
        return self.kind == MessageKind.RESPONSE

    def to_bytes(self) -> bytes:
        """Serializes the message into bytes."""
        flags = MessageFlags.NONE
        if self.expects_response is not None:
            flags |= MessageFlags.EXPECTS_RESPONSE
        if self.blob is not None:
            flags |= MessageFlags.HAS_BLOB
        source = str(self.source).encode("utf-8")
        target = str(self.target).encode("utf-8")
        blob = self.blob or b""
        header = struct.pack(
            HEADER_FORMAT,
            self.kind.value,
            self.request_id,
            self.expects_response or 0,
            flags.value,
            len(source),
            len(target),
            len(self.body),
            len(blob),
        )
        return b"".join((header, source, target, self.body, blob))

    @classmethod
    def from_bytes(cls, raw: bytes) -> Optional['Message']:
        """Deserializes bytes into a Message, or returns None if they are malformed."""
        if len(raw) < HEADER_SIZE:
            log.warning(f"Received message shorter than header size ({len(raw)} < {HEADER_SIZE}).")
            return None

        try:
            kind_val, request_id, timeout, flags_val, src_len, dst_len, body_len, blob_len = \
                struct.unpack(HEADER_FORMAT, raw[:HEADER_SIZE])
            kind = MessageKind(kind_val)
        except ValueError:
            log.error(f"Failed to interpret message header: invalid kind {raw[0]}.")
            return None
        except struct.error as e:
            log.error(f"Failed to unpack message header: {e}.")
            return None

        flags = MessageFlags(flags_val & (MessageFlags.EXPECTS_RESPONSE | MessageFlags.HAS_BLOB))
        total_size = HEADER_SIZE + src_len + dst_len + body_len + blob_len
        if len(raw) != total_size:
            log.error(f"Message length mismatch: header describes {total_size} bytes, got {len(raw)}.")
            return None

        offset = HEADER_SIZE
        try:
            source = Address.from_str(raw[offset:offset + src_len].decode("utf-8"))
            offset += src_len
            target = Address.from_str(raw[offset:offset + dst_len].decode("utf-8"))
            offset += dst_len
        except (UnicodeDecodeError, ValueError) as e:
            log.error(f"Failed to decode message addresses: {e}.")
            return None

        body = raw[offset:offset + body_len]
        offset += body_len
        blob = raw[offset:offset + blob_len] if flags & MessageFlags.HAS_BLOB else None

        return cls(
            kind=kind,
            source=source,
            target=target,
            request_id=request_id,
            expects_response=timeout if flags & MessageFlags.EXPECTS_RESPONSE else None,
            body=body,
            blob=blob,
        )

    def __repr__(self):
        blob_str = f"{len(self.blob)} bytes" if self.blob is not None else "no blob"
        expects = f", Expects:{self.expects_response}s" if self.expects_response is not None else ""
        return (f"Message(Kind:{self.kind.name}, Id:{self.request_id}, Src:{self.source}, "
                f"Dst:{self.target}{expects}, Body:{len(self.body)} bytes, Blob:{blob_str})")
