import abc
import asyncio
import logging
import socket
import struct
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from ..core.errors import PeerOffline, TransportError
from ..core.message import Message
from ..core.naming import Address, NodeId
from ..core.transport import ProcessTransport

log = logging.getLogger(__name__)

# Each frame on a TCP connection is a 4-byte big-endian length followed by an encoded Message
FRAME_HEADER_FORMAT = "!I"
FRAME_HEADER_SIZE = struct.calcsize(FRAME_HEADER_FORMAT)
MAX_FRAME_SIZE = 64 * 1024 * 1024
SOCKET_BUFFER_SIZE = 2 * 1024 * 1024

PeerAddress = Tuple[str, int]

# --- Abstract Base Class ---

class Router(abc.ABC):
    """
    Abstract base class for message routers.

    A router owns the ProcessTransports attached to it and delivers every
    routed message either to one of them or to a remote node.
    """

    def __init__(self):
        self._processes: Dict[Address, ProcessTransport] = {}

    @abc.abstractmethod
    async def start(self):
        """Starts the router."""
        pass

    @abc.abstractmethod
    async def stop(self):
        """Stops the router and releases resources."""
        pass

    @abc.abstractmethod
    async def route(self, message: Message):
        """
        Delivers `message` to its target address.

        Raises:
            TransportError (usually PeerOffline) if the target cannot be reached.
        """
        pass

    def attach(self, address: Address) -> ProcessTransport:
        """Registers a local process and returns its transport handle."""
        if address in self._processes:
            raise ValueError(f"Process '{address}' is already attached")
        transport = ProcessTransport(address, self)
        self._processes[address] = transport
        log.info(f"{type(self).__name__}: attached process '{address}'.")
        return transport

    def detach(self, address: Address):
        transport = self._processes.pop(address, None)
        if transport:
            transport.close()
            log.info(f"{type(self).__name__}: detached process '{address}'.")

    def _deliver_local(self, message: Message) -> bool:
        transport = self._processes.get(message.target)
        if transport is None:
            return False
        transport.deliver(message)
        return True

    def _close_processes(self):
        for transport in self._processes.values():
            transport.close()
        self._processes.clear()

# --- In-process Implementation ---

class LocalRouter(Router):
    """
    Routes messages between processes of any number of simulated nodes
    inside one event loop. With serialize=True every message goes through
    the binary codec, the way it would on a real wire.
    """

    def __init__(self, serialize: bool = False):
        super().__init__()
        self.serialize = serialize
        self._is_running = False

    async def start(self):
        self._is_running = True
        log.info("LocalRouter started.")

    async def stop(self):
        self._is_running = False
        self._close_processes()
        log.info("LocalRouter stopped.")

    async def route(self, message: Message):
        if not self._is_running:
            raise TransportError("LocalRouter is not running")
        if self.serialize:
            decoded = Message.from_bytes(message.to_bytes())
            if decoded is None:
                raise TransportError(f"Failed to encode {message!r}")
            message = decoded
        if not self._deliver_local(message):
            raise PeerOffline(f"No process at '{message.target}'", message.request_id)

# --- TCP Implementation ---

@dataclass
class _PeerConnection:
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    task: Optional[asyncio.Task] = None


class TcpRouter(Router):
    """
    Routes messages for one node over TCP.

    Messages for local processes are delivered directly. Messages for other
    nodes are framed onto a connection to that node, opened on demand from
    the address book, or reused if the peer connected to us first.
    """

    def __init__(self, node_id: NodeId, host: str, port: int,
                 peers: Optional[Dict[NodeId, PeerAddress]] = None):
        super().__init__()
        self.node_id = NodeId(node_id)
        self.host = host
        self.port = port
        self.peers: Dict[NodeId, PeerAddress] = dict(peers or {})
        self._server: Optional[asyncio.AbstractServer] = None
        self._connections: Dict[NodeId, _PeerConnection] = {}
        self._connections_lock = asyncio.Lock()
        self._inbound_tasks = set()
        self._is_running = False
        log.info(f"TcpRouter for node '{self.node_id}' initialized for {self.host}:{self.port}.")

    async def start(self):
        if self._is_running:
            log.warning(f"TcpRouter '{self.node_id}' already running.")
            return
        try:
            self._server = await asyncio.start_server(self._handle_inbound, self.host, self.port)
        except OSError as e:
            log.error(f"TcpRouter '{self.node_id}': Failed to bind to {self.host}:{self.port}. Error: {e}",
                      exc_info=True)
            raise
        # Port 0 asks the OS for a free port; record the real one
        self.port = self._server.sockets[0].getsockname()[1]
        self._is_running = True
        log.info(f"TcpRouter '{self.node_id}' listening on {self.host}:{self.port}.")

    async def stop(self):
        if not self._is_running:
            return
        log.info(f"TcpRouter '{self.node_id}': Stopping...")
        self._is_running = False
        self._close_processes()
        if self._server:
            self._server.close()
        async with self._connections_lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for conn in connections:
            if conn.task:
                conn.task.cancel()
            conn.writer.close()
        for task in list(self._inbound_tasks):
            task.cancel()
        await asyncio.gather(*(c.task for c in connections if c.task), *self._inbound_tasks,
                             return_exceptions=True)
        self._inbound_tasks.clear()
        # wait_closed() waits for open connections, so it must come after they are torn down
        if self._server:
            await self._server.wait_closed()
            self._server = None
        log.info(f"TcpRouter '{self.node_id}' stopped.")

    async def route(self, message: Message):
        if not self._is_running:
            raise TransportError(f"TcpRouter '{self.node_id}' is not running")
        if message.target.node == self.node_id:
            if not self._deliver_local(message):
                raise PeerOffline(f"No process at '{message.target}'", message.request_id)
            return

        data = message.to_bytes()
        if len(data) > MAX_FRAME_SIZE:
            raise TransportError(f"Message of {len(data)} bytes exceeds the {MAX_FRAME_SIZE}-byte frame limit",
                                 message.request_id)
        conn = await self._get_connection(message.target.node)
        try:
            conn.writer.write(struct.pack(FRAME_HEADER_FORMAT, len(data)) + data)
            await conn.writer.drain()
        except (ConnectionError, OSError) as e:
            await self._drop_connection(message.target.node, conn)
            raise PeerOffline(f"Lost connection to '{message.target.node}': {e}", message.request_id) from e

    # --- Connections ---
    async def _get_connection(self, node: NodeId) -> _PeerConnection:
        async with self._connections_lock:
            conn = self._connections.get(node)
            if conn and not conn.writer.is_closing():
                return conn

            peer_address = self.peers.get(node)
            if peer_address is None:
                raise PeerOffline(f"Node '{node}' is not in the address book")
            try:
                reader, writer = await asyncio.open_connection(*peer_address)
            except OSError as e:
                raise PeerOffline(f"Cannot connect to '{node}' at {peer_address}: {e}") from e

            sock = writer.get_extra_info('socket')
            if sock is not None:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, SOCKET_BUFFER_SIZE)
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, SOCKET_BUFFER_SIZE)
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

            conn = _PeerConnection(reader, writer)
            conn.task = asyncio.create_task(self._read_frames(reader, writer, node),
                                            name=f"read_{self.node_id}_from_{node}")
            self._connections[node] = conn
            log.info(f"TcpRouter '{self.node_id}': Connected to '{node}' at {peer_address}.")
            return conn

    async def _drop_connection(self, node: NodeId, conn: _PeerConnection):
        async with self._connections_lock:
            if self._connections.get(node) is conn:
                del self._connections[node]
        conn.writer.close()

    async def _handle_inbound(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        task = asyncio.current_task()
        self._inbound_tasks.add(task)
        try:
            await self._read_frames(reader, writer, None)
        finally:
            self._inbound_tasks.discard(task)

    async def _read_frames(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                           peer: Optional[NodeId]):
        """Reads frames until the connection closes, delivering each decoded message locally."""
        peer_name = writer.get_extra_info('peername')
        try:
            while True:
                header = await reader.readexactly(FRAME_HEADER_SIZE)
                (length,) = struct.unpack(FRAME_HEADER_FORMAT, header)
                if length > MAX_FRAME_SIZE:
                    log.error(f"TcpRouter '{self.node_id}': Frame of {length} bytes from {peer_name} exceeds limit. Closing.")
                    break
                message = Message.from_bytes(await reader.readexactly(length))
                if message is None:
                    continue

                # Local processes never arrive over the wire, and a connection speaks for one node only
                if message.source.node == self.node_id:
                    log.warning(f"TcpRouter '{self.node_id}': Dropping frame from {peer_name} "
                                f"claiming a local source: {message!r}")
                    continue
                if peer is not None and message.source.node != peer:
                    log.warning(f"TcpRouter '{self.node_id}': Dropping frame from {peer_name} "
                                f"claiming node '{message.source.node}' on the connection of '{peer}'")
                    continue

                if peer is None:
                    # First frame on an inbound connection tells us who is on the other end
                    peer = message.source.node
                    async with self._connections_lock:
                        if peer not in self._connections:
                            self._connections[peer] = _PeerConnection(reader, writer)

                if message.target.node != self.node_id:
                    log.warning(f"TcpRouter '{self.node_id}': Discarding message for foreign node: {message!r}")
                elif not self._deliver_local(message):
                    log.warning(f"TcpRouter '{self.node_id}': No process for {message!r}. Discarding.")
        except asyncio.IncompleteReadError:
            log.debug(f"TcpRouter '{self.node_id}': Connection from {peer_name} closed.")
        except (ConnectionError, OSError) as e:
            log.warning(f"TcpRouter '{self.node_id}': Connection error with {peer_name}: {e}")
        finally:
            if peer is not None:
                async with self._connections_lock:
                    conn = self._connections.get(peer)
                    if conn and conn.writer is writer:
                        del self._connections[peer]
            writer.close()

    def __repr__(self) -> str:
        status = "Running" if self._is_running else "Stopped"
        return (f"TcpRouter(node='{self.node_id}', address={self.host}:{self.port}, "
                f"connections={len(self._connections)}, status={status})")
