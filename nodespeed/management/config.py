# nodespeed/management/config.py

import argparse
import json
import logging
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional, Tuple

from ..core.driver import DEFAULT_RESPONDER_NAME, DEFAULT_TIMEOUT
from ..core.errors import ConfigError
from ..core.naming import Address, NodeId, ProcessId

log = logging.getLogger(__name__)

DEFAULT_PACKAGE = "speedtest"
DEFAULT_PUBLISHER = "sys"
DEFAULT_DRIVER_NAME = "tester"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9000


def parse_peer_address(value: str) -> Tuple[str, int]:
    """Parses 'host:port'."""
    host, sep, port = value.rpartition(":")
    if not sep or not host:
        raise ConfigError(f"Invalid peer address '{value}', expected 'host:port'")
    try:
        return host, int(port)
    except ValueError:
        raise ConfigError(f"Invalid port in peer address '{value}'") from None


@dataclass
class NodeConfig:
    """
    Identity and address book of one node.

    node_id, package and publisher together name the driver and responder
    processes; peers maps other node ids to the host/port their router
    listens on.
    """
    node_id: NodeId
    package: str = DEFAULT_PACKAGE
    publisher: str = DEFAULT_PUBLISHER
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    peers: Dict[NodeId, Tuple[str, int]] = field(default_factory=dict)
    timeout: int = DEFAULT_TIMEOUT
    responder_name: str = DEFAULT_RESPONDER_NAME
    driver_name: str = DEFAULT_DRIVER_NAME

    def __post_init__(self):
        if not self.node_id or "@" in self.node_id:
            raise ConfigError(f"Invalid node id '{self.node_id}'")
        self.node_id = NodeId(self.node_id)
        if not isinstance(self.port, int) or not 0 <= self.port <= 65535:
            raise ConfigError(f"Invalid port {self.port!r}")
        if not isinstance(self.timeout, int) or self.timeout < 1:
            raise ConfigError(f"Timeout must be a positive whole number of seconds, got {self.timeout!r}")
        for name in (self.package, self.publisher, self.responder_name, self.driver_name):
            if not name or ":" in name or "@" in name:
                raise ConfigError(f"Invalid name component '{name}'")

    @property
    def driver_address(self) -> Address:
        return Address(self.node_id, ProcessId(self.driver_name, self.package, self.publisher))

    @property
    def responder_address(self) -> Address:
        return Address(self.node_id, ProcessId(self.responder_name, self.package, self.publisher))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NodeConfig':
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
        values = dict(data)
        peers = {}
        for node, address in values.get("peers", {}).items():
            if isinstance(address, str):
                peers[NodeId(node)] = parse_peer_address(address)
            elif isinstance(address, (list, tuple)) and len(address) == 2:
                peers[NodeId(node)] = parse_peer_address(f"{address[0]}:{address[1]}")
            else:
                raise ConfigError(f"Invalid address for peer '{node}': {address!r}")
        values["peers"] = peers
        try:
            return cls(**values)
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    @classmethod
    def from_file(cls, path: str) -> 'NodeConfig':
        """Loads a JSON configuration file."""
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except OSError as e:
            raise ConfigError(f"Cannot read config file '{path}': {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"Config file '{path}' is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file '{path}' must contain a JSON object")
        log.debug(f"Loaded configuration from {path}")
        return cls.from_dict(data)

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> 'NodeConfig':
        """Builds a config from an optional --config file overlaid with command line options."""
        data: Dict[str, Any] = {}
        if getattr(args, "config", None):
            data = cls.from_file(args.config).to_dict()
        overrides: Dict[str, Optional[Any]] = {
            "node_id": getattr(args, "node", None),
            "host": getattr(args, "host", None),
            "port": getattr(args, "port", None),
            "timeout": getattr(args, "timeout", None),
        }
        data.update({k: v for k, v in overrides.items() if v is not None})
        peers = dict(data.get("peers", {}))
        for entry in getattr(args, "peer", None) or []:
            node, sep, address = entry.partition("=")
            if not sep:
                raise ConfigError(f"Invalid --peer '{entry}', expected NODE=HOST:PORT")
            peers[node] = address
        data["peers"] = peers
        if "node_id" not in data:
            raise ConfigError("A node id is required (--node or 'node_id' in the config file)")
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["node_id"] = str(self.node_id)
        data["peers"] = {str(node): f"{host}:{port}" for node, (host, port) in self.peers.items()}
        return data
