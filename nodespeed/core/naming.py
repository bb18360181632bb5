# nodespeed/core/naming.py

from dataclasses import dataclass

"""
Defines the naming types used to address processes on nodes.

An Address has the string form 'node@process:package:publisher'.
NodeId inherits from str so it keeps string behavior while still allowing
isinstance() checks at runtime.
"""


class NodeId(str):
    """
    Identifies a node (one endpoint of a measurement).
    Inherits from str for string-like behavior and runtime type checking.
    """
    pass


@dataclass(frozen=True)
class ProcessId:
    """Identifies a process within a package published by a publisher."""
    process: str
    package: str
    publisher: str

    def __str__(self) -> str:
        return f"{self.process}:{self.package}:{self.publisher}"

    @classmethod
    def from_str(cls, value: str) -> 'ProcessId':
        parts = value.split(":")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"Invalid process id '{value}', expected 'process:package:publisher'")
        return cls(*parts)


@dataclass(frozen=True)
class Address:
    """A process on a node. Messages are always addressed to one of these."""
    node: NodeId
    process: ProcessId

    def __post_init__(self):
        if not self.node or "@" in self.node:
            raise ValueError(f"Invalid node id '{self.node}'")
        # Normalize plain strings so equality and hashing stay consistent
        if not isinstance(self.node, NodeId):
            object.__setattr__(self, "node", NodeId(self.node))

    def __str__(self) -> str:
        return f"{self.node}@{self.process}"

    @classmethod
    def from_str(cls, value: str) -> 'Address':
        node, sep, process = value.partition("@")
        if not sep:
            raise ValueError(f"Invalid address '{value}', expected 'node@process:package:publisher'")
        return cls(NodeId(node), ProcessId.from_str(process))

    @property
    def package(self) -> str:
        return self.process.package

    @property
    def publisher(self) -> str:
        return self.process.publisher

    def sibling(self, node: NodeId, process_name: str) -> 'Address':
        """Address of another process in our package/publisher namespace, on `node`."""
        return Address(NodeId(node), ProcessId(process_name, self.package, self.publisher))
