from .config import NodeConfig
from .node import Node

__all__ = ["NodeConfig", "Node"]
