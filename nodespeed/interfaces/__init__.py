from .router import LocalRouter, Router, TcpRouter

__all__ = ["Router", "LocalRouter", "TcpRouter"]
