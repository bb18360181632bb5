import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .core.errors import ConfigError, NodespeedError
from .core.naming import NodeId
from .core.request import BandwidthTest, Speedtest
from .interfaces.router import LocalRouter
from .management.config import NodeConfig
from .management.node import Node

LOG_FORMAT = '%(asctime)s.%(msecs)03d - %(levelname)-7s - %(name)-15s - %(message)s'
LOG_DATEFMT = '%H:%M:%S'

log = logging.getLogger("nodespeed")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nodespeed",
                                     description="Measure latency and throughput between two nodes")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])

    node_options = argparse.ArgumentParser(add_help=False)
    node_options.add_argument("--config", help="JSON node configuration file")
    node_options.add_argument("--node", help="Our node id")
    node_options.add_argument("--host", help="Address the router listens on")
    node_options.add_argument("--port", type=int, help="Port the router listens on")
    node_options.add_argument("--peer", action="append", metavar="NODE=HOST:PORT",
                              help="Address of a peer node (repeatable)")
    node_options.add_argument("--timeout", type=int, help="Reply timeout in seconds")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("serve", parents=[node_options],
                          help="Run the responder until interrupted")

    speedtest = subparsers.add_parser("speedtest", parents=[node_options],
                                      help="Run the full speedtest against a peer")
    speedtest.add_argument("target", help="Node id of the peer to test")

    bandwidth = subparsers.add_parser("bandwidth", parents=[node_options],
                                      help="Run a single bandwidth test against a peer")
    bandwidth.add_argument("target", help="Node id of the peer to test")
    bandwidth.add_argument("--bytes", type=int, required=True, dest="message_bytes")
    bandwidth.add_argument("--count", type=int, required=True, dest="message_count")

    local = subparsers.add_parser("local", help="Speedtest between two in-process nodes")
    local.add_argument("--bytes", type=int, dest="message_bytes",
                       help="Run a single bandwidth test with this payload size instead")
    local.add_argument("--count", type=int, default=1000, dest="message_count")
    local.add_argument("--timeout", type=int, default=60)

    return parser


async def serve(config: NodeConfig):
    node = Node(config)
    await node.start()
    try:
        await node.serve_forever()
    finally:
        await node.stop()


async def run_remote_test(config: NodeConfig, request):
    node = Node(config)
    # The peer's responder answers us; ours is not needed for an outgoing test
    await node.start(with_responder=False)
    try:
        await node.run_test(request)
    finally:
        await node.stop()


LOCAL_DRIVER_NODE = NodeId("node-a")
LOCAL_PEER_NODE = NodeId("node-b")


async def run_local(timeout: int, request):
    """Two simulated nodes sharing one LocalRouter, with full message encoding."""
    router = LocalRouter(serialize=True)
    driver_node = Node(NodeConfig(node_id=LOCAL_DRIVER_NODE, timeout=timeout), router)
    peer_node = Node(NodeConfig(node_id=LOCAL_PEER_NODE, timeout=timeout), router)
    await driver_node.start(with_responder=False)
    await peer_node.start()
    try:
        await driver_node.run_test(request)
    finally:
        await peer_node.stop()
        await driver_node.stop()
        await router.stop()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT, datefmt=LOG_DATEFMT)

    try:
        if args.command == "local":
            if args.timeout < 1:
                raise ConfigError(f"Timeout must be a positive whole number of seconds, got {args.timeout}")
            if args.message_bytes is not None:
                request = BandwidthTest(LOCAL_PEER_NODE, args.message_bytes, args.message_count)
            else:
                request = Speedtest(LOCAL_PEER_NODE)
            coro = run_local(args.timeout, request)
        else:
            config = NodeConfig.from_args(args)
            if args.command == "serve":
                coro = serve(config)
            elif args.command == "speedtest":
                coro = run_remote_test(config, Speedtest(NodeId(args.target)))
            else:
                coro = run_remote_test(config, BandwidthTest(
                    NodeId(args.target), args.message_bytes, args.message_count))
    except ConfigError as e:
        log.error(f"Configuration error: {e}")
        return 1
    except NodespeedError as e:
        log.error(f"Invalid test request: {e}")
        return 1

    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        log.info("Interrupted by user (Ctrl+C).")
    except Exception as e:
        log.critical(f"nodespeed failed with an unexpected error: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
