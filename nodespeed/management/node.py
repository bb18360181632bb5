# nodespeed/management/node.py

import asyncio
import logging
from typing import Optional

from ..core.driver import MeasurementDriver, Report
from ..core.errors import TransportError
from ..core.message import Message
from ..core.naming import Address, ProcessId
from ..core.request import TestRequest, dump_test_request
from ..core.responder import Responder
from ..interfaces.router import Router, TcpRouter
from .config import NodeConfig

log = logging.getLogger(__name__)

# Process that hands test commands to the driver, like a user typing at the node's terminal
TERMINAL_PROCESS = "terminal"


class Node:
    """
    Hosts the responder and driver processes of one node on a router.

    By default the node owns a TcpRouter built from its config. A router
    passed in (e.g. a LocalRouter shared by several simulated nodes) is
    used as-is and left running on stop().
    """

    def __init__(self, config: NodeConfig, router: Optional[Router] = None):
        self.config = config
        self._owns_router = router is None
        self.router: Router = router or TcpRouter(config.node_id, config.host, config.port, config.peers)
        self.responder: Optional[Responder] = None
        self._responder_task: Optional[asyncio.Task] = None
        log.info(f"Node '{config.node_id}' initialized.")

    async def start(self, with_responder: bool = True):
        log.info(f"Node '{self.config.node_id}': Starting...")
        await self.router.start()
        if with_responder:
            transport = self.router.attach(self.config.responder_address)
            self.responder = Responder(transport)
            self._responder_task = asyncio.create_task(
                self.responder.run(), name=f"responder_{self.config.node_id}")
        log.info(f"Node '{self.config.node_id}' started.")

    async def stop(self):
        log.info(f"Node '{self.config.node_id}': Stopping...")
        if self._responder_task:
            self._responder_task.cancel()
            await asyncio.gather(self._responder_task, return_exceptions=True)
            self._responder_task = None
            self.router.detach(self.config.responder_address)
        if self._owns_router:
            await self.router.stop()
        log.info(f"Node '{self.config.node_id}' stopped.")

    async def serve_forever(self):
        """Waits on the responder until the node is torn down."""
        if not self._responder_task:
            raise RuntimeError("Node was started without a responder")
        await self._responder_task

    async def run_test(self, request: TestRequest, report: Report = print):
        """Spawns the driver, hands it `request` from the local terminal and waits for it to finish."""
        driver_address = self.config.driver_address
        terminal_address = Address(self.config.node_id,
                                   ProcessId(TERMINAL_PROCESS, self.config.package, self.config.publisher))
        driver_transport = self.router.attach(driver_address)
        terminal = self.router.attach(terminal_address)
        try:
            driver = MeasurementDriver(
                driver_transport,
                responder_name=self.config.responder_name,
                timeout=self.config.timeout,
                report=report,
            )
            driver_task = asyncio.create_task(driver.run(), name=f"driver_{self.config.node_id}")
            try:
                await terminal.send(Message.request(terminal_address, driver_address,
                                                    body=dump_test_request(request)))
            except TransportError:
                driver_task.cancel()
                await asyncio.gather(driver_task, return_exceptions=True)
                raise
            await driver_task
        finally:
            self.router.detach(terminal_address)
            self.router.detach(driver_address)

    def __repr__(self) -> str:
        return f"Node(id='{self.config.node_id}', router={self.router!r})"
