from __future__ import annotations
from enum import Enum
import asyncio
import logging
import signal
from .backend import Backend
from .config import Config
from .protocol import client_handler

logger = logging.getLogger(__name__)

STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)
SHUTDOWN_TIMEOUT = 5.0


class ServerState(Enum):
    STOPPED = "stopped"
    LISTENING = "listening"
    STOPPING = "stopping"


class BridgeServer:
    """
    Runs the LDAP front end until SIGINT or SIGTERM arrives.

    Connections are accepted by the event loop in the background while
    `run` waits for the stop request. Stopping closes the listening sockets,
    which releases the port at once, then gives connections still open up
    to `shutdown_timeout` seconds before they are dropped with the event
    loop.
    """

    def __init__(
        self,
        config: Config,
        backend: Backend,
        shutdown_timeout: float = SHUTDOWN_TIMEOUT,
    ) -> None:
        self.config = config
        self.backend = backend
        self.shutdown_timeout = shutdown_timeout
        self.state = ServerState.STOPPED
        self.sockets: list[tuple] = []
        self._stop = asyncio.Event()

    def request_stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        if self.state is not ServerState.STOPPED:
            raise RuntimeError(f"server is {self.state.value}")
        loop = asyncio.get_running_loop()
        host, port = self.config.listen_address()
        for signum in STOP_SIGNALS:
            loop.add_signal_handler(signum, self.request_stop)
        try:
            server = await asyncio.start_server(
                client_handler(self.config, self.backend), host, port
            )
            self.sockets = [sock.getsockname() for sock in server.sockets]
            self.state = ServerState.LISTENING
            logger.info("ldap bridge listening on %s", self.sockets)

            await self._stop.wait()

            self.state = ServerState.STOPPING
            logger.info("stopping ldap bridge")
            server.close()
            try:
                await asyncio.wait_for(
                    server.wait_closed(), self.shutdown_timeout
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "connections still open after %.1fs, dropping them",
                    self.shutdown_timeout,
                )
        finally:
            for signum in STOP_SIGNALS:
                loop.remove_signal_handler(signum)
            self.state = ServerState.STOPPED
        logger.info("ldap bridge stopped")
