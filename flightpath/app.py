"""Server entry point: connects to the drone over MAVLink and serves the streaming API."""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Optional

from flightpath.config import Config, ConfigError, load_config
from flightpath.dispatcher import MessageDispatcher
from flightpath.node import MavlinkNode
from flightpath.server import Server
from flightpath.services import (
    ConnectionService,
    ServiceContext,
    TelemetryService,
    connection_service_handler,
    telemetry_service_handler,
)

logger = logging.getLogger("flightpath")


def build_server(config: Config, dispatcher: Optional[MessageDispatcher]) -> Server:
    """Create a server with the connection and telemetry services registered."""
    server = Server(config)
    ctx = ServiceContext(config=server.config, logger=server.logger, dispatcher=dispatcher)

    path, handler = connection_service_handler(ConnectionService(ctx))
    server.register_service(path, handler)

    path, handler = telemetry_service_handler(TelemetryService(ctx))
    server.register_service(path, handler)
    return server


@contextmanager
def _shutdown_on_signals(server: Server) -> Iterator[None]:
    """Stop the server on SIGINT or SIGTERM while the block runs."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handle(signum, frame) -> None:
        logger.info("Shutting down server gracefully...")
        # shutdown() waits for the serving loop, which runs on this thread.
        threading.Thread(target=server.shutdown, daemon=True).start()

    signals = (signal.SIGINT, signal.SIGTERM)
    previous = {sig: signal.signal(sig, handle) for sig in signals}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the server until interrupted; return the process exit status."""
    parser = argparse.ArgumentParser(
        prog="flightpath-server",
        description="Serve drone telemetry received over MAVLink. "
        "Configured through FLIGHTPATH_* environment variables.",
    )
    parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(message)s")

    try:
        config = load_config()
    except ConfigError as exc:
        logger.error("Failed to load configuration: %s", exc)
        return 1

    if config.mavlink.endpoint is None:
        logger.error("Failed to initialize MAVLink node: no endpoint configured")
        return 1

    logger.info("Initializing MAVLink node...")
    try:
        node = MavlinkNode(config.mavlink.endpoint)
    except (OSError, ValueError) as exc:
        logger.error("Failed to initialize MAVLink node: %s", exc)
        return 1
    logger.info("MAVLink node initialized successfully")

    dispatcher = MessageDispatcher(node.events())
    try:
        dispatcher.start()
        server = build_server(config, dispatcher)
        with _shutdown_on_signals(server):
            try:
                server.start()
            except OSError as exc:
                server.logger.error("Server error: %s", exc)
                return 1
        return 0
    finally:
        logger.info("Closing MAVLink node...")
        node.close()
        dispatcher.stop()
        logger.info("Cleanup complete")