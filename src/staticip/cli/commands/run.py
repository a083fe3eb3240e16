"""Controller manager entry point (`staticip run`)."""

import asyncio
import signal
import socket
from typing import Annotated

import typer

from staticip.config import config
from staticip.ipam.exceptions import TransientError
from staticip.manager import ControllerManager, create_store
from staticip.models.enums import LogLevel, StoreBackend
from staticip.server import bind_socket, create_app, create_server
from staticip.utils.logger import configure_logging, get_logger

logger = get_logger(__name__)


async def serve(sock: socket.socket) -> int:
    """
    Run store, manager and metrics server until a signal arrives.

    Returns:
        Process exit code.
    """
    store = create_store(config)
    try:
        await store.open()
    except TransientError as e:
        logger.error(f"Cannot connect to resource store: {e}")
        return 1

    manager = ControllerManager(store, config)
    server = create_server(create_app(manager), config.LOG_LEVEL)
    server_task = asyncio.create_task(server.serve(sockets=[sock]), name="metrics")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    exit_code = 0
    start_task = asyncio.create_task(manager.start(), name="manager_start")
    stop_task = asyncio.create_task(stop.wait(), name="signal")
    stopped_task = asyncio.create_task(manager.stopped.wait(), name="manager")

    try:
        done, _ = await asyncio.wait(
            {start_task, stop_task, server_task}, return_when=asyncio.FIRST_COMPLETED
        )
        if start_task in done and start_task.exception() is not None:
            error = start_task.exception()
            logger.error(f"Controller manager failed to start: {error}")
            exit_code = 1
        elif start_task in done:
            logger.info("Controller manager running")
            done, _ = await asyncio.wait(
                {stop_task, server_task, stopped_task},
                return_when=asyncio.FIRST_COMPLETED,
            )

        if stopped_task in done and not stop.is_set():
            # Leadership lost
            exit_code = 1
        elif server_task in done:
            logger.error("Metrics server exited unexpectedly")
            exit_code = 1
        elif stop.is_set():
            logger.info("Shutdown signal received")
    finally:
        waiters = (start_task, stop_task, stopped_task)
        for task in waiters:
            task.cancel()
        await asyncio.gather(*waiters, return_exceptions=True)

        await manager.stop()
        server.should_exit = True
        await asyncio.gather(server_task, return_exceptions=True)
        await store.close()

    return exit_code


def run(
    namespace: Annotated[
        str,
        typer.Option(
            "--namespace",
            help="Namespace of watched owners (default: all namespaces)",
            envvar="STATICIP_NAMESPACE",
        ),
    ] = "",
    sync_period: Annotated[
        float,
        typer.Option(
            "--sync-period",
            help="Seconds between forced re-reconciliations of every object",
            min=1.0,
        ),
    ] = 600.0,
    metrics_addr: Annotated[
        str,
        typer.Option("--metrics-addr", help="Address the metrics endpoint binds to"),
    ] = ":8080",
    enable_leader_election: Annotated[
        bool,
        typer.Option(
            "--enable-leader-election",
            help="Only one active controller manager at a time",
        ),
    ] = False,
    max_concurrency: Annotated[
        int,
        typer.Option("--max-concurrency", help="Workers per controller", min=1),
    ] = 2,
    store_backend: Annotated[
        StoreBackend,
        typer.Option("--store", help="Resource store backend"),
    ] = StoreBackend.SQLITE,
    log_level: Annotated[
        LogLevel,
        typer.Option(
            "--log-level", help="Logging verbosity", envvar="STATICIP_LOG_LEVEL"
        ),
    ] = LogLevel.INFO,
    log_file: Annotated[
        str,
        typer.Option("--log-file", help="Also write logs to this file"),
    ] = "",
):
    """Run the static IP controller manager."""
    config.NAMESPACE = namespace
    config.SYNC_PERIOD_SECONDS = sync_period
    config.METRICS_ADDR = metrics_addr
    config.ENABLE_LEADER_ELECTION = enable_leader_election
    config.MAX_CONCURRENCY = max_concurrency
    config.STORE_BACKEND = store_backend
    config.LOG_LEVEL = log_level
    config.LOG_FILE = log_file

    configure_logging(config.LOG_LEVEL, config.LOG_FILE)

    try:
        host, port = config.get_metrics_bind()
        sock = bind_socket(host, port)
    except (ValueError, OSError) as e:
        logger.error(f"Cannot bind metrics address {config.METRICS_ADDR}: {e}")
        raise typer.Exit(1)

    logger.info(
        f"Starting controller manager (store: {config.STORE_BACKEND.value}, "
        f"metrics: {host}:{port}, workers: {config.MAX_CONCURRENCY})"
    )
    try:
        exit_code = asyncio.run(serve(sock))
    finally:
        sock.close()

    raise typer.Exit(exit_code)
