"""
Entry point and event loop for dockertop.

This module wires the producers, the state machine and the front end
together and runs the single consumer of the event channel.

Architecture:
  1. Load configuration, route logging to the rotating log file
  2. Connect every configured host concurrently; continue as soon as one
     answers (HostConnectionManager)
  3. Build AppState with a LogStreamer and an ActionExecutor
  4. Run the Textual front end; its worker runs run_event_loop():
     - wait up to 0.5s for one event, then drain everything already queued
     - redraw when an event asked for it, otherwise at most every 0.5s
  5. On exit: stop the log tasks, cancel actions, close the channel, cancel
     and await every host task, close the Docker clients

Key Functions:
  - process_events(): one coalescing batch
  - run_event_loop(): batches + draw throttling until quit
  - run_async(): full application lifecycle
  - main(): console entry point
"""

import argparse
import asyncio
import logging
import sys
import time
from typing import Callable, List, Optional

from . import __version__, configure_logging
from .actions import ActionExecutor
from .backend import NoHostsConnectedError
from .config import AppConfig, EngineConfig, config_manager
from .events import EventChannel
from .logs import LogStreamer
from .monitor import ContainerMonitor, HostConnectionManager
from .state import AppState

logger = logging.getLogger(__name__)

DEFAULT_DRAW_INTERVAL = 0.5


def _apply(state: AppState, event) -> bool:
    try:
        return state.handle_event(event)
    except Exception as e:
        # One bad event must not take the dashboard down
        logger.error(f"Error handling {type(event).__name__}: {e}", exc_info=True)
        return True


async def process_events(channel: EventChannel, state: AppState,
                         timeout: float = DEFAULT_DRAW_INTERVAL) -> bool:
    """
    Apply one batch of events.

    Waits up to `timeout` for the first event, then applies everything already
    queued without waiting again. Returns True if any event asked for a redraw.
    """
    try:
        event = await asyncio.wait_for(channel.recv(), timeout)
    except asyncio.TimeoutError:
        return False

    if event is None:
        state.should_quit = True
        return False

    force_draw = _apply(state, event)
    while not state.should_quit:
        event = channel.try_recv()
        if event is None:
            break
        force_draw = _apply(state, event) or force_draw

    if channel.closed and channel.qsize() == 0:
        state.should_quit = True
    return force_draw


async def run_event_loop(channel: EventChannel, state: AppState,
                         draw: Callable[[], None],
                         draw_interval: float = DEFAULT_DRAW_INTERVAL,
                         clock: Callable[[], float] = time.monotonic) -> None:
    """Consume events and redraw until the state asks to quit."""
    draw()
    last_draw = clock()
    while not state.should_quit:
        force_draw = await process_events(channel, state, draw_interval)
        if state.should_quit:
            break
        now = clock()
        if force_draw or now - last_draw >= draw_interval:
            draw()
            last_draw = now
    logger.info("Event loop finished")


def build_monitor_factory(engine: EngineConfig):
    def factory(backend, channel):
        return ContainerMonitor(
            backend, channel,
            stats_interval=engine.stats_interval,
            retry_delay=engine.event_retry_delay,
        )
    return factory


async def run_async(config: AppConfig) -> None:
    """Connect, run the dashboard, tear everything down."""
    from .tui import DashboardApp

    engine = config.engine
    channel = EventChannel(engine.channel_capacity)
    manager = HostConnectionManager(
        config.hosts,
        channel,
        cert_path=config.docker.tls_cert_path,
        ping_timeout=engine.ping_timeout,
        connect_timeout=engine.connect_timeout,
        client_timeout=engine.client_timeout,
        monitor_factory=build_monitor_factory(engine),
    )
    state: Optional[AppState] = None
    executor = ActionExecutor(channel, timeout=engine.action_timeout)

    try:
        await manager.start()

        log_streamer = LogStreamer(
            channel,
            tail_lines=engine.log_tail_lines,
            batch_size=engine.log_batch_size,
            window_buffer=engine.window_buffer,
            fallback_window=engine.fallback_window,
            max_widenings=engine.max_widenings,
        )
        state = AppState(channel, log_streamer=log_streamer,
                         action_executor=executor, engine=engine)
        app = DashboardApp(channel, state, keybindings=config.keybindings,
                           draw_interval=engine.draw_interval)
        await app.run_async()
    finally:
        logger.info("Shutting down")
        if state is not None:
            state.shutdown()
        executor.cancel_all()
        channel.close()
        await manager.aclose()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="dockertop",
        description="Real-time multi-host Docker container monitor",
    )
    parser.add_argument(
        "-H", "--host", dest="hosts", action="append", default=[],
        help="Docker host to monitor: local, ssh://user@host, tcp://host:port "
             "or tls://host:port (repeatable, overrides the config file)",
    )
    parser.add_argument("--config", help="Path to a YAML configuration file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config = config_manager.load_config(args.config).merge_with_cli_hosts(args.hosts)

    configure_logging(
        level=config_manager.get_log_level(),
        file_path=config_manager.get_custom_log_path(),
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count,
    )
    logger.info(f"Starting dockertop {__version__} with hosts "
                f"{[h.host for h in config.hosts]}")

    try:
        asyncio.run(run_async(config))
    except NoHostsConnectedError as e:
        logger.critical(str(e))
        print(f"dockertop: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt caught, exiting...")
    return 0
