"""Fill feed supervisor: restart loop, liveness monitor and servers.

Entry point: python -m fillfeed [--log-level INFO] [--mode dev]

Architecture:
- FeedSupervisor owns the listener registry, metrics registry and fan-out,
  which outlive individual feed instances
- Each cycle builds a fresh RPC client + FillFeed and runs parse_logs alongside
  the liveness monitor; whichever fails first ends the cycle
- On error the feed is stopped (bounded wait) and rebuilt after a fixed backoff;
  a feed that cannot be stopped is fatal
- Listener websocket server and metrics endpoint run as uvicorn tasks
- SIGINT/SIGTERM: request stop and leave the loop
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import os
import signal
from collections.abc import Callable
from typing import Any

from prometheus_client import CollectorRegistry

from fillfeed.config.settings import ConfigError, FeedConfig, get_config
from fillfeed.connectors.solana_rpc import SolanaRpcClient
from fillfeed.core.fanout import EventFanout, ListenerRegistry, PrometheusFillCounter
from fillfeed.core.fill_feed import FillFeed
from fillfeed.dashboard.listener_server import create_listener_app
from fillfeed.dashboard.metrics_server import create_metrics_app, create_metrics_registry
from fillfeed.utils.logger import get_logger, setup_logging

logger = get_logger("supervisor")


class NoUpdatesDetected(Exception):
    """The feed has not completed a poll cycle within the stale timeout."""


async def monitor_feed(feed: FillFeed, stale_timeout_s: float, check_interval_s: float) -> None:
    """Raise NoUpdatesDetected once the feed stalls. Never returns otherwise."""
    while True:
        await asyncio.sleep(check_interval_s)
        since = feed.seconds_since_last_update()
        if since > stale_timeout_s:
            raise NoUpdatesDetected(
                f"fill feed has had no updates since {stale_timeout_s:.0f} seconds ago"
            )
        logger.debug("feed_alive", seconds_since_update=round(since, 1))


class FeedSupervisor:
    """Keeps a FillFeed running forever.

    Lifecycle: ``__init__`` -> ``start()`` -> runs until a shutdown signal or a
    fatal teardown failure.
    """

    def __init__(
        self,
        config: FeedConfig | None = None,
        rpc_factory: Callable[[str], Any] | None = None,
        metrics_registry: CollectorRegistry | None = None,
    ) -> None:
        self._config = config or get_config()
        self._rpc_url = self._config.require_rpc_url()
        self._rpc_factory = rpc_factory or self._default_rpc

        self._listeners = ListenerRegistry(queue_size=self._config.listener.queue_size)
        self._metrics_registry = metrics_registry or create_metrics_registry()
        self._fanout = EventFanout(self._listeners, PrometheusFillCounter(self._metrics_registry))

        self._shutdown_event = asyncio.Event()
        self._feed: FillFeed | None = None
        self._servers: list[Any] = []
        self._server_tasks: list[asyncio.Task[None]] = []
        self._restarts = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def listeners(self) -> ListenerRegistry:
        return self._listeners

    @property
    def restarts(self) -> int:
        return self._restarts

    async def start(self) -> None:
        """Start servers and run the restart loop until shutdown."""
        logger.info("starting_feed", program_id=self._config.feed.program_id)
        self._install_signal_handlers()
        self._start_servers()
        try:
            await self.run()
        finally:
            await self._stop_servers()
        logger.info("supervisor_stopped", restarts=self._restarts)

    async def run(self) -> None:
        """Restart loop. Returns only after shutdown is requested.

        Raises:
            ShutdownTimeout: A failing feed could not be stopped (fatal).
        """
        sup_cfg = self._config.supervisor
        while not self._shutdown_event.is_set():
            await self._run_cycle()
            if self._shutdown_event.is_set():
                break
            self._restarts += 1
            logger.warning(
                "feed_restarting",
                backoff_s=sup_cfg.restart_backoff_s,
                restarts=self._restarts,
            )
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._shutdown_event.wait(), sup_cfg.restart_backoff_s)

    def request_shutdown(self) -> None:
        """Stop the current feed and leave the restart loop."""
        self._shutdown_event.set()
        if self._feed is not None:
            self._feed.request_stop()

    # ------------------------------------------------------------------
    # Feed cycle
    # ------------------------------------------------------------------

    def _default_rpc(self, rpc_url: str) -> SolanaRpcClient:
        feed_cfg = self._config.feed
        return SolanaRpcClient(
            rpc_url,
            commitment=feed_cfg.transaction_commitment,
            timeout_s=feed_cfg.request_timeout_s,
        )

    def _build_feed(self, rpc: Any) -> FillFeed:
        feed_cfg = self._config.feed
        return FillFeed(
            rpc,
            self._fanout,
            program_id=feed_cfg.program_id,
            poll_interval_s=feed_cfg.poll_interval_s,
            signature_commitment=feed_cfg.signature_commitment,
            page_limit=feed_cfg.signature_page_limit,
            dedup_max_size=feed_cfg.dedup_max_size,
            target_market=feed_cfg.target_market,
        )

    async def _run_cycle(self) -> None:
        """Run one feed until it fails or is stopped, then tear it down."""
        mon_cfg = self._config.monitor
        logger.info("setting_up_connection")
        rpc = self._rpc_factory(self._rpc_url)
        feed = self._build_feed(rpc)
        self._feed = feed

        logger.info("parsing_logs")
        feed_task = asyncio.create_task(feed.parse_logs(), name="parse_logs")
        monitor_task = asyncio.create_task(
            monitor_feed(feed, mon_cfg.stale_timeout_s, mon_cfg.check_interval_s),
            name="liveness_monitor",
        )
        try:
            done, _ = await asyncio.wait(
                {feed_task, monitor_task}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in done:
                task.result()
        except Exception as e:
            logger.error("feed_error", error=str(e), error_type=type(e).__name__)
            logger.info("shutting_down_feed_before_restart")
            # ShutdownTimeout escapes here and is fatal
            await feed.stop_parse_logs(self._config.supervisor.stop_timeout_s)
            logger.info("feed_shut_down")
        finally:
            if not monitor_task.done():
                monitor_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await monitor_task

        self._reap(feed_task)
        await rpc.close()
        self._feed = None

    @staticmethod
    def _reap(task: asyncio.Task[None]) -> None:
        """Collect the outcome of a finished parse_logs task."""
        if not task.done() or task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("parse_logs_exited_with_error", error=str(exc))

    # ------------------------------------------------------------------
    # Servers
    # ------------------------------------------------------------------

    def _start_servers(self) -> None:
        lst_cfg = self._config.listener
        apps = [("listener_server", create_listener_app(self._listeners), lst_cfg.host, lst_cfg.port)]
        met_cfg = self._config.metrics
        if met_cfg.enabled:
            apps.append(
                ("metrics_server", create_metrics_app(self._metrics_registry), met_cfg.host, met_cfg.port)
            )

        for name, app, host, port in apps:
            self._server_tasks.append(
                asyncio.create_task(self._run_server(app, host, port), name=name)
            )
            logger.info("server_started", server=name, host=host, port=port)

    async def _run_server(self, app: Any, host: str, port: int) -> None:
        """Run a FastAPI app in the background."""
        import uvicorn

        config = uvicorn.Config(app, host=host, port=port, log_level="warning")
        server = uvicorn.Server(config)
        self._servers.append(server)
        await server.serve()

    async def _stop_servers(self) -> None:
        self._listeners.close_all()
        for server in self._servers:
            server.should_exit = True
        for task in self._server_tasks:
            try:
                await asyncio.wait_for(task, timeout=5)
            except TimeoutError:
                logger.warning("server_stop_timeout", server=task.get_name())
            except (OSError, SystemExit) as e:
                logger.warning("server_stop_failed", server=task.get_name(), error=str(e))
        self._server_tasks.clear()
        self._servers.clear()

    # ------------------------------------------------------------------
    # Signal handling
    # ------------------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        """Install SIGINT/SIGTERM handlers to trigger graceful shutdown."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._on_signal, sig)

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info("shutdown_signal_received", signal=sig.name)
        self.request_shutdown()


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """CLI entry point for the fill feed."""
    parser = argparse.ArgumentParser(description="Manifest fill feed")
    parser.add_argument("--log-level", default=None)
    parser.add_argument("--mode", default=None, help="Config overlay: settings.{mode}.yaml")
    args = parser.parse_args()

    if args.mode:
        os.environ["MODE"] = args.mode
        get_config.cache_clear()
    config = get_config()
    setup_logging(log_level=args.log_level or config.log_level)

    try:
        supervisor = FeedSupervisor(config)
    except ConfigError as e:
        logger.critical("config_error", error=str(e))
        raise SystemExit(1) from e

    try:
        asyncio.run(supervisor.start())
    except Exception:
        logger.critical("fatal_error")
        raise


if __name__ == "__main__":
    main()
