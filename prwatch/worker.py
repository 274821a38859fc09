"""Process entry point for the pull request monitor.

``MonitorWorker`` wires configuration, persistence, the GitHub client, the
state store, the event bus, the scheduler and the command service together.
``main`` exposes the service as a small command line tool.
"""

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import Any

from prwatch.config.exceptions import ConfigurationError
from prwatch.config.loader import ConfigurationLoader, load_config
from prwatch.config.models import Config
from prwatch.database.connection import DatabaseConnectionManager
from prwatch.database.persistence import (
    InMemoryPersistence,
    SqlStatePersistence,
    StatePersistence,
)
from prwatch.github.client import GitHubClient
from prwatch.github.exceptions import GitHubError
from prwatch.models.pull_request import TrackedPullRequest
from prwatch.models.settings import Settings
from prwatch.monitor.events import EventBus
from prwatch.monitor.exceptions import MonitorError
from prwatch.monitor.notifications import NotificationForwarder
from prwatch.monitor.scheduler import CycleResult, MonitorScheduler
from prwatch.monitor.service import (
    ERROR_EVENT,
    BoundaryEventEmitter,
    MonitorService,
)
from prwatch.monitor.store import StateStore

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class MonitorWorker:
    """Owns every monitor component for the lifetime of the process."""

    def __init__(self, config_path: str | None = None, config: Config | None = None):
        """Initialize the worker.

        Args:
            config_path: Optional path to a YAML configuration file
            config: Already loaded configuration; takes precedence over the path
        """
        self.config_path = config_path
        self.config = config

        self.persistence: StatePersistence | None = None
        self.github_client: GitHubClient | None = None
        self.store: StateStore | None = None
        self.event_bus = EventBus()
        self.scheduler: MonitorScheduler | None = None
        self.service: MonitorService | None = None
        self.forwarder: NotificationForwarder | None = None
        self.boundary_emitter: BoundaryEventEmitter | None = None

        self.shutdown_event = asyncio.Event()
        self.stats: dict[str, Any] = {"worker_started_at": None}

    async def initialize(self) -> None:
        """Initialize components and restore persisted state."""
        logger.info("Initializing monitor worker...")

        try:
            self._load_configuration()
            await self._initialize_storage()
            self._initialize_github_client()
            self._initialize_monitor()
            self.stats["worker_started_at"] = datetime.now(UTC)
            logger.info("Monitor worker initialized")
        except Exception as e:
            logger.error(f"Failed to initialize monitor worker: {e}")
            await self.cleanup()
            raise

    def _load_configuration(self) -> None:
        if self.config is not None:
            return

        loader = ConfigurationLoader()
        if self.config_path:
            self.config = loader.load_from_file(self.config_path)
        else:
            self.config = loader.auto_load()

    def _require_config(self) -> Config:
        if self.config is None:
            raise RuntimeError("Configuration not loaded. Call initialize() first.")
        return self.config

    def _default_settings(self) -> Settings:
        config = self._require_config()
        return Settings(
            credential=config.github.token,
            refresh_interval_seconds=config.monitor.default_refresh_interval_seconds,
        )

    async def _initialize_storage(self) -> None:
        storage = self._require_config().storage
        defaults = self._default_settings()

        if storage.url is None:
            self.persistence = InMemoryPersistence(settings=defaults)
            logger.info("Using in-memory storage, nothing will be kept on exit")
        else:
            persistence = SqlStatePersistence(
                DatabaseConnectionManager(storage.url, echo=storage.echo),
                default_settings=defaults,
            )
            self.persistence = persistence
            await persistence.initialize()

        self.store = StateStore(self.persistence, settings=defaults)
        await self.store.load()

    def _initialize_github_client(self) -> None:
        config = self._require_config()
        self.github_client = GitHubClient(config.github.to_client_config())

    def _initialize_monitor(self) -> None:
        config = self._require_config()
        if self.store is None or self.github_client is None:
            raise RuntimeError("Storage and GitHub client must be initialized first")

        fetch_timeout = config.github.timeout_seconds
        self.scheduler = MonitorScheduler(
            self.store,
            self.github_client,
            self.event_bus,
            config.monitor.to_scheduler_config(fetch_timeout),
        )
        self.service = MonitorService(
            self.store,
            self.github_client,
            self.scheduler,
            fetch_timeout_seconds=fetch_timeout,
            web_host=config.github.web_host,
        )
        self.forwarder = NotificationForwarder(self.store, self.event_bus)
        self.forwarder.attach()
        self.boundary_emitter = BoundaryEventEmitter(
            self.event_bus, self._log_boundary_event
        )

    @staticmethod
    def _log_boundary_event(name: str, payload: str) -> None:
        if name == ERROR_EVENT:
            logger.warning(f"{name}: {payload}")
        else:
            logger.info(f"{name}: {payload}")

    async def run(self) -> None:
        """Monitor until a shutdown signal arrives."""
        if self.service is None or self.scheduler is None:
            raise RuntimeError("Worker not initialized. Call initialize() first.")
        config = self._require_config()

        self._setup_signal_handlers()
        try:
            if config.monitor.autostart:
                await self.service.start()
            else:
                logger.info("Autostart disabled, waiting for a start command")

            await self.shutdown_event.wait()
        except asyncio.CancelledError:
            logger.info("Worker cancelled")
            raise
        finally:
            self._remove_signal_handlers()
            await self.scheduler.stop()
            await self.scheduler.wait_closed()
            logger.info("Monitor worker stopped")

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown.

        Handlers run on the event loop so setting the shutdown event wakes
        ``run`` immediately.
        """
        loop = asyncio.get_running_loop()

        def signal_handler(sig: signal.Signals) -> None:
            logger.info(f"Received signal {sig.name}, initiating shutdown...")
            self.shutdown_event.set()

        for sig in SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, signal_handler, sig)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(sig)

    async def shutdown(self) -> None:
        """Initiate graceful shutdown."""
        logger.info("Shutting down monitor worker...")
        self.shutdown_event.set()

    async def cleanup(self) -> None:
        """Release network and database resources."""
        if self.scheduler is not None and self.scheduler.is_running:
            await self.scheduler.stop()
            await self.scheduler.wait_closed()

        if self.forwarder is not None:
            self.forwarder.detach()
        if self.boundary_emitter is not None:
            self.boundary_emitter.close()

        try:
            if self.github_client is not None:
                await self.github_client.close()
            if self.persistence is not None:
                await self.persistence.close()
            logger.info("Cleanup completed")
        except Exception as e:
            logger.error(f"Error during cleanup: {e}")

    def get_health_status(self) -> dict[str, Any]:
        """Summarize worker state."""
        return {
            "running": self.scheduler.is_running if self.scheduler else False,
            "generation": self.scheduler.generation if self.scheduler else 0,
            "worker": self.stats,
            "scheduler": self.scheduler.stats if self.scheduler else {},
            "events_published": self.event_bus.published_count,
        }


def _format_entry(entry: TrackedPullRequest) -> str:
    state = "merged" if entry.merged else entry.state.value
    return f"#{entry.number:<6} {state:<7} {entry.owner}/{entry.repo}  {entry.title}"


def _print_entries(entries: list[TrackedPullRequest], as_json: bool = False) -> None:
    if as_json:
        print(json.dumps([entry.to_dict() for entry in entries], indent=2))
        return
    if not entries:
        print("No pull requests tracked")
        return
    for entry in entries:
        print(_format_entry(entry))


def _print_cycle(result: CycleResult) -> None:
    print(
        f"Checked {result.checked}, closed {len(result.closed)}, "
        f"failed {len(result.failures)}, skipped {result.skipped}"
    )
    for entry in result.closed:
        print(f"closed: {_format_entry(entry)}")
    for failure in result.failures:
        print(f"error: {failure.message}")


def build_parser() -> argparse.ArgumentParser:
    """Command line parser."""
    parser = argparse.ArgumentParser(
        prog="prwatch", description="Watch GitHub pull requests until they close"
    )
    parser.add_argument("--config", help="Configuration file path")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level (defaults to system.log_level, or DEBUG in debug_mode)",
    )

    commands = parser.add_subparsers(dest="command")
    commands.add_parser("run", help="Monitor until interrupted (default)")

    add = commands.add_parser("add", help="Track a pull request")
    add.add_argument("url", help="Pull request URL")

    remove = commands.add_parser("remove", help="Stop tracking a pull request")
    remove.add_argument("number", type=int, help="Pull request number")
    remove.add_argument("--owner", help="Only remove entries of this owner")
    remove.add_argument("--repo", help="Only remove entries of this repository")

    list_cmd = commands.add_parser("list", help="Show tracked pull requests")
    list_cmd.add_argument("--json", action="store_true", help="Print JSON")

    token = commands.add_parser("set-token", help="Store the GitHub access token")
    token.add_argument("token", help="Access token (empty string clears it)")

    commands.add_parser("check", help="Run one poll cycle and exit")
    return parser


async def run_command(worker: MonitorWorker, args: argparse.Namespace) -> int:
    """Execute one CLI command against an initialized worker.

    Returns:
        Process exit code
    """
    service = worker.service
    if service is None or worker.scheduler is None:
        raise RuntimeError("Worker not initialized. Call initialize() first.")

    command = args.command or "run"
    if command == "run":
        await worker.run()
    elif command == "add":
        _print_entries(await service.add_tracked(args.url))
    elif command == "remove":
        removed = await service.remove_tracked(args.number, args.owner, args.repo)
        print(f"Removed {len(removed)} entries")
    elif command == "list":
        _print_entries(await service.list_tracked(), as_json=args.json)
    elif command == "set-token":
        await service.set_credential(args.token)
        print("Token stored" if await service.has_credential() else "Token cleared")
    elif command == "check":
        result = await worker.scheduler.run_cycle()
        _print_cycle(result)
        return 1 if result.failures else 0
    return 0


def resolve_log_level(args: argparse.Namespace, config: Config) -> str:
    """Pick the log level: command line, then debug mode, then configuration."""
    if args.log_level:
        return args.log_level.upper()
    if config.system.debug_mode:
        return "DEBUG"
    return config.system.log_level.value


async def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    log_level = resolve_log_level(args, config)
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    worker = MonitorWorker(config=config)
    try:
        await worker.initialize()
        return await run_command(worker, args)
    except (MonitorError, GitHubError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    finally:
        await worker.cleanup()


def cli() -> None:
    """Console script entry point."""
    with contextlib.suppress(KeyboardInterrupt):
        sys.exit(asyncio.run(main()))
