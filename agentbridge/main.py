from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from agentbridge.adapters.web.server import BridgeServer
from agentbridge.config import Config
from agentbridge.core.commands import Commands
from agentbridge.core.events import EventBus
from agentbridge.core.registry import SessionRegistry
from agentbridge.storage.project_store import ProjectError, ProjectStore
from agentbridge.storage.session_store import SessionStore

logger = logging.getLogger("agentbridge")


def _setup_logging(log_file: str) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=handlers,
    )


async def main(config: Config) -> None:
    logger.info("agentbridge starting (data dir: %s)", config.data_dir)
    config.data_dir.mkdir(parents=True, exist_ok=True)

    # -- Core infrastructure --
    event_bus = EventBus()
    project_store = ProjectStore(config.data_dir)
    session_store = SessionStore(config.data_dir)
    registry = SessionRegistry(
        config, session_store, project_store=project_store, event_bus=event_bus,
    )
    commands = Commands(registry, project_store)
    server = BridgeServer(
        registry, commands, host=config.host, port=config.port, log_file=config.log_file,
    )

    stop_event = asyncio.Event()

    def handle_signal() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    # The server must listen before restore: resumed Claude CLIs dial back in
    await server.start()
    restored = await registry.restore_saved()
    if restored:
        logger.info("Restoring %d saved agent(s)", len(restored))
    logger.info("agentbridge is running. Press Ctrl+C to stop.")

    await stop_event.wait()

    logger.info("Shutting down...")
    await registry.shutdown()
    await server.stop()
    logger.info("agentbridge stopped.")


# -- Project registry CLI ------------------------------------------------------

async def _project_command(args: argparse.Namespace, config: Config) -> int:
    store = ProjectStore(config.data_dir)
    if args.project_command == "add":
        try:
            project = await store.register(args.path, args.name)
        except ProjectError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        print(f"Registered {project['name']} ({project['id']}): {project['path']}")
        return 0

    if args.project_command == "remove":
        if not store.unregister(args.project_id):
            print(f"Unknown project: {args.project_id}", file=sys.stderr)
            return 1
        print(f"Removed project {args.project_id}")
        return 0

    projects = store.list_all()
    if not projects:
        print("No projects registered.")
    for p in projects:
        print(f"{p['id']}  {p['name']:<24} {p['path']}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentbridge",
        description="Run the agent bridge, or manage registered projects.",
    )
    sub = parser.add_subparsers(dest="command")

    project = sub.add_parser("project", help="Manage registered projects")
    project_sub = project.add_subparsers(dest="project_command", required=True)
    add = project_sub.add_parser("add", help="Register a git repository")
    add.add_argument("path")
    add.add_argument("--name", default=None)
    project_sub.add_parser("list", help="List registered projects")
    remove = project_sub.add_parser("remove", help="Unregister a project")
    remove.add_argument("project_id")
    return parser


def run(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)
    config = Config.from_env()

    if args.command == "project":
        logging.basicConfig(level=logging.WARNING)
        sys.exit(asyncio.run(_project_command(args, config)))

    _setup_logging(config.log_file)
    try:
        asyncio.run(main(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
