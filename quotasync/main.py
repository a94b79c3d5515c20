"""Main entry point for the quotasync CLI.

Sets up the Typer CLI application, performs dependency injection (Composition Root),
defines CLI commands, and delegates execution to the CommandHandler.
"""

import asyncio
import dataclasses
import logging
import tempfile
from typing import Annotated, Any, Coroutine, Dict, Optional, Tuple

import typer

# --- Core Layer ---
from quotasync.core.command_handler import CommandHandler
from quotasync.core.sync_engine import SyncEngine

# --- Domain Layer ---
from quotasync.domain.interfaces.remote_store import RemoteStore
from quotasync.domain.interfaces.state_store import StateStore
from quotasync.domain.models.common import ActionType, MembershipTier, UserId
from quotasync.domain.models.config import SyncConfig
from quotasync.domain.models.errors import ConfigurationError

# --- Infrastructure Layer ---
# Config
from quotasync.infrastructure.config.settings import (
    get_config, get_remote_api_token, get_remote_base_url, get_remote_timeout,
    get_state_backend, get_state_directory, get_user_id, get_user_tier,
    load_configuration, load_sync_config, set_config,
)
# UI
from quotasync.infrastructure.cli.display import ConsoleDisplay
# Persistence
from quotasync.infrastructure.persistence.diskcache_store import DiskCacheStateStore
from quotasync.infrastructure.persistence.json_file_store import JsonFileStateStore
# Remote
from quotasync.infrastructure.remote.http_remote import HttpRemoteStore
from quotasync.infrastructure.remote.memory_remote import InMemoryRemoteStore
# Monitoring
from quotasync.infrastructure.monitoring.logger_setup import level_from_name, setup_logging

logger = logging.getLogger(__name__)

# Short delays so a simulated outage resolves in a few seconds
SIMULATION_CONFIG = dict(base_delay_ms=100, max_delay_ms=800, max_attempts=5, circuit_failure_threshold=10)

# --- Adapter Factories ---

def build_remote_store(tier: MembershipTier) -> RemoteStore:
    """HTTP remote if `remote.base_url` is configured, otherwise the in-memory sandbox."""
    base_url = get_remote_base_url()
    if base_url:
        return HttpRemoteStore(base_url, api_token=get_remote_api_token(), timeout=get_remote_timeout())
    logger.warning("No 'remote.base_url' configured; using the in-memory remote store.")
    return InMemoryRemoteStore(tier=tier)

def build_state_store() -> StateStore:
    directory = get_state_directory()
    if get_state_backend() == 'json':
        return JsonFileStateStore(directory)
    return DiskCacheStateStore(directory)

# --- Dependency Injection Container (Manual) ---

def create_dependencies() -> Dict[str, Any]:
    """Creates and wires up all dependencies for the application.

    This acts as the Composition Root. Engines are built per command so each
    command owns its event loop, transport and state store handles.
    """
    dependencies: Dict[str, Any] = {}

    # 1. Load Configuration First
    load_configuration()
    setup_logging(
        log_level=level_from_name(get_config('logging.level'), logging.WARNING),
        log_format=get_config('logging.format', '%(asctime)s - %(name)s - %(levelname)s - %(message)s'),
        log_file=get_config('logging.file'),
    )
    logger.info("Configuration and logging initialized.")

    # 2. UI
    dependencies['ui'] = ConsoleDisplay()

    # 3. Engine configuration
    config = load_sync_config()
    user_id = get_user_id()
    tier = get_user_tier()
    dependencies['config'] = config

    def engine_factory() -> SyncEngine:
        return SyncEngine(
            config=config,
            remote_store=build_remote_store(tier),
            state_store=build_state_store(),
            user_id=user_id,
            tier=tier,
        )

    dependencies['engine_factory'] = engine_factory

    # 4. Command Handler
    dependencies['command_handler'] = CommandHandler(
        engine_factory=engine_factory,
        ui=dependencies['ui'],
    )
    logger.info(f"Dependencies initialized for user '{user_id}' (tier={tier}).")
    return dependencies

_dependencies: Optional[Dict[str, Any]] = None

def get_dependencies() -> Dict[str, Any]:
    """Returns the wired dependencies, creating them on first use."""
    global _dependencies
    if _dependencies is None:
        try:
            _dependencies = create_dependencies()
        except ConfigurationError as e:
            logger.error(f"Invalid configuration: {e}")
            ConsoleDisplay().display_error(f"Configuration error: {e}")
            raise typer.Exit(code=2)
    return _dependencies

def reset_dependencies() -> None:
    """Forgets wired dependencies (configuration changed, tests)."""
    global _dependencies
    _dependencies = None

def get_handler() -> CommandHandler:
    return get_dependencies()['command_handler']

# --- Typer App Definition ---
app = typer.Typer(
    name="quotasync",
    help="quotasync: local usage-quota cache with batched, retrying sync to a remote store.",
    add_completion=False,
)

# --- Helper for Running Async Commands ---
def run_async(coro: Coroutine[Any, Any, Any]) -> Any:
    """Runs an async handler from a sync Typer command."""
    try:
        return asyncio.run(coro)
    except Exception as e:
        logger.error(f"Error executing async command: {e}", exc_info=True)
        get_dependencies()['ui'].display_error(f"Command execution failed: {e}")
        raise typer.Exit(code=1)

# --- CLI Commands ---

@app.command()
def status():
    """Show local usage counters, pending actions and sync status."""
    run_async(get_handler().handle_status())

@app.command()
def act(
    action_type: Annotated[str, typer.Argument(help="Action type, e.g. 'swipe', 'like', 'match', 'message'.")],
    count: Annotated[int, typer.Option("--count", "-n", min=1, help="Number of actions to record.")] = 1,
    payload: Annotated[Optional[str], typer.Option("--payload", "-p", help="JSON object attached to each action.")] = None,
):
    """Record actions (reserving quota) and deliver them to the remote store."""
    outcome = run_async(get_handler().handle_act(action_type, count, payload))
    if outcome and outcome["allowed"] == 0 and outcome["denied"] > 0:
        raise typer.Exit(code=1)

@app.command()
def sync(
    force: Annotated[bool, typer.Option("--force", "-f", help="Sync even if the last sync is recent.")] = False,
):
    """Pull authoritative counters, merge them and flush pending queues."""
    run_async(get_handler().handle_sync(force))

@app.command()
def flush():
    """Deliver every pending queue once."""
    run_async(get_handler().handle_flush())

@app.command()
def simulate(
    action_type: Annotated[str, typer.Option("--action", "-a", help="Action type to simulate.")] = "swipe",
    count: Annotated[int, typer.Option("--count", "-n", min=1, help="Number of actions to record.")] = 3,
    failures: Annotated[int, typer.Option("--failures", min=0, help="Remote calls that fail with a network error.")] = 2,
    tier: Annotated[str, typer.Option("--tier", "-t", help="Membership tier of the simulated user.")] = "bronze",
):
    """Run an offline scenario against the in-memory remote store with injected failures."""
    deps = get_dependencies()
    base: SyncConfig = deps['config']
    config = dataclasses.replace(base, **SIMULATION_CONFIG)

    with tempfile.TemporaryDirectory(prefix="quotasync-sim-") as state_dir:
        def sandbox_factory() -> Tuple[SyncEngine, InMemoryRemoteStore]:
            remote = InMemoryRemoteStore(tier=MembershipTier(tier))
            engine = SyncEngine(
                config=config,
                remote_store=remote,
                state_store=JsonFileStateStore(state_dir),
                user_id=UserId("simulated-user"),
                tier=MembershipTier(tier),
            )
            return engine, remote

        handler = CommandHandler(deps['engine_factory'], deps['ui'], sandbox_factory=sandbox_factory)
        run_async(handler.handle_simulate(ActionType(action_type), count, failures))

@app.command(name="clear-state")
def clear_state_command():
    """Delete the persisted local state for the configured user."""
    run_async(get_handler().handle_clear_state())

@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging.")] = False,
):
    """quotasync command line."""
    if verbose:
        set_config('logging.level', 'DEBUG')
        reset_dependencies()

# --- Main Execution Guard ---

def cli_entry_point():
    """Function to be called by the script entry point in pyproject.toml."""
    app()

if __name__ == "__main__":
    cli_entry_point()
