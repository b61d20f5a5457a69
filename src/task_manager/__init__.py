"""Task manager for Twitter client sessions.

Every worker process embeds a copy of the manager. The shared SQLite store
holds the declared lifecycle of each session (start / stop / restart); each
worker's watcher reconciles that record against the sessions it holds a live
handle for, coordinating with other workers through title-scoped leases.

Usage:
    # Serve the control-plane API and the watcher
    $ task-manager serve

    # Python API
    from task_manager import Orchestrator

    orchestrator = Orchestrator(db, config)
    orchestrator.register_session(title, handle)
    await orchestrator.start()
"""

try:
    from importlib.metadata import version as _get_version

    __version__ = _get_version("twitter-task-manager")
except Exception:
    __version__ = "0.0.0-dev"


def __getattr__(name: str):
    """Lazy import for main classes."""
    if name == "Orchestrator":
        from .watcher.orchestrator import Orchestrator

        return Orchestrator
    if name == "ManagerConfig":
        from .config import ManagerConfig

        return ManagerConfig
    if name == "TaskManagerClient":
        from .client import TaskManagerClient

        return TaskManagerClient
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "__version__",
    "Orchestrator",
    "ManagerConfig",
    "TaskManagerClient",
]
