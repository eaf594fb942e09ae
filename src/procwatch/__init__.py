"""
Process Watcher Package

Watches named processes on the local host and runs handler scripts when
they start or stop.

Features:
- Handler discovery from a directory of scripts (``<name>``, ``start.<name>``, ``end.<name>``)
- Hot reload of the handler set via filesystem notifications
- Native process notifications with a polling fallback
- Reconciliation of processes already running at startup
- Detached, fire-and-forget handler launches
"""

from .models import (
    HandlerKind,
    ProcessAction,
    Classification,
    HandlerEntry,
    Registry,
    ProcessInfo,
    TrackedProcess,
    ProcessEvent,
    classify_handler_name,
    normalize_process_name,
)

from .config import MonitorConfig

from .exceptions import (
    ProcWatchError,
    SubscriptionError,
    ObserverUnavailableError,
    HandlerLaunchError,
    EngineAlreadyRunningError,
)

from .registry import scan, EngineContext
from .dir_observer import DirectoryObserver, SettleDebouncer
from .event_source import EventSource, PollingEventSource, find_processes
from .proc_connector import ProcConnectorEventSource
from .dispatcher import Dispatcher, DispatchStats, HandlerLauncher
from .engine import MonitorEngine, EngineState


__all__ = [
    # Models
    "HandlerKind",
    "ProcessAction",
    "Classification",
    "HandlerEntry",
    "Registry",
    "ProcessInfo",
    "TrackedProcess",
    "ProcessEvent",
    "classify_handler_name",
    "normalize_process_name",
    # Config
    "MonitorConfig",
    # Exceptions
    "ProcWatchError",
    "SubscriptionError",
    "ObserverUnavailableError",
    "HandlerLaunchError",
    "EngineAlreadyRunningError",
    # Components
    "scan",
    "EngineContext",
    "DirectoryObserver",
    "SettleDebouncer",
    "EventSource",
    "PollingEventSource",
    "ProcConnectorEventSource",
    "find_processes",
    "Dispatcher",
    "DispatchStats",
    "HandlerLauncher",
    # Engine
    "MonitorEngine",
    "EngineState",
]

__version__ = "0.1.0"
