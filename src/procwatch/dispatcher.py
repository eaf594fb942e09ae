"""Dispatching process events to handler scripts."""

import logging
import os
import subprocess
import sys
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .config import MonitorConfig
from .exceptions import HandlerLaunchError
from .models import HandlerEntry, ProcessEvent, Registry

logger = logging.getLogger(__name__)

# PowerShell scripts take named parameters; everything else gets long options.
POWERSHELL_PARAMS = {
    "processName": "-ProcessName",
    "pid": "-ProcessId",
    "action": "-Action",
    "timestamp": "-Timestamp",
    "executablePath": "-ExecutablePath",
}
OPTION_PARAMS = {
    "processName": "--process-name",
    "pid": "--pid",
    "action": "--action",
    "timestamp": "--timestamp",
    "executablePath": "--executable-path",
}
ENV_PARAMS = {
    "processName": "PROCWATCH_PROCESS_NAME",
    "pid": "PROCWATCH_PID",
    "action": "PROCWATCH_ACTION",
    "timestamp": "PROCWATCH_TIMESTAMP",
    "executablePath": "PROCWATCH_EXECUTABLE_PATH",
}


@dataclass
class DispatchStats:
    """
    Counters kept by the dispatcher.

    Attributes:
        events: Events dispatched
        launched: Handler processes started
        failed: Handler launches that failed
        unmatched: Events with no handler at all
    """
    events: int = 0
    launched: int = 0
    failed: int = 0
    unmatched: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class HandlerLauncher:
    """Starts handler scripts as detached processes."""

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ):
        """
        Initialize the launcher.

        Args:
            config: Monitor configuration
            popen: Process factory, subprocess.Popen by default
        """
        self.config = config or MonitorConfig()
        self.popen = popen

    def build_command(self, entry: HandlerEntry, event: ProcessEvent) -> List[str]:
        """
        Build the argv for a handler invocation.

        Args:
            entry: Handler to run
            event: Event being dispatched

        Returns:
            Command line as a list of strings
        """
        script = Path(entry.script_path)
        prefix = self.config.interpreter_for(script) or []
        names = POWERSHELL_PARAMS if script.suffix.lower() == ".ps1" else OPTION_PARAMS

        command = prefix + [str(script)]
        for key, value in event.to_handler_args().items():
            command.extend([names[key], value])
        return command

    def build_env(self, event: ProcessEvent) -> Dict[str, str]:
        """Environment for a handler: the current one plus the event values."""
        env = dict(os.environ)
        for key, value in event.to_handler_args().items():
            env[ENV_PARAMS[key]] = value
        return env

    def _detach_kwargs(self) -> dict:
        if sys.platform == "win32":
            flags = getattr(subprocess, "DETACHED_PROCESS", 0) | getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
            return {"creationflags": flags}
        return {"start_new_session": True}

    def launch(self, entry: HandlerEntry, event: ProcessEvent) -> None:
        """
        Start a handler without waiting for it.

        Args:
            entry: Handler to run
            event: Event being dispatched

        Raises:
            HandlerLaunchError: If the script is missing or cannot be started
        """
        script = Path(entry.script_path)
        if not script.is_file():
            raise HandlerLaunchError(f"Handler script not found: {script}")

        command = self.build_command(entry, event)
        try:
            self.popen(
                command,
                cwd=str(script.parent),
                env=self.build_env(event),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                close_fds=True,
                **self._detach_kwargs(),
            )
        except (OSError, ValueError) as e:
            raise HandlerLaunchError(f"Cannot start handler {script.name}: {e}") from e


class Dispatcher:
    """
    Routes process events to their Universal and action-specific handlers.

    Launches are fire-and-forget: handlers run as independent processes,
    their completion is never awaited and their output is not captured.
    A failing launch is logged and counted without affecting the others.
    """

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        launcher: Optional[HandlerLauncher] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            config: Monitor configuration
            launcher: Handler launcher, created from config if omitted
        """
        self.config = config or MonitorConfig()
        self.launcher = launcher or HandlerLauncher(self.config)
        self._stats = DispatchStats()
        self._lock = threading.Lock()

    @property
    def stats(self) -> DispatchStats:
        """Copy of the current counters."""
        with self._lock:
            return DispatchStats(**self._stats.to_dict())

    def dispatch(self, event: ProcessEvent, registry: Registry) -> int:
        """
        Launch every handler that applies to an event.

        Args:
            event: The process event
            registry: Registry snapshot to resolve handlers from

        Returns:
            Number of handlers launched successfully
        """
        handlers = registry.handlers_for(event.process_name, event.action)

        with self._lock:
            self._stats.events += 1
            if not handlers:
                self._stats.unmatched += 1

        if not handlers:
            logger.debug(f"No handler for {event.process_name} ({event.action.value})")
            return 0

        launched = 0
        for entry in handlers:
            try:
                self.launcher.launch(entry, event)
            except HandlerLaunchError as e:
                logger.error(f"Handler launch failed: {e}")
                with self._lock:
                    self._stats.failed += 1
                continue

            launched += 1
            with self._lock:
                self._stats.launched += 1
            logger.info(
                f"Launched {entry.kind.value} handler {Path(entry.script_path).name} "
                f"for {event.process_name} (pid {event.pid}, {event.action.value})"
            )

        return launched
