"""Process event sources and psutil-based process enumeration."""

import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import psutil

from .config import MonitorConfig
from .models import ProcessEvent, ProcessInfo, TrackedProcess, normalize_process_name

logger = logging.getLogger(__name__)

ProcessFinder = Callable[[Sequence[str]], List[ProcessInfo]]


def match_process_name(
    name: Optional[str],
    exe: Optional[str],
    watched: Iterable[str],
    strip_suffixes: Iterable[str] = (".exe", ".com", ".bat", ".cmd"),
) -> Optional[str]:
    """
    Match a process against watched names.

    The process name and the executable's base name are both tried, since
    kernels may truncate the process name.

    Args:
        name: Process name as reported by the OS
        exe: Executable path, if known
        watched: Casefolded watched names
        strip_suffixes: Executable suffixes to ignore

    Returns:
        The matching watched name, or None
    """
    watched = watched if isinstance(watched, (set, frozenset)) else set(watched)
    candidates = []
    if name:
        candidates.append(normalize_process_name(name, strip_suffixes))
    if exe:
        candidates.append(normalize_process_name(os.path.basename(exe), strip_suffixes))
    for candidate in candidates:
        if candidate in watched:
            return candidate
    return None


def find_processes(names: Sequence[str], config: Optional[MonitorConfig] = None) -> List[ProcessInfo]:
    """
    Enumerate live processes whose name matches any watched name.

    Args:
        names: Watched process names
        config: Monitor configuration

    Returns:
        One ProcessInfo per matching process, executable path best-effort
    """
    config = config or MonitorConfig()
    watched = {n.casefold() for n in names}
    if not watched:
        return []

    found = []
    for proc in psutil.process_iter(attrs=["pid", "name", "exe"]):
        try:
            info = proc.info
            matched = match_process_name(
                info.get("name"),
                info.get("exe"),
                watched,
                config.executable_suffixes,
            )
            if matched:
                found.append(ProcessInfo(pid=info["pid"], name=matched, exe=info.get("exe") or ""))
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return found


def describe_process(pid: int) -> Tuple[Optional[str], str]:
    """
    Look up a process name and executable path by PID.

    Args:
        pid: Process ID

    Returns:
        (name, exe); name is None if the process is gone, exe is empty if
        it cannot be read
    """
    try:
        proc = psutil.Process(pid)
        name = proc.name()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return None, ""
    try:
        exe = proc.exe() or ""
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess, OSError):
        exe = ""
    return name, exe


class EventSource(ABC):
    """
    A strategy producing ProcessEvents for a watch-list.

    Events are delivered through the on_event callback, possibly from a
    background thread.
    """

    name = "base"

    def __init__(
        self,
        on_event: Callable[[ProcessEvent], None],
        config: Optional[MonitorConfig] = None,
        finder: Optional[ProcessFinder] = None,
    ):
        """
        Initialize the event source.

        Args:
            on_event: Callback receiving each ProcessEvent
            config: Monitor configuration
            finder: Process enumerator, defaults to psutil via find_processes
        """
        self.on_event = on_event
        self.config = config or MonitorConfig()
        self.finder = finder or (lambda names: find_processes(names, self.config))

    @abstractmethod
    def start(self, watch_list: Sequence[str]) -> None:
        """
        Begin producing events.

        Raises:
            SubscriptionError: If the source cannot be established
        """

    @abstractmethod
    def update_watch_list(self, watch_list: Sequence[str]) -> None:
        """Apply a new watch-list."""

    @abstractmethod
    def reconcile(self, names: Sequence[str]) -> None:
        """Make sure already-running instances of names are reported as Started once."""

    @abstractmethod
    def stop(self) -> None:
        """Stop producing events. Safe to call more than once."""

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Whether the source is active."""

    def _emit(self, event: ProcessEvent) -> None:
        logger.info(f"{event.action.value}: {event.process_name} (pid {event.pid})")
        try:
            self.on_event(event)
        except Exception as e:
            logger.error(f"Event callback failed for {event.process_name} (pid {event.pid}): {e}")


class PollingEventSource(EventSource):
    """
    Detects process starts and stops by periodic enumeration.

    Each tick diffs the live PIDs of every watched name against the PIDs
    tracked on the previous tick. The tracked table belongs to the tick;
    update_watch_list() only swaps the watch-list reference, so the loop
    keeps its state and does not re-report tracked processes.
    """

    name = "polling"

    def __init__(
        self,
        on_event: Callable[[ProcessEvent], None],
        config: Optional[MonitorConfig] = None,
        finder: Optional[ProcessFinder] = None,
    ):
        super().__init__(on_event, config, finder)
        self.interval = self.config.poll_interval_s
        self._watch_list: Tuple[str, ...] = ()
        self._tracked: Dict[str, Dict[int, TrackedProcess]] = {}
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.ticks = 0
        self.failures = 0

    @property
    def watch_list(self) -> Tuple[str, ...]:
        return self._watch_list

    def start(self, watch_list: Sequence[str]) -> None:
        with self._lock:
            if self._thread is not None:
                return
            self._watch_list = tuple(watch_list)
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._poll_loop, name="PollingEventSource", daemon=True)
            self._thread.start()
        logger.info(f"Polling for {len(self._watch_list)} process name(s) every {self.interval}s")

    def update_watch_list(self, watch_list: Sequence[str]) -> None:
        self._watch_list = tuple(watch_list)
        logger.debug(f"Polling watch list updated: {list(self._watch_list)}")

    def reconcile(self, names: Sequence[str]) -> None:
        # The first tick that sees a name reports every running instance as
        # Started, which is the reconciliation for this strategy.
        pass

    def stop(self) -> None:
        self._stop_event.set()
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(2.0, self.interval * 2 + 1.0))

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None

    def tick(self) -> List[ProcessEvent]:
        """
        Run one polling iteration and emit the resulting events.

        Returns:
            Events emitted by this tick, Started before Stopped
        """
        watch_list = self._watch_list
        now = datetime.now()
        events: List[ProcessEvent] = []

        for name in list(self._tracked):
            if name not in watch_list:
                del self._tracked[name]

        if watch_list:
            live: Dict[str, Dict[int, ProcessInfo]] = {name: {} for name in watch_list}
            for info in self.finder(watch_list):
                if info.name in live:
                    live[info.name][info.pid] = info

            for name in watch_list:
                tracked = self._tracked.setdefault(name, {})
                current = live[name]

                for pid, info in current.items():
                    if pid not in tracked:
                        tracked[pid] = TrackedProcess(pid=pid, process_name=name, first_seen_at=now)
                        events.append(ProcessEvent.started(info, timestamp=now))

                for pid in [p for p in tracked if p not in current]:
                    del tracked[pid]
                    events.append(ProcessEvent.stopped(name, pid, timestamp=now))

        self.ticks += 1
        for event in events:
            self._emit(event)
        return events

    def tracked_pids(self, name: str) -> List[int]:
        """PIDs currently tracked for a watched name."""
        return sorted(self._tracked.get(name, {}))

    def _poll_loop(self) -> None:
        logger.debug("Polling loop started")
        while not self._stop_event.is_set():
            if not self._watch_list:
                self._tracked.clear()
                self._stop_event.wait(timeout=self.interval)
                continue

            delay = self.interval
            try:
                self.tick()
            except Exception as e:
                self.failures += 1
                delay = self.interval * 2
                logger.error(f"Polling iteration failed, retrying in {delay}s: {e}")

            self._stop_event.wait(timeout=delay)
        logger.debug("Polling loop stopped")
