"""Monitoring engine: ties the registry, observer, event source and dispatcher together."""

import logging
import threading
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from .config import MonitorConfig
from .dir_observer import DirectoryObserver
from .dispatcher import Dispatcher
from .event_source import EventSource, PollingEventSource
from .exceptions import EngineAlreadyRunningError, SubscriptionError
from .models import ProcessEvent, Registry
from .proc_connector import ProcConnectorEventSource
from .registry import EngineContext

logger = logging.getLogger(__name__)

SourceFactory = Callable[[Callable[[ProcessEvent], None], MonitorConfig], EventSource]
ObserverFactory = Callable[..., DirectoryObserver]

RUNNING_WAIT_S = 0.5
ERROR_BACKOFF_S = 1.0


class EngineState(Enum):
    """Controller states."""
    IDLE = "idle"
    SCANNING = "scanning"
    WATCHLIST_EMPTY = "watchlist_empty"
    SUBSCRIBING = "subscribing"
    RUNNING = "running"
    STOPPING = "stopping"


class MonitorEngine:
    """
    Controller for the monitoring engine.

    Scans the handler directory, waits while no handlers exist, picks an
    event source (native notifications first, polling as fallback),
    reconciles already-running processes and then reacts to handler
    directory changes until stopped. A lost or unavailable observer is
    retried every ``empty_rescan_interval_s``, and an empty watch list is
    rescanned on the same interval. Errors inside one loop iteration are
    logged and the loop carries on; only stop() ends it.
    """

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        dispatcher: Optional[Dispatcher] = None,
        native_factory: Optional[SourceFactory] = None,
        polling_factory: Optional[SourceFactory] = None,
        observer_factory: Optional[ObserverFactory] = None,
    ):
        """
        Initialize the engine.

        Args:
            config: Monitor configuration
            dispatcher: Event dispatcher, created from config if omitted
            native_factory: Builds the native event source
            polling_factory: Builds the polling event source
            observer_factory: Builds the handler directory observer
        """
        self.config = config or MonitorConfig()
        self.context = EngineContext(self.config)
        self.dispatcher = dispatcher or Dispatcher(self.config)

        self._native_factory = native_factory or ProcConnectorEventSource
        self._polling_factory = polling_factory or PollingEventSource
        self._observer_factory = observer_factory or DirectoryObserver

        self._source: Optional[EventSource] = None
        self._applied: Tuple[str, ...] = ()
        self._observer: Optional[DirectoryObserver] = None
        self._observer_warned = False
        self._last_event: Optional[ProcessEvent] = None
        self._state = EngineState.IDLE

        self._running = False
        self._stop_event = threading.Event()
        self._wakeup = threading.Event()
        self._changes_pending = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_running(self) -> bool:
        """Check if the engine is running."""
        return self._running

    @property
    def strategy(self) -> Optional[str]:
        """Name of the active event source, if any."""
        source = self._source
        return source.name if source is not None else None

    def _set_state(self, state: EngineState) -> None:
        if state != self._state:
            logger.debug(f"Engine state: {self._state.value} -> {state.value}")
            self._state = state

    def _begin(self) -> None:
        with self._lock:
            if self._running:
                raise EngineAlreadyRunningError("Engine is already running")
            self._running = True
            self._stop_event.clear()
            self._wakeup.clear()
            self._changes_pending.clear()

    def start(self) -> None:
        """
        Run the engine (blocking).

        Returns after stop() is called or on KeyboardInterrupt.

        Raises:
            EngineAlreadyRunningError: If already running
        """
        self._begin()
        try:
            self._run()
        except KeyboardInterrupt:
            pass
        finally:
            self._shutdown()

    def start_async(self) -> None:
        """
        Run the engine in a background thread.

        Raises:
            EngineAlreadyRunningError: If already running
        """
        self._begin()
        self._thread = threading.Thread(target=self._run_and_shutdown, name="MonitorEngine", daemon=True)
        self._thread.start()

    def _run_and_shutdown(self) -> None:
        try:
            self._run()
        finally:
            self._shutdown()

    def stop(self) -> None:
        """
        Request the engine to stop.

        Idempotent and safe to call from any thread or a signal handler.
        When started with start_async(), waits for the background thread.
        """
        self._stop_event.set()
        self._wakeup.set()

        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=10.0)
            self._thread = None

    def _wait(self, timeout: float) -> None:
        self._wakeup.wait(timeout=timeout)
        self._wakeup.clear()

    def _on_handlers_changed(self) -> None:
        """Observer callback, runs after the settle delay."""
        logger.debug("Handler directory changed")
        self._changes_pending.set()
        self._wakeup.set()

    def _on_process_event(self, event: ProcessEvent) -> None:
        """Event source callback."""
        self._last_event = event
        try:
            self.dispatcher.dispatch(event, self.context.registry)
        except Exception as e:
            logger.error(f"Dispatch failed for {event.process_name} (pid {event.pid}): {e}")

    def _rescan(self) -> Registry:
        self._changes_pending.clear()
        try:
            previous, current = self.context.rescan()
        except Exception:
            self._changes_pending.set()
            raise
        if previous.content_equals(current):
            logger.debug("Handler directory rescanned, handler set unchanged")
        elif previous.watch_list != current.watch_list:
            logger.info(f"Watch list: {list(current.watch_list)}")
        return current

    def _start_observer(self) -> bool:
        """Start the handler directory observer; on failure the engine runs without hot reload."""
        try:
            observer = self._observer_factory(self.config.handlers_dir, self._on_handlers_changed, self.config)
            observer.start()
        except Exception as e:
            if self._observer_warned:
                logger.debug(f"Handler directory observer still unavailable: {e}")
            else:
                logger.warning(f"Handler directory changes will not be picked up: {e}")
                self._observer_warned = True
            return False
        if self._observer_warned:
            logger.info("Handler directory observer restored")
            self._observer_warned = False
        self._observer = observer
        return True

    def _check_observer(self) -> None:
        """Drop an observer whose watch was lost, e.g. after the directory was removed."""
        observer = self._observer
        if observer is None or observer.is_running:
            return
        self._observer = None
        try:
            observer.stop()
        except Exception as e:
            logger.error(f"Error stopping handler directory observer: {e}")

    def _degraded(self) -> bool:
        return self._observer is None or not self.context.watch_list

    def _select_source(self, watch_list: Sequence[str]) -> EventSource:
        """Start the native source, or polling if it cannot subscribe."""
        if self.config.prefer_native:
            source = self._native_factory(self._on_process_event, self.config)
            try:
                source.start(watch_list)
                logger.info("Using native process notifications")
                return source
            except SubscriptionError as e:
                logger.warning(f"Native process notifications unavailable, falling back to polling: {e}")

        source = self._polling_factory(self._on_process_event, self.config)
        source.start(watch_list)
        logger.info("Using process polling")
        return source

    def _sync_source(self) -> None:
        """
        Bring the running source in line with the current watch list.

        Diffs against the list last applied to the source, which only
        advances once update and reconcile both succeed, so a failed pass
        is retried on the next one.
        """
        current = self.context.watch_list
        applied = self._applied
        if current == applied:
            return

        added: List[str] = [name for name in current if name not in applied]
        logger.info(f"Watch list changed: {list(current)}")
        self._source.update_watch_list(current)
        if added:
            self._source.reconcile(added)
        self._applied = current

    def _run(self) -> None:
        scanned = False

        while not self._stop_event.is_set():
            try:
                self._check_observer()

                if not scanned:
                    self._set_state(EngineState.SCANNING)
                    self._rescan()
                    scanned = True
                    self._start_observer()
                    continue

                if self._source is None:
                    watch_list = self.context.watch_list
                    if not watch_list:
                        self._set_state(EngineState.WATCHLIST_EMPTY)
                        self._wait(self.config.empty_rescan_interval_s)
                        if self._stop_event.is_set():
                            break
                        self._check_observer()
                        if self._observer is None:
                            self._start_observer()
                        self._set_state(EngineState.SCANNING)
                        self._rescan()
                        continue

                    self._set_state(EngineState.SUBSCRIBING)
                    self._applied = ()
                    self._source = self._select_source(watch_list)
                    self._set_state(EngineState.RUNNING)
                    self._source.reconcile(watch_list)
                    self._applied = watch_list
                    continue

                self._wait(self.config.empty_rescan_interval_s if self._degraded() else RUNNING_WAIT_S)
                if self._stop_event.is_set():
                    break
                self._check_observer()
                if self._observer is None and self._start_observer():
                    self._changes_pending.set()
                if not self.context.watch_list:
                    self._changes_pending.set()
                if self._changes_pending.is_set():
                    self._rescan()
                self._sync_source()
            except Exception as e:
                logger.error(f"Engine loop error: {e}")
                self._stop_event.wait(timeout=ERROR_BACKOFF_S)

    def _shutdown(self) -> None:
        """Internal shutdown procedure."""
        with self._lock:
            if not self._running:
                return
            self._running = False

        self._set_state(EngineState.STOPPING)

        source, self._source = self._source, None
        self._applied = ()
        observer, self._observer = self._observer, None

        if source is not None:
            try:
                source.stop()
            except Exception as e:
                logger.error(f"Error stopping {source.name} event source: {e}")
        if observer is not None:
            try:
                observer.stop()
            except Exception as e:
                logger.error(f"Error stopping handler directory observer: {e}")

        stats = self.dispatcher.stats
        logger.info(
            f"Engine stopped: {stats.events} event(s), {stats.launched} handler(s) launched, "
            f"{stats.failed} failed"
        )
        self.context.clear()
        self._set_state(EngineState.IDLE)

    def get_status(self) -> dict:
        """
        Get a snapshot of the engine status.

        Returns:
            Dictionary with state, strategy, watch list, handler directory,
            observer availability, dispatch counters and the last
            process event
        """
        return {
            "state": self._state.value,
            "strategy": self.strategy,
            "watch_list": list(self.context.watch_list),
            "handlers_dir": str(self.config.handlers_dir),
            "observer": self._observer is not None,
            "dispatch": self.dispatcher.stats.to_dict(),
            "last_event": self._last_event.to_dict() if self._last_event else None,
        }

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False
