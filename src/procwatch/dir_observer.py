"""Handler directory watcher using the watchdog library."""

import logging
import threading
from pathlib import Path
from typing import Callable, Optional, Set

from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirMovedEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from .config import MonitorConfig
from .exceptions import ObserverUnavailableError
from .models import classify_handler_name
from .registry import is_bare_executable

logger = logging.getLogger(__name__)


class SettleDebouncer:
    """
    Collapses bursts of notifications into one delayed callback.

    Every trigger (re)arms a timer; the callback runs once the settle
    window passes without another trigger.
    """

    def __init__(self, callback: Callable[[], None], settle_delay_ms: int = 1000):
        """
        Initialize the debouncer.

        Args:
            callback: Function to call once the burst has settled
            settle_delay_ms: Quiet period in milliseconds
        """
        self.callback = callback
        self.settle_delay_ms = settle_delay_ms
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._closed = False

    def trigger(self) -> None:
        """Record a notification and restart the settle window."""
        with self._lock:
            if self._closed:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.settle_delay_ms / 1000.0, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._timer = None
        try:
            self.callback()
        except Exception as e:
            logger.error(f"Handler directory change callback failed: {e}")

    @property
    def pending(self) -> bool:
        """Whether a callback is scheduled."""
        with self._lock:
            return self._timer is not None

    def cancel(self) -> None:
        """Drop any pending callback and ignore further triggers."""
        with self._lock:
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


class HandlerDirEventHandler(FileSystemEventHandler):
    """
    Forwards create/delete/move notifications for handler files.

    Only candidate handler files count: names with a script extension, or
    bare executables outside Windows. Bare executables are remembered by
    name so their deletion is still recognised once the file is gone.
    """

    def __init__(
        self,
        debouncer: SettleDebouncer,
        config: MonitorConfig,
        root: Optional[Path] = None,
        on_root_deleted: Optional[Callable[[], None]] = None,
    ):
        super().__init__()
        self.debouncer = debouncer
        self.config = config
        self.root = root
        self.on_root_deleted = on_root_deleted
        self._bare_names: Set[str] = set()

    def seed(self, directory: Path) -> None:
        """Record the bare executables already present in the directory."""
        try:
            children = list(directory.iterdir())
        except OSError as e:
            logger.debug(f"Cannot list {directory}: {e}")
            return
        for path in children:
            if self._is_new_bare_executable(path):
                self._bare_names.add(path.name)

    def _excluded(self, p: Path) -> bool:
        return p.name.startswith(".") or self.config.is_excluded(p)

    def _is_script(self, p: Path) -> bool:
        return classify_handler_name(p.name, self.config.script_extensions).recognized

    def _is_new_bare_executable(self, p: Path) -> bool:
        try:
            return p.is_file() and not self._is_script(p) and is_bare_executable(p)
        except OSError:
            return False

    def _appeared(self, path: str) -> bool:
        p = Path(path)
        if self._excluded(p):
            return False
        if self._is_script(p):
            return True
        if self._is_new_bare_executable(p):
            self._bare_names.add(p.name)
            return True
        return False

    def _disappeared(self, path: str) -> bool:
        p = Path(path)
        if self._excluded(p):
            return False
        if p.name in self._bare_names:
            self._bare_names.discard(p.name)
            return True
        return self._is_script(p)

    def _is_root(self, path: str) -> bool:
        return self.root is not None and Path(path) == self.root

    def on_created(self, event):
        if isinstance(event, DirCreatedEvent):
            return
        if self._appeared(event.src_path):
            logger.debug(f"Handler file created: {event.src_path}")
            self.debouncer.trigger()

    def _root_gone(self, event) -> bool:
        if not self._is_root(event.src_path):
            return False
        if self.on_root_deleted is not None:
            self.on_root_deleted()
        return True

    def on_deleted(self, event):
        if self._root_gone(event) or isinstance(event, DirDeletedEvent):
            return
        if self._disappeared(event.src_path):
            logger.debug(f"Handler file deleted: {event.src_path}")
            self.debouncer.trigger()

    def on_moved(self, event):
        if self._root_gone(event) or isinstance(event, DirMovedEvent):
            return
        gone = self._disappeared(event.src_path)
        came = self._appeared(event.dest_path)
        if gone or came:
            logger.debug(f"Handler file moved: {event.src_path} -> {event.dest_path}")
            self.debouncer.trigger()

    def on_modified(self, event):
        # chmod +x turns an existing file into a handler
        if event.is_directory:
            return
        p = Path(event.src_path)
        if p.name in self._bare_names or self._excluded(p):
            return
        if self._is_new_bare_executable(p):
            self._bare_names.add(p.name)
            logger.debug(f"Handler file became executable: {event.src_path}")
            self.debouncer.trigger()


class DirectoryObserver:
    """
    Watches the handler directory and reports settled changes.

    The watch is non-recursive, so files inside the examples subfolder
    never produce notifications. If the directory itself is deleted or
    moved away the watch is lost: ``is_running`` turns False and
    ``on_change`` runs once so the owner can rescan and restart.
    """

    def __init__(
        self,
        directory: Path,
        on_change: Callable[[], None],
        config: Optional[MonitorConfig] = None,
    ):
        """
        Initialize the observer.

        Args:
            directory: Handler directory to watch
            on_change: Called once per settled burst of changes
            config: Monitor configuration
        """
        self.directory = Path(directory)
        self.on_change = on_change
        self.config = config or MonitorConfig()
        self._observer: Optional[Observer] = None
        self._debouncer: Optional[SettleDebouncer] = None
        self._lost = False
        self._lock = threading.Lock()

    def start(self) -> None:
        """
        Start watching.

        Raises:
            ObserverUnavailableError: If the directory cannot be watched
        """
        with self._lock:
            if self._observer is not None:
                return

            try:
                if not self.directory.is_dir():
                    raise ObserverUnavailableError(f"Handler directory does not exist: {self.directory}")
                root = self.directory.resolve()
            except OSError as e:
                raise ObserverUnavailableError(f"Cannot access handler directory {self.directory}: {e}") from e

            debouncer = SettleDebouncer(self.on_change, self.config.settle_delay_ms)
            handler = HandlerDirEventHandler(debouncer, self.config, root, self._on_root_deleted)
            handler.seed(root)
            observer = Observer()
            try:
                observer.schedule(handler, str(root), recursive=False)
                observer.start()
            except Exception as e:
                debouncer.cancel()
                raise ObserverUnavailableError(f"Cannot watch {self.directory}: {e}") from e

            self._observer = observer
            self._debouncer = debouncer
            self._lost = False
            logger.info(f"Watching handler directory: {self.directory}")

    def _on_root_deleted(self) -> None:
        """Runs on watchdog's thread; the owner calls stop() from its own."""
        with self._lock:
            if self._observer is None or self._lost:
                return
            self._lost = True
            debouncer = self._debouncer
        if debouncer is not None:
            debouncer.cancel()
        logger.warning(f"Handler directory was removed, watch lost: {self.directory}")
        try:
            self.on_change()
        except Exception as e:
            logger.error(f"Handler directory change callback failed: {e}")

    def stop(self) -> None:
        """Stop watching. Safe to call more than once."""
        with self._lock:
            observer = self._observer
            debouncer = self._debouncer
            self._observer = None
            self._debouncer = None

        if debouncer is not None:
            debouncer.cancel()
        if observer is not None:
            observer.stop()
            observer.join(timeout=5.0)
            logger.debug(f"Stopped watching handler directory: {self.directory}")

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._observer is not None and not self._lost
