"""Handler directory scanning and the shared registry snapshot."""

import logging
import os
import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .config import MonitorConfig
from .models import HandlerEntry, HandlerKind, Registry, classify_handler_name

logger = logging.getLogger(__name__)


def is_bare_executable(path: Path) -> bool:
    """Executable files without a script extension count as handlers outside Windows."""
    if sys.platform == "win32":
        return False
    return os.access(path, os.X_OK)


def scan(directory: Path, config: Optional[MonitorConfig] = None) -> Registry:
    """
    Scan a handler directory and build a fresh Registry.

    Only immediate children are considered; subdirectories (including the
    reserved examples folder) are skipped. Files are visited in lexicographic
    order and when two files map to the same (process name, kind) the later
    one wins, e.g. ``Notepad.ps1`` is replaced by ``notepad.py``. The
    replacement is logged as a warning since the winner is only decided by
    name order.

    Args:
        directory: Handler directory
        config: Monitor configuration (defaults are used if omitted)

    Returns:
        A new Registry; empty if the directory is missing or unreadable
    """
    config = config or MonitorConfig()
    directory = Path(directory)

    try:
        children = sorted(directory.iterdir(), key=lambda p: p.name)
    except FileNotFoundError:
        logger.warning(f"Handler directory does not exist: {directory}")
        return Registry.empty()
    except OSError as e:
        logger.warning(f"Cannot read handler directory {directory}: {e}")
        return Registry.empty()

    entries: List[HandlerEntry] = []
    seen: Dict[Tuple[str, HandlerKind], Path] = {}
    sources: List[Path] = []

    for path in children:
        try:
            if not path.is_file():
                continue
        except OSError:
            continue

        classification = classify_handler_name(
            path.name,
            config.script_extensions,
            allow_bare=is_bare_executable(path),
            strip_suffixes=config.executable_suffixes,
        )
        if not classification.recognized:
            logger.debug(f"Skipping unrecognized file: {path.name}")
            continue

        entry = HandlerEntry(
            process_name=classification.process_name,
            kind=classification.kind,
            script_path=path.resolve(),
        )
        previous = seen.get(entry.key)
        if previous is not None:
            logger.warning(
                f"Duplicate {entry.kind.value} handler for '{entry.process_name}': "
                f"{path.name} replaces {previous.name}"
            )
        seen[entry.key] = path
        entries.append(entry)
        sources.append(path.resolve())

    registry = Registry.from_entries(entries, sources)
    logger.debug(f"Scanned {directory}: {len(registry)} handler(s), watch list {list(registry.watch_list)}")
    return registry


class EngineContext:
    """
    Owned state shared between the controller, event sources and dispatcher.

    Holds the configuration and the current Registry snapshot. The snapshot
    is replaced by reference under a lock; readers take the reference and
    never observe a partially built registry.
    """

    def __init__(self, config: Optional[MonitorConfig] = None):
        """
        Initialize the context.

        Args:
            config: Monitor configuration
        """
        self.config = config or MonitorConfig()
        self._registry = Registry.empty()
        self._lock = threading.Lock()

    @property
    def registry(self) -> Registry:
        """Current registry snapshot."""
        with self._lock:
            return self._registry

    @property
    def watch_list(self) -> Tuple[str, ...]:
        return self.registry.watch_list

    def replace_registry(self, registry: Registry) -> Registry:
        """
        Swap in a new registry snapshot.

        Args:
            registry: The new snapshot

        Returns:
            The previous snapshot
        """
        with self._lock:
            previous = self._registry
            self._registry = registry
            return previous

    def rescan(self) -> Tuple[Registry, Registry]:
        """
        Scan the handler directory and swap in the result.

        Returns:
            (previous, current) registry snapshots
        """
        current = scan(self.config.handlers_dir, self.config)
        previous = self.replace_registry(current)
        return previous, current

    def clear(self) -> None:
        """Reset to an empty registry."""
        self.replace_registry(Registry.empty())
