"""Data models for the procwatch package."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple


class HandlerKind(Enum):
    """Kinds of handler scripts, derived from the file name."""
    UNIVERSAL = "universal"
    START = "start"
    END = "end"


class ProcessAction(Enum):
    """Lifecycle actions reported to handlers."""
    STARTED = "Started"
    STOPPED = "Stopped"


START_PREFIX = "start."
END_PREFIX = "end."


def normalize_process_name(name: str, strip_suffixes: Iterable[str] = (".exe", ".com", ".bat", ".cmd")) -> str:
    """
    Normalize a process or handler name for case-insensitive matching.

    Args:
        name: Raw process name, executable base name or handler name
        strip_suffixes: Executable suffixes removed before comparison

    Returns:
        The casefolded name without a trailing executable suffix
    """
    folded = name.strip().casefold()
    for suffix in strip_suffixes:
        if folded.endswith(suffix) and len(folded) > len(suffix):
            return folded[: -len(suffix)]
    return folded


@dataclass(frozen=True)
class Classification:
    """
    Result of classifying a handler file name.

    Attributes:
        kind: The handler kind, or None if the name is unrecognized
        process_name: Process name the handler applies to (empty if unrecognized)
    """
    kind: Optional[HandlerKind]
    process_name: str = ""

    @property
    def recognized(self) -> bool:
        return self.kind is not None


UNRECOGNIZED = Classification(kind=None)


def classify_handler_name(
    filename: str,
    script_extensions: Iterable[str],
    allow_bare: bool = False,
    strip_suffixes: Iterable[str] = (),
) -> Classification:
    """
    Classify a handler file name without touching the filesystem.

    ``start.<name>.<ext>`` is a Start handler, ``end.<name>.<ext>`` an End
    handler and any other ``<name>.<ext>`` a Universal handler for the full
    base name. Prefixes are matched case-insensitively.

    Args:
        filename: File name, e.g. ``start.chrome.ps1``
        script_extensions: Extensions recognised as handler scripts
        allow_bare: Treat a name without a script extension as a base name
            (used for executable files such as ``start.chrome``)
        strip_suffixes: Executable suffixes removed from the process name,
            so ``chrome.exe.ps1`` handles ``chrome``

    Returns:
        A Classification; UNRECOGNIZED for hidden files, other extensions
        or an empty process name
    """
    if not filename or filename.startswith("."):
        return UNRECOGNIZED

    base, dot, ext = filename.rpartition(".")
    known = tuple(e.lower() for e in script_extensions)
    if not dot or not base or f".{ext.lower()}" not in known:
        if not allow_bare:
            return UNRECOGNIZED
        base = filename

    lowered = base.lower()
    if lowered.startswith(START_PREFIX):
        kind = HandlerKind.START
        name = base[len(START_PREFIX):]
    elif lowered.startswith(END_PREFIX):
        kind = HandlerKind.END
        name = base[len(END_PREFIX):]
    else:
        kind = HandlerKind.UNIVERSAL
        name = base

    name = normalize_process_name(name, strip_suffixes)
    if not name:
        return UNRECOGNIZED
    return Classification(kind=kind, process_name=name)


@dataclass(frozen=True)
class HandlerEntry:
    """
    A handler script discovered by a directory scan.

    Attributes:
        process_name: Casefolded process name the handler applies to
        kind: Universal, Start or End
        script_path: Absolute path to the script
    """
    process_name: str
    kind: HandlerKind
    script_path: Path

    @property
    def key(self) -> Tuple[str, HandlerKind]:
        return (self.process_name, self.kind)


@dataclass(frozen=True)
class Registry:
    """
    Immutable snapshot of the handler set.

    A new Registry is built on every scan; snapshots are swapped, never
    edited, so readers always see a consistent view.

    Attributes:
        universal: Universal handlers by process name
        start: Start handlers by process name
        end: End handlers by process name
        sources: Script files that contributed to this snapshot
    """
    universal: Mapping[str, HandlerEntry] = field(default_factory=lambda: MappingProxyType({}))
    start: Mapping[str, HandlerEntry] = field(default_factory=lambda: MappingProxyType({}))
    end: Mapping[str, HandlerEntry] = field(default_factory=lambda: MappingProxyType({}))
    sources: Tuple[Path, ...] = ()

    @classmethod
    def empty(cls) -> "Registry":
        return cls()

    @classmethod
    def from_entries(cls, entries: Iterable[HandlerEntry], sources: Iterable[Path] = ()) -> "Registry":
        """
        Build a registry from handler entries.

        Later entries replace earlier ones with the same (process_name, kind).

        Args:
            entries: Handler entries in precedence order
            sources: Contributing file paths

        Returns:
            A new Registry
        """
        tables: Dict[HandlerKind, Dict[str, HandlerEntry]] = {kind: {} for kind in HandlerKind}
        for entry in entries:
            tables[entry.kind][entry.process_name] = entry
        return cls(
            universal=MappingProxyType(tables[HandlerKind.UNIVERSAL]),
            start=MappingProxyType(tables[HandlerKind.START]),
            end=MappingProxyType(tables[HandlerKind.END]),
            sources=tuple(sources),
        )

    @property
    def watch_list(self) -> Tuple[str, ...]:
        """Sorted, deduplicated process names across all handler kinds."""
        return tuple(sorted(set(self.universal) | set(self.start) | set(self.end)))

    def entries(self) -> List[HandlerEntry]:
        """All handler entries, ordered by process name then kind."""
        order = {HandlerKind.UNIVERSAL: 0, HandlerKind.START: 1, HandlerKind.END: 2}
        items = list(self.universal.values()) + list(self.start.values()) + list(self.end.values())
        return sorted(items, key=lambda e: (e.process_name, order[e.kind]))

    def handlers_for(self, process_name: str, action: ProcessAction) -> List[HandlerEntry]:
        """
        Get the handlers that apply to an event.

        Args:
            process_name: Watched process name
            action: Started or Stopped

        Returns:
            The Universal handler (if any) followed by the action-specific one
        """
        name = process_name.casefold()
        found = []
        if name in self.universal:
            found.append(self.universal[name])
        specific = self.start if action == ProcessAction.STARTED else self.end
        if name in specific:
            found.append(specific[name])
        return found

    def content_equals(self, other: "Registry") -> bool:
        """Compare handler content, ignoring the order of contributing files."""
        return (
            dict(self.universal) == dict(other.universal)
            and dict(self.start) == dict(other.start)
            and dict(self.end) == dict(other.end)
        )

    def __len__(self) -> int:
        return len(self.universal) + len(self.start) + len(self.end)


@dataclass(frozen=True)
class ProcessInfo:
    """
    A live process as seen by one enumeration.

    Attributes:
        pid: Process ID
        name: Watched name the process matched
        exe: Executable path, empty if it could not be read
    """
    pid: int
    name: str
    exe: str = ""


@dataclass
class TrackedProcess:
    """
    A process tracked by the polling event source.

    Attributes:
        pid: Process ID
        process_name: Watched name the process matched
        first_seen_at: When the PID was first observed
    """
    pid: int
    process_name: str
    first_seen_at: datetime = field(default_factory=datetime.now)


def format_timestamp(value: datetime) -> str:
    """Render a timestamp as an ISO-like local datetime string."""
    return value.strftime("%Y-%m-%dT%H:%M:%S")


@dataclass(frozen=True)
class ProcessEvent:
    """
    A process lifecycle event.

    Attributes:
        process_name: Watched process name
        pid: Process ID
        action: Started or Stopped
        executable_path: Executable path for Started events (may be empty)
        timestamp: Local time the event was detected
    """
    process_name: str
    pid: int
    action: ProcessAction
    executable_path: str = ""
    timestamp: datetime = field(default_factory=datetime.now)

    @classmethod
    def started(cls, info: ProcessInfo, timestamp: Optional[datetime] = None) -> "ProcessEvent":
        return cls(
            process_name=info.name,
            pid=info.pid,
            action=ProcessAction.STARTED,
            executable_path=info.exe or "",
            timestamp=timestamp or datetime.now(),
        )

    @classmethod
    def stopped(cls, process_name: str, pid: int, timestamp: Optional[datetime] = None) -> "ProcessEvent":
        return cls(
            process_name=process_name,
            pid=pid,
            action=ProcessAction.STOPPED,
            timestamp=timestamp or datetime.now(),
        )

    def to_handler_args(self) -> Dict[str, str]:
        """
        Render the values passed to a handler.

        Returns:
            Dictionary with processName, pid, action, timestamp and
            executablePath (empty for Stopped events)
        """
        return {
            "processName": self.process_name,
            "pid": str(self.pid),
            "action": self.action.value,
            "timestamp": format_timestamp(self.timestamp),
            "executablePath": self.executable_path if self.action == ProcessAction.STARTED else "",
        }

    def to_dict(self) -> dict:
        """Convert to dictionary for logging and serialization."""
        return {
            "process_name": self.process_name,
            "pid": self.pid,
            "action": self.action.value,
            "executable_path": self.executable_path,
            "timestamp": self.timestamp.isoformat(),
        }
