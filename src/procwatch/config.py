"""Configuration for the procwatch package."""

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


def _env_number(env: Mapping[str, str], key: str, convert: Callable[[str], float], default: float) -> float:
    """Read a positive number from the environment, keeping the default if it is malformed."""
    raw = env.get(key)
    if not raw:
        return default
    try:
        value = convert(raw.strip())
    except ValueError:
        logger.warning(f"Ignoring {key}={raw!r}: not a valid number, using {default}")
        return default
    if not value > 0:
        logger.warning(f"Ignoring {key}={raw!r}: must be positive, using {default}")
        return default
    return value


def _default_interpreters() -> Dict[str, List[str]]:
    powershell = "powershell" if sys.platform == "win32" else "pwsh"
    return {
        ".ps1": [powershell, "-NoProfile", "-ExecutionPolicy", "Bypass", "-File"],
        ".py": [sys.executable],
        ".sh": ["sh"],
        ".bat": ["cmd", "/c"],
        ".cmd": ["cmd", "/c"],
    }


@dataclass
class MonitorConfig:
    """
    Configuration options for the monitoring engine.

    Attributes:
        handlers_dir: Directory holding the handler scripts
        examples_dirname: Reserved subfolder that is never scanned or watched
        script_extensions: File extensions recognised as handler scripts
        executable_suffixes: Suffixes stripped from process names before matching
        settle_delay_ms: Quiet period after a directory change before rescanning
        poll_interval_s: Tick interval of the polling event source
        empty_rescan_interval_s: Rescan interval while no handlers are present
        prefer_native: Try the native process notification channel first
        interpreters: Command prefix used to run a handler, keyed by extension
    """
    handlers_dir: Path = field(default_factory=lambda: Path("handlers"))
    examples_dirname: str = "_examples"
    script_extensions: Tuple[str, ...] = (".ps1", ".py", ".sh", ".bat", ".cmd")
    executable_suffixes: Tuple[str, ...] = (".exe", ".com", ".bat", ".cmd")
    settle_delay_ms: int = 1000
    poll_interval_s: float = 2.0
    empty_rescan_interval_s: float = 5.0
    prefer_native: bool = True
    interpreters: Dict[str, List[str]] = field(default_factory=_default_interpreters)

    def is_excluded(self, path: Path) -> bool:
        """
        Check if a path lies inside the reserved examples subfolder.

        Args:
            path: Path to check

        Returns:
            True if the path is the examples folder or anything below it
        """
        examples = Path(self.handlers_dir) / self.examples_dirname
        try:
            Path(path).relative_to(examples)
            return True
        except ValueError:
            pass
        return self.examples_dirname in Path(path).parts

    def interpreter_for(self, path: Path) -> Optional[List[str]]:
        """Return the command prefix for a script, or None to execute it directly."""
        prefix = self.interpreters.get(path.suffix.lower())
        return list(prefix) if prefix else None

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "MonitorConfig":
        """
        Build a configuration from PROCWATCH_* environment variables.

        Unset variables keep their defaults.

        Args:
            environ: Mapping to read instead of os.environ

        Returns:
            A new MonitorConfig
        """
        env = os.environ if environ is None else environ
        config = cls()

        if env.get("PROCWATCH_HANDLERS_DIR"):
            config.handlers_dir = Path(env["PROCWATCH_HANDLERS_DIR"])
        config.settle_delay_ms = _env_number(env, "PROCWATCH_SETTLE_MS", int, config.settle_delay_ms)
        config.poll_interval_s = _env_number(env, "PROCWATCH_POLL_INTERVAL", float, config.poll_interval_s)
        config.empty_rescan_interval_s = _env_number(
            env, "PROCWATCH_EMPTY_RESCAN_INTERVAL", float, config.empty_rescan_interval_s
        )
        if env.get("PROCWATCH_PREFER_NATIVE"):
            config.prefer_native = env["PROCWATCH_PREFER_NATIVE"].strip().lower() not in ("0", "false", "no", "off")

        return config
