"""Runtime settings for pywir."""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_PROC_ROOT = Path("/proc")
DEFAULT_LSOF = "lsof"


@dataclass(slots=True, frozen=True)
class Settings:
    """
    Settings shared by the inspection backends and the renderer.

    Built once at start-up and passed explicitly; nothing reads them from
    module globals.
    """

    proc_root: Path = field(default=DEFAULT_PROC_ROOT)
    lsof_path: str = DEFAULT_LSOF
    scan_timeout: float | None = None  # seconds, None means unbounded
    include_udp: bool = False
    color: bool = True

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read from. Defaults to os.environ.

        Raises:
            ValueError: If PYWIR_SCAN_TIMEOUT is not a positive number.
        """
        env = os.environ if environ is None else environ

        timeout: float | None = None
        raw_timeout = env.get("PYWIR_SCAN_TIMEOUT")
        if raw_timeout:
            try:
                timeout = float(raw_timeout)
            except ValueError:
                raise ValueError(
                    f"PYWIR_SCAN_TIMEOUT must be a number, got {raw_timeout!r}"
                ) from None
            if timeout <= 0:
                raise ValueError("PYWIR_SCAN_TIMEOUT must be positive")

        return cls(
            proc_root=Path(env.get("PYWIR_PROC_ROOT") or DEFAULT_PROC_ROOT),
            lsof_path=env.get("PYWIR_LSOF") or DEFAULT_LSOF,
            scan_timeout=timeout,
            color="NO_COLOR" not in env,
        )
