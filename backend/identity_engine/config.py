"""Engine configuration loaded from environment variables."""

from __future__ import annotations

import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable


def _read_int(name: str, default: int, minimum: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(value, minimum)


def _read_float(name: str, default: float, minimum: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    if not math.isfinite(value):
        return default
    return max(value, minimum)


def _read_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _load_dotenv_file(path: Path) -> None:
    """Load KEY=VALUE pairs from a dotenv file without overriding existing env."""
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key:
            os.environ.setdefault(key, value)


def _load_dotenv_files(paths: Iterable[Path]) -> None:
    """Load multiple dotenv files in order."""
    for path in paths:
        _load_dotenv_file(path)


@dataclass(frozen=True)
class Settings:
    """Runtime settings for identity resolution and thumbnail storage."""

    match_threshold: float
    max_samples: int
    descriptor_dimension: int
    identity_id_prefix: str
    identity_first_id: int
    identity_store_path: str
    critical_section_timeout_seconds: float
    orphan_sweep_enabled: bool
    orphan_sweep_interval_hours: int
    r2_account_id: str
    r2_bucket: str
    r2_access_key_id: str
    r2_secret_access_key: str

    @classmethod
    def from_env(
        cls,
        *,
        autoload_dotenv: bool = True,
        dotenv_files: tuple[Path, ...] | None = None,
    ) -> "Settings":
        if autoload_dotenv:
            backend_root = Path(__file__).resolve().parent.parent
            default_dotenvs = (backend_root / ".env", backend_root / ".env.local")
            _load_dotenv_files(dotenv_files or default_dotenvs)
        return cls(
            match_threshold=_read_float("IDENTITY_MATCH_THRESHOLD", default=0.30, minimum=0.0),
            max_samples=_read_int("IDENTITY_MAX_SAMPLES", default=5, minimum=1),
            descriptor_dimension=_read_int("DESCRIPTOR_DIMENSION", default=128, minimum=1),
            identity_id_prefix=os.getenv("IDENTITY_ID_PREFIX", "person_").strip() or "person_",
            identity_first_id=_read_int("IDENTITY_FIRST_ID", default=1, minimum=0),
            identity_store_path=os.getenv("IDENTITY_STORE_PATH", "").strip(),
            critical_section_timeout_seconds=_read_float(
                "CRITICAL_SECTION_TIMEOUT_SECONDS",
                default=30.0,
                minimum=0.1,
            ),
            orphan_sweep_enabled=_read_bool("ENABLE_ORPHAN_SWEEP", default=True),
            orphan_sweep_interval_hours=_read_int("ORPHAN_SWEEP_INTERVAL_HOURS", default=24, minimum=1),
            r2_account_id=os.getenv("R2_ACCOUNT_ID", "").strip(),
            r2_bucket=os.getenv("R2_BUCKET", "").strip(),
            r2_access_key_id=os.getenv("R2_ACCESS_KEY_ID", "").strip(),
            r2_secret_access_key=os.getenv("R2_SECRET_ACCESS_KEY", "").strip(),
        )

    def missing_r2_fields(self) -> list[str]:
        missing: list[str] = []
        if not self.r2_account_id:
            missing.append("R2_ACCOUNT_ID")
        if not self.r2_bucket:
            missing.append("R2_BUCKET")
        if not self.r2_access_key_id:
            missing.append("R2_ACCESS_KEY_ID")
        if not self.r2_secret_access_key:
            missing.append("R2_SECRET_ACCESS_KEY")
        return missing
