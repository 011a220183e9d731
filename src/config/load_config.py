from __future__ import annotations

import os
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from src.wf.backend import BucketNames


class ConfigError(RuntimeError):
    pass


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_float(value: Any, *, key: str) -> float:
    try:
        return float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _as_positive_float(value: Any, *, key: str) -> float:
    f = _as_float(value, key=key)
    if f <= 0:
        raise ConfigError(f"Invalid {key}: must be > 0, got {f!r}")
    return f


def _as_identifier(value: Any, *, key: str) -> str:
    """Bucket names end up in SQL identifiers (index names), so keep them plain."""
    s = _as_str(value, key=key).strip()
    if not s or not (s[0].isalpha() or s[0] == "_") or not s.replace("_", "").isalnum():
        raise ConfigError(f"Invalid {key}: must be letters, digits and underscores, got {s!r}")
    return s


def _resolve_path(value: Any, *, key: str, base_dir: Path) -> Path:
    p = Path(_as_str(value, key=key)).expanduser()
    if not p.is_absolute():
        p = base_dir / p
    return p.resolve()


@dataclass(frozen=True)
class StoreConfig:
    sqlite_path: str
    busy_timeout_s: float


@dataclass(frozen=True)
class RunnerConfig:
    identifier: str
    poll_interval_s: float


@dataclass(frozen=True)
class AppConfig:
    store: StoreConfig
    buckets: BucketNames
    runner: RunnerConfig


def default_config_path() -> Path:
    return Path(os.getenv("WF_CONFIG_PATH", "config/default.toml")).expanduser().resolve()


def default_runner_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def load_app_config(path: Path | None = None) -> AppConfig:
    """Load config from TOML. `WF_SQLITE_PATH` / `WF_RUNNER_ID` override the file."""
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    try:
        import tomllib  # py3.11+
    except Exception as e:
        raise ConfigError("tomllib is required (Python 3.11+).") from e

    try:
        raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {cfg_path}: {e}") from e

    store = raw.get("store", {})
    buckets = raw.get("buckets", {})
    runner = raw.get("runner", {})

    # Relative paths in the file are relative to the repo root (config lives in `<repo>/config/`).
    base_dir = cfg_path.parent.parent
    sqlite_path = os.getenv("WF_SQLITE_PATH") or str(
        _resolve_path(store.get("sqlite_path", "data/wf.db"), key="store.sqlite_path", base_dir=base_dir)
    )

    identifier = os.getenv("WF_RUNNER_ID") or str(runner.get("identifier") or "").strip() or default_runner_id()

    return AppConfig(
        store=StoreConfig(
            sqlite_path=sqlite_path,
            busy_timeout_s=_as_positive_float(store.get("busy_timeout_s", 5.0), key="store.busy_timeout_s"),
        ),
        buckets=BucketNames(
            workflows=_as_identifier(buckets.get("workflows", "wf_workflows"), key="buckets.workflows"),
            jobs=_as_identifier(buckets.get("jobs", "wf_jobs"), key="buckets.jobs"),
            runners=_as_identifier(buckets.get("runners", "wf_runners"), key="buckets.runners"),
        ),
        runner=RunnerConfig(
            identifier=identifier,
            poll_interval_s=_as_positive_float(runner.get("poll_interval_s", 0.5), key="runner.poll_interval_s"),
        ),
    )
