from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class AppPaths:
    project_root: Path
    state_dir: Path
    db_path: Path
    vector_dir: Path
    qdrant_dir: Path
    pools_path: Path


@dataclass(frozen=True)
class BulkSettings:
    poll_interval_seconds: float
    task_max_attempts: int
    prepare_queue_name: str
    poll_queue_name: str
    document_page_size: int


DEFAULT_STATE_DIRNAME = ".vectorsync"
DEFAULT_QUEUE_NAME = "default"


def load_paths(project_root: Path | None = None) -> AppPaths:
    root = (project_root or Path.cwd()).expanduser().resolve()

    home_raw = os.getenv("VECTORSYNC_HOME")
    if home_raw:
        state_dir = Path(home_raw).expanduser().resolve()
    else:
        state_dir = root / DEFAULT_STATE_DIRNAME

    return AppPaths(
        project_root=root,
        state_dir=state_dir,
        db_path=state_dir / "vectorsync.db",
        vector_dir=state_dir / "vector",
        qdrant_dir=state_dir / "vector" / "qdrant",
        pools_path=state_dir / "pools.toml",
    )


def load_settings() -> BulkSettings:
    return BulkSettings(
        poll_interval_seconds=read_float_env("VECTORSYNC_POLL_INTERVAL_SECONDS", 5.0, allow_zero=True),
        task_max_attempts=read_int_env("VECTORSYNC_TASK_MAX_ATTEMPTS", 3),
        prepare_queue_name=os.getenv("VECTORSYNC_PREPARE_QUEUE") or DEFAULT_QUEUE_NAME,
        poll_queue_name=os.getenv("VECTORSYNC_POLL_QUEUE") or DEFAULT_QUEUE_NAME,
        document_page_size=read_int_env("VECTORSYNC_DOCUMENT_PAGE_SIZE", 50),
    )


def read_float_env(name: str, default: float, *, allow_zero: bool = False) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    if value > 0 or (allow_zero and value == 0):
        return value
    return default


def read_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def read_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default
