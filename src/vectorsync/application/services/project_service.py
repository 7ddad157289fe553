from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from vectorsync.core.config import AppPaths
from vectorsync.core.errors import ProjectNotInitializedError
from vectorsync.infrastructure.db.sqlite import initialize_schema

DEFAULT_POOLS_TOML = """\
# Knowledge pools embedded by `vectorsync bulk start <pool>`.
#
# [pools.default]
# embedding_version = "minilm-v1"
# provider = "local"
# batch_size = 64
#
# [pools.default.collections.posts]
# text_field = "title"
"""


@dataclass(slots=True)
class InitResult:
    paths_created: list[Path]
    db_path: Path


class ProjectService:
    def __init__(self, paths: AppPaths) -> None:
        self.paths = paths

    def init_project(self) -> InitResult:
        paths_created: list[Path] = []

        for path in (self.paths.state_dir, self.paths.vector_dir, self.paths.qdrant_dir):
            if not path.exists():
                paths_created.append(path)
            path.mkdir(parents=True, exist_ok=True)

        if not self.paths.pools_path.exists():
            self.paths.pools_path.write_text(DEFAULT_POOLS_TOML, encoding="utf-8")
            paths_created.append(self.paths.pools_path)

        initialize_schema(self.paths.db_path)
        return InitResult(paths_created=paths_created, db_path=self.paths.db_path)

    def is_initialized(self) -> bool:
        return self.paths.db_path.exists()

    def require_initialized(self) -> None:
        if not self.is_initialized():
            raise ProjectNotInitializedError(
                f"Project is not initialized. Run 'vectorsync init' first in {self.paths.project_root}"
            )
        initialize_schema(self.paths.db_path)
