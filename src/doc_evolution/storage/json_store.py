from __future__ import annotations

import json
import logging
from pathlib import Path

from doc_evolution.core.errors import PersistenceError
from doc_evolution.storage.memory import TABLES, InMemoryStore

logger = logging.getLogger(__name__)


class JsonFileStore(InMemoryStore):
    """InMemoryStore that mirrors every table to <data_dir>/<table>.json."""

    def __init__(self, data_dir: Path) -> None:
        super().__init__()
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

        for table in TABLES:
            path = self._path(table)
            if not path.exists():
                continue
            try:
                rows = json.loads(path.read_text())
            except json.JSONDecodeError as e:
                raise PersistenceError(f"Corrupt table file {path}: {e}") from e
            self._tables[table] = {row["id"]: row for row in rows}
            logger.debug("Loaded %d rows from %s", len(rows), path)

    def _path(self, table: str) -> Path:
        return self.data_dir / f"{table}.json"

    def _persist(self, table: str, rows: dict[str, dict]) -> None:
        path = self._path(table)
        tmp = path.with_suffix(".json.tmp")
        try:
            tmp.write_text(json.dumps(list(rows.values()), indent=2))
            tmp.replace(path)
        except OSError as e:
            raise PersistenceError(f"Failed to write {path}: {e}") from e
