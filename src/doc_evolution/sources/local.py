from __future__ import annotations

import logging
from pathlib import Path

from doc_evolution.core.errors import ContentSourceError, DocumentNotFoundError

logger = logging.getLogger(__name__)


class LocalDirectorySource:
    """Markdown files in a directory, one document per file.

    The document id is the file stem and the name is the first heading,
    falling back to the stem.
    """

    def __init__(self, root: Path, pattern: str = "*.md") -> None:
        self.root = Path(root)
        self.pattern = pattern

    def _path(self, document_id: str) -> Path:
        path = self.root / f"{document_id}.md"
        if path.parent != self.root:
            raise DocumentNotFoundError(document_id)
        return path

    async def list_documents(self) -> list[tuple[str, str]]:
        if not self.root.is_dir():
            raise ContentSourceError(f"Document directory not found: {self.root}")

        documents = []
        for path in sorted(self.root.glob(self.pattern)):
            name = path.stem
            for line in path.read_text().splitlines():
                if line.startswith("#"):
                    name = line.lstrip("#").strip() or name
                    break
            documents.append((path.stem, name))
        return documents

    async def get_content(self, document_id: str) -> str:
        path = self._path(document_id)
        if not path.exists():
            raise DocumentNotFoundError(document_id)
        try:
            return path.read_text()
        except OSError as e:
            raise ContentSourceError(f"Failed to read {path}: {e}") from e

    async def update_content(self, document_id: str, new_text: str) -> None:
        path = self._path(document_id)
        if not path.exists():
            raise DocumentNotFoundError(document_id)
        try:
            path.write_text(new_text)
        except OSError as e:
            raise ContentSourceError(f"Failed to write {path}: {e}") from e
        logger.info("Updated content of %s", document_id)
