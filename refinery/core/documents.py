"""Document storage used to seed executions.

The engine only needs a loader callable ``(document_id) -> markdown | None``.
``FileDocumentStore`` keeps one markdown file per document id.
"""

import re
from collections.abc import Callable
from pathlib import Path

from refinery.core.errors import WorkflowError

DocumentLoader = Callable[[str], str | None]

# Prevents path traversal via ids like "../../etc/passwd"
_VALID_DOCUMENT_ID = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")


class FileDocumentStore:
    """Markdown documents stored as ``<root>/<document_id>.md``."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def path_for(self, document_id: str) -> Path:
        if not _VALID_DOCUMENT_ID.match(document_id) or ".." in document_id:
            raise WorkflowError(
                f"Invalid document id: {document_id!r}", details={"document_id": document_id}
            )
        return self.root / f"{document_id}.md"

    def load(self, document_id: str) -> str | None:
        path = self.path_for(document_id)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def save(self, document_id: str, markdown: str) -> Path:
        path = self.path_for(document_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(markdown, encoding="utf-8")
        return path

    def list_ids(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(p.stem for p in self.root.glob("*.md"))

    def __call__(self, document_id: str) -> str | None:
        return self.load(document_id)
