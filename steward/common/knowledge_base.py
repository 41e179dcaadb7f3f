"""
Knowledge Base

Owns the in-memory copy of the named knowledge documents. Each ``reload()``
produces a new immutable ``KnowledgeSnapshot`` with an incremented version;
readers hold on to the snapshot they were handed, so a reload never changes
text underneath a running handler.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Mapping, Optional

logger = logging.getLogger("steward.common.knowledge_base")


@dataclass(frozen=True)
class KnowledgeSnapshot:
    """A point-in-time view of every knowledge document"""
    version: int
    documents: Mapping[str, str] = field(default_factory=dict)
    loaded_at: Optional[str] = None

    def get(self, name: str) -> str:
        return self.documents.get(name, "")

    @property
    def is_loaded(self) -> bool:
        return self.loaded_at is not None


class KnowledgeBase:
    """
    Loads knowledge documents from a directory.

    Args:
        base_path: Directory holding the Markdown documents
        files: Document name -> file name within base_path
    """

    def __init__(self, base_path: str, files: Dict[str, str]):
        self._base_path = Path(base_path).expanduser()
        self._files = dict(files)
        self._lock = threading.Lock()
        self._snapshot = KnowledgeSnapshot(version=0)

    @property
    def base_path(self) -> Path:
        return self._base_path

    def path_for(self, file_name: str) -> Path:
        """Resolve a document file name inside the knowledge directory"""
        return self._base_path / file_name

    def snapshot(self) -> KnowledgeSnapshot:
        return self._snapshot

    def reload(self) -> KnowledgeSnapshot:
        """Re-read every configured document and publish a new snapshot"""
        documents: Dict[str, str] = {}
        for name, file_name in self._files.items():
            path = self.path_for(file_name)
            if path.exists():
                documents[name] = path.read_text(encoding="utf-8")
                logger.info("Loaded %s (%d chars)", file_name, len(documents[name]))
            else:
                logger.warning("%s not found, skipping", file_name)
                documents[name] = ""

        with self._lock:
            self._snapshot = KnowledgeSnapshot(
                version=self._snapshot.version + 1,
                documents=MappingProxyType(documents),
                loaded_at=datetime.now(timezone.utc).isoformat(),
            )
            snapshot = self._snapshot

        logger.info("Knowledge base v%d loaded at %s", snapshot.version, snapshot.loaded_at)
        return snapshot
