"""
On-disk workspace memory.

Layout (under `<workspace>/<memory_dir_name>/`):

    manifest.json         pretty-printed Manifest
    index.md              workspace overview
    files/<slug>.md       one summary per indexed source file
    journal/YYYY-MM-DD.md append-only dated notes with `## HH:MM` headers
    todos.json            agent todo list

The manifest is always replaced atomically (temp file + os.replace) so a
crash mid-sync leaves either the old or the new manifest, never a torn one.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger("codeagent")

FILES_DIR = "files"
JOURNAL_DIR = "journal"
INDEX_FILE = "index.md"
MANIFEST_FILE = "manifest.json"
TODOS_FILE = "todos.json"
MANIFEST_VERSION = 1

JOURNAL_WINDOW_DAYS = 7
MAX_SEARCH_MATCHES_PER_FILE = 5


class ManifestEntry(BaseModel):
    relative_path: str
    modified_time: float
    memory_file: str
    summarized_at: float


class Manifest(BaseModel):
    version: int = MANIFEST_VERSION
    last_sync: float = 0
    entries: Dict[str, ManifestEntry] = Field(default_factory=dict)


@dataclass
class SearchHit:
    file: str
    matches: List[str]


@dataclass
class SyncStatus:
    initialized: bool
    last_sync: float
    file_count: int
    has_index: bool


def _slug_char(match: re.Match) -> str:
    char = match.group(0)
    if char in "-_":
        return char * 2
    if char in "/\\":
        return "-"
    return f"_{ord(char):x}_"


def slugify_path(relative_path: str) -> str:
    """
    Deterministic, collision-free memory file stem for a workspace-relative path.

    Separators become `-`, literal `-` and `_` are doubled, and any other
    character outside `[A-Za-z0-9.]` becomes `_<hex codepoint>_`.
    """
    return re.sub(r"[^a-zA-Z0-9.]", _slug_char, relative_path)


def memory_file_name(relative_path: str) -> str:
    return slugify_path(relative_path) + ".md"


def atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class MemoryStore:
    """File-backed memory for one workspace."""

    def __init__(self, workspace_dir: Path | str, memory_dir_name: str = ".agentmemory") -> None:
        self.workspace_dir = Path(workspace_dir).resolve()
        self.memory_dir_name = memory_dir_name
        self.root = self.workspace_dir / memory_dir_name

    @property
    def files_dir(self) -> Path:
        return self.root / FILES_DIR

    @property
    def journal_dir(self) -> Path:
        return self.root / JOURNAL_DIR

    @property
    def index_path(self) -> Path:
        return self.root / INDEX_FILE

    @property
    def manifest_path(self) -> Path:
        return self.root / MANIFEST_FILE

    @property
    def todos_path(self) -> Path:
        return self.root / TODOS_FILE

    def ensure(self) -> Path:
        self.files_dir.mkdir(parents=True, exist_ok=True)
        self.journal_dir.mkdir(parents=True, exist_ok=True)
        return self.root

    # -- manifest --------------------------------------------------------

    def load_manifest(self) -> Manifest:
        if not self.manifest_path.exists():
            return Manifest()
        try:
            raw = json.loads(self.manifest_path.read_text(encoding="utf-8"))
            return Manifest.model_validate(raw)
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning("manifest_corrupt path=%s error=%s; starting fresh", self.manifest_path, exc)
            return Manifest()

    def save_manifest(self, manifest: Manifest) -> None:
        atomic_write_text(self.manifest_path, json.dumps(manifest.model_dump(), indent=2) + "\n")

    # -- summaries and index --------------------------------------------

    def write_file_summary(self, relative_path: str, content: str) -> str:
        name = memory_file_name(relative_path)
        atomic_write_text(self.files_dir / name, content)
        return name

    def write_index(self, content: str) -> None:
        atomic_write_text(self.index_path, content)

    def read_index(self) -> Optional[str]:
        return self.read(INDEX_FILE)

    # -- journal ---------------------------------------------------------

    def write_journal_entry(self, content: str, now: Optional[datetime] = None) -> Path:
        now = now or datetime.now()
        self.ensure()
        path = self.journal_dir / f"{now.strftime('%Y-%m-%d')}.md"
        with path.open("a", encoding="utf-8") as f:
            f.write(f"\n## {now.strftime('%H:%M')}\n\n{content}\n")
        return path

    def recent_journal(self, now: Optional[datetime] = None, days: int = JOURNAL_WINDOW_DAYS) -> List[Path]:
        if not self.journal_dir.is_dir():
            return []
        now = now or datetime.now()
        cutoff = (now - timedelta(days=days)).date()
        dated = []
        for path in self.journal_dir.glob("*.md"):
            try:
                day = datetime.strptime(path.stem, "%Y-%m-%d").date()
            except ValueError:
                continue
            if day >= cutoff:
                dated.append((day, path))
        dated.sort(reverse=True)
        return [path for _, path in dated[:days]]

    # -- reads -----------------------------------------------------------

    def _resolve_inside(self, memory_path: str) -> Optional[Path]:
        candidate = (self.root / memory_path).resolve()
        if not candidate.is_relative_to(self.root.resolve()):
            return None
        return candidate

    def read(self, memory_path: str) -> Optional[str]:
        path = self._resolve_inside(memory_path)
        if path is None or not path.is_file():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None

    def list_files(self) -> List[str]:
        if not self.files_dir.is_dir():
            return []
        return sorted(f"{FILES_DIR}/{p.name}" for p in self.files_dir.glob("*.md"))

    def search(self, query: str) -> List[SearchHit]:
        """Case-insensitive line search across every markdown file in memory."""
        if not self.root.is_dir() or not query:
            return []
        needle = query.lower()
        hits: List[SearchHit] = []
        for path in sorted(self.root.rglob("*.md")):
            try:
                lines = path.read_text(encoding="utf-8").splitlines()
            except (OSError, UnicodeDecodeError):
                continue
            matches = [line.strip() for line in lines if needle in line.lower()]
            if matches:
                hits.append(
                    SearchHit(
                        file=path.relative_to(self.root).as_posix(),
                        matches=matches[:MAX_SEARCH_MATCHES_PER_FILE],
                    )
                )
        return hits

    def load_context(self, now: Optional[datetime] = None) -> str:
        """Index plus the last week of journal entries, for prompt injection."""
        if not self.root.is_dir():
            return ""
        parts: List[str] = []
        index = self.read_index()
        if index:
            parts.append("## Workspace Memory\n\n" + index)
        journal = self.recent_journal(now)
        if journal:
            parts.append("\n## Recent Journal Entries\n")
            for path in journal:
                try:
                    parts.append(f"\n### {path.stem}\n{path.read_text(encoding='utf-8')}")
                except (OSError, UnicodeDecodeError):
                    continue
        return "\n".join(parts)

    def sync_status(self) -> SyncStatus:
        if not self.root.is_dir():
            return SyncStatus(initialized=False, last_sync=0, file_count=0, has_index=False)
        manifest = self.load_manifest()
        return SyncStatus(
            initialized=True,
            last_sync=manifest.last_sync,
            file_count=len(manifest.entries),
            has_index=self.index_path.exists(),
        )
