"""
Workspace memory sync: scan → diff → batch-summarize → index.

Re-sync cost is proportional to changed files: a file is only summarized when
it is missing from the manifest or its mtime is newer than the recorded one.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Protocol

from ..cancellation import AbortedError, CancellationToken
from ..config import Settings, get_settings
from ..retry import RetryPolicy, is_rate_limit_error
from . import summarizer
from .store import Manifest, ManifestEntry, MemoryStore

logger = logging.getLogger("codeagent")

TEXT_EXTENSIONS = frozenset(
    {
        "md", "txt", "ts", "tsx", "js", "jsx", "json", "yaml", "yml",
        "toml", "py", "go", "rs", "html", "css", "scss", "less",
        "java", "c", "cpp", "h", "hpp", "sh", "bash", "zsh",
        "sql", "graphql", "prisma", "env", "gitignore", "dockerfile",
    }
)

SKIP_DIRS = frozenset(
    {
        ".git", "node_modules", "dist", "build", ".next", ".cache", "coverage",
        "__pycache__", ".venv", "venv", "target", ".turbo", ".vercel", ".output",
        ".mypy_cache", ".pytest_cache", ".tox",
    }
)

SKIP_FILES = frozenset(
    {
        "package-lock.json", "yarn.lock", "pnpm-lock.yaml", "bun.lock",
        "Cargo.lock", "poetry.lock", "composer.lock", "uv.lock",
    }
)

MAX_SCAN_DEPTH = 15
INDEX_PLACEHOLDER = "_Project overview could not be generated during this sync._"


class SummarizationClient(Protocol):
    async def complete(self, system_prompt: str, prompt: str, max_tokens: int = 1024) -> str:
        ...

    async def validate(self) -> bool:
        ...


@dataclass
class ScannedFile:
    path: Path
    relative_path: str
    modified_time: float
    size: int
    extension: str


@dataclass
class SyncProgress:
    phase: str  # scanning | summarizing | indexing | done
    current: int = 0
    total: int = 0
    message: str = ""


@dataclass
class SyncResult:
    indexed: int = 0
    skipped: int = 0
    errors: int = 0
    error_files: List[str] = field(default_factory=list)
    index_updated: bool = False
    duration: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "indexed": self.indexed,
            "skipped": self.skipped,
            "errors": self.errors,
            "error_files": list(self.error_files),
            "index_updated": self.index_updated,
            "duration": round(self.duration, 3),
            "error": self.error,
        }


ProgressCallback = Callable[[SyncProgress], None]
SleepFn = Callable[[float, Optional[CancellationToken]], Awaitable[None]]


def _extension_of(name: str) -> str:
    return name.rsplit(".", 1)[-1].lower() if "." in name else name.lower()


def scan_workspace(workspace_dir: Path, max_file_bytes: int = 500 * 1024) -> List[ScannedFile]:
    """Eligible text files under `workspace_dir`, sorted by relative path."""
    found: List[ScannedFile] = []

    def walk(directory: Path, depth: int) -> None:
        if depth > MAX_SCAN_DEPTH:
            return
        try:
            entries = list(os.scandir(directory))
        except OSError as exc:
            logger.debug("sync_scan_skip dir=%s error=%s", directory, exc)
            return
        for entry in entries:
            name = entry.name
            if name.startswith(".") and name != ".env":
                continue
            try:
                if entry.is_dir(follow_symlinks=False):
                    if name not in SKIP_DIRS:
                        walk(Path(entry.path), depth + 1)
                    continue
                if not entry.is_file():
                    continue
                if name in SKIP_FILES:
                    continue
                ext = _extension_of(name)
                if ext not in TEXT_EXTENSIONS:
                    continue
                stat = entry.stat()
            except OSError:
                continue
            if stat.st_size > max_file_bytes:
                continue
            path = Path(entry.path)
            found.append(
                ScannedFile(
                    path=path,
                    relative_path=path.relative_to(workspace_dir).as_posix(),
                    modified_time=stat.st_mtime,
                    size=stat.st_size,
                    extension=ext,
                )
            )

    walk(workspace_dir, 0)
    found.sort(key=lambda f: f.relative_path)
    return found


def needs_processing(file: ScannedFile, manifest: Manifest) -> bool:
    entry = manifest.entries.get(file.relative_path)
    return entry is None or file.modified_time > entry.modified_time


async def _sleep(seconds: float, token: Optional[CancellationToken]) -> None:
    if token is not None:
        await token.sleep(seconds)
    else:
        await asyncio.sleep(seconds)


class MemorySyncEngine:
    def __init__(
        self,
        client: SummarizationClient,
        settings: Optional[Settings] = None,
        *,
        sleep: SleepFn = _sleep,
    ) -> None:
        self.client = client
        self.settings = settings or get_settings()
        self._sleep = sleep
        self.retry = RetryPolicy(
            max_retries=self.settings.sync_max_retries,
            base_delay=self.settings.sync_batch_delay,
            classify=is_rate_limit_error,
            sleep=sleep,
        )

    def store_for(self, workspace_dir: Path | str) -> MemoryStore:
        return MemoryStore(workspace_dir, self.settings.memory_dir_name)

    async def sync(
        self,
        workspace_dir: Path | str,
        *,
        force: bool = False,
        token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SyncResult:
        started = time.monotonic()
        token = token or CancellationToken()
        token.raise_if_cancelled()

        def progress(phase: str, current: int = 0, total: int = 0, message: str = "") -> None:
            if on_progress is not None:
                on_progress(SyncProgress(phase, current, total, message))

        store = self.store_for(workspace_dir)
        store.ensure()
        manifest = store.load_manifest()
        result = SyncResult()
        logger.info("sync_start workspace=%s force=%s", store.workspace_dir, force)

        progress("scanning", message=str(store.workspace_dir))
        files = await asyncio.to_thread(scan_workspace, store.workspace_dir, self.settings.max_file_bytes)
        token.raise_if_cancelled()

        pending = [f for f in files if force or needs_processing(f, manifest)]
        result.skipped = len(files) - len(pending)
        logger.info("sync_scan total=%s pending=%s", len(files), len(pending))

        if pending:
            if not await self._validate_client(result):
                return self._finish(store, manifest, result, started, progress)
            processed = await self._summarize(store, manifest, pending, result, token, progress)
        else:
            processed = 0

        if files and (processed > 0 or not store.index_path.exists()):
            token.raise_if_cancelled()
            progress("indexing", 0, 1)
            await self._write_index(store, files, manifest, token)
            result.index_updated = True

        return self._finish(store, manifest, result, started, progress)

    async def _validate_client(self, result: SyncResult) -> bool:
        try:
            valid = await self.client.validate()
        except AbortedError:
            raise
        except Exception as exc:
            valid = False
            result.error = f"Summarization credential is invalid or the API is unreachable: {exc}"
        if not valid:
            result.error = result.error or "Summarization credential validation failed"
            result.errors += 1
            logger.error("sync_validate_failed error=%s", result.error)
        return valid

    async def _summarize(
        self,
        store: MemoryStore,
        manifest: Manifest,
        pending: List[ScannedFile],
        result: SyncResult,
        token: CancellationToken,
        progress: Callable[..., None],
    ) -> int:
        """Summarize `pending` batch by batch; returns the number of files attempted."""
        prepared: List[summarizer.PreparedFile] = []
        scanned_by_path = {}
        for file in pending:
            token.raise_if_cancelled()
            try:
                content = await asyncio.to_thread(file.path.read_text, encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("sync_read_failed path=%s error=%s", file.relative_path, exc)
                result.errors += 1
                result.error_files.append(file.relative_path)
                continue
            prepared.append(summarizer.prepare_file(file.relative_path, file.extension, content))
            scanned_by_path[file.relative_path] = file

        batches = summarizer.pack_batches(
            prepared,
            max_chars=self.settings.sync_batch_chars,
            max_files=self.settings.sync_batch_files,
        )
        logger.info("sync_batches files=%s batches=%s", len(prepared), len(batches))
        total = len(prepared)
        done = 0
        progress("summarizing", 0, total)

        for number, batch in enumerate(batches, start=1):
            token.raise_if_cancelled()
            if number > 1:
                await self._sleep(self.settings.sync_batch_delay, token)
            prompt = (
                summarizer.single_file_prompt(batch[0])
                if len(batch) == 1
                else summarizer.batch_prompt(batch)
            )
            try:
                response = await self.retry.run(
                    lambda: token.guard(self.client.complete(summarizer.SUMMARY_SYSTEM_PROMPT, prompt, 2048)),
                    token=token,
                    label=f"sync_batch_{number}",
                )
            except AbortedError:
                store.save_manifest(manifest)
                raise
            except Exception as exc:
                logger.error("sync_batch_failed batch=%s files=%s error=%s", number, len(batch), exc)
                for item in batch:
                    store.write_file_summary(item.relative_path, summarizer.error_stub(item, str(exc)))
                    result.errors += 1
                    result.error_files.append(item.relative_path)
            else:
                documents = summarizer.split_batch_response(batch, response)
                for item in batch:
                    scanned = scanned_by_path[item.relative_path]
                    memory_file = store.write_file_summary(item.relative_path, documents[item.relative_path])
                    manifest.entries[item.relative_path] = ManifestEntry(
                        relative_path=item.relative_path,
                        modified_time=scanned.modified_time,
                        memory_file=memory_file,
                        summarized_at=time.time(),
                    )
                    result.indexed += 1
                # Checkpoint so an abort after this batch keeps its entries.
                store.save_manifest(manifest)
            done += len(batch)
            progress("summarizing", done, total, batch[-1].relative_path)

        return len(pending)

    async def _write_index(
        self,
        store: MemoryStore,
        files: List[ScannedFile],
        manifest: Manifest,
        token: CancellationToken,
    ) -> None:
        project = store.workspace_dir.name or "workspace"
        paths = [f.relative_path for f in files]
        prompt = summarizer.index_prompt(project, paths, [f.extension for f in files])
        try:
            overview = await token.guard(self.client.complete(summarizer.SUMMARY_SYSTEM_PROMPT, prompt, 1024))
        except AbortedError:
            raise
        except Exception as exc:
            logger.warning("sync_index_overview_failed error=%s", exc)
            overview = ""
        document = summarizer.build_index_document(
            project, paths, manifest.entries, overview.strip() or INDEX_PLACEHOLDER
        )
        store.write_index(document)

    def _finish(
        self,
        store: MemoryStore,
        manifest: Manifest,
        result: SyncResult,
        started: float,
        progress: Callable[..., None],
    ) -> SyncResult:
        manifest.last_sync = time.time()
        store.save_manifest(manifest)
        result.duration = time.monotonic() - started
        progress("done", result.indexed, result.indexed + result.skipped)
        logger.info(
            "sync_done indexed=%s skipped=%s errors=%s duration=%.2f",
            result.indexed,
            result.skipped,
            result.errors,
            result.duration,
        )
        return result
