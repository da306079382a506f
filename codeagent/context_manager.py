"""
Tiered instruction memory.

1. Global memory: first recognized file in the user-global directory.
2. Environment memory: recognized files from the workspace root upward,
   stopping at the home directory.
3. JIT memory: loaded lazily when a file tool touches a path, walking from
   that path up to the workspace root. Cached until cleared.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set

logger = logging.getLogger("codeagent")

DEFAULT_MEMORY_FILE_NAMES = ("CODEAGENT.md", "AGENTS.md", "GEMINI.md", ".cursorrules")
SECTION_SEPARATOR = "\n\n---\n\n"


@dataclass
class MemoryTier:
    level: int
    name: str
    content: str
    source_path: Path
    loaded_at: float


def _read_memory_file(path: Path) -> Optional[str]:
    try:
        if not path.is_file():
            return None
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        logger.debug("context_read_failed path=%s error=%s", path, exc)
        return None
    return content if content.strip() else None


class ContextManager:
    def __init__(
        self,
        workspace_dir: Path | str,
        *,
        home_dir: Path | str | None = None,
        global_dir: Path | str | None = None,
        memory_file_names: Sequence[str] = DEFAULT_MEMORY_FILE_NAMES,
        max_environment_depth: int = 10,
        max_jit_depth: int = 5,
    ) -> None:
        self.workspace_dir = Path(workspace_dir).resolve()
        self.home_dir = Path(home_dir).resolve() if home_dir else Path.home().resolve()
        self.global_dir = Path(global_dir).expanduser() if global_dir else self.home_dir / ".codeagent"
        self.memory_file_names = tuple(memory_file_names)
        self.max_environment_depth = max_environment_depth
        self.max_jit_depth = max_jit_depth

        self._global: Optional[MemoryTier] = None
        self._environment: List[MemoryTier] = []
        self._jit: Dict[Path, MemoryTier] = {}
        self._loaded_paths: Set[Path] = set()
        self._initialized = False

    @property
    def global_memory(self) -> Optional[MemoryTier]:
        return self._global

    @property
    def environment_memory(self) -> List[MemoryTier]:
        return list(self._environment)

    @property
    def jit_memory(self) -> List[MemoryTier]:
        return list(self._jit.values())

    @property
    def initialized(self) -> bool:
        return self._initialized

    def all_memory(self) -> List[MemoryTier]:
        tiers: List[MemoryTier] = [self._global] if self._global else []
        return tiers + self._environment + list(self._jit.values())

    def initialize(self) -> None:
        self._load_global()
        self._load_environment()
        self._initialized = True
        logger.debug(
            "context_init workspace=%s global=%s environment=%s",
            self.workspace_dir,
            bool(self._global),
            len(self._environment),
        )

    def refresh(self) -> None:
        """Reload every tier from disk."""
        self._loaded_paths.clear()
        self._jit.clear()
        self._global = None
        self._environment = []
        self.initialize()

    def clear_jit_memory(self) -> None:
        self._jit.clear()

    def _load_global(self) -> None:
        for file_name in self.memory_file_names:
            path = self.global_dir / file_name
            content = _read_memory_file(path)
            if content is None:
                continue
            self._global = MemoryTier(1, "Global Memory", content, path, time.time())
            self._loaded_paths.add(path)
            return

    def _load_environment(self) -> None:
        found: List[MemoryTier] = []
        current = self.workspace_dir
        for _ in range(self.max_environment_depth):
            for file_name in self.memory_file_names:
                path = current / file_name
                if path in self._loaded_paths:
                    continue
                content = _read_memory_file(path)
                if content is None:
                    continue
                found.append(MemoryTier(2, f"Project Memory ({file_name})", content, path, time.time()))
                self._loaded_paths.add(path)
            parent = current.parent
            if parent == current or parent == self.home_dir:
                break
            current = parent
        # Most general first so the workspace-level file renders last.
        self._environment = list(reversed(found))

    def load_jit_memory(self, accessed_path: Path | str) -> List[MemoryTier]:
        """Load not-yet-seen memory files between `accessed_path` and the workspace root."""
        path = Path(accessed_path)
        if not path.is_absolute():
            path = self.workspace_dir / path
        path = path.resolve()
        current = path if path.is_dir() else path.parent

        new: List[MemoryTier] = []
        for _ in range(self.max_jit_depth):
            if not current.is_relative_to(self.workspace_dir):
                break
            for file_name in self.memory_file_names:
                candidate = current / file_name
                if candidate in self._loaded_paths or candidate in self._jit:
                    continue
                content = _read_memory_file(candidate)
                if content is None:
                    continue
                tier = MemoryTier(3, f"JIT Memory ({file_name})", content, candidate, time.time())
                self._jit[candidate] = tier
                new.append(tier)
            if current == self.workspace_dir or current.parent == current:
                break
            current = current.parent

        if new:
            logger.info("context_jit path=%s loaded=%s", path, len(new))
        return new

    def get_full_context(self) -> str:
        parts: List[str] = []
        if self._global:
            parts.append(f"## Global Instructions\n\n{self._global.content}")
        for tier in self._environment:
            parts.append(f"## Project Instructions ({tier.source_path})\n\n{tier.content}")
        for tier in self._jit.values():
            parts.append(f"## Context Instructions ({tier.source_path})\n\n{tier.content}")
        return SECTION_SEPARATOR.join(parts)
