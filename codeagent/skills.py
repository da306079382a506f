"""
Skill discovery.

A skill is a directory containing `SKILL.md` with YAML frontmatter:

    ---
    name: release-notes
    description: Draft release notes from the git log
    ---
    <instructions>

Skills are searched in `<workspace>/.codeagent/skills`, `<workspace>/skills`
and `~/.codeagent/skills`. The first skill with a given name wins.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import yaml

logger = logging.getLogger("codeagent")

SKILL_FILE = "SKILL.md"
_FRONTMATTER = re.compile(r"\A---\s*\n(.*?)\n---\s*(?:\n|\Z)(.*)\Z", re.DOTALL)


@dataclass
class Skill:
    name: str
    description: str
    path: Path
    content: str


def skill_roots(workspace_dir: Path | str, home_dir: Path | str | None = None) -> List[Path]:
    workspace = Path(workspace_dir).resolve()
    home = Path(home_dir) if home_dir else Path.home()
    return [workspace / ".codeagent" / "skills", workspace / "skills", home / ".codeagent" / "skills"]


def parse_skill(path: Path) -> Optional[Skill]:
    """Parse one SKILL.md; returns None when it cannot be read or is malformed."""
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("skill_read_failed path=%s error=%s", path, exc)
        return None

    meta: Dict[str, object] = {}
    body = text
    match = _FRONTMATTER.match(text)
    if match:
        try:
            loaded = yaml.safe_load(match.group(1)) or {}
        except yaml.YAMLError as exc:
            logger.warning("skill_frontmatter_invalid path=%s error=%s", path, exc)
            return None
        if isinstance(loaded, dict):
            meta = loaded
        body = match.group(2)

    name = str(meta.get("name") or path.parent.name).strip()
    description = str(meta.get("description") or "").strip()
    return Skill(name=name, description=description, path=path, content=body.strip())


def discover_skills(workspace_dir: Path | str, home_dir: Path | str | None = None) -> List[Skill]:
    skills: Dict[str, Skill] = {}
    for root in skill_roots(workspace_dir, home_dir):
        if not root.is_dir():
            continue
        for path in sorted(root.glob(f"*/{SKILL_FILE}")):
            skill = parse_skill(path)
            if skill is None:
                continue
            if skill.name in skills:
                logger.debug("skill_shadowed name=%s path=%s", skill.name, path)
                continue
            skills[skill.name] = skill
    return sorted(skills.values(), key=lambda s: s.name)


def get_skill(workspace_dir: Path | str, name: str, home_dir: Path | str | None = None) -> Optional[Skill]:
    for skill in discover_skills(workspace_dir, home_dir):
        if skill.name == name:
            return skill
    return None
