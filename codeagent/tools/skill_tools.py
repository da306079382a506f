from __future__ import annotations

import asyncio

from pydantic import BaseModel, Field

from ..models import ToolContext, ToolResult
from ..registry import ToolDefinition
from ..skills import discover_skills, get_skill


class ListSkillsParams(BaseModel):
    pass


class LoadSkillParams(BaseModel):
    name: str = Field(..., min_length=1, description="Name of the skill to load")


async def list_skills(params: ListSkillsParams, ctx: ToolContext) -> ToolResult:
    skills = await asyncio.to_thread(discover_skills, ctx.workspace_dir, ctx.services.get("home_dir"))
    if not skills:
        return ToolResult(
            title="No skills found",
            output=(
                "No skills found. Create skills/<name>/SKILL.md or .codeagent/skills/<name>/SKILL.md "
                "with name and description frontmatter."
            ),
            metadata={"count": 0},
        )
    listing = "\n".join(f"- **{s.name}**: {s.description or '(no description)'}" for s in skills)
    return ToolResult(
        title=f"Found {len(skills)} skill(s)",
        output=f"{listing}\n\nUse load_skill with a skill name to load its instructions.",
        metadata={"count": len(skills), "names": [s.name for s in skills]},
    )


async def load_skill(params: LoadSkillParams, ctx: ToolContext) -> ToolResult:
    home_dir = ctx.services.get("home_dir")
    skill = await asyncio.to_thread(get_skill, ctx.workspace_dir, params.name, home_dir)
    if skill is None:
        available = [s.name for s in await asyncio.to_thread(discover_skills, ctx.workspace_dir, home_dir)]
        hint = f" Available skills: {', '.join(available)}" if available else " No skills are available."
        return ToolResult.error(f"Skill {params.name!r} not found", f"Skill {params.name!r} not found.{hint}")
    return ToolResult(
        title=f"Loaded skill: {skill.name}",
        output=f"# Skill: {skill.name}\n\n{skill.content}\n\n---\nLoaded from: {skill.path}",
        metadata={"path": str(skill.path)},
    )


SKILL_TOOLS = [
    ToolDefinition(
        id="list_skills",
        description="List the reusable skills (SKILL.md instruction files) available in this workspace.",
        parameters=ListSkillsParams,
        execute=list_skills,
        read_only=True,
    ),
    ToolDefinition(
        id="load_skill",
        description="Load a skill's instructions by name. Follow the returned instructions.",
        parameters=LoadSkillParams,
        execute=load_skill,
        read_only=True,
    ),
]
