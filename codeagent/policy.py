from __future__ import annotations

import enum
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml
from jsonschema import Draft7Validator

logger = logging.getLogger("codeagent")

# Rule set YAML files live beside this module (codeagent/policies/*.yaml).
POLICIES_DIR = Path(__file__).parent / "policies"

FILE_EDIT_TOOLS = frozenset({"write", "edit"})


class PolicyDecision(str, enum.Enum):
    ALLOW = "allow"
    DENY = "deny"
    ASK_USER = "ask_user"


class ApprovalMode(str, enum.Enum):
    DEFAULT = "default"
    AUTO_EDIT = "auto_edit"
    YOLO = "yolo"
    PLAN = "plan"

    @classmethod
    def parse(cls, value: str) -> "ApprovalMode":
        normalized = (value or "").strip().lower().replace("-", "_")
        for mode in cls:
            if mode.value == normalized:
                return mode
        raise ValueError(f"Unknown approval mode: {value!r}")


class PolicyLoadError(RuntimeError):
    """Raised when a policy rule file cannot be loaded or validated."""


@dataclass
class PolicyRule:
    tool_name: Optional[str]
    decision: PolicyDecision
    priority: int = 0
    args_pattern: Optional[str] = None
    modes: List[ApprovalMode] = field(default_factory=list)
    description: Optional[str] = None
    source: Optional[str] = None
    _compiled: Optional["re.Pattern[str]"] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.args_pattern:
            self._compiled = re.compile(self.args_pattern)

    def matches(self, tool_name: str, stable_args: Optional[str], mode: ApprovalMode) -> bool:
        if self.modes and mode not in self.modes:
            return False
        if self.tool_name and not match_tool_name(self.tool_name, tool_name):
            return False
        if self._compiled is not None:
            if not stable_args:
                return False
            if not self._compiled.search(stable_args):
                return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "decision": self.decision.value,
            "priority": self.priority,
            "args_pattern": self.args_pattern,
            "modes": [m.value for m in self.modes],
            "description": self.description,
            "source": self.source,
        }


@dataclass
class PolicyCheckResult:
    decision: PolicyDecision
    rule: Optional[PolicyRule] = None
    reason: Optional[str] = None


def match_tool_name(pattern: str, tool_name: str) -> bool:
    """Exact match, or prefix match for a trailing `*` (a lone `*` matches everything)."""
    if pattern == tool_name:
        return True
    if pattern.endswith("*"):
        return tool_name.startswith(pattern[:-1])
    return False


def stable_serialize(args: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Sorted-key compact JSON so caller key order never changes matching."""
    if not args:
        return None
    return json.dumps(args, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


class PolicyEngine:
    """Decides ALLOW / DENY / ASK_USER for a tool invocation."""

    def __init__(
        self,
        rules: Optional[Sequence[PolicyRule]] = None,
        approval_mode: ApprovalMode = ApprovalMode.DEFAULT,
        default_decision: PolicyDecision = PolicyDecision.ASK_USER,
    ) -> None:
        self._rules: List[PolicyRule] = sorted(rules or [], key=lambda r: r.priority, reverse=True)
        self.approval_mode = approval_mode
        self.default_decision = default_decision

    @property
    def rules(self) -> List[PolicyRule]:
        return list(self._rules)

    def set_approval_mode(self, mode: ApprovalMode) -> None:
        self.approval_mode = mode

    def add_rule(self, rule: PolicyRule) -> None:
        self._rules.append(rule)
        # sorted() is stable, so equal priorities keep insertion order.
        self._rules = sorted(self._rules, key=lambda r: r.priority, reverse=True)

    def remove_rules(self, tool_name: str, source: Optional[str] = None) -> int:
        before = len(self._rules)
        self._rules = [
            rule
            for rule in self._rules
            if rule.tool_name != tool_name or (source is not None and rule.source != source)
        ]
        return before - len(self._rules)

    def has_rule_for(self, tool_name: str) -> bool:
        return any(rule.tool_name == tool_name for rule in self._rules)

    def check(self, tool_name: str, args: Optional[Mapping[str, Any]] = None) -> PolicyCheckResult:
        if self.approval_mode is ApprovalMode.PLAN:
            return PolicyCheckResult(
                decision=PolicyDecision.DENY,
                reason="Planning mode - no executions allowed",
            )

        stable_args = stable_serialize(args)
        for rule in self._rules:
            if rule.matches(tool_name, stable_args, self.approval_mode):
                return PolicyCheckResult(
                    decision=self._apply_mode(tool_name, rule.decision),
                    rule=rule,
                    reason=rule.description,
                )

        return PolicyCheckResult(
            decision=self._apply_mode(tool_name, self.default_decision),
            reason="No matching rule found",
        )

    def _apply_mode(self, tool_name: str, decision: PolicyDecision) -> PolicyDecision:
        if decision is not PolicyDecision.ASK_USER:
            return decision
        if self.approval_mode is ApprovalMode.YOLO:
            return PolicyDecision.ALLOW
        if self.approval_mode is ApprovalMode.AUTO_EDIT and tool_name in FILE_EDIT_TOOLS:
            return PolicyDecision.ALLOW
        return decision


POLICY_FILE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["rules"],
    "properties": {
        "source": {"type": "string"},
        "rules": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["decision"],
                "properties": {
                    "tool_name": {"type": "string", "minLength": 1},
                    "decision": {"enum": [d.value for d in PolicyDecision]},
                    "priority": {"type": "integer"},
                    "args_pattern": {"type": "string"},
                    "modes": {
                        "type": "array",
                        "items": {"enum": [m.value for m in ApprovalMode]},
                    },
                    "description": {"type": "string"},
                },
                "additionalProperties": False,
            },
        },
    },
}


def _resolve_policy_path(name_or_path: str | Path) -> Path:
    candidate = Path(name_or_path)
    if candidate.suffix in {".yaml", ".yml"} and candidate.exists():
        return candidate
    builtin = POLICIES_DIR / f"{name_or_path}.yaml"
    if builtin.exists():
        return builtin
    raise PolicyLoadError(f"Policy file not found: {name_or_path}")


def load_policy_rules(name_or_path: str | Path) -> List[PolicyRule]:
    """Load a rule set by builtin name (`default`, `read_only`) or YAML path."""
    path = _resolve_policy_path(name_or_path)
    with path.open("r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise PolicyLoadError(f"Invalid YAML in policy file {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise PolicyLoadError("Policy YAML must deserialize to a mapping")

    errors = sorted(Draft7Validator(POLICY_FILE_SCHEMA).iter_errors(data), key=lambda e: [str(p) for p in e.path])
    if errors:
        details = "; ".join(f"{'/'.join(str(p) for p in err.path) or '<root>'}: {err.message}" for err in errors)
        raise PolicyLoadError(f"Invalid policy file {path}: {details}")

    source = data.get("source") or path.stem
    rules: List[PolicyRule] = []
    for raw in data["rules"]:
        try:
            rules.append(
                PolicyRule(
                    tool_name=raw.get("tool_name"),
                    decision=PolicyDecision(raw["decision"]),
                    priority=int(raw.get("priority", 0)),
                    args_pattern=raw.get("args_pattern"),
                    modes=[ApprovalMode(m) for m in raw.get("modes", [])],
                    description=raw.get("description"),
                    source=source,
                )
            )
        except re.error as exc:
            raise PolicyLoadError(f"Invalid args_pattern in {path}: {exc}") from exc
    logger.debug("policy_load path=%s rules=%s", path, len(rules))
    return rules


def create_policy_engine(
    mode: ApprovalMode | str = ApprovalMode.DEFAULT,
    *,
    read_only: bool = False,
) -> PolicyEngine:
    """Engine preloaded with the builtin rule sets."""
    if isinstance(mode, str):
        mode = ApprovalMode.parse(mode)
    rules = load_policy_rules("default")
    if read_only:
        rules = load_policy_rules("read_only") + rules
    return PolicyEngine(rules=rules, approval_mode=mode)
