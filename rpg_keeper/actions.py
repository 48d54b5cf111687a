"""Action plan execution.

Turns the analysed action list into dice results. Each check or attack
resolves its target against the scenario catalog, picks a DC through the
precedence chain, rolls, and renders one result line. NPC actions pass
through as suggestion lines without a roll.

Nothing here persists: DCs that came from the model are collected into
``dc_updates`` for the caller to write into the session override map.
"""

from __future__ import annotations

import logging
import math
import random
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field

from rpg_keeper.dc import RULEBOOK_CHECK_DC_OVERRIDES, resolve_check_dc
from rpg_keeper.models import (
    ActionSpec,
    AttackAction,
    Character,
    ChatModule,
    CheckAction,
    InputAnalysis,
    NpcAction,
    Scenario,
)
from rpg_keeper.rules import (
    DEFAULT_CHECK_DC,
    RandomSource,
    check_attribute,
    check_luck,
    check_sanity,
    check_skill,
    is_finite_number,
    resolve_trained_skill_value,
    resolve_untrained_skill_value,
)

logger = logging.getLogger(__name__)

ATTRIBUTE_ALIASES: dict[str, str] = {
    "力量": "strength",
    "敏捷": "dexterity",
    "体质": "constitution",
    "体型": "size",
    "智力": "intelligence",
    "意志": "willpower",
    "外貌": "appearance",
    "教育": "education",
    "strength": "strength",
    "dexterity": "dexterity",
    "constitution": "constitution",
    "size": "size",
    "intelligence": "intelligence",
    "willpower": "willpower",
    "appearance": "appearance",
    "education": "education",
}


class ActionExecution(BaseModel):
    lines: list[str] = Field(default_factory=list)
    modules: list[ChatModule] = Field(default_factory=list)
    dc_updates: dict[str, int] = Field(default_factory=dict)

    @property
    def summary(self) -> str:
        return "\n".join(self.lines)


# ---------------------------------------------------------------------------
# Catalog lookups
# ---------------------------------------------------------------------------

def resolve_attribute_key(label: str) -> str | None:
    return ATTRIBUTE_ALIASES.get(label.strip())


def resolve_skill_id(scenario: Scenario, label: str) -> str | None:
    """Match a skill by id first, then by display label."""
    trimmed = label.strip()
    if not trimmed:
        return None
    for option in scenario.skill_options:
        if option.id == trimmed:
            return option.id
    for option in scenario.skill_options:
        if option.label == trimmed:
            return option.id
    return None


def resolve_skill_label(scenario: Scenario, skill_id: str) -> str:
    for option in scenario.skill_options:
        if option.id == skill_id:
            return option.label or skill_id
    return skill_id


def resolve_skill_value(character: Character, scenario: Scenario, skill_id: str) -> float:
    """Numeric value, else legacy trained flag, else scenario base, else untrained."""
    raw = character.skills.get(skill_id)
    if isinstance(raw, bool):
        if raw:
            return resolve_trained_skill_value(scenario.rules)
        return resolve_untrained_skill_value(scenario.rules)
    if is_finite_number(raw):
        return raw
    base = scenario.rules.skill_base_values.get(skill_id)
    if is_finite_number(base):
        return base
    return resolve_untrained_skill_value(scenario.rules)


def build_check_key(action: ActionSpec, scenario: Scenario) -> str | None:
    """The key a DC is stored under, e.g. ``skill:spot_hidden`` or ``luck``."""
    if isinstance(action, AttackAction):
        skill_id = resolve_skill_id(scenario, action.skill) or action.skill.strip()
        return f"attack:{skill_id}" if skill_id else None
    if not isinstance(action, CheckAction):
        return None
    if action.check_type == "luck":
        return "luck"
    if action.check_type == "sanity":
        return "sanity"
    if action.check_type == "attribute":
        key = resolve_attribute_key(action.target) or action.target.strip() or "unknown"
        return f"attribute:{key}"
    if action.check_type in ("skill", "combat"):
        skill_id = resolve_skill_id(scenario, action.target) or action.target.strip()
        return f"skill:{skill_id}" if skill_id else None
    return None


# ---------------------------------------------------------------------------
# Result lines
# ---------------------------------------------------------------------------

def _dc_text(dc: int) -> str:
    return "" if dc == DEFAULT_CHECK_DC else f"，DC {dc}"


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def format_check_line(
    label: str,
    roll: int,
    threshold: int,
    outcome: str,
    difficulty_label: str,
    base_label: str,
    base_value: float,
    dc: int,
) -> str:
    return (
        f"{label}检定 1D100 → {roll} / {threshold}，{outcome}"
        f"（{difficulty_label}，{base_label} {_format_number(base_value)}{_dc_text(dc)}）"
    )


def format_attack_line(
    label: str,
    roll: int,
    threshold: int,
    outcome: str,
    difficulty_label: str,
    base_value: float,
    dc: int,
) -> str:
    return (
        f"攻击判定（{label}）1D100 → {roll} / {threshold}，{outcome}"
        f"（{difficulty_label}，技能值 {_format_number(base_value)}{_dc_text(dc)}）"
    )


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------

class _Context:
    def __init__(
        self,
        scenario: Scenario,
        character: Character,
        session_overrides: Mapping[str, Any],
        rulebook: Mapping[str, Any],
        rand: RandomSource,
    ) -> None:
        self.scenario = scenario
        self.character = character
        self.session_overrides = session_overrides
        self.rulebook = rulebook
        self.rand = rand
        self.dc_updates: dict[str, int] = {}

    def resolve_dc(self, action: CheckAction | AttackAction, fallback_key: str) -> int:
        check_key = build_check_key(action, self.scenario)
        resolution = resolve_check_dc(
            check_key or fallback_key,
            model_dc=action.dc,
            scenario_rules=self.scenario.rules,
            session_overrides=self.session_overrides,
            rulebook=self.rulebook,
        )
        if resolution.should_persist and check_key:
            self.dc_updates[check_key] = resolution.dc
        return resolution.dc


def _execute_check(action: CheckAction, ctx: _Context) -> str:
    dc = ctx.resolve_dc(action, "check:unknown")
    difficulty = action.difficulty
    character = ctx.character

    if action.check_type == "luck":
        result = check_luck(dc, character.luck, difficulty, ctx.rand)
        return format_check_line(
            "幸运", result.roll, result.threshold, result.outcome,
            result.difficulty_label, "幸运值", character.luck, dc,
        )

    if action.check_type == "sanity":
        sanity = max(0, math.floor(character.attributes.get("willpower", 0)))
        result = check_sanity(dc, sanity, difficulty, ctx.rand)
        return format_check_line(
            "理智", result.roll, result.threshold, result.outcome,
            result.difficulty_label, "理智值", sanity, dc,
        )

    if action.check_type == "attribute":
        label = action.target.strip() or "属性"
        key = resolve_attribute_key(action.target)
        value = character.attributes.get(key) if key else None
        if not value or value <= 0:
            roll = check_skill(dc, 0, difficulty, ctx.rand).roll
            return f"{label} 1D100 → {roll}（未配置检定值）"
        result = check_attribute(dc, value, difficulty, ctx.rand)
        return format_check_line(
            label, result.roll, result.threshold, result.outcome,
            result.difficulty_label, "属性值", value, dc,
        )

    # skill, combat, and anything the model left untyped
    skill_id = resolve_skill_id(ctx.scenario, action.target) or action.target.strip()
    if skill_id:
        label = resolve_skill_label(ctx.scenario, skill_id)
        value = resolve_skill_value(character, ctx.scenario, skill_id)
    else:
        label = "技能"
        value = resolve_untrained_skill_value(ctx.scenario.rules)
    result = check_skill(dc, value, difficulty, ctx.rand)
    return format_check_line(
        label, result.roll, result.threshold, result.outcome,
        result.difficulty_label, "技能值", value, dc,
    )


def _execute_attack(action: AttackAction, ctx: _Context) -> str:
    dc = ctx.resolve_dc(action, "attack:unknown")
    skill_id = resolve_skill_id(ctx.scenario, action.skill) or action.skill.strip()
    if skill_id:
        label = resolve_skill_label(ctx.scenario, skill_id)
        value = resolve_skill_value(ctx.character, ctx.scenario, skill_id)
    else:
        label = "攻击"
        value = resolve_untrained_skill_value(ctx.scenario.rules)
    target = action.target.strip()
    if target:
        label = f"{label} 对 {target}"
    result = check_skill(dc, value, action.difficulty, ctx.rand)
    return format_attack_line(
        label, result.roll, result.threshold, result.outcome,
        result.difficulty_label, value, dc,
    )


def _npc_line(action: NpcAction) -> str:
    target = action.target.strip() or "NPC"
    intent = action.intent.strip() or "行动"
    return f"NPC 行动建议：{target} - {intent}"


def plan_actions(analysis: InputAnalysis) -> list[ActionSpec]:
    """The analysed actions, or one synthesised check from the legacy dice fields."""
    if analysis.actions:
        return list(analysis.actions)
    if analysis.needs_dice:
        return [
            CheckAction(
                check_type=analysis.dice_type,
                target=analysis.dice_target,
                dc=DEFAULT_CHECK_DC,
                difficulty=analysis.difficulty,
            )
        ]
    return []


def execute_actions(
    actions: list[ActionSpec],
    scenario: Scenario,
    character: Character,
    session_overrides: Mapping[str, Any] | None = None,
    rand: RandomSource = random.random,
    rulebook: Mapping[str, Any] = RULEBOOK_CHECK_DC_OVERRIDES,
) -> ActionExecution:
    ctx = _Context(scenario, character, session_overrides or {}, rulebook, rand)
    lines: list[str] = []
    for action in actions:
        if isinstance(action, CheckAction):
            lines.append(_execute_check(action, ctx))
        elif isinstance(action, AttackAction):
            lines.append(_execute_attack(action, ctx))
        elif isinstance(action, NpcAction):
            lines.append(_npc_line(action))

    modules = [ChatModule(type="dice", content="\n".join(lines))] if lines else []
    if ctx.dc_updates:
        logger.debug("model-suggested DCs to persist: %s", ctx.dc_updates)
    return ActionExecution(lines=lines, modules=modules, dc_updates=ctx.dc_updates)


def execute_action_plan(
    analysis: InputAnalysis,
    scenario: Scenario,
    character: Character,
    session_overrides: Mapping[str, Any] | None = None,
    rand: RandomSource = random.random,
    rulebook: Mapping[str, Any] = RULEBOOK_CHECK_DC_OVERRIDES,
) -> ActionExecution:
    return execute_actions(
        plan_actions(analysis), scenario, character, session_overrides, rand, rulebook,
    )
