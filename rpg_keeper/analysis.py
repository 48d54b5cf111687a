"""Input analysis: prompt the model about a player's message and parse its verdict.

The parser fails closed. Output with no JSON object, or JSON that does not
decode, yields an invalid analysis (allowed=False, intent="invalid", no
actions). Decoded objects are normalised field by field: unknown enum values
fall back to their defaults and unusable action entries are dropped one at a
time.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
from typing import Any

from rpg_keeper.llm import LLM, ChatMessage, LLMError, system_user
from rpg_keeper.models import (
    DICE_TYPES,
    DIFFICULTIES,
    INTENTS,
    ActionSpec,
    AttackAction,
    Character,
    CheckAction,
    InputAnalysis,
    NpcAction,
    Scenario,
)
from rpg_keeper.prompts import ANALYSIS_SYSTEM, ANALYSIS_USER, render_prompt
from rpg_keeper.rules import (
    DEFAULT_CHECK_DC,
    is_finite_number,
    resolve_trained_skill_value,
    resolve_untrained_skill_value,
    round_half_up,
)

logger = logging.getLogger(__name__)

PARSE_FAILED_REASON = "解析失败，请重试。"
DISALLOWED_REASON = "不符合剧本规则或超出允许范围。"
ANALYSIS_MAX_OUTPUT_TOKENS = 600

ATTRIBUTE_LABELS: dict[str, str] = {
    "strength": "力量",
    "dexterity": "敏捷",
    "constitution": "体质",
    "size": "体型",
    "intelligence": "智力",
    "willpower": "意志",
    "appearance": "外貌",
    "education": "教育",
}

_FENCED_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


def extract_json(text: str) -> str | None:
    """Find the JSON payload in model output: a fenced block, else the outer braces."""
    trimmed = (text or "").strip()
    if not trimmed:
        return None
    fenced = _FENCED_RE.search(trimmed)
    if fenced and fenced.group(1):
        return fenced.group(1).strip()
    first = trimmed.find("{")
    last = trimmed.rfind("}")
    if first >= 0 and last > first:
        return trimmed[first:last + 1]
    return None


def parse_json_object(text: str) -> dict | None:
    """extract_json + json.loads; None unless the payload is a JSON object."""
    payload = extract_json(text)
    if payload is None:
        return None
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        logger.warning("Model output is not valid JSON: %s", e)
        return None
    return data if isinstance(data, dict) else None


# ---------------------------------------------------------------------------
# Field normalisation
# ---------------------------------------------------------------------------

def parse_check_dc(value: Any) -> int:
    """A DC the model asked for: a number or numeric string rounding into [1, 100]."""
    number: float | None = None
    if is_finite_number(value):
        number = value
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            number = None
        if number is not None and not math.isfinite(number):
            number = None
    if number is not None:
        rounded = round_half_up(number)
        if 1 <= rounded <= 100:
            return rounded
    return DEFAULT_CHECK_DC


def _str(record: dict, key: str) -> str:
    value = record.get(key)
    return value if isinstance(value, str) else ""


def _choice(value: Any, allowed: tuple[str, ...], default: str) -> str:
    return value if isinstance(value, str) and value in allowed else default


def parse_action(value: Any) -> ActionSpec | None:
    if not isinstance(value, dict):
        return None
    kind = value.get("type")
    if kind == "check":
        return CheckAction(
            check_type=_choice(value.get("checkType"), DICE_TYPES, "none"),
            target=_str(value, "target"),
            dc=parse_check_dc(value.get("dc")),
            difficulty=_choice(value.get("difficulty"), DIFFICULTIES, "normal"),
            reason=_str(value, "reason"),
        )
    if kind == "attack":
        return AttackAction(
            target=_str(value, "target"),
            skill=_str(value, "skill"),
            dc=parse_check_dc(value.get("dc")),
            difficulty=_choice(value.get("difficulty"), DIFFICULTIES, "normal"),
            reason=_str(value, "reason"),
        )
    if kind == "npc":
        return NpcAction(
            target=_str(value, "target"),
            intent=_str(value, "intent"),
            reason=_str(value, "reason"),
        )
    return None


def invalid_analysis() -> InputAnalysis:
    return InputAnalysis(allowed=False, reason=PARSE_FAILED_REASON, intent="invalid")


def normalize_analysis(raw: dict) -> InputAnalysis:
    raw_actions = raw.get("actions")
    actions: list[ActionSpec] = []
    if isinstance(raw_actions, list):
        for entry in raw_actions:
            action = parse_action(entry)
            if action is None:
                logger.warning("Dropping unrecognised action entry: %r", entry)
                continue
            actions.append(action)
    tags = raw.get("tags")
    allowed = raw.get("allowed")
    needs_dice = raw.get("needsDice")
    return InputAnalysis(
        allowed=allowed if isinstance(allowed, bool) else False,
        reason=_str(raw, "reason"),
        intent=_choice(raw.get("intent"), INTENTS, "action"),
        needs_dice=needs_dice if isinstance(needs_dice, bool) else False,
        dice_type=_choice(raw.get("diceType"), DICE_TYPES, "none"),
        dice_target=_str(raw, "diceTarget"),
        difficulty=_choice(raw.get("difficulty"), DIFFICULTIES, "normal"),
        tags=[t for t in tags if isinstance(t, str)] if isinstance(tags, list) else [],
        actions=actions,
    )


def parse_input_analysis(text: str, player_input: str = "") -> InputAnalysis:
    """Decode the analysis model's reply into an InputAnalysis. Never raises."""
    raw = parse_json_object(text)
    if raw is None:
        logger.warning("Input analysis unparseable for input %r", player_input[:80])
        return invalid_analysis()
    result = normalize_analysis(raw)
    if not result.allowed and not result.reason:
        result.reason = DISALLOWED_REASON
    return result


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def attribute_summary(character: Character) -> str:
    return "，".join(
        f"{label}:{character.attributes.get(key, 0)}" for key, label in ATTRIBUTE_LABELS.items()
    )


def skill_catalog(scenario: Scenario) -> str:
    if not scenario.skill_options:
        return "无"
    return "、".join(f"{option.label}({option.id})" for option in scenario.skill_options)


def selected_skills(character: Character, scenario: Scenario) -> list[str]:
    """Labels of skills the character has raised above their base value."""
    labels = {option.id: option.label for option in scenario.skill_options}
    trained = resolve_trained_skill_value(scenario.rules)
    selected: list[str] = []
    for skill_id, raw in character.skills.items():
        base = scenario.rules.skill_base_values.get(skill_id)
        if not is_finite_number(base):
            base = resolve_untrained_skill_value(scenario.rules)
        if isinstance(raw, bool):
            value = trained if raw else base
        elif is_finite_number(raw):
            value = raw
        else:
            value = base
        if value > base:
            selected.append(labels.get(skill_id) or skill_id)
    return selected


def build_analysis_messages(
    scenario: Scenario,
    character: Character,
    player_input: str,
    recent_history: str = "无",
    analysis_guide: str = "",
) -> list[ChatMessage]:
    system = render_prompt(ANALYSIS_SYSTEM, {
        "trained": _format_number(resolve_trained_skill_value(scenario.rules)),
        "untrained": _format_number(resolve_untrained_skill_value(scenario.rules)),
        "guide": analysis_guide.strip(),
    })
    user = render_prompt(ANALYSIS_USER, {
        "scenario": scenario.model_dump(),
        "character": {**character.model_dump(), "luck": str(character.luck)},
        "skill_catalog": skill_catalog(scenario),
        "attribute_summary": attribute_summary(character),
        "selected_skills": selected_skills(character, scenario),
        "dc_overrides": [
            f"{key}:{_format_number(value)}" for key, value in scenario.rules.check_dc_overrides.items()
        ],
        "history": recent_history,
        "input": player_input.replace("\r\n", "\n").strip(),
    })
    return system_user(system, user)


async def analyze_input(
    llm: LLM,
    scenario: Scenario,
    character: Character,
    player_input: str,
    recent_history: str = "无",
    analysis_guide: str = "",
    timeout: float | None = None,
) -> InputAnalysis:
    """Ask the model to classify a player message. Transport failures fail closed."""
    messages = build_analysis_messages(scenario, character, player_input, recent_history, analysis_guide)
    try:
        text = await asyncio.wait_for(
            llm("analysis", messages, max_output_tokens=ANALYSIS_MAX_OUTPUT_TOKENS),
            timeout=timeout,
        )
    except (LLMError, asyncio.TimeoutError) as e:
        logger.warning("Input analysis call failed: %s", e)
        return invalid_analysis()
    return parse_input_analysis(text, player_input)
