"""Check resolution and scenario rule lookups.

A check rolls 1D100 and succeeds when the roll is at or under the threshold:

    threshold = min(difficulty_threshold(base_value, difficulty), clamped_dc)

Difficulty tiers scale the base value before the DC clamp:
  normal   base
  hard     base // 2
  extreme  base // 5

Attribute, luck and sanity checks are the same roll with a different base
value (attribute score, luck score, willpower-derived sanity).

The random source is always a parameter (a zero-argument callable returning a
float in [0, 1), ``random.random`` by default) so rolls are reproducible.

The rest of the module resolves scenario house rules (trained/untrained skill
values, default DC, point budgets, quickstart allocation) against engine
defaults. A rule only counts when it is a finite positive number.
"""

from __future__ import annotations

import math
import random
from collections import Counter
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import BaseModel

from rpg_keeper.models import (
    AttributeRange,
    CheckOutcome,
    ScenarioRules,
    SkillAllocationMode,
)

RandomSource = Callable[[], float]

DEFAULT_ATTRIBUTE_POINT_BUDGET = 460
DEFAULT_TRAINED_SKILL_VALUE = 50
DEFAULT_UNTRAINED_SKILL_VALUE = 20
DEFAULT_CHECK_DC = 100
DEFAULT_SKILL_MAX_VALUE = 75
DEFAULT_SKILL_ALLOCATION_MODE: SkillAllocationMode = "quickstart"
DEFAULT_QUICKSTART_CORE_VALUES = (70, 60, 60, 50, 50, 50)
DEFAULT_QUICKSTART_INTEREST_COUNT = 2
DEFAULT_QUICKSTART_INTEREST_BONUS = 20

DEFAULT_ATTRIBUTE_RANGES: dict[str, AttributeRange] = {
    "strength": AttributeRange(min=15, max=90),
    "dexterity": AttributeRange(min=15, max=90),
    "constitution": AttributeRange(min=15, max=90),
    "size": AttributeRange(min=40, max=90),
    "intelligence": AttributeRange(min=40, max=90),
    "willpower": AttributeRange(min=15, max=90),
    "appearance": AttributeRange(min=15, max=90),
    "education": AttributeRange(min=40, max=90),
}

DIFFICULTY_LABELS = {"normal": "普通", "hard": "困难", "extreme": "极难"}
SUCCESS_LABEL = "成功"
FAILURE_LABEL = "失败"


def is_finite_number(value: Any) -> bool:
    """True for real ints/floats that are finite. Booleans are not numbers here."""
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


# ---------------------------------------------------------------------------
# Dice
# ---------------------------------------------------------------------------

def roll_die(sides: int, rand: RandomSource = random.random) -> int:
    return min(sides, math.floor(rand() * sides) + 1)


def roll_d100(rand: RandomSource = random.random) -> int:
    return roll_die(100, rand)


def roll_luck(rand: RandomSource = random.random) -> int:
    """Luck is 3D6 x 5."""
    return (roll_die(6, rand) + roll_die(6, rand) + roll_die(6, rand)) * 5


# ---------------------------------------------------------------------------
# Check resolution
# ---------------------------------------------------------------------------

def resolve_check_dc_value(value: Any = None) -> int:
    """Clamp a DC into [1, 100]. Missing, non-finite or non-positive values use the default."""
    if not is_finite_number(value) or value <= 0:
        return DEFAULT_CHECK_DC
    return min(max(round_half_up(value), 1), 100)


def difficulty_threshold(base_value: float, difficulty: str) -> int:
    if difficulty == "hard":
        return math.floor(base_value / 2)
    if difficulty == "extreme":
        return math.floor(base_value / 5)
    return math.floor(base_value)


def resolve_check(dc: Any, base_value: int, difficulty: str, roll: int) -> CheckOutcome:
    """Judge an already-rolled d100. Pure: same inputs, same outcome."""
    threshold = min(difficulty_threshold(base_value, difficulty), resolve_check_dc_value(dc))
    success = roll <= threshold
    return CheckOutcome(
        roll=roll,
        threshold=threshold,
        success=success,
        outcome=SUCCESS_LABEL if success else FAILURE_LABEL,
        difficulty_label=DIFFICULTY_LABELS.get(difficulty, DIFFICULTY_LABELS["normal"]),
    )


def check_skill(
    dc: Any,
    skill_value: int,
    difficulty: str = "normal",
    rand: RandomSource = random.random,
) -> CheckOutcome:
    return resolve_check(dc, skill_value, difficulty, roll_d100(rand))


def check_attribute(
    dc: Any,
    attribute_value: int,
    difficulty: str = "normal",
    rand: RandomSource = random.random,
) -> CheckOutcome:
    return check_skill(dc, attribute_value, difficulty, rand)


def check_luck(
    dc: Any,
    luck_value: int,
    difficulty: str = "normal",
    rand: RandomSource = random.random,
) -> CheckOutcome:
    return check_skill(dc, luck_value, difficulty, rand)


def check_sanity(
    dc: Any,
    sanity_value: int,
    difficulty: str = "normal",
    rand: RandomSource = random.random,
) -> CheckOutcome:
    return check_skill(dc, sanity_value, difficulty, rand)


# ---------------------------------------------------------------------------
# Scenario rule lookups
# ---------------------------------------------------------------------------

def resolve_rule_number(value: Any, fallback: float) -> float:
    if is_finite_number(value) and value > 0:
        return value
    return fallback


def resolve_trained_skill_value(rules: ScenarioRules | None) -> float:
    return resolve_rule_number(rules.skill_value_trained if rules else None, DEFAULT_TRAINED_SKILL_VALUE)


def resolve_untrained_skill_value(rules: ScenarioRules | None) -> float:
    return resolve_rule_number(rules.skill_value_untrained if rules else None, DEFAULT_UNTRAINED_SKILL_VALUE)


def resolve_skill_max_value(rules: ScenarioRules | None) -> float:
    return resolve_rule_number(rules.skill_max_value if rules else None, DEFAULT_SKILL_MAX_VALUE)


def resolve_default_check_dc(rules: ScenarioRules | None) -> float:
    return resolve_rule_number(rules.default_check_dc if rules else None, DEFAULT_CHECK_DC)


def resolve_attribute_point_budget(override: Any = None) -> float:
    return resolve_rule_number(override, DEFAULT_ATTRIBUTE_POINT_BUDGET)


def resolve_attribute_ranges(
    override: Mapping[str, AttributeRange] | None = None,
) -> dict[str, AttributeRange]:
    result = dict(DEFAULT_ATTRIBUTE_RANGES)
    for key, value in (override or {}).items():
        if value:
            result[key] = value
    return result


def calculate_skill_point_budget(attributes: Mapping[str, Any] | None) -> int:
    """Occupation points: education x 4 + intelligence x 2."""
    if not attributes:
        return 0
    education = attributes.get("education")
    intelligence = attributes.get("intelligence")
    education = education if is_finite_number(education) else 0
    intelligence = intelligence if is_finite_number(intelligence) else 0
    return max(0, math.floor(education * 4 + intelligence * 2))


def resolve_skill_point_budget(
    rules: ScenarioRules | None,
    attributes: Mapping[str, Any] | None = None,
) -> int:
    if rules and is_finite_number(rules.skill_point_budget):
        return max(0, math.floor(rules.skill_point_budget))
    return calculate_skill_point_budget(attributes)


def resolve_skill_allocation_mode(rules: ScenarioRules | None = None) -> SkillAllocationMode:
    if rules and rules.skill_allocation_mode:
        return rules.skill_allocation_mode
    return DEFAULT_SKILL_ALLOCATION_MODE


# ---------------------------------------------------------------------------
# Quickstart skill allocation
# ---------------------------------------------------------------------------

class QuickstartConfig(BaseModel):
    """Core value multiset plus interest slots, each adding a flat bonus."""

    core_values: list[int]
    interest_count: int
    interest_bonus: int


def resolve_quickstart_config(rules: ScenarioRules | None = None) -> QuickstartConfig:
    raw_core = rules.quickstart_core_values if rules else None
    core = [v for v in raw_core if is_finite_number(v) and v > 0] if raw_core else []
    if not core:
        core = list(DEFAULT_QUICKSTART_CORE_VALUES)

    count = rules.quickstart_interest_count if rules else None
    interest_count = (
        max(0, math.floor(count)) if is_finite_number(count) else DEFAULT_QUICKSTART_INTEREST_COUNT
    )
    bonus = rules.quickstart_interest_bonus if rules else None
    interest_bonus = (
        max(0, math.floor(bonus)) if is_finite_number(bonus) else DEFAULT_QUICKSTART_INTEREST_BONUS
    )
    return QuickstartConfig(
        core_values=[math.floor(v) for v in core],
        interest_count=interest_count,
        interest_bonus=interest_bonus,
    )


def normalize_quickstart_config(config: QuickstartConfig, skill_count: int) -> QuickstartConfig:
    """Trim the config so it never hands out more slots than there are skills."""
    safe_count = max(0, math.floor(skill_count))
    core_values = config.core_values[:safe_count]
    remaining = max(0, safe_count - len(core_values))
    return QuickstartConfig(
        core_values=core_values,
        interest_count=min(config.interest_count, remaining),
        interest_bonus=config.interest_bonus,
    )


def derive_quickstart_assignments(
    skill_ids: list[str],
    skills: Mapping[str, int],
    base_values: Mapping[str, int],
    config: QuickstartConfig,
) -> tuple[dict[str, int | None], dict[str, bool]]:
    """Reconstruct which skills got a core value and which got an interest bonus.

    Returns (core, interest). A value that could be either a core slot or an
    interest bonus is decided after every unambiguous skill has been placed.
    """
    effective = normalize_quickstart_config(config, len(skill_ids))
    core: dict[str, int | None] = {skill_id: None for skill_id in skill_ids}
    interest: dict[str, bool] = {skill_id: False for skill_id in skill_ids}
    slots = Counter(effective.core_values)
    interest_remaining = effective.interest_count
    ambiguous: list[str] = []

    for skill_id in skill_ids:
        base = base_values.get(skill_id, 0)
        value = skills.get(skill_id, base)
        if value <= base:
            continue
        is_interest = value == base + effective.interest_bonus
        if slots[value] > 0 and not is_interest:
            core[skill_id] = value
            slots[value] -= 1
        elif is_interest and slots[value] == 0:
            if interest_remaining > 0:
                interest[skill_id] = True
                interest_remaining -= 1
        elif is_interest:
            ambiguous.append(skill_id)

    for skill_id in ambiguous:
        value = skills.get(skill_id, base_values.get(skill_id, 0))
        if slots[value] > 0:
            core[skill_id] = value
            slots[value] -= 1
        elif interest_remaining > 0:
            interest[skill_id] = True
            interest_remaining -= 1

    return core, interest


def build_quickstart_skill_values(
    skill_ids: list[str],
    base_values: Mapping[str, int],
    core: Mapping[str, int | None],
    interest: Mapping[str, bool],
    config: QuickstartConfig,
) -> dict[str, int]:
    bonus = normalize_quickstart_config(config, len(skill_ids)).interest_bonus
    values: dict[str, int] = {}
    for skill_id in skill_ids:
        base = base_values.get(skill_id, 0)
        core_value = core.get(skill_id)
        if is_finite_number(core_value) and core_value > 0:
            values[skill_id] = max(base, math.floor(core_value))
        elif interest.get(skill_id):
            values[skill_id] = base + bonus
        else:
            values[skill_id] = base
    return values
