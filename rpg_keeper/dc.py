"""Difficulty-class precedence.

First match wins:

    1. scenario per-target override    (script-override)
    2. scenario default DC              (script-default)
    3. rulebook table                   (rulebook-override)
    4. session override map             (session-override)
    5. the model's suggestion           (model-suggested, persisted by the caller)
    6. DEFAULT_CHECK_DC                 (engine-default)

Any finite number counts as present; the winning value is clamped into
[1, 100] by resolve_check_dc_value. The rulebook table is an argument so
callers (and tests) can inject their own.
"""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from rpg_keeper.models import DcResolution, DcSource, ScenarioRules
from rpg_keeper.rules import DEFAULT_CHECK_DC, is_finite_number, resolve_check_dc_value

RULEBOOK_CHECK_DC_OVERRIDES: Mapping[str, float] = MappingProxyType({})


def resolve_check_dc(
    target_key: str,
    model_dc: Any = None,
    scenario_rules: ScenarioRules | None = None,
    session_overrides: Mapping[str, Any] | None = None,
    rulebook: Mapping[str, Any] = RULEBOOK_CHECK_DC_OVERRIDES,
) -> DcResolution:
    if scenario_rules is not None:
        override = scenario_rules.check_dc_overrides.get(target_key)
        if is_finite_number(override):
            return DcResolution(dc=resolve_check_dc_value(override), source=DcSource.SCRIPT_OVERRIDE)
        if is_finite_number(scenario_rules.default_check_dc):
            return DcResolution(
                dc=resolve_check_dc_value(scenario_rules.default_check_dc),
                source=DcSource.SCRIPT_DEFAULT,
            )

    rulebook_dc = rulebook.get(target_key)
    if is_finite_number(rulebook_dc):
        return DcResolution(dc=resolve_check_dc_value(rulebook_dc), source=DcSource.RULEBOOK_OVERRIDE)

    session_dc = (session_overrides or {}).get(target_key)
    if is_finite_number(session_dc):
        return DcResolution(dc=resolve_check_dc_value(session_dc), source=DcSource.SESSION_OVERRIDE)

    if is_finite_number(model_dc):
        return DcResolution(
            dc=resolve_check_dc_value(model_dc),
            source=DcSource.MODEL_SUGGESTED,
            should_persist=True,
        )

    return DcResolution(dc=DEFAULT_CHECK_DC, source=DcSource.ENGINE_DEFAULT)
