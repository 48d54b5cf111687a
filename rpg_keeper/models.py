"""Core domain models.

Check resolution, the action executor, the input parser and the memory
pipeline all operate on these types. Pydantic is used for validation and
serialisation at every data boundary; persisted and model-facing payloads use
camelCase field names (``checkType``, ``inventoryAdd``, ``lastProcessedAt``)
so they stay compatible with data written by other clients.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for everything that crosses a storage or model boundary."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class FrozenWireModel(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------

Difficulty = Literal["normal", "hard", "extreme"]
DiceType = Literal["none", "attribute", "skill", "sanity", "luck", "combat"]
InputIntent = Literal[
    "action",
    "dialogue",
    "question",
    "investigation",
    "combat",
    "skill",
    "meta",
    "invalid",
]

DIFFICULTIES: tuple[str, ...] = ("normal", "hard", "extreme")
DICE_TYPES: tuple[str, ...] = ("none", "attribute", "skill", "sanity", "luck", "combat")
INTENTS: tuple[str, ...] = (
    "action",
    "dialogue",
    "question",
    "investigation",
    "combat",
    "skill",
    "meta",
    "invalid",
)


class CheckOutcome(FrozenWireModel):
    """Result of one d100 roll against a threshold."""

    roll: int
    threshold: int
    success: bool
    outcome: str
    difficulty_label: str


class DcSource(str, Enum):
    SCRIPT_OVERRIDE = "script-override"
    SCRIPT_DEFAULT = "script-default"
    RULEBOOK_OVERRIDE = "rulebook-override"
    SESSION_OVERRIDE = "session-override"
    MODEL_SUGGESTED = "model-suggested"
    ENGINE_DEFAULT = "engine-default"


class DcResolution(FrozenWireModel):
    dc: int
    source: DcSource
    should_persist: bool = False


class CheckAction(FrozenWireModel):
    type: Literal["check"] = "check"
    check_type: DiceType = "none"
    target: str = ""
    dc: int = 100
    difficulty: Difficulty = "normal"
    reason: str = ""


class AttackAction(FrozenWireModel):
    type: Literal["attack"] = "attack"
    target: str = ""
    skill: str = ""
    dc: int = 100
    difficulty: Difficulty = "normal"
    reason: str = ""


class NpcAction(FrozenWireModel):
    type: Literal["npc"] = "npc"
    target: str = ""
    intent: str = ""
    reason: str = ""


ActionSpec = Annotated[Union[CheckAction, AttackAction, NpcAction], Field(discriminator="type")]


class InputAnalysis(WireModel):
    """Structured intent extracted from the analysis model's reply."""

    allowed: bool = False
    reason: str = ""
    intent: InputIntent = "action"
    needs_dice: bool = False
    dice_type: DiceType = "none"
    dice_target: str = ""
    difficulty: Difficulty = "normal"
    tags: list[str] = Field(default_factory=list)
    actions: list[ActionSpec] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Scenario + character (read-only collaborators)
# ---------------------------------------------------------------------------

SkillAllocationMode = Literal["budget", "selection", "quickstart"]


class SkillOption(WireModel):
    id: str
    label: str = ""
    group: str = ""


class AttributeRange(WireModel):
    min: int
    max: int


class ScenarioRules(WireModel):
    """House rules a scenario can override. Every field is optional."""

    check_dc_overrides: dict[str, float] = Field(default_factory=dict)
    default_check_dc: float | None = None
    skill_value_trained: float | None = None
    skill_value_untrained: float | None = None
    skill_base_values: dict[str, float] = Field(default_factory=dict)
    skill_max_value: float | None = None
    skill_point_budget: float | None = None
    skill_allocation_mode: SkillAllocationMode | None = None
    quickstart_core_values: list[float] | None = None
    quickstart_interest_count: float | None = None
    quickstart_interest_bonus: float | None = None
    attribute_ranges: dict[str, AttributeRange] = Field(default_factory=dict)
    attribute_point_budget: float | None = None

    @field_validator("check_dc_overrides", "skill_base_values", mode="before")
    @classmethod
    def _drop_non_numeric(cls, value: Any) -> dict[str, float]:
        if not isinstance(value, dict):
            return {}
        return {
            str(k): v for k, v in value.items()
            if isinstance(v, (int, float)) and not isinstance(v, bool)
        }


class Scenario(WireModel):
    id: str
    title: str = ""
    summary: str = ""
    setting: str = ""
    difficulty: str = ""
    skill_options: list[SkillOption] = Field(default_factory=list)
    rules: ScenarioRules = Field(default_factory=ScenarioRules)


class Character(WireModel):
    id: str
    scenario_id: str = ""
    name: str = ""
    occupation: str = ""
    origin: str = ""
    luck: int = 0
    attributes: dict[str, int] = Field(default_factory=dict)
    # numeric skill values; legacy records store trained/untrained booleans
    skills: dict[str, bool | int | float] = Field(default_factory=dict)
    inventory: list[str] = Field(default_factory=list)
    buffs: list[str] = Field(default_factory=list)
    debuffs: list[str] = Field(default_factory=list)


class Session(WireModel):
    """One running game: ties a scenario and character to a transcript."""

    id: str
    scenario_id: str = ""
    character_id: str = ""
    check_dc_overrides: dict[str, int] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------

ModuleType = Literal["narrative", "dice", "map", "notice", "suggestions"]
MessageRole = Literal["player", "dm", "system"]


class ChatModule(WireModel):
    type: ModuleType
    content: str = ""


class TranscriptMessage(WireModel):
    """A single entry in a session's append-only transcript."""

    role: MessageRole
    content: str
    modules: list[ChatModule] = Field(default_factory=list)
    created_at: str


class MapVersion(WireModel):
    id: str
    session_id: str
    round_index: int
    content: str
    created_at: str


# ---------------------------------------------------------------------------
# World state
# ---------------------------------------------------------------------------

ThreadStatus = Literal["open", "resolved", "blocked"]


class Npc(WireModel):
    name: str
    status: str = ""
    relation: str | None = None
    location: str | None = None
    notes: str | None = None
    is_ally: bool | None = None


class Location(WireModel):
    name: str
    status: str = ""
    notes: str | None = None


class Thread(WireModel):
    title: str
    status: ThreadStatus = "open"
    notes: str | None = None


class Flag(WireModel):
    key: str
    value: str


class VitalPair(WireModel):
    current: int
    max: int


class Vitals(WireModel):
    hp: VitalPair | None = None
    sanity: VitalPair | None = None
    magic: VitalPair | None = None


class Presence(WireModel):
    location: str | None = None
    scene: str | None = None
    present_npcs: list[str] = Field(default_factory=list)


class WorldState(WireModel):
    """The durable memory of one session."""

    allies: list[str] = Field(default_factory=list)
    npcs: list[Npc] = Field(default_factory=list)
    locations: list[Location] = Field(default_factory=list)
    threads: list[Thread] = Field(default_factory=list)
    flags: list[Flag] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
    dm_notes: list[str] = Field(default_factory=list)
    vitals: Vitals = Field(default_factory=Vitals)
    presence: Presence = Field(default_factory=Presence)
    map_text: str = ""


class VitalsDelta(WireModel):
    hp_current: int | None = None
    hp_max: int | None = None
    sanity_current: int | None = None
    sanity_max: int | None = None
    magic_current: int | None = None
    magic_max: int | None = None


class PresenceDelta(WireModel):
    location: str | None = None
    scene: str | None = None
    present_npcs_add: list[str] = Field(default_factory=list)
    present_npcs_remove: list[str] = Field(default_factory=list)


class WorldStateDelta(WireModel):
    """A partial patch extracted by the compression model.

    Missing fields mean "no change"; vitals are absolute overrides.
    """

    inventory_add: list[str] = Field(default_factory=list)
    inventory_remove: list[str] = Field(default_factory=list)
    buffs_add: list[str] = Field(default_factory=list)
    buffs_remove: list[str] = Field(default_factory=list)
    debuffs_add: list[str] = Field(default_factory=list)
    debuffs_remove: list[str] = Field(default_factory=list)
    allies_add: list[str] = Field(default_factory=list)
    allies_remove: list[str] = Field(default_factory=list)
    npcs: list[Npc] = Field(default_factory=list)
    locations: list[Location] = Field(default_factory=list)
    threads: list[Thread] = Field(default_factory=list)
    flags: list[Flag] = Field(default_factory=list)
    notes_add: list[str] = Field(default_factory=list)
    dm_notes_add: list[str] = Field(default_factory=list)
    vitals: VitalsDelta = Field(default_factory=VitalsDelta)
    presence: PresenceDelta = Field(default_factory=PresenceDelta)
    map_text: str | None = None


class RoundSummary(WireModel):
    round: int = Field(gt=0)
    summary: str


class MemoryRecord(WireModel):
    """Everything the memory pipeline persists for one session."""

    session_id: str
    last_round_index: int = 0
    last_processed_at: str = ""
    short_summary: str = ""
    long_summary: str = ""
    recent_rounds: list[RoundSummary] = Field(default_factory=list)
    state: WorldState = Field(default_factory=WorldState)
    created_at: str = ""
    updated_at: str = ""


class MemorySnapshot(WireModel):
    """The player-visible slice of the world state."""

    vitals: Vitals = Field(default_factory=Vitals)
    presence: Presence = Field(default_factory=Presence)
    map_text: str = ""
    locations: list[Location] = Field(default_factory=list)
