"""World state normalisation, delta merge and prompt formatting.

Model output arrives as loose JSON. The normalisers here turn it into
WorldStateDelta / WorldState values entry by entry, dropping anything
unusable instead of rejecting the whole payload:

  - string lists are trimmed and de-duplicated, blanks dropped
  - NPCs and locations need a name, threads a title, flags key and value
  - numbers are floored; numeric strings are accepted

apply_delta merges a delta into a state. Every keyed collection is an
upsert (NPCs and locations by name, threads by title, flags by key), list
fields are ordered set union/difference, and vitals are absolute overrides.
Applying the same delta twice gives the same state as applying it once.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterable
from typing import Any, TypeVar

from pydantic import ValidationError

from rpg_keeper.models import (
    Character,
    Flag,
    Location,
    MemoryRecord,
    MemorySnapshot,
    Npc,
    Presence,
    PresenceDelta,
    RoundSummary,
    Thread,
    VitalPair,
    Vitals,
    VitalsDelta,
    WorldState,
    WorldStateDelta,
)

logger = logging.getLogger(__name__)

THREAD_STATUSES = ("open", "resolved", "blocked")

_Keyed = TypeVar("_Keyed", Npc, Location, Thread)


# ---------------------------------------------------------------------------
# Normalisers
# ---------------------------------------------------------------------------

def normalize_string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    items = (item.strip() for item in value if isinstance(item, str))
    return list(dict.fromkeys(item for item in items if item))


def normalize_number(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and math.isfinite(value):
        return math.floor(value)
    if isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
        if math.isfinite(number):
            return math.floor(number)
    return None


def _text(record: dict, key: str) -> str | None:
    value = record.get(key)
    return value.strip() if isinstance(value, str) else None


def normalize_npc(entry: Any) -> Npc | None:
    if not isinstance(entry, dict):
        return None
    name = _text(entry, "name")
    if not name:
        return None
    fields: dict[str, Any] = {"name": name}
    for key in ("status", "relation", "location", "notes"):
        value = _text(entry, key)
        if value is not None:
            fields[key] = value
    if isinstance(entry.get("isAlly"), bool):
        fields["is_ally"] = entry["isAlly"]
    return Npc(**fields)


def normalize_location(entry: Any) -> Location | None:
    if not isinstance(entry, dict):
        return None
    name = _text(entry, "name")
    if not name:
        return None
    fields: dict[str, Any] = {"name": name}
    for key in ("status", "notes"):
        value = _text(entry, key)
        if value is not None:
            fields[key] = value
    return Location(**fields)


def normalize_thread(entry: Any) -> Thread | None:
    if not isinstance(entry, dict):
        return None
    title = _text(entry, "title")
    if not title:
        return None
    fields: dict[str, Any] = {"title": title}
    # unknown statuses stay unset so they never overwrite a known one
    if entry.get("status") in THREAD_STATUSES:
        fields["status"] = entry["status"]
    notes = _text(entry, "notes")
    if notes is not None:
        fields["notes"] = notes
    return Thread(**fields)


def normalize_flag(entry: Any) -> Flag | None:
    if not isinstance(entry, dict):
        return None
    key = _text(entry, "key")
    value = _text(entry, "value")
    if not key or not value:
        return None
    return Flag(key=key, value=value)


def normalize_round_summary(entry: Any) -> RoundSummary | None:
    if not isinstance(entry, dict):
        return None
    round_number = normalize_number(entry.get("round"))
    if round_number is None or round_number <= 0:
        return None
    summary = _text(entry, "summary")
    if not summary:
        return None
    return RoundSummary(round=round_number, summary=summary)


def normalize_round_summaries(value: Any) -> list[RoundSummary]:
    if not isinstance(value, list):
        return []
    return [s for s in map(normalize_round_summary, value) if s is not None]


def _normalize_all(value: Any, normalizer) -> list:
    if not isinstance(value, list):
        return []
    return [item for item in map(normalizer, value) if item is not None]


def normalize_vital_pair(raw: Any, current_fallback: Any = None, max_fallback: Any = None) -> VitalPair | None:
    current = max_value = None
    if isinstance(raw, dict):
        current = normalize_number(raw.get("current"))
        max_value = normalize_number(raw.get("max"))
    if current is None:
        current = normalize_number(current_fallback)
    if max_value is None:
        max_value = normalize_number(max_fallback)
    if current is None and max_value is None:
        return None
    safe_current = current if current is not None else max_value
    safe_max = max_value if max_value is not None else safe_current
    clamped_current = max(0, safe_current)
    return VitalPair(current=clamped_current, max=max(clamped_current, max(0, safe_max)))


def normalize_delta(raw: Any) -> WorldStateDelta:
    """Decode a model-supplied stateDelta. Anything unusable becomes "no change"."""
    if not isinstance(raw, dict):
        return WorldStateDelta()
    vitals = raw.get("vitals") if isinstance(raw.get("vitals"), dict) else {}
    presence = raw.get("presence") if isinstance(raw.get("presence"), dict) else {}
    map_text = _text(raw, "mapText")
    return WorldStateDelta(
        inventory_add=normalize_string_list(raw.get("inventoryAdd")),
        inventory_remove=normalize_string_list(raw.get("inventoryRemove")),
        buffs_add=normalize_string_list(raw.get("buffsAdd")),
        buffs_remove=normalize_string_list(raw.get("buffsRemove")),
        debuffs_add=normalize_string_list(raw.get("debuffsAdd")),
        debuffs_remove=normalize_string_list(raw.get("debuffsRemove")),
        allies_add=normalize_string_list(raw.get("alliesAdd")),
        allies_remove=normalize_string_list(raw.get("alliesRemove")),
        npcs=_normalize_all(raw.get("npcs"), normalize_npc),
        locations=_normalize_all(raw.get("locations"), normalize_location),
        threads=_normalize_all(raw.get("threads"), normalize_thread),
        flags=_normalize_all(raw.get("flags"), normalize_flag),
        notes_add=normalize_string_list(raw.get("notesAdd")),
        dm_notes_add=normalize_string_list(raw.get("dmNotesAdd")),
        vitals=VitalsDelta(
            hp_current=normalize_number(vitals.get("hpCurrent")),
            hp_max=normalize_number(vitals.get("hpMax")),
            sanity_current=normalize_number(vitals.get("sanityCurrent")),
            sanity_max=normalize_number(vitals.get("sanityMax")),
            magic_current=normalize_number(vitals.get("magicCurrent")),
            magic_max=normalize_number(vitals.get("magicMax")),
        ),
        presence=PresenceDelta(
            location=_text(presence, "location") or None,
            scene=_text(presence, "scene") or None,
            present_npcs_add=normalize_string_list(presence.get("presentNpcsAdd")),
            present_npcs_remove=normalize_string_list(presence.get("presentNpcsRemove")),
        ),
        map_text=map_text or None,
    )


def normalize_world_state(data: Any) -> WorldState:
    if not isinstance(data, dict):
        return WorldState()
    vitals = data.get("vitals") if isinstance(data.get("vitals"), dict) else {}
    presence = data.get("presence") if isinstance(data.get("presence"), dict) else {}
    present_npcs = presence.get("presentNpcs", presence.get("npcsPresent"))
    return WorldState(
        allies=normalize_string_list(data.get("allies")),
        npcs=_normalize_all(data.get("npcs"), normalize_npc),
        locations=_normalize_all(data.get("locations"), normalize_location),
        threads=_normalize_all(data.get("threads"), normalize_thread),
        flags=_normalize_all(data.get("flags"), normalize_flag),
        notes=normalize_string_list(data.get("notes")),
        dm_notes=normalize_string_list(data.get("dmNotes")),
        vitals=Vitals(
            hp=normalize_vital_pair(vitals.get("hp"), vitals.get("hpCurrent"), vitals.get("hpMax")),
            sanity=normalize_vital_pair(
                vitals.get("sanity"), vitals.get("sanityCurrent"), vitals.get("sanityMax")
            ),
            magic=normalize_vital_pair(
                vitals.get("magic"), vitals.get("magicCurrent"), vitals.get("magicMax")
            ),
        ),
        presence=Presence(
            location=_text(presence, "location") or None,
            scene=_text(presence, "scene") or None,
            present_npcs=normalize_string_list(present_npcs),
        ),
        map_text=_text(data, "mapText") or "",
    )


def parse_world_state(raw: str) -> WorldState:
    """Decode a stored state JSON string; empty state on anything malformed."""
    if not raw:
        return WorldState()
    try:
        return normalize_world_state(json.loads(raw))
    except json.JSONDecodeError as e:
        logger.warning("Stored world state is not valid JSON: %s", e)
        return WorldState()


def parse_round_summaries(raw: str) -> list[RoundSummary]:
    if not raw:
        return []
    try:
        return normalize_round_summaries(json.loads(raw))
    except json.JSONDecodeError as e:
        logger.warning("Stored round summaries are not valid JSON: %s", e)
        return []


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def merge_unique_list(base: Iterable[str], add: Iterable[str] = (), remove: Iterable[str] = ()) -> list[str]:
    merged = dict.fromkeys(base)
    merged.update(dict.fromkeys(add))
    for item in remove:
        merged.pop(item, None)
    return list(merged)


def _merge_keyed(base: list[_Keyed], updates: list[_Keyed], key: str) -> list[_Keyed]:
    """Upsert by key. Fields an update never set keep their existing values."""
    merged: dict[str, _Keyed] = {getattr(item, key): item for item in base}
    for item in updates:
        existing = merged.get(getattr(item, key))
        if existing is None:
            merged[getattr(item, key)] = item.model_copy()
        else:
            merged[getattr(item, key)] = existing.model_copy(update=item.model_dump(exclude_unset=True))
    return list(merged.values())


def merge_by_name(base: list[_Keyed], updates: list[_Keyed]) -> list[_Keyed]:
    return _merge_keyed(base, updates, "name")


def merge_by_title(base: list[Thread], updates: list[Thread]) -> list[Thread]:
    return _merge_keyed(base, updates, "title")


def merge_flags(base: list[Flag], updates: list[Flag]) -> list[Flag]:
    merged = {flag.key: flag for flag in base}
    merged.update((flag.key, flag) for flag in updates)
    return list(merged.values())


def apply_vital_update(
    previous: VitalPair | None, current: int | None, max_value: int | None
) -> VitalPair | None:
    """Absolute override of a current/max pair, keeping 0 <= current <= max."""
    if current is None and max_value is None:
        return previous.model_copy() if previous else None
    prev_current = previous.current if previous else None
    prev_max = previous.max if previous else None
    base_current = next(
        (v for v in (current, prev_current, max_value, prev_max) if v is not None), 0
    )
    base_max = next((v for v in (max_value, prev_max) if v is not None), base_current)
    new_current = max(0, math.floor(base_current))
    return VitalPair(current=new_current, max=max(new_current, math.floor(base_max)))


def apply_delta(state: WorldState, delta: WorldStateDelta) -> WorldState:
    vitals = Vitals(
        hp=apply_vital_update(state.vitals.hp, delta.vitals.hp_current, delta.vitals.hp_max),
        sanity=apply_vital_update(
            state.vitals.sanity, delta.vitals.sanity_current, delta.vitals.sanity_max
        ),
        magic=apply_vital_update(
            state.vitals.magic, delta.vitals.magic_current, delta.vitals.magic_max
        ),
    )
    presence = Presence(
        location=(delta.presence.location or "").strip() or state.presence.location,
        scene=(delta.presence.scene or "").strip() or state.presence.scene,
        present_npcs=merge_unique_list(
            state.presence.present_npcs,
            delta.presence.present_npcs_add,
            delta.presence.present_npcs_remove,
        ),
    )
    map_text = (delta.map_text or "").strip() or state.map_text
    return WorldState(
        allies=merge_unique_list(state.allies, delta.allies_add, delta.allies_remove),
        npcs=merge_by_name(state.npcs, delta.npcs),
        locations=merge_by_name(state.locations, delta.locations),
        threads=merge_by_title(state.threads, delta.threads),
        flags=merge_flags(state.flags, delta.flags),
        notes=merge_unique_list(state.notes, delta.notes_add),
        dm_notes=merge_unique_list(state.dm_notes, delta.dm_notes_add),
        vitals=vitals,
        presence=presence,
        map_text=map_text,
    )


def merge_round_summaries(base: list[RoundSummary], updates: list[RoundSummary]) -> list[RoundSummary]:
    """Keyed by round number; later entries overwrite. Sorted by round."""
    merged = {item.round: item for item in base}
    merged.update((item.round, item) for item in updates)
    return [merged[number] for number in sorted(merged)]


# ---------------------------------------------------------------------------
# Vitals baseline
# ---------------------------------------------------------------------------

def base_vitals(character: Character) -> Vitals:
    constitution = character.attributes.get("constitution", 0)
    size = character.attributes.get("size", 0)
    willpower = character.attributes.get("willpower", 0)
    hit_points = max(1, math.floor((constitution + size) / 10))
    sanity = max(0, math.floor(willpower))
    magic = max(0, math.floor(willpower / 5))
    return Vitals(
        hp=VitalPair(current=hit_points, max=hit_points),
        sanity=VitalPair(current=sanity, max=sanity),
        magic=VitalPair(current=magic, max=magic),
    )


def _ensure_pair(pair: VitalPair | None, fallback: VitalPair) -> VitalPair:
    if pair is None:
        return fallback.model_copy()
    normalized_max = max(pair.max, pair.current)
    return VitalPair(current=min(pair.current, normalized_max), max=normalized_max)


def ensure_vitals(state: WorldState, character: Character) -> WorldState:
    """Seed missing vitals pairs from the character sheet."""
    base = base_vitals(character)
    vitals = Vitals(
        hp=_ensure_pair(state.vitals.hp, base.hp),
        sanity=_ensure_pair(state.vitals.sanity, base.sanity),
        magic=_ensure_pair(state.vitals.magic, base.magic),
    )
    return state.model_copy(update={"vitals": vitals})


# ---------------------------------------------------------------------------
# Prompt text
# ---------------------------------------------------------------------------

def build_short_summary(long_summary: str, recent_rounds: list[RoundSummary], keep_recent: int = 3) -> str:
    """Long summary plus every windowed round except the newest ``keep_recent``."""
    parts: list[str] = []
    if long_summary.strip():
        parts.append(long_summary.strip())
    cutoff = max(0, len(recent_rounds) - keep_recent)
    condensed = [f"回合 {item.round}：{item.summary}" for item in recent_rounds[:cutoff]]
    if condensed:
        parts.append("\n".join(condensed))
    return "\n".join(parts).strip()


def _format_npc(npc: Npc) -> str:
    parts = [npc.name]
    if npc.status:
        parts.append(npc.status)
    if npc.relation:
        parts.append(f"关系:{npc.relation}")
    if npc.location:
        parts.append(f"位置:{npc.location}")
    if npc.notes:
        parts.append(f"备注:{npc.notes}")
    return " | ".join(parts)


def format_world_state(state: WorldState) -> str:
    sections: list[str] = []

    vitals = []
    for label, pair in (("生命", state.vitals.hp), ("理智", state.vitals.sanity), ("魔法", state.vitals.magic)):
        if pair is not None:
            vitals.append(f"{label} {pair.current}/{pair.max}")
    if vitals:
        sections.append(f"角色状态：{'，'.join(vitals)}")

    presence = []
    if state.presence.location:
        presence.append(f"地点:{state.presence.location}")
    if state.presence.scene:
        presence.append(f"场景:{state.presence.scene}")
    if state.presence.present_npcs:
        presence.append(f"在场 NPC:{'、'.join(state.presence.present_npcs)}")
    if presence:
        sections.append(f"当前环境：{'，'.join(presence)}")

    if state.allies:
        sections.append(f"盟友：{'、'.join(state.allies)}")
    if state.npcs:
        sections.append(f"NPC：{'；'.join(_format_npc(npc) for npc in state.npcs)}")
    if state.locations:
        locations = "、".join(
            f"{loc.name}({loc.status})" if loc.status else loc.name for loc in state.locations
        )
        sections.append(f"地点：{locations}")
    if state.threads:
        threads = "、".join(
            t.title if t.status == "open" else f"{t.title}({t.status})" for t in state.threads
        )
        sections.append(f"线索/任务：{threads}")
    if state.flags:
        sections.append(f"关键标记：{'、'.join(f'{f.key}:{f.value}' for f in state.flags)}")
    if state.notes:
        sections.append(f"记录：{'、'.join(state.notes)}")
    if state.dm_notes:
        sections.append(f"DM 笔记：{'、'.join(state.dm_notes)}")
    if state.map_text.strip():
        sections.append("地图：已记录（ASCII/emoji）")

    return "\n".join(sections) if sections else "无"


def build_memory_context(summary: str, state: WorldState) -> str:
    parts: list[str] = []
    if summary.strip():
        parts.append(f"历史摘要：{summary.strip()}")
    state_text = format_world_state(state)
    if state_text != "无":
        parts.append(f"世界状态：{state_text}")
    return "\n".join(parts) if parts else "无"


def memory_snapshot(state: WorldState) -> MemorySnapshot:
    return MemorySnapshot(
        vitals=state.vitals,
        presence=state.presence,
        map_text=state.map_text,
        locations=state.locations,
    )


# ---------------------------------------------------------------------------
# Stored record
# ---------------------------------------------------------------------------

def normalize_memory_record(data: Any, session_id: str) -> MemoryRecord | None:
    """Rebuild a stored MemoryRecord, repairing or dropping damaged parts.

    Malformed state entries and round summaries are dropped one by one.
    If the scalar fields are unusable the record keeps its state and window
    but restarts from round 0, so the transcript is compressed again.
    """
    if not isinstance(data, dict):
        logger.warning("Stored memory for session %s is not an object, ignoring it", session_id)
        return None
    state = normalize_world_state(data.get("state"))
    recent_rounds = normalize_round_summaries(data.get("recentRounds"))
    try:
        return MemoryRecord.model_validate({
            **data,
            "sessionId": session_id,
            "state": state,
            "recentRounds": recent_rounds,
        })
    except ValidationError as e:
        logger.warning("Stored memory for session %s has invalid fields, resetting watermark: %s", session_id, e)
        return MemoryRecord(session_id=session_id, state=state, recent_rounds=recent_rounds)
