"""JSON file storage.

All state is stored in flat JSON files under a configurable base directory.
There is no database or ORM — reads and writes go through plain helper
methods that load and dump JSON. Records are written with camelCase keys.

Directory layout:

    {base}/
      scenarios/{id}.json       ← Scenario
      characters/{id}.json      ← Character
      sessions/
        {id}.json               ← Session (incl. DC override map)
        {id}/
          messages.json         ← append-only TranscriptMessage stream
          memory.json           ← MemoryRecord
          maps.json             ← append-only MapVersion log

The memory pipeline only depends on the Repository protocol below, so any
other backend can stand in for Storage.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from rpg_keeper.models import (
    Character,
    MapVersion,
    MemoryRecord,
    Scenario,
    Session,
    TranscriptMessage,
)

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class Repository(Protocol):
    def get_memory(self, session_id: str) -> MemoryRecord | None: ...

    def upsert_memory(self, record: MemoryRecord) -> MemoryRecord: ...

    def list_messages_after(self, session_id: str, since: str) -> list[TranscriptMessage]: ...

    def append_map_version(self, session_id: str, round_index: int, content: str) -> MapVersion: ...

    def update_character_state(
        self,
        character_id: str,
        inventory: list[str],
        buffs: list[str],
        debuffs: list[str],
    ) -> Character: ...


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        for sub in ("scenarios", "characters", "sessions"):
            (self._base / sub).mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _scenario_file(self, scenario_id: str) -> Path:
        return self._base / "scenarios" / f"{scenario_id}.json"

    def _character_file(self, character_id: str) -> Path:
        return self._base / "characters" / f"{character_id}.json"

    def _session_file(self, session_id: str) -> Path:
        return self._base / "sessions" / f"{session_id}.json"

    def _session_dir(self, session_id: str) -> Path:
        path = self._base / "sessions" / session_id
        path.mkdir(exist_ok=True)
        return path

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text(encoding="utf-8"))

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")

    # ------------------------------------------------------------------
    # Scenarios + characters
    # ------------------------------------------------------------------

    def save_scenario(self, scenario: Scenario) -> None:
        self._write_json(self._scenario_file(scenario.id), scenario.to_wire())

    def get_scenario(self, scenario_id: str) -> Scenario:
        path = self._scenario_file(scenario_id)
        if not path.exists():
            raise KeyError(f"Unknown scenario: {scenario_id}")
        return Scenario.model_validate(self._read_json(path))

    def save_character(self, character: Character) -> None:
        self._write_json(self._character_file(character.id), character.to_wire())

    def get_character(self, character_id: str) -> Character:
        path = self._character_file(character_id)
        if not path.exists():
            raise KeyError(f"Unknown character: {character_id}")
        return Character.model_validate(self._read_json(path))

    def update_character_state(
        self,
        character_id: str,
        inventory: list[str],
        buffs: list[str],
        debuffs: list[str],
    ) -> Character:
        character = self.get_character(character_id).model_copy(
            update={"inventory": inventory, "buffs": buffs, "debuffs": debuffs}
        )
        self.save_character(character)
        return character

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, scenario_id: str, character_id: str, session_id: str | None = None) -> Session:
        session = Session(
            id=session_id or uuid.uuid4().hex,
            scenario_id=scenario_id,
            character_id=character_id,
        )
        self.save_session(session)
        return session

    def save_session(self, session: Session) -> None:
        self._write_json(self._session_file(session.id), session.to_wire())
        self._session_dir(session.id)

    def get_session(self, session_id: str) -> Session:
        path = self._session_file(session_id)
        if not path.exists():
            raise KeyError(f"Unknown session: {session_id}")
        return Session.model_validate(self._read_json(path))

    def update_dc_overrides(self, session_id: str, updates: dict[str, int]) -> Session:
        """Merge DC updates into the session override map (last write wins)."""
        session = self.get_session(session_id)
        if updates:
            session.check_dc_overrides = {**session.check_dc_overrides, **updates}
            self.save_session(session)
        return session

    # ------------------------------------------------------------------
    # Messages (append-only)
    # ------------------------------------------------------------------

    def get_messages(self, session_id: str) -> list[TranscriptMessage]:
        path = self._session_dir(session_id) / "messages.json"
        if not path.exists():
            return []
        return [TranscriptMessage.model_validate(m) for m in self._read_json(path)]

    def append_messages(self, session_id: str, messages: list[TranscriptMessage]) -> None:
        existing = self.get_messages(session_id)
        existing.extend(messages)
        self._write_json(
            self._session_dir(session_id) / "messages.json",
            [m.to_wire() for m in existing],
        )

    def list_messages_after(self, session_id: str, since: str) -> list[TranscriptMessage]:
        """Messages created strictly after the ``since`` watermark (all when empty)."""
        messages = self.get_messages(session_id)
        if not since:
            return messages
        return [m for m in messages if m.created_at > since]

    # ------------------------------------------------------------------
    # Memory
    # ------------------------------------------------------------------

    def get_memory(self, session_id: str) -> MemoryRecord | None:
        path = self._session_dir(session_id) / "memory.json"
        if not path.exists():
            return None
        # deferred: the memory package imports this module
        from rpg_keeper.memory.state import normalize_memory_record

        return normalize_memory_record(self._read_json(path), session_id)

    def upsert_memory(self, record: MemoryRecord) -> MemoryRecord:
        self._write_json(self._session_dir(record.session_id) / "memory.json", record.to_wire())
        return record

    # ------------------------------------------------------------------
    # Map versions (append-only)
    # ------------------------------------------------------------------

    def get_map_versions(self, session_id: str) -> list[MapVersion]:
        path = self._session_dir(session_id) / "maps.json"
        if not path.exists():
            return []
        return [MapVersion.model_validate(m) for m in self._read_json(path)]

    def append_map_version(self, session_id: str, round_index: int, content: str) -> MapVersion:
        version = MapVersion(
            id=uuid.uuid4().hex,
            session_id=session_id,
            round_index=round_index,
            content=content,
            created_at=utc_now(),
        )
        versions = self.get_map_versions(session_id)
        versions.append(version)
        self._write_json(
            self._session_dir(session_id) / "maps.json",
            [v.to_wire() for v in versions],
        )
        logger.debug("map version recorded session=%s round=%d", session_id, round_index)
        return version
