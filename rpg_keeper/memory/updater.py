"""Memory refresh — folds unprocessed transcript into a session's MemoryRecord.

One pass:
  1. Load (or create) the record; seed missing vitals from the character.
  2. List messages after the watermark (``lastProcessedAt``).
  3. Archive the latest DM map module if it changed.
  4. Bucket messages into rounds; only completed rounds are compressed.
  5. Compress rounds in fixed-size batches. Each batch's delta is merged into
     the world state, and inventory/buffs/debuffs changes are written back to
     the character record.
  6. Rotate the round-summary window: overflow is folded into the long
     summary, the short summary is rebuilt. Placeholder summaries of
     rounds past the watermark keep their slots and are not folded.
  7. Persist the record with the advanced watermark.

A batch whose model call fails at the transport level (error or timeout)
stops the pass: its rounds get fallback summaries, but the watermark only
advances through the batches before it, so the failed rounds are bucketed
again (with the same round numbers) on the next refresh.

Callers must not run two passes for the same session concurrently; see
MemoryRefresher in rpg_keeper.memory.worker.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel

from rpg_keeper.llm import LLM
from rpg_keeper.memory.compressor import merge_long_summary, summarize_rounds
from rpg_keeper.memory.rounds import build_rounds, chunk_rounds, extract_latest_map_text
from rpg_keeper.memory.state import (
    apply_delta,
    build_short_summary,
    ensure_vitals,
    format_world_state,
    merge_round_summaries,
    merge_unique_list,
)
from rpg_keeper.models import Character, MemoryRecord, Scenario, WorldStateDelta
from rpg_keeper.storage import Repository, utc_now

logger = logging.getLogger(__name__)

MAX_RECENT_ROUNDS = 20
KEEP_RAW_ROUNDS = 3
CHUNK_SIZE = 4


class MemoryPolicy(BaseModel):
    max_recent_rounds: int = MAX_RECENT_ROUNDS
    keep_raw_rounds: int = KEEP_RAW_ROUNDS
    chunk_size: int = CHUNK_SIZE
    # per model call, in seconds; None waits for the transport's own timeout
    llm_timeout: float | None = None


class MemoryRefreshResult(BaseModel):
    memory: MemoryRecord
    character: Character


def new_memory_record(session_id: str) -> MemoryRecord:
    now = utc_now()
    return MemoryRecord(session_id=session_id, created_at=now, updated_at=now)


def _record_map_version(repo: Repository, session_id: str, round_index: int, content: str) -> None:
    try:
        repo.append_map_version(session_id, round_index, content)
    except OSError:
        logger.exception("Failed to record map version for session %s", session_id)


def _apply_character_lists(
    repo: Repository, character: Character, delta: WorldStateDelta
) -> Character:
    inventory = merge_unique_list(character.inventory, delta.inventory_add, delta.inventory_remove)
    buffs = merge_unique_list(character.buffs, delta.buffs_add, delta.buffs_remove)
    debuffs = merge_unique_list(character.debuffs, delta.debuffs_add, delta.debuffs_remove)
    if (
        "|".join(inventory) == "|".join(character.inventory)
        and "|".join(buffs) == "|".join(character.buffs)
        and "|".join(debuffs) == "|".join(character.debuffs)
    ):
        return character
    try:
        return repo.update_character_state(character.id, inventory, buffs, debuffs)
    except KeyError:
        logger.warning("Character %s not found, list changes kept in memory only", character.id)
        return character.model_copy(update={"inventory": inventory, "buffs": buffs, "debuffs": debuffs})


async def refresh_memory(
    *,
    repo: Repository,
    llm: LLM,
    session_id: str,
    scenario: Scenario,
    character: Character,
    policy: MemoryPolicy | None = None,
) -> MemoryRefreshResult:
    policy = policy or MemoryPolicy()
    stored = repo.get_memory(session_id)
    base = stored or new_memory_record(session_id)
    base = base.model_copy(update={"state": ensure_vitals(base.state, character)})

    messages = repo.list_messages_after(session_id, base.last_processed_at)
    if not messages:
        if stored is None:
            base = repo.upsert_memory(base)
        return MemoryRefreshResult(memory=base, character=character)

    latest_map = extract_latest_map_text(messages)
    map_updated = bool(latest_map) and latest_map != base.state.map_text
    bucketing = build_rounds(messages, base.last_round_index)
    state = base.state
    if map_updated:
        _record_map_version(repo, session_id, bucketing.last_completed_round, latest_map)
        state = state.model_copy(update={"map_text": latest_map})

    if not bucketing.rounds:
        watermark_moved = (
            bucketing.last_processed_at
            and bucketing.last_processed_at != base.last_processed_at
        )
        if not watermark_moved and not map_updated:
            return MemoryRefreshResult(memory=base, character=character)
        updated = base.model_copy(update={
            "last_processed_at": bucketing.last_processed_at or base.last_processed_at,
            "state": state,
            "updated_at": utc_now(),
        })
        return MemoryRefreshResult(memory=repo.upsert_memory(updated), character=character)

    recent_rounds = list(base.recent_rounds)
    last_round_index = base.last_round_index
    last_processed_at = base.last_processed_at

    for batch in chunk_rounds(bucketing.rounds, policy.chunk_size):
        result = await summarize_rounds(
            llm,
            scenario,
            character,
            base.short_summary,
            format_world_state(state),
            batch,
            timeout=policy.llm_timeout,
        )
        if result.round_summaries:
            recent_rounds = merge_round_summaries(recent_rounds, result.round_summaries)
        if result.failed:
            logger.warning(
                "Memory refresh for session %s stopped at round %d; will retry",
                session_id, batch[0].round,
            )
            break
        state = apply_delta(state, result.state_delta)
        character = _apply_character_lists(repo, character, result.state_delta)
        last_round_index = batch[-1].round
        last_processed_at = batch[-1].last_message_at

    # summaries past the watermark are placeholders until their batch is
    # retried, so they hold window slots but are never folded
    confirmed = [item for item in recent_rounds if item.round <= last_round_index]
    pending = [item for item in recent_rounds if item.round > last_round_index]
    pending = pending[: policy.max_recent_rounds]
    room = policy.max_recent_rounds - len(pending)

    long_summary = base.long_summary
    if len(confirmed) > room:
        cut = len(confirmed) - room
        overflow, confirmed = confirmed[:cut], confirmed[cut:]
        long_summary = await merge_long_summary(
            llm, long_summary, overflow, timeout=policy.llm_timeout
        )
    recent_rounds = confirmed + pending

    updated = base.model_copy(update={
        "last_round_index": last_round_index,
        "last_processed_at": last_processed_at,
        "short_summary": build_short_summary(long_summary, recent_rounds, policy.keep_raw_rounds),
        "long_summary": long_summary,
        "recent_rounds": recent_rounds,
        "state": state,
        "updated_at": utc_now(),
    })
    logger.info(
        "memory refreshed session=%s rounds=%d last_round=%d",
        session_id, len(bucketing.rounds), last_round_index,
    )
    return MemoryRefreshResult(memory=repo.upsert_memory(updated), character=character)
