"""Turn pipeline: player input in, dice results out, DM reply archived.

    resolve_turn       analyse → (refuse | record input, execute plan,
                       persist model-suggested DCs) → TurnResult
    archive_dm_reply   split reply into modules → append to transcript →
                       schedule a background memory refresh

Generating the DM's narration is the caller's job; the TurnResult lines and
dice module are what it feeds the narrator alongside the memory context.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field

from rpg_keeper.actions import execute_action_plan
from rpg_keeper.analysis import DISALLOWED_REASON, analyze_input
from rpg_keeper.dc import RULEBOOK_CHECK_DC_OVERRIDES
from rpg_keeper.llm import LLM
from rpg_keeper.memory.updater import MemoryPolicy, MemoryRefreshResult, refresh_memory
from rpg_keeper.memory.worker import MemoryRefresher
from rpg_keeper.models import ChatModule, InputAnalysis, TranscriptMessage
from rpg_keeper.rules import RandomSource
from rpg_keeper.segments import message_text, modules_to_text, parse_chat_modules
from rpg_keeper.storage import Storage, utc_now

logger = logging.getLogger(__name__)

HISTORY_MESSAGE_LIMIT = 6
_ROLE_LABELS = {"player": "玩家", "dm": "DM", "system": "系统"}


class TurnResult(BaseModel):
    allowed: bool
    reason: str = ""
    analysis: InputAnalysis
    lines: list[str] = Field(default_factory=list)
    modules: list[ChatModule] = Field(default_factory=list)
    dc_updates: dict[str, int] = Field(default_factory=dict)


def format_recent_history(messages: list[TranscriptMessage], limit: int = HISTORY_MESSAGE_LIMIT) -> str:
    """The last ``limit`` messages as "角色：内容" lines, or 无."""
    lines = []
    for message in messages[-limit:] if limit > 0 else []:
        text = message_text(message).strip()
        if text:
            lines.append(f"{_ROLE_LABELS[message.role]}：{text}")
    return "\n".join(lines) or "无"


async def resolve_turn(
    storage: Storage,
    llm: LLM,
    session_id: str,
    player_input: str,
    *,
    recent_history: str | None = None,
    analysis_guide: str = "",
    rulebook: Mapping[str, Any] = RULEBOOK_CHECK_DC_OVERRIDES,
    rand: RandomSource = random.random,
    timeout: float | None = None,
) -> TurnResult:
    session = storage.get_session(session_id)
    scenario = storage.get_scenario(session.scenario_id)
    character = storage.get_character(session.character_id)
    if recent_history is None:
        recent_history = format_recent_history(storage.get_messages(session_id))

    analysis = await analyze_input(
        llm, scenario, character, player_input, recent_history, analysis_guide, timeout=timeout,
    )
    if not analysis.allowed:
        logger.info("input refused session=%s intent=%s", session_id, analysis.intent)
        return TurnResult(allowed=False, reason=analysis.reason or DISALLOWED_REASON, analysis=analysis)

    storage.append_messages(session_id, [
        TranscriptMessage(role="player", content=player_input.strip(), created_at=utc_now()),
    ])
    execution = execute_action_plan(
        analysis, scenario, character, session.check_dc_overrides, rand, rulebook,
    )
    if execution.dc_updates:
        storage.update_dc_overrides(session_id, execution.dc_updates)

    return TurnResult(
        allowed=True,
        reason=analysis.reason,
        analysis=analysis,
        lines=execution.lines,
        modules=execution.modules,
        dc_updates=execution.dc_updates,
    )


async def archive_dm_reply(
    storage: Storage,
    session_id: str,
    reply: str,
    refresher: MemoryRefresher | None = None,
) -> TranscriptMessage:
    """Store a DM reply and kick off a memory refresh without waiting for it."""
    modules = parse_chat_modules(reply)
    message = TranscriptMessage(
        role="dm",
        content=modules_to_text(modules, reply.strip()),
        modules=modules,
        created_at=utc_now(),
    )
    storage.append_messages(session_id, [message])
    if refresher is not None:
        refresher.schedule(session_id)
    return message


def session_refresher(
    storage: Storage,
    llm: LLM,
    policy: MemoryPolicy | None = None,
) -> MemoryRefresher:
    """A MemoryRefresher whose passes load the session's scenario and character from storage."""

    async def _refresh(session_id: str) -> MemoryRefreshResult:
        session = storage.get_session(session_id)
        return await refresh_memory(
            repo=storage,
            llm=llm,
            session_id=session_id,
            scenario=storage.get_scenario(session.scenario_id),
            character=storage.get_character(session.character_id),
            policy=policy,
        )

    return MemoryRefresher(_refresh)
