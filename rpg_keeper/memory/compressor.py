"""Model calls that compress rounds and fold old summaries into prose.

summarize_rounds asks the model for ``{roundSummaries, stateDelta}`` for one
batch of rounds. Summaries for rounds outside the batch are ignored; if none
survive, every round gets a truncated-text fallback summary so no round is
ever lost. The result says whether the model actually answered: transport
failures (LLMError, timeout) are reported as ``failed`` so the caller can
hold the watermark back, while unusable answers count as processed.

merge_long_summary folds overflowed round summaries into the long summary,
falling back to plain concatenation when the model call fails.
"""

from __future__ import annotations

import asyncio
import logging
import re

from pydantic import BaseModel, Field

from rpg_keeper.analysis import parse_json_object
from rpg_keeper.llm import LLM, ChatMessage, LLMError, system_user
from rpg_keeper.memory.rounds import RoundBucket
from rpg_keeper.memory.state import normalize_delta, normalize_round_summaries
from rpg_keeper.models import Character, RoundSummary, Scenario, WorldStateDelta
from rpg_keeper.prompts import (
    COMPRESSION_SYSTEM,
    COMPRESSION_USER,
    LONG_SUMMARY_SYSTEM,
    LONG_SUMMARY_USER,
    render_prompt,
)

logger = logging.getLogger(__name__)

COMPRESSION_MAX_OUTPUT_TOKENS = 800
LONG_SUMMARY_MAX_OUTPUT_TOKENS = 400
FALLBACK_SUMMARY_LENGTH = 140

_WHITESPACE_RE = re.compile(r"\s+")


class BatchSummary(BaseModel):
    round_summaries: list[RoundSummary] = Field(default_factory=list)
    state_delta: WorldStateDelta = Field(default_factory=WorldStateDelta)
    failed: bool = False


def create_fallback_summaries(rounds: list[RoundBucket]) -> list[RoundSummary]:
    """One summary per round: DM text (or player text) squashed to 140 chars."""
    summaries: list[RoundSummary] = []
    for bucket in rounds:
        raw = bucket.dm_text or bucket.player_text
        summary = _WHITESPACE_RE.sub(" ", raw).strip()[:FALLBACK_SUMMARY_LENGTH]
        if summary:
            summaries.append(RoundSummary(round=bucket.round, summary=summary))
    return summaries


def build_compression_messages(
    scenario: Scenario,
    character: Character,
    memory_summary: str,
    memory_state_text: str,
    rounds: list[RoundBucket],
) -> list[ChatMessage]:
    user = render_prompt(COMPRESSION_USER, {
        "scenario": scenario.model_dump(),
        "character": character.model_dump(),
        "summary": memory_summary,
        "state_text": memory_state_text,
        "rounds": [
            {
                "round": str(bucket.round),
                "player_text": bucket.player_text.strip(),
                "dm_text": bucket.dm_text.strip(),
            }
            for bucket in rounds
        ],
    })
    return system_user(render_prompt(COMPRESSION_SYSTEM, {}), user)


async def summarize_rounds(
    llm: LLM,
    scenario: Scenario,
    character: Character,
    memory_summary: str,
    memory_state_text: str,
    rounds: list[RoundBucket],
    timeout: float | None = None,
) -> BatchSummary:
    if not rounds:
        return BatchSummary()

    messages = build_compression_messages(
        scenario, character, memory_summary, memory_state_text, rounds
    )
    try:
        text = await asyncio.wait_for(
            llm("compress", messages, max_output_tokens=COMPRESSION_MAX_OUTPUT_TOKENS),
            timeout=timeout,
        )
    except (LLMError, asyncio.TimeoutError) as e:
        logger.warning(
            "Round compression failed for rounds %d-%d: %s",
            rounds[0].round, rounds[-1].round, e,
        )
        return BatchSummary(round_summaries=create_fallback_summaries(rounds), failed=True)

    data = parse_json_object(text)
    if data is None:
        logger.warning("Round compression output unparseable, using fallback summaries")
        return BatchSummary(round_summaries=create_fallback_summaries(rounds))

    batch_rounds = {bucket.round for bucket in rounds}
    summaries = [
        s for s in normalize_round_summaries(data.get("roundSummaries"))
        if s.round in batch_rounds
    ]
    return BatchSummary(
        round_summaries=summaries or create_fallback_summaries(rounds),
        state_delta=normalize_delta(data.get("stateDelta")),
    )


def _overflow_text(overflow: list[RoundSummary]) -> str:
    return "\n".join(f"回合 {item.round}：{item.summary}" for item in overflow)


async def merge_long_summary(
    llm: LLM,
    long_summary: str,
    overflow: list[RoundSummary],
    timeout: float | None = None,
) -> str:
    """Fold overflowed round summaries into the long summary. Never loses text."""
    if not overflow:
        return long_summary
    overflow_text = _overflow_text(overflow)
    if not long_summary.strip():
        return overflow_text

    fallback = f"{long_summary.strip()}\n{overflow_text}".strip()
    user = render_prompt(LONG_SUMMARY_USER, {
        "long_summary": long_summary.strip(),
        "overflow": overflow_text,
    })
    try:
        text = await asyncio.wait_for(
            llm(
                "long_summary",
                system_user(LONG_SUMMARY_SYSTEM, user),
                max_output_tokens=LONG_SUMMARY_MAX_OUTPUT_TOKENS,
            ),
            timeout=timeout,
        )
    except (LLMError, asyncio.TimeoutError) as e:
        logger.warning("Long summary merge failed, concatenating: %s", e)
        return fallback
    return text.strip() or fallback
