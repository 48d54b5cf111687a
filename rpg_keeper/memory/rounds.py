"""Transcript bucketing.

A round is one player message plus every DM message after it, up to the next
player message. A round only counts once at least one DM reply has arrived:
a trailing unanswered player message stays pending and never moves the
watermark. DM messages before the first player message are ignored.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from rpg_keeper.models import TranscriptMessage
from rpg_keeper.segments import message_text


class RoundBucket(BaseModel):
    round: int
    player_text: str
    dm_text: str = ""
    last_message_at: str


class Bucketing(BaseModel):
    rounds: list[RoundBucket] = Field(default_factory=list)
    # createdAt of the last message folded into a completed round
    last_processed_at: str = ""
    last_completed_round: int = 0


def build_rounds(messages: list[TranscriptMessage], start_index: int) -> Bucketing:
    """Bucket ``messages`` into rounds numbered from ``start_index + 1``."""
    round_index = start_index
    last_completed = start_index
    last_processed_at = ""
    pending_player = False
    current: RoundBucket | None = None
    rounds: list[RoundBucket] = []

    for message in messages:
        if message.role == "player":
            if current is not None and current.dm_text.strip():
                rounds.append(current)
                last_processed_at = current.last_message_at
                last_completed = current.round
            round_index += 1
            current = RoundBucket(
                round=round_index,
                player_text=message.content,
                last_message_at=message.created_at,
            )
            pending_player = True
        elif message.role == "dm":
            if current is None:
                continue
            text = message_text(message)
            current.dm_text = f"{current.dm_text}\n{text}" if current.dm_text else text
            current.last_message_at = message.created_at
            pending_player = False

    if current is not None and current.dm_text.strip():
        rounds.append(current)
        last_processed_at = current.last_message_at
        last_completed = current.round

    # only system/DM noise since the watermark: skip past it
    if not last_processed_at and not pending_player and messages:
        last_processed_at = messages[-1].created_at

    return Bucketing(
        rounds=rounds,
        last_processed_at=last_processed_at,
        last_completed_round=last_completed,
    )


def chunk_rounds(rounds: list[RoundBucket], size: int) -> list[list[RoundBucket]]:
    size = max(1, size)
    return [rounds[i:i + size] for i in range(0, len(rounds), size)]


def extract_latest_map_text(messages: list[TranscriptMessage]) -> str | None:
    """The newest non-empty map module authored by the DM, if any."""
    for message in reversed(messages):
        if message.role != "dm":
            continue
        for module in message.modules:
            if module.type == "map" and module.content.strip():
                return module.content.strip()
    return None
