"""Session memory: round bucketing, compression, world-state merge, scheduling."""

from rpg_keeper.memory.compressor import (
    BatchSummary,
    create_fallback_summaries,
    merge_long_summary,
    summarize_rounds,
)
from rpg_keeper.memory.rounds import RoundBucket, build_rounds, chunk_rounds, extract_latest_map_text
from rpg_keeper.memory.state import (
    apply_delta,
    build_memory_context,
    build_short_summary,
    ensure_vitals,
    format_world_state,
    memory_snapshot,
    normalize_delta,
    parse_round_summaries,
    parse_world_state,
)
from rpg_keeper.memory.updater import MemoryPolicy, MemoryRefreshResult, refresh_memory
from rpg_keeper.memory.worker import MemoryRefresher

__all__ = [
    "BatchSummary",
    "MemoryPolicy",
    "MemoryRefreshResult",
    "MemoryRefresher",
    "RoundBucket",
    "apply_delta",
    "build_memory_context",
    "build_rounds",
    "build_short_summary",
    "chunk_rounds",
    "create_fallback_summaries",
    "ensure_vitals",
    "extract_latest_map_text",
    "format_world_state",
    "memory_snapshot",
    "merge_long_summary",
    "normalize_delta",
    "parse_round_summaries",
    "parse_world_state",
    "refresh_memory",
    "summarize_rounds",
]
