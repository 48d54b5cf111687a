"""Command line entry point.

    rpg-keeper check --value 60 [--difficulty hard] [--dc 100] [--kind skill]
    rpg-keeper refresh SESSION_ID
    rpg-keeper memory SESSION_ID [--json]
    rpg-keeper maps SESSION_ID
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from rpg_keeper.config import Settings
from rpg_keeper.memory.state import build_memory_context, memory_snapshot
from rpg_keeper.models import DIFFICULTIES
from rpg_keeper.rules import check_attribute, check_luck, check_sanity, check_skill
from rpg_keeper.storage import Storage
from rpg_keeper.turn import session_refresher

logger = logging.getLogger(__name__)

_CHECKS = {
    "skill": check_skill,
    "attribute": check_attribute,
    "luck": check_luck,
    "sanity": check_sanity,
}


def _cmd_check(args: argparse.Namespace, settings: Settings) -> int:
    outcome = _CHECKS[args.kind](args.dc, args.value, args.difficulty)
    print(f"1D100 → {outcome.roll} / {outcome.threshold}，{outcome.outcome}（{outcome.difficulty_label}）")
    return 0 if outcome.success else 1


def _cmd_refresh(args: argparse.Namespace, settings: Settings) -> int:
    storage = Storage(settings.data_dir)
    refresher = session_refresher(storage, settings.build_llm(), settings.memory_policy())
    result = asyncio.run(refresher.refresh(args.session_id))
    memory = result.memory
    print(f"last round: {memory.last_round_index}  watermark: {memory.last_processed_at or '-'}")
    print(memory.short_summary or "无")
    return 0


def _cmd_memory(args: argparse.Namespace, settings: Settings) -> int:
    memory = Storage(settings.data_dir).get_memory(args.session_id)
    if memory is None:
        print(f"No memory recorded for session {args.session_id}", file=sys.stderr)
        return 1
    if args.json:
        payload = {"memory": memory.to_wire(), "snapshot": memory_snapshot(memory.state).to_wire()}
        print(json.dumps(payload, indent=2, ensure_ascii=False))
    else:
        print(build_memory_context(memory.short_summary, memory.state))
    return 0


def _cmd_maps(args: argparse.Namespace, settings: Settings) -> int:
    versions = Storage(settings.data_dir).get_map_versions(args.session_id)
    if not versions:
        print("无")
    for version in versions:
        print(f"== 回合 {version.round_index} ({version.created_at}) ==")
        print(version.content)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rpg-keeper", description="Narrative state & check resolution engine")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    check = sub.add_parser("check", help="Roll one percentile check")
    check.add_argument("--value", type=float, required=True, help="Skill/attribute/luck value")
    check.add_argument("--difficulty", choices=DIFFICULTIES, default="normal")
    check.add_argument("--dc", type=float, default=None, help="Difficulty class, clamped to 1..100")
    check.add_argument("--kind", choices=sorted(_CHECKS), default="skill")
    check.set_defaults(func=_cmd_check)

    refresh = sub.add_parser("refresh", help="Fold new transcript rounds into session memory")
    refresh.add_argument("session_id")
    refresh.set_defaults(func=_cmd_refresh)

    memory = sub.add_parser("memory", help="Show a session's memory context")
    memory.add_argument("session_id")
    memory.add_argument("--json", action="store_true", help="Print the raw record and snapshot")
    memory.set_defaults(func=_cmd_memory)

    maps = sub.add_parser("maps", help="List archived map versions")
    maps.add_argument("session_id")
    maps.set_defaults(func=_cmd_maps)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = Settings.from_env()
    try:
        return args.func(args, settings)
    except KeyError as e:
        logger.error("%s", e.args[0] if e.args else e)
        return 2
