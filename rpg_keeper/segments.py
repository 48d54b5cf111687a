"""DM reply parsing into chat modules.

A DM reply is split on section markers:

    【叙事】 narrative   【掷骰】 dice   【绘图】 map   【建议】 suggestions

Suggestion sections are dropped (they are regenerated per turn), as are empty
sections and sections whose whole body is "无". Text before the first marker
becomes a narrative module. A reply without any marker is one narrative module.
"""

import re

from rpg_keeper.models import ChatModule, TranscriptMessage

_SECTION_RE = re.compile(r"【(叙事|掷骰|绘图|建议)】")
_SECTION_TYPES = {"叙事": "narrative", "掷骰": "dice", "绘图": "map"}


def _normalize(text: str) -> str:
    return text.replace("\r\n", "\n").strip()


def parse_chat_modules(text: str) -> list[ChatModule]:
    normalized = _normalize(text or "")
    if not normalized:
        return []

    matches = list(_SECTION_RE.finditer(normalized))
    if not matches:
        return [ChatModule(type="narrative", content=normalized)]

    modules: list[ChatModule] = []
    preface = normalized[:matches[0].start()].strip()
    if preface:
        modules.append(ChatModule(type="narrative", content=preface))

    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(normalized)
        body = _normalize(normalized[match.end():end])
        module_type = _SECTION_TYPES.get(match.group(1))
        # 建议 has no module type
        if not body or body == "无" or module_type is None:
            continue
        modules.append(ChatModule(type=module_type, content=body))

    return modules


def modules_to_text(modules: list[ChatModule], fallback: str = "") -> str:
    """Narrative first, then the other visible modules, one per line."""
    if not modules:
        return fallback
    narrative = next((m.content for m in modules if m.type == "narrative"), "")
    extra = "\n".join(
        m.content for m in modules
        if m.type not in ("narrative", "suggestions") and m.content
    )
    return "\n".join(part for part in (narrative, extra) if part)


def message_text(message: TranscriptMessage) -> str:
    """The text a message contributes to a round: narrative, else notice, else raw content."""
    for kind in ("narrative", "notice"):
        for module in message.modules:
            if module.type == kind and module.content.strip():
                return module.content
    return message.content
