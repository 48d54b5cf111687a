"""Tests for rpg_keeper.segments — DM reply module parsing."""

from rpg_keeper.models import ChatModule, TranscriptMessage
from rpg_keeper.segments import message_text, modules_to_text, parse_chat_modules

REPLY = """\
【叙事】
雨水顺着窗框流下，书房里一片寂静。
【掷骰】
侦查检定 1D100 → 37 / 60，成功（普通，技能值 60）
【绘图】
[书房]──[走廊]
【建议】
1. 翻看日记
"""


class TestParseChatModules:
    def test_sections(self) -> None:
        modules = parse_chat_modules(REPLY)
        assert [m.type for m in modules] == ["narrative", "dice", "map"]
        assert modules[0].content == "雨水顺着窗框流下，书房里一片寂静。"
        assert modules[2].content == "[书房]──[走廊]"

    def test_plain_text_is_narrative(self) -> None:
        assert parse_chat_modules("门开了。") == [ChatModule(type="narrative", content="门开了。")]

    def test_preface_becomes_narrative(self) -> None:
        modules = parse_chat_modules("你听见脚步声。\n【绘图】\n[门]")
        assert [m.type for m in modules] == ["narrative", "map"]
        assert modules[0].content == "你听见脚步声。"

    def test_empty_and_none_sections_dropped(self) -> None:
        modules = parse_chat_modules("【叙事】无\n【掷骰】\n【绘图】 无 ")
        assert modules == []

    def test_crlf_normalised(self) -> None:
        modules = parse_chat_modules("【叙事】\r\n第一行\r\n第二行")
        assert modules[0].content == "第一行\n第二行"

    def test_blank(self) -> None:
        assert parse_chat_modules("   ") == []


class TestModuleText:
    def test_modules_to_text(self) -> None:
        text = modules_to_text(parse_chat_modules(REPLY))
        assert text.splitlines()[0] == "雨水顺着窗框流下，书房里一片寂静。"
        assert "侦查检定" in text
        assert modules_to_text([], "原文") == "原文"

    def test_message_text_prefers_narrative(self) -> None:
        message = TranscriptMessage(
            role="dm",
            content="全部内容",
            modules=[ChatModule(type="dice", content="掷骰"), ChatModule(type="narrative", content="叙事")],
            created_at="2026-01-01T00:00:00",
        )
        assert message_text(message) == "叙事"

    def test_message_text_falls_back_to_notice_then_content(self) -> None:
        notice = TranscriptMessage(
            role="system", content="原文",
            modules=[ChatModule(type="notice", content="提示")], created_at="t",
        )
        plain = TranscriptMessage(role="player", content="原文", created_at="t")
        assert message_text(notice) == "提示"
        assert message_text(plain) == "原文"
