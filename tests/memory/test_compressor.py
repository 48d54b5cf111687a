"""Tests for rpg_keeper.memory.compressor — model calls with fallbacks."""

import json

from conftest import StubLLM, conversation, dm, player
from rpg_keeper.llm import LLMError
from rpg_keeper.memory.compressor import (
    COMPRESSION_MAX_OUTPUT_TOKENS,
    create_fallback_summaries,
    merge_long_summary,
    summarize_rounds,
)
from rpg_keeper.memory.rounds import build_rounds
from rpg_keeper.models import RoundSummary


def rounds_of(n: int, start_index: int = 0):
    return build_rounds(conversation(n), start_index).rounds


class TestFallbackSummaries:
    def test_whitespace_squashed_and_truncated(self) -> None:
        long_reply = "  第一段\n\n第二段  " + "长" * 200
        bucket = build_rounds([player(0, "看"), dm(1, long_reply)], 0).rounds[0]
        summary = create_fallback_summaries([bucket])[0]
        assert summary.round == 1
        assert summary.summary.startswith("第一段 第二段 长")
        assert len(summary.summary) == 140

    def test_every_round_covered(self) -> None:
        summaries = create_fallback_summaries(rounds_of(3))
        assert [s.round for s in summaries] == [1, 2, 3]


class TestSummarizeRounds:
    async def test_parses_summaries_and_delta(self, scenario, character) -> None:
        reply = json.dumps({
            "roundSummaries": [
                {"round": 1, "summary": "艾达推门而入"},
                {"round": 2, "summary": "发现日记"},
                {"round": 9, "summary": "不在本批次"},
            ],
            "stateDelta": {"inventoryAdd": ["日记"], "npcs": [{"name": "Mary", "status": "injured"}]},
        }, ensure_ascii=False)
        llm = StubLLM({"compress": [reply]})
        result = await summarize_rounds(llm, scenario, character, "", "无", rounds_of(2))
        assert result.failed is False
        assert [s.round for s in result.round_summaries] == [1, 2]
        assert result.state_delta.inventory_add == ["日记"]
        assert result.state_delta.npcs[0].name == "Mary"
        _, messages, max_tokens = llm.calls[0]
        assert max_tokens == COMPRESSION_MAX_OUTPUT_TOKENS
        assert "回合 1" in messages[1].content

    async def test_unparseable_reply_uses_fallback(self, scenario, character) -> None:
        llm = StubLLM({"compress": ["抱歉，我无法完成"]})
        result = await summarize_rounds(llm, scenario, character, "", "无", rounds_of(2))
        assert result.failed is False
        assert [s.summary for s in result.round_summaries] == ["DM 回应 1", "DM 回应 2"]
        assert result.state_delta.inventory_add == []

    async def test_summaries_outside_batch_use_fallback(self, scenario, character) -> None:
        llm = StubLLM({"compress": ['{"roundSummaries": [{"round": 40, "summary": "?"}]}']})
        result = await summarize_rounds(llm, scenario, character, "", "无", rounds_of(1))
        assert result.round_summaries == [RoundSummary(round=1, summary="DM 回应 1")]

    async def test_transport_failure_marks_failed(self, scenario, character) -> None:
        llm = StubLLM({"compress": [LLMError("down")]})
        result = await summarize_rounds(llm, scenario, character, "", "无", rounds_of(2))
        assert result.failed is True
        assert [s.round for s in result.round_summaries] == [1, 2]

    async def test_no_rounds_no_call(self, scenario, character) -> None:
        llm = StubLLM({})
        result = await summarize_rounds(llm, scenario, character, "", "无", [])
        assert result.round_summaries == []
        assert llm.calls == []


class TestMergeLongSummary:
    OVERFLOW = [RoundSummary(round=1, summary="推门"), RoundSummary(round=2, summary="读日记")]

    async def test_no_overflow(self) -> None:
        assert await merge_long_summary(StubLLM({}), "旧摘要", []) == "旧摘要"

    async def test_first_overflow_skips_model(self) -> None:
        llm = StubLLM({})
        assert await merge_long_summary(llm, "", self.OVERFLOW) == "回合 1：推门\n回合 2：读日记"
        assert llm.calls == []

    async def test_model_merges(self) -> None:
        llm = StubLLM({"long_summary": ["  艾达进入宅邸并读了日记。 "]})
        assert await merge_long_summary(llm, "序章", self.OVERFLOW) == "艾达进入宅邸并读了日记。"

    async def test_failure_concatenates(self) -> None:
        llm = StubLLM({"long_summary": [LLMError("down")]})
        result = await merge_long_summary(llm, "序章", self.OVERFLOW)
        assert result == "序章\n回合 1：推门\n回合 2：读日记"

    async def test_blank_reply_concatenates(self) -> None:
        llm = StubLLM({"long_summary": ["   "]})
        assert (await merge_long_summary(llm, "序章", self.OVERFLOW)).startswith("序章\n回合 1")
