"""Tests for rpg_keeper.llm — HTTP transport with httpx mocked out."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from rpg_keeper.llm import ChatMessage, EchoLLM, HttpLLM, LLMError, system_user

MESSAGES = system_user("你是解析器", "我搜查书房")


# ---------------------------------------------------------------------------
# EchoLLM
# ---------------------------------------------------------------------------

class TestEchoLLM:
    async def test_returns_last_message(self) -> None:
        assert await EchoLLM()("analysis", MESSAGES) == "我搜查书房"

    async def test_stage_name_ignored(self) -> None:
        llm = EchoLLM()
        assert await llm("analysis", MESSAGES) == await llm("compress", MESSAGES)

    async def test_empty_messages(self) -> None:
        assert await EchoLLM()("analysis", []) == ""


def _mock_response(body, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    resp.raise_for_status = MagicMock(
        side_effect=None if status < 400 else httpx.HTTPStatusError(
            "", request=MagicMock(), response=resp
        )
    )
    return resp


# ---------------------------------------------------------------------------
# HttpLLM — OpenAI chat completions
# ---------------------------------------------------------------------------

class TestHttpLLMOpenAI:
    @pytest.fixture
    def llm(self) -> HttpLLM:
        return HttpLLM(base_url="http://localhost:8080/v1/", api_key="sk-test", model="qwen")

    async def test_happy_path(self, llm: HttpLLM) -> None:
        body = {"choices": [{"message": {"content": '{"allowed": true}'}}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await llm("analysis", MESSAGES, max_output_tokens=600)
        assert result == '{"allowed": true}'

    async def test_request_shape(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"choices": [{"message": {"content": "ok"}}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("analysis", MESSAGES, max_output_tokens=600)
        assert mock_post.call_args[0][0] == "http://localhost:8080/v1/chat/completions"
        sent = mock_post.call_args.kwargs["json"]
        assert sent["model"] == "qwen"
        assert sent["max_tokens"] == 600
        assert sent["messages"] == [
            {"role": "system", "content": "你是解析器"},
            {"role": "user", "content": "我搜查书房"},
        ]
        assert mock_post.call_args.kwargs["headers"]["Authorization"] == "Bearer sk-test"

    async def test_default_base_url(self) -> None:
        llm = HttpLLM()
        mock_post = AsyncMock(return_value=_mock_response({"choices": [{"message": {"content": "ok"}}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("analysis", MESSAGES)
        assert mock_post.call_args[0][0] == "https://api.openai.com/v1/chat/completions"
        assert "max_tokens" not in mock_post.call_args.kwargs["json"]
        assert "Authorization" not in mock_post.call_args.kwargs["headers"]

    async def test_null_content_is_empty(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"choices": [{"message": {"content": None}}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            assert await llm("analysis", MESSAGES) == ""

    async def test_unexpected_body_raises(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"error": "nope"}))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Unexpected response"):
                await llm("analysis", MESSAGES)


# ---------------------------------------------------------------------------
# HttpLLM — Gemini generateContent
# ---------------------------------------------------------------------------

class TestHttpLLMGemini:
    @pytest.fixture
    def llm(self) -> HttpLLM:
        return HttpLLM(api_key="g-key", provider_format="gemini", model="gemini-2.0-flash")

    async def test_request_shape(self, llm: HttpLLM) -> None:
        body = {"candidates": [{"content": {"parts": [{"text": "一"}, {"text": "二"}]}}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        messages = MESSAGES + [ChatMessage(role="assistant", content="好的")]
        with patch("httpx.AsyncClient.post", mock_post):
            result = await llm("compress", messages, max_output_tokens=800)
        assert result == "一二"
        assert mock_post.call_args[0][0] == (
            "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.0-flash:generateContent"
        )
        sent = mock_post.call_args.kwargs["json"]
        assert sent["systemInstruction"] == {"parts": [{"text": "你是解析器"}]}
        assert [c["role"] for c in sent["contents"]] == ["user", "model"]
        assert sent["generationConfig"] == {"maxOutputTokens": 800}
        assert mock_post.call_args.kwargs["headers"]["x-goog-api-key"] == "g-key"

    async def test_missing_candidates_raises(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"candidates": []}))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError):
                await llm("compress", MESSAGES)


# ---------------------------------------------------------------------------
# Transport errors
# ---------------------------------------------------------------------------

class TestHttpLLMErrors:
    @pytest.fixture
    def llm(self) -> HttpLLM:
        return HttpLLM(base_url="http://localhost:8080/v1", timeout=5.0)

    async def test_connect_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Cannot connect"):
                await llm("analysis", MESSAGES)

    async def test_http_status_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({}, status=503))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="HTTP 503"):
                await llm("analysis", MESSAGES)

    async def test_timeout(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.ReadTimeout("slow"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="timed out after 5.0s"):
                await llm("analysis", MESSAGES)

    async def test_non_json_body(self, llm: HttpLLM) -> None:
        resp = _mock_response({})
        resp.json.side_effect = ValueError("not json")
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            with pytest.raises(LLMError, match="non-JSON"):
                await llm("analysis", MESSAGES)

    @pytest.mark.parametrize("error", [
        httpx.ReadError("reset"),
        httpx.WriteError("broken pipe"),
        httpx.RemoteProtocolError("bad"),
        httpx.ProxyError("proxy down"),
    ])
    async def test_other_transport_errors(self, llm: HttpLLM, error: httpx.HTTPError) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(side_effect=error)):
            with pytest.raises(LLMError, match=type(error).__name__):
                await llm("analysis", MESSAGES)

    @pytest.mark.parametrize("body", [
        {"choices": [{"message": None}]},
        {"choices": [None]},
        {"choices": "oops"},
        [{"choices": []}],
        "text",
    ])
    async def test_malformed_openai_body(self, llm: HttpLLM, body) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response(body))):
            with pytest.raises(LLMError, match="Unexpected response"):
                await llm("analysis", MESSAGES)

    @pytest.mark.parametrize("body", [
        [1, 2],
        {"candidates": [{"content": None}]},
        {"candidates": [{"content": {"parts": None}}]},
    ])
    async def test_malformed_gemini_body(self, body) -> None:
        llm = HttpLLM(api_key="g-key", provider_format="gemini", model="gemini-2.0-flash")
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response(body))):
            with pytest.raises(LLMError, match="Gemini"):
                await llm("compress", MESSAGES)
