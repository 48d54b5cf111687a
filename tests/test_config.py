"""Tests for rpg_keeper.config — environment settings and rulebook loading."""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from rpg_keeper.config import Settings, load_rulebook
from rpg_keeper.llm import EchoLLM, HttpLLM


class TestSettings:
    def test_defaults(self) -> None:
        settings = Settings.from_env({})
        assert settings.data_dir == Path("data")
        assert settings.llm_provider == "openai"
        assert settings.llm_timeout == 60.0
        policy = settings.memory_policy()
        assert (policy.max_recent_rounds, policy.keep_raw_rounds, policy.chunk_size) == (20, 3, 4)
        assert policy.llm_timeout == 60.0

    def test_reads_environment(self, tmp_path) -> None:
        settings = Settings.from_env({
            "KEEPER_DATA_DIR": str(tmp_path),
            "LLM_PROVIDER": "gemini",
            "LLM_MODEL": "gemini-2.0-flash",
            "LLM_TIMEOUT": "12.5",
            "MEMORY_CHUNK_SIZE": "6",
            "MEMORY_MAX_RECENT_ROUNDS": "",
        })
        assert settings.data_dir == tmp_path
        assert settings.llm_timeout == 12.5
        assert settings.memory_chunk_size == 6
        assert settings.memory_max_recent_rounds == 20

    def test_invalid_values_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings.from_env({"LLM_PROVIDER": "koboldcpp"})
        with pytest.raises(ValidationError):
            Settings.from_env({"MEMORY_CHUNK_SIZE": "0"})

    def test_build_llm(self) -> None:
        assert isinstance(Settings(llm_provider="echo").build_llm(), EchoLLM)
        assert isinstance(Settings(llm_provider="gemini", llm_model="m").build_llm(), HttpLLM)


class TestRulebook:
    def test_missing_file_is_empty(self, tmp_path) -> None:
        assert dict(load_rulebook(tmp_path / "rulebook.json")) == {}

    def test_numeric_entries_kept(self, tmp_path) -> None:
        (tmp_path / "rulebook.json").write_text(
            json.dumps({"skill:spot_hidden": 40, "luck": "hard", "sanity": 55.5}), encoding="utf-8"
        )
        table = Settings(data_dir=tmp_path).load_rulebook()
        assert dict(table) == {"skill:spot_hidden": 40, "sanity": 55.5}

    def test_non_object_rejected(self, tmp_path) -> None:
        path = tmp_path / "rulebook.json"
        path.write_text("[40]", encoding="utf-8")
        with pytest.raises(ValueError):
            load_rulebook(path)
