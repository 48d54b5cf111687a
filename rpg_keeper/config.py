"""Runtime configuration from environment variables (and an optional .env).

    KEEPER_DATA_DIR            storage base directory (default ./data)
    LLM_PROVIDER               "openai" | "gemini", or "echo" for no network
    LLM_BASE_URL               API base; empty means the provider's public endpoint
    LLM_API_KEY
    LLM_MODEL
    LLM_TIMEOUT                seconds per model call (default 60)
    MEMORY_MAX_RECENT_ROUNDS   round summaries kept verbatim (default 20)
    MEMORY_KEEP_RAW_ROUNDS     rounds quoted in the short summary (default 3)
    MEMORY_CHUNK_SIZE          rounds per compression call (default 4)

The rulebook DC table is read from ``{data_dir}/rulebook.json`` when present:
a flat object of check key to DC, e.g. ``{"skill:spot": 40}``.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from rpg_keeper.dc import RULEBOOK_CHECK_DC_OVERRIDES
from rpg_keeper.llm import LLM, EchoLLM, HttpLLM
from rpg_keeper.memory.updater import CHUNK_SIZE, KEEP_RAW_ROUNDS, MAX_RECENT_ROUNDS, MemoryPolicy
from rpg_keeper.rules import is_finite_number

logger = logging.getLogger(__name__)

RULEBOOK_FILENAME = "rulebook.json"


class Settings(BaseModel):
    data_dir: Path = Path("data")
    llm_provider: Literal["openai", "gemini", "echo"] = "openai"
    llm_base_url: str = ""
    llm_api_key: str = ""
    llm_model: str = ""
    llm_timeout: float = Field(default=60.0, gt=0)
    memory_max_recent_rounds: int = Field(default=MAX_RECENT_ROUNDS, ge=1)
    memory_keep_raw_rounds: int = Field(default=KEEP_RAW_ROUNDS, ge=0)
    memory_chunk_size: int = Field(default=CHUNK_SIZE, ge=1)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Settings:
        """Build settings from ``env`` (default: os.environ after loading .env)."""
        if env is None:
            load_dotenv()
            env = os.environ
        values = {
            "data_dir": env.get("KEEPER_DATA_DIR"),
            "llm_provider": env.get("LLM_PROVIDER"),
            "llm_base_url": env.get("LLM_BASE_URL"),
            "llm_api_key": env.get("LLM_API_KEY"),
            "llm_model": env.get("LLM_MODEL"),
            "llm_timeout": env.get("LLM_TIMEOUT"),
            "memory_max_recent_rounds": env.get("MEMORY_MAX_RECENT_ROUNDS"),
            "memory_keep_raw_rounds": env.get("MEMORY_KEEP_RAW_ROUNDS"),
            "memory_chunk_size": env.get("MEMORY_CHUNK_SIZE"),
        }
        # unset or blank variables keep the defaults
        return cls.model_validate({k: v for k, v in values.items() if v not in (None, "")})

    def memory_policy(self) -> MemoryPolicy:
        return MemoryPolicy(
            max_recent_rounds=self.memory_max_recent_rounds,
            keep_raw_rounds=self.memory_keep_raw_rounds,
            chunk_size=self.memory_chunk_size,
            llm_timeout=self.llm_timeout,
        )

    def build_llm(self) -> LLM:
        if self.llm_provider == "echo":
            return EchoLLM()
        return HttpLLM(
            base_url=self.llm_base_url,
            api_key=self.llm_api_key,
            provider_format=self.llm_provider,
            model=self.llm_model,
            timeout=self.llm_timeout,
        )

    def load_rulebook(self) -> Mapping[str, float]:
        return load_rulebook(self.data_dir / RULEBOOK_FILENAME)


def load_rulebook(path: Path) -> Mapping[str, float]:
    """Read a rulebook DC table. Missing file means an empty table."""
    if not path.is_file():
        return RULEBOOK_CHECK_DC_OVERRIDES
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a JSON object")
    table = {}
    for key, value in data.items():
        if is_finite_number(value):
            table[str(key)] = value
        else:
            logger.warning("Ignoring non-numeric rulebook DC %r=%r", key, value)
    return MappingProxyType(table)
