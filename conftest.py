from datetime import datetime, timedelta, timezone

import pytest

from rpg_keeper.llm import ChatMessage
from rpg_keeper.models import (
    Character,
    ChatModule,
    Scenario,
    ScenarioRules,
    SkillOption,
    TranscriptMessage,
)
from rpg_keeper.storage import Storage

T0 = datetime(2020, 1, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# StubLLM: dispatches by stage name, independent queue per stage
# ---------------------------------------------------------------------------

class StubLLM:
    """Deterministic LLM stand-in for tests.

    Provide a dict mapping stage name → list of responses (in call order).
    A response that is an exception instance is raised instead of returned.
    Raises if a stage is called more times than responses were provided.
    """

    def __init__(self, responses: dict[str, list]) -> None:
        self._queues: dict[str, list] = {k: list(v) for k, v in responses.items()}
        self.calls: list[tuple[str, list[ChatMessage], int | None]] = []

    async def __call__(
        self,
        stage: str,
        messages: list[ChatMessage],
        *,
        max_output_tokens: int | None = None,
    ) -> str:
        self.calls.append((stage, messages, max_output_tokens))
        queue = self._queues.get(stage)
        if not queue:
            raise AssertionError(
                f"StubLLM: unexpected call to stage={stage!r} "
                f"(no responses queued). calls so far: {[c[0] for c in self.calls]}"
            )
        response = queue.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    def stages(self) -> list[str]:
        return [call[0] for call in self.calls]

    def assert_exhausted(self) -> None:
        """Assert every queued response was consumed — catches missing LLM calls."""
        leftover = {k: v for k, v in self._queues.items() if v}
        if leftover:
            raise AssertionError(f"StubLLM: unused responses remain: {leftover}")


def stamp(i: int) -> str:
    """Deterministic, sortable createdAt for the i-th test message."""
    return (T0 + timedelta(seconds=i)).isoformat(timespec="microseconds")


def player(i: int, text: str) -> TranscriptMessage:
    return TranscriptMessage(role="player", content=text, created_at=stamp(i))


def dm(i: int, text: str, *, map_text: str = "") -> TranscriptMessage:
    modules = [ChatModule(type="narrative", content=text)]
    if map_text:
        modules.append(ChatModule(type="map", content=map_text))
    return TranscriptMessage(role="dm", content=text, modules=modules, created_at=stamp(i))


def conversation(rounds: int, start: int = 0) -> list[TranscriptMessage]:
    """``rounds`` complete player/DM exchanges with increasing timestamps."""
    messages = []
    for n in range(rounds):
        i = start + n * 2
        messages.append(player(i, f"玩家行动 {n + 1}"))
        messages.append(dm(i + 1, f"DM 回应 {n + 1}"))
    return messages


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def scenario() -> Scenario:
    return Scenario(
        id="mansion",
        title="雾中宅邸",
        summary="调查一座被遗弃的宅邸。",
        skill_options=[
            SkillOption(id="spot_hidden", label="侦查", group="调查"),
            SkillOption(id="library_use", label="图书馆使用", group="调查"),
            SkillOption(id="firearms", label="射击", group="战斗"),
            SkillOption(id="brawl", label="格斗", group="战斗"),
        ],
        rules=ScenarioRules(),
    )


@pytest.fixture
def character() -> Character:
    return Character(
        id="ada",
        scenario_id="mansion",
        name="艾达",
        occupation="记者",
        luck=55,
        attributes={
            "strength": 50,
            "dexterity": 60,
            "constitution": 55,
            "size": 65,
            "intelligence": 70,
            "willpower": 60,
            "appearance": 50,
            "education": 75,
        },
        skills={"spot_hidden": 60, "library_use": True, "firearms": 45},
        inventory=["手电筒"],
    )


@pytest.fixture
def storage(tmp_path) -> Storage:
    return Storage(tmp_path)


@pytest.fixture
def session_id(storage: Storage, scenario: Scenario, character: Character) -> str:
    storage.save_scenario(scenario)
    storage.save_character(character)
    return storage.create_session(scenario.id, character.id, session_id="s1").id
