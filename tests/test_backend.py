import asyncio
from types import SimpleNamespace

import pytest

from voice_lab.backend import TutorBackend, build_system_prompt, clean_title
from voice_lab.config_models import AppConfig
from voice_lab.errors import BackendError
from voice_lab.models import EnrichmentContext, Role, TopicScore, UserStats


class FakeCompletions:
    def __init__(self, content="Friction slows things down. Have you felt it?", error=None, delay=0):
        self.content = content
        self.error = error
        self.delay = delay
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def make_backend(completions, **kwargs):
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return TutorBackend(client, **kwargs)


async def test_reply_sends_system_history_and_message():
    completions = FakeCompletions()
    backend = make_backend(completions, temperature=0.9)
    history = [(Role.ASSISTANT, "Hello Asha!"), (Role.USER, "hi")]

    reply = await backend.reply("what is friction", history, EnrichmentContext(name="Asha"))

    assert reply == "Friction slows things down. Have you felt it?"
    request = completions.requests[0]
    assert request["temperature"] == 0.9
    roles = [m["role"] for m in request["messages"]]
    assert roles == ["system", "assistant", "user", "user"]
    assert request["messages"][-1]["content"] == "what is friction"
    assert "Name: Asha" in request["messages"][0]["content"]


@pytest.mark.parametrize("completions", [
    FakeCompletions(content="   "),
    FakeCompletions(error=RuntimeError("rate limited")),
])
async def test_reply_failures_raise_backend_error(completions):
    backend = make_backend(completions)

    with pytest.raises(BackendError):
        await backend.reply("hello", [], EnrichmentContext())


async def test_reply_timeout_raises_backend_error():
    backend = make_backend(FakeCompletions(delay=1), timeout=0.01)

    with pytest.raises(BackendError):
        await backend.reply("hello", [], EnrichmentContext())


async def test_generate_title_strips_quotes():
    backend = make_backend(FakeCompletions(content='"Friction Basics"'))

    assert await backend.generate_title("what is friction") == "Friction Basics"


async def test_generate_title_falls_back_to_message_prefix():
    backend = make_backend(FakeCompletions(error=RuntimeError("down")))
    message = "why do objects stop rolling on the carpet so quickly"

    assert await backend.generate_title(message) == message[:30]


def test_clean_title_empty_uses_message():
    assert clean_title("", "short question") == "short question"


def test_system_prompt_defaults_without_profile():
    prompt = build_system_prompt(EnrichmentContext())

    assert "Name: Friend" in prompt
    assert "Interests: Science" in prompt
    assert "STUDENT PROGRESS" not in prompt


def test_system_prompt_includes_progress():
    stats = UserStats(
        rank="4", total_points=220, quizzes_attempted=1,
        topic_scores=[TopicScore(topic="Light", score=45, percent=75)],
        total_chats=3, voice_chats=2,
    )

    prompt = build_system_prompt(EnrichmentContext(name="Asha", interests="cricket", stats=stats))

    assert "Global Rank: #4" in prompt
    assert "Light 75%" in prompt
    assert "3 (2 voice)" in prompt


def test_from_config_requires_api_key():
    with pytest.raises(ValueError):
        TutorBackend.from_config(AppConfig(groq_api_key="", _env_file=None))
