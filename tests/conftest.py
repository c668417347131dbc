import asyncio
from types import SimpleNamespace

import pytest

from voice_lab.controller import VoiceSessionController
from voice_lab.errors import BackendError, CaptureBusyError
from voice_lab.models import UserProfile
from voice_lab.repository import InMemorySessionRepository
from voice_lab.session_store import VoiceSessionStore
from voice_lab.speech import NO_SPEECH, CaptureService, SynthesisService

USER_ID = "student-1"


class MediaMonitor:
    """Fails the test if capture and synthesis are ever active together."""

    def __init__(self):
        self.capture = None
        self.synthesis = None

    def check(self):
        assert not (self.capture.is_active and self.synthesis.is_active), \
            "capture and synthesis active at the same time"


class FakeCapture(CaptureService):
    def __init__(self, monitor):
        super().__init__()
        self.monitor = monitor
        self.cycle = 0
        self.active_cycle = None
        self.starts = 0
        self.stops = 0
        self.fail_next_start = None

    @property
    def is_active(self):
        return self.active_cycle is not None

    def start(self):
        if self.fail_next_start:
            exc, self.fail_next_start = self.fail_next_start, None
            raise exc
        if self.active_cycle is not None:
            raise CaptureBusyError()
        self.cycle += 1
        self.starts += 1
        self.active_cycle = self.cycle
        self.monitor.check()
        asyncio.get_running_loop().call_soon(self._emit, self.on_start, self.cycle)
        return self.cycle

    def stop(self):
        if self.active_cycle is None:
            return
        cycle, self.active_cycle = self.active_cycle, None
        self.stops += 1
        asyncio.get_running_loop().call_soon(self._emit, self.on_end, cycle)

    def say(self, transcript):
        cycle, self.active_cycle = self.active_cycle, None
        self._emit(self.on_result, cycle, transcript)
        self._emit(self.on_end, cycle)

    def fail(self, code=NO_SPEECH):
        cycle, self.active_cycle = self.active_cycle, None
        self._emit(self.on_error, cycle, code)
        self._emit(self.on_end, cycle)

    def end_silently(self):
        cycle, self.active_cycle = self.active_cycle, None
        self._emit(self.on_end, cycle)


class FakeSynthesis(SynthesisService):
    def __init__(self, monitor, voices=()):
        super().__init__()
        self.monitor = monitor
        self.voices = list(voices)
        self.playback = 0
        self.active_playback = None
        self.spoken = []

    @property
    def is_active(self):
        return self.active_playback is not None

    async def list_voices(self):
        return self.voices

    def speak(self, text, voice_id=None, rate=1.0, pitch=1.0):
        self.stop()
        self.playback += 1
        self.active_playback = self.playback
        self.spoken.append(SimpleNamespace(text=text, voice_id=voice_id, rate=rate, pitch=pitch))
        self.monitor.check()
        return self.playback

    def stop(self):
        self.active_playback = None

    def finish(self):
        playback, self.active_playback = self.active_playback, None
        self._emit(self.on_end, playback)

    def crash(self, exc=RuntimeError("driver gone")):
        playback, self.active_playback = self.active_playback, None
        self._emit(self.on_error, playback, exc)


class FakeBackend:
    def __init__(self):
        self.replies = []
        self.reply_calls = []
        self.title_calls = []
        self.title = "Friction Basics"
        self.gate = None
        self.error = None

    async def reply(self, message, history, context):
        self.reply_calls.append(SimpleNamespace(message=message, history=list(history), context=context))
        if self.gate is not None:
            await self.gate.wait()
        if self.error:
            raise self.error
        if self.replies:
            return self.replies.pop(0)
        return f"Great question about {message}! What do you think causes it?"

    async def generate_title(self, message):
        self.title_calls.append(message)
        return self.title


@pytest.fixture
def monitor():
    return MediaMonitor()


@pytest.fixture
def capture(monitor):
    capture = FakeCapture(monitor)
    monitor.capture = capture
    return capture


@pytest.fixture
def synthesis(monitor):
    voices = [
        SimpleNamespace(id="voice.alex", name="Alex", gender="male", languages=["en_US"]),
        SimpleNamespace(id="voice.samantha", name="Samantha", gender="female", languages=["en_US"]),
    ]
    synthesis = FakeSynthesis(monitor, voices)
    monitor.synthesis = synthesis
    return synthesis


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def repository():
    return InMemorySessionRepository()


@pytest.fixture
def profile():
    return UserProfile(name="Asha", interests="cricket")


@pytest.fixture
def store(repository, profile):
    return VoiceSessionStore(repository, USER_ID, profile)


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def transitions():
    return []


@pytest.fixture
def controller(store, backend, capture, synthesis, notifications, transitions):
    return VoiceSessionController(
        store,
        backend,
        capture,
        synthesis,
        voice_preferences=["Samantha"],
        auto_mode=True,
        no_speech_idle_delay=0.01,
        notify=lambda message, level: notifications.append((level, message)),
        on_state_change=lambda old, new: transitions.append(new),
    )


async def settle(controller=None, rounds=5):
    for _ in range(rounds):
        await asyncio.sleep(0)
    if controller is not None:
        await controller.wait_idle_tasks()
        for _ in range(rounds):
            await asyncio.sleep(0)


@pytest.fixture
def backend_error():
    return BackendError("503 from upstream")
