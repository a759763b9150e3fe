"""Shared fixtures: in-memory database, synthetic audio and fake API clients.

Audio is generated with pydub's Sine generator and exchanged as WAV so no
ffmpeg binary is needed to run the suite.
"""

import json
from datetime import datetime, timedelta, timezone
from functools import partial
from io import BytesIO
from types import SimpleNamespace

import pytest
from pydub.generators import Sine

from audio_mixer import mix_epilogue, mix_main
from audio_storage import LocalAudioStore
from content_synthesizer import ContentSynthesizer
from db import create_db_engine, create_session_factory, session_scope
from episode_orchestrator import EpisodeOrchestrator
from models import InputType, Signal, SignalStatus, User
from rate_gate import InProcessGate
from source_validator import SourceValidator
from speech_renderer import SpeechRenderer

WAV_AUDIO_CONFIG = {'format': 'wav', 'bitrate': None, 'content_type': 'audio/wav'}

EPISODE_JSON = {
    "title": "Chips, Rivers and Rates",
    "intro": "Welcome back. Three threads this week.",
    "segments": [
        {
            "topic": "Chip export rules",
            "content": "Export controls on advanced chips tightened again this week.\n\nThe new rules reach further down the supply chain.",
            "sources": [
                {"name": "Reuters", "url": "https://www.reuters.com/technology/chips", "attribution": "Reported the rule change"},
                {"name": "The Verge", "url": "https://www.theverge.com/chips", "attribution": "Covered industry reaction"},
            ],
        },
        {
            "topic": "River restoration",
            "content": "Dam removals are turning into a restoration playbook — and the data is finally in.",
            "sources": [
                {"name": "Nature", "url": "https://www.nature.com/articles/rivers", "attribution": "Published the survey"},
                {"name": "Reuters", "url": "https://www.reuters.com/world/rivers", "attribution": "Followed the policy angle"},
            ],
        },
    ],
    "summary": "Chip controls widen; river restoration gets data.",
    "connections": "Both stories are about infrastructure decisions with decade-long tails.",
    "outro": "That's the briefing.",
}


def make_tone(duration_ms, freq=440):
    return Sine(freq).to_audio_segment(duration=duration_ms).apply_gain(-6)


def wav_bytes(segment):
    buffer = BytesIO()
    segment.export(buffer, format="wav")
    return buffer.getvalue()


def text_response(text, stop_reason="end_turn", input_tokens=1200, output_tokens=800, searches=0):
    """Anthropic-shaped response carrying a single text block."""
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text, citations=None)],
        stop_reason=stop_reason,
        usage=SimpleNamespace(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            server_tool_use=SimpleNamespace(web_search_requests=searches),
        ),
    )


class FakeAnthropic:
    """Returns queued responses (or raises queued exceptions) in order; records every call."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.messages = SimpleNamespace(create=self._create)

    def _create(self, **kwargs):
        self.calls.append(kwargs)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class FakeOpenAI:
    """TTS stub: a WAV tone whose length grows with the input text."""

    def __init__(self, fail_on=None, ms_per_char=2):
        self.fail_on = fail_on
        self.ms_per_char = ms_per_char
        self.calls = []
        self.audio = SimpleNamespace(speech=SimpleNamespace(create=self._create))

    def _create(self, model, voice, input, response_format="mp3", speed=1.0):
        self.calls.append({'model': model, 'voice': voice, 'input': input, 'response_format': response_format})
        if self.fail_on and self.fail_on in input:
            raise RuntimeError("TTS provider rejected the input")
        duration = max(200, len(input) * self.ms_per_char)
        return SimpleNamespace(content=wav_bytes(make_tone(duration)))


@pytest.fixture
def tone():
    return make_tone


@pytest.fixture
def session_factory():
    engine = create_db_engine("sqlite://")
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def make_user(session_factory):
    def _make(user_id="user-1", user_type="EARLY_ACCESS", **kwargs):
        with session_scope(session_factory) as session:
            session.add(User(id=user_id, user_type=user_type, name=kwargs.pop('name', 'Sam'),
                             recipient=kwargs.pop('recipient', '+15550100'), **kwargs))
        return user_id
    return _make


@pytest.fixture
def make_signals(session_factory):
    def _make(user_id, count, status=SignalStatus.ENRICHED, input_type=InputType.TOPIC, age=timedelta(days=1),
              topics=()):
        now = datetime.now(timezone.utc)
        ids = []
        with session_scope(session_factory) as session:
            for i in range(count):
                signal = Signal(
                    user_id=user_id,
                    raw_content=f"Topic number {i}",
                    input_type=input_type,
                    status=status,
                    created_at=now - age + timedelta(minutes=i),
                    url=f"https://example.com/{i}" if input_type == InputType.LINK else None,
                    topics=list(topics),
                )
                session.add(signal)
                session.flush()
                ids.append(signal.id)
        return ids
    return _make


@pytest.fixture
def signal_statuses(session_factory):
    def _statuses(ids):
        with session_scope(session_factory) as session:
            return {s.id: (s.status, s.episode_id) for s in session.query(Signal).filter(Signal.id.in_(ids))}
    return _statuses


@pytest.fixture
def bed_paths(tmp_path):
    """Intro, outro and epilogue music beds written as WAV files."""
    paths = {
        'intro': tmp_path / "intro.wav",
        'outro': tmp_path / "outro.wav",
        'epilogue': tmp_path / "epilogue.wav",
    }
    make_tone(3000, 220).export(str(paths['intro']), format="wav")
    make_tone(4000, 330).export(str(paths['outro']), format="wav")
    make_tone(5000, 262).export(str(paths['epilogue']), format="wav")
    return paths


@pytest.fixture
def fake_anthropic():
    return FakeAnthropic([text_response(json.dumps(EPISODE_JSON))])


@pytest.fixture
def fake_openai():
    return FakeOpenAI()


@pytest.fixture
def trusting_validator():
    return SourceValidator(safety_check=lambda url: True, reachability_check=lambda url: True)


@pytest.fixture
def build_orchestrator(session_factory, fake_anthropic, fake_openai, trusting_validator, bed_paths, tmp_path):
    """Orchestrator wired to fakes; keyword arguments override any collaborator."""
    def _build(**overrides):
        options = {
            'synthesizer': ContentSynthesizer(client=fake_anthropic, source_validator=trusting_validator),
            'renderer': SpeechRenderer(client=fake_openai, response_format="wav"),
            'audio_store': LocalAudioStore(tmp_path / "store"),
            'gate': InProcessGate(),
            'main_mixer': partial(mix_main, outro_path=bed_paths['outro'], intro_path=None),
            'epilogue_mixer': partial(mix_epilogue, bed_path=bed_paths['epilogue']),
            'audio_config': WAV_AUDIO_CONFIG,
        }
        options.update(overrides)
        return EpisodeOrchestrator(session_factory, **options)
    return _build
