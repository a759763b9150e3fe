"""
Text-to-speech rendering with OpenAI TTS.

Long scripts are split under the provider's input limit, rendered chunk by
chunk and joined back into one AudioSegment. Nothing is written to disk.
"""

import os
import re
from io import BytesIO

from pydub import AudioSegment

from api_utils import api_retry, get_openai_client
from config_loader import get_voice, load_briefcast_config
from errors import RenderFailure

TTS_MODEL = os.getenv("OPENAI_TTS_MODEL", "tts-1")


def chunk_script(text, max_chars=4000):
    """Split text into chunks of at most max_chars.

    Paragraph boundaries are preferred, then sentence boundaries; a single
    sentence longer than the limit is hard-split.
    """
    text = text.strip()
    if not text:
        return []
    if len(text) <= max_chars:
        return [text]

    chunks = []
    current = ""

    def _flush():
        nonlocal current
        if current.strip():
            chunks.append(current.strip())
        current = ""

    for paragraph in re.split(r'\n\s*\n', text):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        candidate = f"{current}\n\n{paragraph}" if current else paragraph
        if len(candidate) <= max_chars:
            current = candidate
            continue

        _flush()
        if len(paragraph) <= max_chars:
            current = paragraph
            continue

        for sentence in re.split(r'(?<=[.!?])\s+', paragraph):
            candidate = f"{current} {sentence}" if current else sentence
            if len(candidate) <= max_chars:
                current = candidate
                continue
            _flush()
            while len(sentence) > max_chars:
                chunks.append(sentence[:max_chars])
                sentence = sentence[max_chars:]
            current = sentence
    _flush()
    return chunks


class SpeechRenderer:
    """Renders one script part (main or epilogue) to an AudioSegment."""

    def __init__(self, client=None, model=None, response_format=None, max_chars=None):
        config = load_briefcast_config()
        self._client = client
        self.model = model or TTS_MODEL
        self.response_format = response_format or config["audio"]["format"]
        self.max_chars = max_chars or config["tts_chunk_chars"]

    @property
    def client(self):
        if self._client is None:
            self._client = get_openai_client()
        return self._client

    def _render_chunk(self, text, voice):
        response = api_retry(lambda: self.client.audio.speech.create(
            model=self.model,
            voice=voice,
            input=text,
            response_format=self.response_format,
            speed=1.0
        ), label="OpenAI TTS")
        return AudioSegment.from_file(BytesIO(response.content), format=self.response_format)

    def render(self, text, voice_id=None, part="main"):
        """Render `text` with the voice behind `voice_id`; raises RenderFailure(part)."""
        chunks = chunk_script(text or "", self.max_chars)
        if not chunks:
            raise RenderFailure(part, f"Nothing to render for {part}: empty script")
        if self.client is None:
            raise RenderFailure(part, "OPENAI_API_KEY not found in environment")

        voice_key, voice = get_voice(voice_id)
        print(f"  🎤 Rendering {part} ({len(text)} chars, {len(chunks)} chunk(s), voice {voice_key}/{voice['voice']})")

        combined = AudioSegment.empty()
        try:
            for i, chunk in enumerate(chunks):
                if len(chunks) > 1:
                    print(f"    🔊 Chunk {i+1}/{len(chunks)}: {len(chunk)} chars")
                combined += self._render_chunk(chunk, voice['voice'])
        except Exception as e:
            raise RenderFailure(part, f"Speech rendering failed for {part}: {e}") from e

        return combined
