"""Joins the mixed main and epilogue parts and measures the result."""

from io import BytesIO

from pydub import AudioSegment

EPILOGUE_GAP_SECONDS = 1.5

# Fallback speaking rate when the encoded audio cannot be probed
WORDS_PER_MINUTE = 150
CHARS_PER_WORD = 5


def concatenate(main, epilogue=None, gap_seconds=EPILOGUE_GAP_SECONDS):
    """Return (audio, duration_seconds) for main + silence + epilogue.

    Without an epilogue the main part is returned untouched and no gap is added.
    """
    if epilogue is None:
        return main, len(main) / 1000.0

    gap = AudioSegment.silent(duration=int(round(gap_seconds * 1000)), frame_rate=main.frame_rate)
    combined = main + gap + epilogue
    print(f"  🔗 Concatenated main ({len(main) / 1000:.1f}s) + {gap_seconds}s gap + epilogue ({len(epilogue) / 1000:.1f}s)")
    return combined, len(combined) / 1000.0


def encode(audio, fmt="mp3", bitrate="192k"):
    """Encode an AudioSegment to bytes in the delivery format."""
    buffer = BytesIO()
    options = {"format": fmt}
    if fmt != "wav":
        options["bitrate"] = bitrate
    audio.export(buffer, **options)
    return buffer.getvalue()


def probe_duration(data, fmt="mp3"):
    """Duration in seconds of encoded audio bytes."""
    return len(AudioSegment.from_file(BytesIO(data), format=fmt)) / 1000.0


def estimate_duration(chars):
    """Rough spoken duration in seconds for a script of `chars` characters."""
    words = chars / CHARS_PER_WORD
    return words / WORDS_PER_MINUTE * 60
