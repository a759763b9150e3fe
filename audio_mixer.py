"""
Music bed mixing for the two narration parts.

The main narration gets the outro bed (and the intro bed when the asset is
present); the epilogue gets its own quieter-ending bed. Mixing never raises:
a missing asset or a mixing error returns the narration unmixed together with
the degradation that occurred.
"""

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pydub import AudioSegment
from pydub.utils import ratio_to_db

from errors import MixFailure

SCRIPT_DIR = Path(__file__).parent
AUDIO_DIR = SCRIPT_DIR / "audio"

INTRO_MUSIC = AUDIO_DIR / "briefcast_intro.mp3"
OUTRO_MUSIC = AUDIO_DIR / "briefcast_outro.mp3"
EPILOGUE_MUSIC = AUDIO_DIR / "briefcast_epilogue.mp3"

# Bed volumes are linear amplitude ratios against the narration
MAIN_BED_VOLUME = 0.14
EPILOGUE_BED_VOLUME = 0.18
EPILOGUE_TAIL_SECONDS = 2.0
INTRO_LEAD_IN_SECONDS = 4.0
TAIL_FADE_MS = 1000

TARGET_SPEECH_DBFS = -20.0


class DegradedTo(enum.Enum):
    BED_MISSING = "bed_missing"
    MIX_FAILED = "mix_failed"
    EPILOGUE_DROPPED = "epilogue_dropped"

    @property
    def level(self):
        return {"bed_missing": 1, "mix_failed": 2, "epilogue_dropped": 3}[self.value]


@dataclass
class StageOutcome:
    """One step of the degradation chain: what was produced and what was given up."""
    stage: str
    artifact: Optional[AudioSegment] = None
    degraded_to: Optional[DegradedTo] = None
    detail: Optional[str] = None

    @property
    def degraded(self):
        return self.degraded_to is not None

    def to_meta(self):
        return {
            'stage': self.stage,
            'degraded_to': self.degraded_to.value,
            'level': self.degraded_to.level,
            'detail': self.detail,
        }


@dataclass(frozen=True)
class MixProfile:
    name: str
    bed_volume: float
    tail_seconds: float = 0.0


MAIN_PROFILE = MixProfile("main", MAIN_BED_VOLUME)
EPILOGUE_PROFILE = MixProfile("epilogue", EPILOGUE_BED_VOLUME, EPILOGUE_TAIL_SECONDS)


def normalize_segment(audio_segment, target_dbfs):
    """Normalize audio segment to target dBFS level (silence is left alone)."""
    if audio_segment.dBFS == float('-inf'):
        return audio_segment
    change_in_dbfs = target_dbfs - audio_segment.dBFS
    return audio_segment.apply_gain(change_in_dbfs)


def load_music_bed(path):
    """Decode a music bed, or None when the asset is not there."""
    path = Path(path) if path else None
    if path is None or not path.exists():
        return None
    return AudioSegment.from_file(str(path), format=path.suffix.lstrip('.') or None)


def _at_volume(bed, volume):
    return bed.apply_gain(ratio_to_db(volume))


def _mix_main(narration, bed, profile, intro_bed=None):
    lead_in_ms = int(INTRO_LEAD_IN_SECONDS * 1000) if intro_bed is not None else 0
    narration_end = lead_in_ms + len(narration)
    total = narration_end
    if bed is not None:
        # Outro bed midpoint lands on the last word
        bed_start = max(0, narration_end - len(bed) // 2)
        total = max(narration_end, bed_start + len(bed))

    mixed = AudioSegment.silent(duration=total, frame_rate=narration.frame_rate)
    if intro_bed is not None:
        mixed = mixed.overlay(_at_volume(intro_bed, profile.bed_volume), position=0)
    if bed is not None:
        mixed = mixed.overlay(_at_volume(bed, profile.bed_volume), position=bed_start)
    return mixed.overlay(normalize_segment(narration, TARGET_SPEECH_DBFS), position=lead_in_ms)


def _mix_epilogue(narration, bed, profile):
    total = len(narration) + int(profile.tail_seconds * 1000)
    bed = _at_volume(bed[:total], profile.bed_volume)
    bed = bed.fade_out(min(TAIL_FADE_MS, len(bed)))

    mixed = AudioSegment.silent(duration=total, frame_rate=narration.frame_rate)
    mixed = mixed.overlay(bed, position=0)
    return mixed.overlay(normalize_segment(narration, TARGET_SPEECH_DBFS), position=0)


def mix(narration, bed, profile, intro_bed=None):
    """Mix `narration` over `bed` according to `profile`; returns a StageOutcome."""
    stage = f"mix_{profile.name}"
    if bed is None and intro_bed is None:
        print(f"  ⚠️  No music bed for {profile.name}, using unmixed narration")
        return StageOutcome(stage, narration, DegradedTo.BED_MISSING, "music bed asset missing")
    if bed is None:
        print(f"  ⚠️  No outro bed for {profile.name}, mixing the intro bed only")

    try:
        if profile.tail_seconds:
            mixed = _mix_epilogue(narration, bed, profile)
        else:
            mixed = _mix_main(narration, bed, profile, intro_bed)
    except Exception as e:
        failure = MixFailure(profile.name, f"Music mixing failed for {profile.name}: {e}")
        print(f"  ⚠️  {failure}, using unmixed narration")
        return StageOutcome(stage, narration, DegradedTo.MIX_FAILED, str(failure))

    print(f"  🎵 Mixed {profile.name} bed ({len(mixed) / 1000:.1f}s)")
    return StageOutcome(stage, mixed)


def _load_or_fail(path, profile):
    try:
        return load_music_bed(path), None
    except Exception as e:
        failure = MixFailure(profile.name, f"Could not decode music bed {path}: {e}")
        print(f"  ⚠️  {failure}, using unmixed narration")
        return None, failure


def mix_main(narration, outro_path=OUTRO_MUSIC, intro_path=INTRO_MUSIC):
    """Main narration over the outro bed, with the intro bed leading in when available.

    Either bed alone is enough; only when both assets are missing is the
    narration left unmixed.
    """
    bed, failure = _load_or_fail(outro_path, MAIN_PROFILE)
    if failure:
        return StageOutcome("mix_main", narration, DegradedTo.MIX_FAILED, str(failure))
    intro_bed, _ = _load_or_fail(intro_path, MAIN_PROFILE)
    return mix(narration, bed, MAIN_PROFILE, intro_bed=intro_bed)


def mix_epilogue(narration, bed_path=EPILOGUE_MUSIC):
    bed, failure = _load_or_fail(bed_path, EPILOGUE_PROFILE)
    if failure:
        return StageOutcome("mix_epilogue", narration, DegradedTo.MIX_FAILED, str(failure))
    return mix(narration, bed, EPILOGUE_PROFILE)
