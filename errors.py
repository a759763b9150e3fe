"""Typed failures raised by the episode pipeline."""

from typing import Iterable, Optional


class BriefcastError(RuntimeError):
    """Base class for every pipeline failure surfaced to callers."""

    kind = "unknown"


class SelectionEmpty(BriefcastError):
    """No eligible signals for the requested run. Callers treat this as a skip."""

    kind = "selection_empty"

    def __init__(self, user_id: str):
        super().__init__(f"No eligible signals for user {user_id}")
        self.user_id = user_id


class SelectionInvalid(BriefcastError):
    kind = "selection_invalid"

    def __init__(self, user_id: str, signal_ids: Iterable[str]):
        self.user_id = user_id
        self.signal_ids = sorted(signal_ids)
        super().__init__(
            f"Signals not eligible for user {user_id}: {', '.join(self.signal_ids)}"
        )


class LimitExceeded(BriefcastError):
    kind = "episode_limit"

    def __init__(self, user_id: str, limit: int, used: int):
        super().__init__(f"User {user_id} reached the {limit}-episode limit ({used} used)")
        self.user_id = user_id
        self.limit = limit
        self.used = used


class ConcurrencyConflict(BriefcastError):
    kind = "concurrency_conflict"

    def __init__(self, user_id: str, retry_after_ms: int):
        super().__init__(
            f"A generation is already running for user {user_id}; "
            f"retry in {max(1, round(retry_after_ms / 1000))}s"
        )
        self.user_id = user_id
        self.retry_after_ms = retry_after_ms


class SynthesisFailure(BriefcastError):
    kind = "synthesis_failed"


class RenderFailure(BriefcastError):
    kind = "render_failed"

    def __init__(self, part: str, message: Optional[str] = None):
        super().__init__(message or f"Speech rendering failed for {part}")
        self.part = part


class MixFailure(BriefcastError):
    kind = "mix_failed"

    def __init__(self, part: str, message: Optional[str] = None):
        super().__init__(message or f"Music mixing failed for {part}")
        self.part = part


class PersistFailure(BriefcastError):
    kind = "persist_failed"


class StageTimeout(BriefcastError):
    kind = "timeout"

    def __init__(self, stage: str, seconds: float):
        super().__init__(f"Stage '{stage}' exceeded its {seconds:g}s ceiling")
        self.stage = stage
        self.seconds = seconds
