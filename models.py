"""
Database models for the signal-to-episode pipeline.

## Entities:

- **User**: owner of signals and episodes; carries the voice/time-zone
  preferences and the user type that determines the episode quota.
- **Signal**: one captured note (link, topic or voice transcript). Created and
  enriched by the capture layer; this pipeline only reserves it for an
  in-flight episode, marks it USED when the episode is persisted, or releases
  it when the episode fails.
- **Episode**: one generation attempt. Created in GENERATING before any
  expensive work, moves to SYNTHESIZING once the script is final and to READY
  once the audio is stored. FAILED is reachable from any non-terminal state.
- **Segment**: ordered narration unit of an episode with its cited sources.

## Signal lifecycle:

    PENDING -> QUEUED -> ENRICHED -> USED
                    \\-> FAILED     \\-> SKIPPED

A reserved signal keeps its status and gets `episode_id` set, plus
`claimed_from_status` so a failed run can restore it exactly.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum, Float, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _new_id():
    return uuid.uuid4().hex


def utcnow():
    return datetime.now(timezone.utc)


class InputType(enum.Enum):
    LINK = "LINK"
    TOPIC = "TOPIC"
    VOICE = "VOICE"


class SignalStatus(enum.Enum):
    PENDING = "PENDING"
    QUEUED = "QUEUED"
    ENRICHED = "ENRICHED"
    USED = "USED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


class EpisodeStatus(enum.Enum):
    GENERATING = "GENERATING"
    SYNTHESIZING = "SYNTHESIZING"
    READY = "READY"
    FAILED = "FAILED"


# Explicit ids may name any not-yet-consumed signal; the time window only
# picks up signals that made it through capture.
SELECTABLE_STATUSES = (SignalStatus.PENDING, SignalStatus.QUEUED, SignalStatus.ENRICHED)
WINDOW_STATUSES = (SignalStatus.QUEUED, SignalStatus.ENRICHED)
IN_FLIGHT_STATUSES = (EpisodeStatus.GENERATING, EpisodeStatus.SYNTHESIZING)


class User(Base):
    __tablename__ = 'users'

    id = Column(String(32), primary_key=True, default=_new_id)
    name = Column(String(255))
    recipient = Column(String(255))
    user_type = Column(String(32), nullable=False, default='EARLY_ACCESS')
    episode_bonus_granted = Column(Integer, nullable=False, default=0)
    preferences = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    signals = relationship("Signal", back_populates="user")
    episodes = relationship("Episode", back_populates="user")


class Signal(Base):
    __tablename__ = 'signals'

    id = Column(String(32), primary_key=True, default=_new_id)
    user_id = Column(String(32), ForeignKey('users.id'), nullable=False)
    raw_content = Column(Text, nullable=False)
    input_type = Column(Enum(InputType), nullable=False, default=InputType.TOPIC)
    channel = Column(String(32), nullable=False, default='quick')
    status = Column(Enum(SignalStatus), nullable=False, default=SignalStatus.PENDING)
    topics = Column(JSON, nullable=False, default=list)
    title = Column(String(512))
    url = Column(String(2048))
    source = Column(String(255))
    fetched_content = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    episode_id = Column(String(32), ForeignKey('episodes.id'))
    claimed_from_status = Column(Enum(SignalStatus))

    user = relationship("User", back_populates="signals")
    episode = relationship("Episode", back_populates="signals")

    __table_args__ = (
        Index('idx_signals_user_status_created', 'user_id', 'status', 'created_at'),
        Index('idx_signals_episode', 'episode_id'),
    )

    def __repr__(self):
        return f"<Signal {self.id} {self.input_type.value if self.input_type else '?'} {self.status.value if self.status else '?'}>"


class Episode(Base):
    __tablename__ = 'episodes'

    id = Column(String(32), primary_key=True, default=_new_id)
    user_id = Column(String(32), ForeignKey('users.id'), nullable=False)
    status = Column(Enum(EpisodeStatus), nullable=False, default=EpisodeStatus.GENERATING)
    title = Column(String(512))
    summary = Column(Text)
    script = Column(Text, nullable=False, default='')
    audio_url = Column(String(2048))
    audio_duration = Column(Float)
    signal_count = Column(Integer, nullable=False, default=0)
    topics_covered = Column(JSON, nullable=False, default=list)
    period_start = Column(DateTime(timezone=True))
    period_end = Column(DateTime(timezone=True))
    generated_at = Column(DateTime(timezone=True))
    play_count = Column(Integer, nullable=False, default=0)
    voice_key = Column(String(64))
    error = Column(Text)
    generation_meta = Column(JSON)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    user = relationship("User", back_populates="episodes")
    signals = relationship("Signal", back_populates="episode")
    segments = relationship("Segment", back_populates="episode", order_by="Segment.order",
                            cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_episodes_user_status', 'user_id', 'status'),
    )

    def __repr__(self):
        return f"<Episode {self.id} {self.status.value if self.status else '?'} '{self.title}'>"


class Segment(Base):
    __tablename__ = 'segments'

    id = Column(String(32), primary_key=True, default=_new_id)
    episode_id = Column(String(32), ForeignKey('episodes.id'), nullable=False)
    order = Column(Integer, nullable=False)
    topic = Column(String(512))
    content = Column(Text, nullable=False)
    sources = Column(JSON, nullable=False, default=list)

    episode = relationship("Episode", back_populates="segments")
