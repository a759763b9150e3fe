"""
Signal selection for one generation run.

Resolves either an explicit list of signal ids or the user's time window into
the ordered set of signals an episode will consume.
"""

from collections import Counter
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from config_loader import load_briefcast_config
from errors import SelectionEmpty, SelectionInvalid
from models import SELECTABLE_STATUSES, WINDOW_STATUSES, Episode, EpisodeStatus, Signal, SignalStatus


def as_utc(value):
    """Attach UTC to naive datetimes (SQLite drops the offset on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_default_since(now=None):
    """Start of the default look-back window (one week unless configured)."""
    now = now or datetime.now(timezone.utc)
    return now - timedelta(days=load_briefcast_config()["lookback_days"])


def _ordered(query):
    return query.order_by(Signal.created_at.asc(), Signal.id.asc())


def select_signals(session, user_id, since=None, signal_ids=None):
    """Return the signals to consume for `user_id`.

    With `signal_ids`, every id must exist, belong to the user, be in a
    selectable status and not be reserved by another episode; otherwise
    SelectionInvalid names the offenders. Without ids, the user's QUEUED and
    ENRICHED signals captured since `since` are taken. Raises SelectionEmpty
    when nothing is eligible.
    """
    if signal_ids:
        wanted = list(dict.fromkeys(signal_ids))
        found = session.scalars(_ordered(select(Signal).where(Signal.id.in_(wanted)))).all()
        by_id = {s.id: s for s in found}

        invalid = set()
        for signal_id in wanted:
            signal = by_id.get(signal_id)
            if (signal is None
                    or signal.user_id != user_id
                    or signal.status not in SELECTABLE_STATUSES
                    or signal.episode_id is not None):
                invalid.add(signal_id)
        if invalid:
            raise SelectionInvalid(user_id, invalid)
        signals = list(found)
    else:
        since = as_utc(since) if since else get_default_since()
        signals = session.scalars(_ordered(
            select(Signal).where(
                Signal.user_id == user_id,
                Signal.status.in_(WINDOW_STATUSES),
                Signal.episode_id.is_(None),
                Signal.created_at >= since,
            )
        )).all()

    if not signals:
        raise SelectionEmpty(user_id)
    return list(signals)


def period_bounds(signals):
    """Episode period derived from the consumed signals' capture timestamps."""
    stamps = [as_utc(s.created_at) for s in signals]
    return min(stamps), max(stamps)


def eligible_user_ids(session, since=None):
    """Users with at least one time-window-eligible signal, oldest capture first."""
    since = as_utc(since) if since else get_default_since()
    rows = session.execute(
        select(Signal.user_id, Signal.created_at).where(
            Signal.status.in_(WINDOW_STATUSES),
            Signal.episode_id.is_(None),
            Signal.created_at >= since,
        ).order_by(Signal.created_at.asc())
    ).all()
    return list(dict.fromkeys(row.user_id for row in rows))


# ──────────────────────────────────────────────
# Topic familiarity (depth calibration)
# ──────────────────────────────────────────────

FAMILIAR_MIN_EPISODES = 3
GROWTH_FACTOR = 2
HISTORY_SIGNAL_LIMIT = 500
HISTORY_EPISODE_LIMIT = 50


def _topic_key(topic):
    return topic.strip().lower()


def start_of_week(now):
    """Sunday 00:00 UTC of the week containing `now`."""
    day = now - timedelta(days=(now.weekday() + 1) % 7)
    return day.replace(hour=0, minute=0, second=0, microsecond=0)


def build_topic_profile(session, user_id, current_topics, now=None):
    """Classify this run's topics against the user's history.

    familiar: covered by 3+ READY episodes (top 5 by episode count)
    growing:  captured at least twice as often this week as last week (top 3)
    new:      never covered by an episode (first 5)

    Only topics among `current_topics` are reported. Returns None for users
    without history or when no topic falls in any bucket.
    """
    current = list(dict.fromkeys(_topic_key(t) for t in current_topics if t and t.strip()))
    if not current:
        return None
    current_keys = set(current)

    used_signals = session.scalars(
        select(Signal).where(Signal.user_id == user_id, Signal.status == SignalStatus.USED)
        .order_by(Signal.created_at.desc()).limit(HISTORY_SIGNAL_LIMIT)
    ).all()
    episodes = session.scalars(
        select(Episode).where(Episode.user_id == user_id, Episode.status == EpisodeStatus.READY)
        .order_by(Episode.generated_at.desc()).limit(HISTORY_EPISODE_LIMIT)
    ).all()
    if not used_signals and not episodes:
        return None

    covered = {}
    for episode in episodes:
        generated = as_utc(episode.generated_at)
        for topic in episode.topics_covered or []:
            entry = covered.setdefault(_topic_key(topic), {'episode_count': 0, 'last_episode': None})
            entry['episode_count'] += 1
            if generated and (entry['last_episode'] is None or generated > entry['last_episode']):
                entry['last_episode'] = generated

    now = as_utc(now) if now else datetime.now(timezone.utc)
    this_week_start = start_of_week(now)
    last_week_start = this_week_start - timedelta(days=7)
    signal_counts, this_week, last_week = Counter(), Counter(), Counter()
    for signal in used_signals:
        keys = [_topic_key(t) for t in signal.topics or []]
        signal_counts.update(keys)
        captured = as_utc(signal.created_at)
        if captured >= this_week_start:
            this_week.update(keys)
        elif captured >= last_week_start:
            last_week.update(keys)

    familiar = sorted(
        (key for key, entry in covered.items()
         if entry['episode_count'] >= FAMILIAR_MIN_EPISODES and key in current_keys),
        key=lambda k: covered[k]['episode_count'], reverse=True,
    )[:5]

    growing = []
    for key, count in this_week.items():
        previous = last_week[key]
        if key in current_keys and previous and count / previous >= GROWTH_FACTOR:
            growing.append({'topic': key, 'previous_week': previous, 'current_week': count,
                            'change': round(count / previous, 1)})
    growing.sort(key=lambda g: g['change'], reverse=True)

    new = [key for key in current if key not in covered]

    if not familiar and not growing and not new:
        return None
    return {
        'familiar': [{
            'topic': key,
            'episode_count': covered[key]['episode_count'],
            'signal_count': signal_counts[key],
            'last_episode': covered[key]['last_episode'].strftime('%Y-%m-%d') if covered[key]['last_episode'] else None,
        } for key in familiar],
        'growing': growing[:3],
        'new': new[:5],
    }
