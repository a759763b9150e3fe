#!/usr/bin/env python3
"""
Episode Orchestrator - drives one signal-to-episode generation run.

Stages, strictly in order:

  1. accept      per-user gate + in-flight/quota check (one DB transaction)
  2. select      signals reserved and the Episode row created (same transaction)
  3. synthesize  script from Claude; episode -> SYNTHESIZING            (fatal)
  4. render main                                                         (fatal)
  5. render epilogue                                   (dropped on failure)
  6. mix main                        (one retry, then unmixed on failure)
  7. mix epilogue                    (one retry, then unmixed on failure)
  8. concatenate main + 1.5s gap + epilogue
  9. persist audio, mark signals USED, episode -> READY                  (fatal)
 10. notify (fire-and-forget)

A fatal failure moves the episode to FAILED, hands every reserved signal back
in the status it had before the run and re-raises one typed error.
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field

from sqlalchemy import func, select, update

from api_utils import api_retry, run_with_timeout
from audio_mixer import DegradedTo, StageOutcome, mix_epilogue, mix_main
from audio_storage import episode_object_key, get_audio_store
from concatenator import EPILOGUE_GAP_SECONDS, concatenate, encode, estimate_duration, probe_duration
from config_loader import get_base_episode_limit, get_voice, load_briefcast_config
from content_synthesizer import ContentSynthesizer, SynthesisContext, sanitize_for_tts
from db import create_session_factory, session_scope
from errors import (BriefcastError, ConcurrencyConflict, LimitExceeded, PersistFailure, RenderFailure,
                    SelectionEmpty, StageTimeout)
from models import IN_FLIGHT_STATUSES, Episode, EpisodeStatus, Segment, Signal, SignalStatus, User, utcnow
from notifier import get_notifier
from pricing import calculate_generation_costs
from rate_gate import InProcessGate
from signal_selector import as_utc, build_topic_profile, period_bounds, select_signals
from speech_renderer import SpeechRenderer, chunk_script

RUN_CEILING_SECONDS = 300
STAGE_CEILINGS = {
    'synthesis': 180,
    'render_main': 150,
    'render_epilogue': 45,
    'mix_main': 30,
    'mix_epilogue': 15,
    'upload': 60,
}
PRIOR_EPISODES_FOR_CONTEXT = 3
MIX_ATTEMPTS = 2


def user_episode_limit(user):
    """Quota from the user's type plus granted bonus episodes; None means unlimited."""
    base = get_base_episode_limit(user.user_type)
    if base is None:
        return None
    return base + (user.episode_bonus_granted or 0)


@dataclass
class _Run:
    episode_id: str
    user_id: str
    deadline: float
    signals: list
    context: SynthesisContext
    voice_key: str
    recipient: str = None
    manual: bool = False
    timings: dict = field(default_factory=dict)
    outcomes: list = field(default_factory=list)
    usage: dict = field(default_factory=dict)
    tts_characters: int = 0
    tts_chunks: int = 0


class EpisodeOrchestrator:

    def __init__(self, session_factory, synthesizer=None, renderer=None, audio_store=None, gate=None,
                 notifier=None, main_mixer=mix_main, epilogue_mixer=mix_epilogue,
                 run_ceiling=RUN_CEILING_SECONDS, stage_ceilings=None, audio_config=None, clock=time.monotonic):
        self.session_factory = session_factory
        self.synthesizer = synthesizer or ContentSynthesizer()
        self.renderer = renderer or SpeechRenderer()
        self.audio_store = audio_store or get_audio_store()
        self.gate = gate or InProcessGate()
        self.notifier = notifier
        self.main_mixer = main_mixer
        self.epilogue_mixer = epilogue_mixer
        self.run_ceiling = run_ceiling
        self.audio_config = dict(audio_config or load_briefcast_config()['audio'])
        self.stage_ceilings = dict(STAGE_CEILINGS if stage_ceilings is None else stage_ceilings)
        self._clock = clock
        self._locks_guard = threading.Lock()
        # user_id -> [lock, holders]; entries are dropped once nobody holds or waits on them
        self._user_locks = {}

    @contextmanager
    def _user_lock(self, user_id):
        with self._locks_guard:
            entry = self._user_locks.setdefault(user_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._user_locks[user_id]

    # ──────────────────────────────────────────────
    # Public entry point
    # ──────────────────────────────────────────────

    def generate_episode(self, user_id, signal_ids=None, since=None, manual=False, episode_limit=None,
                         budget_seconds=None):
        """Run the full pipeline for `user_id` and return the READY episode's id.

        `budget_seconds` shortens the run ceiling (the batch passes what is
        left of its own ceiling).
        """
        budget = self.run_ceiling if budget_seconds is None else min(self.run_ceiling, budget_seconds)
        deadline = self._clock() + budget
        gate_key = f"generate:{user_id}"

        print(f"🎙️ Episode run for user {user_id} ({'manual' if manual else 'scheduled'})")
        with self._user_lock(user_id):
            decision = self.gate.check(gate_key, 1, int(self.run_ceiling * 1000))
            if not decision.allowed:
                print(f"  ⏳ Generation already running for {user_id}, retry in {decision.retry_after_ms}ms")
                raise ConcurrencyConflict(user_id, decision.retry_after_ms)
            try:
                run = self._accept(user_id, signal_ids, since, manual, episode_limit, deadline)
            except Exception:
                self.gate.release(gate_key)
                raise

        try:
            return self._execute(run)
        finally:
            self.gate.release(gate_key)

    # ──────────────────────────────────────────────
    # Accept + select + reserve (one transaction)
    # ──────────────────────────────────────────────

    def _accept(self, user_id, signal_ids, since, manual, episode_limit, deadline):
        with session_scope(self.session_factory) as session:
            # Row lock serializes accepts for one user across processes (no-op on SQLite)
            user = session.scalars(select(User).where(User.id == user_id).with_for_update()).first()
            if user is None:
                raise SelectionEmpty(user_id)

            in_flight = session.scalar(
                select(func.count()).select_from(Episode).where(
                    Episode.user_id == user_id, Episode.status.in_(IN_FLIGHT_STATUSES))
            )
            if in_flight:
                print(f"  ⏳ User {user_id} already has an episode in flight")
                raise ConcurrencyConflict(user_id, int(self.run_ceiling * 1000))

            limit = user_episode_limit(user) if episode_limit is None else episode_limit
            if limit is not None:
                ready = session.scalar(
                    select(func.count()).select_from(Episode).where(
                        Episode.user_id == user_id, Episode.status == EpisodeStatus.READY)
                )
                if ready + in_flight >= limit:
                    print(f"  🚫 User {user_id} at episode limit ({ready}/{limit})")
                    raise LimitExceeded(user_id, limit, ready + in_flight)

            signals = select_signals(session, user_id, since=since, signal_ids=signal_ids)
            period_start, period_end = period_bounds(signals)
            preferences = user.preferences or {}
            voice_key, _ = get_voice(preferences.get('voice'))

            episode = Episode(
                user_id=user_id,
                status=EpisodeStatus.GENERATING,
                script='',
                signal_count=len(signals),
                period_start=period_start,
                period_end=period_end,
                voice_key=voice_key,
            )
            session.add(episode)
            session.flush()

            selected_ids = [s.id for s in signals]
            reserved = session.execute(
                update(Signal)
                .where(Signal.id.in_(selected_ids), Signal.episode_id.is_(None))
                .values(episode_id=episode.id, claimed_from_status=Signal.status)
                .execution_options(synchronize_session=False)
            ).rowcount
            if reserved != len(selected_ids):
                print(f"  ⏳ {len(selected_ids) - reserved} signals were claimed by another run for {user_id}")
                raise ConcurrencyConflict(user_id, int(self.run_ceiling * 1000))

            current_topics = [topic for s in signals for topic in (s.topics or [])]
            topic_profile = build_topic_profile(session, user_id, current_topics)
            if topic_profile:
                print(f"  🧭 Topic profile: {len(topic_profile['familiar'])} familiar, "
                      f"{len(topic_profile['growing'])} growing, {len(topic_profile['new'])} new")

            context = SynthesisContext(
                timezone=preferences.get('timezone'),
                user_name=user.name,
                name_pronunciation=preferences.get('name_pronunciation'),
                episode_length=preferences.get('episode_length'),
                briefing_style=preferences.get('briefing_style') or 'standard',
                manual=manual,
                prior_episodes=self._prior_episodes(session, user_id),
                topic_profile=topic_profile,
                research_depth=preferences.get('research_depth') or 'auto',
            )
            print(f"  📥 Reserved {len(signals)} signals for episode {episode.id}")
            return _Run(
                episode_id=episode.id,
                user_id=user_id,
                deadline=deadline,
                signals=list(signals),
                context=context,
                voice_key=voice_key,
                recipient=user.recipient,
                manual=manual,
            )

    def _prior_episodes(self, session, user_id):
        episodes = session.scalars(
            select(Episode).where(Episode.user_id == user_id, Episode.status == EpisodeStatus.READY)
            .order_by(Episode.generated_at.desc()).limit(PRIOR_EPISODES_FOR_CONTEXT)
        ).all()
        return [{
            'date': as_utc(e.generated_at).strftime('%Y-%m-%d') if e.generated_at else '?',
            'title': e.title or '',
            'topics': list(e.topics_covered or []),
        } for e in episodes]

    # ──────────────────────────────────────────────
    # Stages
    # ──────────────────────────────────────────────

    def _stage(self, run, name, fn):
        """Run one stage under min(stage ceiling, remaining run budget)."""
        remaining = run.deadline - self._clock()
        ceiling = self.stage_ceilings.get(name)
        seconds = remaining if ceiling is None else min(ceiling, remaining)
        start = self._clock()
        try:
            return run_with_timeout(fn, seconds, name)
        finally:
            run.timings[name] = int((self._clock() - start) * 1000)

    def _execute(self, run):
        try:
            return self._run_stages(run)
        except BriefcastError as e:
            self._fail(run, e)
            raise
        except Exception as e:
            error = BriefcastError(f"Unexpected error: {e}")
            self._fail(run, error)
            raise error from e

    def _run_stages(self, run):
        synthesis = self._stage(run, 'synthesis', lambda: self.synthesizer.synthesize(run.signals, run.context))
        run.usage = dict(synthesis.usage or {})
        self._store_script(run, synthesis)

        main_text = sanitize_for_tts(synthesis.main_script)
        main_audio = self._stage(run, 'render_main',
                                 lambda: self.renderer.render(main_text, run.voice_key, 'main'))
        self._count_tts(run, main_text)

        epilogue_audio = None
        epilogue_text = sanitize_for_tts(synthesis.epilogue_script or '')
        try:
            epilogue_audio = self._stage(run, 'render_epilogue',
                                         lambda: self.renderer.render(epilogue_text, run.voice_key, 'epilogue'))
            self._count_tts(run, epilogue_text)
        except (RenderFailure, StageTimeout) as e:
            print(f"  ⚠️  Epilogue dropped: {e}")
            run.outcomes.append(StageOutcome('render_epilogue', None, DegradedTo.EPILOGUE_DROPPED, str(e)))

        main_mixed = self._mix(run, 'mix_main', self.main_mixer, main_audio)
        epilogue_mixed = None
        if epilogue_audio is not None:
            epilogue_mixed = self._mix(run, 'mix_epilogue', self.epilogue_mixer, epilogue_audio)

        final_audio, duration = concatenate(main_mixed, epilogue_mixed, EPILOGUE_GAP_SECONDS)

        audio_url, duration = self._stage(run, 'upload', lambda: self._upload(run, final_audio, duration))
        self._mark_ready(run, synthesis, audio_url, duration, epilogue_mixed is not None)

        print(f"✅ Episode {run.episode_id} READY: \"{synthesis.title}\" ({duration / 60:.1f} min)")
        self._notify(run, synthesis.title, duration)
        return run.episode_id

    def _count_tts(self, run, text):
        run.tts_characters += len(text)
        run.tts_chunks += len(chunk_script(text, getattr(self.renderer, 'max_chars', 4000)))

    def _mix(self, run, name, mixer, narration):
        """Mix one part, retrying a failed mix before settling for unmixed narration."""
        for attempt in range(1, MIX_ATTEMPTS + 1):
            try:
                outcome = self._stage(run, name, lambda: mixer(narration))
            except StageTimeout as e:
                print(f"  ⚠️  {e}, using unmixed narration")
                outcome = StageOutcome(name, narration, DegradedTo.MIX_FAILED, str(e))
                break
            if outcome.degraded_to != DegradedTo.MIX_FAILED or attempt == MIX_ATTEMPTS:
                break
            print(f"  🔄 Retrying {name} (attempt {attempt + 1}/{MIX_ATTEMPTS})...")
        if outcome.degraded:
            run.outcomes.append(outcome)
        return outcome.artifact

    def _store_script(self, run, synthesis):
        with session_scope(self.session_factory) as session:
            episode = session.get(Episode, run.episode_id)
            episode.title = synthesis.title
            episode.summary = synthesis.summary
            episode.script = synthesis.full_script
            episode.topics_covered = list(synthesis.topics)
            for order, segment in enumerate(synthesis.segments):
                episode.segments.append(Segment(
                    order=order,
                    topic=segment.topic,
                    content=segment.content,
                    sources=[dict(s) for s in segment.sources],
                ))
            episode.status = EpisodeStatus.SYNTHESIZING
        print(f"  📝 Script stored ({len(synthesis.segments)} segments), episode -> SYNTHESIZING")

    def _upload(self, run, audio, assembled_duration):
        audio_config = self.audio_config
        fmt = audio_config['format']
        try:
            data = encode(audio, fmt, audio_config['bitrate'])
            key = episode_object_key(run.user_id, run.episode_id, fmt)
            url = api_retry(lambda: self.audio_store.save(key, data, audio_config['content_type']),
                            label="Audio upload")
        except Exception as e:
            raise PersistFailure(f"Audio upload failed: {e}") from e

        try:
            duration = probe_duration(data, fmt)
        except Exception as e:
            print(f"  ⚠️  Could not probe encoded duration ({e}), using assembled length")
            duration = assembled_duration or estimate_duration(run.tts_characters)
        return url, duration

    def _generation_meta(self, run, synthesis_model, epilogue_included):
        input_tokens = run.usage.get('input_tokens', 0)
        output_tokens = run.usage.get('output_tokens', 0)
        web_searches = run.usage.get('web_searches', 0)
        return {
            'model': synthesis_model,
            'tts_model': getattr(self.renderer, 'model', None),
            'manual': run.manual,
            'briefing_style': run.context.briefing_style,
            'research_depth': run.context.research_depth,
            'input_tokens': input_tokens,
            'output_tokens': output_tokens,
            'web_searches': web_searches,
            'tts_characters': run.tts_characters,
            'tts_chunks': run.tts_chunks,
            'timings_ms': dict(run.timings),
            'epilogue_included': epilogue_included,
            'degradations': [o.to_meta() for o in run.outcomes],
            'costs': calculate_generation_costs(input_tokens, output_tokens, web_searches, run.tts_characters),
        }

    def _mark_ready(self, run, synthesis, audio_url, duration, epilogue_included):
        try:
            with session_scope(self.session_factory) as session:
                episode = session.get(Episode, run.episode_id)
                if episode is None or episode.status != EpisodeStatus.SYNTHESIZING:
                    raise PersistFailure(f"Episode {run.episode_id} is no longer in SYNTHESIZING")
                reserved = session.scalars(select(Signal).where(Signal.episode_id == run.episode_id)).all()
                for signal in reserved:
                    signal.status = SignalStatus.USED
                    signal.claimed_from_status = None
                episode.audio_url = audio_url
                episode.audio_duration = duration
                episode.voice_key = run.voice_key
                episode.generated_at = utcnow()
                episode.generation_meta = self._generation_meta(
                    run, getattr(self.synthesizer, 'model', None), epilogue_included)
                episode.status = EpisodeStatus.READY
        except PersistFailure:
            raise
        except Exception as e:
            raise PersistFailure(f"Could not persist episode {run.episode_id}: {e}") from e

    def _notify(self, run, title, duration):
        if self.notifier is None:
            return
        try:
            self.notifier.dispatch(run.episode_id, title, len(run.signals), duration, run.recipient)
        except Exception as e:
            print(f"  ⚠️  Could not queue notification: {e}")

    # ──────────────────────────────────────────────
    # Failure
    # ──────────────────────────────────────────────

    def _fail(self, run, error):
        print(f"❌ Episode {run.episode_id} FAILED ({error.kind}): {error}")
        try:
            with session_scope(self.session_factory) as session:
                episode = session.get(Episode, run.episode_id)
                if episode is not None and episode.status in IN_FLIGHT_STATUSES:
                    episode.status = EpisodeStatus.FAILED
                    episode.error = f"{error.kind}: {error}"
                    meta = dict(episode.generation_meta or {})
                    meta.update({
                        'timings_ms': dict(run.timings),
                        'degradations': [o.to_meta() for o in run.outcomes],
                        'failed_stage': getattr(error, 'stage', None) or error.kind,
                    })
                    episode.generation_meta = meta
                reserved = session.scalars(select(Signal).where(Signal.episode_id == run.episode_id)).all()
                for signal in reserved:
                    signal.status = signal.claimed_from_status or signal.status
                    signal.episode_id = None
                    signal.claimed_from_status = None
            print(f"  ↩️  Released {len(reserved)} signals")
        except Exception as e:
            print(f"  ❌ Could not record failure for episode {run.episode_id}: {e}")


def get_default_orchestrator():
    """Get or create a cached orchestrator wired to the environment's services."""
    if not hasattr(get_default_orchestrator, '_orchestrator'):
        get_default_orchestrator._orchestrator = EpisodeOrchestrator(
            create_session_factory(),
            notifier=get_notifier(),
        )
    return get_default_orchestrator._orchestrator


def generate_episode(user_id, signal_ids=None, since=None, manual=False, episode_limit=None):
    """Generate one episode with the default orchestrator; returns the episode id."""
    return get_default_orchestrator().generate_episode(
        user_id, signal_ids=signal_ids, since=since, manual=manual, episode_limit=episode_limit)
