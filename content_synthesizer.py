"""
Content synthesis: selected signals -> structured episode script.

The narrative itself comes from Claude (with web search); the closing epilogue
is a fixed template filled with the date and the first three cited source
names, so it never needs a generative call.
"""

import json
import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from api_utils import api_retry, get_anthropic_client
from config_loader import load_briefcast_config, load_prompts_config
from errors import SynthesisFailure
from models import InputType
from source_validator import SourceValidator

# Claude model selection (override via environment variables)
SYNTHESIS_MODEL = os.getenv("CLAUDE_SYNTHESIS_MODEL", "claude-sonnet-4-5-20250929")
SYNTHESIS_MAX_TOKENS = 12000
WEB_SEARCH_MAX_USES = 10
MAX_CONTINUATIONS = 3
FETCHED_CONTEXT_CHARS = 2000


@dataclass
class ScriptSegment:
    topic: str
    content: str
    sources: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class SynthesisContext:
    """Per-user inputs that shape the prompt and the epilogue."""
    timezone: Optional[str] = None
    user_name: Optional[str] = None
    name_pronunciation: Optional[str] = None
    episode_length: Optional[str] = None
    briefing_style: str = "standard"
    manual: bool = False
    prior_episodes: List[Dict] = field(default_factory=list)
    topic_profile: Optional[Dict] = None
    research_depth: str = "auto"
    now: Optional[datetime] = None


@dataclass
class SynthesisResult:
    title: str
    summary: str
    segments: List[ScriptSegment]
    main_script: str
    epilogue_script: str
    topics: List[str]
    usage: Dict[str, int] = field(default_factory=dict)
    citations: List[Dict[str, str]] = field(default_factory=list)
    synthesis_ms: int = 0

    @property
    def full_script(self):
        """Stored reference copy: main narration followed by the epilogue."""
        if self.epilogue_script:
            return f"{self.main_script}\n\n{self.epilogue_script}"
        return self.main_script


# ──────────────────────────────────────────────
# Deterministic epilogue
# ──────────────────────────────────────────────

def collect_source_names(segments):
    """Distinct source names across all segments, first-seen order."""
    names = []
    seen = set()
    for segment in segments:
        for source in segment.sources:
            name = (source.get('name') or '').strip()
            if name and name not in seen:
                seen.add(name)
                names.append(name)
    return names


def format_source_list(names):
    """Oxford-comma join of at most three names; empty string for none."""
    names = list(names)[:3]
    if not names:
        return ""
    if len(names) == 1:
        return names[0]
    if len(names) == 2:
        return f"{names[0]} and {names[1]}"
    return f"{', '.join(names[:-1])}, and {names[-1]}"


def resolve_timezone(tz_name=None):
    """ZoneInfo for the user's zone, falling back to the configured default."""
    default = load_briefcast_config()["default_timezone"]
    try:
        return ZoneInfo(tz_name or default)
    except (ZoneInfoNotFoundError, ValueError):
        print(f"  ⚠️  Unknown time zone '{tz_name}', using {default}")
        return ZoneInfo(default)


def format_episode_date(now=None, tz_name=None):
    """e.g. 'Monday, October 19, 2026' in the user's time zone."""
    now = now or datetime.now(timezone.utc)
    local = now.astimezone(resolve_timezone(tz_name))
    return f"{local.strftime('%A, %B')} {local.day}, {local.year}"


def build_epilogue(segments, tz_name=None, now=None):
    """Fixed-format spoken attribution appended after the main narration."""
    template = load_prompts_config()['epilogue']
    title = load_briefcast_config()['title']

    parts = [template['opening'].format(date=format_episode_date(now, tz_name), title=title)]
    source_list = format_source_list(collect_source_names(segments))
    if source_list:
        parts.append(template['sources'].format(sources=source_list))
    parts.append(template['closing'])
    return ' '.join(parts)


def build_main_script(episode_data, segments):
    """Intro, segment narration in order, connections and outro, blank-line separated."""
    parts = []
    if episode_data.get('intro'):
        parts.append(episode_data['intro'].strip())
    parts.extend(segment.content.strip() for segment in segments if segment.content.strip())
    for key in ('connections', 'outro'):
        if episode_data.get(key):
            parts.append(episode_data[key].strip())
    return '\n\n'.join(parts)


def sanitize_for_tts(script):
    """Em and en dashes get vocalized or garbled by TTS; render them as comma pauses."""
    script = re.sub(r'\s*—\s*', ', ', script)
    script = re.sub(r'\s*–\s*', ', ', script)
    return re.sub(r',\s*,', ',', script)


# ──────────────────────────────────────────────
# Prompt
# ──────────────────────────────────────────────

def build_system_prompt():
    prompts = load_prompts_config()
    return prompts['synthesis_system']['template'].format(title=load_briefcast_config()['title'])


def format_topic_profile(profile, templates):
    lines = [templates['header']]
    for entry in profile.get('familiar') or []:
        lines.append(templates['familiar'].format(**{**entry, 'last_episode': entry.get('last_episode') or '?'}))
    for entry in profile.get('growing') or []:
        lines.append(templates['growing'].format(**entry))
    for topic in profile.get('new') or []:
        lines.append(templates['new'].format(topic=topic))
    return '\n'.join(lines) + '\n\n'


def build_synthesis_prompt(signals, context=None):
    """Describe the captured signals and listener preferences for Claude."""
    context = context or SynthesisContext()
    prompts = load_prompts_config()
    title = load_briefcast_config()['title']

    link_signals = [s for s in signals if s.input_type == InputType.LINK]
    topic_signals = [s for s in signals if s.input_type in (InputType.TOPIC, InputType.VOICE)]

    period = "selected" if context.manual else "this week's"
    prompt = f"Generate {period} {title} episode. The listener captured {len(signals)} signals.\n\n"

    if context.user_name:
        prompt += f"The listener's name is {context.user_name}"
        if context.name_pronunciation:
            prompt += f" (pronounced \"{context.name_pronunciation}\")"
        prompt += ". Greet them by name once, naturally.\n\n"

    if link_signals:
        prompt += "## LINKS CAPTURED (treat as topic indicators, DO NOT summarize individual articles)\n\n"
        for signal in link_signals:
            prompt += f"### {signal.title or 'Untitled'}\n"
            prompt += f"Source: {signal.source or 'Unknown'} | URL: {signal.url or signal.raw_content}\n"
            if signal.fetched_content:
                prompt += ("Context (for your understanding only, do not reproduce): "
                           f"{signal.fetched_content[:FETCHED_CONTEXT_CHARS]}\n")
            if signal.topics:
                prompt += f"Topics: {', '.join(signal.topics)}\n"
            prompt += "\n"

    if topic_signals:
        prompt += "## TOPICS CAPTURED (research these independently and discuss)\n\n"
        for signal in topic_signals:
            label = "voice note" if signal.input_type == InputType.VOICE else "topic"
            prompt += f"- ({label}) \"{signal.raw_content.strip()}\"\n"
        prompt += "\n"

    if context.prior_episodes:
        prompt += "## RECENT EPISODES (for natural callbacks, do not repeat)\n\n"
        for episode in context.prior_episodes:
            topics = ', '.join(episode.get('topics') or [])
            prompt += f"- {episode.get('date', '?')}: \"{episode.get('title', '')}\""
            prompt += f" ({topics})\n" if topics else "\n"
        prompt += "\n"

    if context.topic_profile:
        prompt += format_topic_profile(context.topic_profile, prompts['topic_familiarity'])

    style = prompts['briefing_styles'].get(context.briefing_style) or prompts['briefing_styles']['standard']
    prompt += f"## BRIEFING STYLE\n{style}\n\n"

    depths = prompts['research_depths']
    prompt += f"## RESEARCH DEPTH\n{depths.get(context.research_depth) or depths['auto']}\n\n"

    lengths = prompts['episode_lengths']
    episode_length = lengths.get(context.episode_length) or lengths['long']
    prompt += prompts['synthesis_guidelines']['template'].format(episode_length=episode_length)
    return prompt


# ──────────────────────────────────────────────
# Response parsing
# ──────────────────────────────────────────────

def strip_cite_tags(text):
    """Remove inline <cite ...> tags added by web search, keeping their inner text."""
    return re.sub(r'</cite>', '', re.sub(r'<cite[^>]*>', '', text, flags=re.IGNORECASE), flags=re.IGNORECASE)


def extract_episode_json(raw_text):
    """Pull the episode JSON object out of Claude's text, repairing control characters once."""
    text = raw_text.strip()
    # Strip markdown code fences if present
    text = re.sub(r'^```(?:json)?\s*\n?', '', text, flags=re.IGNORECASE)
    text = re.sub(r'\n?\s*```\s*$', '', text)
    text = strip_cite_tags(text)

    match = re.search(r'\{.*\}', text, flags=re.DOTALL)
    if not match:
        raise SynthesisFailure("Could not extract JSON from synthesis response")
    json_str = match.group(0)

    try:
        return json.loads(json_str)
    except json.JSONDecodeError:
        print("  ⚠️  First JSON parse failed, attempting repair...")

    escapes = {'\n': '\\n', '\r': '\\r', '\t': '\\t'}
    repaired = re.sub(r'[\x00-\x1f]', lambda m: escapes.get(m.group(0), ''), json_str)
    try:
        return json.loads(repaired)
    except json.JSONDecodeError as e:
        print(f"  ❌ JSON parse failed after repair: {repaired[:500]}")
        raise SynthesisFailure(f"Failed to parse synthesis response as JSON: {e}") from e


def harvest_citations(content):
    """Unique URLs from web search result blocks (and text citations, when present)."""
    citations = []
    seen = set()

    def _add(url, title, cited_text=''):
        if url and url.lower() not in seen:
            seen.add(url.lower())
            citations.append({'url': url, 'title': title or '', 'cited_text': cited_text or ''})

    for block in content:
        if getattr(block, 'type', None) == 'web_search_tool_result' and isinstance(getattr(block, 'content', None), list):
            for result in block.content:
                if getattr(result, 'type', None) == 'web_search_result':
                    _add(getattr(result, 'url', None), getattr(result, 'title', ''))
        elif getattr(block, 'type', None) == 'text':
            for citation in getattr(block, 'citations', None) or []:
                if getattr(citation, 'type', None) == 'web_search_result_location':
                    _add(getattr(citation, 'url', None), getattr(citation, 'title', ''),
                         getattr(citation, 'cited_text', ''))
    return citations


def parse_synthesis_response(content, stop_reason, max_segments=None):
    """Turn Claude's content blocks into (episode_data, citations, search_count)."""
    if stop_reason == 'max_tokens':
        raise SynthesisFailure("Synthesis was truncated: response exceeded the token limit")

    text_blocks = [b for b in content if getattr(b, 'type', None) == 'text']
    if not text_blocks:
        raise SynthesisFailure("No text response from Claude")

    citations = harvest_citations(content)
    search_count = sum(1 for b in content if getattr(b, 'type', None) == 'server_tool_use')

    episode_data = extract_episode_json(''.join(b.text for b in text_blocks))
    if not isinstance(episode_data, dict) or not episode_data.get('title') \
            or not isinstance(episode_data.get('segments'), list) or not episode_data['segments']:
        raise SynthesisFailure("Synthesis response missing required fields (title, segments)")

    max_segments = max_segments or load_briefcast_config()['max_segments']
    if len(episode_data['segments']) > max_segments:
        print(f"  ⚠️  Claude returned {len(episode_data['segments'])} segments, capping to {max_segments}")
        episode_data['segments'] = episode_data['segments'][:max_segments]

    return episode_data, citations, search_count


def build_segments(episode_data, citations=()):
    """Validated ScriptSegments with malformed sources dropped and missing URLs filled from citations."""
    by_title = {c['title'].lower(): c['url'] for c in citations if c.get('title')}
    segments = []
    for raw in episode_data['segments']:
        if not isinstance(raw, dict) or not str(raw.get('content') or '').strip():
            continue
        sources = []
        for src in raw.get('sources') or []:
            if not isinstance(src, dict):
                continue
            name = src.get('name')
            if not isinstance(name, str) or not name.strip() or not isinstance(src.get('attribution'), str):
                continue
            url = (src.get('url') or '').strip()
            if not url and name.lower() in by_title:
                url = by_title[name.lower()]
            sources.append({'name': name.strip(), 'url': url, 'attribution': src['attribution']})
        segments.append(ScriptSegment(
            topic=str(raw.get('topic') or '').strip(),
            content=str(raw['content']),
            sources=sources,
        ))
    if not segments:
        raise SynthesisFailure("Synthesis response contained no usable segments")
    return segments


def _usage_value(usage, name):
    return getattr(usage, name, None) or 0


def _web_searches(usage):
    server_tool_use = getattr(usage, 'server_tool_use', None)
    return getattr(server_tool_use, 'web_search_requests', None) or 0


class ContentSynthesizer:
    """Calls Claude for the narrative and assembles the two scripts."""

    def __init__(self, client=None, model=None, source_validator=None, max_segments=None, use_web_search=True):
        self._client = client
        self.model = model or SYNTHESIS_MODEL
        self.source_validator = source_validator or SourceValidator()
        self.max_segments = max_segments
        self.use_web_search = use_web_search

    @property
    def client(self):
        if self._client is None:
            self._client = get_anthropic_client()
            if self._client is None:
                raise SynthesisFailure("ANTHROPIC_API_KEY not found in environment")
        return self._client

    def _create(self, messages, with_tools, label):
        kwargs = {
            'model': self.model,
            'max_tokens': SYNTHESIS_MAX_TOKENS,
            'system': build_system_prompt(),
            'messages': messages,
        }
        if with_tools:
            kwargs['tools'] = [{'type': 'web_search_20250305', 'name': 'web_search', 'max_uses': WEB_SEARCH_MAX_USES}]
        return api_retry(lambda: self.client.messages.create(**kwargs), max_retries=1, base_delay=3, label=label)

    def call_claude(self, prompt):
        """Returns (content_blocks, usage_dict, stop_reason)."""
        user_message = {'role': 'user', 'content': prompt}
        try:
            response = self._create([user_message], self.use_web_search, "Claude synthesis")
        except Exception as e:
            is_tool_error = getattr(e, 'status_code', None) == 400 and 'web_search' in str(e)
            if not (self.use_web_search and is_tool_error):
                raise
            print("  ⚠️  Web search tool unavailable, falling back to parametric knowledge...")
            response = self._create([user_message], False, "Claude synthesis (no web search)")
            return list(response.content), {
                'input_tokens': _usage_value(response.usage, 'input_tokens'),
                'output_tokens': _usage_value(response.usage, 'output_tokens'),
                'web_searches': 0,
            }, response.stop_reason

        content = list(response.content)
        usage = {
            'input_tokens': _usage_value(response.usage, 'input_tokens'),
            'output_tokens': _usage_value(response.usage, 'output_tokens'),
            'web_searches': _web_searches(response.usage),
        }

        continuations = 0
        while response.stop_reason == 'pause_turn' and continuations < MAX_CONTINUATIONS:
            continuations += 1
            print(f"  ⏸️  Claude paused (continuation {continuations}/{MAX_CONTINUATIONS}), resuming...")
            response = self._create(
                [user_message, {'role': 'assistant', 'content': content}],
                True, f"Claude synthesis (continuation {continuations})",
            )
            content.extend(response.content)
            usage['input_tokens'] += _usage_value(response.usage, 'input_tokens')
            usage['output_tokens'] += _usage_value(response.usage, 'output_tokens')
            usage['web_searches'] += _web_searches(response.usage)

        if response.stop_reason == 'pause_turn':
            print(f"  ⚠️  Claude still paused after {MAX_CONTINUATIONS} continuations, using partial response")
        return content, usage, response.stop_reason

    def synthesize(self, signals, context=None):
        """Produce the episode script for `signals`. Any failure surfaces as SynthesisFailure."""
        context = context or SynthesisContext()
        print(f"🎙️ Synthesizing script from {len(signals)} signals with Claude ({self.model})...")
        start = time.monotonic()
        try:
            content, usage, stop_reason = self.call_claude(build_synthesis_prompt(signals, context))
            episode_data, citations, search_count = parse_synthesis_response(content, stop_reason, self.max_segments)
            usage['web_searches'] = max(usage.get('web_searches', 0), search_count)

            segments = build_segments(episode_data, citations)
            trusted = [s.url for s in signals if s.url] + [c['url'] for c in citations]
            stats = self.source_validator.validate(segments, trusted_urls=trusted)
            print(f"  🔗 Sources: {stats['kept']} kept, {stats['no_url']} no-url, "
                  f"{stats['unreachable']} unreachable, {stats['unsafe']} unsafe")
        except SynthesisFailure:
            raise
        except Exception as e:
            raise SynthesisFailure(f"Content synthesis failed: {e}") from e

        main_script = build_main_script(episode_data, segments)
        epilogue_script = build_epilogue(segments, context.timezone, context.now)
        topics = list(dict.fromkeys(s.topic for s in segments if s.topic))
        synthesis_ms = int((time.monotonic() - start) * 1000)

        print(f"✅ Script ready: \"{episode_data['title']}\" ({len(segments)} segments, "
              f"{len(citations)} web citations, {synthesis_ms / 1000:.1f}s)")
        return SynthesisResult(
            title=str(episode_data['title']).strip(),
            summary=str(episode_data.get('summary') or '').strip(),
            segments=segments,
            main_script=main_script,
            epilogue_script=epilogue_script,
            topics=topics,
            usage=usage,
            citations=citations,
            synthesis_ms=synthesis_ms,
        )
