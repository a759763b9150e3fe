"""
Best-effort "your episode is ready" notifications.

`dispatch` hands the message to a background worker and returns immediately;
the pipeline never waits on delivery. Each attempt's outcome is logged and
kept in `outcomes`, which holds the most recent MAX_RECORDED_OUTCOMES.
"""

import os
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor

import requests

from config_loader import load_briefcast_config, load_prompts_config

WEBHOOK_TIMEOUT = 10
MAX_RECORDED_OUTCOMES = 100


def format_duration(seconds):
    if not seconds:
        return "a few minutes"
    minutes = max(1, round(seconds / 60))
    return f"{minutes} min"


def build_message(episode_id, title, signal_count, duration):
    config = load_briefcast_config()
    template = load_prompts_config()['notification']['template']
    return template.format(
        title=config['title'],
        episode_title=title,
        signal_count=signal_count,
        duration=format_duration(duration),
        player_url=f"{config['app_url'].rstrip('/')}/player/{episode_id}",
    )


class Notifier:
    """Base class: subclasses implement `notify` and may raise on failure."""

    def __init__(self, max_workers=2, max_outcomes=MAX_RECORDED_OUTCOMES):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")
        self._lock = threading.Lock()
        self.outcomes = deque(maxlen=max_outcomes)

    def notify(self, episode_id, title, signal_count, duration, recipient):
        raise NotImplementedError

    def _deliver(self, episode_id, title, signal_count, duration, recipient):
        try:
            self.notify(episode_id, title, signal_count, duration, recipient)
        except Exception as e:
            print(f"  ⚠️  Notification for episode {episode_id} failed: {e}")
            outcome = {'episode_id': episode_id, 'delivered': False, 'error': str(e)}
        else:
            print(f"  📨 Notification sent for episode {episode_id}")
            outcome = {'episode_id': episode_id, 'delivered': True, 'error': None}
        with self._lock:
            self.outcomes.append(outcome)
        return outcome

    def dispatch(self, episode_id, title, signal_count, duration, recipient):
        """Queue delivery on the background worker and return its future."""
        return self._executor.submit(self._deliver, episode_id, title, signal_count, duration, recipient)

    def shutdown(self, wait=True):
        self._executor.shutdown(wait=wait)


class LogNotifier(Notifier):
    """Prints the message instead of sending it."""

    def notify(self, episode_id, title, signal_count, duration, recipient):
        message = build_message(episode_id, title, signal_count, duration)
        print(f"  📝 Message for {recipient or 'unknown recipient'}:\n{message}")


class WebhookNotifier(Notifier):
    """POSTs the formatted message to a webhook (e.g. an SMS relay)."""

    def __init__(self, webhook_url=None, http=None, max_workers=2, max_outcomes=MAX_RECORDED_OUTCOMES):
        super().__init__(max_workers=max_workers, max_outcomes=max_outcomes)
        self.webhook_url = webhook_url or os.getenv("BRIEFCAST_NOTIFY_WEBHOOK")
        self.http = http or requests

    def notify(self, episode_id, title, signal_count, duration, recipient):
        if not self.webhook_url:
            raise RuntimeError("BRIEFCAST_NOTIFY_WEBHOOK not configured")
        if not recipient:
            raise RuntimeError("User has no notification recipient")
        response = self.http.post(self.webhook_url, json={
            'to': recipient,
            'episode_id': episode_id,
            'body': build_message(episode_id, title, signal_count, duration),
        }, timeout=WEBHOOK_TIMEOUT)
        response.raise_for_status()


def get_notifier():
    if os.getenv("BRIEFCAST_NOTIFY_WEBHOOK"):
        return WebhookNotifier()
    return LogNotifier()
