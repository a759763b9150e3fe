"""Retry, client and deadline helpers shared by the pipeline stages."""

import os
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout

from anthropic import Anthropic
from openai import OpenAI

from errors import StageTimeout

TRANSIENT_MARKERS = ['429', '500', '502', '503', '529', 'timeout', 'timed out', 'Connection', 'overloaded']


def is_transient_error(error):
    """True for rate limits, server errors and network hiccups."""
    status = getattr(error, 'status_code', None) or getattr(error, 'status', None)
    if isinstance(status, int):
        return status == 429 or status >= 500
    err_str = str(error)
    return any(s in err_str for s in TRANSIENT_MARKERS)


def api_retry(func, max_retries=3, base_delay=2, label="API call"):
    """Call func() with exponential backoff on transient errors."""
    for attempt in range(max_retries + 1):
        try:
            return func()
        except Exception as e:
            if attempt < max_retries and is_transient_error(e):
                delay = base_delay * (2 ** attempt)
                print(f"  ⚠️  {label}: retrying in {delay}s (attempt {attempt+1}/{max_retries}): {e}")
                time.sleep(delay)
            else:
                raise


def run_with_timeout(func, seconds, stage):
    """Run func() with a wall-clock ceiling, raising StageTimeout when exceeded.

    The worker thread cannot be killed; on timeout it is abandoned and its
    result discarded.
    """
    if seconds is None:
        return func()
    if seconds <= 0:
        raise StageTimeout(stage, 0)
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"stage-{stage}")
    future = executor.submit(func)
    try:
        return future.result(timeout=seconds)
    except FutureTimeout:
        future.cancel()
        raise StageTimeout(stage, round(seconds, 2))
    finally:
        executor.shutdown(wait=False)


def get_anthropic_client():
    """Get or create a cached Anthropic client."""
    if not hasattr(get_anthropic_client, '_client'):
        api_key = os.getenv('ANTHROPIC_API_KEY')
        if not api_key:
            return None
        get_anthropic_client._client = Anthropic(api_key=api_key)
    return get_anthropic_client._client


def get_openai_client():
    """Get or create a cached OpenAI client."""
    if not hasattr(get_openai_client, '_client'):
        api_key = os.getenv('OPENAI_API_KEY')
        if not api_key:
            return None
        get_openai_client._client = OpenAI(api_key=api_key)
    return get_openai_client._client
