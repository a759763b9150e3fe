"""Source URL checks applied to the citations a synthesized script carries."""

import ipaddress
import socket
from urllib.parse import urlparse

import requests

BROWSER_UA = ('Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 '
              '(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36')
DEAD_STATUSES = {404, 410, 451}
REQUEST_TIMEOUT = 8


def is_safe_url(url):
    """Reject non-http(s) URLs and hosts that resolve to internal addresses."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in ('http', 'https') or not parsed.hostname:
        return False
    try:
        infos = socket.getaddrinfo(parsed.hostname, parsed.port or None)
    except (socket.gaierror, UnicodeError, ValueError):
        return False
    for info in infos:
        address = ipaddress.ip_address(info[4][0].split('%')[0])
        if (address.is_private or address.is_loopback or address.is_link_local
                or address.is_reserved or address.is_multicast or address.is_unspecified):
            return False
    return True


def is_url_reachable(url, http=None):
    """HEAD first, GET as a fallback; only 404/410/451 or a dead host count as unreachable."""
    http = http or requests
    options = {
        'allow_redirects': True,
        'timeout': REQUEST_TIMEOUT,
        'headers': {'User-Agent': BROWSER_UA},
    }
    try:
        response = http.head(url, **options)
        if response.status_code not in DEAD_STATUSES:
            return True
    except requests.RequestException:
        pass
    try:
        response = http.get(url, stream=True, **options)
        response.close()
        return response.status_code not in DEAD_STATUSES
    except requests.RequestException:
        return False


class SourceValidator:
    """Drops hallucinated or unsafe source URLs from script segments.

    URLs the user captured and URLs returned by web search are trusted as-is;
    everything else is SSRF-checked and probed once per distinct URL.
    """

    def __init__(self, safety_check=is_safe_url, reachability_check=is_url_reachable):
        self.safety_check = safety_check
        self.reachability_check = reachability_check

    def _check(self, url, cache, stats):
        key = url.lower()
        if key not in cache:
            if not self.safety_check(url):
                print(f"  🚫 Blocked unsafe URL: {url}")
                stats['unsafe'] += 1
                cache[key] = False
            else:
                try:
                    cache[key] = bool(self.reachability_check(url))
                except Exception as e:
                    print(f"  ⚠️  Validation error for {url}: {e}")
                    cache[key] = False
                if not cache[key]:
                    print(f"  ✂️  Stripped unreachable source: {url}")
                    stats['unreachable'] += 1
        return cache[key]

    def validate(self, segments, trusted_urls=()):
        """Filter each segment's sources in place and return drop statistics."""
        trusted = {u.lower() for u in trusted_urls if u}
        cache = {}
        stats = {'kept': 0, 'no_url': 0, 'unreachable': 0, 'unsafe': 0}

        for segment in segments:
            kept = []
            for source in segment.sources:
                url = (source.get('url') or '').strip()
                if not url:
                    print(f"  ✂️  Dropped source without URL: {source.get('name')}")
                    stats['no_url'] += 1
                    continue
                if url.lower() in trusted or self._check(url, cache, stats):
                    kept.append(source)
            segment.sources = kept
            stats['kept'] += len(kept)

        return stats
