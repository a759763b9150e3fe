"""Tests for source_validator."""

import socket
from types import SimpleNamespace

import requests

from content_synthesizer import ScriptSegment
from source_validator import SourceValidator, is_safe_url, is_url_reachable


def _fake_getaddrinfo(address):
    return lambda host, port, *args, **kwargs: [(socket.AF_INET, socket.SOCK_STREAM, 6, '', (address, 443))]


class FakeHttp:
    def __init__(self, head_status=200, get_status=200, head_error=None):
        self.head_status = head_status
        self.get_status = get_status
        self.head_error = head_error
        self.calls = []

    def head(self, url, **kwargs):
        self.calls.append(('HEAD', url))
        if self.head_error:
            raise self.head_error
        return SimpleNamespace(status_code=self.head_status)

    def get(self, url, **kwargs):
        self.calls.append(('GET', url))
        return SimpleNamespace(status_code=self.get_status, close=lambda: None)


class TestIsSafeUrl:
    def test_rejects_non_http_schemes(self):
        assert not is_safe_url("ftp://example.com/file")
        assert not is_safe_url("file:///etc/passwd")
        assert not is_safe_url("not a url")

    def test_rejects_private_addresses(self, monkeypatch):
        for address in ("127.0.0.1", "10.0.0.5", "169.254.169.254", "192.168.1.1"):
            monkeypatch.setattr(socket, "getaddrinfo", _fake_getaddrinfo(address))
            assert not is_safe_url("https://internal.example/")

    def test_accepts_public_address(self, monkeypatch):
        monkeypatch.setattr(socket, "getaddrinfo", _fake_getaddrinfo("93.184.216.34"))
        assert is_safe_url("https://example.com/story")

    def test_unresolvable_host(self, monkeypatch):
        def _fail(*args, **kwargs):
            raise socket.gaierror("no such host")
        monkeypatch.setattr(socket, "getaddrinfo", _fail)
        assert not is_safe_url("https://nowhere.invalid/")


class TestIsUrlReachable:
    def test_head_ok(self):
        http = FakeHttp(head_status=200)
        assert is_url_reachable("https://a.com", http=http)
        assert http.calls == [('HEAD', "https://a.com")]

    def test_method_not_allowed_is_not_dead(self):
        http = FakeHttp(head_status=405, get_status=200)
        assert is_url_reachable("https://a.com", http=http)

    def test_head_404_then_get_404_is_dead(self):
        http = FakeHttp(head_status=404, get_status=404)
        assert not is_url_reachable("https://a.com", http=http)
        assert [c[0] for c in http.calls] == ['HEAD', 'GET']

    def test_blocked_statuses_are_not_dead(self):
        assert is_url_reachable("https://a.com", http=FakeHttp(head_status=403))

    def test_head_network_error_uses_get(self):
        http = FakeHttp(head_error=requests.ConnectionError("reset"), get_status=410)
        assert not is_url_reachable("https://a.com", http=http)


class TestSourceValidator:
    def _segments(self):
        return [
            ScriptSegment("a", "c", [
                {'name': "Kept", 'url': "https://good.com/1", 'attribution': "x"},
                {'name': "Dead", 'url': "https://dead.com/1", 'attribution': "x"},
                {'name': "NoUrl", 'url': "", 'attribution': "x"},
            ]),
            ScriptSegment("b", "c", [
                {'name': "DeadAgain", 'url': "https://DEAD.com/1", 'attribution': "x"},
                {'name': "Internal", 'url': "http://localhost/admin", 'attribution': "x"},
                {'name': "Captured", 'url': "https://private-but-trusted.com", 'attribution': "x"},
            ]),
        ]

    def test_filters_and_counts(self):
        probed = []

        def reachable(url):
            probed.append(url)
            return "dead" not in url.lower()

        validator = SourceValidator(safety_check=lambda url: "localhost" not in url, reachability_check=reachable)
        segments = self._segments()
        stats = validator.validate(segments, trusted_urls=["https://private-but-trusted.com"])

        assert [s['name'] for s in segments[0].sources] == ["Kept"]
        assert [s['name'] for s in segments[1].sources] == ["Captured"]
        assert stats == {'kept': 2, 'no_url': 1, 'unreachable': 1, 'unsafe': 1}
        # One probe per distinct URL, trusted URLs never probed
        assert sorted(probed) == ["https://dead.com/1", "https://good.com/1"]

    def test_probe_exception_drops_source(self):
        def explode(url):
            raise RuntimeError("boom")

        validator = SourceValidator(safety_check=lambda url: True, reachability_check=explode)
        segments = [ScriptSegment("a", "c", [{'name': "X", 'url': "https://x.com", 'attribution': "x"}])]
        validator.validate(segments)
        assert segments[0].sources == []
