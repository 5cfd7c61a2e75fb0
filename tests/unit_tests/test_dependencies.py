"""Tests for client IP resolution and rate-limit helpers."""

import time

from starlette.requests import Request

from app.dependencies import get_client_ip, seconds_until


def _request(headers=None, client=("192.0.2.10", 40000)) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/subscribe",
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


class TestGetClientIp:
    def test_first_forwarded_entry(self):
        request = _request({"X-Forwarded-For": " 198.51.100.1 , 10.0.0.1", "X-Real-IP": "10.9.9.9"})
        assert get_client_ip(request) == "198.51.100.1"

    def test_real_ip(self):
        request = _request({"X-Real-IP": "198.51.100.2", "CF-Connecting-IP": "198.51.100.3"})
        assert get_client_ip(request) == "198.51.100.2"

    def test_cloudflare(self):
        assert get_client_ip(_request({"CF-Connecting-IP": "198.51.100.3"})) == "198.51.100.3"

    def test_empty_forwarded_header_falls_through(self):
        assert get_client_ip(_request({"X-Forwarded-For": " , 10.0.0.1"})) == "192.0.2.10"

    def test_peer_address(self):
        assert get_client_ip(_request()) == "192.0.2.10"

    def test_unknown_without_peer(self):
        assert get_client_ip(_request(client=None)) == "unknown"


def test_seconds_until_rounds_up():
    now_ms = int(time.time() * 1000)
    assert seconds_until(now_ms + 59_500) in (59, 60)
    assert seconds_until(now_ms - 5_000) == 0
