"""
Tests for the HTTP liveness probe, using httpx.MockTransport.
"""

import httpx
import pytest

from pressbox.services.liveness import LivenessProbe


def probe_with(handler, **kwargs) -> LivenessProbe:
    kwargs.setdefault("timeout", 0.5)
    kwargs.setdefault("poll_interval", 0.01)
    kwargs.setdefault("request_timeout", 0.1)
    return LivenessProbe(transport=httpx.MockTransport(handler), **kwargs)


class TestLivenessProbe:
    """Tests for single checks and the bounded wait."""

    @pytest.mark.asyncio
    async def test_any_response_is_live(self):
        for status_code in (200, 302, 500):
            probe = probe_with(lambda request, code=status_code: httpx.Response(code))
            assert await probe.check(8000) is True

    @pytest.mark.asyncio
    async def test_uses_head_on_loopback(self):
        seen = []

        def handler(request):
            seen.append((request.method, str(request.url)))
            return httpx.Response(302, headers={"Location": "/wp-admin/install.php"})

        await probe_with(handler).check(8123)

        assert seen == [("HEAD", "http://127.0.0.1:8123/")]

    @pytest.mark.asyncio
    async def test_connection_refused_is_not_live(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        assert await probe_with(handler).check(8000) is False

    @pytest.mark.asyncio
    async def test_wait_until_live_polls(self):
        attempts = {"count": 0}

        def handler(request):
            attempts["count"] += 1
            if attempts["count"] < 3:
                raise httpx.ConnectError("not yet", request=request)
            return httpx.Response(200)

        assert await probe_with(handler).wait_until_live(8000) is True
        assert attempts["count"] == 3

    @pytest.mark.asyncio
    async def test_wait_until_live_times_out(self):
        def handler(request):
            raise httpx.ReadTimeout("hung", request=request)

        assert await probe_with(handler, timeout=0.1).wait_until_live(8000) is False

    @pytest.mark.asyncio
    async def test_zero_budget(self):
        assert await probe_with(lambda request: httpx.Response(200)).wait_until_live(8000, timeout=0) is False
