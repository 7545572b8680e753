"""Tests for the healthcheck HTTP handlers."""
import json
from unittest.mock import MagicMock

import pytest

from rotation.utils.healthcheck import HealthcheckServer


class TestHealthcheckServer:
    """Tests for /health and /status."""

    @pytest.mark.asyncio
    async def test_health(self):
        """/health answers ok."""
        server = HealthcheckServer(port=0)
        resp = await server.health_handler(MagicMock())
        assert resp.status == 200
        assert json.loads(resp.text)["status"] == "ok"

    @pytest.mark.asyncio
    async def test_status_merges_provider(self):
        """/status includes poll counters and the provider's fields."""
        server = HealthcheckServer(port=0, status_provider=lambda: {"current_phase": "BTC_HEAVY"})
        server.record_poll()
        body = json.loads((await server.status_handler(MagicMock())).text)

        assert body["status"] == "running"
        assert body["polls_completed"] == 1
        assert body["last_poll"] is not None
        assert body["current_phase"] == "BTC_HEAVY"
        assert body["uptime"].endswith("m")

    @pytest.mark.asyncio
    async def test_status_provider_error(self):
        """A failing provider is reported, not raised."""
        def broken():
            raise RuntimeError("db locked")

        server = HealthcheckServer(port=0, status_provider=broken)
        body = json.loads((await server.status_handler(MagicMock())).text)

        assert body["status"] == "running"
        assert body["status_error"] == "db locked"
        assert body["last_poll"] is None
