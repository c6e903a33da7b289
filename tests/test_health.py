"""Health endpoint tests."""

from datetime import datetime

import pytest


@pytest.mark.asyncio
async def test_health_returns_ok(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["env"] == "development"
    assert datetime.fromisoformat(data["timestamp"]).tzinfo is not None


@pytest.mark.asyncio
async def test_graphql_health_matches_rest(api):
    data = await api.data("{ health { status env } }")
    assert data["health"] == {"status": "ok", "env": "development"}
