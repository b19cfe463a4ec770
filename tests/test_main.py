import httpx
import pytest


@pytest.mark.asyncio
async def test_health_check(monkeypatch):
    monkeypatch.setenv("STORE_BACKEND", "memory")
    import main

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=main.app), base_url="http://test") as client:
        response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["scheduler_running"] is False
