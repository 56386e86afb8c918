
import asyncio

import pytest
from httpx import AsyncClient, ASGITransport
from typer.testing import CliRunner

from sitestats.cli import main as cli
from sitestats.main import create_app
from sitestats.shared.settings import Settings


@pytest.mark.asyncio
async def test_combined_app_with_embedded_worker(backends):
    cfg = Settings(backend="memory", enable_metrics=False, embedded_worker=True)
    app = create_app(backends, cfg)

    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://sitestats") as ac:
            for user in ("u1", "u2", "u1"):
                r = await ac.post("/event", json={
                    "site_id": "s1", "event_type": "pageview", "path": "/home",
                    "user_id": user, "timestamp": "2025-11-12T09:00:00Z",
                })
                assert r.status_code == 202

            for _ in range(200):
                r = await ac.get("/stats", params={"site_id": "s1", "date": "2025-11-12"})
                if r.json()["total_views"] == 3:
                    break
                await asyncio.sleep(0.01)

    assert r.json() == {
        "site_id": "s1",
        "date": "2025-11-12",
        "total_views": 3,
        "unique_users": 2,
        "top_paths": [{"path": "/home", "views": 3}],
    }


def test_cli_refuses_memory_backend_for_worker(monkeypatch):
    monkeypatch.setattr(cli, "settings", Settings(backend="memory"))
    result = CliRunner().invoke(cli.app, ["worker"])
    assert result.exit_code == 2
    assert "SITESTATS_BACKEND=postgres" in result.output
