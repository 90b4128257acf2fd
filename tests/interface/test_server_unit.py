import asyncio

import pytest
from conftest import make_card, make_deck
from fastapi.testclient import TestClient

from cardify.application.config import resolve_config
from cardify.application.factory import open_context
from cardify.consts import VERSION
from cardify.infrastructure.persistence.sqlite_store import SqliteLocalStore
from cardify.server import create_app


@pytest.fixture
def config(mock_home, tmp_path):
    return resolve_config({"db_path": tmp_path / "server.db", "log_dir": tmp_path / "logs"})


@pytest.fixture
def seeded(config):
    """One deck with two cards due at the fixed test time (so due now)."""

    async def seed():
        store = SqliteLocalStore(config.db_path)
        await store.init()
        await store.put_decks([make_deck()])
        await store.put_cards([make_card("c1"), make_card("c2")])
        await store.close()

    asyncio.run(seed())
    return config


def _client(config, remote, start_sync=False):
    async def factory():
        return await open_context(config, gateway=remote)

    return TestClient(create_app(context_factory=factory, start_sync=start_sync))


def test_health_check(config, remote):
    with _client(config, remote) as client:
        response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["version"] == VERSION


def test_get_version(config, remote):
    with _client(config, remote) as client:
        assert client.get("/version").json() == {"version": VERSION}


def test_review_card(seeded, remote):
    with _client(seeded, remote) as client:
        response = client.post("/cards/c1/review", json={"quality": 4})
        status = client.get("/sync/status").json()

    assert response.status_code == 200
    data = response.json()
    assert data["interval"] == 1
    assert data["repetitions"] == 1
    assert status["pending"] == 1
    assert status["stale"] is True


@pytest.mark.parametrize(
    "body, code",
    [
        ({"quality": 6}, 400),
        ({"quality": "4"}, 422),
        ({"quality": True}, 422),
        ({}, 422),
    ],
)
def test_review_rejects_bad_quality(seeded, remote, body, code):
    with _client(seeded, remote) as client:
        response = client.post("/cards/c1/review", json=body)
        pending = client.get("/sync/status").json()["pending"]
    assert response.status_code == code
    assert pending == 0


def test_review_unknown_card(seeded, remote):
    with _client(seeded, remote) as client:
        response = client.post("/cards/ghost/review", json={"quality": 3})
    assert response.status_code == 404


def test_list_decks_and_due(seeded, remote):
    with _client(seeded, remote) as client:
        decks = client.get("/decks").json()
        due = client.get("/decks/deck-1/due", params={"limit": 1})
        missing = client.get("/decks/nope/due")
        bad_limit = client.get("/decks/deck-1/due", params={"limit": 0})

    assert decks[0]["id"] == "deck-1"
    assert decks[0]["cardCount"] == 2
    assert decks[0]["dueCount"] == 2
    assert due.status_code == 200
    assert [c["id"] for c in due.json()] == ["c1"]
    assert missing.status_code == 404
    assert bad_limit.status_code == 400


def test_stats(seeded, remote):
    with _client(seeded, remote) as client:
        client.post("/cards/c1/review", json={"quality": 5})
        data = client.get("/stats").json()

    assert data == {
        "dueToday": 1,
        "dueTomorrow": 1,
        "dueThisWeek": 1,
        "reviewedToday": 1,
        "totalCards": 2,
    }


def test_sync_is_scheduled_not_awaited(seeded, remote):
    with _client(seeded, remote) as client:
        response = client.post("/sync")
    assert response.status_code == 202
    assert response.json() == {"status": "scheduled"}
    assert remote.calls == []


def test_connectivity_updates_monitor(config, remote):
    with _client(config, remote) as client:
        response = client.post("/connectivity", json={"online": False})
        online = client.app.state.ctx.connectivity.online
    assert response.json() == {"online": False}
    assert online is False


def test_background_sync_runs_and_stops_with_app(seeded, remote):
    with _client(seeded, remote, start_sync=True) as client:
        status = client.get("/sync/status").json()
        runner = client.app.state.ctx.runner
        assert status["running"] is True
    assert runner.running is False
