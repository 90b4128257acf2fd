from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio

from cardify.domain.errors import PermanentRemoteError
from cardify.domain.interfaces import RemoteGateway
from cardify.domain.models import Card, Deck, EntityTable, SRSState
from cardify.infrastructure.persistence.sqlite_store import SqliteLocalStore

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeRemoteGateway(RemoteGateway):
    """
    In-memory stand-in for the remote API.

    Behaves like an idempotency-aware server: a duplicate create answers 409,
    updating or deleting an unknown id answers 404. Scripted failures are
    raised before the operation takes effect.
    """

    def __init__(self) -> None:
        self.records: dict[str, dict[str, dict[str, Any]]] = {"decks": {}, "cards": {}}
        self.calls: list[tuple[str, str, str | None]] = []
        self.failures: dict[tuple[str, str | None], list[Exception]] = {}

    def fail(self, method: str, entity_id: str | None, *errors: Exception) -> None:
        self.failures.setdefault((method, entity_id), []).extend(errors)

    def seed(self, table: str, payload: dict[str, Any]) -> None:
        self.records[table][payload.get("id") or payload["_id"]] = dict(payload)

    def _maybe_fail(self, method: str, entity_id: str | None) -> None:
        pending = self.failures.get((method, entity_id))
        if pending:
            raise pending.pop(0)

    def calls_for(self, method: str) -> list[tuple[str, str, str | None]]:
        return [c for c in self.calls if c[0] == method]

    async def create_entity(self, table: EntityTable, payload: dict[str, Any]) -> Any:
        entity_id = payload["id"]
        self.calls.append(("create", table.value, entity_id))
        self._maybe_fail("create", entity_id)
        if entity_id in self.records[table.value]:
            raise PermanentRemoteError(f"{entity_id} exists", status_code=409)
        self.records[table.value][entity_id] = dict(payload)
        return payload

    async def update_entity(
        self, table: EntityTable, entity_id: str, payload: dict[str, Any]
    ) -> Any:
        self.calls.append(("update", table.value, entity_id))
        self._maybe_fail("update", entity_id)
        if entity_id not in self.records[table.value]:
            raise PermanentRemoteError(f"{entity_id} not found", status_code=404)
        merged = {**self.records[table.value][entity_id], **payload}
        self.records[table.value][entity_id] = merged
        return merged

    async def delete_entity(self, table: EntityTable, entity_id: str) -> Any:
        self.calls.append(("delete", table.value, entity_id))
        self._maybe_fail("delete", entity_id)
        if self.records[table.value].pop(entity_id, None) is None:
            raise PermanentRemoteError(f"{entity_id} not found", status_code=404)
        return None

    async def list_entities(
        self, table: EntityTable, owner_scope: str | None = None
    ) -> list[dict[str, Any]]:
        self.calls.append(("list", table.value, None))
        self._maybe_fail("list", table.value)
        return [dict(r) for r in self.records[table.value].values()]


def make_deck(deck_id: str = "deck-1", title: str = "Biology", **kwargs: Any) -> Deck:
    kwargs.setdefault("created_at", T0)
    kwargs.setdefault("updated_at", T0)
    return Deck(id=deck_id, title=title, **kwargs)


def make_card(
    card_id: str = "card-1",
    deck_id: str = "deck-1",
    due: datetime | None = None,
    **kwargs: Any,
) -> Card:
    srs = kwargs.pop("srs", None) or SRSState.initial(due or T0)
    kwargs.setdefault("created_at", T0)
    kwargs.setdefault("updated_at", T0)
    return Card(
        id=card_id,
        deck_id=deck_id,
        front_content=kwargs.pop("front_content", f"Q {card_id}"),
        back_content=kwargs.pop("back_content", f"A {card_id}"),
        srs=srs,
        **kwargs,
    )


@pytest.fixture
def now() -> datetime:
    return T0


@pytest.fixture
def later(now) -> datetime:
    """A time after every default backoff window has elapsed."""
    return now + timedelta(hours=1)


@pytest_asyncio.fixture
async def store(tmp_path):
    s = SqliteLocalStore(tmp_path / "cardify.db")
    await s.init()
    yield s
    await s.close()


@pytest.fixture
def remote() -> FakeRemoteGateway:
    return FakeRemoteGateway()


@pytest.fixture
def mock_home(tmp_path, monkeypatch):
    """Mocks Path.home() to point to a temp dir and clears CARDIFY_* variables."""
    home = tmp_path / "home"
    home.mkdir()

    # Mocking HOME to a temp directory to isolate config/logs
    monkeypatch.setenv("HOME", str(home))
    for key in ("CARDIFY_DB_PATH", "CARDIFY_LOG_DIR", "CARDIFY_API_BASE_URL"):
        monkeypatch.delenv(key, raising=False)
    return home
