"""Tests for the sync reconciler: push, failure handling, suspension and pull merge."""

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest
from conftest import FakeRemoteGateway, make_card, make_deck

from cardify.application.sync.connectivity import ConnectivityMonitor
from cardify.application.sync.credentials import StaticCredentialProvider
from cardify.application.sync.reconciler import SyncReconciler
from cardify.domain.errors import AuthError, PermanentRemoteError, TransientRemoteError
from cardify.domain.models import EntityTable, SyncOperation

DECKS = EntityTable.DECKS


def _reconciler(store, remote, token="tok", online=True, **kwargs):
    credentials = StaticCredentialProvider(token)
    connectivity = ConnectivityMonitor(online=online)
    return SyncReconciler(store, remote, credentials, connectivity, **kwargs)


async def _synced_deck(store, remote, **fields):
    deck = make_deck(**fields)
    await store.put_decks([deck])
    remote.seed("decks", deck.to_payload())
    return deck


# --- Guards ---


@pytest.mark.asyncio
async def test_offline_skips_cycle(store, remote, now):
    await store.put_decks([make_deck()], track=True)
    report = await _reconciler(store, remote, online=False).run_cycle(now)
    assert report.skipped_reason == "offline"
    assert remote.calls == []
    assert await store.count_pending() == 1


@pytest.mark.asyncio
async def test_missing_credential_skips_cycle(store, remote, now):
    await store.put_decks([make_deck()], track=True)
    report = await _reconciler(store, remote, token=None).run_cycle(now)
    assert report.skipped_reason == "no_credential"
    assert remote.calls == []


@pytest.mark.asyncio
async def test_store_failure_is_reported_not_raised(store, remote, now):
    await store.close()
    report = await _reconciler(store, remote).run_cycle(now)
    assert report.skipped_reason.startswith("error")


# --- Push ---


@pytest.mark.asyncio
async def test_push_creates_parents_before_children(store, remote, now):
    await store.put_decks([make_deck()], track=True)
    await store.put_cards([make_card("c1"), make_card("c2")], track=True)

    report = await _reconciler(store, remote).run_cycle(now, pull=False)

    assert report.acked == 3
    assert report.ok
    creates = remote.calls_for("create")
    assert creates[0] == ("create", "decks", "deck-1")
    assert {c[2] for c in creates[1:]} == {"c1", "c2"}
    assert set(remote.records["cards"]) == {"c1", "c2"}
    assert await store.count_pending() == 0
    assert await store.get_last_sync_at() == now


@pytest.mark.asyncio
async def test_two_offline_edits_issue_one_put(store, remote, now):
    deck = await _synced_deck(store, remote)
    renamed = replace(deck, title="Cell Biology")
    await store.put_decks([renamed], track=True)
    await store.put_decks([replace(renamed, description="Membranes")], track=True)

    report = await _reconciler(store, remote).run_cycle(now, pull=False)

    assert report.acked == 1
    assert remote.calls_for("update") == [("update", "decks", "deck-1")]
    server = remote.records["decks"]["deck-1"]
    assert server["title"] == "Cell Biology"
    assert server["description"] == "Membranes"


@pytest.mark.asyncio
async def test_review_update_reaches_remote(store, remote, now):
    await _synced_deck(store, remote)
    card = make_card()
    await store.put_cards([card])
    remote.seed("cards", card.to_payload())

    await store.update_card_srs("card-1", lambda s: replace(s, interval=1, repetitions=1))
    await _reconciler(store, remote).run_cycle(now, pull=False)

    assert remote.records["cards"]["card-1"]["srsData"]["interval"] == 1


# --- Failure classification ---


@pytest.mark.asyncio
async def test_transient_failure_backs_off_then_succeeds(store, remote, now, later):
    await store.put_decks([make_deck()], track=True)
    remote.fail("create", "deck-1", TransientRemoteError("502", status_code=502))
    reconciler = _reconciler(store, remote, retry_base_delay=2.0)

    first = await reconciler.run_cycle(now, pull=False)
    assert first.retried == 1
    [entry] = await store.drain_pending_sync(DECKS)
    assert entry.retry_count == 1
    assert entry.next_attempt_at == now + timedelta(seconds=2)
    assert await store.get_last_sync_at() is None

    second = await reconciler.run_cycle(now + timedelta(seconds=1), pull=False)
    assert second.deferred == 1
    assert len(remote.calls_for("create")) == 1

    third = await reconciler.run_cycle(later, pull=False)
    assert third.acked == 1
    assert "deck-1" in remote.records["decks"]


def test_backoff_is_exponential_and_capped(store, remote):
    reconciler = _reconciler(store, remote, retry_base_delay=1.0, retry_max_delay=5.0)
    assert [reconciler.backoff_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


@pytest.mark.asyncio
async def test_dead_letter_after_max_retries(store, remote, now):
    await store.put_decks([make_deck()], track=True)
    remote.fail("create", "deck-1", *[TransientRemoteError("down") for _ in range(3)])
    reconciler = _reconciler(store, remote, max_retries=2)

    for hours in (0, 1, 2):
        report = await reconciler.run_cycle(now + timedelta(hours=hours), pull=False)

    assert len(report.dead_lettered) == 1
    assert report.dead_lettered[0].entity_id == "deck-1"
    assert await store.count_pending() == 0
    [dead] = await store.list_dead_letters()
    assert dead.retry_count == 3
    assert "retries exhausted" in dead.last_error

    # Never retried automatically.
    await reconciler.run_cycle(now + timedelta(hours=3), pull=False)
    assert len(remote.calls_for("create")) == 3


@pytest.mark.asyncio
async def test_permanent_error_dead_letters_immediately(store, remote, now):
    await store.put_decks([make_deck()], track=True)
    remote.fail("create", "deck-1", PermanentRemoteError("invalid", status_code=422))

    report = await _reconciler(store, remote).run_cycle(now, pull=False)

    assert len(report.dead_lettered) == 1
    assert not report.ok
    assert len(remote.calls_for("create")) == 1
    assert await store.count_pending() == 0


@pytest.mark.asyncio
async def test_one_bad_entry_does_not_block_others(store, remote, now):
    await store.put_decks([make_deck("d1"), make_deck("d2")], track=True)
    remote.fail("create", "d1", PermanentRemoteError("invalid", status_code=400))

    report = await _reconciler(store, remote).run_cycle(now, pull=False)

    assert report.acked == 1
    assert "d2" in remote.records["decks"]


@pytest.mark.asyncio
async def test_unexpected_gateway_exception_is_retried(store, remote, now):
    await store.put_decks([make_deck()], track=True)
    remote.fail("create", "deck-1", RuntimeError("bug"))

    report = await _reconciler(store, remote).run_cycle(now, pull=False)

    assert report.retried == 1
    [entry] = await store.drain_pending_sync(DECKS)
    assert "unexpected" in entry.last_error


# --- Idempotent replay healing ---


@pytest.mark.asyncio
async def test_replayed_create_heals_into_update(store, remote, now):
    deck = make_deck(title="Local")
    await store.put_decks([deck], track=True)
    # Remote already applied the create; the ack was lost.
    remote.seed("decks", make_deck(title="Stale").to_payload())

    report = await _reconciler(store, remote).run_cycle(now, pull=False)

    assert report.acked == 1
    assert [c[0] for c in remote.calls] == ["create", "update"]
    assert remote.records["decks"]["deck-1"]["title"] == "Local"


@pytest.mark.asyncio
async def test_replayed_delete_of_missing_entity_is_acked(store, remote, now):
    await store.put_decks([make_deck()])
    await store.delete_deck("deck-1", track=True)

    report = await _reconciler(store, remote).run_cycle(now, pull=False)

    assert report.acked == 1
    assert await store.count_pending() == 0


@pytest.mark.asyncio
async def test_deleting_a_deck_deletes_its_cards_remotely(store, remote, now):
    deck = await _synced_deck(store, remote)
    synced = [make_card("c1"), make_card("c2")]
    await store.put_cards(synced)
    for card in synced:
        remote.seed("cards", card.to_payload())
    await store.put_cards([make_card("c3")], track=True)

    await store.delete_deck(deck.id, track=True)
    report = await _reconciler(store, remote).run_cycle(now)

    assert report.ok
    assert remote.records["decks"] == {}
    assert remote.records["cards"] == {}
    assert remote.calls_for("create") == []
    assert {c[2] for c in remote.calls_for("delete")} == {"deck-1", "c1", "c2", "c3"}
    assert await store.count_pending() == 0


# --- Auth suspension ---


@pytest.mark.asyncio
async def test_auth_error_suspends_until_token_changes(store, remote, now, later):
    await store.put_decks([make_deck("d1"), make_deck("d2")], track=True)
    remote.fail("create", "d1", AuthError("expired", status_code=401))
    credentials = StaticCredentialProvider("old")
    reconciler = SyncReconciler(store, remote, credentials, ConnectivityMonitor(), concurrency=1)

    first = await reconciler.run_cycle(now)
    assert first.auth_suspended
    assert reconciler.is_suspended
    pending = await store.drain_pending_sync(DECKS)
    assert {e.entity_id for e in pending} >= {"d1"}
    assert all(e.retry_count == 0 for e in pending)
    assert remote.calls_for("list") == []

    calls_before = len(remote.calls)
    second = await reconciler.run_cycle(later)
    assert second.skipped_reason == "auth_suspended"
    assert len(remote.calls) == calls_before

    credentials.token = "new"
    third = await reconciler.run_cycle(later)
    assert third.ok
    assert not reconciler.is_suspended
    assert set(remote.records["decks"]) == {"d1", "d2"}


# --- Concurrency ---


class SlowRemote(FakeRemoteGateway):
    def __init__(self):
        super().__init__()
        self.active = 0
        self.peak = 0

    async def create_entity(self, table, payload):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0.01)
            return await super().create_entity(table, payload)
        finally:
            self.active -= 1


@pytest.mark.asyncio
async def test_parallelism_is_bounded(store, now):
    remote = SlowRemote()
    await store.put_decks([make_deck()])
    remote.seed("decks", make_deck().to_payload())
    await store.put_cards([make_card(f"c{i}") for i in range(8)], track=True)

    report = await _reconciler(store, remote, concurrency=3).run_cycle(now, pull=False)

    assert report.acked == 8
    assert 1 < remote.peak <= 3


class EditDuringCreate(FakeRemoteGateway):
    """Simulates a local edit landing while the create is on the wire."""

    def __init__(self, store):
        super().__init__()
        self.store = store

    async def create_entity(self, table, payload):
        result = await super().create_entity(table, payload)
        if payload["title"] == "First":
            await self.store.put_decks([make_deck(title="Second")], track=True)
        return result


@pytest.mark.asyncio
async def test_edit_during_flight_is_pushed_next_cycle(store, now):
    remote = EditDuringCreate(store)
    await store.put_decks([make_deck(title="First")], track=True)
    reconciler = _reconciler(store, remote)

    await reconciler.run_cycle(now, pull=False)
    [entry] = await store.drain_pending_sync(DECKS)
    assert entry.operation == SyncOperation.UPDATE

    await reconciler.run_cycle(now, pull=False)
    assert remote.records["decks"]["deck-1"]["title"] == "Second"
    assert await store.count_pending() == 0


@pytest.mark.asyncio
async def test_overlapping_cycles_do_not_double_send(store, remote, now):
    await store.put_decks([make_deck()], track=True)
    reconciler = _reconciler(store, remote)

    await asyncio.gather(
        reconciler.run_cycle(now, pull=False), reconciler.run_cycle(now, pull=False)
    )

    assert len(remote.calls_for("create")) == 1


@pytest.mark.asyncio
async def test_entity_locks_are_released_after_a_cycle(store, remote, now):
    await store.put_decks([make_deck("d1"), make_deck("d2")], track=True)
    remote.fail("create", "d2", TransientRemoteError("flaky"))
    reconciler = _reconciler(store, remote)

    await asyncio.gather(
        reconciler.run_cycle(now, pull=False), reconciler.run_cycle(now, pull=False)
    )

    assert reconciler._entity_locks == {}
    assert not reconciler._lock_users


# --- Pull ---


@pytest.mark.asyncio
async def test_pull_populates_empty_store(store, remote, now):
    remote.seed("decks", {"_id": "d1", "title": "Remote deck", "user": "u1"})
    remote.seed(
        "cards",
        {
            "id": "c1",
            "deck": {"_id": "d1"},
            "frontContent": "Q",
            "backContent": "A",
            "srsData": {"easeFactor": 2.2, "interval": 6, "repetitions": 3},
        },
    )

    report = await _reconciler(store, remote).run_cycle(now)

    assert report.pulled == {"decks": (1, 0), "cards": (1, 0)}
    deck = await store.get_deck("d1")
    assert deck.owner_id == "u1"
    card = await store.get_card("c1")
    assert card.deck_id == "d1"
    assert card.srs.interval == 6
    assert card.srs.ease_factor == pytest.approx(2.2)


@pytest.mark.asyncio
async def test_pull_does_not_clobber_unsynced_edit(store, remote, now):
    deck = await _synced_deck(store, remote, title="Server")
    await store.put_decks([replace(deck, title="Local")], track=True)
    remote.fail("update", "deck-1", TransientRemoteError("down"))

    report = await _reconciler(store, remote).run_cycle(now)

    assert report.retried == 1
    assert (await store.get_deck("deck-1")).title == "Local"
    assert not report.ok
    assert await store.get_last_sync_at() is None


@pytest.mark.asyncio
async def test_pull_removes_entities_deleted_remotely(store, remote, now):
    await store.put_decks([make_deck("kept"), make_deck("removed")])
    remote.seed("decks", make_deck("kept").to_payload())

    report = await _reconciler(store, remote).run_cycle(now)

    assert report.pulled["decks"] == (1, 1)
    assert await store.get_deck("removed") is None


@pytest.mark.asyncio
async def test_unreadable_remote_record_is_not_treated_as_deleted(store, remote, now):
    await store.put_decks([make_deck()])
    remote.seed("decks", {"id": "deck-1", "title": "X", "createdAt": "not a date"})

    report = await _reconciler(store, remote).run_cycle(now)

    assert report.pulled["decks"] == (0, 0)
    assert await store.get_deck("deck-1") is not None


@pytest.mark.asyncio
async def test_pull_error_is_reported(store, remote, now):
    remote.fail("list", "decks", TransientRemoteError("down"))

    report = await _reconciler(store, remote).run_cycle(now)

    assert report.pull_errors and "decks" in report.pull_errors[0]
    assert "cards" in report.pulled
    assert await store.get_last_sync_at() is None


@pytest.mark.asyncio
async def test_pull_auth_error_suspends(store, remote, now):
    remote.fail("list", "decks", AuthError("forbidden", status_code=403))
    reconciler = _reconciler(store, remote)

    report = await reconciler.run_cycle(now)

    assert report.auth_suspended
    assert reconciler.is_suspended
