"""Summary: Tests for the connection lifecycle service.

Importance: Ensures actor resolution, authorization, quota charging, and thread appends work against real storage.
Alternatives: Mock the store and test services in isolation.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path

import pytest

from carebridge.errors import Forbidden, InvalidArgument, InvalidState, NotFound, Unauthenticated
from carebridge.events import InMemoryEventSink
from carebridge.models import (
    Connection,
    ConnectionStatus,
    ConnectionType,
    Decision,
    MembershipStatus,
    NextStepType,
    Profile,
    ProfileType,
    ThreadMessage,
)
from carebridge.services import AccountService, ConnectionService
from carebridge.storage.sqlite_store import QuotaClaim, SqliteStore, WriteOutcome


@dataclass
class Marketplace:
    store: SqliteStore
    events: InMemoryEventSink
    family_account: int
    provider_account: int

    def family(self, **options: object) -> ConnectionService:
        return ConnectionService(
            store=self.store, account_id=self.family_account, events=self.events, **options
        )

    def provider(self, **options: object) -> ConnectionService:
        return ConnectionService(
            store=self.store, account_id=self.provider_account, events=self.events, **options
        )


def _provider_profile(profile_id: str = "provider") -> Profile:
    return Profile(
        id=profile_id,
        type=ProfileType.ORGANIZATION,
        display_name="Sunrise Home Care",
        city="Austin",
        state="TX",
        care_types=frozenset({"home_care"}),
        description="Licensed in-home care.",
        phone="555-0100",
    )


def _build_marketplace(tmp_path: Path, store: SqliteStore | None = None) -> Marketplace:
    """Summary: Build a store with one family and one complete provider.

    Importance: Gives every test the two sides of a connection.
    Alternatives: Share a module-level database between tests.
    """

    store = store or SqliteStore(str(tmp_path / "test.db"))
    store.initialize()
    accounts = AccountService(store=store)
    family_account = accounts.create_account("maria@example.com", "Maria")
    accounts.add_profile(
        family_account,
        Profile(
            id="family",
            type=ProfileType.FAMILY,
            display_name="Maria",
            city="Austin",
            care_types=frozenset({"home_care"}),
        ),
    )
    provider_account = accounts.create_account("ops@sunrise.example.com", "Sunrise")
    accounts.add_profile(provider_account, _provider_profile())
    return Marketplace(store, InMemoryEventSink(), family_account, provider_account)


def test_inquiry_end_to_end(tmp_path: Path) -> None:
    """Summary: Verify an inquiry can be accepted, discussed, and ended.

    Importance: Covers the main happy path from both sides.
    Alternatives: Test each transition only in isolation.
    """

    market = _build_marketplace(tmp_path)
    store = market.store
    store.update_membership(market.provider_account, {"status": MembershipStatus.ACTIVE})

    created = market.family().create("provider", ConnectionType.INQUIRY, "  Need help  ")
    assert created.status is ConnectionStatus.PENDING
    assert created.message == "Need help"

    accepted = market.provider().respond(created.id, Decision.ACCEPT)
    assert accepted.status is ConnectionStatus.ACCEPTED

    market.family().message(created.id, "Thank you!")
    thread = market.provider().message(created.id, "Talk soon.")
    assert [entry.from_profile_id for entry in thread] == ["family", "provider"]

    ended = market.family().end(created.id)
    assert ended.status is ConnectionStatus.EXPIRED
    stored = store.get_connection(created.id)
    assert stored.metadata.ended is True
    assert len(stored.metadata.thread) == 3
    assert market.events.names() == [
        "connection.created",
        "connection.responded",
        "connection.message",
        "connection.message",
        "connection.ended",
    ]
    assert market.events.events[-1].notify_profile_id == "provider"


def test_withdraw_hidden_from_recipient_notifications(tmp_path: Path) -> None:
    market = _build_marketplace(tmp_path)
    created = market.family().create("provider", ConnectionType.INQUIRY)

    with pytest.raises(Forbidden):
        market.provider().withdraw(created.id)

    withdrawn = market.family().withdraw(created.id)
    assert withdrawn.status is ConnectionStatus.EXPIRED
    assert withdrawn.metadata.withdrawn is True
    assert market.events.events[-1].name == "connection.withdrawn"
    assert market.events.events[-1].notify_profile_id is None

    view = market.family().get(created.id)
    assert view.display_status == "withdrawn"
    assert view.tab == "past"


def test_dismiss_is_archived_without_notification(tmp_path: Path) -> None:
    market = _build_marketplace(tmp_path)
    dismissed = market.family().create("provider", ConnectionType.DISMISS)
    assert dismissed.status is ConnectionStatus.ARCHIVED
    assert market.events.events == []
    with pytest.raises(InvalidState):
        market.provider().respond(dismissed.id, Decision.ACCEPT)


def test_second_response_is_rejected(tmp_path: Path) -> None:
    """Summary: Verify a connection can only be responded to once.

    Importance: A repeated accept must not flip or recharge the connection.
    Alternatives: Make respond idempotent.
    """

    market = _build_marketplace(tmp_path)
    created = market.family().create("provider", ConnectionType.INQUIRY)
    market.provider().respond(created.id, Decision.DECLINE)
    with pytest.raises(InvalidState):
        market.provider().respond(created.id, Decision.ACCEPT)
    assert market.store.get_connection(created.id).status is ConnectionStatus.DECLINED
    assert market.store.get_membership(market.provider_account).free_responses_used == 1


def test_non_participants_are_rejected(tmp_path: Path) -> None:
    market = _build_marketplace(tmp_path)
    created = market.family().create("provider", ConnectionType.INQUIRY)
    accounts = AccountService(store=market.store)
    outsider = accounts.create_account("other@example.com", "Other")
    accounts.add_profile(outsider, Profile(id="other", type=ProfileType.FAMILY, display_name="Other"))
    stranger = ConnectionService(store=market.store, account_id=outsider)

    with pytest.raises(Forbidden):
        stranger.get(created.id)
    with pytest.raises(Forbidden):
        stranger.message(created.id, "hello")
    with pytest.raises(Forbidden):
        stranger.respond(created.id, Decision.ACCEPT)


def test_actor_and_target_resolution(tmp_path: Path) -> None:
    market = _build_marketplace(tmp_path)
    with pytest.raises(NotFound):
        market.family().create("missing", ConnectionType.INQUIRY)
    with pytest.raises(InvalidArgument):
        market.family().create("family", ConnectionType.INQUIRY)
    with pytest.raises(Forbidden):
        market.family().create("provider", ConnectionType.INQUIRY, from_profile_id="provider")
    with pytest.raises(NotFound):
        market.family().respond("missing", Decision.ACCEPT)
    with pytest.raises(InvalidArgument):
        market.family().withdraw("")
    with pytest.raises(Unauthenticated):
        ConnectionService(store=market.store, account_id=999).list_connections()

    empty_account = AccountService(store=market.store).create_account("new@example.com", "New")
    with pytest.raises(InvalidArgument):
        ConnectionService(store=market.store, account_id=empty_account).list_connections()


def test_free_provider_quota_is_consumed_and_enforced(tmp_path: Path) -> None:
    """Summary: Verify free providers get three responses, then hit the paywall.

    Importance: The counter is charged only when the response is written.
    Alternatives: Charge on view instead of on response.
    """

    market = _build_marketplace(tmp_path)
    ids = [market.family().create("provider", ConnectionType.INQUIRY).id for _ in range(4)]

    for connection_id in ids[:3]:
        market.provider().respond(connection_id, Decision.ACCEPT)
    assert market.store.get_membership(market.provider_account).free_responses_used == 3

    with pytest.raises(Forbidden):
        market.provider().respond(ids[3], Decision.ACCEPT)
    assert market.store.get_connection(ids[3]).status is ConnectionStatus.PENDING
    assert market.store.get_membership(market.provider_account).free_responses_used == 3


def test_family_actions_never_consume_quota(tmp_path: Path) -> None:
    market = _build_marketplace(tmp_path)
    market.store.update_membership(market.provider_account, {"status": MembershipStatus.ACTIVE})
    invitation = market.provider().create("family", ConnectionType.INVITATION)
    market.family().respond(invitation.id, Decision.ACCEPT)
    assert market.store.get_membership(market.family_account).free_responses_used == 0
    assert market.store.get_membership(market.provider_account).free_responses_used == 0


def test_provider_outreach_requires_complete_profile(tmp_path: Path) -> None:
    market = _build_marketplace(tmp_path)
    accounts = AccountService(store=market.store)
    accounts.add_profile(
        market.provider_account,
        Profile(id="bare", type=ProfileType.CAREGIVER, display_name="Sam"),
        make_active=True,
    )
    with pytest.raises(Forbidden) as excinfo:
        market.provider().create("family", ConnectionType.APPLICATION)
    assert "Description" in excinfo.value.detail
    assert market.store.get_membership(market.provider_account).free_responses_used == 0


def test_duplicate_requests_blocked_when_disabled(tmp_path: Path) -> None:
    market = _build_marketplace(tmp_path)
    market.family().create("provider", ConnectionType.INQUIRY)
    market.family().create("provider", ConnectionType.INQUIRY)
    with pytest.raises(InvalidState):
        market.family(allow_duplicate_requests=False).create("provider", ConnectionType.INQUIRY)
    market.family(allow_duplicate_requests=False).create("provider", ConnectionType.DISMISS)


def test_locked_details_for_unentitled_provider(tmp_path: Path) -> None:
    """Summary: Verify a provider out of free responses sees the inquiry but not its message.

    Importance: Viewing is never charged, and details stay behind the paywall.
    Alternatives: Hide locked inquiries from the provider's list.
    """

    market = _build_marketplace(tmp_path)
    created = market.family().create("provider", ConnectionType.INQUIRY, "Private details")

    unlocked = market.provider().get(created.id)
    assert unlocked.details_locked is False
    assert unlocked.to_dict()["connection"]["message"] == "Private details"

    market.store.update_membership(market.provider_account, {"status": MembershipStatus.CANCELED})
    locked = market.provider().get(created.id)
    payload = locked.to_dict()
    assert locked.details_locked is True
    assert payload["connection"]["message"] is None
    assert payload["connection"]["details_locked"] is True
    assert payload["from_profile"]["display_name"] == "Maria"
    assert market.store.get_membership(market.provider_account).free_responses_used == 0


def test_hide_only_changes_the_actors_list(tmp_path: Path) -> None:
    """Summary: Verify hiding removes a connection from the hider's list only.

    Importance: Removing a past connection is a personal list action; the counterpart keeps it.
    Alternatives: Share one hidden flag between both participants.
    """

    market = _build_marketplace(tmp_path)
    first = market.family().create("provider", ConnectionType.INQUIRY)
    second = market.family().create("provider", ConnectionType.INQUIRY)

    with pytest.raises(InvalidState):
        market.family().hide(first.id)
    market.provider().respond(first.id, Decision.DECLINE)
    hidden = market.family().hide(first.id)
    assert hidden.metadata.is_hidden_for("family")

    visible = [view.connection.id for view in market.family().list_connections()]
    assert visible == [second.id]
    everything = {view.connection.id for view in market.family().list_connections(include_hidden=True)}
    assert everything == {first.id, second.id}

    provider_views = {view.connection.id: view for view in market.provider().list_connections()}
    assert set(provider_views) == {first.id, second.id}
    provider_payload = provider_views[first.id].to_dict()["connection"]
    assert provider_payload["hidden"] is False
    assert "hidden_by" not in provider_payload["metadata"]
    assert market.family().get(first.id).to_dict()["connection"]["hidden"] is True


def test_second_hide_is_rejected(tmp_path: Path) -> None:
    market = _build_marketplace(tmp_path)
    dismissed = market.family().create("provider", ConnectionType.DISMISS)
    market.family().hide(dismissed.id)
    revision = market.store.get_connection(dismissed.id).revision
    with pytest.raises(InvalidState):
        market.family().hide(dismissed.id)
    assert market.store.get_connection(dismissed.id).revision == revision
    assert market.events.names() == ["connection.hidden"]


def test_next_step_request_and_cancel(tmp_path: Path) -> None:
    market = _build_marketplace(tmp_path)
    created = market.family().create("provider", ConnectionType.INQUIRY)
    with pytest.raises(InvalidState):
        market.family().request_next_step(created.id, NextStepType.CALL)
    market.provider().respond(created.id, Decision.ACCEPT)

    requested = market.family().request_next_step(created.id, NextStepType.CONSULTATION, "Fridays")
    assert requested.metadata.next_step_request.type is NextStepType.CONSULTATION
    assert requested.metadata.thread[-1].text == (
        'Maria would like to request a consultation. "Fridays"'
    )
    with pytest.raises(InvalidState):
        market.provider().request_next_step(created.id, NextStepType.VISIT)

    cancelled = market.provider().cancel_next_step(created.id)
    assert cancelled.metadata.next_step_request is None
    assert cancelled.metadata.thread[-1].text == (
        "Sunrise Home Care cancelled the request a consultation"
    )
    assert market.events.events[-1].payload == {"action": "cancel"}


def test_memory_care_inquiry_scenario(tmp_path: Path) -> None:
    market = _build_marketplace(tmp_path)
    created = market.family().create("provider", ConnectionType.INQUIRY, "Looking for memory care")
    assert created.status is ConnectionStatus.PENDING
    market.provider().respond(created.id, Decision.ACCEPT)
    thread = market.family().message(created.id, "When can we visit?")
    assert len(thread) == 1
    ended = market.provider().end(created.id)
    assert ended.status is ConnectionStatus.EXPIRED
    assert ended.metadata.ended is True
    assert len(ended.metadata.thread) == 2
    assert ended.metadata.next_step_request is None


def test_terminal_connections_reject_transitions(tmp_path: Path) -> None:
    """Summary: Verify declined, withdrawn, and ended connections cannot move again.

    Importance: Terminal records must stay exactly as they were left.
    Alternatives: Allow reopening past connections.
    """

    market = _build_marketplace(tmp_path)
    market.store.update_membership(market.provider_account, {"status": MembershipStatus.ACTIVE})
    declined = market.family().create("provider", ConnectionType.INQUIRY)
    market.provider().respond(declined.id, Decision.DECLINE)
    withdrawn = market.family().create("provider", ConnectionType.INQUIRY)
    market.family().withdraw(withdrawn.id)
    ended = market.family().create("provider", ConnectionType.INQUIRY)
    market.provider().respond(ended.id, Decision.ACCEPT)
    market.provider().end(ended.id)

    for connection_id in (declined.id, withdrawn.id, ended.id):
        before = market.store.get_connection(connection_id)
        with pytest.raises(InvalidState):
            market.provider().respond(connection_id, Decision.ACCEPT)
        with pytest.raises(InvalidState):
            market.family().withdraw(connection_id)
        with pytest.raises(InvalidState):
            market.family().end(connection_id)
        assert market.store.get_connection(connection_id) == before


def test_thread_preserves_call_order(tmp_path: Path) -> None:
    market = _build_marketplace(tmp_path)
    created = market.family().create("provider", ConnectionType.INQUIRY)
    texts = [f"message {index}" for index in range(5)]
    for index, text in enumerate(texts):
        sender = market.family() if index % 2 == 0 else market.provider()
        sender.message(created.id, text)
    stored = market.store.get_connection(created.id)
    assert [entry.text for entry in stored.metadata.thread] == texts
    assert stored.revision == len(texts)


class RacingStore(SqliteStore):
    """Summary: Store that lets another participant write just before each guarded update.

    Importance: Reproduces a concurrent append landing between a read and its write.
    Alternatives: Run two real threads against the same database file.
    """

    def __init__(self, db_path: str, races: int) -> None:
        super().__init__(db_path)
        self.races = races
        self.attempts = 0

    def compare_and_swap(
        self,
        updated: Connection,
        expected_status: ConnectionStatus,
        expected_revision: int,
        quota: QuotaClaim | None = None,
    ) -> WriteOutcome:
        self.attempts += 1
        if self.races > 0:
            self.races -= 1
            current = self.get_connection(updated.id)
            rival = ThreadMessage("provider", "Rival reply", current.updated_at)
            super().compare_and_swap(
                replace(current, metadata=current.metadata.append(rival)),
                current.status,
                current.revision,
            )
        return super().compare_and_swap(updated, expected_status, expected_revision, quota)


def test_message_retries_after_concurrent_append(tmp_path: Path) -> None:
    """Summary: Verify a stale append is retried on top of the concurrent one.

    Importance: Neither message is lost and the rival write stays first.
    Alternatives: Fail the request as soon as the revision moved.
    """

    store = RacingStore(str(tmp_path / "test.db"), races=0)
    market = _build_marketplace(tmp_path, store=store)
    created = market.family().create("provider", ConnectionType.INQUIRY)

    store.races = 1
    thread = market.family().message(created.id, "Mine")

    assert [entry.text for entry in thread] == ["Rival reply", "Mine"]
    assert store.attempts == 2
    stored = store.get_connection(created.id)
    assert [entry.text for entry in stored.metadata.thread] == ["Rival reply", "Mine"]
    assert stored.revision == 2


def test_message_gives_up_after_repeated_conflicts(tmp_path: Path) -> None:
    store = RacingStore(str(tmp_path / "test.db"), races=0)
    market = _build_marketplace(tmp_path, store=store)
    created = market.family().create("provider", ConnectionType.INQUIRY)

    store.races = 10
    with pytest.raises(InvalidState) as excinfo:
        market.family(append_retries=2).message(created.id, "Mine")
    assert excinfo.value.detail == "Connection was changed by another request"
    assert store.attempts == 2
    texts = [entry.text for entry in store.get_connection(created.id).metadata.thread]
    assert texts == ["Rival reply", "Rival reply"]
    assert "connection.message" not in market.events.names()


def test_save_and_unsave_profiles(tmp_path: Path) -> None:
    """Summary: Verify saving is idempotent, listed, removable, and free.

    Importance: Bookmarks must never draw down a free provider's responses.
    Alternatives: Store bookmarks on the client only.
    """

    market = _build_marketplace(tmp_path)
    market.store.update_membership(market.provider_account, {"status": MembershipStatus.CANCELED})

    assert market.family().save("provider") is True
    assert market.family().save("provider") is False
    assert [profile.id for profile in market.family().list_saved()] == ["provider"]

    assert market.provider().save("family") is True
    assert [profile.id for profile in market.provider().list_saved()] == ["family"]
    assert market.store.get_membership(market.provider_account).free_responses_used == 0

    assert market.family().unsave("provider") is True
    assert market.family().unsave("provider") is False
    assert market.family().list_saved() == []
    assert [profile.id for profile in market.provider().list_saved()] == ["family"]


def test_save_rejects_invalid_targets(tmp_path: Path) -> None:
    market = _build_marketplace(tmp_path)
    with pytest.raises(InvalidArgument):
        market.family().save("")
    with pytest.raises(InvalidArgument):
        market.family().save("family")
    with pytest.raises(NotFound):
        market.family().save("missing")
    with pytest.raises(InvalidArgument):
        market.family().unsave("")
    assert market.family().list_saved() == []
