"""Summary: Core application services for CareBridge.

Importance: Orchestrates actor resolution, the entitlement gate, and connection lifecycle writes.
Alternatives: Build a full service layer with dependency injection framework.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from carebridge import lifecycle
from carebridge.billing import membership_update_for_event
from carebridge.completeness import completion_gaps
from carebridge.display import describe_for
from carebridge.entitlement import (
    FREE_RESPONSE_LIMIT,
    EngageAction,
    can_engage,
    get_free_remaining,
    uses_free_quota,
)
from carebridge.errors import Forbidden, InvalidArgument, InvalidState, NotFound, Unauthenticated
from carebridge.events import ConnectionEvent, EventSink, LoggingEventSink
from carebridge.models import (
    Connection,
    ConnectionMetadata,
    ConnectionStatus,
    ConnectionType,
    Decision,
    Membership,
    NextStepType,
    Profile,
    ThreadMessage,
    utc_now,
)
from carebridge.storage.sqlite_store import QuotaClaim, SqliteStore, StoredApiKey, WriteOutcome


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountService:
    """Summary: Manages accounts and the profiles they act as.

    Importance: Provides the identity context the lifecycle engine resolves actors through.
    Alternatives: Use an external identity provider.
    """

    store: SqliteStore

    def create_account(self, email: str, display_name: str) -> int:
        account_id = self.store.ensure_account(email, display_name)
        self.store.ensure_membership(account_id)
        return account_id

    def add_profile(self, account_id: int, profile: Profile, make_active: bool = False) -> str:
        """Summary: Attach a profile to an account.

        Importance: The first profile of an account becomes its active profile.
        Alternatives: Require an explicit profile switch after every creation.
        """

        account = self.store.get_account(account_id)
        if account is None:
            raise NotFound(f"Account {account_id} not found")
        profile_id = self.store.save_profile(profile, account_id=account_id)
        if make_active or not account.active_profile_id:
            self.store.set_active_profile(account_id, profile_id)
        logger.info("Added %s profile %s to account %s.", profile.type.value, profile_id, account_id)
        return profile_id


@dataclass(frozen=True)
class ApiKeyService:
    """Summary: Issues and verifies API keys for accounts.

    Importance: Resolves the authenticated actor for every API request.
    Alternatives: Use OAuth or an external auth service.
    """

    store: SqliteStore
    token_secret: str

    def create_api_key(self, account_id: int, label: str | None = None) -> tuple[int, str]:
        """Summary: Create a new API key for an account.

        Importance: Returns a one-time plaintext token for client storage.
        Alternatives: Store raw tokens in the database.
        """

        raw_token = secrets.token_urlsafe(32)
        key_id = self.store.create_api_key(
            account_id=account_id,
            token_hash=self._hash_token(raw_token),
            label=label,
            created_at=utc_now(),
        )
        return key_id, raw_token

    def revoke_api_key(self, account_id: int, key_id: int) -> bool:
        return self.store.delete_api_key(account_id, key_id)

    def list_api_keys(self, account_id: int) -> list[StoredApiKey]:
        return self.store.list_api_keys(account_id)

    def resolve_account_id(self, token: str | None) -> int | None:
        if not token:
            return None
        return self.store.get_account_id_for_token(self._hash_token(token))

    def _hash_token(self, token: str) -> str:
        salt = self.token_secret or "carebridge"
        return hashlib.sha256(f"{salt}:{token}".encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class MembershipService:
    """Summary: Reads the membership ledger and applies billing webhook events.

    Importance: Keeps subscription state current for the entitlement gate.
    Alternatives: Query the payment provider on every gated action.
    """

    store: SqliteStore
    free_response_limit: int = FREE_RESPONSE_LIMIT

    def get(self, account_id: int) -> Membership | None:
        return self.store.get_membership(account_id)

    def summary(self, account_id: int) -> dict[str, Any]:
        membership = self.store.get_membership(account_id)
        return {
            "status": membership.status.value if membership else None,
            "plan": membership.plan if membership else None,
            "free_responses_used": membership.free_responses_used if membership else 0,
            "free_remaining": get_free_remaining(membership, self.free_response_limit),
        }

    def apply_billing_event(self, event: dict[str, Any]) -> int:
        """Summary: Apply a verified payment provider event to the ledger.

        Importance: Upgrades, renewals, cancellations, and failed payments change what providers may do.
        Alternatives: Reconcile memberships on a nightly schedule.
        """

        update = membership_update_for_event(event)
        if update is None:
            logger.info("Ignored billing event %s.", event.get("type"))
            return 0
        if update.account_id is not None:
            self.store.ensure_membership(update.account_id)
            changed = int(self.store.update_membership(update.account_id, update.fields))
        else:
            changed = self.store.update_membership_by_customer(
                update.customer_id or "", update.fields
            )
        logger.info("Applied billing event %s to %s memberships.", event.get("type"), changed)
        return changed


@dataclass(frozen=True)
class ConnectionView:
    """Summary: A connection joined with both participants for one viewer.

    Importance: Gives the viewer everything needed to render a connection in one call.
    Alternatives: Let clients fetch profiles separately.
    """

    connection: Connection
    from_profile: Profile | None
    to_profile: Profile | None
    details_locked: bool
    display_status: str
    tab: str
    hidden: bool = False

    def to_dict(self) -> dict[str, Any]:
        connection = self.connection.to_dict()
        if self.details_locked:
            connection["message"] = None
            connection["metadata"]["thread"] = []
        # who else removed the connection from their list is not shown to the viewer
        connection["metadata"].pop("hidden_by", None)
        connection["hidden"] = self.hidden
        connection["details_locked"] = self.details_locked
        connection["display_status"] = self.display_status
        connection["tab"] = self.tab
        return {
            "connection": connection,
            "from_profile": self.from_profile.summary() if self.from_profile else None,
            "to_profile": self.to_profile.summary() if self.to_profile else None,
        }


@dataclass(frozen=True)
class ConnectionService:
    """Summary: Runs connection lifecycle operations on behalf of one account.

    Importance: Applies the uniform rule: resolve actor, fetch, authorize, check status, conditional write.
    Alternatives: Implement each operation as an independent route handler.
    """

    store: SqliteStore
    account_id: int
    events: EventSink = field(default_factory=LoggingEventSink)
    free_response_limit: int = FREE_RESPONSE_LIMIT
    allow_duplicate_requests: bool = True
    append_retries: int = 3

    def create(
        self,
        to_profile_id: str,
        connection_type: ConnectionType,
        message: str | None = None,
        from_profile_id: str | None = None,
    ) -> Connection:
        """Summary: Create a connection from the actor's active profile.

        Importance: Providers initiating contact must be shareable and entitled; dismissals are immediately archived.
        Alternatives: Let any profile message any other without checks.
        """

        actor = self._active_profile()
        if from_profile_id is not None and from_profile_id != actor.id:
            raise Forbidden("Connections can only be sent from your active profile")
        if to_profile_id == actor.id:
            raise InvalidArgument("Cannot create a connection to yourself")
        if self.store.get_profile(to_profile_id) is None:
            raise NotFound("Profile not found")

        quota = None
        if connection_type is not ConnectionType.DISMISS:
            if not self.allow_duplicate_requests and self.store.find_open_connection(
                actor.id, to_profile_id, connection_type, lifecycle.OPEN_STATUSES
            ):
                raise InvalidState("An open connection already exists")
            if actor.type.is_provider:
                gaps = list(completion_gaps(actor))
                if gaps:
                    raise Forbidden(f"Complete your profile first: {', '.join(gaps)}")
                quota = self._gate(actor, EngageAction.INITIATE_CONTACT)

        now = utc_now()
        connection = Connection(
            id=str(uuid.uuid4()),
            from_profile_id=actor.id,
            to_profile_id=to_profile_id,
            type=connection_type,
            status=lifecycle.initial_status(connection_type),
            message=(message or "").strip() or None,
            metadata=ConnectionMetadata(),
            created_at=now,
            updated_at=now,
        )
        outcome = self.store.insert_connection(connection, quota=quota)
        if outcome is WriteOutcome.QUOTA_EXHAUSTED:
            raise Forbidden("Free responses used up. Upgrade to continue.")
        logger.info(
            "Created %s connection %s from %s to %s.",
            connection_type.value,
            connection.id,
            actor.id,
            to_profile_id,
        )
        if connection_type is not ConnectionType.DISMISS:
            self._publish("connection.created", connection, actor.id, to_profile_id)
        return connection

    def respond(self, connection_id: str, decision: Decision) -> Connection:
        actor = self._active_profile()
        current = self._load(connection_id)
        updated = lifecycle.respond(current, actor.id, decision, utc_now())
        quota = None
        if actor.type.is_provider:
            quota = self._gate(actor, EngageAction.RESPOND_TO_INQUIRY)
        self._commit(current, updated, quota)
        logger.info("Connection %s %s by %s.", connection_id, updated.status.value, actor.id)
        self._publish(
            "connection.responded",
            updated,
            actor.id,
            current.from_profile_id,
            {"decision": decision.value},
        )
        return updated

    def withdraw(self, connection_id: str) -> Connection:
        actor = self._active_profile()
        current = self._load(connection_id)
        updated = lifecycle.withdraw(current, actor.id, utc_now())
        self._commit(current, updated)
        logger.info("Connection %s withdrawn by %s.", connection_id, actor.id)
        # recipient is not notified of withdrawals
        self._publish("connection.withdrawn", updated, actor.id, None)
        return updated

    def end(self, connection_id: str) -> Connection:
        actor = self._active_profile()
        current = self._load(connection_id)
        updated = lifecycle.end(current, actor.id, utc_now())
        self._commit(current, updated)
        logger.info("Connection %s ended by %s.", connection_id, actor.id)
        self._publish("connection.ended", updated, actor.id, current.counterpart_of(actor.id))
        return updated

    def message(self, connection_id: str, text: str) -> tuple[ThreadMessage, ...]:
        """Summary: Append a message to the connection's thread.

        Importance: Appends retry on revision conflicts so concurrent messages are never lost.
        Alternatives: Accept last-writer-wins on the metadata document.
        """

        actor = self._active_profile()
        updated = self._apply_with_retry(
            connection_id,
            lambda current: lifecycle.post_message(current, actor.id, text, utc_now()),
        )
        logger.info("Message appended to connection %s by %s.", connection_id, actor.id)
        self._publish(
            "connection.message", updated, actor.id, updated.counterpart_of(actor.id)
        )
        return updated.metadata.thread

    def hide(self, connection_id: str) -> Connection:
        actor = self._active_profile()
        updated = self._apply_with_retry(
            connection_id, lambda current: lifecycle.hide(current, actor.id, utc_now())
        )
        logger.info("Connection %s hidden by %s.", connection_id, actor.id)
        self._publish("connection.hidden", updated, actor.id, None)
        return updated

    def request_next_step(
        self, connection_id: str, step: NextStepType, note: str | None = None
    ) -> Connection:
        actor = self._active_profile()
        updated = self._apply_with_retry(
            connection_id,
            lambda current: lifecycle.request_next_step(
                current, actor.id, actor.display_name or "Care seeker", step, note, utc_now()
            ),
        )
        logger.info("Next step %s requested on connection %s.", step.value, connection_id)
        self._publish(
            "connection.next_step",
            updated,
            actor.id,
            updated.counterpart_of(actor.id),
            {"action": "request", "type": step.value},
        )
        return updated

    def cancel_next_step(self, connection_id: str) -> Connection:
        actor = self._active_profile()
        updated = self._apply_with_retry(
            connection_id,
            lambda current: lifecycle.cancel_next_step(
                current, actor.id, actor.display_name or "Care seeker", utc_now()
            ),
        )
        logger.info("Next step cancelled on connection %s.", connection_id)
        self._publish(
            "connection.next_step",
            updated,
            actor.id,
            updated.counterpart_of(actor.id),
            {"action": "cancel"},
        )
        return updated

    def get(self, connection_id: str) -> ConnectionView:
        """Summary: Fetch one connection with both participants for the actor.

        Importance: Provider recipients without entitlement see the request exists but not its details.
        Alternatives: Hide locked inquiries entirely.
        """

        actor = self._active_profile()
        connection = self._load(connection_id)
        if not connection.is_participant(actor.id):
            raise Forbidden("Not authorized")
        return self._view(actor, connection)

    def list_connections(self, include_hidden: bool = False, limit: int = 100) -> list[ConnectionView]:
        actor = self._active_profile()
        connections = self.store.list_connections(actor.id, limit=limit)
        return [
            self._view(actor, connection)
            for connection in connections
            if include_hidden or not connection.metadata.is_hidden_for(actor.id)
        ]

    def save(self, profile_id: str) -> bool:
        """Summary: Bookmark a profile for the actor's active profile.

        Importance: Saving is free for every actor and never touches the response quota.
        Alternatives: Keep saved profiles only on the client.
        """

        actor = self._active_profile()
        if not profile_id:
            raise InvalidArgument("profile_id is required")
        if profile_id == actor.id:
            raise InvalidArgument("Cannot save your own profile")
        if self.store.get_profile(profile_id) is None:
            raise NotFound("Profile not found")
        membership = self.store.get_membership(self.account_id)
        if not can_engage(actor.type, membership, EngageAction.SAVE, self.free_response_limit):
            raise Forbidden("Upgrade required to continue")
        inserted = self.store.add_saved_profile(actor.id, profile_id, utc_now())
        if inserted:
            logger.info("Profile %s saved %s.", actor.id, profile_id)
        return inserted

    def unsave(self, profile_id: str) -> bool:
        actor = self._active_profile()
        if not profile_id:
            raise InvalidArgument("profile_id is required")
        return self.store.remove_saved_profile(actor.id, profile_id)

    def list_saved(self) -> list[Profile]:
        actor = self._active_profile()
        saved_ids = self.store.list_saved_profile_ids(actor.id)
        profiles = self.store.get_profiles(saved_ids)
        return [profiles[saved_id] for saved_id in saved_ids if saved_id in profiles]

    def _view(self, actor: Profile, connection: Connection) -> ConnectionView:
        profiles = self.store.get_profiles([connection.from_profile_id, connection.to_profile_id])
        locked = (
            actor.type.is_provider
            and connection.to_profile_id == actor.id
            and connection.status is ConnectionStatus.PENDING
            and not can_engage(
                actor.type,
                self.store.get_membership(self.account_id),
                EngageAction.VIEW_INQUIRY_DETAILS,
                self.free_response_limit,
            )
        )
        display = describe_for(connection, actor.id, actor.type.is_provider)
        return ConnectionView(
            connection=connection,
            from_profile=profiles.get(connection.from_profile_id),
            to_profile=profiles.get(connection.to_profile_id),
            details_locked=locked,
            display_status=display["display_status"],
            tab=display["tab"],
            hidden=connection.metadata.is_hidden_for(actor.id),
        )

    def _active_profile(self) -> Profile:
        account = self.store.get_account(self.account_id)
        if account is None:
            raise Unauthenticated("Not authenticated")
        if not account.active_profile_id:
            raise InvalidArgument("No active profile")
        profile = self.store.get_profile(account.active_profile_id)
        if profile is None:
            raise InvalidArgument("No active profile")
        return profile

    def _load(self, connection_id: str) -> Connection:
        if not connection_id:
            raise InvalidArgument("connection_id is required")
        connection = self.store.get_connection(connection_id)
        if connection is None:
            raise NotFound("Connection not found")
        return connection

    def _gate(self, actor: Profile, action: EngageAction) -> QuotaClaim | None:
        membership = self.store.get_membership(self.account_id)
        if not can_engage(actor.type, membership, action, self.free_response_limit):
            logger.warning("Entitlement denied %s for profile %s.", action.value, actor.id)
            raise Forbidden("Upgrade required to continue")
        if uses_free_quota(actor.type, membership, action):
            return QuotaClaim(account_id=self.account_id, limit=self.free_response_limit)
        return None

    def _commit(
        self, current: Connection, updated: Connection, quota: QuotaClaim | None = None
    ) -> None:
        outcome = self.store.compare_and_swap(
            updated, expected_status=current.status, expected_revision=current.revision, quota=quota
        )
        if outcome is WriteOutcome.CONFLICT:
            logger.warning("Conflicting update on connection %s.", current.id)
            raise InvalidState("Connection was changed by another request")
        if outcome is WriteOutcome.QUOTA_EXHAUSTED:
            raise Forbidden("Free responses used up. Upgrade to continue.")

    def _apply_with_retry(
        self, connection_id: str, transition: Callable[[Connection], Connection]
    ) -> Connection:
        attempts = max(1, self.append_retries)
        for _ in range(attempts):
            current = self._load(connection_id)
            updated = transition(current)
            outcome = self.store.compare_and_swap(
                updated, expected_status=current.status, expected_revision=current.revision
            )
            if outcome is WriteOutcome.APPLIED:
                return updated
            logger.warning("Retrying write on connection %s after conflict.", connection_id)
        raise InvalidState("Connection was changed by another request")

    def _publish(
        self,
        name: str,
        connection: Connection,
        actor_profile_id: str,
        notify_profile_id: str | None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        self.events.publish(
            ConnectionEvent(
                name=name,
                connection_id=connection.id,
                actor_profile_id=actor_profile_id,
                notify_profile_id=notify_profile_id,
                created_at=connection.updated_at,
                payload=payload or {},
            )
        )
