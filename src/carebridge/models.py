"""Summary: Domain model dataclasses for CareBridge.

Importance: Defines the profiles, connections, threads, and memberships shared across services and storage.
Alternatives: Use Pydantic models or ORM classes directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ProfileType(str, Enum):
    """Summary: Kind of party acting in the marketplace.

    Importance: Separates the demand side (families) from metered providers.
    Alternatives: Store a free-form role string on each profile.
    """

    FAMILY = "family"
    ORGANIZATION = "organization"
    CAREGIVER = "caregiver"

    @property
    def is_provider(self) -> bool:
        return self is not ProfileType.FAMILY


class ConnectionType(str, Enum):
    INQUIRY = "inquiry"
    APPLICATION = "application"
    INVITATION = "invitation"
    DISMISS = "dismiss"


class ConnectionStatus(str, Enum):
    """Summary: Closed set of connection lifecycle states.

    Importance: Every transition checks against these values instead of raw strings.
    Alternatives: Keep status as an unchecked text column.
    """

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    ARCHIVED = "archived"


class Decision(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"


class MembershipStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    FREE = "free"
    TRIALING = "trialing"


class NextStepType(str, Enum):
    """Summary: Follow-up actions a participant can request on an accepted connection.

    Importance: Keeps next step labels and thread wording in one place.
    Alternatives: Accept arbitrary request strings from clients.
    """

    CALL = "call"
    CONSULTATION = "consultation"
    VISIT = "visit"

    @property
    def label(self) -> str:
        return {
            NextStepType.CALL: "Request a call",
            NextStepType.CONSULTATION: "Request a consultation",
            NextStepType.VISIT: "Request a home visit",
        }[self]

    @property
    def phrase(self) -> str:
        return {
            NextStepType.CALL: "would like to request a phone call",
            NextStepType.CONSULTATION: "would like to request a consultation",
            NextStepType.VISIT: "would like to request a home visit",
        }[self]


def utc_now() -> str:
    """Summary: Return the current UTC time as an ISO 8601 string.

    Importance: Keeps all stored timestamps comparable and timezone-aware.
    Alternatives: Store epoch integers.
    """

    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Account:
    """Summary: Authenticated account that owns profiles and a membership.

    Importance: Resolves an authenticated actor to its single active profile.
    Alternatives: Attach profiles directly to identity provider users.
    """

    id: int
    email: str
    display_name: str
    active_profile_id: str | None


@dataclass(frozen=True)
class Profile:
    """Summary: A family, organization, or caregiver listed in the directory.

    Importance: Participants of every connection and the subject of completeness checks.
    Alternatives: Split families and providers into separate record types.
    """

    id: str
    type: ProfileType
    display_name: str
    city: str | None = None
    state: str | None = None
    care_types: frozenset[str] = frozenset()
    description: str | None = None
    phone: str | None = None
    email: str | None = None
    website: str | None = None

    def summary(self) -> dict[str, Any]:
        """Summary: Public profile fields shown to the other participant.

        Importance: Joins participant details into connection views.
        Alternatives: Return full profile rows to clients.
        """

        return {
            "id": self.id,
            "type": self.type.value,
            "display_name": self.display_name,
            "city": self.city,
            "state": self.state,
            "care_types": sorted(self.care_types),
            "description": self.description,
            "phone": self.phone,
            "email": self.email,
            "website": self.website,
        }


@dataclass(frozen=True)
class ThreadMessage:
    """Summary: A single entry in a connection's conversation thread.

    Importance: Thread entries are immutable once appended.
    Alternatives: Store messages in a separate table keyed by sequence number.
    """

    from_profile_id: str
    text: str
    created_at: str
    type: str = "message"
    next_step: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "from_profile_id": self.from_profile_id,
            "text": self.text,
            "created_at": self.created_at,
        }
        if self.type != "message":
            payload["type"] = self.type
        if self.next_step:
            payload["next_step"] = self.next_step
        return payload

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "ThreadMessage":
        return ThreadMessage(
            from_profile_id=payload["from_profile_id"],
            text=payload["text"],
            created_at=payload["created_at"],
            type=payload.get("type") or "message",
            next_step=payload.get("next_step"),
        )


@dataclass(frozen=True)
class NextStepRequest:
    type: NextStepType
    note: str | None
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "note": self.note, "created_at": self.created_at}

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "NextStepRequest":
        return NextStepRequest(
            type=NextStepType(payload["type"]),
            note=payload.get("note"),
            created_at=payload["created_at"],
        )


_METADATA_KEYS = {
    "thread",
    "withdrawn",
    "withdrawn_at",
    "ended",
    "ended_at",
    "hidden_by",
    "next_step_request",
}


@dataclass(frozen=True)
class ConnectionMetadata:
    """Summary: Explicit fields carried in a connection's metadata document.

    Importance: Gives the thread and lifecycle flags a typed shape while staying JSON on disk.
    Alternatives: Pass the raw metadata dict through every service.
    """

    thread: tuple[ThreadMessage, ...] = ()
    withdrawn: bool = False
    withdrawn_at: str | None = None
    ended: bool = False
    ended_at: str | None = None
    hidden_by: frozenset[str] = frozenset()
    next_step_request: NextStepRequest | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def append(self, message: ThreadMessage) -> "ConnectionMetadata":
        return replace(self, thread=self.thread + (message,))

    def is_hidden_for(self, profile_id: str) -> bool:
        return profile_id in self.hidden_by

    def to_dict(self) -> dict[str, Any]:
        payload = dict(self.extra)
        payload["thread"] = [message.to_dict() for message in self.thread]
        if self.withdrawn:
            payload["withdrawn"] = True
            payload["withdrawn_at"] = self.withdrawn_at
        if self.ended:
            payload["ended"] = True
            payload["ended_at"] = self.ended_at
        if self.hidden_by:
            payload["hidden_by"] = sorted(self.hidden_by)
        payload["next_step_request"] = (
            self.next_step_request.to_dict() if self.next_step_request else None
        )
        return payload

    @staticmethod
    def from_dict(payload: dict[str, Any] | None) -> "ConnectionMetadata":
        """Summary: Build metadata from a stored JSON document.

        Importance: Tolerates missing keys and keeps unknown keys for forward compatibility.
        Alternatives: Reject documents that do not match the current shape.
        """

        payload = payload or {}
        next_step = payload.get("next_step_request")
        return ConnectionMetadata(
            thread=tuple(ThreadMessage.from_dict(item) for item in payload.get("thread") or []),
            withdrawn=bool(payload.get("withdrawn")),
            withdrawn_at=payload.get("withdrawn_at"),
            ended=bool(payload.get("ended")),
            ended_at=payload.get("ended_at"),
            hidden_by=frozenset(payload.get("hidden_by") or []),
            next_step_request=NextStepRequest.from_dict(next_step) if next_step else None,
            extra={key: value for key, value in payload.items() if key not in _METADATA_KEYS},
        )


@dataclass(frozen=True)
class Connection:
    """Summary: A directed relationship request between two profiles.

    Importance: The central record of the lifecycle engine.
    Alternatives: Model inquiries, applications, and invitations as separate tables.
    """

    id: str
    from_profile_id: str
    to_profile_id: str
    type: ConnectionType
    status: ConnectionStatus
    message: str | None
    metadata: ConnectionMetadata
    created_at: str
    updated_at: str
    revision: int = 0

    def is_participant(self, profile_id: str) -> bool:
        return profile_id in (self.from_profile_id, self.to_profile_id)

    def counterpart_of(self, profile_id: str) -> str:
        if profile_id == self.from_profile_id:
            return self.to_profile_id
        return self.from_profile_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "from_profile_id": self.from_profile_id,
            "to_profile_id": self.to_profile_id,
            "type": self.type.value,
            "status": self.status.value,
            "message": self.message,
            "metadata": self.metadata.to_dict(),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class Membership:
    """Summary: Subscription state and free-tier usage for one account.

    Importance: The only input the entitlement gate needs besides profile type.
    Alternatives: Query the payment provider on every gated action.
    """

    account_id: int
    status: MembershipStatus = MembershipStatus.FREE
    plan: str = "free"
    free_responses_used: int = 0
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    billing_cycle: str | None = None
    current_period_ends_at: str | None = None
