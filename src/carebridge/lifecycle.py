"""Summary: Pure connection state machine.

Importance: Validates participants and current status for every transition before anything is written.
Alternatives: Inline status checks in each API handler.
"""

from __future__ import annotations

from dataclasses import replace

from carebridge.errors import Forbidden, InvalidArgument, InvalidState
from carebridge.models import (
    Connection,
    ConnectionStatus,
    ConnectionType,
    Decision,
    NextStepRequest,
    NextStepType,
    ThreadMessage,
)


MESSAGEABLE_STATUSES = frozenset({ConnectionStatus.PENDING, ConnectionStatus.ACCEPTED})
HIDEABLE_STATUSES = frozenset(
    {ConnectionStatus.DECLINED, ConnectionStatus.EXPIRED, ConnectionStatus.ARCHIVED}
)
OPEN_STATUSES = MESSAGEABLE_STATUSES

END_NOTE = "You ended this connection"


def initial_status(connection_type: ConnectionType) -> ConnectionStatus:
    """Summary: Status a new connection starts in.

    Importance: Dismissals record "not interested" and never await a response.
    Alternatives: Store dismissals in a separate table.
    """

    if connection_type is ConnectionType.DISMISS:
        return ConnectionStatus.ARCHIVED
    return ConnectionStatus.PENDING


def _require_participant(connection: Connection, profile_id: str) -> None:
    if not connection.is_participant(profile_id):
        raise Forbidden("Not authorized")


def _require_status(
    connection: Connection, allowed: frozenset[ConnectionStatus], detail: str
) -> None:
    if connection.status not in allowed:
        raise InvalidState(detail)


def respond(
    connection: Connection, profile_id: str, decision: Decision, now: str
) -> Connection:
    if connection.to_profile_id != profile_id:
        raise Forbidden("Only the recipient can respond")
    _require_status(
        connection,
        frozenset({ConnectionStatus.PENDING}),
        "Can only respond to pending connections",
    )
    status = ConnectionStatus.ACCEPTED if decision is Decision.ACCEPT else ConnectionStatus.DECLINED
    return replace(connection, status=status, updated_at=now)


def withdraw(connection: Connection, profile_id: str, now: str) -> Connection:
    if connection.from_profile_id != profile_id:
        raise Forbidden("Only the sender can withdraw")
    _require_status(
        connection,
        frozenset({ConnectionStatus.PENDING}),
        "Can only withdraw pending connections",
    )
    metadata = replace(connection.metadata, withdrawn=True, withdrawn_at=now)
    return replace(
        connection, status=ConnectionStatus.EXPIRED, metadata=metadata, updated_at=now
    )


def end(connection: Connection, profile_id: str, now: str) -> Connection:
    """Summary: End an accepted connection from either side.

    Importance: Records a system note and cancels any outstanding next step request.
    Alternatives: Delete the connection outright.
    """

    _require_participant(connection, profile_id)
    _require_status(
        connection,
        frozenset({ConnectionStatus.ACCEPTED}),
        "Can only end responded connections",
    )
    note = ThreadMessage(from_profile_id=profile_id, text=END_NOTE, created_at=now, type="system")
    metadata = replace(
        connection.metadata.append(note),
        ended=True,
        ended_at=now,
        next_step_request=None,
    )
    return replace(
        connection, status=ConnectionStatus.EXPIRED, metadata=metadata, updated_at=now
    )


def post_message(connection: Connection, profile_id: str, text: str, now: str) -> Connection:
    _require_participant(connection, profile_id)
    cleaned = (text or "").strip()
    if not cleaned:
        raise InvalidArgument("Message text is required")
    _require_status(
        connection, MESSAGEABLE_STATUSES, "Cannot send messages on this connection"
    )
    message = ThreadMessage(from_profile_id=profile_id, text=cleaned, created_at=now)
    return replace(connection, metadata=connection.metadata.append(message), updated_at=now)


def hide(connection: Connection, profile_id: str, now: str) -> Connection:
    _require_participant(connection, profile_id)
    _require_status(connection, HIDEABLE_STATUSES, "Can only remove past connections")
    if connection.metadata.is_hidden_for(profile_id):
        raise InvalidState("Connection already removed")
    # only the actor's list changes; the counterpart keeps seeing the connection
    hidden_by = connection.metadata.hidden_by | {profile_id}
    return replace(
        connection, metadata=replace(connection.metadata, hidden_by=hidden_by), updated_at=now
    )


def request_next_step(
    connection: Connection,
    profile_id: str,
    display_name: str,
    step: NextStepType,
    note: str | None,
    now: str,
) -> Connection:
    """Summary: Open a call, consultation, or visit request on an accepted connection.

    Importance: Only one request may be active at a time.
    Alternatives: Allow any number of parallel requests.
    """

    _require_participant(connection, profile_id)
    _require_status(
        connection,
        frozenset({ConnectionStatus.ACCEPTED}),
        "Next steps only available for responded connections",
    )
    if connection.metadata.next_step_request is not None:
        raise InvalidState("A request is already active. Cancel it first.")
    note = (note or "").strip() or None
    text = f"{display_name} {step.phrase}."
    if note:
        text = f'{text} "{note}"'
    entry = ThreadMessage(
        from_profile_id=profile_id,
        text=text,
        created_at=now,
        type="next_step_request",
        next_step=step.value,
    )
    metadata = replace(
        connection.metadata.append(entry),
        next_step_request=NextStepRequest(type=step, note=note, created_at=now),
    )
    return replace(connection, metadata=metadata, updated_at=now)


def cancel_next_step(
    connection: Connection, profile_id: str, display_name: str, now: str
) -> Connection:
    _require_participant(connection, profile_id)
    _require_status(
        connection,
        frozenset({ConnectionStatus.ACCEPTED}),
        "Next steps only available for responded connections",
    )
    active = connection.metadata.next_step_request
    if active is None:
        raise InvalidState("No active request to cancel")
    entry = ThreadMessage(
        from_profile_id=profile_id,
        text=f"{display_name} cancelled the {active.type.label.lower()}",
        created_at=now,
        type="system",
    )
    metadata = replace(connection.metadata.append(entry), next_step_request=None)
    return replace(connection, metadata=metadata, updated_at=now)
