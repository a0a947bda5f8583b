"""Summary: Viewer-facing display status for connections.

Importance: Disambiguates expired connections into withdrawn, ended, or expired for each side.
Alternatives: Let every client decode metadata flags itself.
"""

from __future__ import annotations

from carebridge.models import Connection, ConnectionStatus


def _past_status(connection: Connection) -> str:
    if connection.metadata.ended:
        return "ended"
    if connection.metadata.withdrawn:
        return "withdrawn"
    return "expired"


def family_display_status(connection: Connection) -> str:
    """Summary: Map a connection to the care seeker's status label.

    Importance: Families see "responded" rather than the raw accepted status.
    Alternatives: Show raw statuses in the UI.
    """

    if connection.status is ConnectionStatus.ACCEPTED:
        return "responded"
    if connection.status is ConnectionStatus.DECLINED:
        return "declined"
    if connection.status in (ConnectionStatus.EXPIRED, ConnectionStatus.ARCHIVED):
        return _past_status(connection)
    return "pending"


def family_tab(display_status: str) -> str:
    if display_status == "pending":
        return "active"
    if display_status == "responded":
        return "connected"
    return "past"


def provider_display_status(connection: Connection, is_inbound: bool) -> str:
    """Summary: Map a connection to the provider's status label.

    Importance: Inbound pending requests need attention; outbound ones await a reply.
    Alternatives: Use the same labels for both sides.
    """

    if connection.status is ConnectionStatus.ACCEPTED:
        return "connected"
    if connection.status is ConnectionStatus.DECLINED:
        return "declined"
    if connection.status in (ConnectionStatus.EXPIRED, ConnectionStatus.ARCHIVED):
        return _past_status(connection)
    return "new_request" if is_inbound else "pending_outbound"


def provider_tab(display_status: str) -> str:
    if display_status == "new_request":
        return "attention"
    if display_status in ("pending_outbound", "connected"):
        return "active"
    return "past"


def describe_for(connection: Connection, viewer_profile_id: str, viewer_is_provider: bool) -> dict[str, str]:
    if viewer_is_provider:
        status = provider_display_status(
            connection, is_inbound=connection.to_profile_id == viewer_profile_id
        )
        return {"display_status": status, "tab": provider_tab(status)}
    status = family_display_status(connection)
    return {"display_status": status, "tab": family_tab(status)}
