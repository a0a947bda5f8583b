"""Summary: Payment provider webhook helpers.

Importance: Verifies webhook signatures and maps subscription events onto membership updates.
Alternatives: Use the payment provider SDK for verification and event objects.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from carebridge.errors import InvalidArgument
from carebridge.models import MembershipStatus


SIGNATURE_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class MembershipUpdate:
    """Summary: Ledger change derived from one billing event.

    Importance: Separates event interpretation from the storage write.
    Alternatives: Write to storage inside the event parser.
    """

    fields: dict[str, Any]
    account_id: int | None = None
    customer_id: str | None = None


def sign_payload(payload: bytes, secret: str, timestamp: int) -> str:
    """Summary: Build a signature header for a webhook payload.

    Importance: Mirrors the provider format so local tools and tests can sign events.
    Alternatives: Only accept events signed by the provider.
    """

    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def verify_signature(
    payload: bytes,
    header: str | None,
    secret: str,
    now: int | None = None,
    tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
) -> bool:
    """Summary: Check a `t=...,v1=...` signature header against the shared secret.

    Importance: Rejects forged or replayed membership changes.
    Alternatives: Trust the webhook endpoint's network location.
    """

    if not header or not secret:
        return False
    parts: dict[str, list[str]] = {}
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        parts.setdefault(key, []).append(value)
    try:
        timestamp = int(parts.get("t", [""])[0])
    except ValueError:
        return False
    current = int(time.time()) if now is None else now
    if abs(current - timestamp) > tolerance:
        return False
    expected = sign_payload(payload, secret, timestamp).split("v1=", 1)[1]
    return any(hmac.compare_digest(expected, candidate) for candidate in parts.get("v1", []))


def _customer_id(obj: dict[str, Any]) -> str | None:
    customer = obj.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")
    return customer if isinstance(customer, str) else None


def _subscription_status(raw: str | None) -> MembershipStatus:
    if raw == "active":
        return MembershipStatus.ACTIVE
    if raw == "past_due":
        return MembershipStatus.PAST_DUE
    if raw in ("canceled", "unpaid"):
        return MembershipStatus.CANCELED
    return MembershipStatus.FREE


def membership_update_for_event(event: dict[str, Any]) -> MembershipUpdate | None:
    """Summary: Translate a billing event into a membership update.

    Importance: Keeps the ledger in sync with checkout, renewal, cancellation, and failed payments.
    Alternatives: Poll the payment provider for subscription state.
    """

    event_type = event.get("type")
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        obj = {}

    if event_type == "checkout.session.completed":
        metadata = obj.get("metadata")
        if not isinstance(metadata, dict) or not metadata.get("account_id"):
            return None
        try:
            account_id = int(metadata["account_id"])
        except (TypeError, ValueError) as exc:
            raise InvalidArgument(
                f"Invalid account_id in checkout metadata: {metadata['account_id']!r}"
            ) from exc
        cycle = metadata.get("billing_cycle")
        return MembershipUpdate(
            account_id=account_id,
            fields={
                "plan": "pro",
                "status": MembershipStatus.ACTIVE,
                "stripe_customer_id": _customer_id(obj),
                "stripe_subscription_id": obj.get("subscription"),
                "billing_cycle": "annual" if cycle == "annual" else "monthly",
            },
        )

    customer_id = _customer_id(obj)
    if not customer_id:
        return None

    if event_type == "customer.subscription.updated":
        items = obj.get("items")
        entries = items.get("data") if isinstance(items, dict) else None
        first = entries[0] if isinstance(entries, list) and entries else None
        period_end = first.get("current_period_end") if isinstance(first, dict) else None
        ends_at = (
            datetime.fromtimestamp(period_end, tz=timezone.utc)
            if isinstance(period_end, (int, float))
            else datetime.now(timezone.utc)
        )
        return MembershipUpdate(
            customer_id=customer_id,
            fields={
                "status": _subscription_status(obj.get("status")),
                "current_period_ends_at": ends_at.isoformat(),
            },
        )
    if event_type == "customer.subscription.deleted":
        return MembershipUpdate(
            customer_id=customer_id,
            fields={
                "status": MembershipStatus.FREE,
                "plan": "free",
                "stripe_subscription_id": None,
            },
        )
    if event_type == "invoice.payment_failed":
        return MembershipUpdate(
            customer_id=customer_id, fields={"status": MembershipStatus.PAST_DUE}
        )
    return None
