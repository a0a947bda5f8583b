"""Summary: Engagement entitlement gate for providers.

Importance: Decides per action and per actor whether the paywall applies.
Alternatives: Check plan flags ad hoc inside each service method.
"""

from __future__ import annotations

from enum import Enum

from carebridge.models import Membership, MembershipStatus, ProfileType


FREE_RESPONSE_LIMIT = 3

PAID_STATUSES = frozenset({MembershipStatus.ACTIVE, MembershipStatus.PAST_DUE})
FREE_TIER_STATUSES = frozenset({MembershipStatus.FREE, MembershipStatus.TRIALING})


class EngageAction(str, Enum):
    SAVE = "save"
    RECEIVE_INQUIRY = "receive_inquiry"
    VIEW_INQUIRY_METADATA = "view_inquiry_metadata"
    VIEW_INQUIRY_DETAILS = "view_inquiry_details"
    RESPOND_TO_INQUIRY = "respond_to_inquiry"
    INITIATE_CONTACT = "initiate_contact"


FREE_ACTIONS = frozenset(
    {EngageAction.SAVE, EngageAction.RECEIVE_INQUIRY, EngageAction.VIEW_INQUIRY_METADATA}
)
METERED_ACTIONS = frozenset(
    {
        EngageAction.VIEW_INQUIRY_DETAILS,
        EngageAction.RESPOND_TO_INQUIRY,
        EngageAction.INITIATE_CONTACT,
    }
)


def can_engage(
    profile_type: ProfileType | None,
    membership: Membership | None,
    action: EngageAction,
    limit: int = FREE_RESPONSE_LIMIT,
) -> bool:
    """Summary: Check whether an actor may perform an engagement action.

    Importance: Families never pay; provider contact actions are metered by membership.
    Alternatives: Gate every provider action behind a paid plan.
    """

    if profile_type is ProfileType.FAMILY:
        return True
    if action in FREE_ACTIONS:
        return True
    if membership is None:
        return False
    if membership.status in PAID_STATUSES:
        # past_due is a grace period while billing retries
        return True
    if membership.status in FREE_TIER_STATUSES:
        return membership.free_responses_used < limit
    return False


def uses_free_quota(
    profile_type: ProfileType | None,
    membership: Membership | None,
    action: EngageAction,
) -> bool:
    """Summary: Check whether a permitted action must consume one free response.

    Importance: Only metered provider actions on the free tier count against the quota.
    Alternatives: Count every provider action regardless of plan.
    """

    if profile_type is ProfileType.FAMILY or action not in METERED_ACTIONS:
        return False
    return membership is not None and membership.status in FREE_TIER_STATUSES


def get_free_remaining(
    membership: Membership | None, limit: int = FREE_RESPONSE_LIMIT
) -> int | None:
    """Summary: Return remaining free responses, or None when unlimited.

    Importance: Drives upgrade prompts without exposing the gate internals.
    Alternatives: Return the raw usage counter to clients.
    """

    if membership is None:
        return 0
    if membership.status in PAID_STATUSES:
        return None
    return max(0, limit - membership.free_responses_used)
