"""Summary: Tests for the engagement entitlement gate.

Importance: Ensures families are never paywalled and provider contact is metered correctly.
Alternatives: Check the gate only through service-level tests.
"""

from __future__ import annotations

import pytest

from carebridge.entitlement import (
    EngageAction,
    can_engage,
    get_free_remaining,
    uses_free_quota,
)
from carebridge.models import Membership, MembershipStatus, ProfileType


def _membership(status: MembershipStatus, used: int = 0) -> Membership:
    return Membership(account_id=1, status=status, free_responses_used=used)


@pytest.mark.parametrize("action", list(EngageAction))
def test_family_can_always_engage(action: EngageAction) -> None:
    """Summary: Verify families pass the gate for every action, even without membership.

    Importance: The demand side of the marketplace is never charged.
    Alternatives: Give families a separate unlimited plan row.
    """

    assert can_engage(ProfileType.FAMILY, None, action)
    assert can_engage(ProfileType.FAMILY, _membership(MembershipStatus.CANCELED), action)
    assert not uses_free_quota(ProfileType.FAMILY, _membership(MembershipStatus.FREE), action)


def test_free_actions_never_require_membership() -> None:
    for action in (
        EngageAction.SAVE,
        EngageAction.RECEIVE_INQUIRY,
        EngageAction.VIEW_INQUIRY_METADATA,
    ):
        assert can_engage(ProfileType.CAREGIVER, None, action)
        assert not uses_free_quota(
            ProfileType.CAREGIVER, _membership(MembershipStatus.FREE), action
        )


def test_free_tier_provider_limited_by_quota() -> None:
    """Summary: Verify free providers may engage until three responses are used.

    Importance: The free quota is the upgrade lever for providers.
    Alternatives: Block all free providers from responding.
    """

    action = EngageAction.RESPOND_TO_INQUIRY
    assert can_engage(ProfileType.ORGANIZATION, _membership(MembershipStatus.FREE, 2), action)
    assert not can_engage(ProfileType.ORGANIZATION, _membership(MembershipStatus.FREE, 3), action)
    assert can_engage(ProfileType.CAREGIVER, _membership(MembershipStatus.TRIALING, 0), action)
    assert uses_free_quota(ProfileType.CAREGIVER, _membership(MembershipStatus.TRIALING), action)


def test_paid_and_past_due_providers_are_unlimited() -> None:
    for status in (MembershipStatus.ACTIVE, MembershipStatus.PAST_DUE):
        membership = _membership(status, used=50)
        assert can_engage(ProfileType.CAREGIVER, membership, EngageAction.INITIATE_CONTACT)
        assert not uses_free_quota(
            ProfileType.CAREGIVER, membership, EngageAction.INITIATE_CONTACT
        )
        assert get_free_remaining(membership) is None


def test_canceled_or_missing_membership_denies_metered_actions() -> None:
    assert not can_engage(
        ProfileType.CAREGIVER, _membership(MembershipStatus.CANCELED), EngageAction.VIEW_INQUIRY_DETAILS
    )
    assert not can_engage(ProfileType.ORGANIZATION, None, EngageAction.INITIATE_CONTACT)


def test_free_remaining_counts_down_and_floors_at_zero() -> None:
    """Summary: Verify remaining free responses for each membership shape.

    Importance: Drives the upgrade prompts shown to providers.
    Alternatives: Expose the raw usage counter.
    """

    assert get_free_remaining(None) == 0
    assert get_free_remaining(_membership(MembershipStatus.FREE, 0)) == 3
    assert get_free_remaining(_membership(MembershipStatus.FREE, 2)) == 1
    assert get_free_remaining(_membership(MembershipStatus.FREE, 7)) == 0
    assert get_free_remaining(_membership(MembershipStatus.FREE, 1), limit=5) == 4
