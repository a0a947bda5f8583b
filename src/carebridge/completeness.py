"""Summary: Profile completeness and shareability checks.

Importance: Providers must have a usable profile before initiating contact.
Alternatives: Score completeness as a weighted percentage only.
"""

from __future__ import annotations

from typing import Iterator

from carebridge.models import Profile


def completion_gaps(profile: Profile) -> Iterator[str]:
    """Summary: Yield labels for the fields a profile still needs.

    Importance: Lets callers render exactly what blocks sharing, in a stable order.
    Alternatives: Return a single boolean with no explanation.
    """

    if not (profile.display_name or "").strip():
        yield "Display name"
    if not (profile.city or profile.state):
        yield "Location"
    if not profile.care_types:
        yield "Care types"
    if profile.type.is_provider:
        if not (profile.description or "").strip():
            yield "Description"
        if not (profile.phone or profile.email or profile.website):
            yield "Contact method"


def is_shareable(profile: Profile) -> bool:
    return next(completion_gaps(profile), None) is None
