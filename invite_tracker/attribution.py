from __future__ import annotations

import logging
from typing import Iterable, List, Mapping, Optional, Protocol

from .cache import Snapshot, SnapshotEntry

LOGGER = logging.getLogger(__name__)


class InviteLike(Protocol):
    code: str
    uses: int
    inviter_id: Optional[int]
    max_uses: Optional[int]


def snapshot_from_invites(invites: Iterable[InviteLike]) -> Snapshot:
    snapshot: Snapshot = {}
    for invite in invites:
        snapshot[invite.code] = SnapshotEntry(
            code=invite.code,
            uses=int(invite.uses or 0),
            inviter_id=invite.inviter_id,
            max_uses=invite.max_uses,
            expires_at=getattr(invite, "expires_at", None),
        )
    return snapshot


def increased_use_candidates(
    old: Mapping[str, SnapshotEntry], new: Mapping[str, SnapshotEntry]
) -> dict[str, int]:
    """Map each code whose use count went up to the size of the increase."""
    deltas: dict[str, int] = {}
    for code, current in new.items():
        previous = old.get(code)
        if previous is None:
            continue
        delta = current.uses - previous.uses
        if delta > 0:
            deltas[code] = delta
    return deltas


def vanished_single_use_codes(
    old: Mapping[str, SnapshotEntry], new: Mapping[str, SnapshotEntry]
) -> List[str]:
    """Codes of one-time invites that were cached but are gone from the fetch.

    Discord deletes a ``max_uses == 1`` invite as soon as it is consumed, so
    its disappearance is the only trace the join leaves behind.
    """
    return sorted(
        code
        for code, previous in old.items()
        if code not in new and previous.max_uses == 1
    )


def resolve_used_invite(
    old: Mapping[str, SnapshotEntry], new: Mapping[str, SnapshotEntry]
) -> Optional[str]:
    """Return the code the newly joined member used, or None when unknown.

    Increased use counts win over vanished one-time invites. Several
    increased codes are settled by the largest increase; a tie on that
    increase, or several vanished one-time invites, is ambiguous and yields
    None rather than a guess.
    """
    deltas = increased_use_candidates(old, new)
    if deltas:
        largest = max(deltas.values())
        winners = [code for code, delta in deltas.items() if delta == largest]
        if len(winners) == 1:
            return winners[0]
        LOGGER.debug("Ambiguous invite usage between %s", sorted(winners))
        return None

    vanished = vanished_single_use_codes(old, new)
    if len(vanished) == 1:
        return vanished[0]
    if vanished:
        LOGGER.debug("Ambiguous one-time invite usage between %s", vanished)
    return None
