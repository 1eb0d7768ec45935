from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from peewee import JOIN, fn

from .models import Invite, InviteUsage, database, to_naive_utc, utcnow_naive

LOGGER = logging.getLogger(__name__)


@dataclass
class InviterStats:
    inviter_id: int
    total_uses: int
    active_invites: int


def find_invite_by_code(server_id: int, code: str) -> Optional[Invite]:
    return (
        Invite.select()
        .where((Invite.server_id == server_id) & (Invite.code == code))
        .order_by(Invite.active.desc(), Invite.id.desc())
        .first()
    )


def create_invite(
    server_id: int,
    code: str,
    inviter_id: Optional[int] = None,
    channel_id: Optional[int] = None,
    uses: int = 0,
    max_uses: Optional[int] = None,
    temporary: bool = False,
    expires_at: Optional[datetime] = None,
) -> Invite:
    return Invite.create(
        server_id=server_id,
        code=code,
        inviter_id=inviter_id,
        channel_id=channel_id,
        uses=max(int(uses or 0), 0),
        max_uses=max_uses or None,
        temporary=bool(temporary),
        expires_at=to_naive_utc(expires_at),
        active=True,
    )


def update_invite(invite_id: int, **fields) -> int:
    if not fields:
        return 0
    fields["updated_at"] = utcnow_naive()
    return Invite.update(**fields).where(Invite.id == invite_id).execute()


def upsert_invite(
    server_id: int,
    code: str,
    inviter_id: Optional[int] = None,
    channel_id: Optional[int] = None,
    uses: int = 0,
    max_uses: Optional[int] = None,
    temporary: bool = False,
    expires_at: Optional[datetime] = None,
    reactivate: bool = False,
) -> Invite:
    """Create the invite record, or refresh ``uses``/``max_uses`` if it exists.

    ``active`` is left alone on existing records unless ``reactivate`` is set.
    """
    existing = find_invite_by_code(server_id, code)
    if existing is None:
        return create_invite(
            server_id,
            code,
            inviter_id=inviter_id,
            channel_id=channel_id,
            uses=uses,
            max_uses=max_uses,
            temporary=temporary,
            expires_at=expires_at,
        )

    existing.uses = max(int(uses or 0), 0)
    existing.max_uses = max_uses or None
    if reactivate and not existing.active:
        existing.active = True
        existing.deleter_id = None
    existing.save()
    return existing


def deactivate_invites_not_in(server_id: int, active_codes: Iterable[str]) -> int:
    codes = list(active_codes)
    query = Invite.update(active=False, updated_at=utcnow_naive()).where(
        (Invite.server_id == server_id) & (Invite.active == True)  # noqa: E712
    )
    if codes:
        query = query.where(Invite.code.not_in(codes))
    return query.execute()


def mark_deleted(server_id: int, code: str, deleter_id: Optional[int] = None) -> int:
    updated = (
        Invite.update(active=False, deleter_id=deleter_id, updated_at=utcnow_naive())
        .where(
            (Invite.server_id == server_id)
            & (Invite.code == code)
            & (Invite.active == True)  # noqa: E712
        )
        .execute()
    )
    LOGGER.debug("Marked invite %s as deleted in guild %s", code, server_id)
    return updated


def create_usage_link(invite_id: int, user_id: int) -> InviteUsage:
    return InviteUsage.create(invite=invite_id, discord_user_id=user_id)


def increment_uses(invite_id: int) -> int:
    return (
        Invite.update(uses=Invite.uses + 1, updated_at=utcnow_naive())
        .where(Invite.id == invite_id)
        .execute()
    )


def record_invite_usage(invite: Invite, user_id: int) -> InviteUsage:
    with database.atomic():
        link = create_usage_link(invite.id, user_id)
        increment_uses(invite.id)
    LOGGER.debug("Recorded invite usage: %s by user %s", invite.code, user_id)
    return link


def get_active_invites(server_id: int) -> List[Invite]:
    return list(
        Invite.select()
        .where((Invite.server_id == server_id) & (Invite.active == True))  # noqa: E712
        .order_by(Invite.uses.desc(), Invite.code)
    )


def get_invite_stats(server_id: int) -> List[InviterStats]:
    """Per-inviter totals of attributed joins, most successful inviter first."""
    query = (
        Invite.select(Invite, fn.COUNT(InviteUsage.id).alias("joins"))
        .join(InviteUsage, JOIN.LEFT_OUTER)
        .where(
            (Invite.server_id == server_id) & (Invite.inviter_id.is_null(False))
        )
        .group_by(Invite.id)
    )
    stats: Dict[int, InviterStats] = {}
    for invite in query:
        entry = stats.setdefault(
            invite.inviter_id,
            InviterStats(inviter_id=invite.inviter_id, total_uses=0, active_invites=0),
        )
        entry.total_uses += invite.joins
        if invite.active:
            entry.active_invites += 1
    return sorted(stats.values(), key=lambda s: (-s.total_uses, s.inviter_id))


def find_member_invite(server_id: int, user_id: int) -> Optional[Invite]:
    """Latest invite a user was attributed to in a guild."""
    usage = (
        InviteUsage.select(InviteUsage, Invite)
        .join(Invite)
        .where(
            (Invite.server_id == server_id)
            & (InviteUsage.discord_user_id == user_id)
        )
        .order_by(InviteUsage.id.desc())
        .first()
    )
    return usage.invite if usage else None
