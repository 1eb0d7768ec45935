from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from . import invites as invite_store
from .attribution import resolve_used_invite, snapshot_from_invites
from .cache import InviteSnapshotCache, SnapshotEntry
from .gateway import (
    INVITE_DELETE_ACTION,
    AuditLogHit,
    GuildInvite,
    InviteFetchError,
    invite_expiry,
)

LOGGER = logging.getLogger(__name__)


class InviteSource(Protocol):
    async def fetch_guild_invites(self, guild_id: int) -> List[GuildInvite]: ...

    async def fetch_latest_audit_log_entry(
        self, guild_id: int, action: str
    ) -> Optional[AuditLogHit]: ...


class InviteTracker:
    """Keeps the invite cache and invite records in step with gateway events.

    Fetch failures from the invite source are logged and skipped, leaving the
    cache as it was. Database errors propagate to the caller.
    """

    def __init__(self, source: InviteSource, cache: InviteSnapshotCache | None = None):
        self.source = source
        self.cache = cache if cache is not None else InviteSnapshotCache()
        self._join_locks: Dict[int, asyncio.Lock] = {}

    def _join_lock(self, guild_id: int) -> asyncio.Lock:
        lock = self._join_locks.get(guild_id)
        if lock is None:
            lock = self._join_locks[guild_id] = asyncio.Lock()
        return lock

    def forget_guild(self, guild_id: int) -> None:
        self.cache.forget_guild(guild_id)
        self._join_locks.pop(guild_id, None)

    async def _fetch_invites(self, guild_id: int) -> Optional[List[GuildInvite]]:
        try:
            return await self.source.fetch_guild_invites(guild_id)
        except InviteFetchError as exc:
            LOGGER.warning("Failed to fetch invites for guild %s: %s", guild_id, exc)
            return None

    async def on_guild_bootstrap(self, guild_id: int, reconcile: bool = False) -> int:
        """Cache every invite of a guild and refresh its invite records.

        With ``reconcile`` set, records of invites that disappeared while the
        bot was away are deactivated. Returns the number of invites cached.
        """
        fetched = await self._fetch_invites(guild_id)
        if fetched is None:
            return 0

        self.cache.replace_guild_snapshot(guild_id, snapshot_from_invites(fetched))

        for invite in fetched:
            if invite.inviter_id is None:
                continue
            invite_store.upsert_invite(
                guild_id,
                invite.code,
                inviter_id=invite.inviter_id,
                channel_id=invite.channel_id,
                uses=invite.uses,
                max_uses=invite.max_uses,
                temporary=invite.temporary,
                expires_at=invite.expires_at,
            )

        if reconcile:
            stale = invite_store.deactivate_invites_not_in(
                guild_id, [invite.code for invite in fetched]
            )
            if stale:
                LOGGER.info(
                    "Deactivated %s vanished invites in guild %s", stale, guild_id
                )

        LOGGER.debug("Cached %s invites for guild %s", len(fetched), guild_id)
        return len(fetched)

    async def on_invite_create(
        self, guild_id: int, invite: GuildInvite, now: datetime | None = None
    ) -> None:
        expires_at = invite_expiry(invite.max_age, now)
        self.cache.upsert_entry(
            guild_id,
            SnapshotEntry(
                code=invite.code,
                uses=invite.uses,
                inviter_id=invite.inviter_id,
                max_uses=invite.max_uses,
                expires_at=expires_at,
            ),
        )

        if invite.inviter_id is None:
            LOGGER.info(
                "Invite %s created in guild %s without a known inviter; not stored",
                invite.code,
                guild_id,
            )
            return

        invite_store.upsert_invite(
            guild_id,
            invite.code,
            inviter_id=invite.inviter_id,
            channel_id=invite.channel_id,
            uses=invite.uses,
            max_uses=invite.max_uses,
            temporary=invite.temporary,
            expires_at=expires_at,
            reactivate=True,
        )
        LOGGER.info(
            "Invite %s created by %s in guild %s",
            invite.code,
            invite.inviter_id,
            guild_id,
        )

    async def resolve_deleter(self, guild_id: int, code: str) -> Optional[int]:
        try:
            hit = await self.source.fetch_latest_audit_log_entry(
                guild_id, INVITE_DELETE_ACTION
            )
        except InviteFetchError as exc:
            LOGGER.warning(
                "Failed to fetch audit log for invite delete in guild %s: %s",
                guild_id,
                exc,
            )
            return None
        if hit is None or hit.target_code != code:
            return None
        return hit.executor_id

    async def on_invite_delete(self, guild_id: int, code: str) -> Optional[int]:
        self.cache.remove_entry(guild_id, code)
        deleter_id = await self.resolve_deleter(guild_id, code)
        invite_store.mark_deleted(guild_id, code, deleter_id)
        if deleter_id:
            LOGGER.info(
                "Invite %s deleted in guild %s by user %s", code, guild_id, deleter_id
            )
        else:
            LOGGER.info("Invite %s deleted in guild %s", code, guild_id)
        return deleter_id

    async def on_member_join(self, guild_id: int, member_id: int) -> Optional[str]:
        """Attribute a member join to an invite and record the usage.

        Returns the used invite code, or None when it cannot be determined.
        """
        async with self._join_lock(guild_id):
            old_snapshot = self.cache.get_guild_snapshot(guild_id)
            fetched = await self._fetch_invites(guild_id)
            if fetched is None:
                return None
            new_snapshot = snapshot_from_invites(fetched)
            code = resolve_used_invite(old_snapshot, new_snapshot)
            self.cache.replace_guild_snapshot(guild_id, new_snapshot)

        if code is None:
            LOGGER.debug(
                "Could not determine which invite member %s used in guild %s",
                member_id,
                guild_id,
            )
            return None

        entry = old_snapshot[code]
        invite = invite_store.find_invite_by_code(guild_id, code)
        if invite is None:
            invite = invite_store.create_invite(
                guild_id,
                code,
                inviter_id=entry.inviter_id,
                uses=entry.uses,
                max_uses=entry.max_uses,
                expires_at=entry.expires_at,
            )
        invite_store.record_invite_usage(invite, member_id)
        LOGGER.info(
            "Member %s joined guild %s via invite %s%s",
            member_id,
            guild_id,
            code,
            f" from user {entry.inviter_id}" if entry.inviter_id else "",
        )
        return code
