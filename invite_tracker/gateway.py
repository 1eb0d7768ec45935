from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import aiohttp
import discord

INVITE_DELETE_ACTION = "invite_delete"

# Errors the discord.py HTTP layer lets through for a failed request
REQUEST_ERRORS = (
    discord.HTTPException,
    aiohttp.ClientError,
    OSError,
    asyncio.TimeoutError,
)


class InviteFetchError(Exception):
    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


@dataclass
class GuildInvite:
    code: str
    uses: int = 0
    max_uses: Optional[int] = None
    inviter_id: Optional[int] = None
    channel_id: Optional[int] = None
    temporary: bool = False
    expires_at: Optional[datetime] = None
    max_age: Optional[int] = None

    @classmethod
    def from_discord(cls, invite: Any) -> "GuildInvite":
        inviter = getattr(invite, "inviter", None)
        channel = getattr(invite, "channel", None)
        channel_id = getattr(channel, "id", None) or getattr(invite, "channel_id", None)
        max_age = getattr(invite, "max_age", None)
        expires_at = getattr(invite, "expires_at", None)
        created_at = getattr(invite, "created_at", None)
        if expires_at is None and max_age and created_at:
            expires_at = created_at + timedelta(seconds=max_age)
        return cls(
            code=invite.code,
            uses=int(getattr(invite, "uses", None) or 0),
            max_uses=getattr(invite, "max_uses", None) or None,
            inviter_id=inviter.id if inviter else None,
            channel_id=channel_id,
            temporary=bool(getattr(invite, "temporary", False)),
            expires_at=expires_at,
            max_age=max_age,
        )


@dataclass
class AuditLogHit:
    executor_id: Optional[int]
    target_code: Optional[str]


def invite_expiry(
    max_age: Optional[int], now: datetime | None = None
) -> Optional[datetime]:
    """Expiry for an invite created ``now`` that lives ``max_age`` seconds."""
    if not max_age:
        return None
    now = now or datetime.now(timezone.utc)
    return now + timedelta(seconds=max_age)


def _audit_target_code(entry: Any) -> Optional[str]:
    code = getattr(entry.target, "code", None)
    if code is None:
        code = getattr(getattr(entry, "before", None), "code", None)
    return code


class DiscordInviteSource:
    """Reads invites and audit log entries through a connected discord.py client."""

    def __init__(self, client: discord.Client):
        self._client = client

    def _guild(self, guild_id: int) -> discord.Guild:
        guild = self._client.get_guild(guild_id)
        if guild is None:
            raise InviteFetchError(f"Guild {guild_id} unavailable")
        return guild

    async def fetch_guild_invites(self, guild_id: int) -> List[GuildInvite]:
        guild = self._guild(guild_id)
        try:
            invites = await guild.invites()
        except discord.Forbidden as exc:
            raise InviteFetchError(
                f"Missing Manage Guild permission to read invites in {guild_id}",
                status=exc.status,
            ) from exc
        except REQUEST_ERRORS as exc:
            raise InviteFetchError(
                f"Failed fetching invites for {guild_id}: {exc}",
                status=getattr(exc, "status", None),
            ) from exc
        return [GuildInvite.from_discord(invite) for invite in invites]

    async def fetch_latest_audit_log_entry(
        self, guild_id: int, action: str
    ) -> Optional[AuditLogHit]:
        guild = self._guild(guild_id)
        audit_action = getattr(discord.AuditLogAction, action)
        try:
            async for entry in guild.audit_logs(limit=1, action=audit_action):
                executor = entry.user
                return AuditLogHit(
                    executor_id=executor.id if executor else None,
                    target_code=_audit_target_code(entry),
                )
        except REQUEST_ERRORS as exc:
            raise InviteFetchError(
                f"Failed reading audit log for {guild_id}: {exc}",
                status=getattr(exc, "status", None),
            ) from exc
        return None
