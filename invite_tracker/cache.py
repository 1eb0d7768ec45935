from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Mapping, Optional, Union


@dataclass(frozen=True)
class SnapshotEntry:
    code: str
    uses: int
    inviter_id: Optional[int] = None
    max_uses: Optional[int] = None
    expires_at: Optional[datetime] = None


Snapshot = Dict[str, SnapshotEntry]


class InviteSnapshotCache:
    """Last known invite state per guild, keyed by invite code."""

    def __init__(self):
        self._guilds: Dict[int, Snapshot] = {}

    def replace_guild_snapshot(
        self,
        guild_id: int,
        entries: Union[Mapping[str, SnapshotEntry], Iterable[SnapshotEntry]],
    ) -> None:
        if isinstance(entries, Mapping):
            snapshot = dict(entries)
        else:
            snapshot = {entry.code: entry for entry in entries}
        self._guilds[guild_id] = snapshot

    def get_guild_snapshot(self, guild_id: int) -> Snapshot:
        return dict(self._guilds.get(guild_id, {}))

    def upsert_entry(self, guild_id: int, entry: SnapshotEntry) -> None:
        self._guilds.setdefault(guild_id, {})[entry.code] = entry

    def remove_entry(self, guild_id: int, code: str) -> None:
        snapshot = self._guilds.get(guild_id)
        if snapshot is not None:
            snapshot.pop(code, None)

    def forget_guild(self, guild_id: int) -> None:
        self._guilds.pop(guild_id, None)

    def has_guild(self, guild_id: int) -> bool:
        return guild_id in self._guilds
