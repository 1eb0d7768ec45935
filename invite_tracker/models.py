from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from peewee import (
    AutoField,
    BigIntegerField,
    BooleanField,
    CharField,
    DateTimeField,
    ForeignKeyField,
    IntegerField,
    Model,
    SqliteDatabase,
)

database = SqliteDatabase(None)


def utcnow_naive() -> datetime:
    """Return current UTC time without tzinfo for SQLite storage."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class BaseModel(Model):
    created_at = DateTimeField(default=utcnow_naive)
    updated_at = DateTimeField(default=utcnow_naive)

    def save(self, *args, **kwargs):  # type: ignore[override]
        self.updated_at = utcnow_naive()
        return super().save(*args, **kwargs)

    class Meta:
        database = database


class Server(BaseModel):
    server_id = BigIntegerField(primary_key=True)
    name = CharField()
    owner_id = BigIntegerField(null=True)
    member_count = IntegerField(default=0)


class DiscordUser(BaseModel):
    discord_user_id = BigIntegerField(primary_key=True)
    name = CharField()
    discriminator = CharField(null=True)
    avatar_url = CharField(null=True)
    bot_account = BooleanField(default=False)


class Invite(BaseModel):
    id = AutoField()
    code = CharField(index=True)
    server_id = BigIntegerField(index=True)
    inviter_id = BigIntegerField(null=True)
    channel_id = BigIntegerField(null=True)
    uses = IntegerField(default=0)
    max_uses = IntegerField(null=True)
    temporary = BooleanField(default=False)
    expires_at = DateTimeField(null=True)
    active = BooleanField(default=True)
    deleter_id = BigIntegerField(null=True)


class InviteUsage(BaseModel):
    id = AutoField()
    invite = ForeignKeyField(Invite, backref="usages", on_delete="CASCADE")
    discord_user_id = BigIntegerField(index=True)


ALL_MODELS = [Server, DiscordUser, Invite, InviteUsage]


def init_db(path: str) -> SqliteDatabase:
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    database.init(path, pragmas={"foreign_keys": 1})
    database.connect(reuse_if_open=True)
    database.create_tables(ALL_MODELS)
    return database


def close_db():
    if not database.is_closed():
        database.close()


def sync_user(
    user_id: int,
    name: str,
    discriminator: str | None = None,
    avatar_url: str | None = None,
    bot_account: bool = False,
):
    DiscordUser.insert(
        discord_user_id=user_id,
        name=name,
        discriminator=discriminator,
        avatar_url=avatar_url,
        bot_account=bot_account,
    ).on_conflict(
        conflict_target=[DiscordUser.discord_user_id],
        update={
            DiscordUser.name: name,
            DiscordUser.discriminator: discriminator,
            DiscordUser.avatar_url: avatar_url,
            DiscordUser.bot_account: bot_account,
            DiscordUser.updated_at: utcnow_naive(),
        },
    ).execute()


def sync_server(
    server_id: int, name: str, owner_id: int | None = None, member_count: int = 0
):
    Server.insert(
        server_id=server_id,
        name=name,
        owner_id=owner_id,
        member_count=member_count,
    ).on_conflict(
        conflict_target=[Server.server_id],
        update={
            Server.name: name,
            Server.owner_id: owner_id,
            Server.member_count: member_count,
            Server.updated_at: utcnow_naive(),
        },
    ).execute()
