import asyncio
import logging
from datetime import datetime
from types import SimpleNamespace

import discord
from discord import app_commands

from invite_tracker import invites
from invite_tracker.bot import (
    BotConfig,
    InviteTrackerBot,
    format_active_invites,
    format_invite_stats,
    setup_commands,
)
from invite_tracker.invites import InviterStats
from invite_tracker.models import DiscordUser, Server, close_db
from invite_tracker.tracker import InviteTracker
from tests.fakes import (
    FakeGuild,
    FakeInteraction,
    FakeInviteSource,
    FakeMember,
    FakePermissions,
    FakeUser,
    make_invite,
)

GUILD_ID = 999


def make_bot(tmp_path, source=None):
    config = BotConfig(
        token="dummy",
        log_level="INFO",
        database_path=str(tmp_path / "bot.db"),
    )
    bot = InviteTrackerBot(config)
    if source is not None:
        bot.invite_tracker = InviteTracker(source)
    asyncio.run(setup_commands(bot))
    return bot


def run_command(bot, name, interaction, **kwargs):
    command = bot.tree.get_command(name)
    asyncio.run(command.callback(interaction, **kwargs))
    return interaction.response


def test_format_invite_stats():
    text = format_invite_stats(
        [InviterStats(10, 3, 1), InviterStats(20, 1, 0)]
    )

    assert text.splitlines() == [
        "1. <@10>: 3 joins (1 active)",
        "2. <@20>: 1 join (0 active)",
    ]
    assert format_invite_stats([]) == "No invites tracked yet."


def test_format_active_invites():
    rows = [
        SimpleNamespace(
            code="A",
            uses=2,
            max_uses=5,
            inviter_id=10,
            expires_at=datetime(2026, 1, 2, 3, 4),
        ),
        SimpleNamespace(
            code="B", uses=0, max_uses=None, inviter_id=None, expires_at=None
        ),
    ]

    assert format_active_invites(rows).splitlines() == [
        "`A` by <@10>: 2/5 uses, expires 2026-01-02 03:04 UTC",
        "`B` by unknown: 0 uses",
    ]


def test_invites_command_lists_leaderboard(tmp_path):
    bot = make_bot(tmp_path)
    try:
        record = invites.create_invite(GUILD_ID, "A", inviter_id=10)
        invites.record_invite_usage(record, 42)

        response = run_command(
            bot, "invites", FakeInteraction(FakeGuild(GUILD_ID), FakeUser(1))
        )

        assert response.message == "1. <@10>: 1 join (1 active)"
        assert response.ephemeral is True
    finally:
        close_db()


def test_invites_command_requires_guild(tmp_path):
    bot = make_bot(tmp_path)
    try:
        response = run_command(bot, "invites", FakeInteraction(None, FakeUser(1)))

        assert response.message == "Commands must be used inside a guild."
    finally:
        close_db()


def test_invites_active_requires_manage_guild(tmp_path):
    bot = make_bot(tmp_path)
    try:
        invites.create_invite(GUILD_ID, "A", inviter_id=10, uses=4)
        guild = FakeGuild(GUILD_ID)

        denied = run_command(
            bot, "invites_active", FakeInteraction(guild, FakeMember(1))
        )
        allowed = run_command(
            bot,
            "invites_active",
            FakeInteraction(
                guild,
                FakeMember(2, guild_permissions=FakePermissions(manage_guild=True)),
            ),
        )

        assert denied.message == "You do not have permission to use this command."
        assert allowed.message == "`A` by <@10>: 4 uses"
    finally:
        close_db()


def test_joined_via_reports_attributed_invite(tmp_path):
    bot = make_bot(tmp_path)
    try:
        record = invites.create_invite(GUILD_ID, "ABC", inviter_id=10)
        invites.record_invite_usage(record, 42)
        guild = FakeGuild(GUILD_ID)

        found = run_command(
            bot,
            "joined_via",
            FakeInteraction(guild, FakeUser(1)),
            user=FakeMember(42, display_name="Newbie"),
        )
        missing = run_command(
            bot, "joined_via", FakeInteraction(guild, FakeUser(7, display_name="Old"))
        )

        assert found.message == "Newbie (42) joined via `ABC` created by <@10>."
        assert missing.message == "No invite recorded for Old (7)."
    finally:
        close_db()


def discord_member(member_id, name, **overrides):
    data = dict(
        id=member_id,
        name=name,
        discriminator="0",
        display_avatar=SimpleNamespace(url="https://cdn/avatar.png"),
        bot=False,
        guild=SimpleNamespace(id=GUILD_ID),
    )
    data.update(overrides)
    return SimpleNamespace(**data)


def test_member_join_event_syncs_user_and_attributes(tmp_path):
    source = FakeInviteSource({GUILD_ID: [make_invite("ABC", uses=0)]})
    bot = make_bot(tmp_path, source)
    try:
        asyncio.run(bot.invite_tracker.on_guild_bootstrap(GUILD_ID))
        source.set_invites(GUILD_ID, [make_invite("ABC", uses=1)])

        asyncio.run(bot.on_member_join(discord_member(42, "newbie")))

        user = DiscordUser.get_by_id(42)
        assert (user.name, user.discriminator) == ("newbie", None)
        assert invites.find_member_invite(GUILD_ID, 42).code == "ABC"
    finally:
        close_db()


def test_guild_join_event_syncs_server_and_reconciles(tmp_path):
    source = FakeInviteSource({GUILD_ID: [make_invite("A")]})
    bot = make_bot(tmp_path, source)
    try:
        invites.create_invite(GUILD_ID, "GONE", inviter_id=10)
        guild = SimpleNamespace(
            id=GUILD_ID, name="Guild", owner_id=3, member_count=12, members=[]
        )

        asyncio.run(bot.on_guild_join(guild))

        server = Server.get_by_id(GUILD_ID)
        assert (server.name, server.owner_id, server.member_count) == ("Guild", 3, 12)
        assert invites.find_invite_by_code(GUILD_ID, "GONE").active is False
        assert invites.find_invite_by_code(GUILD_ID, "A").active is True
    finally:
        close_db()


def test_invite_events_ignore_guildless_invites(tmp_path):
    source = FakeInviteSource()
    bot = make_bot(tmp_path, source)
    try:
        invite = SimpleNamespace(guild=None, code="DM")

        asyncio.run(bot.on_invite_create(invite))
        asyncio.run(bot.on_invite_delete(invite))

        assert source.audit_calls == []
    finally:
        close_db()


def test_guild_join_event_syncs_cached_members(tmp_path, caplog):
    bot = make_bot(tmp_path, FakeInviteSource())
    try:
        broken = SimpleNamespace(id=13, name="ghost")
        guild = SimpleNamespace(
            id=GUILD_ID,
            name="Guild",
            owner_id=3,
            member_count=3,
            members=[
                discord_member(1, "alice", discriminator="1234"),
                broken,
                discord_member(2, "helper", bot=True),
            ],
        )

        with caplog.at_level(logging.WARNING, logger="invite_tracker.bot"):
            asyncio.run(bot.on_guild_join(guild))

        users = {u.discord_user_id: u for u in DiscordUser.select()}
        assert set(users) == {1, 2}
        assert users[1].discriminator == "1234"
        assert users[2].bot_account is True
        assert "Failed to sync member 13" in caplog.text
    finally:
        close_db()


def test_guild_remove_event_forgets_guild(tmp_path):
    source = FakeInviteSource({GUILD_ID: [make_invite("A")]})
    bot = make_bot(tmp_path, source)
    try:
        asyncio.run(bot.invite_tracker.on_member_join(GUILD_ID, 42))

        asyncio.run(bot.on_guild_remove(SimpleNamespace(id=GUILD_ID, name="Guild")))

        assert not bot.invite_tracker.cache.has_guild(GUILD_ID)
        assert GUILD_ID not in bot.invite_tracker._join_locks
    finally:
        close_db()


def test_command_error_handler_reports_check_failure(tmp_path):
    bot = make_bot(tmp_path)
    try:
        interaction = FakeInteraction(FakeGuild(GUILD_ID), FakeUser(1))

        asyncio.run(bot.tree.on_error(interaction, app_commands.CheckFailure()))

        assert (
            interaction.response.message
            == "You do not have permission to use this command."
        )
        assert interaction.response.ephemeral is True
    finally:
        close_db()


def test_command_error_handler_reports_failure(tmp_path):
    bot = make_bot(tmp_path)
    try:
        fresh = FakeInteraction(FakeGuild(GUILD_ID), FakeUser(1))
        answered = FakeInteraction(FakeGuild(GUILD_ID), FakeUser(1))
        asyncio.run(answered.response.send_message("working..."))
        error = app_commands.AppCommandError("boom")

        asyncio.run(bot.tree.on_error(fresh, error))
        asyncio.run(bot.tree.on_error(answered, error))

        assert fresh.response.message == "Command failed: boom"
        assert answered.response.message == "working..."
        assert answered.followup.messages == ["Command failed: boom"]
    finally:
        close_db()


def test_slash_command_usage_is_logged(tmp_path, caplog):
    bot = make_bot(tmp_path)
    try:
        (listener,) = bot.extra_events["on_interaction"]
        interaction = SimpleNamespace(
            type=discord.InteractionType.application_command,
            command=SimpleNamespace(qualified_name="joined_via"),
            namespace=SimpleNamespace(user=None),
            guild=FakeGuild(GUILD_ID, name="Home"),
            user=FakeUser(7, display_name="Mod"),
        )
        component = SimpleNamespace(type=discord.InteractionType.component)

        with caplog.at_level(logging.INFO, logger="invite_tracker.bot"):
            asyncio.run(listener(interaction))
            asyncio.run(listener(component))

        messages = [r.getMessage() for r in caplog.records if "Slash" in r.msg]
        assert messages == [
            "Slash command joined_via by Mod (7) in Home (999) "
            "with options {'user': None}"
        ]
    finally:
        close_db()
