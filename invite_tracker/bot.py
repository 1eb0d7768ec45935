from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, List, Optional

import discord
from discord import app_commands
from discord.ext import commands

from .config import BotConfig, load_config
from .gateway import DiscordInviteSource, GuildInvite
from .invites import (
    InviterStats,
    find_member_invite,
    get_active_invites,
    get_invite_stats,
)
from .models import Invite, close_db, init_db, sync_server, sync_user
from .tracker import InviteTracker

# Default to INFO until the configured level is applied at startup
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s"
)
LOGGER = logging.getLogger(__name__)

LEADERBOARD_SIZE = 10
ACTIVE_INVITES_LIMIT = 25


def user_label(user_id: int, member: Any | None = None) -> str:
    name = getattr(member, "display_name", None) if member else None
    return f"{name} ({user_id})" if name else str(user_id)


def format_invite_stats(
    stats: Iterable[InviterStats], limit: int = LEADERBOARD_SIZE
) -> str:
    lines = []
    for rank, entry in enumerate(list(stats)[:limit], start=1):
        joins = "join" if entry.total_uses == 1 else "joins"
        lines.append(
            f"{rank}. <@{entry.inviter_id}>: {entry.total_uses} {joins} "
            f"({entry.active_invites} active)"
        )
    return "\n".join(lines) or "No invites tracked yet."


def format_active_invites(
    invites: Iterable[Invite], limit: int = ACTIVE_INVITES_LIMIT
) -> str:
    lines = []
    for invite in list(invites)[:limit]:
        uses = str(invite.uses)
        if invite.max_uses:
            uses = f"{invite.uses}/{invite.max_uses}"
        inviter = f"<@{invite.inviter_id}>" if invite.inviter_id else "unknown"
        expiry = (
            f", expires {invite.expires_at:%Y-%m-%d %H:%M} UTC"
            if invite.expires_at
            else ""
        )
        lines.append(f"`{invite.code}` by {inviter}: {uses} uses{expiry}")
    return "\n".join(lines) or "No active invites."


def member_can_manage_invites(member: Any) -> bool:
    perms = getattr(member, "guild_permissions", None)
    if perms is None:
        return False
    return bool(perms.administrator or perms.manage_guild)


class InviteTrackerBot(commands.Bot):
    def __init__(self, config: BotConfig):
        intents = discord.Intents.default()
        intents.members = True
        intents.guilds = True
        intents.invites = True
        super().__init__(command_prefix="!", intents=intents)
        self.config = config
        init_db(config.database_path)
        self.invite_tracker = InviteTracker(DiscordInviteSource(self))

    async def close(self) -> None:
        await super().close()
        close_db()

    async def setup_hook(self) -> None:
        if self.config.dev_guild_id:
            guild = discord.Object(id=self.config.dev_guild_id)
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)
        else:
            await self.tree.sync()

    async def on_ready(self):
        LOGGER.info("Bot ready as %s", self.user)
        LOGGER.info("Serving %s guilds", len(self.guilds))
        await self._bootstrap_guilds_on_ready()

    async def _bootstrap_guilds_on_ready(self):
        for guild in self.guilds:
            try:
                await self._bootstrap_guild(guild)
            except Exception as exc:
                LOGGER.exception("Failed to initialize guild %s: %s", guild.id, exc)

    async def _bootstrap_guild(self, guild: discord.Guild, reconcile: bool = False):
        sync_server(
            guild.id,
            guild.name,
            owner_id=guild.owner_id,
            member_count=guild.member_count or 0,
        )
        cached = await self.invite_tracker.on_guild_bootstrap(
            guild.id, reconcile=reconcile
        )
        LOGGER.info(
            "Cached %s invites for guild %s (%s)", cached, guild.name, guild.id
        )

    async def on_guild_join(self, guild: discord.Guild):
        LOGGER.info("New guild joined: %s (%s)", guild.name, guild.id)
        await self._bootstrap_guild(guild, reconcile=True)
        self._sync_members(guild)

    def _sync_members(self, guild: discord.Guild) -> int:
        synced = 0
        for member in guild.members:
            try:
                _sync_member(member)
                synced += 1
            except Exception as exc:
                LOGGER.warning(
                    "Failed to sync member %s in guild %s: %s",
                    getattr(member, "id", "?"),
                    guild.id,
                    exc,
                )
        LOGGER.info("Synced %s members for guild %s", synced, guild.id)
        return synced

    async def on_guild_remove(self, guild: discord.Guild):
        LOGGER.info("Removed from guild %s (%s)", guild.name, guild.id)
        self.invite_tracker.forget_guild(guild.id)

    async def on_invite_create(self, invite: discord.Invite):
        if invite.guild is None:
            return
        await self.invite_tracker.on_invite_create(
            invite.guild.id, GuildInvite.from_discord(invite)
        )

    async def on_invite_delete(self, invite: discord.Invite):
        if invite.guild is None:
            return
        await self.invite_tracker.on_invite_delete(invite.guild.id, invite.code)

    async def on_member_join(self, member: discord.Member):
        LOGGER.debug("Member joined: %s in %s", member, member.guild.id)
        _sync_member(member)
        await self.invite_tracker.on_member_join(member.guild.id, member.id)


def _sync_member(member: discord.Member) -> None:
    discriminator = getattr(member, "discriminator", None)
    sync_user(
        member.id,
        member.name,
        discriminator=discriminator if discriminator not in (None, "0") else None,
        avatar_url=str(member.display_avatar.url),
        bot_account=member.bot,
    )


def bot_invite_url(application_id: int) -> str:
    return discord.utils.oauth_url(
        application_id,
        permissions=discord.Permissions(administrator=True),
        scopes=("bot", "applications.commands"),
    )


# Command registrations
async def setup_commands(bot: InviteTrackerBot):
    tree = bot.tree

    async def resolve_guild(
        interaction: discord.Interaction,
    ) -> Optional[discord.Guild]:
        guild = interaction.guild
        if guild is None:
            await interaction.response.send_message(
                "Commands must be used inside a guild.", ephemeral=True
            )
            return None
        return guild

    @bot.listen("on_interaction")
    async def log_app_command(interaction: discord.Interaction):
        if interaction.type != discord.InteractionType.application_command:
            return
        cmd = interaction.command
        data = getattr(interaction, "namespace", None)
        try:
            payload = vars(data) if data else {}
        except Exception:
            payload = str(data)
        guild = interaction.guild
        guild_label = f"{guild.name} ({guild.id})" if guild else "unknown-guild"
        uid = int(getattr(interaction.user, "id", 0) or 0)
        LOGGER.info(
            "Slash command %s by %s in %s with options %s",
            cmd.qualified_name if cmd else "unknown",
            user_label(uid, interaction.user),
            guild_label,
            payload,
        )

    @tree.error
    async def on_app_command_error(
        interaction: discord.Interaction, error: app_commands.AppCommandError
    ):
        if isinstance(error, app_commands.CheckFailure):
            if not interaction.response.is_done():
                await interaction.response.send_message(
                    "You do not have permission to use this command.",
                    ephemeral=True,
                )
            return
        LOGGER.exception("App command error: %s", error)
        message = f"Command failed: {error}"
        try:
            if interaction.response.is_done():
                await interaction.followup.send(message, ephemeral=True)
            else:
                await interaction.response.send_message(message, ephemeral=True)
        except Exception as exc:
            LOGGER.warning("Failed sending error response for command: %s", exc)

    @tree.command(name="invites", description="Show the top inviters of this server")
    async def invites(interaction: discord.Interaction):
        guild = await resolve_guild(interaction)
        if not guild:
            return
        stats = get_invite_stats(guild.id)
        await interaction.response.send_message(
            format_invite_stats(stats), ephemeral=True
        )

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="invites_active", description="List active invites")
    async def invites_active(interaction: discord.Interaction):
        guild = await resolve_guild(interaction)
        if not guild:
            return
        if not member_can_manage_invites(interaction.user):
            await interaction.response.send_message(
                "You do not have permission to use this command.", ephemeral=True
            )
            return
        rows: List[Invite] = get_active_invites(guild.id)
        await interaction.response.send_message(
            format_active_invites(rows), ephemeral=True
        )

    @tree.command(name="joined_via", description="Show which invite a member used")
    @app_commands.describe(user="Member to look up (defaults to you)")
    async def joined_via(
        interaction: discord.Interaction, user: Optional[discord.Member] = None
    ):
        guild = await resolve_guild(interaction)
        if not guild:
            return
        target = user or interaction.user
        invite = find_member_invite(guild.id, target.id)
        if invite is None:
            message = f"No invite recorded for {user_label(target.id, target)}."
        else:
            inviter = f" created by <@{invite.inviter_id}>" if invite.inviter_id else ""
            message = (
                f"{user_label(target.id, target)} joined via `{invite.code}`{inviter}."
            )
        await interaction.response.send_message(message, ephemeral=True)

    @tree.command(name="invite", description="Get the bot invite URL")
    async def invite(interaction: discord.Interaction):
        if bot.application_id is None:
            await interaction.response.send_message(
                "Bot application is not ready yet.", ephemeral=True
            )
            return
        await interaction.response.send_message(
            f"Invite me to your server: {bot_invite_url(bot.application_id)}",
            ephemeral=True,
        )


async def main():
    bot_config = load_config()
    logging.getLogger().setLevel(bot_config.log_level)
    LOGGER.setLevel(bot_config.log_level)
    bot = InviteTrackerBot(bot_config)
    await setup_commands(bot)
    await bot.start(bot_config.token)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
