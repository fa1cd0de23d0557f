from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

import discord
from discord import app_commands
from discord.ext import commands

from .config import BotConfig, load_config
from .ledger import WeeklyKillLedger
from .models import (
    BotModels,
    init_db,
    link_staff,
    top_killers,
    unlink_staff,
)
from .notifier import ChannelNotifier
from .polling import ClanPoller, PollingScheduler
from .progress import ProgressReport, check_progress
from .roat import PlayerNotFoundError, PlayerStats, RoatClient, RoatError
from .store import BaselineExistsError, BaselineNotFoundError, BaselineStore
from .voice import VoiceTracker, WeekKey

# Default to INFO until the configured level is applied at startup
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s"
)
LOGGER = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
MAX_LIMIT = 25


def user_label(user_id: int, member: Any | None = None) -> str:
    name = getattr(member, "display_name", None) if member else None
    return f"{name} ({user_id})" if name else str(user_id)


def member_is_admin(member: Any) -> bool:
    perms = getattr(member, "guild_permissions", None)
    if perms is None:
        return False
    return bool(perms.administrator or perms.manage_guild)


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_LIMIT
    return max(1, min(int(limit), MAX_LIMIT))


def format_duration_ms(milliseconds: int) -> str:
    total = max(int(milliseconds), 0) // 1000
    hours = total // 3600
    minutes = (total % 3600) // 60
    seconds = total % 60
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if seconds or not parts:
        parts.append(f"{seconds}s")
    return " ".join(parts)


def format_progress(report: ProgressReport) -> str:
    since = (
        report.tracked_since.strftime("%Y-%m-%d")
        if report.tracked_since
        else "unknown"
    )
    rows = [
        ("🔥 Kills", report.kills),
        ("💀 Deaths", report.deaths),
        ("🌋 Jad kills", report.jad_kills),
        ("👹 Skotizo kills", report.skotizo_kills),
    ]
    lines = [f"📊 **Progress check for {report.username}**"]
    for label, metric in rows:
        lines.append(
            f"{label}: First tracked **{metric.baseline}**, Now **{metric.live}**, "
            f"Change: **{metric.formatted}**"
        )
    lines.append(f"⏳ Tracked since: {since}")
    return "\n".join(lines)


def format_baseline(username: str, stats: PlayerStats, since: str) -> str:
    return "\n".join(
        [
            f"✅ **{username} added to the database! (Started tracking from: {since})**",
            f"🔥 Kills: **{stats.kills}**",
            f"💀 Deaths: **{stats.deaths}**",
            f"🏆 Elo: **{stats.elo:g}**",
            f"🌋 Jad kills: **{stats.jad_kills}**",
            f"👹 Skotizo kills: **{stats.skotizo_kills}**",
        ]
    )


def format_lookup(username: str, stats: PlayerStats) -> str:
    kdr = "✅ POSITIVE KDR" if stats.kills >= stats.deaths else "❌ NEGATIVE KDR"
    return (
        f"🔍 **{username}** has **{stats.kills}** kills and **{stats.deaths}** deaths"
        f" | Elo: **{stats.elo:g}** (**{kdr}**)"
    )


def format_leaderboard(
    title: str, rows: Iterable[Tuple[str, int]], unit: str = "kills"
) -> str:
    lines = [f"**{title}**"]
    for position, (name, value) in enumerate(rows, start=1):
        lines.append(f"`{position:>2}.` {name}: **{value}** {unit}")
    if len(lines) == 1:
        lines.append("No data yet.")
    return "\n".join(lines)


def build_player_embed(stats: PlayerStats, clan_name: str) -> discord.Embed:
    embed = discord.Embed(
        title=f"📄 Player Lookup: {stats.display_name or stats.username}",
        color=discord.Color(0xFFCC00),
        timestamp=discord.utils.utcnow(),
    )
    embed.add_field(name="⚔️ Kills", value=str(stats.kills), inline=True)
    embed.add_field(name="💀 Deaths", value=str(stats.deaths), inline=True)
    embed.add_field(name="📊 K/D", value=str(stats.kd_ratio), inline=True)
    embed.add_field(name="🎮 Game Mode", value=stats.game_mode or "Unknown", inline=True)
    embed.add_field(name="⭐ Rank", value=stats.player_rank or "None", inline=True)
    embed.add_field(
        name="💎 Donator", value=str(stats.donator_rank or "None"), inline=True
    )
    embed.add_field(name="🔥 ELO", value=f"{stats.elo:g}", inline=True)
    embed.add_field(
        name="🏰 Clan Rank", value=stats.clan_rank_name or "None", inline=True
    )
    embed.add_field(name="🕒 Last Seen", value=stats.last_seen or "Unknown", inline=False)
    embed.set_footer(text=f"RoatPkz API • Clan: {clan_name}")
    return embed


class ClanBot(commands.Bot):
    def __init__(
        self,
        config: BotConfig,
        models: BotModels | None = None,
        client: Any | None = None,
    ):
        intents = discord.Intents.default()
        intents.members = True
        intents.guilds = True
        intents.voice_states = True
        super().__init__(command_prefix="!", intents=intents)
        self.config = config
        self.models = models or init_db(config.database_path)
        self.client = client or RoatClient(
            api_key=config.api_key,
            api_base=config.api_base,
            hiscore_base=config.hiscore_base,
            clan_name=config.clan_name,
            timeout_seconds=config.request_timeout_seconds,
        )
        self.store = BaselineStore(self.models)
        self.ledger = WeeklyKillLedger(self.models)
        self.voice = VoiceTracker(self.models, config.ignored_voice_channel_ids)
        self.notifier = ChannelNotifier(self, max_retries=config.notify_max_retries)
        self.poller = ClanPoller(
            self.models,
            self.client,
            self.notifier,
            self.ledger,
            ban_channel_id=config.ban_channel_id,
            warfare_channel_id=config.warfare_channel_id,
            ban_display_limit=config.ban_display_limit,
        )
        self.scheduler = PollingScheduler()
        self.scheduler.add_job("bans", config.ban_check_seconds, self.poller.check_bans)
        self.scheduler.add_job(
            "warfare", config.warfare_check_seconds, self.poller.check_warfare
        )
        self.scheduler.add_job(
            "roster", config.roster_refresh_seconds, self.poller.refresh_roster
        )

    async def setup_hook(self) -> None:
        await self.tree.sync()
        self.scheduler.start(wait_ready=self.wait_until_ready, is_closed=self.is_closed)

    async def close(self) -> None:
        await self.scheduler.stop()
        await super().close()
        await self.client.close()
        self.models.db.close()

    async def on_ready(self):
        LOGGER.info("Bot ready as %s", self.user)
        for guild in self.guilds:
            try:
                self.reconcile_voice(guild)
            except Exception as exc:
                LOGGER.exception("Voice reconcile failed for guild %s: %s", guild.id, exc)

    def reconcile_voice(self, guild: Any) -> Tuple[int, int]:
        present: Dict[int, Optional[int]] = {}
        for channel in guild.voice_channels:
            for member in channel.members:
                if getattr(member, "bot", False):
                    continue
                present[member.id] = channel.id
        return self.voice.reconcile(guild.id, present)

    async def on_voice_state_update(self, member: Any, before: Any, after: Any):
        if getattr(member, "bot", False):
            return
        before_id = before.channel.id if before.channel else None
        after_id = after.channel.id if after.channel else None
        if before_id == after_id:
            return
        try:
            self.voice.handle_transition(
                member.id,
                member.guild.id,
                before_id,
                after_id,
                display_name=getattr(member, "display_name", None),
            )
        except Exception as exc:
            LOGGER.exception(
                "Voice update failed for %s in guild %s: %s",
                user_label(member.id, member),
                member.guild.id,
                exc,
            )


async def setup_commands(bot: ClanBot):
    tree = bot.tree

    async def require_admin(interaction: discord.Interaction) -> bool:
        if interaction.guild is None:
            await interaction.response.send_message(
                "Commands must be used inside a guild.", ephemeral=True
            )
            return False
        if not member_is_admin(interaction.user):
            await interaction.response.send_message(
                "You do not have permission to use this command.", ephemeral=True
            )
            return False
        return True

    @bot.listen("on_interaction")
    async def log_app_command(interaction: discord.Interaction):
        if interaction.type != discord.InteractionType.application_command:
            return
        cmd = interaction.command
        data = getattr(interaction, "namespace", None)
        try:
            payload = vars(data) if data else {}
        except TypeError:
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

    @tree.command(name="add", description="Add a player manually to the tracking database.")
    @app_commands.describe(username="RoatPkz username")
    async def add(interaction: discord.Interaction, username: str):
        username = username.strip()
        if bot.store.get(username) is not None:
            await interaction.response.send_message(f"⚠️ **{username}** already added!")
            return
        await interaction.response.defer(thinking=True)
        try:
            stats = await bot.client.fetch_player_stats(username)
        except PlayerNotFoundError:
            await interaction.followup.send(
                f"❌ USERNAME (**{username}**) NOT FOUND ON THE ROAT PKZ HIGHSCORES!"
            )
            return
        except RoatError as exc:
            LOGGER.warning("Add lookup failed for %s: %s", username, exc)
            await interaction.followup.send("❌ ERROR WHILE SAVING. PLEASE TRY AGAIN.")
            return
        approver = getattr(interaction.user, "display_name", None) or "Manual command"
        try:
            baseline = bot.store.create(username, stats, approver)
        except BaselineExistsError:
            await interaction.followup.send(f"⚠️ **{username}** already added!")
            return
        since = baseline.tracked_since.strftime("%Y-%m-%d")
        await interaction.followup.send(format_baseline(username, stats, since))

    @tree.command(
        name="check",
        description="Compare username with roat pkz highscores and our database!",
    )
    @app_commands.describe(username="RoatPkz username")
    async def check(interaction: discord.Interaction, username: str):
        await interaction.response.defer(thinking=True)
        try:
            report = await check_progress(bot.store, bot.client, username.strip())
        except BaselineNotFoundError:
            await interaction.followup.send(f"❌ NO TRACKING FOUND FOR **{username}**")
            return
        except PlayerNotFoundError:
            await interaction.followup.send(
                f"❌ **{username}** is no longer on the RoatPkz highscores."
            )
            return
        except RoatError as exc:
            LOGGER.warning("Progress check failed for %s: %s", username, exc)
            await interaction.followup.send("❌ Error while checking progress.")
            return
        await interaction.followup.send(format_progress(report))

    @tree.command(name="lookup", description="Lookup RoatPkz hiscore stats")
    @app_commands.describe(username="RoatPkz username")
    async def lookup(interaction: discord.Interaction, username: str):
        await interaction.response.defer(thinking=True)
        try:
            stats = await bot.client.fetch_player_stats(
                username.strip(), include_bosses=False
            )
        except PlayerNotFoundError:
            await interaction.followup.send(f"❌ Player not found! (**{username}**)")
            return
        except RoatError as exc:
            LOGGER.warning("Lookup failed for %s: %s", username, exc)
            await interaction.followup.send("❌ REQUEST ERROR")
            return
        await interaction.followup.send(format_lookup(username, stats))

    @tree.command(name="player", description="Shows all player information")
    @app_commands.describe(username="RoatPkz username")
    async def player(interaction: discord.Interaction, username: str):
        await interaction.response.defer(thinking=True)
        try:
            stats = await bot.client.fetch_player_stats(
                username.strip(), include_bosses=False
            )
        except PlayerNotFoundError:
            await interaction.followup.send(f"❌ Player **{username}** not found!")
            return
        except RoatError as exc:
            LOGGER.warning("Player lookup failed for %s: %s", username, exc)
            await interaction.followup.send("❌ Error while fetching player data.")
            return
        await interaction.followup.send(
            embed=build_player_embed(stats, bot.config.clan_name)
        )

    @tree.command(
        name="jadandskotizo",
        description="Lookup RoatPkz hiscore stats for jad and skotizo",
    )
    @app_commands.describe(username="RoatPkz username")
    async def jadandskotizo(interaction: discord.Interaction, username: str):
        await interaction.response.defer(thinking=True)
        try:
            jad, skotizo = await bot.client.fetch_boss_kills(username.strip())
        except PlayerNotFoundError:
            await interaction.followup.send(f"❌ Player not found! (**{username}**)")
            return
        except RoatError as exc:
            LOGGER.warning("Boss kill lookup failed for %s: %s", username, exc)
            await interaction.followup.send("❌ Error fetching Jad/Skotizo kills")
            return
        await interaction.followup.send(
            f"🌋 **{username} - Jad & Skotizo Kills**\n"
            f"🌋 TzTok-Jad Kills: **{jad}**\n"
            f"👹 Skotizo Kills: **{skotizo}**"
        )

    @tree.command(name="weekly", description="Shows the weekly top killers in the clan.")
    @app_commands.describe(limit="Number of top players to show (default 10)")
    async def weekly(interaction: discord.Interaction, limit: Optional[int] = None):
        rows = bot.ledger.top_n(clamp_limit(limit))
        await interaction.response.send_message(
            format_leaderboard("🏆 Weekly top killers", rows)
        )

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="resetweekly", description="Resets all weekly kills to 0 for a new week.")
    async def resetweekly(interaction: discord.Interaction):
        if not await require_admin(interaction):
            return
        changed = bot.ledger.reset_all()
        LOGGER.info(
            "Weekly kills reset by %s (%s rows changed)",
            user_label(interaction.user.id, interaction.user),
            changed,
        )
        await interaction.response.send_message(
            f"♻️ Weekly kills reset ({changed} records updated)."
        )

    @tree.command(
        name="topkillers",
        description="Shows the top killers in the clan since the last weekly reset.",
    )
    @app_commands.describe(limit="Number of top players to show (default 10)")
    async def topkillers(interaction: discord.Interaction, limit: Optional[int] = None):
        rows = bot.ledger.top_n(clamp_limit(limit))
        await interaction.response.send_message(
            format_leaderboard("⚔️ Top killers", rows)
        )

    @tree.command(
        name="alltimekillers",
        description="Shows the clan members with the most kills overall.",
    )
    @app_commands.describe(limit="Number of top players to show (default 10)")
    async def alltimekillers(
        interaction: discord.Interaction, limit: Optional[int] = None
    ):
        rows = top_killers(bot.models, clamp_limit(limit))
        await interaction.response.send_message(
            format_leaderboard("🏅 Top killers (all time)", rows)
        )

    @tree.command(
        name="checkvoice",
        description="Check how much time a user spent in voice this week",
    )
    @app_commands.describe(user="Select a Discord user")
    async def checkvoice(interaction: discord.Interaction, user: discord.Member):
        if interaction.guild is None:
            await interaction.response.send_message(
                "Commands must be used inside a guild.", ephemeral=True
            )
            return
        now = discord.utils.utcnow().replace(tzinfo=None)
        total = bot.voice.current_weekly_ms(user.id, interaction.guild.id, now)
        await interaction.response.send_message(
            f"🎙️ **{user.display_name}** spent **{format_duration_ms(total)}** "
            f"in voice this week ({WeekKey.of(now)})."
        )

    @tree.command(name="topvoice", description="Shows who spent the most time in voice this week")
    @app_commands.describe(limit="Number of users to show (default 10)")
    async def topvoice(interaction: discord.Interaction, limit: Optional[int] = None):
        if interaction.guild is None:
            await interaction.response.send_message(
                "Commands must be used inside a guild.", ephemeral=True
            )
            return
        now = discord.utils.utcnow().replace(tzinfo=None)
        ranked = bot.voice.top_voice(interaction.guild.id, now, clamp_limit(limit))
        lines: List[str] = [f"**🎙️ Voice activity {WeekKey.of(now)}**"]
        for position, (user_id, name, total) in enumerate(ranked, start=1):
            lines.append(
                f"`{position:>2}.` {name or f'<@{user_id}>'}: **{format_duration_ms(total)}**"
            )
        if len(lines) == 1:
            lines.append("Nobody has been in voice this week.")
        await interaction.response.send_message("\n".join(lines))

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(
        name="linkusername",
        description="Link ingame username to discord. Used for automatic ban messages.",
    )
    @app_commands.describe(
        discorduser="Discord user to give ban rights",
        username="In-game username of the Discord user",
    )
    async def linkusername(
        interaction: discord.Interaction, discorduser: discord.Member, username: str
    ):
        if not await require_admin(interaction):
            return
        link_staff(bot.models, discorduser.id, username)
        LOGGER.info(
            "Staff link %s -> %s by %s",
            username,
            user_label(discorduser.id, discorduser),
            user_label(interaction.user.id, interaction.user),
        )
        await interaction.response.send_message(
            f"🔗 Linked **{username.strip()}** to <@{discorduser.id}>.", ephemeral=True
        )

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(
        name="removelink",
        description="Remove Discord-ban rights mapping for a given in-game username.",
    )
    @app_commands.describe(username="In-game username to remove the mapping for")
    async def removelink(interaction: discord.Interaction, username: str):
        if not await require_admin(interaction):
            return
        if not unlink_staff(bot.models, username):
            await interaction.response.send_message(
                f"❌ No link found for **{username}**.", ephemeral=True
            )
            return
        LOGGER.info(
            "Staff link for %s removed by %s",
            username,
            user_label(interaction.user.id, interaction.user),
        )
        await interaction.response.send_message(
            f"🗑️ Removed link for **{username}**.", ephemeral=True
        )

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(
        name="testwarfare",
        description="Send a test message with the latest clan warfare result",
    )
    async def testwarfare(interaction: discord.Interaction):
        if not await require_admin(interaction):
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        summary = await bot.poller.post_latest_warfare(interaction.channel_id)
        await interaction.followup.send(summary, ephemeral=True)


async def main():
    bot_config = load_config()
    logging.getLogger().setLevel(bot_config.log_level)
    LOGGER.setLevel(bot_config.log_level)
    bot = ClanBot(bot_config)
    await setup_commands(bot)
    await bot.start(bot_config.token)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
