"""Discord slash commands for the gallery.

Query commands (count, random, react, collage) repost archived media and
record which message they posted so it can later be untagged or deleted by
replying to it. The stats command renders the counters kept by
StatsAggregator; its migrate and refresh variants are restricted to admins.
"""

from __future__ import annotations

import io
import math
from datetime import datetime
from typing import TYPE_CHECKING, Any

import discord
from discord import app_commands
from discord.ext import commands

from skagallery.collage import create_collage
from skagallery.logging import get_logger
from skagallery.models import (
    MediaFilter,
    MediaRecord,
    MigrationStatus,
    RankField,
    Ranking,
    ServerStats,
    UserStats,
    WeeklyStats,
    utcnow,
)
from skagallery.ranking import achievement
from skagallery.stats import upload_frequency
from skagallery.store import NotFoundError
from skagallery.tagging import REACT_TAG

if TYPE_CHECKING:
    from skagallery.bot import GalleryBot
    from skagallery.config import Config

log = get_logger("commands")

MEDALS = ["🥇", "🥈", "🥉", "4️⃣", "5️⃣"]

MEDIA_TYPE_CHOICES = [
    app_commands.Choice(name="Images", value=MediaFilter.IMAGE.value),
    app_commands.Choice(name="GIFs", value=MediaFilter.GIF.value),
]

STATS_TYPE_CHOICES = [
    app_commands.Choice(name="Personal Stats", value="personal"),
    app_commands.Choice(name="Server Rankings", value="rankings"),
    app_commands.Choice(name="Leaderboard", value="leaderboard"),
    app_commands.Choice(name="Server Overview", value="server"),
    app_commands.Choice(name="This Week", value="weekly"),
    app_commands.Choice(name="Admin: Migrate Existing Data", value="migrate"),
    app_commands.Choice(name="Admin: Refresh Server Stats", value="refresh"),
]

ADMIN_STATS_TYPES = {"migrate", "refresh"}


# =============================================================================
# Access control
# =============================================================================


def is_admin(config: "Config", user: Any) -> bool:
    """Check if a user may run admin commands.

    Admins are identified by:
    1. User ID in the configured admin_user_ids list
    2. Having the configured admin_role_id (guild members only)
    3. The Administrator permission in the guild

    Args:
        config: Application configuration.
        user: Discord user or member.

    Returns:
        True if the user is an admin.
    """
    discord_config = config.discord
    if str(user.id) in discord_config.admin_user_ids:
        return True

    if not isinstance(user, discord.Member):
        return False

    if discord_config.admin_role_id:
        if discord_config.admin_role_id in {str(r.id) for r in user.roles}:
            return True

    return user.guild_permissions.administrator is True


# =============================================================================
# Rendering
# =============================================================================


def format_bytes(size: int) -> str:
    """Human-readable size with up to two decimals (``1.5 KB``)."""
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    value = float(size)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {units[i]}"


def media_payload(record: MediaRecord) -> dict[str, Any]:
    """Message kwargs that show a record.

    Remote items are posted as their URL so Discord embeds them; local
    files are attached.
    """
    if not record.is_local:
        return {"content": record.locator}
    return {"file": discord.File(record.locator, filename=record.filename)}


def days_since(moment: datetime | None, now: datetime) -> int:
    if moment is None:
        return 0
    return math.ceil((now - moment).total_seconds() / 86400)


def no_stats_embed(name: str, title: str = "📊 No Statistics Found") -> discord.Embed:
    return discord.Embed(
        title=title,
        description=f"{name} hasn't uploaded any images yet!",
        color=0xFF6B6B,
    )


def personal_embed(stats: UserStats, server: ServerStats, now: datetime) -> discord.Embed:
    """Lifetime stats for one user, compared with the server average."""
    embed = discord.Embed(title=f"📊 Gallery Stats for {stats.name}", color=0x4A90E2)
    frequency = upload_frequency(stats)

    embed.add_field(name="📸 Upload Count", value=f"**{stats.upload_count:,}** images")
    embed.add_field(name="💾 Total Storage", value=format_bytes(stats.total_size_bytes))
    embed.add_field(
        name="🕒 Last Upload", value=f"{days_since(stats.last_upload_at, now)} days ago"
    )
    embed.add_field(
        name="⚡ Upload Frequency",
        value=f"{frequency:.2f} images/day" if frequency > 0 else "N/A",
    )

    top = stats.top_content_type
    if top:
        embed.add_field(name="🎨 Favorite Format", value=f"{top[0]} ({top[1]} images)")

    if server.avg_images_per_user > 0:
        vs_average = (stats.upload_count / server.avg_images_per_user - 1) * 100
        embed.add_field(
            name="📊 vs Server Average",
            value=(
                f"+{vs_average:.1f}% above average"
                if vs_average > 0
                else f"{abs(vs_average):.1f}% below average"
            ),
        )

    embed.set_footer(text="Use /stats type:rankings to see server rankings")
    return embed


def rankings_embed(
    stats: UserStats,
    uploads: Ranking,
    frequency: Ranking | None,
) -> discord.Embed:
    """Upload count and frequency rankings with any earned achievement."""
    embed = discord.Embed(title=f"🏆 Server Rankings for {stats.name}", color=0x9B59B6)
    embed.add_field(
        name="📸 Upload Count Ranking",
        value=(
            f"**#{uploads.rank}** out of {uploads.total} users\n"
            f"**{int(uploads.value):,}** uploads ({uploads.percentile}th percentile)"
        ),
        inline=False,
    )
    embed.add_field(
        name="⚡ Upload Frequency Ranking",
        value=(
            f"**#{frequency.rank}** out of {frequency.total} active users\n"
            f"**{frequency.value:.2f}** images/day ({frequency.percentile}th percentile)"
            if frequency
            else "Not enough data (need 2+ uploads)"
        ),
        inline=False,
    )

    title = achievement(uploads.percentile)
    if title:
        embed.add_field(name="🌟 Achievement", value=f"**{title}**", inline=False)

    embed.set_footer(text="Use /stats type:leaderboard to see top users")
    return embed


def leaderboard_embed(top: list[UserStats]) -> discord.Embed:
    embed = discord.Embed(
        title="🏆 Gallery Leaderboards",
        description="Top performers in the gallery!",
        color=0xF39C12,
    )
    if top:
        lines = [
            f"{MEDALS[i] if i < len(MEDALS) else f'{i + 1}.'} **{user.name}** - "
            f"{user.upload_count:,} uploads"
            for i, user in enumerate(top)
        ]
        embed.add_field(name="📸 Most Uploads", value="\n".join(lines), inline=False)
    embed.set_footer(text="Use /stats type:server for overall server statistics")
    return embed


def server_embed(server: ServerStats) -> discord.Embed:
    embed = discord.Embed(
        title="🌐 Server Gallery Overview",
        description="Complete statistics for this server's gallery",
        color=0x2ECC71,
    )
    embed.add_field(name="👥 Total Users", value=f"**{server.total_users:,}** contributors")
    embed.add_field(name="📸 Total Images", value=f"**{server.total_images:,}** uploads")
    embed.add_field(name="📊 Average per User", value=f"**{server.avg_images_per_user}** images")
    embed.add_field(name="📈 Median Uploads", value=f"**{server.median_uploads}** per user")

    if server.content_types:
        top_types = sorted(server.content_types.items(), key=lambda item: item[1], reverse=True)
        embed.add_field(
            name="🎨 Content Types",
            value="\n".join(f"**{label}**: {count:,}" for label, count in top_types[:3]),
            inline=False,
        )

    embed.set_footer(text=f"Last updated: {server.last_updated_at:%Y-%m-%d %H:%M} UTC")
    return embed


def weekly_embed(week: WeeklyStats, names: dict[str, str]) -> discord.Embed:
    """This week's uploads, busiest users first."""
    embed = discord.Embed(
        title=f"📅 Gallery Week {week.week_id}",
        description=f"{week.week_start:%b %d} - {week.week_end:%b %d, %Y}",
        color=0x1ABC9C,
    )
    embed.add_field(name="📸 Uploads", value=f"**{week.total_uploads:,}**")
    embed.add_field(name="👥 Contributors", value=f"**{week.total_users:,}**")

    ranked = sorted(week.per_user.items(), key=lambda item: item[1].upload_count, reverse=True)
    if ranked:
        lines = [
            f"{MEDALS[i] if i < len(MEDALS) else f'{i + 1}.'} **{names.get(user_id, user_id)}** - "
            f"{entry.upload_count:,} uploads ({format_bytes(entry.total_size_bytes)})"
            for i, (user_id, entry) in enumerate(ranked[:5])
        ]
        embed.add_field(name="🔥 Most Active", value="\n".join(lines), inline=False)
    return embed


def migration_status_embed(status: MigrationStatus) -> discord.Embed:
    embed = discord.Embed(
        title="ℹ️ Migration Already Completed",
        description="Stats have already been migrated from existing data.",
        color=0xF39C12,
    )
    embed.add_field(name="Status", value="✅ Complete")
    embed.add_field(name="User Stats", value=f"{status.migrated_user_count} users")
    return embed


def help_embed() -> discord.Embed:
    embed = discord.Embed(
        title="SkaGallery Help",
        description="SkaGallery saves every image posted in the gallery channel for later use.",
        color=0x3498DB,
    )
    embed.add_field(
        name="⚡ Reaction Images",
        value="React to an image with ⚡ to tag it as a reaction image for `/react`.",
        inline=False,
    )
    embed.add_field(
        name="🔍 Commands",
        value="\n".join(
            [
                "• `/count` - Number of images in the gallery",
                "• `/random` - A random image from the gallery",
                "• `/react` - A random reaction image",
                "• `/collage` - A 3x3 collage of someone's uploads",
                "• `/stats` - Upload statistics and rankings",
                "• `/help` - This message",
            ]
        ),
        inline=False,
    )
    embed.add_field(
        name="↩️ Reply Commands",
        value="• `/delete` - Remove the image you're replying to\n"
        "• `/untag` - Remove the tag from a `/react` post",
        inline=False,
    )
    return embed


def access_denied_embed() -> discord.Embed:
    return discord.Embed(
        title="❌ Access Denied",
        description="This command requires administrator permissions.",
        color=0xFF6B6B,
    )


# =============================================================================
# Cog
# =============================================================================


class GalleryCommands(commands.Cog):
    """Slash commands for browsing the gallery and its statistics."""

    def __init__(self, bot: GalleryBot) -> None:
        """Initialize the commands cog.

        Args:
            bot: The GalleryBot instance.
        """
        self.bot = bot
        self.config = bot.config

    def is_admin(self, interaction: discord.Interaction) -> bool:
        return is_admin(self.config, interaction.user)

    async def _post_media(
        self,
        interaction: discord.Interaction,
        record: MediaRecord,
        command_name: str,
        tag: str | None = None,
    ) -> None:
        """Send a record as the command's reply and remember the message.

        The reply is already visible once sent, so a failed provenance write
        is only logged.
        """
        message = await interaction.followup.send(**media_payload(record))
        try:
            await self.bot.tagging.record_post(
                message_id=str(message.id),
                command_name=command_name,
                record=record,
                tag=tag,
                invoked_by=str(interaction.user.id),
                channel_id=str(interaction.channel_id) if interaction.channel_id else None,
            )
        except Exception as e:
            log.error(
                "command_post_record_failed",
                command=command_name,
                message_id=str(message.id),
                media_id=record.id,
                error=str(e),
            )

    @app_commands.command(name="help", description="Show what the bot does and its commands")
    async def show_help(self, interaction: discord.Interaction) -> None:
        await interaction.response.send_message(embed=help_embed())

    @app_commands.command(name="count", description="Get the number of images in the gallery")
    async def count(self, interaction: discord.Interaction) -> None:
        try:
            total = await self.bot.gallery.count()
        except Exception as e:
            log.error("count_command_failed", error=str(e))
            await interaction.response.send_message("Failed to count images in the gallery!")
            return

        await interaction.response.send_message(
            f"There are currently {total} images in the gallery."
        )
        log.info("count_command", user=str(interaction.user), total=total)

    @app_commands.command(name="random", description="Get a random image from the gallery")
    @app_commands.describe(type="Only images or only GIFs")
    @app_commands.choices(type=MEDIA_TYPE_CHOICES)
    async def random(self, interaction: discord.Interaction, type: str | None = None) -> None:
        await interaction.response.defer()
        try:
            kind = MediaFilter(type) if type else None
            record = await self.bot.gallery.random_media(kind)
            await self._post_media(interaction, record, "random")
        except NotFoundError:
            await interaction.followup.send("No images found in the gallery!")
            return
        except Exception as e:
            log.error("random_command_failed", error=str(e))
            await interaction.followup.send("Failed to fetch a random image!")
            return

        log.info("random_command", user=str(interaction.user), media_id=record.id, type=type)

    @app_commands.command(name="react", description="Get a random reaction image")
    @app_commands.describe(type="Only images or only GIFs")
    @app_commands.choices(type=MEDIA_TYPE_CHOICES)
    async def react(self, interaction: discord.Interaction, type: str | None = None) -> None:
        """Post a random item from the pool tagged by zap reactions."""
        await interaction.response.defer()
        try:
            kind = MediaFilter(type) if type else None
            record = await self.bot.gallery.random_reaction(kind)
            await self._post_media(interaction, record, "react", tag=REACT_TAG)
        except NotFoundError:
            await interaction.followup.send(
                "No reaction images found! React to gallery images with ⚡ to add some."
            )
            return
        except Exception as e:
            log.error("react_command_failed", error=str(e))
            await interaction.followup.send("Failed to fetch a reaction image!")
            return

        log.info("react_command", user=str(interaction.user), media_id=record.id, type=type)

    @app_commands.command(
        name="collage",
        description="Create a 3x3 collage of images from a specific user",
    )
    @app_commands.describe(user="The user whose images to include (defaults to you)")
    async def collage(
        self,
        interaction: discord.Interaction,
        user: discord.User | None = None,
    ) -> None:
        """Composite up to nine random static images by one user.

        GIFs are excluded since only the first frame would show.
        """
        await interaction.response.defer()
        target = user or interaction.user
        try:
            records = await self.bot.gallery.collage_candidates(str(target.id))
            png = await create_collage(records)
        except NotFoundError:
            await interaction.followup.send(
                f"No static images found for user {target.display_name}! "
                "(GIFs are excluded from collages)"
            )
            return
        except Exception as e:
            log.error("collage_command_failed", user_id=str(target.id), error=str(e))
            await interaction.followup.send("Failed to create the collage!")
            return

        plural = "s" if len(records) != 1 else ""
        await interaction.followup.send(
            content=f"3x3 collage of {len(records)} image{plural} by {target.display_name}",
            file=discord.File(
                io.BytesIO(png),
                filename=f"collage-{target.name}-{int(utcnow().timestamp())}.png",
            ),
        )
        log.info("collage_command", user=str(interaction.user), target=str(target.id))

    @app_commands.command(name="stats", description="Display gallery statistics and rankings")
    @app_commands.describe(
        user="User to show stats for (defaults to you)",
        type="Type of stats to display",
    )
    @app_commands.choices(type=STATS_TYPE_CHOICES)
    async def stats(
        self,
        interaction: discord.Interaction,
        user: discord.User | None = None,
        type: str | None = None,
    ) -> None:
        await interaction.response.defer()
        stats_type = type or "personal"
        target = user or interaction.user

        if stats_type in ADMIN_STATS_TYPES and not self.is_admin(interaction):
            await interaction.followup.send(embed=access_denied_embed())
            log.info(
                "command_rejected",
                command=f"stats:{stats_type}",
                user=str(interaction.user),
                reason="not_admin",
            )
            return

        handlers = {
            "personal": lambda: self._personal(target),
            "rankings": lambda: self._rankings(target),
            "leaderboard": self._leaderboard,
            "server": self._server,
            "weekly": self._weekly,
            "migrate": self._migrate,
            "refresh": self._refresh,
        }
        handler = handlers.get(stats_type, handlers["personal"])

        try:
            embed = await handler()
        except Exception as e:
            log.error("stats_command_failed", type=stats_type, error=str(e))
            await interaction.followup.send(
                "❌ Failed to fetch statistics. Please try again later."
            )
            return

        await interaction.followup.send(embed=embed)
        log.info("stats_command", user=str(interaction.user), type=stats_type)

    async def _personal(self, user: discord.abc.User) -> discord.Embed:
        try:
            stats = await self.bot.stats.get_user_stats(str(user.id))
        except NotFoundError:
            return no_stats_embed(user.display_name)
        server = await self.bot.stats.get_server_stats()
        return personal_embed(stats, server, utcnow())

    async def _rankings(self, user: discord.abc.User) -> discord.Embed:
        user_id = str(user.id)
        try:
            stats = await self.bot.stats.get_user_stats(user_id)
        except NotFoundError:
            return no_stats_embed(user.display_name, title="📊 No Rankings Available")
        uploads = await self.bot.ranking.rank(user_id, RankField.UPLOAD_COUNT)
        frequency = await self.bot.ranking.frequency_rank(
            user_id, self.config.stats.frequency_sample_size
        )
        return rankings_embed(stats, uploads, frequency)

    async def _leaderboard(self) -> discord.Embed:
        top = await self.bot.ranking.top_users(
            RankField.UPLOAD_COUNT, self.config.stats.leaderboard_size
        )
        return leaderboard_embed(top)

    async def _server(self) -> discord.Embed:
        return server_embed(await self.bot.stats.get_server_stats())

    async def _weekly(self) -> discord.Embed:
        week = await self.bot.stats.get_weekly_stats()
        names: dict[str, str] = {}
        for user_id in week.per_user:
            stats = await self.bot.store.get_user_stats(user_id)
            if stats:
                names[user_id] = stats.name
        return weekly_embed(week, names)

    async def _migrate(self) -> discord.Embed:
        status = await self.bot.migration.status()
        if status.has_run:
            return migration_status_embed(status)

        result = await self.bot.migration.run_safely()
        if result is None:
            return migration_status_embed(await self.bot.migration.status())

        embed = discord.Embed(
            title="✅ Migration Completed",
            description="Successfully migrated existing data to user statistics!",
            color=0x2ECC71,
        )
        embed.add_field(name="Users", value=f"{result.users_migrated:,}")
        embed.add_field(name="Images", value=f"{result.server_stats.total_images:,}")
        embed.add_field(name="Skipped", value=f"{result.media_skipped:,}")
        return embed

    async def _refresh(self) -> discord.Embed:
        server = await self.bot.stats.refresh_server_stats()
        embed = discord.Embed(
            title="✅ Server Statistics Refreshed",
            description="Successfully updated server-wide statistics!",
            color=0x2ECC71,
        )
        embed.add_field(name="Total Users", value=f"{server.total_users}")
        embed.add_field(name="Total Images", value=f"{server.total_images:,}")
        return embed
