"""Discord bot for the gallery channel.

The bot is the shell around the gallery core: it turns gallery channel
messages into ingests, zap reactions into tag changes, and replies to its
own posts into ``/delete`` and ``/untag`` actions. On startup it catches up on
anything posted while it was offline, using the ingestion watermark.
"""

from __future__ import annotations

import asyncio
import os
import signal
from datetime import datetime
from typing import TYPE_CHECKING

import discord
import httpx
from discord.ext import commands
from sqlalchemy.engine import Engine

from skagallery.commands import GalleryCommands, is_admin
from skagallery.gallery import GalleryQueries
from skagallery.ingestion import DuplicateError, IngestionPipeline
from skagallery.logging import get_logger
from skagallery.models import Author, MediaRecord, MediaSource
from skagallery.ranking import RankingEngine
from skagallery.scheduler import StatsScheduler
from skagallery.stats import StatsAggregator
from skagallery.stats_migration import StatsMigrationRunner
from skagallery.store import GalleryError, GalleryStore, NotFoundError
from skagallery.tagging import NoProvenanceError, NotTaggedError, ReactionTarget, TagLifecycle

if TYPE_CHECKING:
    from skagallery.config import Config

log = get_logger("bot")

SAVED_EMOJI = "✅"
FAILED_EMOJI = "❌"


def emoji_name(emoji: discord.PartialEmoji | discord.Emoji | str) -> str:
    """Unicode emoji as-is, custom emoji by name."""
    if isinstance(emoji, str):
        return emoji
    return emoji.name or ""


class GalleryBot(commands.Bot):
    """Discord bot that archives and serves the gallery.

    Attributes:
        config: Application configuration.
        engine: SQLAlchemy database engine.
        store: Gallery document store.
        stats: Statistics aggregator.
        ranking: Ranking engine.
        migration: Stats backfill runner.
        ingestion: Media ingestion pipeline.
        tagging: Reaction tag lifecycle.
        gallery: Read-side gallery queries.
        scheduler: Periodic server stats refresh.
    """

    def __init__(
        self,
        config: Config,
        engine: Engine,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the bot and wire up the gallery components.

        Args:
            config: Application configuration.
            engine: SQLAlchemy database engine with tables created.
            http_client: Optional HTTP client for media downloads.
        """
        intents = discord.Intents.default()
        intents.message_content = True  # Read URLs and reply commands
        intents.reactions = True  # Zap tagging

        # commands.Bot requires a command_prefix even though we use slash commands
        super().__init__(command_prefix="!", intents=intents)
        self.config = config
        self.engine = engine

        self.store = GalleryStore(engine)
        self.stats = StatsAggregator(self.store, config)
        self.ranking = RankingEngine(self.store, self.stats)
        self.migration = StatsMigrationRunner(self.store, self.stats, config)
        self.ingestion = IngestionPipeline(self.store, self.stats, config, http_client)
        self.tagging = TagLifecycle(self.store, self.ingestion, config)
        self.gallery = GalleryQueries(self.store)
        self.scheduler = StatsScheduler(self.stats, config)

        self._backfilled = False

    async def setup_hook(self) -> None:
        """Load the command cog, sync slash commands and start the scheduler."""
        await self.add_cog(GalleryCommands(self))
        log.info("cog_loaded", cog="GalleryCommands")

        guild_id = self.config.discord.guild_id
        if guild_id:
            guild = discord.Object(id=int(guild_id))
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)
        else:
            await self.tree.sync()
        log.info("commands_synced", guild_id=guild_id)

        self.scheduler.start()

    async def on_ready(self) -> None:
        """Called when connected to Discord; backfills once per process."""
        log.info("discord_ready", user=str(self.user), guilds=len(self.guilds))

        if self.config.discord.backfill_on_ready and not self._backfilled:
            self._backfilled = True
            try:
                await self.backfill_gallery()
            except Exception as e:
                log.error("backfill_failed", error=str(e))

    async def on_disconnect(self) -> None:
        log.warning("discord_disconnected")

    async def on_resumed(self) -> None:
        log.info("discord_resumed")

    # =========================================================================
    # Messages
    # =========================================================================

    def is_gallery_channel(self, channel_id: int | str) -> bool:
        gallery_id = self.config.discord.gallery_channel_id
        return gallery_id is not None and str(channel_id) == gallery_id

    async def on_message(self, message: discord.Message) -> None:
        """Archive gallery posts and handle reply commands."""
        if message.author.bot:
            return

        if await self.handle_reply_command(message):
            return

        if not self.is_gallery_channel(message.channel.id):
            return

        await self.ingest_message(message)

    def media_sources(self, message: discord.Message) -> list[MediaSource]:
        """Image attachments plus image and gif-provider URLs in the text."""
        extensions = tuple(self.config.ingestion.image_extensions)
        sources = [
            MediaSource(
                url=attachment.url,
                filename=attachment.filename,
                is_attachment=True,
                size_bytes=attachment.size,
                content_type=attachment.content_type,
                width=attachment.width,
                height=attachment.height,
            )
            for attachment in message.attachments
            if os.path.splitext(attachment.filename)[1].lower() in extensions
        ]
        sources.extend(
            MediaSource(url=url) for url in self.ingestion.extract_media_urls(message.content)
        )
        return sources

    async def ingest_message(
        self,
        message: discord.Message,
        created_at: datetime | None = None,
    ) -> list[MediaRecord]:
        """Ingest every media item in a message, acknowledging each one.

        Args:
            message: Gallery channel message.
            created_at: Timestamp to archive the items with; now if not given.

        Returns:
            The records that were stored.
        """
        author = Author(
            id=str(message.author.id),
            username=message.author.name,
            display_name=message.author.display_name,
        )
        records = []
        for source in self.media_sources(message):
            try:
                record = await self.ingestion.ingest(
                    source,
                    author,
                    message_id=str(message.id),
                    message_link=message.jump_url,
                    created_at=created_at,
                )
            except DuplicateError as e:
                log.info("media_duplicate", url=source.url, error=str(e))
                await self._acknowledge(message, FAILED_EMOJI)
                continue
            except Exception as e:
                log.error("media_ingest_failed", url=source.url, error=str(e))
                await self._acknowledge(message, FAILED_EMOJI)
                continue
            records.append(record)
            await self._acknowledge(message, SAVED_EMOJI)
        return records

    async def _acknowledge(self, message: discord.Message, emoji: str) -> None:
        try:
            await message.add_reaction(emoji)
        except discord.HTTPException as e:
            log.warning("acknowledge_failed", message_id=str(message.id), error=str(e))

    async def backfill_gallery(self) -> int:
        """Ingest gallery messages posted after the watermark.

        Messages that already have records are skipped.

        Returns:
            Number of records created.
        """
        gallery_id = self.config.discord.gallery_channel_id
        if not gallery_id:
            return 0

        channel = self.get_channel(int(gallery_id))
        if channel is None:
            channel = await self.fetch_channel(int(gallery_id))

        watermark = await self.store.get_watermark()
        created = 0
        async for message in channel.history(
            limit=self.config.discord.backfill_limit,
            after=watermark,
            oldest_first=True,
        ):
            if message.author.bot:
                continue
            if await self.store.find_media(source_message_id=str(message.id)):
                continue
            records = await self.ingest_message(message, created_at=message.created_at)
            created += len(records)

        log.info("backfill_complete", since=watermark.isoformat() if watermark else None, created=created)
        return created

    # =========================================================================
    # Reply commands
    # =========================================================================

    async def handle_reply_command(self, message: discord.Message) -> bool:
        """Run ``/delete`` or ``/untag`` sent as a reply.

        Returns:
            True if the message was a reply command.
        """
        reference = message.reference
        if reference is None or reference.message_id is None:
            return False

        words = message.content.strip().lower().split()
        command = words[0] if words else ""
        target_id = str(reference.message_id)

        if command == "/delete":
            await message.reply(await self._reply_delete(message, target_id))
        elif command == "/untag":
            await message.reply(await self._reply_untag(target_id))
        else:
            return False
        return True

    async def _reply_delete(self, message: discord.Message, target_id: str) -> str:
        try:
            record = await self.tagging.resolve_record(target_id)
        except NotFoundError:
            return "Couldn't find that image in the gallery."

        uploader = record.author.id if record.author else None
        if uploader != str(message.author.id) and not is_admin(self.config, message.author):
            log.info("delete_rejected", media_id=record.id, user=str(message.author))
            return "Only the uploader or an admin can delete this."

        try:
            deleted = await self.ingestion.delete_by_filename(
                record.filename, record.is_gif_provider
            )
        except NotFoundError:
            return "Couldn't find that image in the gallery."
        except GalleryError as e:
            log.error("reply_delete_failed", media_id=record.id, error=str(e))
            return "Failed to delete that image."

        log.info(
            "reply_delete",
            filename=record.filename,
            count=len(deleted),
            user=str(message.author),
        )
        return f"Deleted {record.filename} from the gallery."

    async def _reply_untag(self, target_id: str) -> str:
        try:
            record = await self.tagging.untag(target_id)
        except NoProvenanceError:
            return "That message wasn't posted by a tag command."
        except NotTaggedError:
            return "That image isn't tagged anymore."
        except NotFoundError:
            return "That image is no longer in the gallery."

        return f"Removed the tag from {record.filename}."

    # =========================================================================
    # Reactions
    # =========================================================================

    async def _reaction_context(
        self,
        payload: discord.RawReactionActionEvent,
    ) -> tuple[ReactionTarget, int] | None:
        """Fetch the reacted message; returns its target and zap count."""
        channel = self.get_channel(payload.channel_id)
        try:
            if channel is None:
                channel = await self.fetch_channel(payload.channel_id)
            message = await channel.fetch_message(payload.message_id)
        except discord.HTTPException as e:
            log.warning("reaction_message_fetch_failed", message_id=str(payload.message_id), error=str(e))
            return None

        embed_urls = [embed.url for embed in message.embeds if embed.url]
        embed_urls.extend(self.ingestion.extract_media_urls(message.content))
        target = ReactionTarget(
            message_id=str(message.id),
            attachment_filenames=[a.filename for a in message.attachments],
            embed_urls=embed_urls,
        )
        remaining = sum(
            reaction.count
            for reaction in message.reactions
            if self.tagging.is_zap(emoji_name(reaction.emoji))
        )
        return target, remaining

    async def on_raw_reaction_add(self, payload: discord.RawReactionActionEvent) -> None:
        if self.user is not None and payload.user_id == self.user.id:
            return
        if not self.tagging.is_zap(emoji_name(payload.emoji)):
            return

        context = await self._reaction_context(payload)
        if context is None:
            return
        try:
            await self.tagging.on_reaction_add(emoji_name(payload.emoji), context[0])
        except Exception as e:
            log.error("reaction_add_failed", message_id=str(payload.message_id), error=str(e))

    async def on_raw_reaction_remove(self, payload: discord.RawReactionActionEvent) -> None:
        if not self.tagging.is_zap(emoji_name(payload.emoji)):
            return

        context = await self._reaction_context(payload)
        if context is None:
            return
        target, remaining = context
        try:
            await self.tagging.on_reaction_remove(emoji_name(payload.emoji), target, remaining)
        except Exception as e:
            log.error("reaction_remove_failed", message_id=str(payload.message_id), error=str(e))

    # =========================================================================
    # Shutdown
    # =========================================================================

    async def graceful_shutdown(self) -> None:
        """Flush pending stats work, release clients, then disconnect."""
        log.info("shutdown_initiated")
        self.scheduler.stop()
        await self.stats.close()
        await self.ingestion.close()

        await self.close()
        await asyncio.sleep(0)  # Allow pending aiohttp callbacks to finalize
        log.info("shutdown_complete")


def setup_signal_handlers(bot: GalleryBot, loop: asyncio.AbstractEventLoop) -> None:
    """Setup graceful shutdown handlers for SIGINT and SIGTERM.

    Args:
        bot: The GalleryBot instance to shut down.
        loop: The event loop to add signal handlers to.
    """

    def handle_signal(sig: signal.Signals) -> None:
        log.info("signal_received", signal=sig.name)
        loop.create_task(bot.graceful_shutdown())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

    log.debug("signal_handlers_registered", signals=["SIGINT", "SIGTERM"])


async def run_bot(config: Config, engine: Engine) -> None:
    """Run the gallery bot until shutdown.

    Args:
        config: Application configuration with discord_token.
        engine: SQLAlchemy database engine.
    """
    bot = GalleryBot(config, engine)
    loop = asyncio.get_running_loop()
    setup_signal_handlers(bot, loop)

    try:
        log.info("bot_starting", gallery_channel_id=config.discord.gallery_channel_id)
        await bot.start(config.discord_token)  # type: ignore[arg-type]
    except asyncio.CancelledError:
        log.debug("bot_cancelled")
    finally:
        if not bot.is_closed():
            await bot.close()
