"""Reaction-driven tagging of archived media.

Adding the zap emoji to a gallery item tags it ``react``; the tag comes off
when the last zap reaction is removed. Items reposted by query commands can
also be untagged by replying to the bot's message, which is traced back to
the record through the command provenance table.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from skagallery.ingestion import IngestionPipeline
from skagallery.logging import get_logger
from skagallery.models import (
    SHARED_FILENAME_KINDS,
    UNIQUE_FILENAME_KINDS,
    CommandPost,
    MediaRecord,
)
from skagallery.store import GalleryError, GalleryStore, NotFoundError

if TYPE_CHECKING:
    from skagallery.config import Config

log = get_logger("tagging")

REACT_TAG = "react"


class NotTaggedError(GalleryError):
    """The record doesn't carry the tag being removed."""


class NoProvenanceError(GalleryError):
    """The message wasn't posted by a command that can be traced to a record."""


@dataclass
class ReactionTarget:
    """What is known about the message a reaction was added to.

    Attributes:
        message_id: The reacted message.
        attachment_filenames: Filenames of its attachments.
        embed_urls: URLs of its embeds (gif-provider links show up here).
    """

    message_id: str
    attachment_filenames: list[str] = field(default_factory=list)
    embed_urls: list[str] = field(default_factory=list)


class TagLifecycle:
    """Applies and removes the ``react`` tag.

    Attributes:
        store: Gallery document store.
        ingestion: Pipeline used to derive gif-provider filenames.
        config: Application configuration.
    """

    def __init__(
        self,
        store: GalleryStore,
        ingestion: IngestionPipeline,
        config: "Config",
    ) -> None:
        self.store = store
        self.ingestion = ingestion
        self.config = config

    def is_zap(self, emoji: str) -> bool:
        """Whether an emoji (unicode or custom name) is the zap."""
        return emoji in self.config.discord.zap_emoji

    async def find_target_record(self, target: ReactionTarget) -> MediaRecord | None:
        """Locate the record a reacted message shows.

        Tries the originating message id first, then filenames derived from
        the message's attachments and gif-provider embeds.
        """
        records = await self.store.find_media(source_message_id=target.message_id)
        if records:
            return records[0]

        for filename in target.attachment_filenames:
            records = await self.store.find_media(
                filename=filename,
                source_kinds=UNIQUE_FILENAME_KINDS,
            )
            if records:
                return records[0]

        for url in target.embed_urls:
            if not self.ingestion.is_gif_provider_url(url):
                continue
            records = await self.store.find_media(
                filename=self.ingestion.gif_filename(url),
                source_kinds=SHARED_FILENAME_KINDS,
            )
            if records:
                return records[0]

        return None

    async def on_reaction_add(self, emoji: str, target: ReactionTarget) -> MediaRecord | None:
        """Tag the reacted item.

        Returns:
            The tagged record, or None if the emoji isn't the zap or no record
            matches.
        """
        if not self.is_zap(emoji):
            return None

        record = await self.find_target_record(target)
        if record is None:
            log.debug("reaction_target_not_found", message_id=target.message_id)
            return None

        if await self.store.add_tag(record.id, REACT_TAG):
            log.info("media_tagged", media_id=record.id, filename=record.filename, tag=REACT_TAG)
        return record

    async def on_reaction_remove(
        self,
        emoji: str,
        target: ReactionTarget,
        remaining: int,
    ) -> MediaRecord | None:
        """Untag the item once no zap reactions remain.

        Args:
            emoji: Removed emoji.
            target: The message the reaction was removed from.
            remaining: Zap reactions still on the live message.

        Returns:
            The record if its tag was removed, otherwise None.
        """
        if not self.is_zap(emoji) or remaining > 0:
            return None

        record = await self.find_target_record(target)
        if record is None:
            return None

        if await self.store.remove_tag(record.id, REACT_TAG):
            log.info("media_untagged", media_id=record.id, filename=record.filename, tag=REACT_TAG)
            return record
        return None

    async def record_post(
        self,
        message_id: str,
        command_name: str,
        record: MediaRecord,
        tag: str | None = None,
        invoked_by: str | None = None,
        channel_id: str | None = None,
    ) -> None:
        """Remember which record a command posted in a bot message."""
        await self.store.record_command_post(
            CommandPost(
                message_id=message_id,
                command_name=command_name,
                tag=tag,
                media_id=record.id,
                invoked_by=invoked_by,
                channel_id=channel_id,
            )
        )

    async def untag(self, message_id: str) -> MediaRecord:
        """Remove the tag a command selected by, from the record it posted.

        Args:
            message_id: The bot message being replied to.

        Returns:
            The record the tag was removed from.

        Raises:
            NoProvenanceError: If the message has no usable provenance.
            NotFoundError: If the record no longer exists.
            NotTaggedError: If the record doesn't carry the tag.
        """
        post = await self.store.get_command_post(message_id)
        if post is None or not post.tag or not post.media_id:
            raise NoProvenanceError(f"Message {message_id} wasn't posted by a tag command")

        record = await self.store.get_media(post.media_id)
        if record is None:
            raise NotFoundError(f"Media {post.media_id} no longer exists")

        if not await self.store.remove_tag(record.id, post.tag):
            raise NotTaggedError(f"{record.filename} isn't tagged {post.tag}")

        log.info("media_untagged_manually", media_id=record.id, tag=post.tag)
        return record

    async def resolve_record(self, message_id: str) -> MediaRecord:
        """Find the record behind a message.

        Bot messages resolve through provenance; anything else is treated as
        the original upload.

        Raises:
            NotFoundError: If no record matches.
        """
        post = await self.store.get_command_post(message_id)
        if post is not None and post.media_id:
            record = await self.store.get_media(post.media_id)
            if record is not None:
                return record

        records = await self.store.find_media(source_message_id=message_id)
        if records:
            return records[0]
        raise NotFoundError(f"No media for message {message_id}")
