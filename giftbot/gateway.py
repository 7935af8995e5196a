import logging
from dataclasses import dataclass

import discord

from giftbot import config

logger = logging.getLogger(__name__)

_DISCORD_ERRORS = (discord.Forbidden, discord.NotFound, discord.HTTPException)


class ChatError(Exception):
    """A chat-platform call failed (missing channel, permissions, HTTP error)."""


@dataclass(frozen=True)
class Venue:
    guild_id: int
    channel_id: int


@dataclass(frozen=True)
class MemberInfo:
    user_id: int
    bot: bool
    can_view: bool
    display_name: str


@dataclass(frozen=True)
class ThreadRef:
    thread_id: int
    name: str
    url: str


class ChatGateway:
    """Narrow view of the Discord client used by the cycle logic.

    Every method raises ChatError on platform failure, except send_dm which
    reports delivery as a bool so one bad recipient never stops a batch.
    """

    def __init__(self, bot: discord.Bot):
        self.bot = bot

    @property
    def bot_user_id(self) -> int | None:
        return self.bot.user.id if self.bot.user else None

    async def _channel(self, channel_id: int):
        channel = self.bot.get_channel(channel_id)
        if channel is not None:
            return channel
        try:
            return await self.bot.fetch_channel(channel_id)
        except _DISCORD_ERRORS as e:
            raise ChatError(f"channel {channel_id} unavailable: {e}") from e

    async def _message(self, thread_id: int, message_id: int) -> discord.Message:
        thread = await self._channel(thread_id)
        try:
            return await thread.fetch_message(message_id)
        except _DISCORD_ERRORS as e:
            raise ChatError(f"message {message_id} unavailable: {e}") from e

    async def resolve_venue(self, guild_id: int | None, channel_id: int | None) -> Venue | None:
        if not channel_id:
            return None
        try:
            channel = await self._channel(channel_id)
        except ChatError:
            logger.warning("venue_channel_missing channel_id=%s", channel_id)
            return None
        guild = getattr(channel, "guild", None)
        if guild is None or (guild_id and guild.id != guild_id):
            logger.warning("venue_guild_mismatch channel_id=%s guild_id=%s", channel_id, guild_id)
            return None
        return Venue(guild_id=guild.id, channel_id=channel.id)

    async def list_channel_members(self, channel_id: int) -> list[MemberInfo]:
        channel = await self._channel(channel_id)
        try:
            members = await channel.guild.fetch_members(limit=None).flatten()
        except _DISCORD_ERRORS as e:
            raise ChatError(f"member listing failed: {e}") from e
        return [
            MemberInfo(
                user_id=m.id,
                bot=m.bot,
                can_view=channel.permissions_for(m).view_channel,
                display_name=m.display_name,
            )
            for m in members
        ]

    async def display_name(self, guild_id: int, user_id: int) -> str | None:
        guild = self.bot.get_guild(guild_id)
        if guild is None:
            return None
        member = guild.get_member(user_id)
        if member is None:
            try:
                member = await guild.fetch_member(user_id)
            except _DISCORD_ERRORS:
                return None
        return member.display_name

    async def create_private_thread(self, channel_id: int, name: str) -> ThreadRef:
        channel = await self._channel(channel_id)
        try:
            thread = await channel.create_thread(
                name=name[:100],
                type=discord.ChannelType.private_thread,
                auto_archive_duration=config.THREAD_AUTO_ARCHIVE_MINUTES,
            )
        except _DISCORD_ERRORS as e:
            raise ChatError(f"thread create failed: {e}") from e
        return ThreadRef(thread_id=thread.id, name=thread.name, url=thread.jump_url)

    async def add_thread_member(self, thread_id: int, user_id: int) -> bool:
        thread = await self._channel(thread_id)
        try:
            await thread.add_user(discord.Object(id=user_id))
            return True
        except _DISCORD_ERRORS:
            logger.warning("thread_add_user_failed thread_id=%s user_id=%s", thread_id, user_id)
            return False

    async def send(self, thread_id: int, content: str) -> int:
        thread = await self._channel(thread_id)
        try:
            msg = await thread.send(content)
        except _DISCORD_ERRORS as e:
            raise ChatError(f"send failed in {thread_id}: {e}") from e
        return msg.id

    async def edit_message(self, thread_id: int, message_id: int, content: str):
        msg = await self._message(thread_id, message_id)
        try:
            await msg.edit(content=content)
        except _DISCORD_ERRORS as e:
            raise ChatError(f"edit failed for {message_id}: {e}") from e

    async def send_dm(self, user_id: int, content: str) -> bool:
        try:
            user = self.bot.get_user(user_id) or await self.bot.fetch_user(user_id)
            await user.send(content)
            return True
        except _DISCORD_ERRORS as e:
            logger.warning("dm_failed user_id=%s error=%s", user_id, e)
            return False

    async def post_suggestion(self, thread_id: int, url: str, title: str | None, price: str | None) -> int:
        thread = await self._channel(thread_id)
        embed = discord.Embed(title=title or "Gift Suggestion", description=url, color=0x2F855A)
        if price:
            embed.add_field(name="Price", value=price, inline=True)
        try:
            msg = await thread.send(embed=embed)
        except _DISCORD_ERRORS as e:
            raise ChatError(f"suggestion post failed: {e}") from e
        try:
            await msg.add_reaction(config.VOTE_EMOJI)
        except _DISCORD_ERRORS:
            logger.warning("suggestion_react_failed message_id=%s", msg.id)
        return msg.id

    async def create_poll(
        self, thread_id: int, question: str, answers: list[str], duration_hours: int
    ) -> tuple[int, list[int]]:
        thread = await self._channel(thread_id)
        poll = discord.Poll(
            question=question[:300],
            answers=[discord.PollAnswer(text) for text in answers],
            duration=duration_hours,
        )
        try:
            msg = await thread.send(poll=poll)
        except _DISCORD_ERRORS as e:
            raise ChatError(f"poll create failed: {e}") from e
        return msg.id, [answer.id for answer in msg.poll.answers]

    async def poll_counts(self, thread_id: int, message_id: int) -> dict[int, int]:
        msg = await self._message(thread_id, message_id)
        if msg.poll is None:
            raise ChatError(f"message {message_id} carries no poll")
        return {answer.id: answer.count or 0 for answer in msg.poll.answers}

    async def end_poll(self, thread_id: int, message_id: int):
        msg = await self._message(thread_id, message_id)
        try:
            await msg.end_poll()
        except _DISCORD_ERRORS as e:
            raise ChatError(f"poll end failed: {e}") from e

    async def reaction_count(self, thread_id: int, message_id: int, emoji: str) -> int:
        msg = await self._message(thread_id, message_id)
        reaction = discord.utils.get(msg.reactions, emoji=emoji)
        if reaction is None:
            return 0
        count = reaction.count
        if reaction.me:
            count = max(0, count - 1)
        return count

    async def archive_thread(self, thread_id: int):
        thread = await self._channel(thread_id)
        try:
            await thread.edit(archived=True)
        except _DISCORD_ERRORS as e:
            raise ChatError(f"archive failed for {thread_id}: {e}") from e

    async def delete_thread(self, thread_id: int):
        thread = await self._channel(thread_id)
        try:
            await thread.delete()
        except _DISCORD_ERRORS as e:
            raise ChatError(f"delete failed for {thread_id}: {e}") from e
