"""protocol/discord/protocol.py

Discord protocol implementation.

Records every message Yorjik can see so channels build up a corpus, answers
mentions and the ``/generate`` command with a generated message, and now and
then chimes in unprompted in each guild's busiest channel.
"""

import asyncio
import logging
import random
import time
from typing import Iterable, Optional

import aiosqlite
import discord
from discord import app_commands

import Yorjik.database as ydb
from Yorjik.util import pluralize

logger = logging.getLogger('Yorjik.Discord')

COLLECT_BATCH_SIZE = 100
COLLECT_PROGRESS_INTERVAL = 5  # batches
DEFAULT_AMBIENT_MIN_DELAY = 300
DEFAULT_AMBIENT_MAX_DELAY = 900
DEFAULT_AMBIENT_HISTORY_LIMIT = 100


def message_row(message: discord.Message) -> ydb.MessageRow:
    """Convert a Discord message into a row for the message store."""
    return (message.id, message.author.id, message.channel.id,
            message.guild.id, message.content, message.created_at)


def bot_posted_recently(messages: Iterable[discord.Message],
                        user_id: int) -> bool:
    """Check whether any of the given messages were authored by `user_id`."""
    return any(message.author.id == user_id for message in messages)


def parse_message_id(text: Optional[str]) -> Optional[int]:
    """Parse a Discord message ID (snowflake) given as a string.

    Returns `None` for a missing or blank value.

    Raises
    ------
    ValueError
        If `text` is not a positive integer.
    """
    if text is None or not text.strip():
        return None
    message_id = int(text.strip())
    if message_id <= 0:
        raise ValueError(f'Not a valid message ID: {text!r}')
    return message_id


class DiscordClient(discord.Client):
    """Yorjik's Discord client.

    Parameters
    ----------
    core : Yorjik.Core
        The core whose message store, generator and config this client uses.
    """

    def __init__(self, core, **options):
        intents = discord.Intents.default()
        intents.message_content = True
        super().__init__(intents=intents, **options)
        self.core = core
        self.tree = app_commands.CommandTree(self)
        self._ambient_task = None
        self._register_commands()

    @property
    def not_enough_history(self) -> str:
        """Reply used when a channel can't have a message generated yet."""
        threshold = self.core.generator.min_corpus_size
        return f'Please wait until this channel has over {threshold} messages.'

    def _register_commands(self):
        """Create and register slash commands."""

        @self.tree.command(name='generate',
                           description='Generates a markov message.')
        @app_commands.describe(word='What the sentence will start with')
        @app_commands.guild_only()
        async def generate(interaction: discord.Interaction,
                           word: Optional[str] = None):
            await self.command_generate(interaction, word)

        @self.tree.command(name='ping', description='Check if bot is alive.')
        async def ping(interaction: discord.Interaction):
            await self.command_ping(interaction)

        @self.tree.command(
            name='collect',
            description='Collects and records previous messages.')
        @app_commands.describe(
            before='The ID of the message the bot will check before.')
        @app_commands.guild_only()
        @app_commands.default_permissions(manage_messages=True)
        async def collect(interaction: discord.Interaction,
                          before: Optional[str] = None):
            await self.command_collect(interaction, before)

    # Discord Handlers

    async def setup_hook(self):
        """Register commands with Discord and start background tasks."""
        try:
            synced = await self.tree.sync()
        except discord.HTTPException:
            logger.exception('There was an error while registering commands')
        else:
            logger.info(f"Registered {pluralize(len(synced), 'command')}")
        if self.core.config.get('Ambient.Enabled', True):
            self._ambient_task = asyncio.create_task(self.ambient_loop())

    async def on_connect(self):
        """Established connection to Discord, but not yet ready."""
        logger.info('Connected to Discord')

    async def on_ready(self):
        """Connected and ready to listen for events."""
        logger.info(f'Logged in as {self.user} in '
                    f"{pluralize(len(self.guilds), 'guild')}")

    async def on_disconnect(self):
        """Disconnected from Discord."""
        logger.info('Disconnected from Discord')

    async def on_message(self, message: discord.Message):
        """Record messages and answer mentions."""
        if message.author.bot or message.guild is None:
            return
        logger.debug(f'[{message.guild}, #{message.channel}] '
                     f'<{message.author}> {message.content}')
        try:
            await ydb.insert_message(self.core.database, *message_row(message))
        except aiosqlite.Error as ex:
            logger.error(f'Failed to insert message into database: {ex}')

        # Don't answer replies to our own embeds, e.g. command results
        referenced = message.reference and message.reference.resolved
        if (isinstance(referenced, discord.Message)
                and referenced.author == self.user and referenced.embeds):
            return

        if self.user is not None and self.user in message.mentions:
            async with message.channel.typing():
                sentence = await self.core.generate_message(message.channel.id)
            await message.reply(sentence or self.not_enough_history)

    async def close(self):
        """Stop background tasks and disconnect."""
        if self._ambient_task is not None:
            self._ambient_task.cancel()
            self._ambient_task = None
        await super().close()

    # Commands

    async def command_generate(self, interaction: discord.Interaction,
                               word: Optional[str] = None):
        """Handle ``/generate``."""
        await interaction.response.defer()
        sentence = await self.core.generate_message(
            interaction.channel_id, word)
        await interaction.edit_original_response(
            content=sentence or self.not_enough_history)

    async def command_ping(self, interaction: discord.Interaction):
        """Handle ``/ping``."""
        start = time.perf_counter()
        await interaction.response.send_message('Pong!')
        elapsed = (time.perf_counter() - start) * 1000
        await interaction.edit_original_response(
            content=f'Pong! ({elapsed:.0f}ms)')

    async def command_collect(self, interaction: discord.Interaction,
                              before: Optional[str] = None):
        """Handle ``/collect``: backfill the channel's history.

        Bot messages are skipped and already stored messages are ignored, so
        collecting the same channel twice is harmless. Progress is reported
        every few batches by editing the command response.
        """
        try:
            before_id = parse_message_id(before)
        except ValueError:
            await interaction.response.send_message(
                f'{before!r} is not a message ID.', ephemeral=True)
            return
        await interaction.response.defer()

        channel = interaction.channel
        before_obj = discord.Object(id=before_id) if before_id else None
        logger.info(f'Starting message collection for channel {channel.id} '
                    f'in guild {interaction.guild_id}')
        await self._collect_progress(
            interaction,
            f'Starting message collection for channel {channel.id} in guild '
            f'{interaction.guild_id}')

        batch, batches, seen, stored = [], 0, 0, 0
        try:
            async for message in channel.history(limit=None, before=before_obj):
                seen += 1
                if message.author.bot:
                    continue
                batch.append(message_row(message))
                if len(batch) < COLLECT_BATCH_SIZE:
                    continue
                stored += await ydb.insert_messages(self.core.database, batch)
                batch.clear()
                batches += 1
                if batches % COLLECT_PROGRESS_INTERVAL == 0:
                    logger.debug(f'Collected {seen:,} messages from channel '
                                 f'{channel.id} so far ({stored:,} new)')
                    await self._collect_progress(
                        interaction,
                        '**Collection Progress**\n'
                        f'Total messages collected: {seen:,}')
            stored += await ydb.insert_messages(self.core.database, batch)
        except (discord.HTTPException, aiosqlite.Error) as ex:
            logger.exception(f'Collection failed for channel {channel.id} '
                             f'after {seen:,} messages ({stored:,} new)')
            await self._collect_progress(
                interaction,
                f'**Collection Failed!**\n{ex}\nTotal messages collected: '
                f'{seen:,} ({stored:,} new)')
            return

        logger.info(f'Collection complete for channel {channel.id}: '
                    f'{seen:,} messages seen, {stored:,} new')
        await channel.send(
            f'**Collection Complete!**\nTotal messages collected: {seen:,} '
            f'({stored:,} new)')

    @staticmethod
    async def _collect_progress(interaction: discord.Interaction,
                                content: str):
        # Long collections can outlive the interaction token
        try:
            await interaction.edit_original_response(content=content)
        except discord.HTTPException as ex:
            logger.warning(f'Failed to update Discord progress: {ex}')

    # Ambient messages

    async def ambient_loop(self):
        """Periodically post a generated message in each guild."""
        await self.wait_until_ready()
        min_delay = self.core.config.get('Ambient.MinDelay',
                                         DEFAULT_AMBIENT_MIN_DELAY)
        max_delay = self.core.config.get('Ambient.MaxDelay',
                                         DEFAULT_AMBIENT_MAX_DELAY)
        while not self.is_closed():
            for guild in list(self.guilds):
                try:
                    await self.ambient_post(guild)
                except Exception:
                    logger.exception(f'Ambient message failed in guild {guild}')
            delay = random.uniform(min_delay, max_delay)
            logger.debug(f'Next ambient round in {delay:.0f}s')
            await asyncio.sleep(delay)

    async def ambient_post(self, guild: discord.Guild) -> bool:
        """Post a generated message in the guild's busiest channel.

        Nothing is posted if the channel has no stored messages, Yorjik has
        spoken there recently, or the channel doesn't have enough history.

        Returns
        -------
        bool
            Whether a message was posted.
        """
        channel_id = await ydb.get_most_popular_channel(
            self.core.database, guild.id)
        if channel_id is None:
            return False
        channel = guild.get_channel(channel_id)
        if not isinstance(channel, discord.abc.Messageable):
            return False

        limit = self.core.config.get('Ambient.HistoryLimit',
                                     DEFAULT_AMBIENT_HISTORY_LIMIT)
        recent = [message async for message in channel.history(limit=limit)]
        if bot_posted_recently(recent, self.user.id):
            logger.debug(f'Spoke recently in #{channel}; staying quiet')
            return False

        sentence = await self.core.generate_message(channel.id)
        if not sentence:
            return False
        await channel.send(sentence)
        return True
