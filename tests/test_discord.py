"""Tests for the Discord client."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, PropertyMock, call, patch

import discord
import pytest

from conftest import add_messages
from Yorjik import database as ydb
from Yorjik.config import ConfigDict
from Yorjik.protocol.discord import DiscordClient
from Yorjik.protocol.discord.protocol import (bot_posted_recently, message_row,
                                              parse_message_id)

BOT_ID = 999
GUILD_ID = 7
CHANNEL_ID = 2


def fake_message(message_id, author_id=1, *, bot=False, content='hello there',
                 channel_id=CHANNEL_ID, guild_id=GUILD_ID):
    message = MagicMock()
    message.id = message_id
    message.author.id = author_id
    message.author.bot = bot
    message.channel.id = channel_id
    message.guild.id = guild_id
    message.content = content
    message.created_at = datetime(2022, 1, 1, tzinfo=timezone.utc)
    message.reference = None
    message.mentions = []
    return message


def fake_history(messages, error=None):
    async def history(limit=None, **kwargs):
        for message in messages[:limit]:
            yield message
        if error is not None:
            raise error
    return history


def fake_channel(messages=(), error=None):
    channel = MagicMock(spec=discord.TextChannel)
    channel.id = CHANNEL_ID
    channel.history = fake_history(list(messages), error)
    channel.send = AsyncMock()
    return channel


@pytest.fixture
def core(db):
    core = MagicMock()
    core.database = db
    core.config = ConfigDict({'Ambient': {'HistoryLimit': 10}})
    core.generator.min_corpus_size = 500
    core.generate_message = AsyncMock(return_value='generated words')
    return core


@pytest.fixture
def bot_user():
    user = MagicMock()
    user.id = BOT_ID
    with patch.object(DiscordClient, 'user', new_callable=PropertyMock) as prop:
        prop.return_value = user
        yield user


class TestHelpers:

    def test_message_row(self):
        message = fake_message(10, 3, content='some words')
        assert message_row(message) == (
            10, 3, CHANNEL_ID, GUILD_ID, 'some words', message.created_at)

    def test_bot_posted_recently(self):
        messages = [fake_message(1, 5), fake_message(2, BOT_ID)]
        assert bot_posted_recently(messages, BOT_ID)
        assert not bot_posted_recently(messages[:1], BOT_ID)
        assert not bot_posted_recently([], BOT_ID)

    @pytest.mark.parametrize('text, expected', [
        (None, None),
        ('', None),
        ('  ', None),
        ('123', 123),
        (' 456 ', 456),
    ])
    def test_parse_message_id(self, text, expected):
        assert parse_message_id(text) == expected

    @pytest.mark.parametrize('text', ['abc', '-5', '0', '1.5'])
    def test_parse_message_id_rejects_garbage(self, text):
        with pytest.raises(ValueError):
            parse_message_id(text)


class TestDiscordClient:

    @pytest.mark.asyncio
    async def test_setup(self, core):
        client = DiscordClient(core)
        assert client.intents.message_content
        names = {command.name for command in client.tree.get_commands()}
        assert names == {'generate', 'ping', 'collect'}

    @pytest.mark.asyncio
    async def test_not_enough_history(self, core):
        client = DiscordClient(core)
        assert '500' in client.not_enough_history

    @pytest.mark.asyncio
    async def test_command_generate(self, core):
        client = DiscordClient(core)
        interaction = MagicMock()
        interaction.channel_id = CHANNEL_ID
        interaction.response.defer = AsyncMock()
        interaction.edit_original_response = AsyncMock()

        await client.command_generate(interaction, 'hello')
        interaction.response.defer.assert_awaited_once()
        core.generate_message.assert_awaited_once_with(CHANNEL_ID, 'hello')
        interaction.edit_original_response.assert_awaited_once_with(
            content='generated words')

    @pytest.mark.asyncio
    async def test_command_generate_without_history(self, core):
        client = DiscordClient(core)
        core.generate_message.return_value = None
        interaction = MagicMock()
        interaction.response.defer = AsyncMock()
        interaction.edit_original_response = AsyncMock()

        await client.command_generate(interaction)
        interaction.edit_original_response.assert_awaited_once_with(
            content=client.not_enough_history)

    @pytest.mark.asyncio
    async def test_on_message_ignores_bots(self, core, db, bot_user):
        client = DiscordClient(core)
        message = fake_message(10, 3, bot=True)
        message.mentions = [bot_user]
        message.reply = AsyncMock()

        await client.on_message(message)
        assert await ydb.count_messages(db, CHANNEL_ID) == 0
        message.reply.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_on_message_records(self, core, db, bot_user):
        client = DiscordClient(core)
        message = fake_message(10, 3, content='just chatting')
        message.reply = AsyncMock()

        await client.on_message(message)
        assert await ydb.fetch_messages(db, CHANNEL_ID) == ['just chatting']
        message.reply.assert_not_awaited()
        core.generate_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_on_message_answers_mentions(self, core, db, bot_user):
        client = DiscordClient(core)
        message = fake_message(10, 3, content='hey bot')
        message.mentions = [bot_user]
        message.reply = AsyncMock()

        await client.on_message(message)
        core.generate_message.assert_awaited_once_with(CHANNEL_ID)
        message.reply.assert_awaited_once_with('generated words')

    @pytest.mark.asyncio
    async def test_collect_rejects_bad_message_id(self, core):
        client = DiscordClient(core)
        interaction = MagicMock()
        interaction.response.send_message = AsyncMock()
        interaction.response.defer = AsyncMock()

        await client.command_collect(interaction, 'not-an-id')
        interaction.response.send_message.assert_awaited_once()
        assert interaction.response.send_message.call_args.kwargs['ephemeral']
        interaction.response.defer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_collect_stores_history(self, core, db):
        await add_messages(db, CHANNEL_ID, ['already stored'], first_id=1)
        history = [fake_message(i, bot=(i % 25 == 0), content=f'message {i}')
                   for i in range(1, 251)]
        channel = fake_channel(history)
        client = DiscordClient(core)
        interaction = MagicMock()
        interaction.channel = channel
        interaction.response.defer = AsyncMock()
        interaction.edit_original_response = AsyncMock()

        await client.command_collect(interaction)
        # 10 bot messages skipped, message 1 was already stored
        assert await ydb.count_messages(db, CHANNEL_ID) == 240
        channel.send.assert_awaited_once()
        summary = channel.send.call_args.args[0]
        assert '250' in summary
        assert '239 new' in summary

    @pytest.mark.asyncio
    async def test_collect_reports_discord_errors(self, core):
        forbidden = discord.Forbidden(
            MagicMock(status=403, reason='Forbidden'), 'Missing Access')
        channel = fake_channel([fake_message(i) for i in range(1, 4)],
                               error=forbidden)
        client = DiscordClient(core)
        interaction = MagicMock()
        interaction.channel = channel
        interaction.response.defer = AsyncMock()
        interaction.edit_original_response = AsyncMock()

        await client.command_collect(interaction)
        content = interaction.edit_original_response.call_args.kwargs['content']
        assert content.startswith('**Collection Failed!**')
        assert 'Missing Access' in content
        channel.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_collect_reports_storage_errors(self, core, db):
        await db.execute('DROP TABLE messages')
        channel = fake_channel([fake_message(i) for i in range(1, 4)])
        client = DiscordClient(core)
        interaction = MagicMock()
        interaction.channel = channel
        interaction.response.defer = AsyncMock()
        interaction.edit_original_response = AsyncMock()

        await client.command_collect(interaction)
        content = interaction.edit_original_response.call_args.kwargs['content']
        assert content.startswith('**Collection Failed!**')
        channel.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_on_message_ignores_replies_to_own_embeds(self, core, db,
                                                            bot_user):
        client = DiscordClient(core)
        referenced = MagicMock(spec=discord.Message)
        referenced.author = bot_user
        referenced.embeds = [MagicMock()]
        message = fake_message(10, 3, content='replying to the embed')
        message.reference = MagicMock(resolved=referenced)
        message.mentions = [bot_user]
        message.reply = AsyncMock()

        await client.on_message(message)
        assert await ydb.count_messages(db, CHANNEL_ID) == 1
        core.generate_message.assert_not_awaited()
        message.reply.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_on_message_answers_replies_to_plain_messages(
            self, core, db, bot_user):
        client = DiscordClient(core)
        referenced = MagicMock(spec=discord.Message)
        referenced.author = bot_user
        referenced.embeds = []
        message = fake_message(10, 3, content='replying to plain text')
        message.reference = MagicMock(resolved=referenced)
        message.mentions = [bot_user]
        message.reply = AsyncMock()

        await client.on_message(message)
        message.reply.assert_awaited_once_with('generated words')


class TestAmbient:

    @pytest.mark.asyncio
    async def test_loop_survives_failing_guild(self, core):
        core.config = ConfigDict({'Ambient': {'MinDelay': 0, 'MaxDelay': 0}})
        client = DiscordClient(core)
        client.wait_until_ready = AsyncMock()
        client.is_closed = MagicMock(side_effect=[False, False, True])
        client.ambient_post = AsyncMock(side_effect=[
            discord.ClientException('channel gone'), True,
            RuntimeError('unexpected'), True,
        ])
        guilds = [MagicMock(), MagicMock()]

        with patch.object(DiscordClient, 'guilds', new_callable=PropertyMock,
                          return_value=guilds):
            await client.ambient_loop()
        assert client.ambient_post.await_args_list == [
            call(guilds[0]), call(guilds[1]),
            call(guilds[0]), call(guilds[1]),
        ]

    @pytest.mark.asyncio
    async def test_posts_in_busiest_channel(self, core, db, bot_user):
        await add_messages(db, 1, ['quiet channel'], guild_id=GUILD_ID)
        await add_messages(db, CHANNEL_ID, ['busy channel'] * 3,
                           guild_id=GUILD_ID)
        channel = fake_channel([fake_message(i, 5) for i in range(1, 4)])
        guild = MagicMock()
        guild.id = GUILD_ID
        guild.get_channel = MagicMock(return_value=channel)
        client = DiscordClient(core)

        assert await client.ambient_post(guild)
        guild.get_channel.assert_called_once_with(CHANNEL_ID)
        core.generate_message.assert_awaited_once_with(CHANNEL_ID)
        channel.send.assert_awaited_once_with('generated words')

    @pytest.mark.asyncio
    async def test_quiet_after_speaking_recently(self, core, db, bot_user):
        await add_messages(db, CHANNEL_ID, ['busy channel'], guild_id=GUILD_ID)
        channel = fake_channel([fake_message(1, 5), fake_message(2, BOT_ID)])
        guild = MagicMock()
        guild.id = GUILD_ID
        guild.get_channel = MagicMock(return_value=channel)
        client = DiscordClient(core)

        assert not await client.ambient_post(guild)
        channel.send.assert_not_awaited()
        core.generate_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_speaks_if_bot_message_is_beyond_history_limit(
            self, core, db, bot_user):
        await add_messages(db, CHANNEL_ID, ['busy channel'], guild_id=GUILD_ID)
        recent = [fake_message(i, 5) for i in range(1, 11)]
        channel = fake_channel(recent + [fake_message(11, BOT_ID)])
        guild = MagicMock()
        guild.id = GUILD_ID
        guild.get_channel = MagicMock(return_value=channel)
        client = DiscordClient(core)

        assert await client.ambient_post(guild)

    @pytest.mark.asyncio
    async def test_nothing_without_history(self, core, db, bot_user):
        guild = MagicMock()
        guild.id = GUILD_ID
        client = DiscordClient(core)

        assert not await client.ambient_post(guild)
        guild.get_channel.assert_not_called()

    @pytest.mark.asyncio
    async def test_nothing_without_generated_message(self, core, db, bot_user):
        await add_messages(db, CHANNEL_ID, ['busy channel'], guild_id=GUILD_ID)
        core.generate_message.return_value = None
        channel = fake_channel()
        guild = MagicMock()
        guild.id = GUILD_ID
        guild.get_channel = MagicMock(return_value=channel)
        client = DiscordClient(core)

        assert not await client.ambient_post(guild)
        channel.send.assert_not_awaited()
