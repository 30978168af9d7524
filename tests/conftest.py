"""Shared fixtures and helpers for Yorjik's tests."""

import pytest
import pytest_asyncio

from Yorjik.database import create_connection, init_database, insert_messages
from Yorjik.exceptions import CorpusFetchError


@pytest_asyncio.fixture
async def db(tmp_path):
    """An initialized message store in a temporary directory."""
    conn = await create_connection(tmp_path / 'test.sqlite')
    await init_database(conn)
    yield conn
    await conn.close()


async def add_messages(conn, channel_id, contents, *, guild_id=1, author_id=1,
                       first_id=None):
    """Store the given message contents in a channel; returns rows inserted."""
    if first_id is None:
        async with conn.execute('SELECT count(*) FROM messages') as cur:
            first_id = (await cur.fetchone())[0] + 1
    rows = [
        (first_id + i, author_id, channel_id, guild_id, content, None)
        for i, content in enumerate(contents)
    ]
    return await insert_messages(conn, rows)


class StubProvider:
    """In-memory corpus provider that counts how often it is used."""

    def __init__(self, corpora=None, *, fail_count=False, fail_fetch=False):
        self.corpora = corpora or {}
        self.fail_count = fail_count
        self.fail_fetch = fail_fetch
        self.count_calls = 0
        self.fetch_calls = 0

    async def count_messages(self, channel_id, min_length, excluded_prefixes):
        self.count_calls += 1
        if self.fail_count:
            raise CorpusFetchError('count failed', channel_id=channel_id)
        return len(self.corpora.get(channel_id, []))

    async def fetch_messages(self, channel_id, min_length, excluded_prefixes,
                             limit):
        self.fetch_calls += 1
        if self.fail_fetch:
            raise CorpusFetchError('fetch failed', channel_id=channel_id)
        return list(self.corpora.get(channel_id, []))[:limit]


@pytest.fixture
def cat_corpus():
    return ['the cat sat', 'the cat ran']
