"""database.py

Interface to Yorjik's SQLite 3 message store, which doubles as the corpus
provider for the Markov chains.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional, Sequence, Union

import aiosqlite

from Yorjik.exceptions import CorpusFetchError

logger = logging.getLogger('Yorjik.Database')

# (message_id, author_id, channel_id, guild_id, content, created_at)
MessageRow = tuple[int, int, int, int, str, Optional[datetime]]


async def create_connection(database: Union[str, Path],
                            readonly: bool = False,
                            **kwargs) -> aiosqlite.Connection:
    """Establish a new connection to a Yorjik database.

    Parameters
    ----------
    database : str or Path
        The path to the SQLite 3 database.
    readonly : bool, optional
        Whether the connection is read-only. Defaults to `False`.
    kwargs
        Remaining keyword arguments are passed to `aiosqlite.connect`.

    Returns
    -------
    aiosqlite.Connection
        A connection object for the requested database.
    """
    if not isinstance(database, Path):
        database = Path(database)
    database = database.absolute()

    logger.debug(f"Creating {'read-only ' if readonly else ''}connection to "
                 f"database at '{database}'")
    # NOTE: aiosqlite passes kwargs to sqlite3.connect
    conn = await aiosqlite.connect(
        f"{database.as_uri()}?mode={'ro' if readonly else 'rwc'}",
        uri=True, **kwargs)
    conn.row_factory = sqlite3.Row
    return conn


async def init_database(conn: aiosqlite.Connection):
    """Create the message store's tables and indexes."""
    await conn.executescript("""
        CREATE TABLE IF NOT EXISTS "messages" (
            "id"         INTEGER PRIMARY KEY AUTOINCREMENT,
            "message_id" INTEGER NOT NULL UNIQUE,
            "author_id"  INTEGER NOT NULL,
            "channel_id" INTEGER NOT NULL,
            "guild_id"   INTEGER NOT NULL,
            "content"    TEXT NOT NULL,
            "created_at" DATETIME DEFAULT CURRENT_TIMESTAMP
        );
        CREATE INDEX IF NOT EXISTS "idx_messages_guild_channel"
        ON "messages" ("guild_id", "channel_id");
        CREATE INDEX IF NOT EXISTS "idx_messages_guild_author"
        ON "messages" ("guild_id", "author_id");
    """)
    await conn.commit()


async def insert_messages(conn: aiosqlite.Connection,
                          rows: Iterable[MessageRow]) -> int:
    """Store messages, ignoring any whose message ID is already stored.

    Parameters
    ----------
    conn : aiosqlite.Connection
        The database connection to use.
    rows : Iterable[MessageRow]
        ``(message_id, author_id, channel_id, guild_id, content,
        created_at)`` tuples. A `None` ``created_at`` means "now".

    Returns
    -------
    int
        The number of messages actually inserted.
    """
    now = datetime.now(timezone.utc)
    rows = [(*row[:5], (row[5] or now).isoformat(sep=' ', timespec='seconds'))
            for row in rows]
    if not rows:
        return 0
    before = conn.total_changes
    await conn.executemany("""
        INSERT OR IGNORE INTO messages
            (message_id, author_id, channel_id, guild_id, content, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
    """, rows)
    await conn.commit()
    return conn.total_changes - before


async def insert_message(conn: aiosqlite.Connection, message_id: int,
                         author_id: int, channel_id: int, guild_id: int,
                         content: str, created_at: datetime = None) -> bool:
    """Store a single message; returns whether it was new."""
    inserted = await insert_messages(
        conn,
        [(message_id, author_id, channel_id, guild_id, content, created_at)])
    return inserted == 1


def _corpus_filter(channel_id: int, min_length: int,
                   excluded_prefixes: Sequence[str]) -> tuple[str, list]:
    """Build the WHERE clause selecting a channel's qualifying messages."""
    clauses = ['channel_id = ?', 'length(content) > ?']
    params = [channel_id, min_length]
    for prefix in excluded_prefixes:
        clauses.append('substr(content, 1, ?) != ?')
        params.extend((len(prefix), prefix))
    return ' AND '.join(clauses), params


async def count_messages(conn: aiosqlite.Connection, channel_id: int,
                         min_length: int = 0,
                         excluded_prefixes: Sequence[str] = ()) -> int:
    """Return the number of qualifying messages stored for a channel.

    A message qualifies if its content is longer than `min_length`
    characters and does not begin with any of `excluded_prefixes`.
    """
    where, params = _corpus_filter(channel_id, min_length, excluded_prefixes)
    async with conn.execute(
            f'SELECT count(*) FROM messages WHERE {where}', params) as cur:
        return (await cur.fetchone())[0]


async def fetch_messages(conn: aiosqlite.Connection, channel_id: int,
                         min_length: int = 0,
                         excluded_prefixes: Sequence[str] = (),
                         limit: int = 5000) -> list[str]:
    """Return up to `limit` qualifying messages for a channel.

    When the channel has more qualifying messages than `limit`, a uniform
    random sample is returned. The result is in random order either way.
    See `count_messages` for what qualifies.
    """
    where, params = _corpus_filter(channel_id, min_length, excluded_prefixes)
    async with conn.execute(f"""
        SELECT content FROM messages
        WHERE {where}
        ORDER BY random()
        LIMIT ?
    """, (*params, limit)) as cur:
        return [row['content'] for row in await cur.fetchall()]


async def get_most_popular_channel(conn: aiosqlite.Connection,
                                   guild_id: int) -> Optional[int]:
    """Return the ID of the guild's channel with the most stored messages."""
    async with conn.execute("""
        SELECT channel_id FROM messages
        WHERE guild_id = ?
        GROUP BY channel_id
        ORDER BY count(*) DESC
        LIMIT 1
    """, (guild_id,)) as cur:
        row = await cur.fetchone()
    return row['channel_id'] if row is not None else None


class CorpusProvider:
    """Supplies channel corpora from the message store.

    Storage errors are raised as `CorpusFetchError` so callers need not know
    about SQLite.

    Parameters
    ----------
    connection : aiosqlite.Connection
        An open connection to an initialized Yorjik database.
    """

    def __init__(self, connection: aiosqlite.Connection):
        self._connection = connection

    @property
    def connection(self) -> aiosqlite.Connection:
        """The connection to the message store."""
        return self._connection

    async def count_messages(self, channel_id: int, min_length: int,
                             excluded_prefixes: Sequence[str]) -> int:
        """Return the size of a channel's qualifying corpus."""
        try:
            return await count_messages(
                self._connection, channel_id, min_length, excluded_prefixes)
        except aiosqlite.Error as ex:
            raise CorpusFetchError(
                f'Failed to count messages for channel {channel_id}',
                channel_id=channel_id) from ex

    async def fetch_messages(self, channel_id: int, min_length: int,
                             excluded_prefixes: Sequence[str],
                             limit: int) -> list[str]:
        """Return up to `limit` qualifying messages for a channel."""
        try:
            return await fetch_messages(self._connection, channel_id,
                                        min_length, excluded_prefixes, limit)
        except aiosqlite.Error as ex:
            raise CorpusFetchError(
                f'Failed to fetch messages for channel {channel_id}',
                channel_id=channel_id) from ex
