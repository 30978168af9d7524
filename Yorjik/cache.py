"""cache.py

Per-channel cache of trained Markov chains.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional

from Yorjik.chain import ChainModel

logger = logging.getLogger('Yorjik.Cache')

Builder = Callable[[], Awaitable['ChannelModel']]


@dataclass(frozen=True)
class ChannelModel:
    """A trained chain for a channel, as stored in a `ModelCache`.

    Entries are immutable snapshots; rebuilding a channel's chain replaces its
    entry wholesale.

    Attributes
    ----------
    channel_id : int
        The channel the chain was trained from.
    model : ChainModel
        The trained chain.
    corpus_size : int
        Size of the channel's qualifying corpus when the chain was built.
    built_at : float
        When the chain was built, in seconds since the epoch.
    """

    channel_id: int
    model: ChainModel
    corpus_size: int = 0
    built_at: float = field(default_factory=time.time)

    @property
    def age(self) -> float:
        """Seconds elapsed since this entry was built."""
        return time.time() - self.built_at


class ModelCache:
    """Maps channel IDs to their most recently trained `ChannelModel`.

    Any number of callers may read the same entry at once; entries are never
    modified in place, so a reader always holds a complete model even while
    a rebuild for the same channel is in progress. Concurrent misses for the
    same channel share a single in-flight build, and builds for different
    channels never wait on each other.

    By default an entry is reused indefinitely. Either refresh policy below
    marks an entry stale so the next request rebuilds it.

    Parameters
    ----------
    max_age : float, optional
        Entries older than this many seconds are stale. ``None`` or ``0``
        disables age-based refreshing.
    refresh_delta : int, optional
        Entries are stale once the caller reports a corpus at least this many
        messages larger than the one they were built from. ``None`` or ``0``
        disables size-based refreshing.
    """

    def __init__(self, max_age: float = None, refresh_delta: int = None):
        self.max_age = max_age or None
        self.refresh_delta = refresh_delta or None
        self._entries: Dict[int, ChannelModel] = {}
        self._pending: Dict[int, asyncio.Future] = {}

    def __repr__(self):
        return (f'<{self.__class__.__name__} entries={len(self._entries)} '
                f'pending={len(self._pending)} max_age={self.max_age!r} '
                f'refresh_delta={self.refresh_delta!r}>')

    def __len__(self):
        return len(self._entries)

    def __contains__(self, channel_id: int):
        return channel_id in self._entries

    def get(self, channel_id: int) -> Optional[ChannelModel]:
        """Return the cached entry for a channel, stale or not, if any."""
        return self._entries.get(channel_id)

    def put(self, entry: ChannelModel):
        """Insert or replace the entry for ``entry.channel_id``."""
        self._entries[entry.channel_id] = entry

    def invalidate(self, channel_id: int) -> bool:
        """Drop a channel's entry so the next request rebuilds it.

        Returns whether there was an entry to drop.
        """
        return self._entries.pop(channel_id, None) is not None

    def clear(self):
        """Drop every cached entry."""
        self._entries.clear()

    def is_stale(self, entry: ChannelModel, corpus_size: int = None) -> bool:
        """Check an entry against the configured refresh policies."""
        if self.max_age is not None and entry.age > self.max_age:
            return True
        if self.refresh_delta is not None and corpus_size is not None:
            return corpus_size - entry.corpus_size >= self.refresh_delta
        return False

    async def get_or_build(self, channel_id: int, build: Builder, *,
                           corpus_size: int = None) -> ChannelModel:
        """Return the channel's entry, building it first if necessary.

        Parameters
        ----------
        channel_id : int
            The channel whose chain is wanted.
        build : Callable[[], Awaitable[ChannelModel]]
            Coroutine function that fetches the corpus and trains a new
            entry. Only called on a miss (or a stale entry), and at most once
            for any number of concurrent misses on the same channel.
        corpus_size : int, optional
            The channel's current corpus size, used by the ``refresh_delta``
            policy.

        Raises
        ------
        Exception
            Whatever `build` raises is propagated to every caller waiting on
            that build; the cache itself is left unchanged.
        """
        entry = self._entries.get(channel_id)
        if entry is not None and not self.is_stale(entry, corpus_size):
            logger.debug(f'Cache hit for channel {channel_id}')
            return entry

        task = self._pending.get(channel_id)
        if task is not None:
            logger.debug(f'Waiting on in-flight build for channel {channel_id}')
        else:
            if entry is None:
                logger.debug(f'Cache miss for channel {channel_id}')
            else:
                logger.info(f'Chain for channel {channel_id} is stale '
                            f'(built {entry.age:,.0f}s ago from '
                            f'{entry.corpus_size:,} messages); rebuilding')
            task = asyncio.ensure_future(self._build(channel_id, build))
            self._pending[channel_id] = task
        # Builds run in their own task; cancelling a caller never cancels one
        return await asyncio.shield(task)

    async def _build(self, channel_id: int, build: Builder) -> ChannelModel:
        try:
            entry = await build()
            self._entries[channel_id] = entry
            return entry
        finally:
            del self._pending[channel_id]
