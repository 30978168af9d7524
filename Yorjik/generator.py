"""generator.py

Channel-level message generation: reuses a channel's cached chain when there
is one, otherwise fetches the channel's corpus, trains and caches a new chain,
then generates a sentence of random length from it.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Optional, Sequence

from Yorjik.cache import ChannelModel, ModelCache
from Yorjik.chain import train
from Yorjik.exceptions import CorpusFetchError

logger = logging.getLogger('Yorjik.Generator')

DEFAULT_MIN_CORPUS_SIZE = 500
DEFAULT_FETCH_LIMIT = 5000
DEFAULT_MIN_LENGTH = 10
DEFAULT_MAX_WORDS = 14
DEFAULT_EXCLUDED_PREFIXES = (
    '$', '&', '!', '.', 'm.', '>', '<', '[', ']', '@', '#', '^', '*', ',',
    'https', 'http',
)


class MessageGenerator:
    """Generates messages that sound like a given channel.

    Parameters
    ----------
    provider
        The corpus provider. Must offer coroutine methods
        ``count_messages(channel_id, min_length, excluded_prefixes)`` and
        ``fetch_messages(channel_id, min_length, excluded_prefixes, limit)``
        that raise `CorpusFetchError` on failure; see
        `Yorjik.database.CorpusProvider`.
    cache : ModelCache, optional
        Where trained chains are kept. A private cache is created if omitted.
    min_corpus_size : int, optional
        Channels with fewer qualifying messages than this get no chain.
    fetch_limit : int, optional
        Maximum number of messages to train a chain on.
    min_length : int, optional
        Messages must be longer than this many characters to qualify.
    excluded_prefixes : Sequence[str], optional
        Messages beginning with any of these do not qualify.
    max_words : int, optional
        Each generated message has between 1 and this many words, chosen at
        random per message.
    rng : random.Random, optional
        Source of randomness for message length and word choice.
    """

    def __init__(self, provider, cache: ModelCache = None, *,
                 min_corpus_size: int = DEFAULT_MIN_CORPUS_SIZE,
                 fetch_limit: int = DEFAULT_FETCH_LIMIT,
                 min_length: int = DEFAULT_MIN_LENGTH,
                 excluded_prefixes: Sequence[str] = DEFAULT_EXCLUDED_PREFIXES,
                 max_words: int = DEFAULT_MAX_WORDS,
                 rng: random.Random = None):
        if max_words < 1:
            raise ValueError('max_words must be at least 1')
        self.provider = provider
        self.cache = cache if cache is not None else ModelCache()
        self.min_corpus_size = min_corpus_size
        self.fetch_limit = fetch_limit
        self.min_length = min_length
        self.excluded_prefixes = tuple(excluded_prefixes)
        self.max_words = max_words
        self.rng = rng or random.Random()

    @classmethod
    def from_config(cls, provider, cache: ModelCache, cfg) -> MessageGenerator:
        """Create a generator using the ``[Markov]`` section of `cfg`."""
        return cls(
            provider, cache,
            min_corpus_size=cfg.get('Markov.MinCorpusSize',
                                    DEFAULT_MIN_CORPUS_SIZE),
            fetch_limit=cfg.get('Markov.FetchLimit', DEFAULT_FETCH_LIMIT),
            min_length=cfg.get('Markov.MinMessageLength', DEFAULT_MIN_LENGTH),
            excluded_prefixes=cfg.get('Markov.ExcludedPrefixes',
                                      DEFAULT_EXCLUDED_PREFIXES),
            max_words=cfg.get('Markov.MaxWords', DEFAULT_MAX_WORDS),
        )

    async def corpus_size(self, channel_id: int) -> int:
        """Return the number of qualifying messages stored for a channel."""
        return await self.provider.count_messages(
            channel_id, self.min_length, self.excluded_prefixes)

    async def build_model(self, channel_id: int,
                          corpus_size: int = 0) -> ChannelModel:
        """Fetch a channel's corpus and train a new chain from it.

        Training happens in the event loop's default executor.
        """
        start = time.perf_counter()
        messages = await self.provider.fetch_messages(
            channel_id, self.min_length, self.excluded_prefixes,
            self.fetch_limit)
        loop = asyncio.get_running_loop()
        model = await loop.run_in_executor(None, train, messages)
        logger.info(
            f'Built chain for channel {channel_id} from {len(messages):,} '
            f'messages ({model.token_count:,} words, {len(model):,} '
            f'contexts) in {time.perf_counter() - start:.2f}s')
        return ChannelModel(channel_id, model, corpus_size=corpus_size)

    async def generate_message(self, channel_id: int,
                               seed: str = None) -> Optional[str]:
        """Generate a message for the given channel.

        Parameters
        ----------
        channel_id : int
            The channel whose history the message should be based on.
        seed : str, optional
            Word the message should start with. Unknown words are ignored.

        Returns
        -------
        Optional[str]
            The generated message, or `None` if the channel doesn't have
            enough history yet or its history couldn't be fetched.
        """
        try:
            size = await self.corpus_size(channel_id)
            if size < self.min_corpus_size:
                logger.debug(f'Channel {channel_id} has {size:,} qualifying '
                             f'messages; need {self.min_corpus_size:,}')
                return None
            entry = await self.cache.get_or_build(
                channel_id, lambda: self.build_model(channel_id, size),
                corpus_size=size)
        except CorpusFetchError as ex:
            logger.error(f'{ex}: {ex.__cause__}')
            return None

        max_tokens = self.rng.randint(1, self.max_words)
        return entry.model.generate(max_tokens, seed, self.rng)
