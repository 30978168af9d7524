"""chain.py

A first-order Markov chain for generating sentences from a channel's message
history.

Training splits each message into case-folded, whitespace-delimited tokens and
counts which token follows which. Messages never bleed into one another: the
last token of one message is not a context for the first token of the next.
Generation picks a first token (the seed, if the chain knows it, otherwise
a weighted pick among tokens that have begun a message) and then walks the
chain, choosing each next token with probability proportional to how often it
was observed, until the requested length or a dead end is reached.
"""

from __future__ import annotations

import logging
import random
from itertools import accumulate, islice
from types import MappingProxyType
from typing import Dict, Generator, Iterable, Mapping, NamedTuple, Optional

from Yorjik.util import gen_repr

logger = logging.getLogger('Yorjik.Markov')

# Type aliases
Token = str
Candidates = Mapping[Token, int]
TransitionModel = Mapping[Token, Candidates]


def tokenize(message: str) -> list[Token]:
    """Split a message into case-folded, whitespace-delimited tokens."""
    return [word.casefold() for word in message.split()]


class _Wheel(NamedTuple):
    """Precomputed roulette wheel over a weighted candidate set."""

    tokens: tuple[Token, ...]
    cum_weights: tuple[int, ...]

    @classmethod
    def from_counts(cls, counts: Candidates) -> _Wheel:
        tokens = tuple(counts)
        return cls(tokens, tuple(accumulate(counts[t] for t in tokens)))

    def spin(self, rng: random.Random) -> Token:
        # choices() draws uniformly over [0, total) and bisects the
        # cumulative weights, i.e. standard roulette-wheel selection.
        return rng.choices(self.tokens, cum_weights=self.cum_weights)[0]


class ChainModel:
    """An immutable, trained first-order Markov chain.

    Holds the transition model (context token to weighted next-token
    candidates) and the start set (tokens that began a training message,
    weighted by how often they did). Instances are read-only once built and
    are safe to share between any number of concurrent generators; retraining
    produces a new instance rather than modifying an existing one.

    Parameters
    ----------
    transitions : TransitionModel
        Mapping of each context token to its candidate next tokens and their
        occurrence counts. Every candidate set must be non-empty and every
        count a positive integer.
    starts : Candidates
        Mapping of start tokens to their occurrence counts.
    message_count : int, optional
        Number of non-empty messages the chain was trained on.
    token_count : int, optional
        Total number of tokens the chain was trained on.

    Raises
    ------
    ValueError
        If a candidate set is empty or a count is not a positive integer.
    """

    def __init__(self, transitions: TransitionModel, starts: Candidates, *,
                 message_count: int = 0, token_count: int = 0):
        for context, candidates in transitions.items():
            if not candidates:
                raise ValueError(f'Context {context!r} has no candidates')
            self._check_counts(candidates)
        self._check_counts(starts)
        self._transitions = MappingProxyType({
            context: MappingProxyType(dict(candidates))
            for context, candidates in transitions.items()
        })
        self._starts = MappingProxyType(dict(starts))
        self._wheels = {
            context: _Wheel.from_counts(candidates)
            for context, candidates in self._transitions.items()
        }
        self._start_wheel = _Wheel.from_counts(self._starts)
        self.message_count = message_count
        self.token_count = token_count

    def __repr__(self):
        return gen_repr(self, ('message_count', 'token_count'),
                        contexts=len(self), starts=len(self._starts))

    def __len__(self):
        return len(self._transitions)

    def __contains__(self, token: Token):
        return token in self._transitions or token in self._starts

    @staticmethod
    def _check_counts(counts: Candidates):
        for token, count in counts.items():
            if not isinstance(count, int) or count < 1:
                raise ValueError(
                    f'Count for {token!r} must be a positive integer, not {count!r}')

    @property
    def transitions(self) -> TransitionModel:
        """Read-only view of the transition model."""
        return self._transitions

    @property
    def starts(self) -> Candidates:
        """Read-only view of the start set."""
        return self._starts

    def transition(self, state: Token, rng: random.Random = None) -> Token:
        """Return the next token following the given state.

        The next token is chosen at random from all possible next tokens,
        weighted by their occurrence.

        Raises
        ------
        KeyError
            If `state` is a dead end, i.e. it was never followed by anything.
        """
        return self._wheels[state].spin(rng or random)

    def choose_start(self, rng: random.Random = None) -> Optional[Token]:
        """Pick a start token weighted by occurrence; `None` if there are none."""
        if not self._start_wheel.tokens:
            return None
        return self._start_wheel.spin(rng or random)

    def walk(self, start: Token,
             rng: random.Random = None) -> Generator[Token, None, None]:
        """Successively yield tokens from a random walk on the chain.

        The walk begins *after* `start`, which itself is not yielded, and ends
        when a token with no outgoing transitions is reached.
        """
        state = start
        while True:
            try:
                state = self.transition(state, rng)
            except KeyError:
                return
            yield state

    def generate(self, max_tokens: int, seed: str = None,
                 rng: random.Random = None) -> str:
        """Generate a sentence; see `generate`."""
        return generate(self, max_tokens, seed, rng)


def train(messages: Iterable[str]) -> ChainModel:
    """Build a `ChainModel` from the given messages.

    Each message is tokenized independently; its first token is added to the
    start set and each adjacent pair of tokens becomes a transition. Empty
    messages are skipped and single-token messages only contribute a start
    token. Messages are expected to have been filtered already; no further
    filtering happens here.

    Parameters
    ----------
    messages : Iterable[str]
        The raw message texts to train on.

    Returns
    -------
    ChainModel
        The trained, immutable chain.
    """
    transitions: Dict[Token, Dict[Token, int]] = {}
    starts: Dict[Token, int] = {}
    message_count, token_count = 0, 0
    for message in messages:
        tokens = tokenize(message)
        if not tokens:
            continue
        message_count += 1
        token_count += len(tokens)
        starts[tokens[0]] = starts.get(tokens[0], 0) + 1
        for current, following in zip(tokens, tokens[1:]):
            edges = transitions.setdefault(current, {})
            edges[following] = edges.get(following, 0) + 1
    logger.debug(f'Trained chain on {message_count:,} messages '
                 f'({token_count:,} tokens, {len(transitions):,} contexts)')
    return ChainModel(transitions, starts, message_count=message_count,
                      token_count=token_count)


def generate(model: ChainModel, max_tokens: int, seed: str = None,
             rng: random.Random = None) -> str:
    """Generate one sentence from a trained chain.

    Parameters
    ----------
    model : ChainModel
        The chain to walk.
    max_tokens : int
        Upper bound on the number of tokens in the sentence. The sentence is
        shorter if the walk reaches a dead end first.
    seed : str, optional
        Word the sentence should start with. If the chain knows it (ignoring
        case), it is emitted as given and the walk continues from it. An
        unknown seed silently falls back to a random start token. Only the
        first word of a multi-word seed is considered.
    rng : random.Random, optional
        Source of randomness; pass a seeded instance for reproducible output.
        Defaults to the `random` module's shared instance.

    Returns
    -------
    str
        The generated sentence, or an empty string if the chain has no start
        tokens and no usable seed was given.

    Raises
    ------
    ValueError
        If `max_tokens` is less than 1.
    """
    if max_tokens < 1:
        raise ValueError('max_tokens must be at least 1')
    first, state = None, None
    if seed is not None and (words := seed.split()):
        if words[0].casefold() in model:
            first, state = words[0], words[0].casefold()
        else:
            logger.debug(f'Unknown seed {words[0]!r}; picking a start token')
    if first is None:
        state = model.choose_start(rng)
        if state is None:
            return ''
        first = state

    tokens = [first]
    tokens.extend(islice(model.walk(state, rng), max_tokens - 1))
    return ' '.join(tokens).strip()
