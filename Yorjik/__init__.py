"""
Yorjik is a Discord bot that learns how a channel talks and talks back. It
records the messages of the channels it inhabits, trains a simple Markov chain
per channel and generates new sentences on demand, when mentioned, or at
random intervals in a guild's busiest channel.
"""

from __future__ import annotations

__version__ = '0.1.0'

from .core import Core as Core
