"""Discord protocol implementation."""

from .protocol import DiscordClient as DiscordClient
