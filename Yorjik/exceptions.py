"""exceptions.py

Exceptions specific to Yorjik.
"""

from __future__ import annotations


class YorjikException(Exception):
    """Base exception for Yorjik.

    Can be used to catch any exception that Yorjik may throw.
    """


# Configuration


class YorjikConfigError(YorjikException):
    """Base exception for Yorjik configuration errors.

    Attributes
    ----------
    config_name : str
        The name of the config file in question.
    """

    def __init__(self, *args, config_name: str):
        super().__init__(*args)
        self.config_name = config_name


class ConfigReadError(YorjikConfigError):
    """The config file could not be read."""


class ConfigWriteError(YorjikConfigError):
    """The config file could not be written."""


class ConfigDecodeError(YorjikConfigError):
    """The config file could not be parsed."""


class ConfigEncodeError(YorjikConfigError):
    """The config could not be serialized."""


# Corpus


class CorpusError(YorjikException):
    """Base exception for problems with a channel's message corpus.

    Attributes
    ----------
    channel_id : int
        The channel whose corpus was being accessed.
    """

    def __init__(self, *args, channel_id: int):
        super().__init__(*args)
        self.channel_id = channel_id


class CorpusFetchError(CorpusError):
    """The corpus for a channel could not be retrieved from storage.

    Usually wraps a `sqlite3.Error`; check ``__cause__`` for details.
    """
