"""core.py

Yorjik's core loads configuration, sets up logging and the message store, owns
the shared chain cache and message generator, and runs the Discord client
that puts them to use.
"""

from __future__ import annotations

import asyncio
import logging
import logging.config
import os
import signal
from pathlib import Path
from typing import Optional, Union

import appdirs

import Yorjik.database as ydb
from Yorjik.cache import ModelCache
from Yorjik.config import Config
from Yorjik.exceptions import YorjikConfigError
from Yorjik.generator import MessageGenerator
from Yorjik.protocol.discord import DiscordClient

# Minimal initial logging format for any messages before the config is read and
# user logging configuration is applied.
logging.basicConfig(
    style='{',
    format='{asctime} {levelname:7} {message}',
    datefmt='%T',
    level=logging.ERROR,
)


class Core:
    """A class representing Yorjik's core functionality.

    Parameters
    ----------
    config_dir : str or Path, optional
        Specifies the path to Yorjik's configuration directory; defaults to
        ``<user_config_dir>/Yorjik``.
    data_dir : str or Path, optional
        Specifies the path to Yorjik's data directory, where the message
        database lives; defaults to ``<user_data_dir>/Yorjik``.
    eventloop : asyncio.AbstractEventLoop, optional
        The asyncio event loop to use. If unspecified, a new event loop is
        created and set as the current loop.

    Attributes
    ----------
    config : Config
        A `Config` object representing Yorjik's main configuration file.
    database : aiosqlite.Connection
        Connection to the message store.
    cache : ModelCache
        The per-channel chain cache shared by every caller.
    generator : MessageGenerator
        Generates messages from the message store through `cache`.
    client : Yorjik.protocol.discord.DiscordClient
        The Discord client; `None` until `run` is called.
    config_dir : Path
    data_dir : Path
    eventloop
    """

    def __init__(
        self,
        config_dir: Union[str, Path] = None,
        data_dir: Union[str, Path] = None,
        eventloop: asyncio.AbstractEventLoop = None,
    ):
        if eventloop is None:
            eventloop = asyncio.new_event_loop()
            asyncio.set_event_loop(eventloop)
        self.eventloop = eventloop
        self.logger = logging.getLogger('Yorjik')
        self.client = None
        self._shutdown_reason = None

        # Read config
        if config_dir:
            self._config_dir = Path(config_dir)
        else:
            self._config_dir = Path(appdirs.user_config_dir('Yorjik', appauthor=False, roaming=True))
        self.config = self.load_config('yorjik')
        for section in ('Core', 'Discord', 'Database', 'Markov', 'Cache', 'Ambient'):
            if section not in self.config:
                self.config[section] = {}

        if data_dir:
            self._data_dir = Path(data_dir)
        else:
            self._data_dir = Path(appdirs.user_data_dir('Yorjik', appauthor=False, roaming=True))
        self._data_dir.mkdir(parents=True, exist_ok=True)

        # Configure logging
        self._init_logging()

        # Database Setup
        self._db_path = self._data_dir.joinpath(self.config.get('Database.Filename', 'yorjik.sqlite'))
        self.database = self.eventloop.run_until_complete(ydb.create_connection(self._db_path))
        self.eventloop.run_until_complete(ydb.init_database(self.database))
        self.logger.info(f"Opened message store at '{self._db_path}'")

        # Markov chain cache and generator
        self.cache = ModelCache(
            max_age=self.config.get('Cache.MaxAge', 0),
            refresh_delta=self.config.get('Cache.RefreshDelta', 0),
        )
        self.corpus = ydb.CorpusProvider(self.database)
        self.generator = MessageGenerator.from_config(self.corpus, self.cache, self.config)

    def __repr__(self):
        return f'<{self.__class__.__name__} config_dir={str(self._config_dir)!r} data_dir={str(self._data_dir)!r}>'

    @property
    def config_dir(self) -> Path:
        """Get the path to Yorjik's configuration directory."""
        return self._config_dir

    @property
    def data_dir(self) -> Path:
        """Get the path to Yorjik's data directory."""
        return self._data_dir

    @property
    def bot_token(self) -> Optional[str]:
        """The Discord bot token, from the config or ``$DISCORD_TOKEN``."""
        return self.config.get('Discord.BotToken') or os.environ.get('DISCORD_TOKEN')

    def _init_logging(self):
        """Initialize logging configuration."""
        defaults = {
            'Level': 'INFO',
            'DiscordLevel': 'WARNING',
            'Enabled': ['console'],
            'Formatters': {
                'default': {
                    'style': '{',
                    'format': '{asctime} {levelname:7} [{name}] {message}',
                    'datefmt': '%T',
                }
            },
            'Handlers': {
                'console': {
                    'class': 'logging.StreamHandler',
                    'level': 'DEBUG',
                    'formatter': 'default',
                }
            },
        }

        log_sec = {**defaults, **Config.as_dict(self.config.get('Logging', {}))}
        # Ensure the default formatter is always available
        log_sec['Formatters'] = {
            **log_sec.get('Formatters', {}),
            **defaults['Formatters'],
        }
        for handler in log_sec['Handlers'].values():
            # Normalize file paths
            if 'filename' in handler:
                log_file = Path(handler['filename']).expanduser()
                log_file.parent.mkdir(parents=True, exist_ok=True)
                handler['filename'] = str(log_file)

        logging.config.dictConfig({
            'version': 1,  # dictConfig schema version (required)
            'disable_existing_loggers': False,
            'loggers': {
                'Yorjik': {
                    'level': log_sec['Level'],
                    'handlers': log_sec['Enabled'],
                    'propagate': False,
                },
                'discord': {
                    'level': log_sec['DiscordLevel'],
                    'handlers': log_sec['Enabled'],
                    'propagate': False,
                },
            },
            'formatters': log_sec['Formatters'],
            'handlers': log_sec['Handlers'],
        })

    def load_config(self, name: str) -> Config:
        """Load a configuration file.

        Parameters
        ----------
        name : str
            The name of the configuration file to load, **without** the
            extension. Files are searched for in Yorjik's configuration
            directory: `self.config_dir`.

        Returns
        -------
        Yorjik.Config
            A dictionary-like object representing a parsed TOML config file.
        """
        path = self._config_dir / Path(name).with_suffix('.toml')
        config = Config(path)
        try:
            config.load()
        except FileNotFoundError:
            self.logger.warning(f"Config file '{path.name}' doesn't exist; defaults will be assumed where applicable.")
        except YorjikConfigError as ex:
            self.logger.error(f"Failed to load config file '{path.name}': {ex.__cause__ or ex}")
        else:
            self.logger.info(f"Loaded config file '{path.name}'")
        return config

    def run(self) -> int:
        """Connect to Discord and run until disconnected or interrupted."""
        token = self.bot_token
        if not token:
            self.logger.error('No bot token configured; set Discord.BotToken or $DISCORD_TOKEN')
            self._shutdown()
            self.eventloop.close()
            return 1

        self.client = DiscordClient(self)
        signal.signal(signal.SIGTERM, lambda x, y: self.quit('Terminated'))
        try:
            self.eventloop.run_until_complete(self.client.start(token))
        except KeyboardInterrupt:
            self.logger.info('Interrupt received, shutting down.')
        except Exception:
            self.logger.exception('Unhandled exception raised, shutting down.')
        finally:
            retcode = self._shutdown()
            self.logger.debug('Closing event loop')
            self.eventloop.close()
        return retcode

    async def generate_message(self, channel_id: int, seed: str = None) -> Optional[str]:
        """Proxies `MessageGenerator.generate_message`."""
        return await self.generator.generate_message(channel_id, seed)

    def quit(self, reason: str = None):
        """Shut down Yorjik.

        Closes the Discord connection, which in turn lets `run` return. If
        `reason` is given, it is logged.
        """
        self.logger.info('Shutting down Yorjik' + (f' with reason "{reason}"' if reason else ''))
        self._shutdown_reason = reason
        if self.client is not None:
            self.eventloop.call_soon_threadsafe(self.eventloop.create_task, self.client.close())

    def _shutdown(self) -> int:
        """Close the Discord client and database connection.

        Called when Yorjik is shutting down.
        """
        retcode = 0
        if self.client is not None and not self.client.is_closed():
            try:
                self.eventloop.run_until_complete(self.client.close())
            except Exception:
                self.logger.exception('Exception occurred while closing the Discord client.')
                retcode = 1
        self.logger.debug('Closing database connection')
        self.eventloop.run_until_complete(self.database.close())
        self.logger.debug(f'Dropping {len(self.cache)} cached chains')
        self.cache.clear()
        return retcode
