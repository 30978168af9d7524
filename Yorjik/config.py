"""config.py

Interface for Yorjik's configuration and config files.
"""

from __future__ import annotations

from collections import UserDict
from copy import deepcopy
from pathlib import Path
from string import Template
from typing import Any, Mapping, Union

import toml

import Yorjik
from Yorjik.exceptions import (ConfigDecodeError, ConfigEncodeError,
                               ConfigReadError, ConfigWriteError)
from Yorjik.util import map_reduce

_configvars = {
    'botversion': Yorjik.__version__
}


def _substitute(value: Any, template_vars: Mapping) -> Any:
    if isinstance(value, str):
        return Template(value).safe_substitute(template_vars)
    if isinstance(value, list):
        return [_substitute(elem, template_vars) for elem in value]
    return value


class ConfigDict(UserDict):  # pylint: disable=too-many-ancestors
    """Wrapper around a `dict` useful for deserialized config files.

    Do not use this class directly, use `Config` instead.
    """

    def __getitem__(self, key):
        if '.' in key:
            value = map_reduce(key, self.data)
        else:
            value = super().__getitem__(key)
        return _substitute(value, _configvars)

    def __setitem__(self, key, value):
        tail, *subkeys = key.rsplit('.', 1)[::-1]
        if subkeys:
            target = map_reduce(subkeys[0], self.data)
        else:
            target = self.data
        if isinstance(value, dict) and not isinstance(value, ConfigDict):
            value = ConfigDict(value)
        target[tail] = value

    def __contains__(self, key):
        try:
            map_reduce(key, self.data)
        except (KeyError, TypeError):
            return False
        return True

    def __repr__(self):
        return f'<{self.__class__.__name__} {super().__repr__()}>'

    # pylint: disable=arguments-differ
    def get(self, key: str, default: Any = None, *,
            template_vars: Mapping = None) -> Any:
        """Extends `dict.get` with substitution and dotted-subkey access.

        The retrieved value can undergo template substitution, i.e.
        (`string.Template`) if `template_vars` is given. Note that substitution
        will *not* be done for the `default` fallback. See `Config` for details
        on dotted-subkey access.

        Parameters
        ----------
        key : str
            They key to look up; may be a dotted-subkey.
        default : Any, optional
            Value to return if `key` was not found. Will *not* undergo
            substitution.
        template_vars : Mapping
            A `dict`-like mapping of template identifiers and values as used
            with `string.Template.substitute`.

        Notes
        -----
        Internally, `string.Template.safe_substitute` is used to avoid
        exceptions and allow further substitution by other sources.
        """
        try:
            value = self[key]
        except (KeyError, TypeError):
            return default
        if template_vars:
            value = _substitute(value, template_vars)
        return value


# pylint: disable=too-many-ancestors
class Config(ConfigDict):
    """A wrapper around a parsed TOML configuration file.

    Provides typical `dict`-like access with default values. Since these
    config files very often contain nested sections, methods that take
    a dictionary key as an argument have been expanded to allow dot-delimited
    keys that specify sequential access into nested sections. Such keys are of
    the form ``'foo.bar.baz'`` and would be equivalent to performing
    successive lookups of each key on a starting dictionary. For example::

        self.get('Markov.MinCorpusSize')
        # Is the same as:
        self.get('Markov').get('MinCorpusSize')

        my_config['Markov.MinCorpusSize']
        # Is the same as:
        my_config['Markov']['MinCorpusSize']

    In addition, string values are automatically subject to template
    expansion for some global variables, such as ``$botversion``.

    Parameters
    ----------
    path : str or Path object
        Path to a TOML configuration file.
    *args, **kwargs
        Any extra arguments are passed to the `ConfigDict` constructor.

    Attributes
    ----------
    path : Path
        The file associated with this config, i.e. where it will be loaded from
        and saved to.
    """

    def __init__(self, path: Union[str, Path], *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.path = Path(path)
        self._last_state = None

    def reset(self, key: str = None):
        """Reset this config or a single key to its last loaded/saved state.

        Parameters
        ----------
        key : str, optional
            If specified, resets a single key instead of the whole config. The
            key may be a dotted-subkey.
        """
        if self._last_state is None:
            return
        if key is not None:
            self[key] = deepcopy(map_reduce(key, self._last_state.data))
        else:
            self.data = deepcopy(self._last_state.data)

    def load(self):
        """Load (or reload) the associated TOML config file.

        Reloading will update any existing keys and add any keys that were
        not present originally.

        Raises
        ------
        FileNotFoundError
            If the given config file path does not exist.
        ConfigDecodeError
            If there were any errors while parsing the config file.
        ConfigReadError
            If the file exists but could not be read.
        """
        try:
            self.update(toml.load(self.path))
        except toml.TomlDecodeError as ex:
            raise ConfigDecodeError(
                f"Failed to parse config file at '{self.path}'",
                config_name=self.path.stem) from ex
        except FileNotFoundError:
            raise
        except OSError as ex:
            raise ConfigReadError(
                f"Could not read config file at '{self.path}'",
                config_name=self.path.stem) from ex
        self._last_state = ConfigDict(deepcopy(self.data))

    def save(self, new_path: Union[str, Path] = None):
        """Write the current config to disk.

        Parameters
        ----------
        new_path : str or Path object, optional
            Where the new config file should be written. If omitted, will
            overwrite where it was originally loaded from, i.e. `self.path`.
        """
        path = new_path or self.path
        try:
            with open(path, 'w') as file:
                toml.dump(self.as_dict(self.data), file)
        except (TypeError, ValueError) as ex:
            cls_name = self.__class__.__name__
            raise ConfigEncodeError(
                f'Failed to encode {cls_name} object {self}',
                config_name=self.path.stem) from ex
        except OSError as ex:
            raise ConfigWriteError(
                f"Could not write config file to '{path}'",
                config_name=self.path.stem) from ex
        self._last_state = ConfigDict(deepcopy(self.data))

    @classmethod
    def as_dict(cls, value: Any) -> Any:
        """Recursively convert `ConfigDict` values into plain `dict` objects."""
        if isinstance(value, UserDict):
            value = value.data
        if isinstance(value, dict):
            return {k: cls.as_dict(v) for k, v in value.items()}
        return value
