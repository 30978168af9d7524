#!/usr/bin/env python3

"""A Discord bot that learns how a channel talks and talks back."""

from __future__ import annotations

import argparse
import sys

import Yorjik
from Yorjik import Core


def parse_args(argv: list[str] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='yorjik', description=__doc__)
    parser.add_argument(
        '--config-dir', metavar='DIR',
        help="Directory holding yorjik.toml. Defaults to the user's config "
             'directory.')
    parser.add_argument(
        '--data-dir', metavar='DIR',
        help="Directory holding the message database. Defaults to the user's "
             'data directory.')
    parser.add_argument(
        '--version', action='version', version=f'%(prog)s {Yorjik.__version__}')
    return parser.parse_args(argv)


def main(argv: list[str] = None) -> int:
    args = parse_args(argv)
    bot = Core(config_dir=args.config_dir, data_dir=args.data_dir)
    return bot.run()


if __name__ == '__main__':
    sys.exit(main())
