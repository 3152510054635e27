"""CLI package for lark.

- mail.py: IMAP setup, sync, offline search, show/fetch
- utils.py: Shared utilities and helpers
"""

import logging

import click
from click import option
from dotenv import load_dotenv

from .utils import AliasGroup

from .mail import mail as mail_group


@click.group(cls=AliasGroup, aliases={
    'm': 'mail',
})
@option('-v', '--verbose', count=True, help="Log progress to stderr (-vv for debug)")
def main(verbose: int):
    """Lark command-line client."""
    load_dotenv()
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG if verbose > 1 else logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


main.add_command(mail_group)


__all__ = [
    'main',
    'mail',
]
