"""Shared CLI utilities and helpers."""

import json
import sys
from functools import wraps

import click
from click import prompt

from ..config import DEFAULT_MAILBOX, get_batch_size, get_timeout, load_credentials
from ..errors import MailError
from ..mail.imap import IMAPClient


def err(*args, **kwargs):
    """Print to stderr."""
    print(*args, file=sys.stderr, **kwargs)


def echo_json(data) -> None:
    """Print `data` as indented JSON."""
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def get_password(password_opt: str | None) -> str:
    """Get password from option, stdin (if piped), or prompt."""
    if password_opt:
        return password_opt
    elif not sys.stdin.isatty():
        return sys.stdin.readline().rstrip("\n")
    else:
        return prompt("Password", hide_input=True)


def make_client(timeout: float | None = None) -> IMAPClient:
    """Unconnected client for the configured account; connects on `with`."""
    return IMAPClient(
        load_credentials(),
        timeout=timeout if timeout is not None else get_timeout(),
        batch_size=get_batch_size(),
    )


# =============================================================================
# Decorators and Click helpers
# =============================================================================


def handle_errors(f):
    """Decorator reporting MailError on stderr with exit code 1."""
    @wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except MailError as e:
            err(f"Error: {e}")
            sys.exit(1)
    return wrapper


# Shared options
json_option = click.option('-j', '--json', 'output_json', is_flag=True, help="Output as JSON")
mailbox_option = click.option('-m', '--mailbox', default=DEFAULT_MAILBOX, show_default=True, help="Mailbox name")


class AliasGroup(click.Group):
    """Click Group that supports command aliases."""

    def __init__(self, *args, aliases: dict[str, str] | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.aliases = aliases or {}
        # Build reverse mapping: command -> list of aliases
        self._cmd_aliases: dict[str, list[str]] = {}
        for alias, cmd in self.aliases.items():
            self._cmd_aliases.setdefault(cmd, []).append(alias)

    def get_command(self, ctx, cmd_name):
        cmd_name = self.aliases.get(cmd_name, cmd_name)
        return super().get_command(ctx, cmd_name)

    def resolve_command(self, ctx, args):
        _, cmd_name, args = super().resolve_command(ctx, args)
        cmd_name = self.aliases.get(cmd_name, cmd_name)
        return _, cmd_name, args

    def format_commands(self, ctx, formatter):
        """Write all commands with their aliases to the formatter."""
        commands = []
        for subcommand in self.list_commands(ctx):
            cmd = self.get_command(ctx, subcommand)
            if cmd is None or cmd.hidden:
                continue
            aliases = self._cmd_aliases.get(subcommand, [])
            if aliases:
                name = f"{subcommand} ({', '.join(sorted(aliases))})"
            else:
                name = subcommand
            help_text = cmd.get_short_help_str(limit=formatter.width)
            commands.append((name, help_text))

        if commands:
            with formatter.section("Commands"):
                formatter.write_dl(commands)
