"""Command-line client for Lark, with a local IMAP envelope cache."""

from .config import MailCredentials, load_credentials, save_credentials
from .errors import MailError

__all__ = [
    "MailCredentials",
    "MailError",
    "load_credentials",
    "save_credentials",
]
