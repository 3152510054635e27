"""Exception types raised by the mail sync and cache engine.

Every error the engine raises derives from `MailError`, so the CLI layer can
catch one type and report it verbatim.
"""


class MailError(Exception):
    """Base class for mail engine failures."""


class ConfigError(MailError):
    """Mail credentials are missing or unreadable."""


class MailConnectionError(MailError):
    """Transport failure: connect, TLS, timeout or dropped session."""


class AuthError(MailError):
    """Server rejected the username/password."""


class MailboxNotFound(MailError):
    """The server has no mailbox with the requested name."""

    def __init__(self, name: str, detail: str | None = None):
        self.name = name
        msg = f"mailbox not found: {name}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class MessageNotFound(MailError):
    """No message with the requested UID exists in the selected mailbox."""

    def __init__(self, uid: int):
        self.uid = uid
        super().__init__(f"message not found: UID {uid}")


class MailProtocolError(MailError):
    """Server answered a command with NO/BAD."""


class CacheError(MailError):
    """Local cache database could not be read or written."""


class SyncInProgressError(MailError):
    """Another process holds the sync lock for this mailbox."""

    def __init__(self, mailbox: str, holder: int | None = None):
        self.mailbox = mailbox
        self.holder = holder
        msg = f"another sync of {mailbox} is already running"
        if holder:
            msg += f" [PID {holder}]"
        super().__init__(msg)
