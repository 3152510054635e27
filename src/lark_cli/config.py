"""Configuration and credential management via YAML files."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

GLOBAL_CONFIG_DIR = Path.home() / ".config" / "lark"
CREDENTIALS_FILE = "mail.yaml"
CACHE_FILE = "mail_cache.db"
LOCKS_DIR = "locks"

DEFAULT_IMAP_HOST = "imap.larksuite.com"
DEFAULT_IMAP_PORT = 993
DEFAULT_MAILBOX = "INBOX"


@dataclass
class MailCredentials:
    """IMAP connection settings."""
    host: str
    username: str
    password: str
    port: int = DEFAULT_IMAP_PORT
    use_ssl: bool = True


def get_config_dir(create: bool = True) -> Path:
    """Get the config directory.

    Checks LARK_CONFIG_DIR, then the legacy LARK_CAL_CONFIG_DIR, then falls
    back to ~/.config/lark.
    """
    env_dir = os.environ.get("LARK_CONFIG_DIR") or os.environ.get("LARK_CAL_CONFIG_DIR")
    path = Path(env_dir).expanduser() if env_dir else GLOBAL_CONFIG_DIR
    if create:
        path.mkdir(mode=0o700, parents=True, exist_ok=True)
    return path


def get_credentials_path(config_dir: Path | None = None) -> Path:
    """Get path to mail.yaml."""
    return (config_dir or get_config_dir()) / CREDENTIALS_FILE


def get_cache_path(config_dir: Path | None = None) -> Path:
    """Get path to the mail cache database.

    Set LARK_MAIL_CACHE_PATH to override.
    """
    env_path = os.environ.get("LARK_MAIL_CACHE_PATH")
    if env_path:
        return Path(env_path).expanduser()
    return (config_dir or get_config_dir()) / CACHE_FILE


def get_lock_dir(config_dir: Path | None = None) -> Path:
    """Get directory holding per-mailbox sync lock files."""
    return (config_dir or get_config_dir()) / LOCKS_DIR


def _env_number(name: str, default: str, convert):
    value = os.environ.get(name, default)
    try:
        return convert(value)
    except ValueError as e:
        raise ConfigError(f"invalid {name}: {value!r}") from e


def get_batch_size() -> int:
    """Messages per FETCH round trip (LARK_MAIL_BATCH_SIZE, default 100)."""
    return max(1, _env_number("LARK_MAIL_BATCH_SIZE", "100", int))


def get_timeout() -> float:
    """Socket timeout in seconds for IMAP operations (LARK_MAIL_TIMEOUT, default 30)."""
    return _env_number("LARK_MAIL_TIMEOUT", "30", float)


def get_lock_timeout() -> float:
    """Seconds to wait for another sync of the same mailbox (LARK_MAIL_LOCK_TIMEOUT, default 60)."""
    return _env_number("LARK_MAIL_LOCK_TIMEOUT", "60", float)


# --- Credentials ---


def has_credentials(config_dir: Path | None = None) -> bool:
    """Check if credentials are configured."""
    return get_credentials_path(config_dir).exists()


def load_credentials(config_dir: Path | None = None) -> MailCredentials:
    """Load credentials from mail.yaml."""
    path = get_credentials_path(config_dir)
    if not path.exists():
        raise ConfigError("mail not configured; run 'lark mail setup' first")

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"failed to read mail credentials: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"failed to parse mail credentials: {path}")

    try:
        return MailCredentials(
            host=data.get("host", DEFAULT_IMAP_HOST),
            port=int(data.get("port", DEFAULT_IMAP_PORT)),
            username=data.get("username", ""),
            password=str(data.get("password", "")),
            use_ssl=bool(data.get("use_ssl", True)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"failed to parse mail credentials: {e}") from e


def save_credentials(creds: MailCredentials, config_dir: Path | None = None) -> Path:
    """Save credentials to mail.yaml, readable by the owner only."""
    data = {
        "host": creds.host,
        "port": creds.port,
        "username": creds.username,
        "password": creds.password,
        "use_ssl": creds.use_ssl,
    }
    try:
        path = get_credentials_path(config_dir)
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
        os.chmod(path, 0o600)
    except OSError as e:
        raise ConfigError(f"failed to save mail credentials: {e}") from e
    logger.debug("Saved mail credentials to %s", path)
    return path


def clear_credentials(config_dir: Path | None = None) -> bool:
    """Remove stored credentials. Returns True if they existed."""
    path = get_credentials_path(config_dir)
    if not path.exists():
        return False
    path.unlink()
    return True
