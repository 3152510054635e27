"""Mail commands: setup, status, list, sync, search, show, fetch."""

import sys
from datetime import datetime, timezone
from pathlib import Path

import click
import humanize
from click import echo, option, style
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from ..config import (
    DEFAULT_IMAP_HOST,
    DEFAULT_IMAP_PORT,
    MailCredentials,
    get_batch_size,
    get_cache_path,
    get_credentials_path,
    get_lock_dir,
    get_lock_timeout,
    get_timeout,
    has_credentials,
    load_credentials,
    save_credentials,
)
from ..errors import MailError
from ..mail.cache import MailCache, format_freshness
from ..mail.imap import Envelope, check_connection
from ..mail.parsing import extract_body_text, message_filename
from ..mail.search import DEFAULT_SEARCH_LIMIT, parse_search_options, search_cache
from ..mail.sync import MailSync

from .utils import (
    AliasGroup,
    echo_json,
    err,
    get_password,
    handle_errors,
    json_option,
    mailbox_option,
    make_client,
)


def format_date(ts: int) -> str:
    if not ts:
        return "?"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def envelope_to_dict(env: Envelope) -> dict:
    return {
        "uid": env.uid,
        "message_id": env.message_id,
        "date": datetime.fromtimestamp(env.date, tz=timezone.utc).isoformat() if env.date else None,
        "from": {"email": env.from_addr, "name": env.from_name},
        "subject": env.subject,
    }


def format_sender(name: str, addr: str) -> str:
    if name and addr:
        return f"{name} <{addr}>"
    return name or addr


@click.group(cls=AliasGroup, aliases={
    'f': 'fetch',
    'l': 'list',
    'ls': 'list',
    's': 'search',
    'st': 'status',
    'y': 'sync',
})
def mail():
    """Lark Mail over IMAP, with a local envelope cache."""
    pass


# =============================================================================
# setup / status / list
# =============================================================================


@mail.command()
@option('-H', '--host', help=f"IMAP host [{DEFAULT_IMAP_HOST}]")
@option('-P', '--port', type=int, help=f"IMAP port [{DEFAULT_IMAP_PORT}]")
@option('--ssl/--no-ssl', 'use_ssl', default=None, help="Use SSL/TLS [yes]")
@option('-u', '--username', help="Username (email address)")
@option('-p', '--password', 'password_opt', help="App-specific password (prompts if not provided)")
@option('-S', '--skip-test', is_flag=True, help="Save without testing the connection")
@json_option
@handle_errors
def setup(
    host: str | None,
    port: int | None,
    use_ssl: bool | None,
    username: str | None,
    password_opt: str | None,
    skip_test: bool,
    output_json: bool,
):
    """Configure IMAP credentials.

    \b
    To get IMAP credentials in Lark:
      1. Open Lark on desktop or web
      2. Go to Mail > Settings > Mail settings
      3. Select "Third-party email client"
      4. Enable IMAP and generate a dedicated password

    \b
    Examples:
      lark mail setup
      lark mail setup -u me@example.com
      echo "$PASS" | lark mail setup -u me@example.com -H imap.larksuite.com
    """
    interactive = sys.stdin.isatty()
    if host is None:
        host = click.prompt("IMAP host", default=DEFAULT_IMAP_HOST) if interactive else DEFAULT_IMAP_HOST
    if port is None:
        port = click.prompt("IMAP port", default=DEFAULT_IMAP_PORT, type=int) if interactive else DEFAULT_IMAP_PORT
    if use_ssl is None:
        use_ssl = click.confirm("Use SSL?", default=True) if interactive else True
    if not username:
        username = click.prompt("Username (email address)") if interactive else ""
    if not username:
        err("Error: username is required")
        sys.exit(1)

    password = get_password(password_opt)
    if not password:
        err("Error: password is required")
        sys.exit(1)

    creds = MailCredentials(host=host, port=port, username=username, password=password, use_ssl=use_ssl)

    mailboxes = None
    if not skip_test:
        if not output_json:
            err("Testing connection... ", end="")
        try:
            mailboxes = check_connection(creds, timeout=get_timeout())
        except MailError as e:
            if not output_json:
                err("FAILED")
            err(f"Error: {e}")
            sys.exit(1)
        if not output_json:
            err("OK")

    path = save_credentials(creds)

    if output_json:
        echo_json({
            "success": True,
            "path": str(path),
            "host": host,
            "port": port,
            "username": username,
            "use_ssl": use_ssl,
            "mailboxes": len(mailboxes) if mailboxes is not None else None,
        })
        return

    echo(style(f"✓ Credentials saved to {path}", fg="green"))
    echo("Run 'lark mail sync' to fetch your emails.")


@mail.command()
@option('-t', '--test', 'test_conn', is_flag=True, help="Test the IMAP connection")
@json_option
@handle_errors
def status(test_conn: bool, output_json: bool):
    """Show mail configuration and cache status."""
    result: dict = {"configured": has_credentials()}

    if result["configured"]:
        try:
            creds = load_credentials()
        except MailError as e:
            result["error"] = str(e)
            creds = None
        if creds:
            result.update({
                "host": creds.host,
                "port": creds.port,
                "username": creds.username,
                "use_ssl": creds.use_ssl,
            })
            if test_conn:
                try:
                    check_connection(creds, timeout=get_timeout())
                    result["connection"] = "ok"
                except MailError as e:
                    result["connection"] = "failed"
                    result["connection_error"] = str(e)

    cache_path = get_cache_path()
    cache_info: dict = {"path": str(cache_path), "exists": cache_path.exists(), "mailboxes": []}
    if cache_path.exists():
        cache_info["size"] = cache_path.stat().st_size
        with MailCache(cache_path) as cache:
            for state in cache.list_mailbox_states():
                cache_info["mailboxes"].append({
                    "name": state.name,
                    "last_sync": state.last_sync.isoformat() if state.last_sync else None,
                    "freshness": format_freshness(state.last_sync),
                    "uidvalidity": state.uid_validity,
                    "last_uid": state.last_uid,
                    "cached": cache.count(state.name),
                })
    result["cache"] = cache_info

    if output_json:
        echo_json(result)
        return

    if result["configured"]:
        if "error" in result:
            echo(style(f"Config: {result['error']}", fg="red"))
        else:
            ssl = "SSL" if result["use_ssl"] else "plain"
            echo(f"Account: {result['username']} @ {result['host']}:{result['port']} ({ssl})")
        if "connection" in result:
            if result["connection"] == "ok":
                echo(style("✓ Connection OK", fg="green"))
            else:
                echo(style(f"✗ Connection failed: {result['connection_error']}", fg="red"))
    else:
        echo(f"Not configured. Run 'lark mail setup' (looked in {get_credentials_path()}).")

    if not cache_info["exists"]:
        echo("Cache: none yet")
        return

    echo(f"Cache: {cache_path} ({humanize.naturalsize(cache_info['size'])})")
    if not cache_info["mailboxes"]:
        echo("  No mailboxes synced yet")
        return

    table = Table()
    table.add_column("Mailbox")
    table.add_column("Last sync")
    table.add_column("Cached", justify="right")
    table.add_column("Last UID", justify="right")
    table.add_column("UIDVALIDITY", justify="right")
    for mb in cache_info["mailboxes"]:
        table.add_row(
            mb["name"],
            mb["freshness"],
            f"{mb['cached']:,}",
            str(mb["last_uid"]),
            str(mb["uidvalidity"]),
        )
    Console().print(table)


@mail.command("list")
@json_option
@handle_errors
def list_mailboxes(output_json: bool):
    """List mailboxes on the server."""
    with make_client() as client:
        names = client.list_mailboxes()

    if output_json:
        echo_json({"mailboxes": names, "count": len(names)})
        return

    for name in names:
        echo(name)


# =============================================================================
# sync / search
# =============================================================================


@mail.command()
@mailbox_option
@json_option
@handle_errors
def sync(mailbox: str, output_json: bool):
    """Sync envelopes for a mailbox into the local cache.

    The first run fetches every message; later runs fetch only messages
    newer than the last one cached. If the server reset its UIDs
    (UIDVALIDITY changed), the cached mailbox is discarded and rebuilt.

    \b
    Examples:
      lark mail sync
      lark mail sync -m Archive
    """
    console = Console(stderr=True)
    with Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]Syncing"),
        BarColumn(),
        TaskProgressColumn(),
        TextColumn("{task.completed}/{task.total}"),
        TimeElapsedColumn(),
        console=console,
        disable=output_json or not console.is_terminal,
    ) as progress:
        task = None

        def on_progress(done: int, total: int):
            nonlocal task
            if task is None:
                task = progress.add_task("sync", total=total)
            progress.update(task, completed=done)

        with MailCache(get_cache_path()) as cache:
            engine = MailSync(
                cache,
                make_client,
                lock_dir=get_lock_dir(),
                batch_size=get_batch_size(),
                lock_timeout=get_lock_timeout(),
                progress=on_progress,
            )
            result = engine.sync(mailbox)

    if output_json:
        echo_json(result.to_dict())
        return

    if result.invalidated:
        echo(style("UIDVALIDITY changed; cached mailbox was rebuilt", fg="yellow"))
    echo(f"{mailbox}: {result.message} ({result.total_cached:,} cached)")


@mail.command()
@mailbox_option
@option('-f', '--from', 'from_addr', help="Sender address contains")
@option('-s', '--subject', help="Subject contains")
@option('--since', help="Messages on or after date (YYYY-MM-DD)")
@option('--before', help="Messages before date (YYYY-MM-DD)")
@option('-n', '--limit', type=int, default=DEFAULT_SEARCH_LIMIT, show_default=True, help="Maximum results")
@json_option
@handle_errors
def search(
    mailbox: str,
    from_addr: str | None,
    subject: str | None,
    since: str | None,
    before: str | None,
    limit: int,
    output_json: bool,
):
    """Search cached envelopes (offline; run 'lark mail sync' first).

    \b
    Examples:
      lark mail search --from alice
      lark mail search -s invoice --since 2024-01-01 -n 10
    """
    try:
        options = parse_search_options(from_addr, subject, since, before, limit)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e

    result = search_cache(get_cache_path(), mailbox, options)

    if output_json:
        echo_json(result.to_dict())
        return

    if result.last_sync is None:
        err(f"{mailbox} has never been synced. Run 'lark mail sync -m {mailbox}'.")
        return

    echo(f"{result.count} of {result.total_cached:,} cached in {mailbox} (synced {result.freshness})")
    if not result.results:
        return

    table = Table()
    table.add_column("UID", justify="right")
    table.add_column("Date")
    table.add_column("From")
    table.add_column("Subject")
    for env in result.results:
        table.add_row(
            str(env.uid),
            format_date(env.timestamp),
            format_sender(env.from_name, env.from_addr),
            env.subject,
        )
    Console().print(table)


# =============================================================================
# show / fetch
# =============================================================================


@mail.command()
@mailbox_option
@option('-u', '--uid', type=int, required=True, help="Message UID")
@json_option
@handle_errors
def show(mailbox: str, uid: int, output_json: bool):
    """Fetch and print one message."""
    with make_client() as client:
        client.select_mailbox(mailbox)
        raw, envelope = client.fetch_message(uid)
    body = extract_body_text(raw)

    if output_json:
        echo_json({**envelope_to_dict(envelope), "body": body})
        return

    echo(f"From:       {format_sender(envelope.from_name, envelope.from_addr)}")
    echo(f"Date:       {format_date(envelope.date)}")
    echo(f"Subject:    {envelope.subject}")
    if envelope.message_id:
        echo(f"Message-ID: <{envelope.message_id}>")
    echo()
    echo(body)


@mail.command()
@mailbox_option
@option('-u', '--uid', type=int, required=True, help="Message UID")
@option('-o', '--output', 'output_dir', type=click.Path(file_okay=False, path_type=Path), default=Path("."), show_default=True, help="Output directory")
@json_option
@handle_errors
def fetch(mailbox: str, uid: int, output_dir: Path, output_json: bool):
    """Download one message as a .eml file."""
    with make_client() as client:
        client.select_mailbox(mailbox)
        raw, envelope = client.fetch_message(uid)

    filename = message_filename(envelope.date, envelope.subject)
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / filename
    path.write_bytes(raw)

    if output_json:
        echo_json({
            "success": True,
            "uid": uid,
            "filename": filename,
            "path": str(path),
            "size": len(raw),
        })
        return

    echo(f"Saved {path} ({humanize.naturalsize(len(raw))})")
