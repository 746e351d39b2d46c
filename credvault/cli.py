import typer, json, pathlib, sys
from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional

from .accounts import AccountStore, Account
from .doctor import VaultDoctor, format_result, has_errors
from .errors import (
    AccountExistsError,
    CredVaultError,
    DecryptionError,
    IncorrectPasswordError,
    NotFoundError,
)
from .generator import generate_password, password_strength
from .logging import configure, get_logger
from .models import ItemDraft, ItemPatch, Settings
from .storage import FileBlobStore, write_secure_file
from .transfer import ImportMode, export_vault, import_document
from .vault import VaultStore
from . import totp

app = typer.Typer(no_args_is_help=True)
LOG = get_logger("cli")


class _Ctx:
    def __init__(self, settings: Settings, email: Optional[str]):
        self.settings = settings
        self.email = email
        self._blobs = None
        self._accounts = None

    @property
    def blobs(self) -> FileBlobStore:
        if self._blobs is None:
            self._blobs = FileBlobStore(self.settings.home)
        return self._blobs

    @property
    def accounts(self) -> AccountStore:
        if self._accounts is None:
            self._accounts = AccountStore(self.blobs)
        return self._accounts


def _log_error(event: str, message: str, **details):
    LOG.error(event, message=message, **details)


def _fail(event: str, message: str, **details):
    _log_error(event, message=message, **details)
    typer.echo(f"✖ {message}")
    raise typer.Exit(1)


def ask_pw(prompt="Master password") -> str:
    """Prompt for a password without echo."""
    return typer.prompt(prompt, hide_input=True)


def ask_new_password(prompt="New master password") -> str:
    """Prompt twice for a new password and ensure the entries match."""
    first = ask_pw(prompt)
    second = ask_pw("Confirm " + prompt[0].lower() + prompt[1:])
    if first != second:
        typer.echo("✖ Passwords did not match. Aborting.")
        raise typer.Exit(1)
    return first


def _format_timestamp(ms: int) -> str:
    """Display unix-ms timestamps in HH:MM:SS DD.MM.YYYY format."""
    return datetime.fromtimestamp(ms / 1000).strftime("%H:%M:%S %d.%m.%Y")


def _require_email(c: _Ctx) -> str:
    if not c.email:
        typer.echo("✖ --email (or CREDVAULT_EMAIL) is required")
        raise typer.Exit(2)
    return c.email


def _login_or_exit(c: _Ctx, password: str) -> Account:
    """Authenticate with the master password and, when enabled, a TOTP code."""
    email = _require_email(c)
    result = c.accounts.login(email, password)
    if result.requires_2fa:
        code = typer.prompt("Authenticator code").strip()
        result = c.accounts.login(email, password, totp_code=code)
    if not result.success:
        _fail("auth_failed", "Invalid email, password or authenticator code.", email=email)
    return result.account


@contextmanager
def _unlocked(c: _Ctx):
    """Log in, unlock the account's vault, and always lock it again afterwards."""
    pw = ask_pw()
    account = _login_or_exit(c, pw)
    store = VaultStore(c.blobs, account.id, workers=c.settings.workers)
    try:
        store.unlock(pw)
    except IncorrectPasswordError:
        _fail("unlock_failed", "Incorrect master password.", account=account.id)
    except CredVaultError as exc:
        _fail("unlock_failed", f"Vault could not be opened: {exc}", account=account.id)
    try:
        with store:
            yield store
    except NotFoundError as exc:
        _fail("item_not_found", str(exc), account=account.id)
    except CredVaultError as exc:
        _fail("operation_failed", str(exc), account=account.id)
    except ValueError as exc:
        _fail("invalid_input", f"Invalid input: {exc}", account=account.id)
    except OSError as exc:
        _fail("storage_failed", f"Vault storage error: {exc}", account=account.id)


def _print_item(item, reveal: bool = False):
    typer.echo(f"id:       {item.id}")
    typer.echo(f"title:    {item.title}")
    typer.echo(f"username: {item.username}")
    typer.echo(f"password: {item.password if reveal else '********'}")
    typer.echo(f"url:      {item.url}")
    typer.echo(f"notes:    {item.notes}")
    typer.echo(f"tags:     {', '.join(item.tags)}")
    typer.echo(f"created:  {_format_timestamp(item.created_at)}")
    typer.echo(f"updated:  {_format_timestamp(item.updated_at)}")


def _print_rows(items):
    for it in items:
        tags = f"\t[{', '.join(it.tags)}]" if it.tags else ""
        typer.echo(f"{it.id}\t{it.title}\t{it.username}\tupdated={_format_timestamp(it.updated_at)}{tags}")


@app.callback()
def main(
    ctx: typer.Context,
    home: Optional[str] = typer.Option(None, "--home", help="Vault directory (default: $CREDVAULT_HOME)"),
    email: Optional[str] = typer.Option(None, "--email", envvar="CREDVAULT_EMAIL", help="Account email"),
    debug: bool = typer.Option(False, "--debug", help="Log to stderr, including details"),
):
    """Encrypted credential vault with TOTP second factor."""
    settings = Settings.from_env(home=home)
    configure(debug=debug, log_path=settings.log_path)
    ctx.obj = _Ctx(settings, email)


@app.command()
def signup(ctx: typer.Context):
    """Create an account for --email."""
    c: _Ctx = ctx.obj
    email = _require_email(c)
    pw = ask_new_password("Set master password")
    try:
        c.accounts.signup(email, pw)
    except AccountExistsError:
        _fail("signup_exists", f"An account for {email} already exists.", email=email)
    typer.echo("✔ Account created. Your master password cannot be recovered; keep it safe.")


@app.command()
def add(
    ctx: typer.Context,
    title: str = typer.Argument(..., help="Item title"),
    username: str = typer.Option("", "--username", "-u"),
    url: str = typer.Option("", "--url"),
    notes: str = typer.Option("", "--notes"),
    tags: Optional[List[str]] = typer.Option(None, "--tag", "-t", help="Tag (repeatable)"),
    generate: bool = typer.Option(False, "--generate", help="Generate a random password instead of prompting"),
    length: int = typer.Option(20, "--length", help="Generated password length"),
):
    """Store a new credential."""
    c: _Ctx = ctx.obj
    with _unlocked(c) as store:
        secret = generate_password(length) if generate else ask_pw("Item password")
        item = store.add(ItemDraft(title=title, password=secret, username=username, url=url, notes=notes, tags=tags or []))
        typer.echo(f"✔ Added {item.title} ({item.id})")


@app.command("ls")
def ls_cmd(ctx: typer.Context):
    """List vault items."""
    with _unlocked(ctx.obj) as store:
        _print_rows(store.items)
        typer.echo(f"{len(store)} item(s)")


@app.command()
def search(ctx: typer.Context, query: str):
    """Case-insensitive search over title, username, url, notes and tags."""
    with _unlocked(ctx.obj) as store:
        matches = store.search(query)
        _print_rows(matches)
        typer.echo(f"{len(matches)} match(es)")


@app.command()
def show(ctx: typer.Context, item_id: str, reveal: bool = typer.Option(False, "--reveal", help="Print the password")):
    """Show one item."""
    with _unlocked(ctx.obj) as store:
        _print_item(store.get(item_id), reveal=reveal)


@app.command()
def edit(
    ctx: typer.Context,
    item_id: str,
    title: Optional[str] = typer.Option(None, "--title"),
    username: Optional[str] = typer.Option(None, "--username", "-u"),
    url: Optional[str] = typer.Option(None, "--url"),
    notes: Optional[str] = typer.Option(None, "--notes"),
    tags: Optional[List[str]] = typer.Option(None, "--tag", "-t", help="Replace tags (repeatable)"),
    new_password: bool = typer.Option(False, "--password", help="Prompt for a new item password"),
):
    """Update fields of an existing item."""
    with _unlocked(ctx.obj) as store:
        fields = dict(title=title, username=username, url=url, notes=notes, tags=tags or None)
        fields = {k: v for k, v in fields.items() if v is not None}
        if new_password:
            fields["password"] = ask_pw("New item password")
        if not fields:
            typer.echo("Nothing to change.")
            return
        item = store.update(item_id, ItemPatch(**fields))
        typer.echo(f"✔ Updated {item.title}")


@app.command()
def rm(ctx: typer.Context, item_ids: List[str] = typer.Argument(..., metavar="ID")):
    """Delete one or more items. Unknown ids are ignored."""
    with _unlocked(ctx.obj) as store:
        for item_id in item_ids:
            if store.remove(item_id):
                typer.echo(f"✔ Removed {item_id}")
            else:
                typer.echo(f"↷ No item {item_id}")


@app.command()
def export(ctx: typer.Context, out: str = typer.Option("-", "--out", help="Destination file, '-' for stdout")):
    """Write an encrypted export document (encrypted under the master password)."""
    with _unlocked(ctx.obj) as store:
        doc = export_vault(store)
        if out == "-":
            sys.stdout.write(doc + "\n")
        else:
            write_secure_file(pathlib.Path(out), doc.encode("utf-8"))
            typer.echo(f"✔ Exported {len(store)} item(s) -> {out}")


@app.command("import")
def import_cmd(
    ctx: typer.Context,
    src: pathlib.Path = typer.Argument(..., exists=True, dir_okay=False, readable=True),
    merge: bool = typer.Option(False, "--merge", help="Keep existing items; add only new ids"),
):
    """Import an export document, replacing the vault unless --merge is given."""
    with _unlocked(ctx.obj) as store:
        export_pw = typer.prompt("Export password (blank = master password)", default="", hide_input=True, show_default=False)
        mode = ImportMode.MERGE if merge else ImportMode.REPLACE
        try:
            result = import_document(store, src.read_text(encoding="utf-8"), export_pw or store.session_password(), mode)
        except DecryptionError:
            _fail("import_decrypt_failed", "Import failed - invalid password or corrupted file.", file=str(src))
        typer.echo(f"✔ Imported ({mode.value}); vault now holds {len(result)} item(s)")


@app.command()
def passwd(ctx: typer.Context):
    """Change the master password and re-encrypt the vault.

    The vault is re-encrypted first. If the login hash cannot be updated
    afterwards, the vault is re-encrypted back under the old password.
    """
    c: _Ctx = ctx.obj
    with _unlocked(c) as store:
        new_pw = ask_new_password()
        account = _account_for(c)
        old_pw = store.session_password()
        store.change_password(new_pw)
        try:
            c.accounts.change_password(account, new_pw)
        except (OSError, CredVaultError) as exc:
            store.change_password(old_pw)
            _fail("passwd_failed", f"Master password not changed: {exc}", account=account.id)
        typer.echo("✔ Master password changed.")


def _account_for(c: _Ctx) -> Account:
    rec = c.accounts.get(_require_email(c))
    return Account(id=rec.id, email=rec.email, totp_enabled=rec.totp_enabled)


@app.command("totp-enable")
def totp_enable(ctx: typer.Context):
    """Enrol an authenticator app as second factor."""
    c: _Ctx = ctx.obj
    account = _login_or_exit(c, ask_pw())
    enrollment = c.accounts.begin_enrollment(account, issuer=c.settings.issuer)
    typer.echo(f"Secret: {enrollment.secret}")
    typer.echo(f"URI:    {enrollment.uri}")
    code = typer.prompt("Code from your authenticator").strip()
    if c.accounts.enable_2fa(account, enrollment.secret, code) is None:
        _fail("totp_enable_failed", "Code did not verify; two-factor authentication not enabled.", account=account.id)
    typer.echo("✔ Two-factor authentication enabled.")


@app.command("totp-disable")
def totp_disable(ctx: typer.Context):
    """Turn off the second factor (requires a current code)."""
    c: _Ctx = ctx.obj
    pw = ask_pw()
    result = c.accounts.login(_require_email(c), pw)
    if not result.requires_2fa:
        if result.success:
            typer.echo("Two-factor authentication is not enabled.")
            return
        _fail("auth_failed", "Invalid email, password or authenticator code.", email=c.email)
    code = typer.prompt("Authenticator code").strip()
    result = c.accounts.login(c.email, pw, totp_code=code)
    if not result.success or c.accounts.disable_2fa(result.account, code) is None:
        _fail("totp_disable_failed", "Code did not verify; two-factor authentication still enabled.", email=c.email)
    typer.echo("✔ Two-factor authentication disabled.")


@app.command()
def generate(
    length: int = typer.Option(20, "--length", "-l"),
    no_upper: bool = typer.Option(False, "--no-upper"),
    no_lower: bool = typer.Option(False, "--no-lower"),
    no_digits: bool = typer.Option(False, "--no-digits"),
    no_symbols: bool = typer.Option(False, "--no-symbols"),
    exclude_lookalikes: bool = typer.Option(False, "--exclude-lookalikes"),
):
    """Print a random password and its strength."""
    try:
        pw = generate_password(length, not no_upper, not no_lower, not no_digits, not no_symbols, exclude_lookalikes)
    except ValueError as exc:
        typer.echo(f"✖ {exc}")
        raise typer.Exit(1)
    strength = password_strength(pw)
    typer.echo(pw)
    typer.echo(f"strength: {strength.label} ({strength.score}/7)", err=True)


@app.command("check")
def check(
    ctx: typer.Context,
    decrypt: bool = typer.Option(False, "--decrypt", help="Also verify every item decrypts (asks for the master password)"),
    as_json: bool = typer.Option(False, "--json", help="Output results as JSON"),
):
    """Audit vault permissions, envelope integrity and nonce uniqueness."""
    c: _Ctx = ctx.obj
    email = _require_email(c)
    password = None
    if decrypt:
        password = ask_pw()
        account = _login_or_exit(c, password)
    else:
        try:
            account = _account_for(c)
        except NotFoundError:
            _fail("check_no_account", f"No account for {email}.", email=email)
    results = VaultDoctor(c.blobs, account.id, password=password).run()
    if as_json:
        typer.echo(json.dumps([r.to_dict() for r in results], indent=2))
    else:
        for r in results:
            typer.echo(format_result(r))
    if has_errors(results):
        raise typer.Exit(1)


@app.command("uri")
def uri(ctx: typer.Context):
    """Print the otpauth:// provisioning URI for an enabled second factor."""
    c: _Ctx = ctx.obj
    account = _login_or_exit(c, ask_pw())
    secret = c.accounts.get_2fa_secret(account)
    if secret is None:
        _fail("totp_not_enabled", "Two-factor authentication is not enabled.", account=account.id)
    typer.echo(totp.provisioning_uri(secret, account.email, c.settings.issuer))
