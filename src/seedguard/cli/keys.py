"""Key and account commands: keys list/import/export, accounts add."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import click
from rich.table import Table

from ..models import Account
from ._common import console, home_option, load_home, open_session, password_option, run


def register_keys_commands(main: click.Group) -> None:
    """Register the keys and accounts command groups."""

    @main.group()
    def keys():
        """Your PGP keys. Special-purpose keys stay hidden."""

    @keys.command("list")
    @home_option
    @password_option
    def keys_list(home: str, password: str):
        """List user-facing public keys."""
        home_path, config = load_home(home)

        async def _list():
            manager = await open_session(home_path, config, password)
            return manager.list_user_public_keys()

        infos = run(_list())
        if not infos:
            console.print("[dim]No keys yet. Add an account first.[/]")
            return

        table = Table(title="PGP keys")
        table.add_column("Identity", style="cyan")
        table.add_column("Key ID")
        table.add_column("Secret")
        for info in infos:
            table.add_row(info.user_identity, info.key_id, "yes" if info.has_secret else "-")
        console.print(table)

    @keys.command("import")
    @click.argument("keyfile", type=click.Path(exists=True, dir_okay=False))
    @home_option
    @password_option
    def keys_import(keyfile: str, home: str, password: str):
        """Import an armored public or private key block."""
        home_path, config = load_home(home)
        data = Path(keyfile).read_bytes()

        async def _import():
            manager = await open_session(home_path, config, password)
            return manager.import_key_bundle(data)

        fingerprints = run(_import())
        for fp in fingerprints:
            console.print(f"[green]Imported[/] {fp}")

    @keys.command("export")
    @click.argument("key_id")
    @home_option
    @password_option
    @click.option("--output", "-o", default=None, type=click.Path(), help="Write to file.")
    def keys_export(key_id: str, home: str, password: str, output: Optional[str]):
        """Export a public key by key id or fingerprint."""
        home_path, config = load_home(home)

        async def _export():
            manager = await open_session(home_path, config, password)
            return manager.export_public_key_ring(key_id)

        armored = run(_export())
        if output:
            Path(output).expanduser().write_bytes(armored)
            console.print(f"[green]Written to[/] {output}")
        else:
            click.echo(armored.decode("utf-8"))

    @main.group()
    def accounts():
        """Mail accounts. Each gets its own seed-derived key."""

    @accounts.command("add")
    @click.argument("email")
    @click.option("--name", default="", help="Display name for the key's user ID.")
    @home_option
    @password_option
    def accounts_add(email: str, name: str, home: str, password: str):
        """Add a mail account and derive its key."""
        home_path, config = load_home(home)

        async def _add():
            manager = await open_session(home_path, config, password)
            return await manager.add_account(Account(email=email, name=name))

        derived = run(_add())
        if derived:
            console.print(f"[green]Key derived for[/] {email}")
        else:
            console.print(f"[dim]{email} already has a key.[/]")
