"""Backup commands: create, authorize, accept, cid."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import click
from rich.panel import Panel

from ..blobs import LocalBlobStore
from ..config import SeedGuardConfig
from ..models import UploadedFile
from ..security import backup_store_for
from ..upload import accept_upload, get_file_cid, is_upload_allowed, save_file_cid
from ._common import console, home_option, load_home, open_session, password_option, run


def _blob_store(home: Path, config: SeedGuardConfig, store: Optional[str]) -> LocalBlobStore:
    if store:
        return LocalBlobStore(Path(store))
    return backup_store_for(home, config)


def _read_uploads(files: tuple[str, ...]) -> list[UploadedFile]:
    return [UploadedFile(filename=Path(f).name, content=Path(f).read_bytes()) for f in files]


def register_backup_commands(main: click.Group) -> None:
    """Register the backup command group."""

    @main.group()
    def backup():
        """Signed backup bundles and the service-side upload check.

        A bundle is three files named after the backup key's
        fingerprint: .pub, .sig and .backup.
        """

    @backup.command("create")
    @click.argument("datafile", type=click.Path(exists=True, dir_okay=False))
    @home_option
    @password_option
    @click.option("--output", "-o", default=".", type=click.Path(), help="Output directory.")
    def backup_create(datafile: str, home: str, password: str, output: str):
        """Sign a file with the backup key and write the bundle.

        Examples:

            seedguard backup create settings.json -o /mnt/usb/backups
        """
        home_path, config = load_home(home)
        data = Path(datafile).read_bytes()

        async def _create():
            manager = await open_session(home_path, config, password)
            protector = manager.get_backup_protector()
            bundle = protector.create_bundle(data)
            return bundle, protector.write_bundle(bundle, Path(output))

        bundle, written = run(_create())
        console.print(Panel(
            f"[bold green]Bundle written[/]\n"
            f"Fingerprint: {bundle.fingerprint}\n"
            + "\n".join(f"  [cyan]{p}[/]" for p in written),
            title="Backup",
            border_style="green",
        ))

    @backup.command("authorize")
    @click.argument("files", nargs=-1, type=click.Path(exists=True, dir_okay=False))
    @home_option
    @click.option("--store", default=None, type=click.Path(), help="Blob store directory.")
    @click.option("--bind-fingerprint", is_flag=True, help="Key fingerprint must match file names.")
    def backup_authorize(files: tuple[str, ...], home: str, store: Optional[str], bind_fingerprint: bool):
        """Check whether a bundle would be accepted. Stores nothing."""
        home_path, config = load_home(home)
        blob_store = _blob_store(home_path, config, store)
        identity = config.derivation_config().backup_identity

        allowed = run(is_upload_allowed(
            _read_uploads(files), blob_store, identity, bind_fingerprint=bind_fingerprint,
        ))
        if allowed:
            console.print("[bold green]ALLOWED[/]")
        else:
            console.print("[bold red]NOT ALLOWED[/]")
            raise SystemExit(1)

    @backup.command("accept")
    @click.argument("files", nargs=-1, type=click.Path(exists=True, dir_okay=False))
    @home_option
    @click.option("--store", default=None, type=click.Path(), help="Blob store directory.")
    @click.option("--bind-fingerprint", is_flag=True, help="Key fingerprint must match file names.")
    def backup_accept(files: tuple[str, ...], home: str, store: Optional[str], bind_fingerprint: bool):
        """Authorize a bundle and store it."""
        home_path, config = load_home(home)
        blob_store = _blob_store(home_path, config, store)
        identity = config.derivation_config().backup_identity

        stored = run(accept_upload(
            _read_uploads(files), blob_store, identity, bind_fingerprint=bind_fingerprint,
        ))
        if stored:
            console.print(f"[bold green]Stored[/] in {blob_store.root}")
        else:
            console.print("[bold red]NOT ALLOWED[/]")
            raise SystemExit(1)

    @backup.command("cid")
    @click.argument("name")
    @click.argument("json_body", required=False)
    @home_option
    @click.option("--store", default=None, type=click.Path(), help="Blob store directory.")
    def backup_cid(name: str, json_body: Optional[str], home: str, store: Optional[str]):
        """Show, or with JSON_BODY ('{"cid": "..."}') record, a bundle's content id."""
        home_path, config = load_home(home)
        blob_store = _blob_store(home_path, config, store)

        if json_body:
            cid = run(save_file_cid(blob_store, name, json_body))
            console.print(f"[green]Recorded[/] {cid}")
            return

        cid = run(get_file_cid(name, blob_store))
        if cid is None:
            console.print("[dim]No content id recorded.[/]")
            raise SystemExit(1)
        click.echo(cid)
