"""Seed and session commands: init, restore, status, passwd, reset."""

from __future__ import annotations

from typing import Optional

import click
from rich.panel import Panel
from rich.table import Table

from ..audit import read_audit_log
from ..models import SessionState
from ..security import SecurityManager, create_security_manager
from ._common import console, home_option, load_home, password_option, run


def _new_password(password: Optional[str]) -> str:
    if password:
        return password
    return click.prompt("Choose a password", hide_input=True, confirmation_prompt=True)


def _setup_password(manager: SecurityManager, password: Optional[str]) -> str:
    """Password to finish setup with, refusing homes that already hold a seed.

    A record store can exist without a master key, e.g. after a
    password-gated command ran on a fresh home. Such a store is
    opened with its own password and setup carries on.
    """
    if run(manager.is_never_started()):
        return _new_password(password)
    password = password or click.prompt("Password", hide_input=True)
    if run(manager.start(password)) == SessionState.READY:
        console.print("[yellow]Already initialized.[/] Use 'seedguard reset' to start over.")
        raise SystemExit(1)
    return password


def register_seed_commands(main: click.Group) -> None:
    """Register the seed lifecycle commands."""

    @main.command()
    @home_option
    @click.option("--skip-quiz", is_flag=True, help="Do not ask to confirm the phrase.")
    @click.option("--password", default=None, envvar="SEEDGUARD_PASSWORD", help="Record store password.")
    def init(home: str, skip_quiz: bool, password: Optional[str]):
        """Create a new seed phrase and derive every key from it.

        Write the phrase down. It is shown once and never stored.

        Examples:

            seedguard init

            seedguard init --home /mnt/usb/.seedguard
        """
        home_path, config = load_home(home)
        manager = create_security_manager(home_path, config)

        password = _setup_password(manager, password)
        words = run(manager.create_seed_phrase())
        numbered = "\n".join(f"{i + 1:>2}. {w}" for i, w in enumerate(words))
        console.print(Panel(
            numbered,
            title=f"Seed phrase ({len(words)} words)",
            border_style="yellow",
        ))

        if not skip_quiz:
            quiz = manager.get_seed_quiz()
            for index in quiz.tasks:
                answer = click.prompt(f"Word #{index + 1}")
                if not quiz.verify_word(index, answer):
                    console.print("[red]That word does not match. Nothing was saved.[/]")
                    raise SystemExit(1)

        state = run(manager.start(password))
        keys = manager.list_user_public_keys()
        console.print(Panel(
            f"[bold green]Ready[/]\n"
            f"State: {state.value}\n"
            f"User keys: {len(keys)}\n"
            f"Home: [cyan]{home_path}[/]",
            title="SeedGuard initialized",
            border_style="green",
        ))

    @main.command()
    @home_option
    @click.option("--phrase", default=None, help="Seed phrase (prompted if omitted).")
    @click.option("--password", default=None, envvar="SEEDGUARD_PASSWORD", help="Record store password.")
    def restore(home: str, phrase: Optional[str], password: Optional[str]):
        """Rebuild the master key and every key from a seed phrase.

        Examples:

            seedguard restore
        """
        home_path, config = load_home(home)
        manager = create_security_manager(home_path, config)

        password = _setup_password(manager, password)
        phrase = phrase or click.prompt("Seed phrase", hide_input=True)
        words = phrase.split()

        expected = manager.get_required_seed_phrase_length()
        if len(words) != expected:
            console.print(f"[yellow]Expected {expected} words, got {len(words)}.[/]")
        if not manager.get_seed_validator().is_phrase_valid(words):
            console.print("[yellow]This phrase fails the checksum. Restored keys will not match.[/]")
            if not click.confirm("Continue anyway?", default=False):
                raise SystemExit(1)

        run(manager.restore_seed_phrase(words))
        state = run(manager.start(password))
        console.print(f"[green]Restored.[/] State: {state.value}")

    @main.command()
    @home_option
    @click.option("--events", default=5, help="Recent audit events to show.")
    def status(home: str, events: int):
        """Show whether this home is set up and what happened recently."""
        home_path, config = load_home(home)
        manager = create_security_manager(home_path, config)
        never_started = run(manager.is_never_started())

        console.print(Panel(
            f"Home: [cyan]{home_path}[/]\n"
            f"Record store: {'[red]missing[/]' if never_started else '[green]present[/]'}\n"
            f"Seed length: {config.seed_phrase_length} words\n"
            f"Backup identity: {config.derivation_config().backup_identity}",
            title="SeedGuard",
            border_style="cyan",
        ))

        entries = read_audit_log(home_path, limit=events)
        if entries:
            table = Table(title="Recent audit events")
            table.add_column("When", style="dim")
            table.add_column("Event", style="cyan")
            table.add_column("Detail")
            for entry in entries:
                table.add_row(entry.timestamp[:19], entry.event_type, entry.detail)
            console.print(table)

    @main.command()
    @home_option
    @password_option
    def passwd(home: str, password: str):
        """Change the record store password."""
        home_path, config = load_home(home)
        manager = create_security_manager(home_path, config)
        new_password = click.prompt("New password", hide_input=True, confirmation_prompt=True)
        run(manager.change_password(password, new_password))
        console.print("[green]Password changed.[/]")

    @main.command()
    @home_option
    @click.confirmation_option(prompt="Wipe the record store? Only the seed phrase can bring it back.")
    def reset(home: str):
        """Wipe the record store and forget the master key."""
        home_path, config = load_home(home)
        manager = create_security_manager(home_path, config)
        run(manager.reset())
        console.print("[yellow]Reset complete.[/]")
