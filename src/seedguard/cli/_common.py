"""Shared utilities for all CLI command modules.

Provides the Rich console instance, home/config resolution, and the
session helper every password-gated command goes through.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Awaitable, TypeVar

import click
from rich.console import Console

from .. import SEEDGUARD_HOME
from ..config import SeedGuardConfig, load_config, resolve_home
from ..security import NotInitializedError, SecurityManager, create_security_manager
from ..storage import BadCredentialError, StorageError

console = Console()

T = TypeVar("T")

home_option = click.option(
    "--home", default=SEEDGUARD_HOME, type=click.Path(), help="SeedGuard home directory.",
)
password_option = click.option(
    "--password", prompt=True, hide_input=True, envvar="SEEDGUARD_PASSWORD",
    help="Record store password.",
)


def load_home(home: str) -> tuple[Path, SeedGuardConfig]:
    """Resolve a --home value and load its config."""
    home_path = resolve_home(Path(home))
    return home_path, load_config(home_path)


def run(coro: Awaitable[T]) -> T:
    """Run a coroutine, turning known failures into a clean exit.

    Wrong password and missing setup get distinct messages so the
    user knows whether to retype or to run init.
    """
    try:
        return asyncio.run(coro)
    except BadCredentialError:
        console.print("[bold red]Wrong password.[/]")
        raise SystemExit(1)
    except NotInitializedError as exc:
        console.print(f"[bold yellow]Not set up yet:[/] {exc}")
        raise SystemExit(1)
    except (StorageError, KeyError, ValueError) as exc:
        console.print(f"[red]{exc}[/]")
        raise SystemExit(1)


async def open_session(home: Path, config: SeedGuardConfig, password: str) -> SecurityManager:
    """Start a session and insist that it ends up READY."""
    manager = create_security_manager(home, config)
    await manager.start(password)
    if not manager.is_ready:
        raise NotInitializedError("no seed phrase yet; run 'seedguard init' or 'seedguard restore'")
    return manager
