"""CLI for topickeys.

Manages configuration in ~/.config/topickeys/:
- config.yaml: server URL, username, identity directory
- identity/: the local identity store (one file per record)

Server-side commands (serve, jobs) work directly against TOPICKEYS_DB.
"""

from __future__ import annotations

import asyncio
import getpass
import json
import os
import sys
from pathlib import Path

import cyclopts

from . import identity as codec
from .client import TopicKeysClient
from .config import ClientConfig, get_config_dir
from .errors import TopicKeysError
from .identity_manager import IdentityManager
from .session import EncryptSession
from .storage import FileLocalStore

app = cyclopts.App(
    name="topickeys",
    help="Key distribution for end-to-end encrypted topics",
)

identity_app = cyclopts.App(name="identity", help="Local identity management")
jobs_app = cyclopts.App(name="jobs", help="Scheduled job operations")

app.command(identity_app)
app.command(jobs_app)


def get_config() -> ClientConfig:
    return ClientConfig.load()


def get_manager(cfg: ClientConfig | None = None) -> IdentityManager:
    cfg = cfg or get_config()
    return IdentityManager(FileLocalStore(cfg.identity_dir))


def get_session(cfg: ClientConfig | None = None) -> EncryptSession:
    cfg = cfg or get_config()
    if not cfg.username:
        print("Error: No username configured. Run 'topickeys init --username ...'", file=sys.stderr)
        sys.exit(1)
    client = TopicKeysClient(cfg.url, username=cfg.username)
    return EncryptSession(client, FileLocalStore(cfg.identity_dir))


def read_passphrase(confirm: bool = False) -> str:
    passphrase = getpass.getpass("Passphrase: ")
    if confirm and getpass.getpass("Repeat passphrase: ") != passphrase:
        print("Error: Passphrases do not match.", file=sys.stderr)
        sys.exit(1)
    return passphrase


def print_json(data):
    """Pretty print JSON data."""
    print(json.dumps(data, indent=2, default=str))


def run(coro):
    """Run a coroutine, turning topickeys errors into a clean exit."""
    try:
        return asyncio.run(coro)
    except TopicKeysError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


# --- Configuration ---


@app.command
def init(*, url: str | None = None, username: str | None = None, identity_dir: str | None = None):
    """Write ~/.config/topickeys/config.yaml.

    Args:
        url: Server base URL
        username: Acting forum user
        identity_dir: Directory for the local identity store
    """
    cfg = get_config()
    if url:
        cfg.url = url
    if username:
        cfg.username = username
    if identity_dir:
        cfg.identity_dir = str(Path(identity_dir).expanduser())
    cfg.save()
    print(f"Configuration saved to {get_config_dir()}")


@app.command
def config():
    """Show current configuration."""
    cfg = get_config()
    print(f"Config directory: {get_config_dir()}")
    print(f"Server URL: {cfg.url}")
    print(f"Username: {cfg.username or '(not set)'}")
    print(f"Identity directory: {cfg.identity_dir}")


@app.command
def status():
    """Show the encryption status for the configured user."""

    async def _status():
        async with get_session() as session:
            return await session.status()

    print(run(_status()).name)


# --- Identity Commands ---


def _refuse_existing_identity(manager: IdentityManager, force: bool) -> None:
    if not force and run(manager.has_identity()):
        print("Error: An identity already exists. Use --force to replace it.", file=sys.stderr)
        sys.exit(1)


@identity_app.command(name="generate")
def identity_generate(*, version: int = codec.CURRENT_VERSION, force: bool = False, publish: bool = False):
    """Generate a new identity and store it locally.

    Args:
        version: Identity version to generate
        force: Replace an existing local identity
        publish: Also submit the passphrase-protected export to the server
    """
    manager = get_manager()
    _refuse_existing_identity(manager, force)

    async def _generate():
        if publish:
            async with get_session() as session:
                return await session.enable(read_passphrase(confirm=True), version)

        identity = manager.generate_identity(version)
        await manager.save_identity(identity)
        return identity

    identity = run(_generate())
    print(f"Generated version {identity.version} identity")


@identity_app.command(name="activate")
def identity_activate():
    """Unlock the identity stored on the server for this device."""

    async def _activate():
        async with get_session() as session:
            return await session.activate(read_passphrase())

    identity = run(_activate())
    print(f"Activated version {identity.version} identity")


@identity_app.command(name="show")
def identity_show():
    """Show the local identity's public half."""

    async def _show():
        return await get_manager().get_identity()

    identity = run(_show())
    if identity is None:
        print("No local identity.")
        return
    print(f"Version: {identity.version}")
    print(f"Signing keys: {'yes' if identity.sign_public else 'no (legacy)'}")
    print(f"Public: {codec.encode(identity.public())}")


@identity_app.command(name="export")
def identity_export(*, output: str = "-"):
    """Export the local identity, protected by a passphrase.

    Args:
        output: File to write the JSON export to ("-" for stdout)
    """

    async def _export():
        return await get_manager().export_identity(read_passphrase(confirm=True))

    exported = run(_export()).to_dict()
    if output == "-":
        print_json(exported)
        return
    path = Path(output).expanduser()
    path.write_text(json.dumps(exported, indent=2))
    os.chmod(path, 0o600)
    print(f"Exported identity to {path}")


@identity_app.command(name="import")
def identity_import(path: str, *, force: bool = False):
    """Import an exported identity (JSON with public and private) into the local store.

    Args:
        path: File written by 'topickeys identity export'
        force: Replace an existing local identity
    """
    manager = get_manager()
    _refuse_existing_identity(manager, force)

    async def _import():
        exported = codec.ExportedIdentity.from_dict(json.loads(Path(path).expanduser().read_text()))
        identity = codec.upgrade_identity(codec.import_encrypted(exported, read_passphrase()))
        await manager.save_identity(identity)
        return identity

    identity = run(_import())
    print(f"Imported version {identity.version} identity")


@identity_app.command(name="forget")
def identity_forget():
    """Remove the local identity (the server copy is kept)."""
    run(get_manager().forget_identity())
    print("Local identity removed.")


# --- Job Commands ---


@jobs_app.command(name="encrypt-consistency")
def encrypt_consistency(*, workers: int = 1):
    """Align participant records with topic keys for every encrypted topic.

    Runs the job locally (requires database access).

    Args:
        workers: Topics reconciled in parallel
    """
    from . import db, jobs

    db.init_db()
    jobs.encrypt_consistency(workers=workers)
    print("Encrypt consistency complete")


# --- Server ---


@app.command
def serve(
    *,
    host: str = "0.0.0.0",
    port: int = 8000,
    reload: bool = False,
):
    """Run the topickeys server.

    Admin endpoints require TOPICKEYS_ADMIN_TOKEN; every other request names
    its user with the Api-Username header.
    """
    import uvicorn

    if not os.environ.get("TOPICKEYS_ADMIN_TOKEN"):
        print("WARNING: TOPICKEYS_ADMIN_TOKEN is not set; admin endpoints will refuse requests.")

    uvicorn.run(
        "topickeys.api:app",
        host=host,
        port=port,
        reload=reload,
    )


if __name__ == "__main__":
    app()
