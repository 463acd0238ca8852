"""Command-line front end.

Subcommands operate on the account and folder registries under the
configured state directory and run sync passes in the foreground.
Reports go to stdout; logging and errors go to stderr.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from . import __version__
from .app import SyncApp, app_lifespan, load_app_config
from .core.async_utils import run_sync_limited
from .credentials import EnvironmentVault
from .errors import SyncError
from .logger import setup_logging
from .sync.models import (
    Account,
    ConflictPolicy,
    SyncDirection,
    SyncFolder,
)
from .sync.reporter import (
    format_conflict_prompt,
    format_pass_report,
    format_plan_preview,
    report_to_json,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def _find_account(app: SyncApp, ref: str | None) -> Account:
    """Resolve an account by id or email; the active account when omitted."""
    if ref is None:
        if app.accounts.active is None:
            raise SyncError("No active account. Add one with 'account add'.")
        return app.accounts.active
    account = app.accounts.get(ref)
    if account is not None:
        return account
    matches = [a for a in app.accounts.list_accounts() if a.email == ref.lower()]
    if len(matches) == 1:
        return matches[0]
    if matches:
        raise SyncError(f"Email '{ref}' matches several accounts; use the id")
    raise SyncError(f"Unknown account: {ref}")


def _find_folder(app: SyncApp, ref: str) -> SyncFolder:
    folder = app.folders.get(ref)
    if folder is None:
        raise SyncError(f"Unknown sync folder: {ref}")
    return folder


# ---------------------------------------------------------------------------
# Account commands
# ---------------------------------------------------------------------------


async def _account_add(app: SyncApp, args: argparse.Namespace) -> int:
    account = app.accounts.add_account(args.name, args.server_url, args.email)
    print(f"Added account {account.id} ({account.display_name})")
    print(
        "  Token variable: "
        f"{EnvironmentVault.variable_name(account.key)}"
    )
    return 0


async def _account_list(app: SyncApp, args: argparse.Namespace) -> int:
    accounts = app.accounts.list_accounts()
    if not accounts:
        print("No accounts.")
        return 0
    for account in accounts:
        marker = "*" if account.is_active else " "
        print(
            f"{marker} {account.id}  {account.display_name}  "
            f"{account.email}  {account.server_url}"
        )
    return 0


async def _account_use(app: SyncApp, args: argparse.Namespace) -> int:
    account = await app.accounts.switch_active(_find_account(app, args.account))
    print(f"Active account: {account.display_name} ({account.email})")
    return 0


async def _account_remove(app: SyncApp, args: argparse.Namespace) -> int:
    account = _find_account(app, args.account)
    await app.accounts.remove_account(account)
    print(f"Removed account {account.id}")
    return 0


# ---------------------------------------------------------------------------
# Folder commands
# ---------------------------------------------------------------------------


async def _folder_roots(app: SyncApp, args: argparse.Namespace) -> int:
    account = _find_account(app, args.account)
    token = app.credentials.resolve_token(account.key)
    client = app.directory.client_for(account.server_url)
    roots = await run_sync_limited(client.list_root_folders, token)
    for node in sorted(roots, key=lambda n: n.name.lower()):
        flag = "" if node.is_syncable else "  (not syncable)"
        print(f"{node.id}  {node.name}{flag}")
    return 0


async def _folder_add(app: SyncApp, args: argparse.Namespace) -> int:
    account = _find_account(app, args.account)
    token = app.credentials.resolve_token(account.key)
    client = app.directory.client_for(account.server_url)
    remote = await run_sync_limited(client.get_detail, token, args.remote_id)
    folder = app.folders.create(
        account,
        remote,
        args.local_path,
        direction=args.direction,
        policy=args.policy,
    )
    if args.enable:
        folder = await app.engine.enable(folder)
    print(f"Added sync folder {folder.id}: {folder.display_path} -> {folder.local_path}")
    return 0


async def _folder_list(app: SyncApp, args: argparse.Namespace) -> int:
    folders = app.folders.list_folders()
    if not folders:
        print("No sync folders.")
        return 0
    for folder in folders:
        line = (
            f"{folder.id}  {folder.display_path} -> {folder.local_path}  "
            f"[{folder.status.value}, {folder.sync_direction.value}, "
            f"{folder.conflict_resolution.value}]"
        )
        if folder.last_error:
            line += f"  error: {folder.last_error}"
        print(line)
    return 0


async def _folder_set(app: SyncApp, args: argparse.Namespace) -> int:
    mutation: dict[str, Any] = {}
    if args.direction:
        mutation["sync_direction"] = args.direction
    if args.policy:
        mutation["conflict_resolution"] = args.policy
    if args.local_path:
        mutation["local_path"] = args.local_path
    if not mutation:
        raise ValueError("Nothing to change: pass --direction, --policy or --local-path")
    folder = await app.engine.update_folder(_find_folder(app, args.folder), **mutation)
    print(
        f"Folder {folder.id}: {folder.local_path}  "
        f"[{folder.sync_direction.value}, {folder.conflict_resolution.value}]"
    )
    return 0


async def _folder_enable(app: SyncApp, args: argparse.Namespace) -> int:
    folder = await app.engine.enable(_find_folder(app, args.folder))
    print(f"Folder {folder.id}: {folder.status.value}")
    return 0


async def _folder_disable(app: SyncApp, args: argparse.Namespace) -> int:
    folder = await app.engine.disable(_find_folder(app, args.folder))
    print(f"Folder {folder.id}: {folder.status.value}")
    return 0


async def _folder_remove(app: SyncApp, args: argparse.Namespace) -> int:
    folder = _find_folder(app, args.folder)
    await app.engine.remove_folder(folder)
    print(f"Removed sync folder {folder.id}")
    return 0


# ---------------------------------------------------------------------------
# Sync and conflict commands
# ---------------------------------------------------------------------------


async def _sync(app: SyncApp, args: argparse.Namespace) -> int:
    if args.folders:
        folders = [_find_folder(app, ref) for ref in args.folders]
    else:
        folders = app.folders.enabled()

    if args.dry_run:
        previews: list[dict[str, Any]] = []
        for folder in folders:
            plan = await app.engine.preview(folder)
            if args.json:
                previews.append(plan.model_dump(mode="json"))
            else:
                print(format_plan_preview(plan, folder.display_path))
                print()
        if args.json:
            print(json.dumps(previews, indent=2))
        return 0

    if args.folders:
        reports = [r for r in [await app.engine.run_pass(f) for f in folders] if r]
    else:
        reports = await app.engine.sync_all()

    if args.json:
        print(json.dumps([report_to_json(r) for r in reports], indent=2))
    else:
        names = {f.id: f.display_path for f in app.folders.list_folders()}
        for report in reports:
            print(format_pass_report(report, names.get(report.folder_id)))
            print()
    return 1 if any(r.error for r in reports) else 0


async def _pending(app: SyncApp, args: argparse.Namespace) -> int:
    folders = (
        [_find_folder(app, args.folder)] if args.folder else app.folders.list_folders()
    )
    found = False
    for folder in folders:
        for prompt in app.engine.pending_decisions(folder):
            found = True
            print(f"[{folder.id}] {format_conflict_prompt(prompt)}")
    if not found:
        print("No pending decisions.")
    return 0


async def _decide(app: SyncApp, args: argparse.Namespace) -> int:
    folder = _find_folder(app, args.folder)
    await app.engine.decide(folder, args.path, args.choice)
    print(f"Recorded {args.choice} for {args.path}; applied on the next pass")
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docvault-sync",
        description="Mirror document-service folders onto local storage",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Register an account; its token is read from the printed variable
  docvault-sync account add Work https://docs.example.com me@example.com

  # Pick a remote folder and mirror it
  docvault-sync folder roots
  docvault-sync folder add 42 ~/Documents/Contracts --enable

  # Preview, then run one round over all enabled folders
  docvault-sync sync --dry-run
  docvault-sync sync
        """,
    )
    parser.add_argument("--state-dir", help="Override the state directory")
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Skip SSL certificate verification (use only for development)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        default="text",
        help="Log line format (default: text)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"docvault-sync version {__version__}",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    # account
    account = commands.add_parser("account", help="Manage accounts")
    account_cmds = account.add_subparsers(dest="account_command", required=True)
    p = account_cmds.add_parser("add", help="Add an account")
    p.add_argument("name")
    p.add_argument("server_url")
    p.add_argument("email")
    p.set_defaults(handler=_account_add)
    p = account_cmds.add_parser("list", help="List accounts")
    p.set_defaults(handler=_account_list)
    p = account_cmds.add_parser("use", help="Switch the active account")
    p.add_argument("account", help="Account id or email")
    p.set_defaults(handler=_account_use)
    p = account_cmds.add_parser("remove", help="Remove an account")
    p.add_argument("account", help="Account id or email")
    p.set_defaults(handler=_account_remove)

    # folder
    folder = commands.add_parser("folder", help="Manage sync folders")
    folder_cmds = folder.add_subparsers(dest="folder_command", required=True)
    p = folder_cmds.add_parser("roots", help="List remote root folders")
    p.add_argument("--account", help="Account id or email (default: active)")
    p.set_defaults(handler=_folder_roots)
    p = folder_cmds.add_parser("add", help="Mirror a remote folder locally")
    p.add_argument("remote_id", help="Remote folder id")
    p.add_argument("local_path", help="Local directory")
    p.add_argument("--account", help="Account id or email (default: active)")
    p.add_argument(
        "--direction",
        choices=[d.value for d in SyncDirection],
        default=SyncDirection.BIDIRECTIONAL.value,
    )
    p.add_argument(
        "--policy",
        choices=[c.value for c in ConflictPolicy],
        default=ConflictPolicy.REMOTE_WINS.value,
    )
    p.add_argument("--enable", action="store_true", help="Enable immediately")
    p.set_defaults(handler=_folder_add)
    p = folder_cmds.add_parser("list", help="List sync folders")
    p.set_defaults(handler=_folder_list)
    p = folder_cmds.add_parser("set", help="Change a sync folder's settings")
    p.add_argument("folder", help="Sync folder id")
    p.add_argument("--direction", choices=[d.value for d in SyncDirection])
    p.add_argument("--policy", choices=[c.value for c in ConflictPolicy])
    p.add_argument("--local-path", help="Move the folder to another directory")
    p.set_defaults(handler=_folder_set)
    for name, handler, help_text in (
        ("enable", _folder_enable, "Enable a sync folder"),
        ("disable", _folder_disable, "Disable a sync folder"),
        ("remove", _folder_remove, "Remove a sync folder and its snapshot"),
    ):
        p = folder_cmds.add_parser(name, help=help_text)
        p.add_argument("folder", help="Sync folder id")
        p.set_defaults(handler=handler)

    # sync
    p = commands.add_parser("sync", help="Run one sync round")
    p.add_argument("folders", nargs="*", help="Folder ids (default: all enabled)")
    p.add_argument("--dry-run", action="store_true", help="Preview the plan only")
    p.add_argument("--json", action="store_true", help="Print JSON")
    p.set_defaults(handler=_sync)

    # conflicts
    p = commands.add_parser("pending", help="List conflicts awaiting a decision")
    p.add_argument("folder", nargs="?", help="Sync folder id (default: all)")
    p.set_defaults(handler=_pending)
    p = commands.add_parser("decide", help="Decide a pending conflict")
    p.add_argument("folder", help="Sync folder id")
    p.add_argument("path", help="Relative path of the conflicted file")
    p.add_argument(
        "choice",
        choices=[
            ConflictPolicy.REMOTE_WINS.value,
            ConflictPolicy.LOCAL_WINS.value,
            ConflictPolicy.CREATE_COPY.value,
        ],
    )
    p.set_defaults(handler=_decide)

    return parser


async def main(args: argparse.Namespace) -> int:
    config = load_app_config(
        {
            "state_dir": args.state_dir,
            "insecure": args.insecure,
            "debug": args.debug,
        }
    )
    async with app_lifespan(config) as app:
        return await args.handler(app, args)


def run(argv: list[str] | None = None) -> None:
    """Entry point that handles errors gracefully and parses CLI arguments."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(
        mode="cli",
        debug=args.debug,
        log_file=args.log_file,
        debug_format=args.log_format,
    )

    try:
        code = asyncio.run(main(args))
    except RuntimeError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
    except (SyncError, KeyError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)
    sys.exit(code)


if __name__ == "__main__":
    run()
