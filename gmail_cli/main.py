#!/usr/bin/env python3
"""
gmail-cli — guarded Gmail access for autonomous agents.
Entry point — wires config, logging, the secret store and MailService together.

Usage:
  gmail-cli accounts credentials ~/Downloads/client_secret.json
  gmail-cli accounts add you@gmail.com [--manual] [--readonly]
  gmail-cli accounts upgrade you@gmail.com
  gmail-cli accounts list
  gmail-cli config default you@gmail.com
  gmail-cli search "in:inbox is:unread" --max 50
  gmail-cli thread 19aea1f2f3532db5 [--download]
  gmail-cli labels list
  gmail-cli labels create "Urgent" --text "#ffffff" --bg "#fb4c2f"
  gmail-cli labels edit "Urgent" --name "Today"
  gmail-cli labels modify 19aea1f2f3532db5 --add Work --remove UNREAD
  gmail-cli url 19aea1f2f3532db5
  gmail-cli audit --verify-chain

Exit codes: 0 success, 1 error, 2 operation restricted by local policy.

Data (default ~/.gmail-cli, override with --config-dir or GMAIL_CLI_CONFIG_DIR):
  credentials.json   OAuth client id/secret
  accounts.json      account tokens and granted scopes
  config.json        default account
  attachments/       downloaded attachments
  audit.jsonl        hash-chained audit trail
  logs/              debug logs
"""

import argparse
import logging
import sys
from datetime import datetime

from rich.console import Console
from rich.markup import escape

from . import display
from .config import Config
from .errors import GmailCliError, RestrictedOperationError
from .gmail.service import MailService, thread_url
from .storage.audit import AuditLogger
from .storage.secret_store import ensure_private_dir

NOISY_LOGGERS = [
    "googleapiclient", "googleapiclient.discovery", "googleapiclient.discovery_cache",
    "google", "google.auth", "google_auth_httplib2", "google_auth_oauthlib",
    "oauthlib", "requests_oauthlib", "urllib3", "urllib3.connectionpool",
    "mcp", "mcp.server", "asyncio",
]

logger = logging.getLogger(__name__)

# Rich console for formatted output
console = Console()
error_console = Console(stderr=True, style="bold red")

_installed_handlers: list[logging.Handler] = []


def setup_logging(config: Config, verbose: bool = False) -> None:
    """Quiet stderr (DEBUG with --verbose); everything to <config-dir>/logs."""
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.CRITICAL)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for handler in _installed_handlers:
        root_logger.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()

    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.CRITICAL)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)
    _installed_handlers.append(console_handler)

    try:
        ensure_private_dir(config.log_dir)
        log_file = config.log_dir / f"gmail_cli_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
        file_handler = logging.FileHandler(log_file)
    except OSError as e:
        logger.warning("File logging disabled: %s", e)
        return
    file_handler.setLevel(getattr(logging, config.log_level, logging.DEBUG))
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    _installed_handlers.append(file_handler)


def handle_error(msg: str, exception: Exception | None = None, exit_code: int = 1) -> None:
    """Unified error handler - logs, displays, exits with the given code."""
    error_console.print(f"[bold red]ERROR:[/bold red] {escape(msg)}", soft_wrap=True)
    if exception:
        logger.error(f"{msg}: {exception}", exc_info=True)
    else:
        logger.error(msg)
    sys.exit(exit_code)


class CliArgumentParser(argparse.ArgumentParser):
    """Usage errors exit 1; exit code 2 is reserved for policy refusals."""

    def error(self, message: str) -> None:
        self.print_usage(sys.stderr)
        error_console.print(f"ERROR: {escape(message)}", soft_wrap=True)
        sys.exit(1)


# === accounts ===

def cmd_accounts_credentials(args: argparse.Namespace, service: MailService) -> None:
    service.import_credentials_file(args.file)
    display.emit("Credentials saved")


def cmd_accounts_list(args: argparse.Namespace, service: MailService) -> None:
    display.show_accounts(service.list_accounts(), service.get_default_account())


def cmd_accounts_add(args: argparse.Namespace, service: MailService) -> None:
    service.add_account(args.email, manual=args.manual, readonly=args.readonly)
    display.emit(f"Account '{args.email}' added{' (readonly)' if args.readonly else ''}")
    if len(service.list_accounts()) == 1:
        display.emit("Set as default account")


def cmd_accounts_upgrade(args: argparse.Namespace, service: MailService) -> None:
    service.upgrade_account(args.email, manual=args.manual)
    display.emit(f"Account '{args.email}' upgraded to live access")


def cmd_accounts_remove(args: argparse.Namespace, service: MailService) -> None:
    deleted, was_default = service.remove_account(args.email)
    if deleted:
        display.emit(f"Removed '{args.email}'{' (was default)' if was_default else ''}")
    else:
        display.emit(f"Not found: {args.email}")


# === config ===

def cmd_config_default(args: argparse.Namespace, service: MailService) -> None:
    service.set_default_account(args.email)
    display.emit(f"Default account set to: {args.email}")


def cmd_config_show(args: argparse.Namespace, service: MailService) -> None:
    display.emit("Configuration:")
    display.emit(f"  Config directory: {service.config.config_dir}")
    display.emit(f"  Default account: {service.get_default_account() or '(not set)'}")
    display.emit(f"  Audit log: {'enabled' if service.config.audit_enabled else 'disabled'}")


# === mail ===

def cmd_search(args: argparse.Namespace, service: MailService) -> None:
    query = args.query_option or " ".join(args.query)
    labels = args.label or []
    if not query and not labels:
        raise GmailCliError("Usage: gmail-cli search <query> [--label LABEL]")

    account = service.resolve_account(args.account)
    result = service.search_threads(
        account, query=query, max_results=args.max, page_token=args.page, labels=labels
    )
    id_to_name, _ = service.get_label_map(account) if result.threads else ({}, {})
    display.show_search_results(result, id_to_name)


def cmd_thread(args: argparse.Namespace, service: MailService) -> None:
    account = service.resolve_account(args.account)
    if args.download:
        display.show_downloads(service.download_thread_attachments(account, args.thread_id))
    else:
        display.show_thread(service.get_thread(account, args.thread_id))


def cmd_labels_list(args: argparse.Namespace, service: MailService) -> None:
    account = service.resolve_account(args.account)
    display.show_labels(service.list_labels(account))


def cmd_labels_create(args: argparse.Namespace, service: MailService) -> None:
    account = service.resolve_account(args.account)
    label = service.create_label(account, args.name, text_color=args.text, background_color=args.bg)
    display.emit(display.describe_label("Created", label))


def cmd_labels_edit(args: argparse.Namespace, service: MailService) -> None:
    account = service.resolve_account(args.account)
    label = service.update_label(
        account, args.label, name=args.name, text_color=args.text, background_color=args.bg
    )
    display.emit(display.describe_label("Updated", label))


def cmd_labels_modify(args: argparse.Namespace, service: MailService) -> None:
    account = service.resolve_account(args.account)
    results = service.modify_labels(
        account,
        args.thread_ids,
        add=args.add,
        remove=args.remove,
        allow_dangerous=args.allow_dangerous_labels,
    )
    display.show_label_results(results)


def cmd_url(args: argparse.Namespace, service: MailService) -> None:
    account = service.resolve_account(args.account)
    for thread_id in args.thread_ids:
        safe_id = display.sanitize_single_line(thread_id)
        display.emit(f"{safe_id}\t{thread_url(account, safe_id)}")


def cmd_send(args: argparse.Namespace, service: MailService) -> None:
    # No account lookup: the refusal must not depend on local state
    service.send(args.account)


def cmd_delete(args: argparse.Namespace, service: MailService) -> None:
    service.delete(args.account)


# === audit ===

def cmd_audit(args: argparse.Namespace, service: MailService) -> None:
    """Show audit log."""
    audit = AuditLogger(service.config.audit_log_path)
    display.show_audit_entries(audit.get_recent_entries(count=args.limit), args.limit)

    if args.verify_chain:
        console.print("\n[cyan]Verifying audit log integrity...[/cyan]")
        if audit.verify_integrity():
            console.print("[green]✓ Hash chain is valid[/green]")
        else:
            handle_error("Hash chain is INVALID - possible tampering detected!")


def build_parser() -> argparse.ArgumentParser:
    # Global options are accepted before or after the subcommand
    common = CliArgumentParser(add_help=False)
    common.add_argument("--config-dir", default=argparse.SUPPRESS, help="Data directory (default: ~/.gmail-cli)")
    common.add_argument("--account", default=argparse.SUPPRESS, help="Account email (default: configured default)")
    common.add_argument("-v", "--verbose", action="store_true", default=argparse.SUPPRESS, help="Log to stderr")

    parser = CliArgumentParser(
        prog="gmail-cli",
        description="Gmail CLI for autonomous agents: read, search and label; never send or delete.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        parents=[common],
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # accounts
    accounts = subparsers.add_parser("accounts", help="Manage accounts", parents=[common])
    actions = accounts.add_subparsers(dest="action", required=True)

    p = actions.add_parser("credentials", help="Store OAuth client credentials", parents=[common])
    p.add_argument("file", help="client_secret*.json from Google Cloud Console")
    p.set_defaults(handler=cmd_accounts_credentials)

    p = actions.add_parser("list", help="List accounts and access level", parents=[common])
    p.set_defaults(handler=cmd_accounts_list)

    p = actions.add_parser("add", help="Authorize a new account", parents=[common])
    p.add_argument("email")
    p.add_argument("--manual", action="store_true", help="Paste the redirect URL instead of using a local server")
    p.add_argument("--readonly", action="store_true", help="Request read-only access")
    p.set_defaults(handler=cmd_accounts_add)

    p = actions.add_parser("upgrade", help="Re-authorize an account for live access", parents=[common])
    p.add_argument("email")
    p.add_argument("--manual", action="store_true", help="Paste the redirect URL instead of using a local server")
    p.set_defaults(handler=cmd_accounts_upgrade)

    p = actions.add_parser("remove", help="Forget an account", parents=[common])
    p.add_argument("email")
    p.set_defaults(handler=cmd_accounts_remove)

    # config
    config = subparsers.add_parser("config", help="Show or change CLI configuration", parents=[common])
    actions = config.add_subparsers(dest="action", required=True)

    p = actions.add_parser("default", help="Set the default account", parents=[common])
    p.add_argument("email")
    p.set_defaults(handler=cmd_config_default)

    p = actions.add_parser("show", help="Show configuration", parents=[common])
    p.set_defaults(handler=cmd_config_show)

    # search / list
    p = subparsers.add_parser("search", aliases=["list"], help="Search threads", parents=[common])
    p.add_argument("query", nargs="*", help="Gmail query syntax")
    p.add_argument("-q", "--query", dest="query_option", help="Query (alternative to positional)")
    p.add_argument("-m", "--max", type=int, default=10, help="Max threads (default: 10)")
    p.add_argument("-p", "--page", help="Continuation token from a previous search")
    p.add_argument("-l", "--label", action="append", help="Restrict to label (name or ID); repeatable")
    p.set_defaults(handler=cmd_search)

    # thread
    p = subparsers.add_parser("thread", help="Show a thread", parents=[common])
    p.add_argument("thread_id")
    p.add_argument("--download", action="store_true", help="Download attachments instead")
    p.set_defaults(handler=cmd_thread)

    # labels
    labels = subparsers.add_parser("labels", help="List, create, edit and apply labels", parents=[common])
    actions = labels.add_subparsers(dest="action", required=True)

    p = actions.add_parser("list", help="List labels", parents=[common])
    p.set_defaults(handler=cmd_labels_list)

    p = actions.add_parser("create", help="Create a label", parents=[common])
    p.add_argument("name")
    p.add_argument("--text", help="Text color (hex from Gmail's palette)")
    p.add_argument("--bg", help="Background color (hex from Gmail's palette)")
    p.set_defaults(handler=cmd_labels_create)

    p = actions.add_parser("edit", help="Rename or recolor a label", parents=[common])
    p.add_argument("label", help="Label name or ID")
    p.add_argument("--name", help="New name")
    p.add_argument("--text", help="Text color (hex from Gmail's palette)")
    p.add_argument("--bg", help="Background color (hex from Gmail's palette)")
    p.set_defaults(handler=cmd_labels_edit)

    p = actions.add_parser("modify", help="Add/remove labels on threads", parents=[common])
    p.add_argument("thread_ids", nargs="+")
    p.add_argument("--add", action="append", help="Labels to add (comma-separated)")
    p.add_argument("--remove", action="append", help="Labels to remove (comma-separated)")
    p.add_argument(
        "--allow-dangerous-labels", action="store_true", help="Permit adding TRASH or SPAM"
    )
    p.set_defaults(handler=cmd_labels_modify)

    # url
    p = subparsers.add_parser("url", help="Print Gmail web URLs for threads", parents=[common])
    p.add_argument("thread_ids", nargs="+")
    p.set_defaults(handler=cmd_url)

    # restricted
    p = subparsers.add_parser("send", help="Not permitted (prints guidance)", parents=[common])
    p.set_defaults(handler=cmd_send)
    p = subparsers.add_parser("delete", help="Not permitted (prints guidance)", parents=[common])
    p.set_defaults(handler=cmd_delete)

    # audit
    p = subparsers.add_parser("audit", help="Show audit log", parents=[common])
    p.add_argument("--limit", type=int, default=50, help="Max entries to show (default: 50)")
    p.add_argument("--verify-chain", action="store_true", help="Verify hash chain integrity")
    p.set_defaults(handler=cmd_audit)

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    parser = build_parser()
    args, extras = parser.parse_known_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # send/delete refuse whatever they were given
    if extras and args.command not in ("send", "delete"):
        parser.error(f"unrecognized arguments: {' '.join(extras)}")

    args.account = getattr(args, "account", None)
    config = Config.from_env(getattr(args, "config_dir", None))
    setup_logging(config, verbose=getattr(args, "verbose", False))

    service = MailService(config, console=console)
    try:
        args.handler(args, service)
    except RestrictedOperationError as e:
        logger.warning("Restricted: %s", e.operation)
        error_console.print(str(e), markup=False, highlight=False, style="", soft_wrap=True)
        sys.exit(2)
    except GmailCliError as e:
        handle_error(str(e))
    except (ValueError, OSError) as e:
        handle_error(str(e), e)
    except KeyboardInterrupt:
        handle_error("Interrupted")


if __name__ == "__main__":
    main()
