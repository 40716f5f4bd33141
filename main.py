"""
main.py — command-line entry point.

    teams-relay login [--force|--refresh]  sign in through a browser window
    teams-relay status                     session / token diagnostics
    teams-relay search <query>             search messages
    teams-relay send <text>                post a message (default: your notes chat)
    teams-relay me                         who is signed in
    teams-relay logout                     delete the stored session
"""
from dotenv import load_dotenv
load_dotenv()

import argparse
import asyncio
import logging
import sys

from rich.table import Table

from teams_relay import config
from teams_relay.auth import AuthOrchestrator
from teams_relay.dispatch import TeamsService
from teams_relay.errors import TeamsRelayError
from teams_relay.storage import SessionStore
from teams_relay.teams_client import TeamsClient
from teams_relay.utils import console, setup_logging


# ─── Commands ─────────────────────────────────────────────────────────────────

async def cmd_login(auth: AuthOrchestrator, args: argparse.Namespace) -> None:
    if args.force:
        await auth.force_new_login()
    else:
        await auth.ensure_authenticated(refresh=args.refresh)
    console.print("[green]Signed in.[/green]")
    _print_status(auth.status())


async def cmd_status(auth: AuthOrchestrator, args: argparse.Namespace) -> None:
    _print_status(auth.status())


async def cmd_logout(auth: AuthOrchestrator, args: argparse.Namespace) -> None:
    auth.logout()
    console.print("Stored session removed.")


async def cmd_me(auth: AuthOrchestrator, args: argparse.Namespace) -> None:
    identity = TeamsService(auth, TeamsClient()).get_me()
    console.print(f"[bold]{identity.display_name}[/bold] <{identity.email}>")
    console.print(f"  mri:    {identity.mri}")
    console.print(f"  tenant: {identity.tenant_id or '-'}")


async def cmd_search(auth: AuthOrchestrator, args: argparse.Namespace) -> None:
    async with TeamsClient() as client:
        page = await TeamsService(auth, client).search(args.query, from_=args.offset, size=args.size)

    table = Table(title=f"Results for {args.query!r}")
    table.add_column("When", style="dim", no_wrap=True)
    table.add_column("From")
    table.add_column("Where")
    table.add_column("Message")
    for result in page.results:
        where = " / ".join(filter(None, (result.team_name, result.channel_name))) or "chat"
        table.add_row(result.timestamp or "", result.sender or "", where, result.content[:200])
    console.print(table)

    p = page.pagination
    if p:
        total = p.total if p.total is not None else "?"
        more = f" — next page: --offset {p.from_ + p.size}" if p.has_more else ""
        console.print(f"{p.returned} shown, {total} total{more}")


async def cmd_send(auth: AuthOrchestrator, args: argparse.Namespace) -> None:
    async with TeamsClient() as client:
        sent = await TeamsService(auth, client).send_message(
            args.text, conversation_id=args.to, reply_to=args.reply_to,
        )
    console.print(f"[green]Sent[/green] to {sent['conversation_id']} (id {sent['message_id']})")


COMMANDS = {
    "login":  cmd_login,
    "status": cmd_status,
    "logout": cmd_logout,
    "me":     cmd_me,
    "search": cmd_search,
    "send":   cmd_send,
}


# ─── Output ───────────────────────────────────────────────────────────────────

def _print_status(status: dict) -> None:
    session = status["session"]
    table = Table(title="teams-relay status", show_header=False)
    table.add_column("key", style="bold")
    table.add_column("value")
    table.add_row("state", status["state"])
    table.add_row("user", status["user"] or "-")
    if session["exists"]:
        stale = " [red](stale)[/red]" if session["stale"] else ""
        table.add_row("session age", f"{session['age_hours']:.1f}h{stale}")
    else:
        table.add_row("session", "[red]none[/red]")

    token = status["search_token"]
    if token.get("has_token"):
        table.add_row("search token", f"expires {token['expires_at']} ({token['minutes_remaining']} min)")
    else:
        table.add_row("search token", "[yellow]none[/yellow]")

    for audience, available in status["audiences"].items():
        table.add_row(f"  {audience}", "[green]yes[/green]" if available else "[red]no[/red]")
    console.print(table)


# ─── Entry point ──────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="teams-relay", description="Microsoft Teams through a captured browser session")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="Sign in through a browser window")
    login.add_argument("--force", action="store_true", help="Discard the stored session first")
    login.add_argument("--refresh", action="store_true", help="Re-capture tokens even if the stored ones look usable")

    sub.add_parser("status", help="Show session and token diagnostics")
    sub.add_parser("logout", help="Delete the stored session")
    sub.add_parser("me", help="Show the signed-in user")

    search = sub.add_parser("search", help="Search messages")
    search.add_argument("query")
    search.add_argument("--offset", type=int, default=0)
    search.add_argument("--size", type=int, default=config.DEFAULT_PAGE_SIZE)

    send = sub.add_parser("send", help="Send a message")
    send.add_argument("text")
    send.add_argument("--to", default=config.SELF_CHAT_ID, help="Conversation id (default: your notes)")
    send.add_argument("--reply-to", default=None, help="Thread root message id")
    return parser


def run(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    auth = AuthOrchestrator(SessionStore())
    try:
        asyncio.run(COMMANDS[args.command](auth, args))
    except TeamsRelayError as exc:
        console.print(f"[red]{exc}[/red]")
        console.print(f"[dim]{exc.remediation}[/dim]")
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(run())
