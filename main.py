"""
Command Execution Engine — Main CLI Entrypoint.

Wires all layers and runs the interactive CLI loop, one-shot commands,
the HTTP server and maintenance commands.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass
from typing import Any

from dotenv import load_dotenv
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from conversation.manager import ConversationManager
from domains.workspace.store import WorkspaceStore
from entry.chat_command import CHAT_TOOL_GROUPS, ChatCommandAdapter
from entry.idempotency import IdempotencyStore
from entry.interactive import InteractiveAdapter, approval_for
from entry.rate_limiter import RateLimiter
from execution.confirmation import WriteConfirmationGate
from execution.engine import ExecutionCore
from execution.undo import UndoManager
from execution.undo_store import UndoStore
from models.selector import ModelSelector
from planner.prompt_cache import PromptCache
from registry.catalog import build_default_registry
from registry.tool_registry import ToolRegistry
from shared.env import env_flag
from shared.errors import Unauthorized
from shared.models import ExecutionResult, StreamEvent

# ─── Configuration ──────────────────────────────────────────────

logger = logging.getLogger(__name__)

# Ensure local .env is loaded before reading runtime configuration.
load_dotenv(override=False)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
SERVER_HOST = os.getenv("SERVER_HOST", "127.0.0.1")
SERVER_PORT = int(os.getenv("SERVER_PORT", "8080"))
MAX_CONFIRMATION_ROUNDS = 10

# ─── Rich Console ───────────────────────────────────────────────

console = Console()


def setup_logging() -> None:
    """Configure logging."""
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


@dataclass
class Pipeline:
    registry: ToolRegistry
    store: WorkspaceStore
    model: Any
    prompt_cache: PromptCache
    undo_store: UndoStore
    undo: UndoManager
    core: ExecutionCore
    conversation: ConversationManager
    interactive: InteractiveAdapter
    chat: ChatCommandAdapter
    rate_limiter: RateLimiter
    idempotency: IdempotencyStore

    def close(self) -> None:
        for resource in (self.conversation, self.undo_store, self.rate_limiter, self.idempotency, self.store):
            resource.close()
        close_model = getattr(self.model, "close", None)
        if close_model is not None:
            close_model()


def build_pipeline(model: Any = None, warm_cache: bool | None = None) -> Pipeline:
    """Wire all layers together. Every store reads its path from the environment."""
    registry = build_default_registry()
    store = WorkspaceStore()
    store.bind_to(registry)

    model = model or ModelSelector()
    prompt_cache = PromptCache()
    undo_store = UndoStore()
    undo = UndoManager(registry, undo_store)
    core = ExecutionCore(
        registry,
        model,
        prompt_cache=prompt_cache,
        undo=undo,
        confirmation_gate=WriteConfirmationGate(name_resolver=store.resolve_name),
    )

    conversation = ConversationManager()
    interactive = InteractiveAdapter(core, store.authorize, conversation)
    rate_limiter = RateLimiter()
    idempotency = IdempotencyStore()
    chat = ChatCommandAdapter(core, store, rate_limiter=rate_limiter, idempotency=idempotency)

    if warm_cache is None:
        warm_cache = env_flag("PROMPT_CACHE_WARM_ON_START", True)
    if warm_cache:
        prompt_cache.warm()
    registry.warm_schemas([CHAT_TOOL_GROUPS])

    return Pipeline(
        registry=registry,
        store=store,
        model=model,
        prompt_cache=prompt_cache,
        undo_store=undo_store,
        undo=undo,
        core=core,
        conversation=conversation,
        interactive=interactive,
        chat=chat,
        rate_limiter=rate_limiter,
        idempotency=idempotency,
    )


# ─── Rendering ──────────────────────────────────────────────────

def render_event(event: StreamEvent) -> None:
    if event.type == "thinking":
        console.print(Text(f"  … {event.content}", style="dim"))
    elif event.type == "tool_call":
        console.print(Text(f"  → {event.content}", style="cyan"))
    elif event.type == "tool_result":
        ok = bool((event.data or {}).get("success"))
        console.print(Text(f"  {'✓' if ok else '✗'} {event.content}", style="green" if ok else "red"))


def render_result(result: ExecutionResult) -> None:
    console.print()
    if not result.success:
        console.print(Panel(
            Text(result.response or "Command failed.", style="bold red"),
            title=f"❌ {result.error_kind or 'error'}",
            border_style="red",
            box=box.ROUNDED,
        ))
        return

    if result.confirmation:
        console.print(Panel(
            Text(result.confirmation.question, style="bold yellow"),
            title="❓ Confirmation",
            border_style="yellow",
            box=box.ROUNDED,
        ))
        return

    console.print(Panel(Text(result.response), title="🤖", border_style="green", box=box.ROUNDED))
    if result.tool_calls_made:
        table = Table(box=box.SIMPLE, show_header=True, padding=(0, 1))
        table.add_column("Tool", style="cyan")
        table.add_column("Result", style="white")
        for record in result.tool_calls_made:
            table.add_row(record.tool, "ok" if record.result.get("success") else str(record.result.get("error")))
        console.print(table)
    if result.undo_batch_id:
        console.print(Text(f"  undo batch: {result.undo_batch_id}", style="dim"))


async def _stream_and_render(pipeline: Pipeline, command, approvals=None) -> ExecutionResult | None:
    stream = pipeline.interactive.stream(command, approvals=approvals)
    try:
        async for event in stream:
            render_event(event)
    finally:
        await stream.aclose()
    if stream.result is not None:
        pipeline.interactive.record_turn(command, stream.result, resubmitted=bool(approvals))
    return stream.result


# ─── Interactive Loop ───────────────────────────────────────────

async def run_agent_loop(workspace_id: str, user_id: str) -> None:
    """Interactive Agent Loop."""
    console.print(Panel(
        Text.from_markup(
            "[bold cyan]Command Execution Engine[/bold cyan]\n"
            f"[dim]Workspace: {workspace_id} • User: {user_id}[/dim]\n"
            "[dim]Type a command, '/undo' to revert the last change, or 'exit' to quit[/dim]"
        ),
        title="🤖",
        border_style="cyan",
        box=box.DOUBLE,
    ))

    try:
        pipeline = build_pipeline()
    except Exception as e:
        console.print(f"[bold red]Failed to initialize pipeline:[/] {e}")
        sys.exit(1)

    undo_batches: list[str] = []
    try:
        while True:
            try:
                raw_input = console.input("[bold cyan]You → [/]").strip()
            except (KeyboardInterrupt, EOFError):
                console.print("\n[dim]Goodbye! 👋[/dim]")
                break

            if raw_input.lower() in ("exit", "quit", "q"):
                console.print("[dim]Goodbye! 👋[/dim]")
                break
            if not raw_input:
                continue

            try:
                auth = pipeline.store.authorize(workspace_id, user_id)
            except Unauthorized as e:
                console.print(f"[bold red]{e.user_message}[/]")
                break

            if raw_input == "/undo":
                if not undo_batches:
                    console.print("[dim]Nothing to undo.[/dim]")
                    continue
                outcome = await pipeline.undo.undo(workspace_id, [undo_batches.pop()], auth)
                console.print(f"[dim]Reverted {outcome.reverted}; failed: {outcome.failed or 'none'}[/dim]")
                continue

            command = pipeline.interactive.build_command(raw_input, workspace_id, user_id)
            result = await _stream_and_render(pipeline, command)
            if result is None:
                continue
            render_result(result)

            approvals = []
            while result.success and result.confirmation:
                answer = console.input("[bold yellow]Continue? [y/N] [/]").strip().lower()
                if answer not in ("y", "yes"):
                    console.print("[dim]Cancelled.[/dim]")
                    break
                approvals.append(approval_for(result.confirmation))
                command = pipeline.interactive.build_command(
                    raw_input, workspace_id, user_id, undo_batch_id=result.undo_batch_id or command.context.undo_batch_id
                )
                next_result = await _stream_and_render(pipeline, command, approvals=approvals)
                if next_result is None:
                    break
                result = next_result
                render_result(result)

            if result.undo_batch_id:
                undo_batches.append(result.undo_batch_id)
            console.print()
    finally:
        pipeline.close()


async def run_once(text: str, workspace_id: str, user_id: str, auto_approve: bool, as_json: bool) -> int:
    pipeline = build_pipeline()
    try:
        command = pipeline.interactive.build_command(text, workspace_id, user_id)
        result = await pipeline.interactive.execute(command)
        approvals = []
        while auto_approve and result.success and result.confirmation and len(approvals) < MAX_CONFIRMATION_ROUNDS:
            approvals.append(approval_for(result.confirmation))
            command = pipeline.interactive.build_command(
                text, workspace_id, user_id, undo_batch_id=result.undo_batch_id or command.context.undo_batch_id
            )
            result = await pipeline.interactive.execute(command, approvals=approvals)
    except Unauthorized as e:
        console.print(f"[bold red]{e.user_message}[/]")
        return 1
    finally:
        pipeline.close()

    if as_json:
        console.print_json(json.dumps(result.to_wire(), ensure_ascii=False))
    else:
        render_result(result)
    if not result.success:
        return 1
    return 2 if result.confirmation else 0


async def run_undo(workspace_id: str, user_id: str, batches: list[str]) -> int:
    pipeline = build_pipeline(warm_cache=False)
    try:
        auth = pipeline.store.authorize(workspace_id, user_id)
        outcome = await pipeline.undo.undo(workspace_id, batches, auth)
    except Unauthorized as e:
        console.print(f"[bold red]{e.user_message}[/]")
        return 1
    finally:
        pipeline.close()
    console.print_json(json.dumps(outcome.to_wire()))
    return 0 if not outcome.failed else 1


# ─── Admin ──────────────────────────────────────────────────────

def admin_workspace_add(workspace_id: str, name: str, user_id: str, user_name: str) -> None:
    store = WorkspaceStore()
    try:
        store.create_workspace(workspace_id, name)
        store.add_member(workspace_id, user_id, user_name)
    finally:
        store.close()
    console.print(f"[green]Workspace {workspace_id} ready; member {user_name} ({user_id}).[/green]")


def admin_chat_link(team_id: str, external_user_id: str, workspace_id: str, user_id: str) -> None:
    store = WorkspaceStore()
    try:
        store.authorize(workspace_id, user_id)
        store.link_chat_identity(team_id, external_user_id, workspace_id, user_id)
    except Unauthorized as e:
        console.print(f"[bold red]{e}[/]")
        return
    finally:
        store.close()
    console.print(f"[green]Linked {team_id}/{external_user_id} → {workspace_id}/{user_id}.[/green]")


def admin_warm() -> None:
    console.print_json(json.dumps(PromptCache().warm()))


def main() -> None:
    """Entrypoint with CLI args."""
    setup_logging()

    parser = argparse.ArgumentParser(description="Command Execution Engine")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    def add_identity(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--workspace", required=True, help="Workspace id")
        sub.add_argument("--user", required=True, help="Acting user id")

    run_parser = subparsers.add_parser("run", help="Run interactive command loop")
    add_identity(run_parser)

    exec_parser = subparsers.add_parser("exec", help="Execute one command")
    exec_parser.add_argument("text", help="Command text")
    add_identity(exec_parser)
    exec_parser.add_argument("--yes", action="store_true", help="Approve the confirmation and resubmit")
    exec_parser.add_argument("--json", action="store_true", help="Print the raw result")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP server")
    serve_parser.add_argument("--host", default=SERVER_HOST)
    serve_parser.add_argument("--port", type=int, default=SERVER_PORT)

    subparsers.add_parser("warm", help="Warm the prompt cache and report the entry count")

    undo_parser = subparsers.add_parser("undo", help="Revert undo batches")
    add_identity(undo_parser)
    undo_parser.add_argument("batches", nargs="+", help="Batch ids, reverted in the given order")

    ws_parser = subparsers.add_parser("workspace-add", help="Create a workspace with one member")
    ws_parser.add_argument("workspace_id")
    ws_parser.add_argument("name")
    ws_parser.add_argument("user_id")
    ws_parser.add_argument("user_name")

    link_parser = subparsers.add_parser("chat-link", help="Link a chat user to a workspace member")
    link_parser.add_argument("team_id")
    link_parser.add_argument("external_user_id")
    link_parser.add_argument("workspace_id")
    link_parser.add_argument("user_id")

    args = parser.parse_args()

    if args.command == "run":
        try:
            asyncio.run(run_agent_loop(args.workspace, args.user))
        except KeyboardInterrupt:
            pass
    elif args.command == "exec":
        sys.exit(asyncio.run(run_once(args.text, args.workspace, args.user, args.yes, args.json)))
    elif args.command == "serve":
        import uvicorn

        uvicorn.run("api.server:app", host=args.host, port=args.port)
    elif args.command == "warm":
        admin_warm()
    elif args.command == "undo":
        sys.exit(asyncio.run(run_undo(args.workspace, args.user, args.batches)))
    elif args.command == "workspace-add":
        admin_workspace_add(args.workspace_id, args.name, args.user_id, args.user_name)
    elif args.command == "chat-link":
        admin_chat_link(args.team_id, args.external_user_id, args.workspace_id, args.user_id)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
