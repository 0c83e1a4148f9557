"""Command-line driver for the LLM gateway: one-shot prompts, REPL chat and the API server."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import List, Optional

from rich.panel import Panel
from rich.table import Table

from llmbridge.client import Gateway
from llmbridge.config import GatewayConfig
from llmbridge.console import console
from llmbridge.llm import (
    ChatRequest,
    ConfigurationError,
    ContentDelta,
    ErrorEvent,
    GatewayError,
    Message,
    Usage,
)
from llmbridge.logging import configure_logging, get_logger
from llmbridge.serve import ChatCompletionServer
from llmbridge.session import Session, SessionStore
from llmbridge.translate import attachment_from

LOGGER = get_logger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Chat with any configured LLM provider.")
    parser.add_argument("text", nargs="*", help="Prompt to send. Starts an interactive chat when omitted.")
    parser.add_argument(
        "--config-file",
        type=Path,
        help="Path to a config file (YAML or JSON, default: config.yaml in project root).",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        help="Path to a .env file with secrets such as OPENAI_API_KEY (default: .env).",
    )
    parser.add_argument("-m", "--model", help="Model id as <client>:<model>, or a client name.")
    parser.add_argument("-s", "--session", help="Name of a saved session to continue (created if missing).")
    parser.add_argument("--sessions-dir", type=Path, help="Directory holding saved sessions.")
    parser.add_argument(
        "-f",
        "--file",
        action="append",
        default=[],
        help="Attach an image (local path, URL or data: URL). May be repeated.",
    )
    parser.add_argument("--system", help="System prompt prepended to the conversation.")
    parser.add_argument("--temperature", type=float, help="Sampling temperature override.")
    parser.add_argument("--top-p", type=float, help="Nucleus sampling override.")
    parser.add_argument("--no-stream", action="store_true", help="Wait for the full response instead of streaming.")
    parser.add_argument("--list-models", action="store_true", help="List configured models and exit.")
    parser.add_argument("--remote-models", metavar="CLIENT", help="Ask a client which models it serves and exit.")
    parser.add_argument("--list-sessions", action="store_true", help="List saved sessions and exit.")
    parser.add_argument(
        "--serve",
        nargs="?",
        const="127.0.0.1:8000",
        metavar="ADDRESS",
        help="Serve an OpenAI-compatible API (default address: 127.0.0.1:8000).",
    )
    parser.add_argument("--log-level", default="WARNING", help="Python logging level (default: WARNING).")
    return parser.parse_args(argv)


def apply_overrides(config: GatewayConfig, args: argparse.Namespace) -> None:
    if args.model:
        config.model = args.model
    if args.temperature is not None:
        config.temperature = args.temperature
    if args.top_p is not None:
        config.top_p = args.top_p


def list_models(gateway: Gateway, client: Optional[str] = None) -> int:
    try:
        models = gateway.fetch_remote_models(client) if client else gateway.list_models()
    except GatewayError as exc:
        LOGGER.error("Failed to query models: %s", exc)
        return 1

    if not models:
        console.print(Panel("No models are configured.", title="Models Unavailable", style="warning"))
        return 0

    table = Table(title=f"{client} models" if client else "Configured models", box=None, highlight=True)
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Model", style="magenta")
    for idx, model in enumerate(models, start=1):
        table.add_row(str(idx), model.id)
    console.print(table)
    return 0


def list_sessions(store: SessionStore) -> int:
    names = store.list()
    if not names:
        console.print(f"[warning]No saved sessions in {store.directory}.[/warning]")
        return 0
    for name in names:
        console.print(name)
    return 0


def serve(gateway: Gateway, address: str) -> int:
    host, _, port = address.rpartition(":")
    try:
        server = ChatCompletionServer(gateway, host=host or "127.0.0.1", port=int(port))
    except ValueError:
        LOGGER.error("Invalid address '%s'; expected HOST:PORT.", address)
        return 1
    console.print(f"[info]Chat completions API: http://{server.host}:{server.port}/v1/chat/completions[/info]")
    server.serve_forever()
    return 0


def ask(gateway: Gateway, request: ChatRequest, session: Optional[Session]) -> bool:
    """Send one request and print the reply as it arrives. Returns False on failure."""

    events = gateway.send(request, session=session)
    usage: Optional[Usage] = None
    try:
        with events:
            for event in events:
                if isinstance(event, ContentDelta):
                    console.print(event.text, end="", style="assistant", markup=False, highlight=False)
                elif isinstance(event, Usage):
                    usage = event
                elif isinstance(event, ErrorEvent):
                    console.print()
                    console.print(Panel(event.message, title=f"Provider Error ({event.kind.value})", style="error"))
                    return False
    except KeyboardInterrupt:
        events.cancel()
        console.print("\n[warning]Cancelled.[/warning]")
        return False
    console.print()
    if usage is not None:
        console.print(f"[usage]tokens in={usage.input_tokens} out={usage.output_tokens}[/usage]")
    return True


def build_request(args: argparse.Namespace, text: str, *, with_system: bool) -> ChatRequest:
    messages = []
    if with_system and args.system:
        messages.append(Message(role="system", content=args.system))
    attachments = tuple(attachment_from(value) for value in args.file)
    messages.append(Message(role="user", content=text, attachments=attachments))
    return ChatRequest(messages=tuple(messages), model=args.model or "", stream=not args.no_stream)


def run_repl(gateway: Gateway, args: argparse.Namespace, session: Session, store: Optional[SessionStore]) -> int:
    client, model = gateway.resolve_model(args.model)
    console.rule(f"{client.identifier}:{model.name}. Press Enter on an empty line or Ctrl+D to exit.")
    first = not session.messages
    while True:
        try:
            text = console.input("[prompt]\nYou:[/prompt] ").strip()
        except EOFError:
            console.print()
            break
        if not text:
            break
        try:
            ok = ask(gateway, build_request(args, text, with_system=first), session)
        except GatewayError as exc:
            console.print(Panel(str(exc), title="Request Failed", style="error"))
            continue
        if ok:
            first = False
            if store is not None:
                store.save(session, args.session)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    if args.env_file:
        os.environ["ENV_FILE"] = str(args.env_file)

    try:
        config = GatewayConfig.load(config_path=args.config_file)
        apply_overrides(config, args)
        config.validate()
    except ConfigurationError as exc:
        console.print(Panel(str(exc), title="Configuration Error", style="error"))
        return 1

    gateway = Gateway(config)
    store = SessionStore(args.sessions_dir) if (args.session or args.list_sessions or args.sessions_dir) else None

    if args.list_sessions:
        return list_sessions(store or SessionStore())
    if args.list_models or args.remote_models:
        return list_models(gateway, args.remote_models)
    if args.serve:
        return serve(gateway, args.serve)

    try:
        session = store.load_or_create(args.session) if store is not None and args.session else None
    except ConfigurationError as exc:
        console.print(Panel(str(exc), title="Session Error", style="error"))
        return 1

    text = " ".join(args.text).strip()
    if not text and not sys.stdin.isatty():
        text = sys.stdin.read().strip()
    if not text:
        return run_repl(gateway, args, session or Session(), store if args.session else None)

    try:
        ok = ask(gateway, build_request(args, text, with_system=not (session and session.messages)), session)
    except GatewayError as exc:
        console.print(Panel(str(exc), title="Request Failed", style="error"))
        return 1
    if ok and session is not None and store is not None:
        store.save(session, args.session)
    return 0 if ok else 1


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
