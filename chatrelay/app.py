from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.table import Table

from chatrelay.engine.config import RelayConfig
from chatrelay.engine.yaml_config import BackendConfig, default_backend_configs, load_yaml_config

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def _load_config(args) -> tuple[RelayConfig, dict[str, BackendConfig], dict]:
    config = RelayConfig.from_env()
    config_path = args.config or os.getenv("CHATRELAY_CONFIG")
    if config_path:
        loaded = load_yaml_config(config_path, base=config)
        config, backends, defaults = loaded.engine, loaded.backends, loaded.defaults
    else:
        backends, defaults = default_backend_configs(config), {}
    if args.conversations_dir:
        config.conversations_dir = args.conversations_dir
    if args.data_dir:
        config.data_dir = args.data_dir
    if getattr(args, "default_backend", None):
        config.default_backend = args.default_backend
    return config, backends, defaults


def _configure_server_logging(config: RelayConfig) -> Path:
    log_dir = config.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "chatrelay-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _format_ts(ms: int | None) -> str:
    if not ms:
        return "-"
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


# ── Commands ──


def _cmd_serve(args, config, backends, defaults) -> int:
    from chatrelay.server.server import RelayServer

    log_file = _configure_server_logging(config)
    logger.info(
        "Starting chatrelay server cwd=%s host=%s port=%s config=%s log=%s",
        Path.cwd(), args.host, args.port, args.config or "<none>", log_file,
    )
    server = RelayServer(
        config,
        backend_configs=backends,
        session_defaults=defaults,
        host=args.host,
        port=args.port,
    )
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        pass
    return 0


def _cmd_probe(args, config, backends, defaults) -> int:
    from chatrelay.engine import BackendProber, build_backend_registry

    registry = build_backend_registry(backends, probe_timeout=config.probe_timeout_seconds)
    prober = BackendProber(
        registry, timeout=config.probe_timeout_seconds, preferred=config.default_backend,
    )

    async def _probe():
        statuses = await prober.probe()
        models = await prober.list_models(refresh=False)
        return statuses, models

    statuses, models = asyncio.run(_probe())
    console = Console()
    table = Table(title="Backends")
    table.add_column("Backend")
    table.add_column("Available")
    table.add_column("Detail")
    for status in statuses:
        table.add_row(
            status.backend,
            "[green]yes[/green]" if status.available else "[red]no[/red]",
            status.version or status.error or "",
        )
    console.print(table)
    console.print(f"Default backend: [bold]{prober.cached_default()}[/bold]")
    if args.models:
        model_table = Table(title="Models")
        model_table.add_column("Backend")
        model_table.add_column("Id")
        model_table.add_column("Name")
        for model in models:
            model_table.add_row(model["backend"], model["id"], model.get("name", ""))
        console.print(model_table)
    return 0


def _cmd_conversations(args, config, backends, defaults) -> int:
    from chatrelay.shared.services.conversation_log import ConversationLog

    summaries = ConversationLog(config.conversations_dir).list()
    console = Console()
    if not summaries:
        console.print("No conversations.")
        return 0
    table = Table()
    table.add_column("Id")
    table.add_column("Name")
    table.add_column("Messages", justify="right")
    table.add_column("Updated")
    for summary in summaries[: args.limit]:
        table.add_row(
            summary.id, summary.name or "", str(summary.count), _format_ts(summary.last_updated),
        )
    console.print(table)
    return 0


def _cmd_export(args, config, backends, defaults) -> int:
    from chatrelay.shared.services.conversation_log import ConversationLog

    log = ConversationLog(config.conversations_dir)
    if not log.exists(args.conversation_id):
        print(f"Conversation not found: {args.conversation_id}", file=sys.stderr)
        return 1
    text = log.export(args.conversation_id)
    if args.output:
        Path(args.output).write_text(text, encoding="utf-8")
        print(f"Wrote {args.output}")
    elif args.render:
        Console().print(Markdown(text))
    else:
        sys.stdout.write(text)
    return 0


def _cmd_prune(args, config, backends, defaults) -> int:
    from chatrelay.shared.services.conversation_log import ConversationLog

    log = ConversationLog(config.conversations_dir)
    if not log.exists(args.conversation_id):
        print(f"Conversation not found: {args.conversation_id}", file=sys.stderr)
        return 1
    dropped = log.prune(args.conversation_id, args.keep)
    print(f"Dropped {dropped} message(s) from {args.conversation_id}")
    return 0


def _cmd_chat(args, config, backends, defaults) -> int:
    from chatrelay.engine.errors import ChatRelayError
    from chatrelay.engine.orchestrator import ChatRequest
    from chatrelay.server.server import RelayServer

    server = RelayServer(config, backend_configs=backends, session_defaults=defaults)
    console = Console()

    async def _chat() -> int:
        await server.prober.probe()
        request = ChatRequest(
            content=args.prompt,
            conversation_id=args.conversation_id,
            backend=args.backend,
            model=args.model,
            cwd=str(Path.cwd()),
        )
        generation = server.orchestrator.start(request)
        failed = False
        try:
            async for event in generation.relay:
                if "content" in event:
                    console.print(event["content"], end="", markup=False, highlight=False)
                elif "tool" in event:
                    console.print(f"\n[dim]using {escape(event['tool'])}[/dim]")
                elif event.get("error"):
                    failed = True
                    console.print(f"\n[red]{escape(event['error'])}[/red]")
            await generation.wait()
        finally:
            await server.orchestrator.shutdown()
            await server.processes.shutdown()
            await server.backends.shutdown_all()
        console.print()
        console.print(
            f"[dim]conversation {generation.conversation_id} via {generation.backend}[/dim]"
        )
        return 1 if failed else 0

    try:
        return asyncio.run(_chat())
    except (ChatRelayError, ValueError) as exc:
        print(f"chatrelay: {exc}", file=sys.stderr)
        return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatrelay",
        description="chatrelay: multi-backend chat relay with durable conversations",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (engine, backends, defaults)",
    )
    parser.add_argument(
        "--conversations-dir", metavar="DIR",
        help="Conversation store location",
    )
    parser.add_argument(
        "--data-dir", metavar="DIR",
        help="Capture files, generation state and logs",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Start the HTTP+SSE server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument(
        "--port", type=int, default=0,
        help="Server port (0=random available port)",
    )
    serve.add_argument("--default-backend", metavar="NAME")
    serve.set_defaults(func=_cmd_serve)

    probe = sub.add_parser("probe", help="Probe backends and print availability")
    probe.add_argument("--models", action="store_true", help="Also list selectable models")
    probe.add_argument("--default-backend", metavar="NAME")
    probe.set_defaults(func=_cmd_probe)

    conversations = sub.add_parser("conversations", help="List stored conversations")
    conversations.add_argument("--limit", type=int, default=50)
    conversations.set_defaults(func=_cmd_conversations)

    export = sub.add_parser("export", help="Export a conversation as Markdown")
    export.add_argument("conversation_id")
    export.add_argument("-o", "--output", metavar="PATH")
    export.add_argument("--render", action="store_true", help="Render in the terminal")
    export.set_defaults(func=_cmd_export)

    prune = sub.add_parser("prune", help="Keep only the last N messages")
    prune.add_argument("conversation_id")
    prune.add_argument("--keep", type=int, default=100)
    prune.set_defaults(func=_cmd_prune)

    chat = sub.add_parser("chat", help="Send one prompt and stream the reply")
    chat.add_argument("prompt")
    chat.add_argument("-c", "--conversation-id", metavar="ID")
    chat.add_argument("-b", "--backend", metavar="NAME")
    chat.add_argument("-m", "--model", metavar="MODEL")
    chat.add_argument("--default-backend", metavar="NAME")
    chat.set_defaults(func=_cmd_chat)
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    if args.command != "serve":
        logging.basicConfig(
            level=getattr(logging, os.getenv("CHATRELAY_LOG_LEVEL", "WARNING").upper(), logging.WARNING),
            format=LOG_FORMAT,
        )
    config, backends, defaults = _load_config(args)
    sys.exit(args.func(args, config, backends, defaults))


if __name__ == "__main__":
    main()
