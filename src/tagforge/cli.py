import argparse
import json
import logging
import sys
from datetime import datetime, timezone

from dotenv import load_dotenv

load_dotenv()

from common.events import Event, MessageUpdatedEvent
from tagforge.catalog import CategoryFilter, SessionCatalog
from tagforge.config import AgentProfile, ConfigError, Persona, TagForgeConfig, resolve_model_alias
from tagforge.diagnostics import DiagnosticLog
from tagforge.providers.base import ProviderCredentials
from tagforge.providers.registry import available_providers, create_provider
from tagforge.sessions.schema import CATEGORIES
from tagforge.sessions.store import SessionStore
from tagforge.streaming.errors import ProviderError, classify_error
from tagforge.workspace import ChatWorkspace


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        payload = {
            "ts": ts,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(
    verbose: bool = False,
    quiet: bool = False,
    log_format: str = "text",
    diagnostics: DiagnosticLog | None = None,
) -> None:
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    if log_format == "json":
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
        logging.basicConfig(level=level, handlers=[handler])
    else:
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("LiteLLM").setLevel(logging.WARNING)

    if diagnostics is not None:
        sink = diagnostics.handler()
        for name in ("tagforge", "common"):
            logging.getLogger(name).addHandler(sink)


def _open_store(
    args: argparse.Namespace,
    diagnostics: DiagnosticLog | None = None,
    migrate: bool = True,
) -> tuple[TagForgeConfig, SessionStore]:
    setup_logging(args.verbose, args.quiet, args.log_format, diagnostics)
    config = TagForgeConfig.from_env(args.data_dir)
    store = SessionStore(config.data_path)
    if migrate:
        store.migrate_legacy_files()
    return config, store


def _credentials(args: argparse.Namespace) -> ProviderCredentials:
    return ProviderCredentials(api_key=args.api_key, base_url=args.endpoint)


def cmd_chat(args: argparse.Namespace) -> int:
    diagnostics = DiagnosticLog()
    try:
        config, store = _open_store(args, diagnostics)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    workspace = ChatWorkspace(store, config=config, diagnostics=diagnostics)
    workspace.profile = AgentProfile(
        name=args.provider,
        provider=args.provider,
        model=resolve_model_alias(args.model),
        api_key=args.api_key,
        endpoint_url=args.endpoint,
    )
    if args.persona:
        workspace.persona = Persona(name="cli", system_prompt=args.persona)

    def on_event(event: Event) -> None:
        if isinstance(event, MessageUpdatedEvent):
            sys.stdout.write(event.delta)
            sys.stdout.flush()

    workspace.emitter.subscribe(on_event)

    if args.session:
        if not workspace.switch_session(args.session):
            print(f"Error: Session '{args.session}' not found", file=sys.stderr)
            workspace.shutdown()
            return 1
    else:
        workspace.open_new_session(args.category)

    future = workspace.start_generation(args.prompt)
    if future is None:
        last = workspace.messages[-1] if workspace.messages else None
        if last is not None:
            print(f"Error: {last.content}", file=sys.stderr)
        workspace.shutdown()
        return 1

    try:
        result = future.result()
    except KeyboardInterrupt:
        workspace.stop_generation()
        result = future.result()
    finally:
        workspace.shutdown()

    print()
    if result.error:
        print(f"Generation Failed: {result.error}", file=sys.stderr)
        return 1
    if result.notice is not None:
        print(result.notice.content, file=sys.stderr)
    elif result.latency_ms is not None and not args.quiet:
        print(f"[{workspace.session.id}] {result.latency_ms}ms", file=sys.stderr)
    return 0


def cmd_sessions_list(args: argparse.Namespace) -> int:
    _, store = _open_store(args)
    catalog = SessionCatalog(store)
    catalog.refresh()
    catalog.set_filter(CategoryFilter(args.category))
    sessions = catalog.set_search(args.search or "")

    if not sessions:
        print("No sessions found.")
        return 0

    print(f"{'ID':<36} {'Title':<40} {'Msgs':<6} {'Modified'}")
    print("-" * 100)
    for s in sessions:
        print(f"{s.id:<36} {s.title[:38]:<40} {s.message_count:<6} {s.last_modified:%Y-%m-%d %H:%M}")
    return 0


def cmd_sessions_delete(args: argparse.Namespace) -> int:
    _, store = _open_store(args)
    if not store.delete_session(args.session_id):
        print(f"Error: Session '{args.session_id}' not found")
        return 1
    print(f"Deleted {args.session_id}")
    return 0


def cmd_sessions_clear(args: argparse.Namespace) -> int:
    _, store = _open_store(args)
    count = store.delete_all_sessions(args.category)
    print(f"Deleted {count} {args.category} sessions")
    return 0


def cmd_sessions_prune(args: argparse.Namespace) -> int:
    _, store = _open_store(args)
    total = sum(store.delete_empty_sessions(category) for category in CATEGORIES)
    print(f"Removed {total} empty sessions")
    return 0


def cmd_sessions_rename(args: argparse.Namespace) -> int:
    _, store = _open_store(args)
    session = store.rename_session(args.session_id, args.title)
    if session is None:
        print(f"Error: Could not rename '{args.session_id}'")
        return 1
    print(f"Renamed {session.id} to {session.title!r}")
    return 0


def cmd_migrate(args: argparse.Namespace) -> int:
    _, store = _open_store(args, migrate=False)
    migrated = store.migrate_legacy_files()
    for session in migrated:
        print(f"{session.id}  {session.title}")
    print(f"Migrated {len(migrated)} legacy files")
    return 0


def cmd_models(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    try:
        provider = create_provider(args.provider)
        models = provider.list_models(_credentials(args))
    except ProviderError as e:
        print(f"Error: {classify_error(e)}", file=sys.stderr)
        return 1
    for model in models:
        print(model)
    return 0


def cmd_ping(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    try:
        provider = create_provider(args.provider)
        provider.ping(_credentials(args))
    except ProviderError as e:
        print(f"Connection failed: {classify_error(e)}", file=sys.stderr)
        return 1
    print("Connection OK")
    return 0


def _add_provider_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--provider",
        default="litellm",
        help=f"Provider implementation (available: {', '.join(available_providers())})",
    )
    parser.add_argument("--endpoint", help="Base URL of an OpenAI-compatible endpoint")
    parser.add_argument("--api-key", help="API key for the provider")


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="tagforge",
        description="TagForge - chat and tag generation with persistent sessions",
    )
    parser.add_argument("--data-dir", help="Data directory (default: $TAGFORGE_DATA_DIR or ~/.tagforge)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Warnings and errors only")
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        default="text",
        help="Log format (default: text)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    chat_parser = subparsers.add_parser("chat", help="Send a prompt and stream the reply")
    chat_parser.add_argument("prompt", help="Prompt text")
    chat_parser.add_argument("--model", "-m", default="gpt-4o-mini", help="Model name or alias")
    chat_parser.add_argument("--session", "-s", metavar="SESSION_ID", help="Continue an existing session")
    chat_parser.add_argument(
        "--category", "-c", choices=list(CATEGORIES), default="chat", help="Category for a new session"
    )
    chat_parser.add_argument("--persona", help="Persona system prompt for generator sessions ({input} is replaced)")
    _add_provider_args(chat_parser)
    chat_parser.set_defaults(func=cmd_chat)

    sessions_parser = subparsers.add_parser("sessions", help="Manage saved sessions")
    sessions_sub = sessions_parser.add_subparsers(dest="sessions_command")

    list_parser = sessions_sub.add_parser("list", help="List sessions")
    list_parser.add_argument(
        "--category", "-c", choices=[f.value for f in CategoryFilter], default="all"
    )
    list_parser.add_argument("--search", help="Case-insensitive search in title and preview")
    list_parser.set_defaults(func=cmd_sessions_list)

    delete_parser = sessions_sub.add_parser("delete", help="Delete one session")
    delete_parser.add_argument("session_id")
    delete_parser.set_defaults(func=cmd_sessions_delete)

    clear_parser = sessions_sub.add_parser("clear", help="Delete every session in a category")
    clear_parser.add_argument("category", choices=list(CATEGORIES))
    clear_parser.set_defaults(func=cmd_sessions_clear)

    prune_parser = sessions_sub.add_parser("prune", help="Delete sessions without messages")
    prune_parser.set_defaults(func=cmd_sessions_prune)

    rename_parser = sessions_sub.add_parser("rename", help="Rename a session")
    rename_parser.add_argument("session_id")
    rename_parser.add_argument("title")
    rename_parser.set_defaults(func=cmd_sessions_rename)

    migrate_parser = subparsers.add_parser("migrate", help="Import legacy history files")
    migrate_parser.set_defaults(func=cmd_migrate)

    models_parser = subparsers.add_parser("models", help="List models offered by a provider")
    _add_provider_args(models_parser)
    models_parser.set_defaults(func=cmd_models)

    ping_parser = subparsers.add_parser("ping", help="Check provider connectivity")
    _add_provider_args(ping_parser)
    ping_parser.set_defaults(func=cmd_ping)

    args = parser.parse_args()

    if not getattr(args, "func", None):
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
