#!/usr/bin/env python3
"""
Zorem -- ephemeral rooms with short join codes.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8000 --reload
  python main.py generate-secret
  python main.py reap

Commands:
  serve            Run the HTTP API under uvicorn (PORT from the environment by default)
  generate-secret  Print a random value suitable for SECRET_KEY
  reap             Release codes held by expired rooms, purge spent auth tokens and
                   delete stored media of expired or closed rooms

Environment variables:
  SECRET_KEY    Required unless DEBUG=true. At least 32 characters.
  DATABASE_URL  SQLAlchemy URL. Defaults to a SQLite file next to the code.
  See core/config.py for the full list.
"""

import argparse
import logging
import secrets
import sys

logger = logging.getLogger("zorem.cli")


def _serve(args: argparse.Namespace) -> None:
    import uvicorn

    from core.config import get_settings

    port = args.port or get_settings().port
    uvicorn.run("asgi:app", host=args.host, port=port, reload=args.reload)


def _generate_secret(args: argparse.Namespace) -> None:
    print(secrets.token_hex(32))


def _reap(args: argparse.Namespace) -> None:
    """One maintenance pass. Safe to run from cron while the API is serving."""
    from auth.service import AuthService
    from auth.store import UserStore
    from auth.tokens import TokenService
    from core.config import get_settings
    from core.database import create_db_engine
    from media import storage
    from media.uploads import UploadBridge
    from rooms.service import RoomService
    from rooms.store import RoomStore

    settings = get_settings()
    engine = create_db_engine(settings.database_url)
    try:
        room_store = RoomStore(engine)
        released = RoomService(room_store, settings).purge_expired_codes()
        purged = AuthService(UserStore(engine), TokenService(settings), settings).purge_expired_tokens()
        deleted = None
        if settings.storage_configured:
            bridge = UploadBridge(room_store, storage.build_object_storage(settings), settings)
            deleted = bridge.purge_expired_media()
    finally:
        engine.dispose()
    print(f"Released {released} room code(s), purged {purged} expired token(s).")
    if deleted is None:
        print("Object storage not configured; media cleanup skipped.")
    else:
        print(f"Deleted {deleted} media object(s) of expired rooms.")


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    parser = argparse.ArgumentParser(
        prog="zorem",
        description="Zorem room and viewer API.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  DEBUG=true python main.py serve --reload
  SECRET_KEY=$(python main.py generate-secret) python main.py serve
  python main.py reap
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=None, help="Port (default: PORT setting)")
    serve.add_argument("--reload", action="store_true", help="Restart on code changes (development only)")
    serve.set_defaults(func=_serve)

    gen = sub.add_parser("generate-secret", help="Print a random SECRET_KEY value")
    gen.set_defaults(func=_generate_secret)

    reap = sub.add_parser("reap", help="Release expired room codes and purge spent tokens")
    reap.set_defaults(func=_reap)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    try:
        args.func(args)
    except ValueError as exc:
        # pydantic-settings raises ValueError subclasses for bad configuration.
        print(f"  [!] Configuration error: {exc}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
