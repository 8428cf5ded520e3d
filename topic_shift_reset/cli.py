#!/usr/bin/env python3
"""
topic-shift-reset CLI
Launcher for the hook server plus operator maintenance commands
"""
import sys

from .config import LOG_LEVEL, SERVER_HOST, SERVER_PORT, cfg_get
from .logging_utils import get_logger, setup_logger

log = get_logger()


def _configure_logging() -> None:
    level = "DEBUG" if cfg_get("topic_shift.debug", False) is True else LOG_LEVEL
    setup_logger(level, cfg_get("logging.file", None) or None)


def serve(host=SERVER_HOST, port=SERVER_PORT):
    """Launch the hook server"""
    try:
        import uvicorn
        log.info(f"topic-shift-reset: starting hook server on {host}:{port}")
        uvicorn.run(
            "topic_shift_reset.router_fastapi:create_app",
            factory=True,
            host=host,
            port=port,
            reload=False,
        )
    except KeyboardInterrupt:
        log.info("topic-shift-reset: shutting down")
    except Exception as e:
        log.exception(f"topic-shift-reset: server error: {e}")
        return False
    return True


def recover_orphans_cmd(store, agent="main"):
    """Re-link orphan transcripts next to a registry file"""
    from .persistence import recover_orphans

    try:
        recovered = recover_orphans(store, agent)
    except Exception as e:
        log.error(f"topic-shift-reset: orphan-recovery failed store={store} err={e}")
        return False
    print(f"recovered={recovered} store={store}")
    return True


def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(
        description="topic-shift-reset: rotate chat sessions on topic shifts",
        epilog="Example: topic-shift-reset serve --port 9010"
    )

    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Start the hook server")
    serve_parser.add_argument("--host", default=SERVER_HOST, help=f"Host (default: {SERVER_HOST})")
    serve_parser.add_argument("--port", type=int, default=SERVER_PORT, help=f"Port (default: {SERVER_PORT})")

    recover_parser = subparsers.add_parser("recover-orphans", help="Re-link orphan transcripts into a registry")
    recover_parser.add_argument("--store", required=True, help="Path to sessions.json")
    recover_parser.add_argument("--agent", default="main", help="Agent id for recovered keys (default: main)")

    args = parser.parse_args(argv)
    _configure_logging()

    if args.command == "serve":
        success = serve(host=args.host, port=args.port)
        sys.exit(0 if success else 1)
    elif args.command == "recover-orphans":
        success = recover_orphans_cmd(args.store, args.agent)
        sys.exit(0 if success else 1)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
