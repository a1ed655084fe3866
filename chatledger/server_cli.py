"""
Chat Ledger Server CLI - start the transcript backend.

Usage:
    chatledger-server                        # Start with defaults
    chatledger-server --port 8000            # Custom port
    chatledger-server --env /path/to/.env    # Custom env file
    chatledger-server --db-url duckdb:///x   # Custom transcript database
"""

import argparse
import os
import sys
from pathlib import Path


def _apply_env_file(env_path: Path) -> None:
    """Load environment variables from a .env file."""
    from dotenv import load_dotenv

    if not env_path.exists():
        print(f"Error: env file not found: {env_path}", file=sys.stderr)
        sys.exit(2)

    load_dotenv(dotenv_path=str(env_path))


def build_parser() -> argparse.ArgumentParser:
    """Build argument parser for chatledger-server CLI."""
    parser = argparse.ArgumentParser(
        prog="chatledger-server",
        description="Start the chat transcript backend.",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to run the server on (default: 8000 or PORT env var).",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Host to bind to (default: 127.0.0.1 or CHATLEDGER_HOST env var).",
    )
    parser.add_argument(
        "--env",
        dest="env_file",
        default=None,
        help="Path to .env file (default: .env in current directory if present).",
    )
    parser.add_argument(
        "--db-url",
        dest="db_url",
        default=None,
        help="Transcript database URL (sets TRANSCRIPT_DB_URL).",
    )
    parser.add_argument(
        "--config-dir",
        dest="config_dir",
        default=None,
        help="Directory holding llmconfig.yml (sets APP_CONFIG_DIR).",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development (not recommended for production).",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit.",
    )
    return parser


def run_server(args: argparse.Namespace) -> int:
    """Run the server with the given arguments."""
    import uvicorn

    host = args.host or os.getenv("CHATLEDGER_HOST", "127.0.0.1")
    port = args.port or int(os.getenv("PORT", "8000"))

    print(f"Starting chatledger server on {host}:{port}")

    if args.reload:
        print("Warning: --reload is enabled. This is not recommended for production.")
        uvicorn.run("chatledger.main:app", host=host, port=port, reload=True)
    else:
        # One worker: running generations live in this process
        from chatledger.main import app

        uvicorn.run(app, host=host, port=port, workers=1)

    return 0


def main() -> None:
    """Main entry point for chatledger-server CLI."""
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        from chatledger.version import VERSION
        print(f"chatledger-server version {VERSION}")
        sys.exit(0)

    # Environment must be in place before the app module is imported
    if args.env_file:
        _apply_env_file(Path(args.env_file).expanduser())
    else:
        cwd_env = Path.cwd() / ".env"
        if cwd_env.exists():
            _apply_env_file(cwd_env)

    if args.db_url:
        os.environ["TRANSCRIPT_DB_URL"] = args.db_url
    if args.config_dir:
        config_dir = Path(args.config_dir).expanduser()
        if not config_dir.exists():
            print(f"Error: config folder not found: {config_dir}", file=sys.stderr)
            sys.exit(2)
        os.environ["APP_CONFIG_DIR"] = str(config_dir.resolve())

    sys.exit(run_server(args))


if __name__ == "__main__":
    main()
