#!/usr/bin/env python3
"""FastAPI server entry point for the generation dispatch service."""

import sys

import uvicorn
from dotenv import load_dotenv

load_dotenv()


def _check_config() -> int:
    from config.config import Config

    config = Config()
    problems = config.validate()
    for problem in problems:
        print(f"Config problem: {problem}", file=sys.stderr)
    print(f"Storage: {config.get_storage_info()}")
    if config.uses_database:
        from db.tables import preload_tables

        preload_tables()
    return 1 if problems else 0


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Generation dispatch FastAPI server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    parser.add_argument("--check", action="store_true", help="Validate configuration and exit")

    args = parser.parse_args()

    if args.check:
        sys.exit(_check_config())

    uvicorn.run(
        "server.app:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )
