#!/usr/bin/env python3
"""Ibex CLI - OpenAI-compatible server for local MLX models."""

import argparse
import sys
from typing import List, Optional

from pydantic import ValidationError

from . import __version__
from .operations.serve import start_server


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ibex",
        description="Ibex - OpenAI-compatible API server for local MLX models",
    )
    parser.add_argument("--version", action="store_true", help="Show version information and exit")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the API server in the foreground")
    serve_parser.add_argument("--host", help="Host address to bind (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, help="Port to bind (default: 8080)")
    serve_parser.add_argument("--model", help="Chat model to load at startup")
    serve_parser.add_argument("--embedding-model", dest="embedding_model", help="Embedding model to load at startup")
    serve_parser.add_argument("--max-tokens", dest="max_tokens", type=int,
                              help="Default max tokens when a request omits it (default: 100)")
    serve_parser.add_argument("--log-level", dest="log_level",
                              choices=["debug", "info", "warning", "error"], help="Logging level")
    serve_parser.add_argument("--log-json", dest="log_json", action="store_true", help="Emit logs as JSON lines")
    serve_parser.add_argument("--sse-done", dest="sse_done", action="store_true",
                              help="End streaming responses with a 'data: [DONE]' frame")
    serve_parser.add_argument("--verbose", action="store_true", help="Show detailed output")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"ibex {__version__}")
        return 0

    if args.command == "serve":
        try:
            start_server(
                model=args.model,
                embedding_model=args.embedding_model,
                port=args.port,
                host=args.host,
                max_tokens=args.max_tokens,
                log_level=args.log_level,
                log_json=args.log_json,
                sse_done=args.sse_done,
                verbose=args.verbose,
            )
        except ValidationError as e:
            print(f"Invalid configuration: {e}", file=sys.stderr)
            return 1
        except OSError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        return 0

    parser.print_help()
    return 2


if __name__ == "__main__":
    sys.exit(main())
