"""
Serve operation: run the Ibex server in the foreground.
"""

import os
from typing import Optional

from ..config import IbexConfig
from ..core.server_base import run_server
from ..logging import set_json_mode


def build_config(
    model: Optional[str] = None,
    embedding_model: Optional[str] = None,
    port: Optional[int] = None,
    host: Optional[str] = None,
    max_tokens: Optional[int] = None,
    log_level: Optional[str] = None,
    log_json: bool = False,
    sse_done: bool = False,
) -> IbexConfig:
    """Merge command-line options over IBEX_* environment settings."""
    return IbexConfig.from_env(
        host=host,
        port=port,
        chat_model=model,
        embedding_model=embedding_model,
        default_max_tokens=max_tokens,
        log_level=log_level,
        # Flags can only switch these on; unset flags defer to the environment
        log_json=True if log_json else None,
        sse_done_sentinel=True if sse_done else None,
    )


def start_server(
    model: Optional[str] = None,
    embedding_model: Optional[str] = None,
    port: Optional[int] = None,
    host: Optional[str] = None,
    max_tokens: Optional[int] = None,
    log_level: Optional[str] = None,
    log_json: bool = False,
    sse_done: bool = False,
    verbose: bool = False,
) -> None:
    """Start the OpenAI-compatible API server.

    Args:
        model: Chat model to load before accepting requests (optional)
        embedding_model: Embedding model to load before accepting requests (optional)
        port: Port to bind the server to
        host: Host address to bind to
        max_tokens: Default maximum tokens when a request omits max_tokens
        log_level: Logging level
        log_json: Emit logs as one JSON object per line
        sse_done: Terminate streams with a `data: [DONE]` frame
        verbose: Show detailed output
    """
    config = build_config(
        model=model,
        embedding_model=embedding_model,
        port=port,
        host=host,
        max_tokens=max_tokens,
        log_level=log_level,
        log_json=log_json,
        sse_done=sse_done,
    )
    set_json_mode(config.log_json)
    # Suppress tokenizer fork warnings under uvicorn
    os.environ.setdefault("TOKENIZERS_PARALLELISM", "false")

    storage = config.ensure_model_storage_directory_exists()

    if verbose:
        print("Starting Ibex server...")
        print(f"Model storage: {storage}")
        if config.chat_model:
            print(f"Pre-loading chat model: {config.chat_model}")
        if config.embedding_model:
            print(f"Pre-loading embedding model: {config.embedding_model}")
        print(f"Server will bind to: http://{config.host}:{config.port}")

    run_server(config)
