"""Server configuration."""

import os
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

DEFAULT_MODEL_STORAGE_DIRECTORY = Path.home() / ".ibex" / "models"

# Environment variable -> config field
_ENV_FIELDS = {
    "IBEX_HOST": "host",
    "IBEX_PORT": "port",
    "IBEX_MODEL_DIR": "model_storage_directory",
    "IBEX_CHAT_MODEL": "chat_model",
    "IBEX_EMBEDDING_MODEL": "embedding_model",
    "IBEX_MAX_TOKENS": "default_max_tokens",
    "IBEX_LOG_LEVEL": "log_level",
    "IBEX_LOG_JSON": "log_json",
    "IBEX_SSE_DONE": "sse_done_sentinel",
}


class IbexConfig(BaseModel):
    """Configuration for the Ibex server.

    Constructed once by the entry point and passed to the components that
    need it; there is no module-level instance.
    """

    host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=0, le=65535)
    model_storage_directory: Path = DEFAULT_MODEL_STORAGE_DIRECTORY

    # Preloaded at startup in the foreground `serve` mode only
    chat_model: Optional[str] = None
    embedding_model: Optional[str] = None

    # Generation defaults when a request omits them
    default_max_tokens: int = Field(default=100, gt=0)
    default_temperature: float = Field(default=0.6, ge=0.0)

    # Strict OpenAI clients expect a terminal "data: [DONE]" frame
    sse_done_sentinel: bool = False

    restart_delay: float = Field(default=0.5, ge=0.0)
    shutdown_timeout: float = Field(default=5.0, gt=0.0)

    log_level: str = "info"
    log_json: bool = False

    @classmethod
    def from_env(cls, **overrides: Any) -> "IbexConfig":
        """Build a config from IBEX_* environment variables; explicit overrides win."""
        values = {}
        for env_name, field_name in _ENV_FIELDS.items():
            raw = os.environ.get(env_name)
            if raw is not None and raw != "":
                values[field_name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def ensure_model_storage_directory_exists(self) -> Path:
        path = self.model_storage_directory.expanduser()
        path.mkdir(parents=True, exist_ok=True)
        return path

    def model_path(self, model_id: str) -> Path:
        """Local storage path for a registry id ("org/name" -> "<storage>/org--name")."""
        safe_name = model_id.replace("/", "--")
        return self.model_storage_directory.expanduser() / safe_name

    def resolve_model_reference(self, model_id: str) -> str:
        """Prefer a copy in model storage; otherwise hand the identity to the engine as-is."""
        local = self.model_path(model_id)
        if local.is_dir():
            return str(local)
        return model_id
