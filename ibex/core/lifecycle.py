"""
Server lifecycle manager.

Supervises one uvicorn listener inside the caller's event loop:

    stopped -> starting -> running -> stopping -> stopped
    starting -> error(message) when storage or the listener fails
    running -> error(message) when the listener exits on its own

Only the manager's own methods change state, and each change swaps in a new
immutable `ServerState`, so observers always see one whole state.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from ..config import IbexConfig
from ..logging import get_logger, uvicorn_log_config
from .engine import InferenceEngine, MLXEngine
from .server_base import create_app

logger = get_logger()

_STARTUP_POLL_INTERVAL = 0.05


class ServerStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass(frozen=True)
class ServerState:
    status: ServerStatus
    message: Optional[str] = None


class ServerManager:
    """Starts, stops and restarts the HTTP listener.

    Each start wires the pipelines to fresh, empty model slots; models load
    lazily on the first request that names them.
    """

    def __init__(self, config: IbexConfig, engine: Optional[InferenceEngine] = None):
        self.config = config
        self.engine = engine or MLXEngine(config)
        self._state = ServerState(ServerStatus.STOPPED)
        self._server: Any = None
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state.status == ServerStatus.RUNNING

    @property
    def is_starting(self) -> bool:
        return self._state.status == ServerStatus.STARTING

    @property
    def status_text(self) -> str:
        state = self._state
        if state.status == ServerStatus.RUNNING:
            return f"Running on {self.config.host}:{self.bound_port or self.config.port}"
        if state.status == ServerStatus.ERROR:
            return f"Error: {state.message}"
        return state.status.value.capitalize()

    @property
    def bound_port(self) -> Optional[int]:
        """Port the listener actually bound (differs from config when port is 0)."""
        server = self._server
        if server is None or not getattr(server, "servers", None):
            return None
        for listener in server.servers:
            for sock in listener.sockets:
                return sock.getsockname()[1]
        return None

    def _transition(self, status: ServerStatus, message: Optional[str] = None) -> None:
        previous = self._state.status
        self._state = ServerState(status, message)
        logger.debug(f"Server state {previous.value} -> {status.value}", status=status.value)

    async def start(self) -> None:
        if self._state.status != ServerStatus.STOPPED:
            logger.info(f"Server start ignored (state: {self._state.status.value})")
            return

        self._transition(ServerStatus.STARTING)
        try:
            storage = self.config.ensure_model_storage_directory_exists()
        except OSError as e:
            message = f"Cannot create model storage directory: {e}"
            logger.error(message)
            self._transition(ServerStatus.ERROR, message)
            return
        logger.debug(f"Model storage: {storage}")

        import uvicorn

        app = create_app(self.config, engine=self.engine)

        options: Dict[str, Any] = {}
        log_config = uvicorn_log_config(self.config.log_level)
        if log_config is not None:
            options["log_config"] = log_config

        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=self.config.host,
                port=self.config.port,
                log_level=self.config.log_level.lower(),
                lifespan="on",
                **options,
            )
        )
        self._server = server
        self._task = asyncio.create_task(self._serve(server))

        while not server.started:
            if self._task.done():
                message = self._exit_message(self._task) or "Server exited during startup"
                logger.error(f"Server failed to start: {message}", error_key="server_start")
                self._server = None
                self._task = None
                self._transition(ServerStatus.ERROR, message)
                return
            await asyncio.sleep(_STARTUP_POLL_INTERVAL)

        self._transition(ServerStatus.RUNNING)
        self._task.add_done_callback(self._on_serve_exit)
        logger.info(f"Ibex server running on http://{self.config.host}:{self.bound_port}")

    async def _serve(self, server: Any) -> Optional[str]:
        """Run the listener; returns an error message if it could not bind."""
        try:
            await server.serve()
        except SystemExit:
            # uvicorn exits the process when it cannot bind
            return f"Could not bind {self.config.host}:{self.config.port}"
        except OSError as e:
            return str(e)
        return None

    @staticmethod
    def _exit_message(task: asyncio.Task) -> Optional[str]:
        if task.cancelled():
            return "Server task cancelled"
        exc = task.exception()
        if exc is not None:
            return f"{type(exc).__name__}: {exc}"
        return task.result()

    def _on_serve_exit(self, task: asyncio.Task) -> None:
        # stop() moves to STOPPING before the listener exits
        if task is not self._task or self._state.status != ServerStatus.RUNNING:
            return
        message = self._exit_message(task) or "Server stopped unexpectedly"
        logger.error(f"Server exited while running: {message}", error_key="server_exit")
        self._server = None
        self._task = None
        self._transition(ServerStatus.ERROR, message)

    async def stop(self) -> None:
        if self._state.status != ServerStatus.RUNNING:
            logger.debug(f"Server stop ignored (state: {self._state.status.value})")
            return

        self._transition(ServerStatus.STOPPING)
        server, task = self._server, self._task
        server.should_exit = True
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.config.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning("Graceful shutdown timed out, cancelling server task")
            server.force_exit = True
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        except Exception as e:
            logger.warning(f"Server task failed during shutdown: {e}")

        self._server = None
        self._task = None
        self._transition(ServerStatus.STOPPED)
        logger.info("Ibex server stopped")

    async def restart(self) -> None:
        logger.info("Restarting Ibex server")
        await self.stop()
        # Give the OS a moment to release the listening socket
        await asyncio.sleep(self.config.restart_delay)
        await self.start()
