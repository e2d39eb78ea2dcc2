"""
Model slot: single-owner holder of at most one loaded model.

One slot exists per model kind (chat, embedding). A slot moves through
empty -> loading -> ready(identity) -> loading(other) -> ready(other) ...
and never holds two models at once.

Loads are single-flight: while a load is executing, every other caller waits
on the in-flight event and then re-checks, so concurrent requests for the
same identity converge on one physical load and requests for different
identities serialize (the last successful load owns the slot).
"""

import asyncio
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional

from ..errors import ModelLoadError, ModelNotLoadedError
from ..logging import get_logger

logger = get_logger()


class ModelHandle:
    """A loaded model plus the worker thread that runs every engine call on it.

    The single worker serializes engine access (the engine expects one caller
    per model at a time) and keeps blocking MLX work off the event loop.
    """

    def __init__(self, kind: str, identity: str, model: Any):
        self.kind = kind
        self.identity = identity
        self.model = model
        self.lock = asyncio.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"ibex-{kind}")
        self._users = 0
        self._retired = False

    async def run(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    def retire(self) -> None:
        """Drop the handle once its last in-flight user is done with it."""
        self._retired = True
        if self._users == 0:
            self._close()

    def _close(self) -> None:
        self._executor.shutdown(wait=False)
        self.model = None


class ModelSlot:
    """Holds the loaded model for one kind and enforces single-flight loading."""

    def __init__(self, kind: str, loader: Callable[[str], Any]):
        self.kind = kind
        self._loader = loader
        self._handle: Optional[ModelHandle] = None
        self._inflight: Optional[asyncio.Event] = None
        self.load_count = 0

    @property
    def current_identity(self) -> Optional[str]:
        # Derived from the handle, so identity is present iff the handle is
        return self._handle.identity if self._handle is not None else None

    @property
    def has_model(self) -> bool:
        return self._handle is not None

    @property
    def is_loading(self) -> bool:
        return self._inflight is not None

    def _is_ready(self, identity: str) -> bool:
        return self._handle is not None and self._handle.identity == identity

    async def _wait_for_inflight(self) -> None:
        while self._inflight is not None:
            logger.debug(f"Waiting for in-flight {self.kind} model load", kind=self.kind)
            await self._inflight.wait()

    async def load(self, identity: str) -> None:
        """Load `identity` unconditionally, replacing any previous model.

        On failure the slot keeps whatever it held before.
        """
        await self._wait_for_inflight()
        await self._start_load(identity, discard_previous=False)

    async def load_if_needed(self, identity: str) -> None:
        """Make `identity` the resident model, loading it only if necessary."""
        while True:
            if self._is_ready(identity):
                return
            if self._inflight is None:
                break
            logger.debug(f"Waiting for in-flight {self.kind} model load", kind=self.kind, model=identity)
            await self._inflight.wait()

        await self._start_load(identity, discard_previous=True)

    async def _start_load(self, identity: str, discard_previous: bool) -> None:
        done = asyncio.Event()
        self._inflight = done
        task = asyncio.ensure_future(self._load_and_install(identity, discard_previous, done))
        # A cancelled caller must not abort the load other callers are waiting on
        await asyncio.shield(task)

    async def _load_and_install(self, identity: str, discard_previous: bool, done: asyncio.Event) -> None:
        try:
            previous = self._handle
            if discard_previous and previous is not None and previous.identity != identity:
                # Two resident models rarely fit in unified memory; free the old one first
                logger.info(
                    f"Switching {self.kind} model from {previous.identity} to {identity}",
                    kind=self.kind,
                    model=identity,
                )
                self._handle = None
                previous.retire()

            logger.info(f"Loading {self.kind} model: {identity}", kind=self.kind, model=identity)
            start = time.time()
            loop = asyncio.get_running_loop()
            try:
                model = await loop.run_in_executor(None, self._loader, identity)
            except ModelLoadError:
                raise
            except Exception as e:
                logger.error(
                    f"{self.kind.capitalize()} model load failed: {identity}",
                    error_key=f"{self.kind}_load_{identity}",
                    detail=str(e),
                )
                raise ModelLoadError(identity, str(e)) from e

            replaced = self._handle
            self._handle = ModelHandle(self.kind, identity, model)
            self.load_count += 1
            if replaced is not None:
                replaced.retire()
            logger.info(
                f"{self.kind.capitalize()} model loaded in {time.time() - start:.2f}s: {identity}",
                kind=self.kind,
                model=identity,
            )
        finally:
            if self._inflight is done:
                self._inflight = None
            done.set()

    @asynccontextmanager
    async def use(self, identity: Optional[str] = None) -> AsyncIterator[ModelHandle]:
        """Scoped, exclusive access to the resident model.

        Raises ModelNotLoadedError when the slot is empty, or when `identity` is
        given and another model took the slot in the meantime. The handle must
        not be kept after the block exits.
        """
        handle = self._handle
        if handle is None:
            raise ModelNotLoadedError(self.kind, identity)
        if identity is not None and handle.identity != identity:
            raise ModelNotLoadedError(self.kind, identity, resident=handle.identity)
        handle._users += 1
        try:
            async with handle.lock:
                yield handle
        finally:
            handle._users -= 1
            if handle._retired and handle._users == 0:
                handle._close()

    def unload(self) -> None:
        handle = self._handle
        self._handle = None
        if handle is not None:
            logger.info(f"Unloaded {self.kind} model: {handle.identity}", kind=self.kind, model=handle.identity)
            handle.retire()
