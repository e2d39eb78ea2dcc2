"""
Generation orchestrator: chat messages in, ordered text fragments out.

`stream()` is an async generator. Closing it (client disconnect, caller
breaking out early) stops pulling from the engine: the engine iterator is
closed on the handle's worker thread and no further fragments are produced.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Dict, Iterator, List, Sequence

from ..errors import EngineFailure
from ..logging import get_logger
from .engine import InferenceEngine
from .slot import ModelSlot

logger = get_logger()

DEFAULT_MAX_TOKENS = 100
DEFAULT_TEMPERATURE = 0.6


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"

    @classmethod
    def parse(cls, raw: str) -> "Role":
        """Map a wire role onto a chat role; anything unrecognized speaks as the user."""
        try:
            return cls(raw)
        except ValueError:
            return cls.USER


@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: str

    def __post_init__(self):
        if not isinstance(self.role, Role):
            object.__setattr__(self, "role", Role.parse(self.role))


@dataclass(frozen=True)
class GenerationRequest:
    model_identity: str
    messages: Sequence[ChatMessage] = field(default_factory=tuple)
    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float = DEFAULT_TEMPERATURE
    stream: bool = False

    def __post_init__(self):
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be positive (got: {self.max_tokens})")
        if self.temperature < 0:
            raise ValueError(f"temperature must be >= 0 (got: {self.temperature})")
        # Freeze the history so the request stays immutable
        object.__setattr__(self, "messages", tuple(self.messages))


def to_engine_messages(messages: Sequence[ChatMessage]) -> List[Dict[str, str]]:
    """Convert chat history to the engine's role/content dicts, preserving order."""
    return [{"role": m.role.value, "content": m.content} for m in messages]


_EXHAUSTED = object()


def _next_fragment(iterator: Iterator[str]) -> object:
    try:
        return next(iterator)
    except StopIteration:
        return _EXHAUSTED


class GenerationOrchestrator:
    """Drives the inference engine through the chat model slot."""

    def __init__(self, slot: ModelSlot, engine: InferenceEngine):
        self.slot = slot
        self.engine = engine

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        """Yield generated fragments in order.

        Raises ModelNotLoadedError if the slot is empty and EngineFailure if the
        engine fails; fragments already yielded stand.
        """
        messages = to_engine_messages(request.messages)

        async with self.slot.use(request.model_identity) as handle:
            try:
                iterator = iter(
                    await handle.run(
                        self.engine.generate,
                        handle.model,
                        messages,
                        request.max_tokens,
                        request.temperature,
                    )
                )
            except Exception as e:
                raise EngineFailure(f"Generation failed to start: {e}") from e

            try:
                while True:
                    try:
                        fragment = await handle.run(_next_fragment, iterator)
                    except Exception as e:
                        logger.error(
                            f"Generation failed: {e}",
                            error_key=f"generate_{handle.identity}",
                            model=handle.identity,
                        )
                        raise EngineFailure(str(e)) from e
                    if fragment is _EXHAUSTED:
                        break
                    yield fragment
            finally:
                close = getattr(iterator, "close", None)
                if close is not None:
                    # Queued behind any in-flight step on the same worker thread
                    await handle.run(close)

    async def complete(self, request: GenerationRequest) -> str:
        """Drain the fragment stream and return the concatenated reply."""
        parts: List[str] = []
        async for fragment in self.stream(request):
            parts.append(fragment)
        return "".join(parts)

