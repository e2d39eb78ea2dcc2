"""Embedding orchestrator: one input string to one fixed-length vector."""

from typing import List, Optional

from ..errors import EmptyInputError, EngineFailure
from ..logging import get_logger
from .engine import InferenceEngine
from .slot import ModelSlot

logger = get_logger()


class EmbeddingOrchestrator:
    """Runs the embedding model held by the embedding slot."""

    def __init__(self, slot: ModelSlot, engine: InferenceEngine):
        self.slot = slot
        self.engine = engine

    async def embed(self, text: str, identity: Optional[str] = None) -> List[float]:
        """Return the pooled, normalized vector for `text`.

        When `identity` is given the resident model must be that identity.
        """
        if not text or not text.strip():
            raise EmptyInputError("Input cannot be empty")

        async with self.slot.use(identity) as handle:
            try:
                vector = await handle.run(self.engine.embed, handle.model, text)
            except Exception as e:
                logger.error(
                    f"Embedding failed: {e}",
                    error_key=f"embed_{handle.identity}",
                    model=handle.identity,
                )
                raise EngineFailure(str(e)) from e

        return [float(v) for v in vector]
