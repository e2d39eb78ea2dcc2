"""
Inference engine boundary.

The serving layer only talks to an `InferenceEngine`; tokenization, forward
passes, sampling and pooling all live behind it. Every method is blocking and
is executed on the worker thread owned by the model handle (see slot.py).

`MLXEngine` is the production implementation on top of mlx-lm (chat) and
mlx-embeddings (embeddings). MLX is imported lazily so the serving layer
imports cleanly on machines without it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Protocol

from ..config import IbexConfig
from ..logging import get_logger

logger = get_logger()


class InferenceEngine(Protocol):
    def load_chat_model(self, identity: str) -> Any:
        ...

    def generate(
        self,
        model: Any,
        messages: List[Dict[str, str]],
        max_tokens: int,
        temperature: float,
    ) -> Iterator[str]:
        ...

    def load_embedding_model(self, identity: str) -> Any:
        ...

    def embed(self, model: Any, text: str) -> List[float]:
        ...


@dataclass
class LoadedModel:
    """Model weights plus the tokenizer that belongs to them."""

    identity: str
    reference: str
    model: Any
    tokenizer: Any


class MLXEngine:
    """Inference engine backed by mlx-lm and mlx-embeddings."""

    def __init__(self, config: Optional[IbexConfig] = None):
        self.config = config or IbexConfig()

    def _resolve(self, identity: str) -> str:
        reference = self.config.resolve_model_reference(identity)
        if reference != identity:
            logger.debug(f"Resolved {identity} to local storage", model=identity, path=reference)
        return reference

    def load_chat_model(self, identity: str) -> LoadedModel:
        from mlx_lm import load  # type: ignore

        reference = self._resolve(identity)
        model, tokenizer = load(reference)
        return LoadedModel(identity=identity, reference=reference, model=model, tokenizer=tokenizer)

    def load_embedding_model(self, identity: str) -> LoadedModel:
        from mlx_embeddings.utils import load  # type: ignore

        reference = self._resolve(identity)
        model, tokenizer = load(reference)
        return LoadedModel(identity=identity, reference=reference, model=model, tokenizer=tokenizer)

    @staticmethod
    def _format_conversation(tokenizer: Any, messages: List[Dict[str, str]]) -> str:
        """Apply the model's chat template, with a plain transcript for template-less models."""
        try:
            return tokenizer.apply_chat_template(
                messages,
                tokenize=False,
                add_generation_prompt=True,
            )
        except Exception as e:
            logger.debug(f"Chat template unavailable, using plain transcript: {e}")
            parts = [f"{m['role']}: {m['content']}" for m in messages]
            parts.append("assistant:")
            return "\n".join(parts)

    def generate(
        self,
        model: LoadedModel,
        messages: List[Dict[str, str]],
        max_tokens: int,
        temperature: float,
    ) -> Iterator[str]:
        """Yield text fragments as mlx-lm produces them.

        No prompt cache is passed, so every call starts from a fresh context.
        """
        from mlx_lm import stream_generate  # type: ignore
        from mlx_lm.sample_utils import make_sampler  # type: ignore

        prompt = self._format_conversation(model.tokenizer, messages)
        sampler = make_sampler(temp=temperature)

        for response in stream_generate(
            model.model,
            model.tokenizer,
            prompt=prompt,
            max_tokens=max_tokens,
            sampler=sampler,
        ):
            if response.text:
                yield response.text

    def embed(self, model: LoadedModel, text: str) -> List[float]:
        """Tokenize, run the forward pass, mean-pool and L2-normalize to one vector."""
        import mlx.core as mx  # type: ignore

        tokens = model.tokenizer.encode(text)
        input_ids = mx.array([tokens])
        outputs = model.model(input_ids)

        hidden_states = getattr(outputs, "last_hidden_state", outputs)
        pooled = mx.mean(hidden_states, axis=1)
        norm = mx.linalg.norm(pooled, axis=1, keepdims=True)
        pooled = pooled / mx.maximum(norm, 1e-9)
        mx.eval(pooled)
        return pooled[0].tolist()
