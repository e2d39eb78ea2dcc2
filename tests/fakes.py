"""In-process stand-ins for the inference engine (no MLX required)."""

import threading
import time
from typing import Any, Dict, Iterator, List, Optional, Sequence


class FakeEngine:
    """Deterministic engine: fixed fragments for chat, fixed vector for embeddings.

    Records every load and generate call so tests can count physical loads and
    check what the engine was asked to do.
    """

    def __init__(
        self,
        fragments: Sequence[str] = ("Hel", "lo"),
        vector: Sequence[float] = (0.1, 0.2, 0.3),
        fail_loads: Sequence[str] = (),
        load_delay: float = 0.0,
        fail_after: Optional[int] = None,
        fail_embed: bool = False,
        fragment_delay: float = 0.0,
    ):
        self.fragments = list(fragments)
        self.vector = list(vector)
        self.fail_loads = set(fail_loads)
        self.load_delay = load_delay
        self.fail_after = fail_after
        self.fail_embed = fail_embed
        self.fragment_delay = fragment_delay

        self.loads: List[tuple] = []
        self.generate_calls: List[Dict[str, Any]] = []
        self.embed_calls: List[str] = []
        self.pulled = 0
        self.closed = False
        self.threads = set()
        self._lock = threading.Lock()

    def _load(self, kind: str, identity: str) -> Dict[str, str]:
        if self.load_delay:
            time.sleep(self.load_delay)
        with self._lock:
            self.loads.append((kind, identity))
        if identity in self.fail_loads:
            raise RuntimeError(f"cannot load {identity}")
        return {"kind": kind, "identity": identity}

    def load_chat_model(self, identity: str) -> Dict[str, str]:
        return self._load("chat", identity)

    def load_embedding_model(self, identity: str) -> Dict[str, str]:
        return self._load("embedding", identity)

    def generate(self, model, messages, max_tokens, temperature) -> Iterator[str]:
        self.generate_calls.append(
            {
                "model": model,
                "messages": messages,
                "max_tokens": max_tokens,
                "temperature": temperature,
            }
        )
        return self._produce()

    def _produce(self) -> Iterator[str]:
        try:
            for i, fragment in enumerate(self.fragments):
                if self.fail_after is not None and i == self.fail_after:
                    raise RuntimeError("engine exploded")
                if self.fragment_delay:
                    time.sleep(self.fragment_delay)
                self.threads.add(threading.current_thread().name)
                self.pulled += 1
                yield fragment
        finally:
            self.closed = True

    def embed(self, model, text: str) -> List[float]:
        self.embed_calls.append(text)
        if self.fail_embed:
            raise RuntimeError("embedding exploded")
        return list(self.vector)
