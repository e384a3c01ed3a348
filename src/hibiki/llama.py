"""Adapters over llama-cpp-python.

llama_cpp is imported lazily inside each adapter so the compiler and parser
can be used (and tested) without the native library being present.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class ModelMetadata:
    """The parts of a model's GGUF metadata needed to resolve chat templates."""

    values: dict[str, Any] = field(default_factory=dict)
    name: str = ""
    bos_token: str = ""
    eos_token: str = ""


def _token_id(values: Mapping[str, Any], key: str) -> int:
    try:
        return int(values.get(key, -1))
    except (TypeError, ValueError):
        return -1


def _token_text(values: Mapping[str, Any], token_id: int) -> str:
    tokens = values.get("tokenizer.ggml.tokens")
    if isinstance(tokens, (list, tuple)) and 0 <= token_id < len(tokens):
        return str(tokens[token_id])
    return ""


def metadata_from_mapping(values: Mapping[str, Any]) -> ModelMetadata:
    """Build metadata from a plain GGUF key/value mapping."""
    values = dict(values)
    return ModelMetadata(
        values=values,
        name=str(values.get("general.name", "")),
        bos_token=_token_text(values, _token_id(values, "tokenizer.ggml.bos_token_id")),
        eos_token=_token_text(values, _token_id(values, "tokenizer.ggml.eos_token_id")),
    )


def metadata_from_llama(llm: Any) -> ModelMetadata:
    """Build metadata from a loaded ``llama_cpp.Llama`` instance."""
    values = dict(llm.metadata or {})

    def special_text(token_id: int) -> str:
        if token_id < 0:
            return ""
        return llm.detokenize([token_id], special=True).decode("utf-8", errors="ignore")

    return ModelMetadata(
        values=values,
        name=str(values.get("general.name", "")) or Path(getattr(llm, "model_path", "") or "").name,
        bos_token=special_text(llm.token_bos()),
        eos_token=special_text(llm.token_eos()),
    )


def load_llama(model_path: str | os.PathLike[str], vocab_only: bool = True, **kwargs: Any) -> Any:
    """Open a GGUF model with llama-cpp-python (vocabulary only by default)."""
    path = Path(model_path).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"Model file not found: {path}")

    from llama_cpp import Llama

    logger.info("Loading model metadata from %s", path)
    return Llama(model_path=str(path), vocab_only=vocab_only, verbose=False, **kwargs)


def read_model_metadata(model: Any) -> ModelMetadata:
    """Read template metadata from a path, a ``Llama`` instance or a mapping."""
    if isinstance(model, ModelMetadata):
        return model
    if isinstance(model, Mapping):
        return metadata_from_mapping(model)
    if isinstance(model, (str, os.PathLike)):
        return metadata_from_llama(load_llama(model))
    if hasattr(model, "metadata"):
        return metadata_from_llama(model)
    raise TypeError(f"Cannot read model metadata from {type(model).__name__}")


class LlamaLogits:
    """Exposes a ``Llama`` context's output logits to the sampler."""

    def __init__(self, llm: Any) -> None:
        self.llm = llm

    def get_logits_ith(self, idx: int) -> np.ndarray:
        import llama_cpp

        ptr = llama_cpp.llama_get_logits_ith(self.llm.ctx, idx)
        return np.ctypeslib.as_array(ptr, shape=(self.llm.n_vocab(),)).copy()


def vocabulary_from_llama(llm: Any):
    """Snapshot the vocabulary of a ``Llama`` instance for compatibility checks."""
    import llama_cpp

    from hibiki.speculative import Vocabulary

    vocab = llama_cpp.llama_model_get_vocab(llm.model)
    n_tokens = llama_cpp.llama_vocab_n_tokens(vocab)
    texts = tuple(
        (llama_cpp.llama_vocab_get_text(vocab, i) or b"").decode("utf-8", errors="replace")
        for i in range(n_tokens)
    )
    return Vocabulary(
        vocab_type=int(llama_cpp.llama_vocab_type(vocab)),
        add_bos=bool(llama_cpp.llama_vocab_get_add_bos(vocab)),
        add_eos=bool(llama_cpp.llama_vocab_get_add_eos(vocab)),
        bos_id=int(llama_cpp.llama_vocab_bos(vocab)),
        eos_id=int(llama_cpp.llama_vocab_eos(vocab)),
        tokens=texts,
    )
