"""Stateful token sampler.

Applies repetition/frequency/presence penalties over the recently accepted
tokens, then top-k, top-p and temperature, and draws from a seeded RNG.
Grammar-constrained sampling is not supported; the grammar flags of
:meth:`Sampler.accept` and :meth:`Sampler.sample` are accepted for interface
compatibility and have no effect.
"""

from __future__ import annotations

import logging
import secrets
from collections import Counter, deque
from dataclasses import dataclass, replace
from typing import Protocol, Sequence

import numpy as np

from hibiki.sampling.params import LLAMA_DEFAULT_SEED, SamplingParams

logger = logging.getLogger(__name__)

_MIN_HISTORY = 32


class LogitsSource(Protocol):
    """An inference context exposing the logits of its last evaluation."""

    def get_logits_ith(self, idx: int) -> Sequence[float] | np.ndarray: ...


@dataclass(frozen=True)
class TokenData:
    id: int
    logit: float
    p: float


def _resolve_seed(seed: int) -> int:
    if seed == LLAMA_DEFAULT_SEED:
        return secrets.randbits(32)
    return seed


def _softmax(logits: np.ndarray) -> np.ndarray:
    shifted = np.exp(logits - np.max(logits))
    return shifted / shifted.sum()


class Sampler:
    """Samples tokens for one generation stream.

    Clones are fully independent: history and RNG state are copied, never
    shared.
    """

    def __init__(self, params: SamplingParams, n_vocab: int | None = None) -> None:
        self.params = replace(params)
        self.n_vocab = n_vocab
        self.grammar = None
        history = None if params.penalty_last_n < 0 else max(_MIN_HISTORY, params.penalty_last_n)
        self._prev: deque[int] = deque(maxlen=history)
        self.seed_cur = _resolve_seed(params.seed)
        self._rng = np.random.Generator(np.random.PCG64(self.seed_cur))
        self._candidates: list[TokenData] = []

    # ─── State ──────────────────────────────────────────────────────────

    def accept(self, token: int, accept_grammar: bool = False) -> None:
        """Record *token* as generated."""
        self._prev.append(int(token))

    def reset(self) -> None:
        """Forget accepted tokens and reseed the RNG."""
        self._prev.clear()
        self._candidates = []
        self.seed_cur = _resolve_seed(self.params.seed)
        self._rng = np.random.Generator(np.random.PCG64(self.seed_cur))

    def clone(self) -> Sampler:
        other = Sampler.__new__(Sampler)
        other.params = replace(self.params)
        other.n_vocab = self.n_vocab
        other.grammar = self.grammar
        other._prev = deque(self._prev, maxlen=self._prev.maxlen)
        other.seed_cur = self.seed_cur
        bit_generator = np.random.PCG64()
        bit_generator.state = self._rng.bit_generator.state
        other._rng = np.random.Generator(bit_generator)
        other._candidates = list(self._candidates)
        return other

    @property
    def history(self) -> list[int]:
        return list(self._prev)

    def last(self) -> int | None:
        return self._prev[-1] if self._prev else None

    def get_candidates(self) -> list[TokenData]:
        """Candidates considered by the most recent :meth:`sample` call."""
        return list(self._candidates)

    # ─── Sampling ───────────────────────────────────────────────────────

    def _penalize(self, logits: np.ndarray) -> None:
        p = self.params
        if p.penalty_last_n == 0 or (
            p.penalty_repeat == 1.0 and p.penalty_freq == 0.0 and p.penalty_present == 0.0
        ):
            return
        window = list(self._prev)
        if p.penalty_last_n > 0:
            window = window[-p.penalty_last_n:]
        for token, count in Counter(window).items():
            if not 0 <= token < len(logits):
                continue
            if logits[token] <= 0:
                logits[token] *= p.penalty_repeat
            else:
                logits[token] /= p.penalty_repeat
            logits[token] -= count * p.penalty_freq + p.penalty_present

    def sample(self, ctx: LogitsSource, idx: int = -1, grammar_first: bool = False) -> int:
        """Draw the next token from row *idx* of the context's logits."""
        logits = np.array(ctx.get_logits_ith(idx), dtype=np.float64)
        if logits.ndim != 1 or logits.size == 0:
            raise ValueError(f"Expected a non-empty logits vector, got shape {logits.shape}")
        if self.n_vocab is not None and logits.size != self.n_vocab:
            raise ValueError(f"Logits size {logits.size} does not match vocabulary {self.n_vocab}")

        self._penalize(logits)
        p = self.params
        min_keep = max(1, p.min_keep)

        order = np.argsort(-logits, kind="stable")
        if p.temperature <= 0:
            probs = _softmax(logits[order])
            self._candidates = [
                TokenData(int(t), float(logits[t]), float(pr)) for t, pr in zip(order, probs)
            ]
            return int(order[0])

        if p.top_k > 0:
            order = order[: max(p.top_k, min_keep)]

        probs = _softmax(logits[order])
        if p.top_p < 1.0:
            cumulative = np.cumsum(probs)
            keep = int(np.searchsorted(cumulative, p.top_p) + 1)
            order = order[: max(keep, min_keep)]

        scaled = logits[order] / p.temperature
        probs = _softmax(scaled)
        self._candidates = [
            TokenData(int(t), float(logits[t]), float(pr)) for t, pr in zip(order, probs)
        ]
        return int(order[self._rng.choice(len(order), p=probs)])
