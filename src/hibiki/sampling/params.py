"""Sampling parameters."""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any

LLAMA_DEFAULT_SEED = 0xFFFFFFFF  # draw a fresh seed


@dataclass
class SamplingParams:
    seed: int = LLAMA_DEFAULT_SEED
    temperature: float = 0.8
    top_k: int = 40
    top_p: float = 0.95
    min_keep: int = 0
    penalty_last_n: int = 64  # -1 = whole history
    penalty_repeat: float = 1.0
    penalty_freq: float = 0.0
    penalty_present: float = 0.0

    @classmethod
    def from_config(cls, config: Any) -> SamplingParams:
        """Build parameters from a config section with matching attribute names."""
        params = cls()
        for f in fields(cls):
            if hasattr(config, f.name):
                setattr(params, f.name, getattr(config, f.name))
        return params

    def set_frequency_penalty(self, value: float) -> None:
        self.penalty_freq = float(value)

    def set_presence_penalty(self, value: float) -> None:
        self.penalty_present = float(value)

    def set_seed(self, value: int) -> None:
        self.seed = int(value) & 0xFFFFFFFF

    def set_temperature(self, value: float) -> None:
        self.temperature = float(value)

    def set_top_p(self, value: float) -> None:
        self.top_p = float(value)
