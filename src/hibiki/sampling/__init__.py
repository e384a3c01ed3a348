"""Token sampling: parameters and stateful samplers."""

from hibiki.sampling.params import LLAMA_DEFAULT_SEED, SamplingParams
from hibiki.sampling.sampler import Sampler, TokenData

__all__ = ["LLAMA_DEFAULT_SEED", "Sampler", "SamplingParams", "TokenData"]
