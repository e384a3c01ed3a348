"""Draft/target model compatibility for speculative decoding."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

logger = logging.getLogger(__name__)

VOCAB_MAX_SIZE_DIFFERENCE = 128
VOCAB_CHECK_START_TOKEN_ID = 5


@dataclass(frozen=True)
class Vocabulary:
    """Snapshot of the vocabulary properties that speculative decoding relies on."""

    vocab_type: int
    add_bos: bool
    add_eos: bool
    bos_id: int
    eos_id: int
    tokens: Sequence[str]

    @property
    def n_tokens(self) -> int:
        return len(self.tokens)


def are_compatible(target: Vocabulary, draft: Vocabulary) -> bool:
    """Whether *draft* can propose tokens for *target*.

    The vocabularies must be of the same type, agree on BOS/EOS handling,
    differ in size by at most :data:`VOCAB_MAX_SIZE_DIFFERENCE` tokens, and
    map every shared id from :data:`VOCAB_CHECK_START_TOKEN_ID` up to the same
    text.
    """
    if target.vocab_type != draft.vocab_type:
        logger.debug("Vocab type mismatch: %d vs %d", target.vocab_type, draft.vocab_type)
        return False

    if (
        target.add_bos != draft.add_bos
        or target.add_eos != draft.add_eos
        or target.bos_id != draft.bos_id
        or target.eos_id != draft.eos_id
    ):
        logger.debug("Special token mismatch between target and draft vocabularies")
        return False

    if abs(target.n_tokens - draft.n_tokens) > VOCAB_MAX_SIZE_DIFFERENCE:
        logger.debug(
            "Vocab size difference too large: %d vs %d", target.n_tokens, draft.n_tokens
        )
        return False

    for i in range(VOCAB_CHECK_START_TOKEN_ID, min(target.n_tokens, draft.n_tokens)):
        if target.tokens[i] != draft.tokens[i]:
            logger.debug(
                "Token %d differs: %r vs %r", i, target.tokens[i], draft.tokens[i]
            )
            return False

    return True
