"""N-gram lookup cache for draft-model-free speculative decoding.

Counts which token followed each n-gram (1 to 4 tokens) in previously seen
text and proposes draft continuations from the most frequent successors.
Three caches cooperate when drafting: a *context* cache built from the
current prompt/generation, a *dynamic* cache accumulated across generations,
and a *static* cache of 2-grams built offline from a large corpus.
"""

from __future__ import annotations

import logging
import os
import struct
from collections import defaultdict
from pathlib import Path
from typing import Sequence

logger = logging.getLogger(__name__)

NGRAM_MAX = 4
NGRAM_STATIC = 2
TOKEN_NULL = -1

# Minimum number of observations and minimum share (in percent) of the most
# frequent successor, indexed by n-gram size - 1.
DRAFT_MIN_SAMPLE_SIZE_LAX = (2, 2, 1, 1)
DRAFT_MIN_PERCENT_LAX = (66, 50, 50, 50)
DRAFT_MIN_SAMPLE_SIZE_STRICT = (4, 3, 2, 2)
DRAFT_MIN_PERCENT_STRICT = (75, 66, 66, 66)

_INT32 = struct.Struct("<i")
_NGRAM = struct.Struct(f"<{NGRAM_MAX}i")
_PAIR = struct.Struct("<ii")

Ngram = tuple[int, ...]


def make_ngram(tokens: Sequence[int]) -> Ngram:
    """Pad *tokens* to a fixed-width n-gram key."""
    if not 1 <= len(tokens) <= NGRAM_MAX:
        raise ValueError(f"N-gram size must be between 1 and {NGRAM_MAX}, got {len(tokens)}")
    return tuple(int(t) for t in tokens) + (TOKEN_NULL,) * (NGRAM_MAX - len(tokens))


class NgramCache:
    """Map of n-gram to successor-token counts."""

    def __init__(self) -> None:
        self._parts: dict[Ngram, dict[int, int]] = defaultdict(dict)

    def __len__(self) -> int:
        return len(self._parts)

    def __contains__(self, ngram: object) -> bool:
        return ngram in self._parts

    def part(self, ngram: Ngram) -> dict[int, int] | None:
        return self._parts.get(ngram)

    def add(self, ngram: Ngram, token: int, count: int = 1) -> None:
        part = self._parts[ngram]
        part[token] = part.get(token, 0) + count

    def update(self, ngram_min: int, ngram_max: int, inp: Sequence[int], nnew: int) -> None:
        """Count successors of every n-gram ending within the last *nnew* tokens."""
        _check_sizes(ngram_min, ngram_max)
        inp_size = len(inp)
        for ngram_size in range(ngram_min, ngram_max + 1):
            i_start = max(inp_size - nnew, ngram_size)
            for i in range(i_start, inp_size):
                ngram = make_ngram(inp[i - ngram_size:i])
                self.add(ngram, int(inp[i]))
        logger.debug("N-gram cache updated with %d new tokens (%d n-grams)", nnew, len(self))

    def merge(self, other: NgramCache) -> None:
        """Add every count of *other* to this cache."""
        for ngram, part in other._parts.items():
            for token, count in part.items():
                self.add(ngram, token, count)

    # ─── Persistence ────────────────────────────────────────────────────

    def save(self, path: str | os.PathLike[str]) -> None:
        path = Path(path)
        with open(path, "wb") as f:
            for ngram, part in self._parts.items():
                f.write(_NGRAM.pack(*ngram))
                f.write(_INT32.pack(len(part)))
                for token, count in part.items():
                    f.write(_PAIR.pack(token, count))
        logger.info("Saved n-gram cache with %d entries to %s", len(self), path)

    @classmethod
    def load(cls, path: str | os.PathLike[str]) -> NgramCache:
        """Load a cache written by :meth:`save`.

        Raises:
            FileNotFoundError: if *path* does not exist.
            ValueError: if the file is truncated.
        """
        path = Path(path)
        data = path.read_bytes()
        cache = cls()
        offset = 0
        try:
            while offset < len(data):
                ngram = _NGRAM.unpack_from(data, offset)
                offset += _NGRAM.size
                (ntokens,) = _INT32.unpack_from(data, offset)
                offset += _INT32.size
                part = cache._parts[ngram]
                for _ in range(ntokens):
                    token, count = _PAIR.unpack_from(data, offset)
                    offset += _PAIR.size
                    part[token] = count
        except struct.error as e:
            raise ValueError(f"Truncated n-gram cache file {path}: {e}") from e
        logger.info("Loaded n-gram cache with %d entries from %s", len(cache), path)
        return cache


def _check_sizes(ngram_min: int, ngram_max: int) -> None:
    if not 1 <= ngram_min <= ngram_max <= NGRAM_MAX:
        raise ValueError(
            f"Invalid n-gram range {ngram_min}..{ngram_max} (must be within 1..{NGRAM_MAX})"
        )


def _get_token(inp: Sequence[int], draft: Sequence[int], i: int) -> int:
    # Position i counts through the input, then the draft (minus its seed token)
    return inp[i] if i < len(inp) else draft[1 + i - len(inp)]


def _ngram_at(inp: Sequence[int], draft: Sequence[int], start: int, size: int) -> Ngram:
    return make_ngram([_get_token(inp, draft, j) for j in range(start, start + size)])


def _try_draft(
    nc_primary: NgramCache,
    ngrams_primary: list[Ngram],
    part_static: dict[int, int] | None,
    min_sample_size: Sequence[int],
    min_percent: Sequence[int],
) -> int:
    # Longest n-grams first
    for i in range(len(ngrams_primary) - 1, -1, -1):
        part_primary = nc_primary.part(ngrams_primary[i])
        if not part_primary:
            continue

        max_count_primary = 0
        max_count = 0
        sum_count_primary = 0
        max_token = TOKEN_NULL
        for token, count_primary in part_primary.items():
            count_static = 100 * part_static[token] if part_static and token in part_static else 1
            count = count_primary * count_static
            sum_count_primary += count_primary
            if count > max_count:
                max_token = token
                max_count = count
                max_count_primary = count_primary

        if sum_count_primary < min_sample_size[i]:
            continue
        if 100 * max_count_primary < min_percent[i] * sum_count_primary:
            continue
        return max_token
    return TOKEN_NULL


def _try_draft_static(part_static: dict[int, int] | None) -> int:
    if not part_static:
        return TOKEN_NULL
    max_count = 0
    sum_count = 0
    max_token = TOKEN_NULL
    for token, count in part_static.items():
        sum_count += count
        if count > max_count:
            max_token = token
            max_count = count
    if sum_count < DRAFT_MIN_SAMPLE_SIZE_LAX[NGRAM_STATIC - 1]:
        return TOKEN_NULL
    if 100 * max_count < DRAFT_MIN_PERCENT_LAX[NGRAM_STATIC - 1] * sum_count:
        return TOKEN_NULL
    return max_token


def draft(
    inp: Sequence[int],
    draft_tokens: list[int],
    n_draft: int,
    ngram_min: int,
    ngram_max: int,
    nc_context: NgramCache,
    nc_dynamic: NgramCache,
    nc_static: NgramCache,
) -> list[int]:
    """Extend *draft_tokens* in place with up to *n_draft* proposed tokens.

    *draft_tokens* must hold exactly one token: the last sampled token, which
    is also the last token of *inp*. The context cache is consulted with lax
    thresholds, the dynamic cache with strict ones, and the static cache last.
    """
    _check_sizes(ngram_min, ngram_max)
    if len(draft_tokens) != 1:
        raise ValueError("Draft must start with exactly one token")

    inp_size = len(inp)
    while len(draft_tokens) - 1 < n_draft:
        offset = len(draft_tokens) - 1
        start_static = inp_size - NGRAM_STATIC + offset
        if start_static < 0:
            break
        part_static = nc_static.part(_ngram_at(inp, draft_tokens, start_static, NGRAM_STATIC))

        ngrams_cd: list[Ngram] = []
        for size in range(ngram_min, ngram_max + 1):
            start = inp_size - size + offset
            if start < 0:
                break
            ngrams_cd.append(_ngram_at(inp, draft_tokens, start, size))

        token = _try_draft(nc_context, ngrams_cd, part_static,
                           DRAFT_MIN_SAMPLE_SIZE_LAX, DRAFT_MIN_PERCENT_LAX)
        if token == TOKEN_NULL:
            token = _try_draft(nc_dynamic, ngrams_cd, part_static,
                               DRAFT_MIN_SAMPLE_SIZE_STRICT, DRAFT_MIN_PERCENT_STRICT)
        if token == TOKEN_NULL:
            token = _try_draft_static(part_static)
        if token == TOKEN_NULL:
            break

        logger.debug(" - draft candidate: %d", token)
        draft_tokens.append(token)
    return draft_tokens
