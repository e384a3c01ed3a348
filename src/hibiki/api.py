"""Handle-based boundary surface.

Every resource that crosses the boundary is referenced by a :class:`Handle`;
callers never hold the objects themselves. Each ``*_init``/``*_compile``
operation is paired with a ``*_free`` that must be called exactly once.
Misuse (stale handles, double frees, short buffers, freeing a template set
that live compiled params still borrow) raises a
:class:`~hibiki.errors.CallerContractError` instead of corrupting state.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

from hibiki import __version__
from hibiki.buffers import fill_buffer
from hibiki.chat.compiler import CompiledChatParams, compile_chat
from hibiki.chat.formats import ChatFormat
from hibiki.chat.parser import parse_chat_message
from hibiki.chat.templates import TemplateCapabilities, TemplateSet, resolve_template_set
from hibiki.config import HibikiConfig
from hibiki.errors import HandleInUseError
from hibiki.handles import Handle, HandleKind, HandleRegistry
from hibiki.ngram_cache import NgramCache
from hibiki.ngram_cache import draft as ngram_draft
from hibiki.sampling import Sampler, SamplingParams, TokenData
from hibiki.speculative import Vocabulary, are_compatible

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _ChatParamsEntry:
    params: CompiledChatParams
    template: Handle


def build_info() -> dict[str, str]:
    """Version information fixed when the package was built."""
    return {"version": __version__, "formats": str(int(ChatFormat.COUNT))}


class Runtime:
    """Owns the handle registries of one host process (or one test)."""

    def __init__(self, config: HibikiConfig | None = None) -> None:
        self.config = config or HibikiConfig()
        self._sampling_params: HandleRegistry[SamplingParams] = HandleRegistry(HandleKind.SAMPLING_PARAMS)
        self._samplers: HandleRegistry[Sampler] = HandleRegistry(HandleKind.SAMPLER)
        self._templates: HandleRegistry[TemplateSet] = HandleRegistry(HandleKind.TEMPLATE_SET)
        self._chat_params: HandleRegistry[_ChatParamsEntry] = HandleRegistry(HandleKind.CHAT_PARAMS)
        self._ngram_caches: HandleRegistry[NgramCache] = HandleRegistry(HandleKind.NGRAM_CACHE)
        self._borrows: Counter[Handle] = Counter()
        self._borrow_lock = threading.Lock()
        self._static_cache: NgramCache | None = None
        self._static_lock = threading.Lock()

    def live_handles(self) -> dict[str, int]:
        """Number of live handles per kind, for leak checks."""
        return {
            HandleKind.SAMPLING_PARAMS.name: len(self._sampling_params),
            HandleKind.SAMPLER.name: len(self._samplers),
            HandleKind.TEMPLATE_SET.name: len(self._templates),
            HandleKind.CHAT_PARAMS.name: len(self._chat_params),
            HandleKind.NGRAM_CACHE.name: len(self._ngram_caches),
        }

    # ─── Sampling parameters ────────────────────────────────────────────

    def sampling_params_init(self) -> Handle:
        return self._sampling_params.insert(SamplingParams.from_config(self.config.sampling))

    def sampling_params_free(self, handle: Handle) -> None:
        self._sampling_params.release(handle)

    def sampling_params_get(self, handle: Handle) -> SamplingParams:
        return self._sampling_params.get(handle)

    def sampling_params_set_frequency_penalty(self, handle: Handle, value: float) -> None:
        self._sampling_params.get(handle).set_frequency_penalty(value)

    def sampling_params_set_presence_penalty(self, handle: Handle, value: float) -> None:
        self._sampling_params.get(handle).set_presence_penalty(value)

    def sampling_params_set_seed(self, handle: Handle, value: int) -> None:
        self._sampling_params.get(handle).set_seed(value)

    def sampling_params_set_temperature(self, handle: Handle, value: float) -> None:
        self._sampling_params.get(handle).set_temperature(value)

    def sampling_params_set_top_p(self, handle: Handle, value: float) -> None:
        self._sampling_params.get(handle).set_top_p(value)

    # ─── Samplers ───────────────────────────────────────────────────────

    def sampler_init(self, model: Any, params: Handle) -> Handle:
        """Create a sampler for *model* (a ``Llama``, a vocabulary size, or None)."""
        if model is None or isinstance(model, int):
            n_vocab = model
        else:
            n_vocab = model.n_vocab()
        return self._samplers.insert(Sampler(self._sampling_params.get(params), n_vocab=n_vocab))

    def sampler_free(self, handle: Handle) -> None:
        self._samplers.release(handle)

    def sampler_accept(self, handle: Handle, token: int, accept_grammar: bool = False) -> None:
        self._samplers.get(handle).accept(token, accept_grammar)

    def sampler_reset(self, handle: Handle) -> None:
        self._samplers.get(handle).reset()

    def sampler_clone(self, handle: Handle) -> Handle:
        return self._samplers.insert(self._samplers.get(handle).clone())

    def sampler_sample(self, handle: Handle, ctx: Any, idx: int = -1, grammar_first: bool = False) -> int:
        return self._samplers.get(handle).sample(ctx, idx, grammar_first)

    def sampler_get_candidates(self, handle: Handle) -> list[TokenData]:
        return self._samplers.get(handle).get_candidates()

    # ─── Speculative decoding ───────────────────────────────────────────

    def speculative_are_compatible(self, target: Any, draft: Any) -> bool:
        return are_compatible(_vocabulary(target), _vocabulary(draft))

    # ─── Template sets ──────────────────────────────────────────────────

    def template_set_init(self, model: Any, template_name: str | None = None) -> Handle:
        """Resolve the chat templates of *model*.

        Raises:
            TemplateResolutionError: if no template can be resolved.
        """
        name = template_name if template_name is not None else (self.config.chat.template or None)
        template_set = resolve_template_set(
            model,
            name,
            bos_token=self.config.chat.bos_token,
            eos_token=self.config.chat.eos_token,
        )
        return self._templates.insert(template_set)

    def template_set_free(self, handle: Handle) -> None:
        """Release a template set.

        Raises:
            HandleInUseError: while compiled chat params derived from it are alive.
        """
        with self._borrow_lock:
            self._templates.get(handle)
            if self._borrows[handle]:
                raise HandleInUseError(
                    f"{handle!r} is still used by {self._borrows[handle]} compiled chat params"
                )
            self._templates.release(handle)

    def template_set_capabilities(self, handle: Handle, use_tools: bool = True) -> TemplateCapabilities:
        return self._templates.get(handle).capabilities(use_tools)

    # ─── Chat compilation ───────────────────────────────────────────────

    def chat_compile(self, template: Handle, payload: str | bytes | dict[str, Any]) -> Handle:
        """Compile a request payload against a template set.

        Nothing is allocated unless compilation succeeds.

        Raises:
            RequestError: for a missing or malformed ``messages`` list.
            CompilationError: when the template fails to render.
        """
        with self._borrow_lock:
            template_set = self._templates.get(template)
            self._borrows[template] += 1
        try:
            params = compile_chat(
                template_set,
                payload,
                add_generation_prompt=self.config.chat.add_generation_prompt,
            )
            return self._chat_params.insert(_ChatParamsEntry(params, template))
        except BaseException:
            self._unborrow(template)
            raise

    def _unborrow(self, template: Handle) -> None:
        with self._borrow_lock:
            self._borrows[template] -= 1
            if self._borrows[template] <= 0:
                del self._borrows[template]

    def chat_params_free(self, handle: Handle) -> None:
        entry = self._chat_params.release(handle)
        self._unborrow(entry.template)

    def chat_params_get(self, handle: Handle) -> CompiledChatParams:
        return self._chat_params.get(handle).params

    def chat_params_prompt_length(self, handle: Handle) -> int:
        """UTF-8 byte length of the prompt, without terminator."""
        return len(self.chat_params_get(handle).prompt_bytes)

    def chat_params_prompt_fill(self, handle: Handle, buffer: Any) -> int:
        """Write the prompt plus NUL into *buffer* (at least length + 1 bytes).

        Raises:
            BufferTooSmallError: if *buffer* is too small; nothing is written.
        """
        return fill_buffer(self.chat_params_get(handle).prompt_bytes, buffer)

    def chat_params_prompt(self, handle: Handle) -> str:
        return self.chat_params_get(handle).prompt

    def chat_params_format(self, handle: Handle) -> int:
        return int(self.chat_params_get(handle).format)

    def chat_params_additional_stops(self, handle: Handle) -> list[str]:
        return list(self.chat_params_get(handle).additional_stops)

    # ─── Chat parsing ───────────────────────────────────────────────────

    def chat_parse(self, text: str, fmt: int) -> str:
        """Parse completion text and return the canonical message JSON.

        Raises:
            ChatParseError: if *text* does not follow the format's convention.
            ValueError: if *fmt* is not a valid format.
        """
        return parse_chat_message(text, ChatFormat.from_int(fmt)).to_json()

    def chat_parse_into(self, text: str, fmt: int, buffer: Any) -> int:
        """Like :meth:`chat_parse`, writing UTF-8 JSON plus NUL into *buffer*."""
        return fill_buffer(self.chat_parse(text, fmt).encode("utf-8"), buffer)

    # ─── N-gram caches ──────────────────────────────────────────────────

    def ngram_cache_init(self) -> Handle:
        return self._ngram_caches.insert(NgramCache())

    def ngram_cache_load(self, path: str) -> Handle:
        return self._ngram_caches.insert(NgramCache.load(path))

    def ngram_cache_save(self, handle: Handle, path: str) -> None:
        self._ngram_caches.get(handle).save(path)

    def ngram_cache_update(
        self, handle: Handle, ngram_min: int, ngram_max: int, inp: Sequence[int], nnew: int
    ) -> None:
        self._ngram_caches.get(handle).update(ngram_min, ngram_max, inp, nnew)

    def ngram_cache_merge(self, target: Handle, additional: Handle) -> None:
        self._ngram_caches.get(target).merge(self._ngram_caches.get(additional))

    def ngram_cache_draft(
        self,
        inp: Sequence[int],
        draft: list[int],
        n_draft: int | None = None,
        ngram_min: int | None = None,
        ngram_max: int | None = None,
        nc_context: Handle | None = None,
        nc_dynamic: Handle | None = None,
        nc_static: Handle | None = None,
    ) -> list[int]:
        """Extend *draft* from the n-gram caches.

        Sizes left as ``None`` come from the ``[ngram]`` config section. Without
        *nc_static* the static cache named by ``ngram.static_cache`` is used
        (loaded on first use; empty when no path is configured).

        Raises:
            InvalidHandleError: if *nc_context* or *nc_dynamic* is missing or stale.
        """
        ngram = self.config.ngram
        static = self._default_static_cache() if nc_static is None else self._ngram_caches.get(nc_static)
        return ngram_draft(
            inp,
            draft,
            ngram.n_draft if n_draft is None else n_draft,
            ngram.ngram_min if ngram_min is None else ngram_min,
            ngram.ngram_max if ngram_max is None else ngram_max,
            self._ngram_caches.get(nc_context),
            self._ngram_caches.get(nc_dynamic),
            static,
        )

    def _default_static_cache(self) -> NgramCache:
        with self._static_lock:
            if self._static_cache is None:
                path = self.config.ngram.static_cache
                self._static_cache = NgramCache.load(Path(path).expanduser()) if path else NgramCache()
            return self._static_cache

    def ngram_cache_free(self, handle: Handle) -> None:
        self._ngram_caches.release(handle)


def _vocabulary(model: Any) -> Vocabulary:
    if isinstance(model, Vocabulary):
        return model
    from hibiki.llama import vocabulary_from_llama

    return vocabulary_from_llama(model)
