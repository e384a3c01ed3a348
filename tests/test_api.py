"""Tests for the handle-based Runtime surface and the two-phase buffer fill."""

from __future__ import annotations

import json
from array import array

import pytest
from sample_templates import CHATML, HERMES_2_PRO, RAISING, WEATHER_TOOL, model_metadata

from hibiki import __version__
from hibiki.api import Runtime, build_info
from hibiki.buffers import fill_buffer
from hibiki.chat.formats import ChatFormat
from hibiki.config import HibikiConfig
from hibiki.errors import (
    BufferTooSmallError,
    CallerContractError,
    ChatParseError,
    CompilationError,
    HandleInUseError,
    InvalidHandleError,
    RequestError,
    TemplateResolutionError,
)
from hibiki.handles import Handle
from hibiki.ngram_cache import NgramCache, make_ngram
from hibiki.speculative import Vocabulary

HELLO = json.dumps({"messages": [{"role": "user", "content": "hi"}]})


class FixedLogits:
    def __init__(self, logits):
        self.logits = logits

    def get_logits_ith(self, idx):
        return self.logits


@pytest.fixture
def runtime():
    rt = Runtime()
    yield rt


@pytest.fixture
def chatml(runtime):
    return runtime.template_set_init(model_metadata(CHATML))


def test_build_info():
    info = build_info()
    assert info["version"] == __version__
    assert info["formats"] == "11"


# ─── Template sets and borrowing ─────────────────────────────────────────────


class TestTemplateSets:
    def test_unresolvable_template_allocates_nothing(self, runtime):
        with pytest.raises(TemplateResolutionError):
            runtime.template_set_init({"general.name": "bare"})
        assert runtime.live_handles()["TEMPLATE_SET"] == 0

    def test_config_template_override(self):
        config = HibikiConfig()
        config.chat.template = "{{ messages[0].content }}!"
        rt = Runtime(config)
        ts = rt.template_set_init(model_metadata(CHATML))
        params = rt.chat_compile(ts, HELLO)
        assert rt.chat_params_prompt(params) == "hi!"

    def test_capabilities(self, runtime):
        ts = runtime.template_set_init(model_metadata(HERMES_2_PRO))
        caps = runtime.template_set_capabilities(ts)
        assert caps.supports_tool_calls
        assert caps.supports_parallel_tool_calls

    def test_free_while_borrowed_is_rejected(self, runtime, chatml):
        params = runtime.chat_compile(chatml, HELLO)
        with pytest.raises(HandleInUseError):
            runtime.template_set_free(chatml)
        # Still usable after the rejected free
        runtime.chat_compile(chatml, HELLO)
        runtime.chat_params_free(params)

    def test_free_after_params_released(self, runtime, chatml):
        first = runtime.chat_compile(chatml, HELLO)
        second = runtime.chat_compile(chatml, HELLO)
        runtime.chat_params_free(first)
        with pytest.raises(HandleInUseError):
            runtime.template_set_free(chatml)
        runtime.chat_params_free(second)
        runtime.template_set_free(chatml)
        assert runtime.live_handles() == {
            "SAMPLING_PARAMS": 0, "SAMPLER": 0, "TEMPLATE_SET": 0, "CHAT_PARAMS": 0, "NGRAM_CACHE": 0,
        }

    def test_double_free(self, runtime, chatml):
        runtime.template_set_free(chatml)
        with pytest.raises(InvalidHandleError):
            runtime.template_set_free(chatml)

    def test_wrong_kind(self, runtime, chatml):
        with pytest.raises(InvalidHandleError):
            runtime.chat_params_free(chatml)

    def test_handle_survives_integer_round_trip(self, runtime, chatml):
        handle = Handle.from_int(int(chatml))
        params = runtime.chat_compile(handle, HELLO)
        assert runtime.chat_params_format(params) == int(ChatFormat.CONTENT_ONLY)


# ─── Compilation ─────────────────────────────────────────────────────────────


class TestChatCompile:
    def test_failed_compile_leaves_no_handle(self, runtime, chatml):
        with pytest.raises(RequestError):
            runtime.chat_compile(chatml, '{"messages": []}')
        assert runtime.live_handles()["CHAT_PARAMS"] == 0
        # The failed compile does not keep a borrow on the template set
        runtime.template_set_free(chatml)

    def test_render_failure(self, runtime):
        ts = runtime.template_set_init(model_metadata(RAISING))
        with pytest.raises(CompilationError):
            runtime.chat_compile(ts, {"messages": [{"role": "user", "content": "forbidden"}]})
        runtime.template_set_free(ts)

    def test_format_and_stops(self, runtime):
        ts = runtime.template_set_init(model_metadata(HERMES_2_PRO))
        params = runtime.chat_compile(ts, {
            "messages": [{"role": "user", "content": "Weather in Paris?"}],
            "tools": [WEATHER_TOOL],
        })
        assert runtime.chat_params_format(params) == int(ChatFormat.HERMES_2_PRO)
        assert runtime.chat_params_additional_stops(params) == []

    def test_params_are_immutable_snapshot(self, runtime, chatml):
        params = runtime.chat_compile(chatml, HELLO)
        compiled = runtime.chat_params_get(params)
        assert compiled.template_set is not None
        assert compiled.stream is False


# ─── Two-phase prompt retrieval ──────────────────────────────────────────────


class TestPromptRetrieval:
    EXPECTED = "<|im_start|>user\nhi<|im_end|>\n<|im_start|>assistant\n"

    def test_length_is_stable(self, runtime, chatml):
        params = runtime.chat_compile(chatml, HELLO)
        assert runtime.chat_params_prompt_length(params) == len(self.EXPECTED)
        assert runtime.chat_params_prompt_length(params) == len(self.EXPECTED)

    def test_exact_buffer(self, runtime, chatml):
        params = runtime.chat_compile(chatml, HELLO)
        length = runtime.chat_params_prompt_length(params)
        buf = bytearray(length + 1)
        assert runtime.chat_params_prompt_fill(params, buf) == length
        assert buf[:length].decode("utf-8") == self.EXPECTED
        assert buf[length] == 0

    def test_buffer_too_small_writes_nothing(self, runtime, chatml):
        params = runtime.chat_compile(chatml, HELLO)
        length = runtime.chat_params_prompt_length(params)
        buf = bytearray(b"\xaa" * length)
        with pytest.raises(BufferTooSmallError) as exc_info:
            runtime.chat_params_prompt_fill(params, buf)
        assert exc_info.value.required == length + 1
        assert exc_info.value.available == length
        assert buf == bytearray(b"\xaa" * length)

    def test_larger_buffer(self, runtime, chatml):
        params = runtime.chat_compile(chatml, HELLO)
        buf = bytearray(b"\xff" * 256)
        n = runtime.chat_params_prompt_fill(params, buf)
        assert buf[:n].decode("utf-8") == self.EXPECTED
        assert buf[n] == 0
        assert buf[n + 1] == 0xFF

    def test_length_counts_utf8_bytes(self, runtime, chatml):
        params = runtime.chat_compile(
            chatml, {"messages": [{"role": "user", "content": "héllo 東京"}]}
        )
        prompt = runtime.chat_params_prompt(params)
        assert runtime.chat_params_prompt_length(params) == len(prompt.encode("utf-8"))
        assert runtime.chat_params_prompt_length(params) > len(prompt)

    def test_array_buffer(self, runtime, chatml):
        params = runtime.chat_compile(chatml, HELLO)
        length = runtime.chat_params_prompt_length(params)
        buf = array("B", bytes(length + 1))
        runtime.chat_params_prompt_fill(params, buf)
        assert buf.tobytes()[:length].decode("utf-8") == self.EXPECTED


class TestFillBuffer:
    def test_read_only_buffer(self):
        with pytest.raises(CallerContractError):
            fill_buffer(b"abc", b"\x00" * 8)

    def test_not_a_buffer(self):
        with pytest.raises(CallerContractError):
            fill_buffer(b"abc", "not a buffer")

    def test_empty_payload(self):
        buf = bytearray(b"x")
        assert fill_buffer(b"", buf) == 0
        assert buf == bytearray(b"\x00")

    def test_empty_buffer(self):
        with pytest.raises(BufferTooSmallError):
            fill_buffer(b"", bytearray())


# ─── Parsing ─────────────────────────────────────────────────────────────────


class TestChatParse:
    def test_hello_there(self, runtime):
        out = runtime.chat_parse("hello there", 0)
        assert out == '{"role": "assistant", "content": "hello there", "tool_calls": [], "tool_plan": null}'

    def test_tool_call_json(self, runtime):
        out = json.loads(runtime.chat_parse(
            '<tool_call>{"name": "get_weather", "arguments": {"city": "Paris"}}</tool_call>',
            int(ChatFormat.HERMES_2_PRO),
        ))
        assert list(out) == ["role", "content", "tool_calls", "tool_plan"]
        assert out["tool_calls"] == [{"name": "get_weather", "arguments": {"city": "Paris"}, "id": ""}]

    def test_invalid_format(self, runtime):
        with pytest.raises(ValueError):
            runtime.chat_parse("x", 42)

    def test_parse_error(self, runtime):
        with pytest.raises(ChatParseError):
            runtime.chat_parse("not json", int(ChatFormat.GENERIC))

    def test_parse_into_buffer(self, runtime):
        expected = runtime.chat_parse("héllo", 0).encode("utf-8")
        buf = bytearray(len(expected) + 1)
        assert runtime.chat_parse_into("héllo", 0, buf) == len(expected)
        assert bytes(buf[:-1]) == expected


# ─── Sampling ────────────────────────────────────────────────────────────────


class TestSamplingHandles:
    def test_greedy_sampling(self, runtime):
        params = runtime.sampling_params_init()
        runtime.sampling_params_set_temperature(params, 0.0)
        sampler = runtime.sampler_init(4, params)
        assert runtime.sampler_sample(sampler, FixedLogits([0.1, 3.0, 0.5, -1.0])) == 1
        candidates = runtime.sampler_get_candidates(sampler)
        assert candidates[0].id == 1

    def test_setters(self, runtime):
        params = runtime.sampling_params_init()
        runtime.sampling_params_set_frequency_penalty(params, 0.5)
        runtime.sampling_params_set_presence_penalty(params, 0.25)
        runtime.sampling_params_set_seed(params, 1234)
        runtime.sampling_params_set_top_p(params, 0.5)
        values = runtime.sampling_params_get(params)
        assert (values.penalty_freq, values.penalty_present, values.seed, values.top_p) == (0.5, 0.25, 1234, 0.5)

    def test_params_outlive_nothing(self, runtime):
        params = runtime.sampling_params_init()
        sampler = runtime.sampler_init(None, params)
        runtime.sampling_params_free(params)
        runtime.sampler_accept(sampler, 3)
        clone = runtime.sampler_clone(sampler)
        runtime.sampler_reset(sampler)
        runtime.sampler_free(sampler)
        runtime.sampler_free(clone)
        assert runtime.live_handles()["SAMPLER"] == 0

    def test_sampler_init_with_model(self, runtime):
        class FakeLlama:
            def n_vocab(self):
                return 3

        params = runtime.sampling_params_init()
        sampler = runtime.sampler_init(FakeLlama(), params)
        with pytest.raises(ValueError):
            runtime.sampler_sample(sampler, FixedLogits([1.0, 2.0]))

    def test_stale_sampler(self, runtime):
        params = runtime.sampling_params_init()
        sampler = runtime.sampler_init(None, params)
        runtime.sampler_free(sampler)
        with pytest.raises(InvalidHandleError):
            runtime.sampler_accept(sampler, 1)


def test_speculative_compatibility(runtime):
    tokens = ["<unk>", "<s>", "</s>", "a", "b", "c", "d"]
    vocab = Vocabulary(vocab_type=1, add_bos=True, add_eos=False, bos_id=1, eos_id=2, tokens=tokens)
    other = Vocabulary(vocab_type=1, add_bos=True, add_eos=False, bos_id=1, eos_id=2,
                       tokens=tokens[:5] + ["x", "d"])
    assert runtime.speculative_are_compatible(vocab, vocab)
    assert not runtime.speculative_are_compatible(vocab, other)


# ─── N-gram caches ───────────────────────────────────────────────────────────


class TestNgramHandles:
    def test_draft_through_handles(self, runtime, tmp_path):
        context = runtime.ngram_cache_init()
        dynamic = runtime.ngram_cache_init()
        static = runtime.ngram_cache_init()
        inp = [1, 2, 3, 1, 2, 3, 1, 2]
        runtime.ngram_cache_update(context, 1, 4, inp, len(inp))

        draft = runtime.ngram_cache_draft(inp, [2], 3, 1, 4, context, dynamic, static)
        assert draft == [2, 3, 1, 2]

        path = tmp_path / "context.bin"
        runtime.ngram_cache_save(context, str(path))
        loaded = runtime.ngram_cache_load(str(path))
        assert runtime.ngram_cache_draft(inp, [2], 3, 1, 4, loaded, dynamic, static) == [2, 3, 1, 2]

        # The dynamic cache uses strict thresholds: two sightings are not enough
        runtime.ngram_cache_merge(dynamic, loaded)
        assert runtime.ngram_cache_draft(inp, [2], 3, 1, 4, static, dynamic, static) == [2]

        for handle in (context, dynamic, static, loaded):
            runtime.ngram_cache_free(handle)
        assert runtime.live_handles()["NGRAM_CACHE"] == 0

    def test_load_missing_file(self, runtime, tmp_path):
        with pytest.raises(FileNotFoundError):
            runtime.ngram_cache_load(str(tmp_path / "missing.bin"))
        assert runtime.live_handles()["NGRAM_CACHE"] == 0

    def test_draft_uses_ngram_config(self):
        config = HibikiConfig()
        config.ngram.n_draft = 2
        rt = Runtime(config)
        context = rt.ngram_cache_init()
        dynamic = rt.ngram_cache_init()
        inp = [1, 2, 3, 1, 2, 3, 1, 2]
        rt.ngram_cache_update(context, 1, 4, inp, len(inp))

        assert rt.ngram_cache_draft(inp, [2], nc_context=context, nc_dynamic=dynamic) == [2, 3, 1]
        assert rt.ngram_cache_draft(inp, [2], 3, nc_context=context, nc_dynamic=dynamic) == [2, 3, 1, 2]

    def test_configured_static_cache_is_loaded_once(self, tmp_path):
        static = NgramCache()
        static.add(make_ngram([1, 2]), 5, 3)
        path = tmp_path / "static.bin"
        static.save(path)

        config = HibikiConfig()
        config.ngram.static_cache = str(path)
        rt = Runtime(config)
        context = rt.ngram_cache_init()
        dynamic = rt.ngram_cache_init()
        inp = [1, 2, 3, 1, 2, 3, 1, 2]

        assert rt.ngram_cache_draft(inp, [2], 1, nc_context=context, nc_dynamic=dynamic) == [2, 5]
        path.unlink()
        assert rt.ngram_cache_draft(inp, [2], 1, nc_context=context, nc_dynamic=dynamic) == [2, 5]

    def test_missing_configured_static_cache(self, tmp_path):
        config = HibikiConfig()
        config.ngram.static_cache = str(tmp_path / "missing.bin")
        rt = Runtime(config)
        context = rt.ngram_cache_init()
        with pytest.raises(FileNotFoundError):
            rt.ngram_cache_draft([1, 2], [2], nc_context=context, nc_dynamic=context)

    def test_draft_requires_context_handles(self, runtime):
        with pytest.raises(InvalidHandleError):
            runtime.ngram_cache_draft([1, 2], [2])
