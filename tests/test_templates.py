"""Tests for template resolution and capability probing."""

from __future__ import annotations

import sys
from unittest.mock import MagicMock, patch

import pytest
from sample_templates import CHATML, HERMES_2_PRO, MISTRAL_NEMO, SINGLE_TOOL_CALL, model_metadata

from hibiki.chat.templates import ChatTemplate, resolve_template_set
from hibiki.chat.types import ToolChoice
from hibiki.errors import TemplateResolutionError
from hibiki.llama import ModelMetadata, metadata_from_llama, read_model_metadata

# ─── Resolution ──────────────────────────────────────────────────────────────


class TestResolveTemplateSet:
    def test_default_template(self):
        ts = resolve_template_set(model_metadata(CHATML))
        assert ts.default.source == CHATML
        assert ts.tool_use is None
        assert ts.model_name == "test-model"

    def test_bos_eos_from_token_list(self):
        ts = resolve_template_set(model_metadata(CHATML))
        assert ts.default.bos_token == "<s>"
        assert ts.default.eos_token == "</s>"

    def test_bos_eos_fallbacks(self):
        ts = resolve_template_set({"tokenizer.chat_template": CHATML},
                                  bos_token="<|begin|>", eos_token="<|end|>")
        assert ts.default.bos_token == "<|begin|>"
        assert ts.default.eos_token == "<|end|>"

    def test_tool_use_sub_template(self):
        ts = resolve_template_set(model_metadata(CHATML, tool_use=HERMES_2_PRO))
        assert ts.has_tool_use_template
        assert ts.template_for(use_tools=True).source == HERMES_2_PRO
        assert ts.template_for(use_tools=False).source == CHATML

    def test_named_override(self):
        ts = resolve_template_set(model_metadata(CHATML, rag=MISTRAL_NEMO), "rag")
        assert ts.default.source == MISTRAL_NEMO
        assert ts.default.name == "rag"

    def test_inline_override_replaces_all_templates(self):
        ts = resolve_template_set(model_metadata(CHATML, tool_use=HERMES_2_PRO), SINGLE_TOOL_CALL)
        assert ts.default.source == SINGLE_TOOL_CALL
        assert ts.tool_use is None

    def test_unknown_name_fails(self):
        with pytest.raises(TemplateResolutionError, match="no chat template named"):
            resolve_template_set(model_metadata(CHATML), "does_not_exist")

    def test_no_template_fails(self):
        with pytest.raises(TemplateResolutionError, match="no chat template"):
            resolve_template_set({"general.name": "bare"})

    def test_blank_template_fails(self):
        with pytest.raises(TemplateResolutionError):
            resolve_template_set({"tokenizer.chat_template": "   "})

    def test_override_used_when_model_has_none(self):
        ts = resolve_template_set({"general.name": "bare"}, CHATML)
        assert ts.default.source == CHATML

    def test_syntax_error_fails(self):
        with pytest.raises(TemplateResolutionError, match="does not compile"):
            resolve_template_set({"tokenizer.chat_template": "{% for x in %}"})


# ─── Model metadata ──────────────────────────────────────────────────────────


class TestModelMetadata:
    def test_from_llama_instance(self):
        llm = MagicMock()
        llm.metadata = {"general.name": "qwen3", "tokenizer.chat_template": CHATML}
        llm.token_bos.return_value = 1
        llm.token_eos.return_value = 2
        llm.detokenize.side_effect = lambda tokens, special: {1: b"<s>", 2: b"</s>"}[tokens[0]]

        meta = metadata_from_llama(llm)
        assert meta.name == "qwen3"
        assert meta.bos_token == "<s>"
        assert meta.eos_token == "</s>"

    def test_missing_bos_is_empty(self):
        llm = MagicMock()
        llm.metadata = {"tokenizer.chat_template": CHATML}
        llm.model_path = "/models/foo.gguf"
        llm.token_bos.return_value = -1
        llm.token_eos.return_value = -1
        meta = metadata_from_llama(llm)
        assert meta.bos_token == ""
        assert meta.name == "foo.gguf"
        llm.detokenize.assert_not_called()

    def test_from_path_opens_vocab_only(self, tmp_path):
        model_file = tmp_path / "model-4B.gguf"
        model_file.write_bytes(b"GGUF")
        fake_llm = MagicMock()
        fake_llm.metadata = {"tokenizer.chat_template": CHATML}
        fake_llm.model_path = str(model_file)
        fake_llm.token_bos.return_value = -1
        fake_llm.token_eos.return_value = -1
        mock_llama_cls = MagicMock(return_value=fake_llm)

        with patch.dict(sys.modules, {"llama_cpp": MagicMock(Llama=mock_llama_cls)}):
            meta = read_model_metadata(str(model_file))

        mock_llama_cls.assert_called_once_with(
            model_path=str(model_file), vocab_only=True, verbose=False
        )
        assert meta.values["tokenizer.chat_template"] == CHATML

    def test_missing_path_raises(self, tmp_path):
        with patch.dict(sys.modules, {"llama_cpp": MagicMock()}):
            with pytest.raises(FileNotFoundError):
                read_model_metadata(tmp_path / "nope.gguf")

    def test_metadata_passthrough(self):
        meta = ModelMetadata(values={"tokenizer.chat_template": CHATML})
        assert read_model_metadata(meta) is meta

    def test_unsupported_type(self):
        with pytest.raises(TypeError):
            read_model_metadata(42)


# ─── Capabilities ────────────────────────────────────────────────────────────


class TestCapabilities:
    def test_plain_template(self):
        caps = ChatTemplate(CHATML).capabilities
        assert caps.supports_system_role
        assert not caps.supports_tools
        assert not caps.supports_tool_calls
        assert not caps.supports_parallel_tool_calls
        assert caps.tool_choices == frozenset({ToolChoice.NONE})

    def test_hermes_template(self):
        caps = ChatTemplate(HERMES_2_PRO).capabilities
        assert caps.supports_tools
        assert caps.supports_tool_calls
        assert caps.supports_parallel_tool_calls
        assert not caps.requires_object_arguments
        assert caps.tool_choices == frozenset(ToolChoice)

    def test_single_call_template(self):
        caps = ChatTemplate(SINGLE_TOOL_CALL).capabilities
        assert caps.supports_tool_calls
        assert not caps.supports_parallel_tool_calls

    def test_object_arguments_detected(self):
        caps = ChatTemplate(MISTRAL_NEMO).capabilities
        assert caps.supports_tool_calls
        assert caps.requires_object_arguments

    def test_no_system_role(self):
        template = (
            "{% for m in messages %}{% if m.role == 'system' %}"
            "{{ raise_exception('System role not supported') }}{% endif %}"
            "{{ m.content }}{% endfor %}"
        )
        assert not ChatTemplate(template).capabilities.supports_system_role

    def test_template_set_capabilities_follow_tool_use(self):
        ts = resolve_template_set(model_metadata(CHATML, tool_use=HERMES_2_PRO))
        assert ts.capabilities(use_tools=True).supports_parallel_tool_calls
        assert not ts.capabilities(use_tools=False).supports_tools
