"""
Tests for execution/evidence_rag/generation.py

Covers: GenerationConfig, request shape sent to the chat model, empty
completions, and error wrapping.
"""

from unittest.mock import patch

import pytest

from tests.conftest import FakeChatClient


class TestGenerationConfig:
    def test_defaults(self):
        from execution.evidence_rag.generation import GenerationConfig
        cfg = GenerationConfig()
        assert cfg.model == "gpt-4o-mini"
        assert cfg.temperature == 0.1
        assert cfg.max_tokens == 1000
        assert cfg.timeout_seconds == 60.0
        assert cfg.max_retries == 3

    def test_from_env(self, monkeypatch):
        from execution.evidence_rag.generation import GenerationConfig
        monkeypatch.setenv("OPENAI_CHAT_MODEL", "gpt-4o")
        monkeypatch.setenv("GENERATION_MAX_TOKENS", "400")
        cfg = GenerationConfig.from_env()
        assert cfg.model == "gpt-4o"
        assert cfg.max_tokens == 400


class TestSystemPrompt:
    def test_contains_grounding_rules(self):
        from execution.evidence_rag.generation import SYSTEM_PROMPT
        from execution.evidence_rag.legal_safety import INSUFFICIENT_EVIDENCE_ANSWER
        assert INSUFFICIENT_EVIDENCE_ANSWER in SYSTEM_PROMPT
        assert "ONLY" in SYSTEM_PROMPT
        assert "legal professional" in SYSTEM_PROMPT


class TestAnswerGenerator:
    def test_request_shape(self):
        from execution.evidence_rag.generation import AnswerGenerator, SYSTEM_PROMPT
        client = FakeChatClient(reply="  The leak was reported on June 20th.  ")
        answer = AnswerGenerator(client=client).generate("When was the leak reported?", "CONTEXT")

        assert answer == "The leak was reported on June 20th."
        call = client.chat.completions.calls[0]
        assert call["model"] == "gpt-4o-mini"
        assert call["temperature"] == 0.1
        assert call["max_tokens"] == 1000
        assert call["messages"][0] == {"role": "system", "content": SYSTEM_PROMPT}
        assert call["messages"][1]["content"] == (
            "Question: When was the leak reported?\n\nEvidence snippets:\nCONTEXT"
        )

    @pytest.mark.parametrize("reply", [None, "", "   "])
    def test_empty_completion_falls_back(self, reply):
        from execution.evidence_rag.generation import AnswerGenerator
        from execution.evidence_rag.legal_safety import INSUFFICIENT_EVIDENCE_ANSWER
        client = FakeChatClient(reply=reply)
        assert AnswerGenerator(client=client).generate("q", "ctx") == INSUFFICIENT_EVIDENCE_ANSWER

    def test_provider_error_is_dependency_failure(self):
        from execution.evidence_rag.generation import AnswerGenerator
        from execution.evidence_rag.errors import DependencyFailure
        client = FakeChatClient(error=RuntimeError("503 upstream"))
        with pytest.raises(DependencyFailure, match="503 upstream"):
            AnswerGenerator(client=client).generate("q", "ctx")

    def test_missing_api_key(self, monkeypatch):
        from execution.evidence_rag.generation import AnswerGenerator
        from execution.evidence_rag.errors import DependencyFailure
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(DependencyFailure):
            AnswerGenerator().generate("q", "ctx")

    def test_client_configured_with_timeout(self, monkeypatch):
        from execution.evidence_rag.generation import AnswerGenerator, GenerationConfig
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        with patch("openai.OpenAI") as mock_openai:
            AnswerGenerator(GenerationConfig(timeout_seconds=45.0))
        assert mock_openai.call_args.kwargs["timeout"] == 45.0
        assert mock_openai.call_args.kwargs["max_retries"] == 3
