"""
Answer Generation via OpenAI Chat Completions

Wraps the chat model that writes the final answer. The system prompt confines
the model to the supplied evidence snippets and tells it to reply with the
fixed insufficient-evidence phrase when the snippets do not answer the
question.
"""

import os
import logging
from typing import Optional
from dataclasses import dataclass

from .errors import DependencyFailure
from .legal_safety import INSUFFICIENT_EVIDENCE_ANSWER

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = f"""You are an assistant that helps a person understand the evidence they have uploaded to a private case space.

Rules:
1. Answer ONLY using the evidence snippets provided in the user message. Do not use outside knowledge.
2. If the snippets do not contain enough information to answer, reply exactly: "{INSUFFICIENT_EVIDENCE_ANSWER}"
3. Never invent facts, names, dates, case names, statutes, laws, or outcomes that are not in the snippets.
4. Do not give legal advice, strategy, or predictions about outcomes. Do not cite case law or legislation unless it appears in the snippets.
5. If the question asks what to argue, what the law is, or what will happen, say that you cannot advise on that and recommend speaking to a qualified legal professional.
6. When you rely on a snippet, mention its snippet number (e.g. "Evidence snippet 2").
7. Be concise and factual."""


@dataclass
class GenerationConfig:
    """Configuration for the answer generation model."""
    model: str = "gpt-4o-mini"
    temperature: float = 0.1
    max_tokens: int = 1000
    timeout_seconds: float = 60.0
    max_retries: int = 3

    @classmethod
    def from_env(cls) -> "GenerationConfig":
        return cls(
            model=os.getenv("OPENAI_CHAT_MODEL", "gpt-4o-mini"),
            temperature=float(os.getenv("GENERATION_TEMPERATURE", "0.1")),
            max_tokens=int(os.getenv("GENERATION_MAX_TOKENS", "1000")),
            timeout_seconds=float(os.getenv("GENERATION_TIMEOUT_SECONDS", "60")),
            max_retries=int(os.getenv("GENERATION_MAX_RETRIES", "3")),
        )


def build_user_prompt(question: str, context: str) -> str:
    return f"Question: {question}\n\nEvidence snippets:\n{context}"


class AnswerGenerator:
    """Calls the chat model with the fixed grounding prompt."""

    def __init__(self, config: Optional[GenerationConfig] = None, client=None):
        self.config = config or GenerationConfig()
        self._client = client
        if self._client is None:
            self._init_client()

    def _init_client(self):
        """Initialize the OpenAI client."""
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            logger.warning("OPENAI_API_KEY not found. Answer generation will fail.")
            return

        from openai import OpenAI
        self._client = OpenAI(
            api_key=api_key,
            timeout=self.config.timeout_seconds,
            max_retries=self.config.max_retries,
        )
        logger.info(f"OpenAI chat client initialized with model {self.config.model}")

    def generate(self, question: str, context: str) -> str:
        """
        Generate an answer grounded in the context block.

        Returns:
            The model's answer, or the insufficient-evidence phrase if the
            model returned nothing.

        Raises:
            DependencyFailure: the call failed or timed out after retries
        """
        if not self._client:
            raise DependencyFailure("OpenAI client not initialized. Check OPENAI_API_KEY.")

        try:
            response = self._client.chat.completions.create(
                model=self.config.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_user_prompt(question, context)},
                ],
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
            )
        except Exception as e:
            from openai import APITimeoutError
            if isinstance(e, APITimeoutError):
                logger.error(f"Answer generation timed out for question: {question[:100]}")
            else:
                logger.error(f"Answer generation failed: {type(e).__name__}: {e}")
            raise DependencyFailure(f"Answer generation failed: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            logger.warning("Generation returned empty content; using insufficient-evidence answer")
            return INSUFFICIENT_EVIDENCE_ANSWER
        return content.strip()


def get_answer_generator(config: Optional[GenerationConfig] = None) -> AnswerGenerator:
    return AnswerGenerator(config or GenerationConfig.from_env())
