"""
Tests for execution/evidence_rag/legal_safety.py

Covers: pattern list hygiene, case-insensitive substring matching, the
minimum-length rule, refusal answer contents, and curated examples.
"""

import random

import pytest


class TestPatternList:
    def test_patterns_are_unique_and_lowercase(self):
        from execution.evidence_rag.legal_safety import ADVICE_PATTERNS, validate_patterns
        assert len(ADVICE_PATTERNS) == len(set(ADVICE_PATTERNS))
        assert all(p == p.lower() for p in ADVICE_PATTERNS)
        assert validate_patterns()["valid"] is True

    def test_validate_patterns_reports_duplicates(self):
        from execution.evidence_rag.legal_safety import validate_patterns
        report = validate_patterns(["can i sue", "Can I Sue", "will i win"])
        assert report["valid"] is False
        assert report["duplicates"] == ["Can I Sue"]
        assert report["not_lowercase"] == ["Can I Sue"]
        assert report["count"] == 2

    def test_pattern_count(self):
        from execution.evidence_rag.legal_safety import get_pattern_count, ADVICE_PATTERNS
        assert get_pattern_count() == len(ADVICE_PATTERNS) > 30


class TestIsAdviceLike:
    def test_scenario_argue_in_court(self):
        from execution.evidence_rag.legal_safety import is_advice_like
        assert is_advice_like("What should I argue in court?") is True

    @pytest.mark.parametrize("question", [
        "WHAT ARE MY CHANCES of winning?",
        "  can i sue my landlord  ",
        "Is this legal?",
        "Under section 21 can they evict me",
        "Should I settle or go to trial?",
    ])
    def test_case_insensitive_substring(self, question):
        from execution.evidence_rag.legal_safety import is_advice_like
        assert is_advice_like(question) is True

    def test_short_inputs_never_flagged(self):
        from execution.evidence_rag.legal_safety import is_advice_like
        assert is_advice_like("") is False
        assert is_advice_like("   ") is False
        assert is_advice_like("win?") is False
        assert is_advice_like(None) is False

    def test_find_advice_pattern(self):
        from execution.evidence_rag.legal_safety import find_advice_pattern
        assert find_advice_pattern("Do I have a case here?") == "do i have a case"
        assert find_advice_pattern("When was the invoice sent?") is None

    def test_blocked_and_allowed_examples(self):
        from execution.evidence_rag.legal_safety import (
            is_advice_like, BLOCKED_EXAMPLES, ALLOWED_EXAMPLES,
        )
        assert all(is_advice_like(q) for q in BLOCKED_EXAMPLES)
        assert not any(is_advice_like(q) for q in ALLOWED_EXAMPLES)

    def test_matches_iff_pattern_present(self):
        """Guard result equals 'some pattern is a substring and length >= 5'."""
        from execution.evidence_rag.legal_safety import (
            is_advice_like, ADVICE_PATTERNS, MIN_QUESTION_LENGTH,
        )
        rng = random.Random(7)
        words = ["the", "evidence", "should", "i", "win", "what", "law", "on",
                 "case", "sue", "can", "is", "this", "legal", "email", "July"]
        for _ in range(500):
            question = " ".join(rng.choice(words) for _ in range(rng.randint(1, 8)))
            normalized = question.strip().lower()
            expected = len(normalized) >= MIN_QUESTION_LENGTH and any(
                p in normalized for p in ADVICE_PATTERNS
            )
            assert is_advice_like(question) is expected, question


class TestRefusalAnswer:
    def test_fixed_text_and_notice(self):
        from execution.evidence_rag.legal_safety import (
            build_refusal_answer, REFUSAL_TEXT, LIMITATION_NOTICE,
        )
        refusal = build_refusal_answer()
        assert refusal.answer_text == REFUSAL_TEXT
        assert refusal.limitation_notice == LIMITATION_NOTICE
        assert "qualified legal professional" in refusal.answer_text
        assert build_refusal_answer() == refusal

    def test_to_dict(self):
        from execution.evidence_rag.legal_safety import build_refusal_answer
        assert set(build_refusal_answer().to_dict()) == {"answer_text", "limitation_notice"}
