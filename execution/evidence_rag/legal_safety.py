"""
Legal-Advice Heuristic Guard

Fast, stateless pre-filter that flags questions asking for legal advice
(arguments to make, outcome predictions, statutory interpretation, or
litigation actions) so the pipeline can refuse them before any embedding or
generation call is made.

Matching is a case-insensitive substring test against a fixed, ordered,
deduplicated pattern list. It is deliberately approximate; the generation
system prompt is a second line of defense.
"""

import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

MIN_QUESTION_LENGTH = 5

LIMITATION_NOTICE = (
    "This answer is based only on the evidence you uploaded. It may be incomplete "
    "or inaccurate and is not legal advice."
)

INSUFFICIENT_EVIDENCE_ANSWER = (
    "I cannot answer this question based on the evidence available in this case space."
)

REFUSAL_TEXT = (
    "I'm not able to tell you what arguments to make, what the law is, or what outcome "
    "you might get. This service can only help you explore and understand the evidence "
    "you've uploaded. For legal advice about what to do, you should speak to a qualified "
    "legal professional."
)

_RAW_ADVICE_PATTERNS = (
    # Requests for arguments or courtroom strategy
    "what should i argue",
    "what argument should i",
    "what should i say in court",
    "what should i tell the judge",
    "what should i present",
    # Outcome prediction
    "how do i win my case",
    "how can i win",
    "what are my chances",
    "will i win",
    "am i going to win",
    "what will the judge decide",
    "what will happen in court",
    # Statements of law
    "what is the law on",
    "what's the law on",
    "whats the law on",
    "what does the law say about",
    "what are the laws about",
    "is this legal",
    "is this lawful",
    "is this illegal",
    # Statutory interpretation
    "under section",
    "under subsection",
    "according to the act",
    "what statute",
    "what regulation",
    # Litigation actions
    "can i sue",
    "should i sue",
    "should i appeal",
    "should i file",
    "should i withdraw",
    "should i settle",
    "can i get damages",
    "how much can i claim",
    # Pleadings and responses
    "what defense should i",
    "what claim should i",
    "what motion should i",
    "how do i respond to",
    "what do i say about",
    # Case strength
    "do i have a case",
    "is my case strong",
    "do i have grounds",
)

# Ordered, duplicate-free, lowercase
ADVICE_PATTERNS: tuple[str, ...] = tuple(dict.fromkeys(p.lower() for p in _RAW_ADVICE_PATTERNS))

BLOCKED_EXAMPLES = (
    "What should I argue in court?",
    "How can I win this case?",
    "What are my chances of getting custody?",
    "What is the law on tenant deposits?",
    "Can I sue my landlord for this?",
    "Do I have a case against my employer?",
)

ALLOWED_EXAMPLES = (
    "What documents mention the incident on July 14th?",
    "Summarize the emails from my landlord.",
    "When did the repairs start according to the invoices?",
    "Who signed the tenancy agreement?",
    "List the dates mentioned in the medical report.",
)


@dataclass(frozen=True)
class RefusalAnswer:
    """Fixed answer returned for advice-seeking questions."""
    answer_text: str
    limitation_notice: str

    def to_dict(self) -> dict:
        return {
            "answer_text": self.answer_text,
            "limitation_notice": self.limitation_notice,
        }


def _normalize(question: str) -> str:
    return (question or "").strip().lower()


def find_advice_pattern(question: str) -> Optional[str]:
    """Return the first pattern the question matches, or None."""
    normalized = _normalize(question)
    if len(normalized) < MIN_QUESTION_LENGTH:
        return None
    for pattern in ADVICE_PATTERNS:
        if pattern in normalized:
            return pattern
    return None


def is_advice_like(question: str) -> bool:
    """
    True if the question looks like a request for legal advice.

    Questions shorter than MIN_QUESTION_LENGTH characters (after trimming)
    are never flagged.
    """
    pattern = find_advice_pattern(question)
    if pattern is not None:
        logger.debug(f"Question matched advice pattern '{pattern}'")
        return True
    return False


def build_refusal_answer() -> RefusalAnswer:
    return RefusalAnswer(answer_text=REFUSAL_TEXT, limitation_notice=LIMITATION_NOTICE)


def validate_patterns(patterns=_RAW_ADVICE_PATTERNS) -> dict:
    """Report duplicate and non-lowercase entries in a pattern list."""
    seen = set()
    duplicates = []
    not_lowercase = []
    for pattern in patterns:
        if pattern != pattern.lower():
            not_lowercase.append(pattern)
        key = pattern.lower()
        if key in seen:
            duplicates.append(pattern)
        seen.add(key)
    return {
        "valid": not duplicates and not not_lowercase,
        "duplicates": duplicates,
        "not_lowercase": not_lowercase,
        "count": len(seen),
    }


def get_pattern_count() -> int:
    return len(ADVICE_PATTERNS)
