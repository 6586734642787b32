"""
Detection of unrecognized model names in invoice descriptions.

Collects candidate model names from lines the parser could not attribute,
so they can be surfaced once per session.
"""

import re
from typing import List, Optional, Tuple

import structlog

from .line_items import (
    EXTRA_FAST_PATTERN,
    GENERIC_REQUEST_PATTERN,
    ParsedUsageItem,
)

logger = structlog.get_logger()

TOKEN_BASED_TERM_PATTERN = re.compile(r"^(\d+) token-based usage calls to ([\w.-]+),", re.IGNORECASE)
FIRST_WORD_PATTERN = re.compile(r"^(\d+)\s+([\w.-]+)", re.IGNORECASE)
NOISE_PATTERN = re.compile(r"\b(?:requests?|calls?|beyond|per)\b|\*|,$", re.IGNORECASE)

# Model families such as "claude" or "gpt" are deliberately absent:
# a new "claude-x" must still be flagged.
GENERIC_TERMS = frozenset({
    "usage", "calls", "request", "requests", "cents", "beyond", "month", "day",
    "january", "february", "march", "april", "may", "june", "july", "august",
    "september", "october", "november", "december",
    "premium", "extra", "tool", "fast", "thinking",
    "token-based", "discounted",
})


def extract_candidate_term(description: str, is_discounted: bool = False) -> str:
    """Pull the most likely model name out of an unattributed description.

    Args:
        description: Raw invoice line description
        is_discounted: Whether the line carries a discount marker

    Returns:
        Cleaned candidate term, possibly empty
    """
    term = ""
    token_based = TOKEN_BASED_TERM_PATTERN.match(description)
    extra_fast = EXTRA_FAST_PATTERN.search(description)
    generic = GENERIC_REQUEST_PATTERN.match(description)

    if token_based:
        term = token_based.group(2)
    elif extra_fast:
        term = extra_fast.group(1)
    elif generic:
        term = generic.group(2).strip()
        if is_discounted and term.lower().startswith("discounted "):
            term = term[len("discounted "):]
    else:
        first_word = FIRST_WORD_PATTERN.match(description)
        if first_word:
            term = first_word.group(2)

    term = " ".join(NOISE_PATTERN.sub(" ", term).split())
    if term.lower().endswith(" usage"):
        term = term[:-len(" usage")].strip()
    return term


def is_meaningful_term(term: str) -> bool:
    """Reject empty, single-character and generic terms."""
    return len(term) > 1 and term.lower() not in GENERIC_TERMS


class UnknownModelDetector:
    """Accumulates unrecognized model names for a single session report.

    Owned by the caller's session context and passed into every snapshot
    build. Terms are de-duplicated by case-insensitive containment, so
    "glorbo-7" and "glorbo-7-mini" count as one finding. The report is
    handed out at most once until reset().
    """

    def __init__(self):
        self._terms: List[str] = []
        self._reported = False

    @property
    def terms(self) -> Tuple[str, ...]:
        """Terms recorded so far, in discovery order."""
        return tuple(self._terms)

    @property
    def reported(self) -> bool:
        return self._reported

    def _already_present(self, term: str) -> bool:
        needle = term.lower()
        return any(
            needle in existing.lower() or existing.lower() in needle
            for existing in self._terms
        )

    def observe(self, description: str, is_discounted: bool = False) -> Optional[str]:
        """Record the candidate term from an unattributed description.

        Args:
            description: Raw invoice line description
            is_discounted: Whether the line carries a discount marker

        Returns:
            The newly recorded term, or None if rejected or already known
        """
        term = extract_candidate_term(description, is_discounted)
        if not is_meaningful_term(term) or self._already_present(term):
            return None

        self._terms.append(term)
        logger.info("Detected unknown model", term=term, description=description)
        return term

    def observe_item(self, item: ParsedUsageItem) -> Optional[str]:
        """Record an item the parser resolved to the unknown-model sentinel."""
        if not item.is_unknown_model:
            return None
        return self.observe(item.source_description, item.is_discounted)

    def take_report(self) -> Optional[Tuple[str, ...]]:
        """Hand out the aggregated terms once per detector lifetime.

        Returns:
            Recorded terms on the first call that has any, else None
        """
        if self._reported or not self._terms:
            return None
        self._reported = True
        logger.info("Reporting unknown models", models=", ".join(self._terms))
        return tuple(self._terms)

    def reset(self) -> None:
        """Forget all terms and re-arm the one-shot report."""
        self._terms.clear()
        self._reported = False
