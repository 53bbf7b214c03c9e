"""Compliance filter: restricted-subject detection and output redaction.

Keyword classification is a heuristic: false negatives are expected, so the
conversation category remains the primary age-gate control and
classification only widens the gate for otherwise general conversations.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import StrEnum

from .errors import FilterError
from .models import ConversationCategory, FilterStrictness

logger = logging.getLogger(__name__)


class EscalationPolicy(StrEnum):
    """What a restricted-subject hit in a general conversation does."""

    BLOCK = "block"  # apply the age gate
    ANNOTATE = "annotate"  # record the hit only


@dataclass(frozen=True)
class Classification:
    """Result of classifying inbound or outbound text."""

    is_restricted_subject: bool
    matched_terms: tuple[str, ...] = ()


@dataclass(frozen=True)
class FilterResult:
    """Result of filtering model output."""

    text: str
    was_modified: bool
    issues: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Term sets
# ---------------------------------------------------------------------------

RESTRICTED_TERMS: frozenset[str] = frozenset(
    {
        # basic terms
        "cannabis", "marijuana", "weed", "pot", "ganja", "mary jane",
        # compounds
        "thc", "cbd", "cbg", "cbn", "delta-8", "delta-9", "tetrahydrocannabinol",
        "cannabidiol", "cannabinoid", "cannabinoids", "terpene", "terpenes",
        # strains
        "indica", "sativa", "strain", "strains", "cultivar",
        # cultivation
        "grow tent", "germination", "flowering stage", "trichome", "trichomes",
        "hydroponics", "clones",
        # consumption
        "vape", "dab", "dabs", "edible", "edibles", "tincture", "joint", "blunt",
        "bong", "vaporizer",
        # products
        "bud", "buds", "concentrate", "hash", "rosin", "shatter", "live resin",
        "distillate",
        # industry
        "dispensary", "budtender", "medical marijuana", "adult use",
    }
)

_RESTRICTED_PATTERN = re.compile(
    r"(?<![\w-])(" + "|".join(re.escape(t) for t in sorted(RESTRICTED_TERMS, key=len, reverse=True)) + r")(?![\w-])",
    re.I,
)

# Sentences facilitating unlawful transactions
_COMMERCIAL_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"\b(?:buy|sell|selling|buying|purchase|purchasing)\b", re.I),
    re.compile(r"\b(?:dealer|plug|connect me)\b", re.I),
    re.compile(r"\b(?:venmo|paypal|cash ?app|zelle|crypto wallet)\b", re.I),
    re.compile(r"\b(?:ship(?:ping)?|deliver(?:y)?|meet ?up)\b.{0,40}\b(?:weed|bud|cannabis|product)\b", re.I),
    re.compile(r"\bprice (?:per|for an?) (?:gram|ounce|oz|eighth|quarter|pound)\b", re.I),
]

def _sentence_with(*keywords: str) -> re.Pattern[str]:
    """Match a whole sentence containing every keyword group, in order."""
    body = r"[^.!?\n]*?".join(rf"\b(?:{k})\b" for k in keywords)
    return re.compile(rf"(?:[^.!?\s][^.!?\n]*?)?{body}[^.!?\n]*[.!?]?", re.I)


# (pattern, safety replacement)
_HARMFUL_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (
        _sentence_with(r"driv(?:e|ing)|operat(?:e|ing) machinery", r"high|under the influence|stoned"),
        "Never drive or operate machinery under the influence of cannabis; it is illegal and dangerous.",
    ),
    (
        _sentence_with(r"give|share|provide", r"minors?|kids?|children|teen(?:ager)?s?"),
        "Cannabis must never be provided to minors; it is illegal and harmful.",
    ),
    (
        _sentence_with(r"pregnan(?:t|cy)|breastfeeding"),
        "Pregnant or breastfeeding individuals should consult a healthcare provider about cannabis use.",
    ),
    (
        _sentence_with(r"mix(?:ing)?", r"alcohol"),
        "Combining cannabis with alcohol increases impairment; avoid mixing them.",
    ),
]

COMMERCIAL_PLACEHOLDER = "[Removed: commercial cannabis activity is not permitted in this community.]"

_DISCLAIMERS: dict[ConversationCategory, str] = {
    ConversationCategory.GENERAL: (
        "Legal Disclaimer: Cannabis information is for educational purposes only. "
        "Always follow federal, state and local laws."
    ),
    ConversationCategory.CANNABIS_EDUCATION: (
        "Educational Notice: This information is for educational purposes only "
        "and is not medical advice."
    ),
    ConversationCategory.STRAIN_ADVICE: (
        "Information Notice: Strain effects vary by individual. "
        "Start with small amounts and consume responsibly."
    ),
    ConversationCategory.GROW_TIPS: (
        "Cultivation Notice: Cultivation laws vary by jurisdiction. "
        "Ensure compliance with all applicable laws."
    ),
    ConversationCategory.CULTIVATION_ADVICE: (
        "Cultivation Notice: Cultivation laws vary by jurisdiction. "
        "Ensure compliance with all applicable laws."
    ),
    ConversationCategory.LEGAL_INFO: (
        "Legal Notice: This is general information only and not legal advice. "
        "Consult a legal professional for specific guidance."
    ),
}

_STRICT_DISCLAIMER = (
    "Safety Notice: Consult a healthcare professional before use. "
    "Adults 21+ only."
)

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


# ---------------------------------------------------------------------------
# Filter
# ---------------------------------------------------------------------------


class ComplianceFilter:
    """Classifies inbound text and filters model output.

    Pure apart from logging; safe to share between concurrent requests.
    """

    def __init__(self, policy: EscalationPolicy = EscalationPolicy.BLOCK) -> None:
        self.policy = EscalationPolicy(policy)

    # -- classification -----------------------------------------------------

    def classify(self, text: str) -> Classification:
        if not text:
            return Classification(is_restricted_subject=False)
        matched = tuple(sorted({m.group(1).lower() for m in _RESTRICTED_PATTERN.finditer(text)}))
        return Classification(is_restricted_subject=bool(matched), matched_terms=matched)

    def requires_age_gate(
        self, category: ConversationCategory, classification: Classification
    ) -> bool:
        """Category gating first; classification widens it under BLOCK policy."""
        if category.is_restricted:
            return True
        return classification.is_restricted_subject and self.policy is EscalationPolicy.BLOCK

    # -- output filtering ---------------------------------------------------

    def filter_output(
        self,
        text: str,
        category: ConversationCategory = ConversationCategory.GENERAL,
        strictness: FilterStrictness = FilterStrictness.MODERATE,
    ) -> FilterResult:
        """Redact disallowed fragments and append mandated disclaimers.

        Never raises: on internal failure the original text is returned
        unmodified and the error is logged.
        """
        try:
            return self._filter(text, ConversationCategory(category), FilterStrictness(strictness))
        except Exception as exc:  # noqa: BLE001
            err = FilterError(f"compliance filter failed: {exc}")
            logger.error("Output filtering degraded to pass-through: %s", err, exc_info=exc)
            return FilterResult(text=text, was_modified=False, issues=["filter_error"])

    def _filter(
        self,
        text: str,
        category: ConversationCategory,
        strictness: FilterStrictness,
    ) -> FilterResult:
        issues: list[str] = []
        result = text

        redacted = self._remove_commercial(result)
        if redacted != result:
            result = redacted
            issues.append("commercial_content_removed")

        sanitized = self._sanitize_harmful(result)
        if sanitized != result:
            result = sanitized
            issues.append("harmful_content_sanitized")

        needs_disclaimer = category.is_restricted or (
            strictness is not FilterStrictness.MINIMAL and self.classify(result).is_restricted_subject
        )
        if needs_disclaimer:
            result = f"{result.rstrip()}\n\n{_DISCLAIMERS[category]}"
            issues.append("disclaimer_added")
            if strictness is FilterStrictness.STRICT:
                result = f"{result}\n{_STRICT_DISCLAIMER}"

        return FilterResult(text=result, was_modified=result != text, issues=issues)

    @staticmethod
    def _remove_commercial(text: str) -> str:
        sentences = _SENTENCE_SPLIT.split(text)
        kept: list[str] = []
        removed = False
        for sentence in sentences:
            if any(p.search(sentence) for p in _COMMERCIAL_PATTERNS):
                removed = True
                continue
            kept.append(sentence)
        if not removed:
            return text
        kept.append(COMMERCIAL_PLACEHOLDER)
        return " ".join(s for s in kept if s)

    @staticmethod
    def _sanitize_harmful(text: str) -> str:
        result = text
        for pattern, replacement in _HARMFUL_PATTERNS:
            result = pattern.sub(replacement, result)
        return result
