from __future__ import annotations

import enum
import re
from dataclasses import dataclass

from .logging_utils import get_logger

log = get_logger(__name__)

TRIGGER_TOKEN = "@web"

_TRIGGER_RE = re.compile(re.escape(TRIGGER_TOKEN), re.IGNORECASE)

_PERSON_PATTERNS = (
    "who is",
    "about person",
    "find person",
    "search person",
    "person info",
    "background",
    "profile",
)
_SOCIAL_PATTERNS = (
    "social media",
    "social analysis",
    "deep analysis",
    "online presence",
    "digital footprint",
    "social profile",
    "social activity",
    "social engagement",
    "followers",
    "social impact",
)

_PERSON_RE = re.compile("|".join(re.escape(p) for p in _PERSON_PATTERNS), re.IGNORECASE)
_SOCIAL_RE = re.compile("|".join(re.escape(p) for p in _SOCIAL_PATTERNS), re.IGNORECASE)

# Longest phrases first so "social profile" wins over "profile".
_SUBJECT_NOISE = sorted(
    {"who is", "about", "find", "search", "person info", "background", "profile", *_SOCIAL_PATTERNS},
    key=len,
    reverse=True,
)
_SUBJECT_NOISE_RE = re.compile(
    re.escape(TRIGGER_TOKEN) + "|" + "|".join(rf"\b{re.escape(p)}\b" for p in _SUBJECT_NOISE),
    re.IGNORECASE,
)
_LEADING_FILLER_RE = re.compile(r"^(?:(?:analysis|for|of|on)\b[\s:,-]*)+", re.IGNORECASE)
_QUOTED_RE = re.compile(r"\"([^\"]+)\"|'([^']+)'")


class ResearchMode(str, enum.Enum):
    NONE = "none"
    GENERIC = "generic"
    PERSON_LOOKUP = "person_lookup"
    SOCIAL_ANALYSIS = "social_analysis"


@dataclass(frozen=True)
class Classification:
    mode: ResearchMode
    cleaned_query: str
    subject: str | None = None

    @property
    def wants_research(self) -> bool:
        return self.mode is not ResearchMode.NONE


def has_trigger(text: str) -> bool:
    return bool(_TRIGGER_RE.search(text or ""))


def extract_subject(query: str) -> str:
    """Return the person or brand a lookup is about.

    A quoted substring wins; otherwise the query minus the trigger token and the
    classifier's own keywords.
    """
    cleaned = _SUBJECT_NOISE_RE.sub(" ", query or "")
    cleaned = re.sub(r"\s+", " ", cleaned).strip()

    m = _QUOTED_RE.search(cleaned)
    if m:
        return (m.group(1) or m.group(2) or "").strip()

    cleaned = _LEADING_FILLER_RE.sub("", cleaned).strip()
    return cleaned.strip(" \t?!.,:;")


def classify(raw_text: str) -> Classification:
    text = raw_text if isinstance(raw_text, str) else str(raw_text or "")
    if not has_trigger(text):
        return Classification(mode=ResearchMode.NONE, cleaned_query=text)

    cleaned_query = _TRIGGER_RE.sub("", text, count=1).strip()

    if _SOCIAL_RE.search(cleaned_query):
        mode = ResearchMode.SOCIAL_ANALYSIS
    elif _PERSON_RE.search(cleaned_query):
        mode = ResearchMode.PERSON_LOOKUP
    else:
        return Classification(mode=ResearchMode.GENERIC, cleaned_query=cleaned_query, subject=cleaned_query)

    subject = extract_subject(cleaned_query)
    if not subject:
        log.info("No subject found in %r; falling back to generic web search", cleaned_query)
        return Classification(mode=ResearchMode.GENERIC, cleaned_query=cleaned_query, subject=cleaned_query)
    return Classification(mode=mode, cleaned_query=cleaned_query, subject=subject)
