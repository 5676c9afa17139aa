#!/usr/bin/env python3
"""
Keyword extraction for incident text.

Two passes:
1. Fixed regex patterns (status codes, error/timeout/auth terms) assign
   category weights. These entries are final.
2. Term frequency over the remaining tokens, boosted for technical terms,
   long tokens and tokens written in upper case in the source.
"""

from __future__ import annotations

import re
from collections import Counter
from typing import Dict, List

from incident_suggest.domain import Keyword, KeywordType, SourceSystem
from incident_suggest.tuning_config import (
    ACRONYM_BOOST,
    DEFAULT_MAX_KEYWORDS,
    LONG_WORD_BOOST,
    LONG_WORD_MIN_CHARS,
    SEARCH_QUERY_TERMS,
    STOP_WORDS,
    TECHNICAL_BOOST,
    TECHNICAL_TERMS,
)

# Later patterns win when they match the same term
ERROR_PATTERNS = (
    (re.compile(r"\b\d{3}\b"), KeywordType.ERROR, 3.0),
    (re.compile(r"error|exception|failure|fault|problem", re.IGNORECASE), KeywordType.ERROR, 2.5),
    (re.compile(r"timeout|slow|performance|latency", re.IGNORECASE), KeywordType.ERROR, 2.0),
    (re.compile(r"patch|update|version|release", re.IGNORECASE), KeywordType.TECHNICAL, 2.0),
    (re.compile(r"login|auth|password|token|certificate", re.IGNORECASE), KeywordType.TECHNICAL, 2.5),
)

_PUNCTUATION = re.compile(r"[^\w\s]")
_MIN_WORD_CHARS = 3


def extract_keywords(text: str, max_keywords: int = DEFAULT_MAX_KEYWORDS) -> List[Keyword]:
    """
    Extract weighted keywords from incident text.

    Args:
        text: Incident short description and/or description
        max_keywords: Maximum number of keywords to return

    Returns:
        Keywords sorted by descending weight, at most max_keywords long
    """
    if not text or not text.strip() or max_keywords <= 0:
        return []

    keywords: Dict[str, Keyword] = {}
    _extract_pattern_keywords(text, keywords)
    _extract_word_keywords(text, keywords)

    # sorted() is stable: ties keep pattern hits ahead of frequency terms
    ranked = sorted(keywords.values(), key=lambda k: k.weight, reverse=True)
    return ranked[:max_keywords]


def _extract_pattern_keywords(text: str, keywords: Dict[str, Keyword]) -> None:
    for pattern, kw_type, weight in ERROR_PATTERNS:
        for match in pattern.findall(text):
            normalized = match.lower().strip()
            if len(normalized) > 1:
                keywords[normalized] = Keyword(word=normalized, weight=weight, type=kw_type)


def _extract_word_keywords(text: str, keywords: Dict[str, Keyword]) -> None:
    words = [
        w for w in _PUNCTUATION.sub(" ", text.lower()).split()
        if len(w) >= _MIN_WORD_CHARS and w not in STOP_WORDS
    ]

    for word, frequency in Counter(words).items():
        if word in keywords:
            continue

        weight = float(frequency)
        kw_type = KeywordType.NOUN

        if word in TECHNICAL_TERMS:
            weight *= TECHNICAL_BOOST
            kw_type = KeywordType.TECHNICAL

        if len(word) >= LONG_WORD_MIN_CHARS:
            weight *= LONG_WORD_BOOST

        # Acronym heuristic: the token occurs in upper case in the source
        if word.upper() in text:
            weight *= ACRONYM_BOOST

        keywords[word] = Keyword(word=word, weight=weight, type=kw_type)


def generate_search_query(keywords: List[Keyword]) -> str:
    """Join the top keywords into a plain search string."""
    return " ".join(kw.word for kw in keywords[:SEARCH_QUERY_TERMS])


def generate_system_queries(keywords: List[Keyword]) -> Dict[SourceSystem, str]:
    """Render the top keywords in each system's query dialect."""
    top = [kw.word for kw in keywords[:SEARCH_QUERY_TERMS]]
    return {
        SourceSystem.JIRA: " OR ".join(f'text ~ "{w}"' for w in top),
        SourceSystem.CONFLUENCE: " AND ".join(f'text ~ "{w}"' for w in top),
        SourceSystem.GITHUB: " ".join(top),
        SourceSystem.SN_KB: "^OR".join(f"short_descriptionLIKE{w}" for w in top),
    }
