"""Lexical helpers shared by retrieval, context assembly and curation.

There is no embedding model here; every similarity is computed over token
sets. CJK text has no word boundaries, so runs of CJK characters are broken
into overlapping character bigrams.
"""

from __future__ import annotations

import math
import re
from collections import Counter

STOP_WORDS = frozenset({
    # Chinese
    "的", "了", "是", "在", "我", "你", "他", "她", "它", "们", "这", "那", "有", "和",
    "就", "不", "人", "都", "一", "为", "之", "乎", "者", "也", "得",
    # English
    "the", "a", "an", "is", "are", "was", "were", "in", "on", "at", "to", "for",
    "of", "and", "or", "but",
})

_CJK_RUN = re.compile(r"[一-龥]+")
_ASCII_WORD = re.compile(r"[a-z0-9]+")
_NON_WORD = re.compile(r"[^一-龥a-z0-9\s]")


def extract_keywords(text: str) -> list[str]:
    """Extract de-duplicated search keywords from an utterance.

    ASCII words are split on anything non-alphanumeric. Each CJK run yields
    its character bigrams, plus the whole run when it is 2-4 characters
    long. Stop words and single characters are dropped.
    """
    lowered = text.lower()
    candidates = _ASCII_WORD.findall(lowered)

    for run in _CJK_RUN.findall(lowered):
        candidates.extend(run[i:i + 2] for i in range(len(run) - 1))
        if 2 <= len(run) <= 4:
            candidates.append(run)

    return [
        w for w in dict.fromkeys(candidates)
        if len(w) > 1 and w not in STOP_WORDS
    ]


def top_terms(text: str, max_terms: int = 5) -> list[str]:
    """Most frequent whitespace-delimited terms, stop words removed."""
    words = _NON_WORD.sub(" ", text.lower()).split()
    counts = Counter(w for w in words if len(w) > 1 and w not in STOP_WORDS)
    return [word for word, _ in counts.most_common(max_terms)]


def word_set(text: str) -> set[str]:
    return set(text.lower().split())


def jaccard_similarity(text_a: str, text_b: str) -> float:
    """|A ∩ B| / |A ∪ B| over lower-cased whitespace word sets."""
    words_a = word_set(text_a)
    words_b = word_set(text_b)
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


def overlap_coefficient(terms_a: set[str], terms_b: set[str]) -> float:
    """|A ∩ B| / sqrt(|A| * |B|). Zero when either set is empty."""
    if not terms_a or not terms_b:
        return 0.0
    return len(terms_a & terms_b) / math.sqrt(len(terms_a) * len(terms_b))
