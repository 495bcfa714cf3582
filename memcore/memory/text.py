"""
MemCore — Text Utilities
==========================
Tokenization and string similarity for keyword retrieval and dedup.

- ``tokenize``: CJK runs go through jieba search-mode segmentation,
  everything else splits on non-word characters.
- ``text_similarity``: max(character-bigram Dice coefficient,
  jieba token Jaccard), both in [0, 1].
"""

from __future__ import annotations

import logging
import re
import unicodedata
from collections import Counter

import jieba

jieba.setLogLevel(logging.WARNING)

CJK_SEQ_RE = re.compile(r"([\u4e00-\u9fff\u3400-\u4dbf\uf900-\ufaff]+)")
CJK_CHAR_RE = re.compile(r"[\u4e00-\u9fff\u3400-\u4dbf\uf900-\ufaff]")
_NON_WORD_RE = re.compile(r"[^\w]+")

STOP_WORDS = frozenset({
    "的", "了", "是", "在", "我", "有", "和", "就", "不", "人", "都", "一",
    "一个", "上", "也", "很", "到", "说", "要", "去", "你", "会", "着",
    "没有", "看", "好", "自己", "这",
    "the", "a", "an", "is", "are", "was", "be", "to", "of", "and", "in",
    "that", "it", "for",
})


def is_cjk(text: str) -> bool:
    return bool(CJK_CHAR_RE.search(text))


def tokenize(text: str) -> list[str]:
    """Lower-cased tokens in text order; duplicates kept."""
    if not text:
        return []
    tokens: list[str] = []
    for segment in CJK_SEQ_RE.split(text):
        if not segment:
            continue
        if is_cjk(segment):
            words = jieba.cut_for_search(segment)
        else:
            words = _NON_WORD_RE.split(segment)
        for word in words:
            word = word.strip().lower()
            if word:
                tokens.append(word)
    return tokens


def keyword_tokens(query: str) -> list[str]:
    """
    Distinct query tokens for keyword scans.

    Single-character non-CJK tokens are dropped; they match almost anything.
    """
    seen: dict[str, None] = {}
    for token in tokenize(query):
        if len(token) < 2 and not is_cjk(token):
            continue
        seen.setdefault(token, None)
    return list(seen)


# ── Dedup Similarity ────────────────────────────────────────────────────


def normalize_for_dedup(text: str) -> str:
    """Strip whitespace, punctuation and symbols; lower-case."""
    return "".join(
        ch for ch in text.lower()
        if not ch.isspace() and unicodedata.category(ch)[0] not in ("P", "S")
    )


def bigrams(normalized: str) -> Counter[str]:
    return Counter(normalized[i:i + 2] for i in range(len(normalized) - 1))


def dice_coefficient(a: str, b: str) -> float:
    """Sørensen-Dice over character-bigram multisets of the normalized texts."""
    norm_a = normalize_for_dedup(a)
    norm_b = normalize_for_dedup(b)
    if len(norm_a) < 2 and len(norm_b) < 2:
        return 1.0 if norm_a == norm_b else 0.0
    grams_a = bigrams(norm_a)
    grams_b = bigrams(norm_b)
    size_a = sum(grams_a.values())
    size_b = sum(grams_b.values())
    if size_a == 0 or size_b == 0:
        return 0.0
    overlap = sum((grams_a & grams_b).values())
    return 2 * overlap / (size_a + size_b)


def dedup_tokens(text: str) -> set[str]:
    """jieba tokens without stop words and punctuation."""
    result: set[str] = set()
    for token in jieba.lcut(text):
        token = token.strip().lower()
        if not token or not normalize_for_dedup(token):
            continue
        if token in STOP_WORDS:
            continue
        result.add(token)
    return result


def jaccard_similarity(a: set[str], b: set[str]) -> float:
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def text_similarity(a: str, b: str) -> float:
    """max(Dice, Jaccard); 0.0 when either side normalizes to nothing."""
    if not normalize_for_dedup(a) or not normalize_for_dedup(b):
        return 0.0
    tokens_a = dedup_tokens(a)
    tokens_b = dedup_tokens(b)
    jaccard = jaccard_similarity(tokens_a, tokens_b) if tokens_a and tokens_b else 0.0
    return max(dice_coefficient(a, b), jaccard)
