"""
Lightweight text helpers shared by the agents.

These are deliberately simple token-set operations (no stemming, no
embeddings model). The fingerprint is a hashed bag-of-words vector used
only for relative similarity between papers, never for exact search.
"""

import hashlib
import math
import re
from collections import Counter
from typing import Iterable, List, Set

STOPWORDS = frozenset("""
a about above after again against all also am an and any are as at be because
been before being below between both but by can could did do does doing down
during each few for from further had has have having he her here hers him his
how i if in into is it its itself just may me might more most must my no nor
not now of off on once only or other our ours out over own same she should so
some such than that the their theirs them then there these they this those
through to too under until up upon very was we were what when where which while
who whom why will with within without would you your
""".split())

_TOKEN_RE = re.compile(r"[a-z0-9]+")

FINGERPRINT_DIMENSIONS = 64


def tokenize(text: str) -> List[str]:
    """Lowercase alphanumeric tokens with stopwords removed."""
    return [t for t in _TOKEN_RE.findall((text or "").lower()) if t not in STOPWORDS]


def token_set(text: str) -> Set[str]:
    return set(tokenize(text))


def jaccard(first: Set[str], second: Set[str]) -> float:
    union = first | second
    if not union:
        return 0.0
    return len(first & second) / len(union)


def keywords(texts: Iterable[str], limit: int = 10, min_length: int = 5) -> List[str]:
    """Most frequent content words, ties broken by first appearance."""
    counts: Counter = Counter()
    for text in texts:
        counts.update(t for t in tokenize(text) if len(t) >= min_length and not t.isdigit())
    return [word for word, _ in counts.most_common(limit)]


def fingerprint(text: str, dimensions: int = FINGERPRINT_DIMENSIONS) -> List[float]:
    """L2-normalised hashed term-frequency vector."""
    vector = [0.0] * dimensions
    for token in tokenize(text):
        digest = hashlib.md5(token.encode("utf-8")).digest()
        bucket = int.from_bytes(digest[:4], "big") % dimensions
        sign = 1.0 if digest[4] % 2 == 0 else -1.0
        vector[bucket] += sign
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return vector
    return [round(v / norm, 6) for v in vector]


def cosine(first: List[float], second: List[float]) -> float:
    if not first or not second or len(first) != len(second):
        return 0.0
    dot = sum(a * b for a, b in zip(first, second))
    norm = math.sqrt(sum(a * a for a in first)) * math.sqrt(sum(b * b for b in second))
    if norm == 0:
        return 0.0
    return dot / norm


def split_sentences(text: str) -> List[str]:
    return [s.strip() for s in re.split(r"[.!?]+", text or "") if s.strip()]
