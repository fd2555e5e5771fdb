"""BM25 lexical scoring over node text."""

from __future__ import annotations

import math
import re
from collections import Counter
from dataclasses import dataclass

_NON_WORD = re.compile(r"[^\w]+")


def tokenize(text: str) -> list[str]:
    """Lowercase and split on anything that is not a word character."""
    return [t for t in _NON_WORD.sub(" ", text.lower()).split() if t]


@dataclass
class BM25Config:
    k1: float = 1.2
    b: float = 0.75


class BM25Index:
    """Okapi BM25 with the non-negative ``log(1 + ...)`` idf variant."""

    def __init__(self, config: BM25Config | None = None):
        self.config = config or BM25Config()
        self._docs: dict[str, Counter[str]] = {}
        self._lengths: dict[str, int] = {}
        self._df: Counter[str] = Counter()
        self._total_length = 0

    def __len__(self) -> int:
        return len(self._docs)

    def add_document(self, doc_id: str, text: str) -> None:
        if doc_id in self._docs:
            self.remove_document(doc_id)
        terms = Counter(tokenize(text))
        self._docs[doc_id] = terms
        length = sum(terms.values())
        self._lengths[doc_id] = length
        self._total_length += length
        self._df.update(terms.keys())

    def remove_document(self, doc_id: str) -> None:
        terms = self._docs.pop(doc_id, None)
        if terms is None:
            return
        self._total_length -= self._lengths.pop(doc_id)
        self._df.subtract(terms.keys())
        for term in terms:
            if self._df[term] <= 0:
                del self._df[term]

    def idf(self, term: str) -> float:
        n = len(self._docs)
        df = self._df.get(term, 0)
        return math.log((n - df + 0.5) / (df + 0.5) + 1.0)

    def score(self, query: str) -> dict[str, float]:
        """BM25 score of every indexed document with a positive score."""
        query_terms = tokenize(query)
        if not query_terms or not self._docs:
            return {}
        k1, b = self.config.k1, self.config.b
        avg_length = self._total_length / len(self._docs) or 1.0

        scores: dict[str, float] = {}
        for doc_id, terms in self._docs.items():
            length = self._lengths[doc_id]
            total = 0.0
            for term in query_terms:
                tf = terms.get(term, 0)
                if not tf:
                    continue
                norm = tf + k1 * (1 - b + b * length / avg_length)
                total += self.idf(term) * tf * (k1 + 1) / norm
            if total > 0:
                scores[doc_id] = total
        return scores

    def search(self, query: str, limit: int = 10) -> list[tuple[str, float]]:
        ranked = sorted(self.score(query).items(), key=lambda item: (-item[1], item[0]))
        return ranked[:limit]
