"""In-memory full-text index with fuzzy and prefix matching.

Rebuilt from the document store on startup; only the chunks themselves are
durable. Scoring is BM25 per field, with matches in the `source` field
boosted over body text and weaker weights for prefix and fuzzy matches.
"""

from __future__ import annotations

import math
import string
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable

from deskmate.knowledge.schema import (
    Chunk,
    KnowledgeLayer,
    SearchResult,
    layer_rank,
)


FIELD_BOOSTS: dict[str, float] = {"text": 1.0, "source": 2.0}
FUZZY_TOLERANCE = 0.2
PREFIX_WEIGHT = 0.375
FUZZY_WEIGHT = 0.45

BM25_K1 = 1.2
BM25_B = 0.7

_STRIP_CHARS = string.punctuation + "“”‘’«»…"


def tokenize(text: str) -> list[str]:
    """Split on whitespace, lowercase, strip surrounding punctuation.

    Tokens of length <= 1 are dropped.
    """
    tokens = []
    for raw in text.split():
        token = raw.strip(_STRIP_CHARS).lower()
        if len(token) > 1:
            tokens.append(token)
    return tokens


def bounded_edit_distance(a: str, b: str, max_distance: int) -> int | None:
    """Levenshtein distance between a and b, or None if above max_distance."""
    if abs(len(a) - len(b)) > max_distance:
        return None
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        row_min = i
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            value = min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + cost,
            )
            current.append(value)
            row_min = min(row_min, value)
        if row_min > max_distance:
            return None
        previous = current
    distance = previous[-1]
    return distance if distance <= max_distance else None


def bm25(tf: int, field_len: int, avg_len: float, df: int, num_docs: int) -> float:
    if tf <= 0 or field_len <= 0 or avg_len <= 0.0 or df <= 0:
        return 0.0
    idf = math.log(1.0 + (num_docs - df + 0.5) / (df + 0.5))
    numer = tf * (BM25_K1 + 1.0)
    denom = tf + BM25_K1 * (1.0 - BM25_B + BM25_B * (field_len / avg_len))
    return idf * (numer / denom)


@dataclass
class _IndexedDoc:
    chunk: Chunk
    field_lengths: dict[str, int]
    terms: dict[str, set[str]]
    seq: int


class LexicalIndex:
    """Inverted index over chunk text and source fields."""

    def __init__(self, fuzzy: float = FUZZY_TOLERANCE):
        self.fuzzy = fuzzy
        self._docs: dict[str, _IndexedDoc] = {}
        self._postings: dict[str, dict[str, dict[str, int]]] = {
            f: defaultdict(dict) for f in FIELD_BOOSTS
        }
        self._total_lengths: dict[str, int] = {f: 0 for f in FIELD_BOOSTS}
        self._seq = 0
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._docs)

    def __contains__(self, chunk_id: str) -> bool:
        return chunk_id in self._docs

    def index(self, chunk: Chunk) -> None:
        """Add or replace a chunk in the index."""
        fields = {"text": tokenize(chunk.text), "source": tokenize(chunk.source)}
        with self._lock:
            if chunk.id in self._docs:
                self._remove(chunk.id)

            lengths: dict[str, int] = {}
            for name, tokens in fields.items():
                lengths[name] = len(tokens)
                self._total_lengths[name] += len(tokens)
                postings = self._postings[name]
                for token in tokens:
                    postings[token][chunk.id] = postings[token].get(chunk.id, 0) + 1

            self._seq += 1
            self._docs[chunk.id] = _IndexedDoc(
                chunk=chunk,
                field_lengths=lengths,
                terms={name: set(tokens) for name, tokens in fields.items()},
                seq=self._seq,
            )

    def remove(self, chunk_id: str) -> bool:
        """Remove a chunk from the index. Returns False if it was absent."""
        with self._lock:
            return self._remove(chunk_id)

    def _remove(self, chunk_id: str) -> bool:
        doc = self._docs.pop(chunk_id, None)
        if doc is None:
            return False
        # Only the chunk's own terms hold postings for it
        for name, terms in doc.terms.items():
            self._total_lengths[name] -= doc.field_lengths.get(name, 0)
            postings = self._postings[name]
            for term in terms:
                docs = postings.get(term)
                if docs is None:
                    continue
                docs.pop(chunk_id, None)
                if not docs:
                    del postings[term]
        return True

    def clear(self) -> None:
        with self._lock:
            self._docs.clear()
            for name in self._postings:
                self._postings[name] = defaultdict(dict)
                self._total_lengths[name] = 0

    def rebuild(self, chunks: Iterable[Chunk]) -> None:
        """Discard everything and index the given chunks."""
        with self._lock:
            self.clear()
            for chunk in chunks:
                self.index(chunk)

    def search(
        self,
        query: str,
        limit: int = 10,
        layers: Iterable[KnowledgeLayer] | None = None,
    ) -> list[SearchResult]:
        """Rank chunks against a keyword query.

        Returns an empty list for empty queries or when nothing matches.
        """
        terms = tokenize(query or "")
        if not terms or limit <= 0:
            return []
        with self._lock:
            if not self._docs:
                return []
            return self._search(terms, limit, layers)

    def _search(
        self,
        terms: list[str],
        limit: int,
        layers: Iterable[KnowledgeLayer] | None,
    ) -> list[SearchResult]:
        allowed = set(layers) if layers is not None else None
        num_docs = len(self._docs)
        scores: dict[str, float] = defaultdict(float)

        for term in terms:
            for name, boost in FIELD_BOOSTS.items():
                avg_len = self._total_lengths[name] / num_docs if num_docs else 0.0
                postings = self._postings[name]
                for vocab_term, weight in self._expand(name, term):
                    docs = postings[vocab_term]
                    df = len(docs)
                    for chunk_id, tf in docs.items():
                        field_len = self._docs[chunk_id].field_lengths[name]
                        scores[chunk_id] += boost * weight * bm25(
                            tf, field_len, avg_len, df, num_docs
                        )

        ranked = []
        for chunk_id, score in scores.items():
            if score <= 0.0:
                continue
            doc = self._docs[chunk_id]
            if allowed is not None and doc.chunk.layer not in allowed:
                continue
            ranked.append(doc)

        ranked.sort(key=lambda d: (-scores[d.chunk.id], layer_rank(d.chunk.layer), d.seq))

        return [
            SearchResult(
                chunk_id=d.chunk.id,
                text=d.chunk.text,
                source=d.chunk.source,
                layer=d.chunk.layer,
                score=scores[d.chunk.id],
                origin="lexical",
                metadata=d.chunk.metadata.to_dict(),
            )
            for d in ranked[:limit]
        ]

    def _expand(self, field_name: str, term: str) -> list[tuple[str, float]]:
        """Find indexed terms matching `term` exactly, by prefix, or fuzzily."""
        max_distance = round(self.fuzzy * len(term))
        matches: list[tuple[str, float]] = []
        for vocab_term in self._postings[field_name]:
            if vocab_term == term:
                matches.append((vocab_term, 1.0))
            elif vocab_term.startswith(term):
                matches.append((vocab_term, PREFIX_WEIGHT * len(term) / len(vocab_term)))
            elif max_distance > 0:
                distance = bounded_edit_distance(term, vocab_term, max_distance)
                if distance is not None:
                    matches.append(
                        (vocab_term, FUZZY_WEIGHT * len(term) / (len(term) + distance))
                    )
        return matches
