"""Near-duplicate detection over library documents."""
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set

from readingroom.config import get_settings
from readingroom.schemas.library import Document

_PUNCTUATION = re.compile(r"[^\w\s]")


@dataclass
class DuplicatePair:
    first: Document
    second: Document
    score: float
    reason: str


def _title_words(title: str) -> Set[str]:
    # Words of two characters or fewer carry no signal
    return {w for w in _PUNCTUATION.sub("", title.lower()).split() if len(w) > 2}


def title_similarity(a: str, b: str) -> float:
    """Jaccard similarity of the two titles' word sets."""
    words_a, words_b = _title_words(a), _title_words(b)
    union = len(words_a | words_b)
    if union == 0:
        return 0.0
    return len(words_a & words_b) / union


def _doi(doc: Document) -> str:
    doi = doc.meta.get("doi")
    return doi if isinstance(doi, str) else ""


def _same_identity(a: Document, b: Document) -> Optional[str]:
    if a.source == b.source and a.source_id and a.source_id == b.source_id:
        return f"matching {a.source or 'source'} ID"
    if _doi(a) and _doi(a) == _doi(b):
        return "matching DOI"
    return None


def find_duplicates(documents: Iterable[Document], threshold: Optional[float] = None) -> List[DuplicatePair]:
    """
    Compare every pair of documents and report likely duplicates.

    Args:
        documents: Documents to compare.
        threshold: Minimum title similarity; settings.duplicate_threshold when omitted.

    Returns:
        Pairs sorted by score, highest first. Identity matches score 1.0.
    """
    if threshold is None:
        threshold = get_settings().duplicate_threshold
    docs = list(documents)
    pairs: List[DuplicatePair] = []

    for i, first in enumerate(docs):
        for second in docs[i + 1:]:
            if first.id == second.id:
                continue
            reason = _same_identity(first, second)
            if reason:
                pairs.append(DuplicatePair(first, second, 1.0, reason))
                continue
            score = title_similarity(first.title, second.title)
            if score >= threshold:
                pairs.append(DuplicatePair(first, second, score, f"title similarity {score:.2f}"))

    pairs.sort(key=lambda p: p.score, reverse=True)
    return pairs
