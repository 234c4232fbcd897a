import logging
from numbers import Real
from typing import Callable, Optional

import numpy as np

from .config import MMR_LAMBDA_MIN, MMR_LAMBDA_MAX
from .models import ScoredCandidate

logger = logging.getLogger(__name__)

SimilarityFunc = Callable[[ScoredCandidate, ScoredCandidate], float]


def clamp_lambda(lam) -> float:
    """Validate λ and clamp it into the supported band, warning when it moves."""
    if isinstance(lam, bool) or not isinstance(lam, Real):
        raise ValueError(f"MMR lambda must be a number, got {type(lam).__name__}")
    lam = float(lam)
    if lam != lam:
        raise ValueError("MMR lambda must not be NaN")
    clamped = min(MMR_LAMBDA_MAX, max(MMR_LAMBDA_MIN, lam))
    if clamped != lam:
        logger.warning(f"MMR lambda {lam} outside [{MMR_LAMBDA_MIN}, {MMR_LAMBDA_MAX}], using {clamped}")
    return clamped


def similarity_tokens(item: ScoredCandidate) -> set[str]:
    """genre:*, decade:* and director:* tokens used by the default similarity."""
    candidate = item.candidate
    tokens = {f"genre:{g.id}" for g in candidate.genres}
    tokens.update(f"director:{d.id}" for d in candidate.directors)
    if candidate.decade is not None:
        tokens.add(f"decade:{candidate.decade}")
    return tokens


def jaccard_matrix(items: list[ScoredCandidate]) -> np.ndarray:
    """Pairwise Jaccard similarity from a binary item x token incidence matrix."""
    token_sets = [similarity_tokens(item) for item in items]
    vocab = {tok: i for i, tok in enumerate(sorted(set().union(*token_sets)))} if token_sets else {}
    n = len(items)
    if n == 0 or not vocab:
        return np.zeros((n, n), dtype=float)

    incidence = np.zeros((n, len(vocab)), dtype=float)
    for row, tokens in enumerate(token_sets):
        for tok in tokens:
            incidence[row, vocab[tok]] = 1.0

    intersection = incidence @ incidence.T
    sizes = incidence.sum(axis=1)
    union = sizes[:, None] + sizes[None, :] - intersection
    with np.errstate(divide="ignore", invalid="ignore"):
        sim = np.where(union > 0, intersection / union, 0.0)
    return sim


def _custom_matrix(items: list[ScoredCandidate], similarity: SimilarityFunc) -> np.ndarray:
    n = len(items)
    sim = np.zeros((n, n), dtype=float)
    for i in range(n):
        for j in range(i + 1, n):
            sim[i, j] = sim[j, i] = float(similarity(items[i], items[j]))
    return sim


def normalize_relevance(scores: np.ndarray) -> np.ndarray:
    """Min-max normalise to [0, 1]; a flat pool maps to all ones."""
    if scores.size == 0:
        return scores
    lo, hi = float(scores.min()), float(scores.max())
    if hi - lo <= 0:
        return np.ones_like(scores)
    return (scores - lo) / (hi - lo)


def mmr_rerank(
    scored: list[ScoredCandidate],
    k: int,
    lam: float,
    similarity: Optional[SimilarityFunc] = None,
) -> list[ScoredCandidate]:
    """
    Maximal Marginal Relevance reranking.

    Greedily picks the item maximising lam * rel(i) - (1 - lam) * max_sim(i, selected),
    ties going to higher relevance, then higher vote quality, then lower
    popularity, then lower id (the same order the scorer sorts by).
    Never returns more than k items or the same candidate twice.
    """
    lam = clamp_lambda(lam)
    if k <= 0 or not scored:
        return []

    items: list[ScoredCandidate] = []
    seen: set[int] = set()
    for item in scored:
        if item.candidate.id not in seen:
            seen.add(item.candidate.id)
            items.append(item)

    rel = normalize_relevance(np.array([item.score for item in items], dtype=float))
    sim = _custom_matrix(items, similarity) if similarity else jaccard_matrix(items)

    popularity = [
        item.candidate.popularity if item.candidate.popularity is not None else float("inf")
        for item in items
    ]
    remaining = list(range(len(items)))
    max_sim = np.zeros(len(items), dtype=float)
    selected: list[int] = []

    while remaining and len(selected) < k:
        best = max(
            remaining,
            key=lambda i: (
                lam * rel[i] - (1.0 - lam) * max_sim[i],
                rel[i],
                items[i].vote_quality,
                -popularity[i],
                -items[i].candidate.id,
            ),
        )
        selected.append(best)
        remaining.remove(best)
        max_sim = np.maximum(max_sim, sim[best])

    logger.debug(f"MMR selected {len(selected)} of {len(items)} candidates (lambda={lam})")
    return [items[i] for i in selected]
