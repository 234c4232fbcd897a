"""
Signature scoring: pick the films that say the most about a user's taste.

Seed selection for discovery should favour depth of personal taste over
mainstream popularity, so a loved obscure film that hits several top genres
beats an equally loved blockbuster outside them.
"""

import logging
import math
import random
from dataclasses import dataclass, field
from typing import Iterable

from .config import (
    SIGNATURE_RATING_PIVOT,
    SIGNATURE_RATING_SCALE,
    SIGNATURE_LIKED_BONUS,
    SIGNATURE_LIKED_UNRATED_BONUS,
    SIGNATURE_NICHE_MAX,
    SIGNATURE_POPULARITY_CEILING,
    SIGNATURE_GENRE_MATCH_BONUS,
    SIGNATURE_DECADE_MATCH_BONUS,
    SIGNATURE_HIDDEN_GEM_THRESHOLD,
    SIGNATURE_UNDER_RADAR_THRESHOLD,
    LIKED_FLOOR_WEIGHT,
    LIKED_MULTIPLIER,
)
from .models import Candidate, TasteProfile, WatchEvent, decade_of
from .profile import base_rating_weight

logger = logging.getLogger(__name__)


@dataclass
class SeedFilm:
    """A watched film considered as a discovery seed."""
    candidate_id: int
    title: str = ""
    rating: float | None = None
    liked: bool = False
    popularity: float | None = None
    genre_ids: tuple[int, ...] = ()
    release_year: int | None = None

    @classmethod
    def from_history(cls, event: WatchEvent, candidate: Candidate) -> "SeedFilm":
        return cls(
            candidate_id=candidate.id,
            title=candidate.title,
            rating=event.rating,
            liked=event.liked,
            popularity=candidate.popularity,
            genre_ids=tuple(g.id for g in candidate.genres),
            release_year=candidate.release_year,
        )


@dataclass
class SignatureScore:
    signature_score: float
    reasons: list[str] = field(default_factory=list)


def niche_bonus(popularity: float | None) -> float:
    """Log-scaled bonus that shrinks as popularity grows; 0 when popularity is unknown."""
    if popularity is None or popularity < 0:
        return 0.0
    ratio = math.log10(1 + popularity) / math.log10(1 + SIGNATURE_POPULARITY_CEILING)
    return min(SIGNATURE_NICHE_MAX, max(0.0, SIGNATURE_NICHE_MAX * (1 - ratio)))


def score_signature_film(film: SeedFilm, profile: TasteProfile) -> SignatureScore:
    score = 0.0
    reasons = []

    if film.rating is not None:
        rating_part = max(0.0, film.rating - SIGNATURE_RATING_PIVOT) * SIGNATURE_RATING_SCALE
        if film.liked:
            rating_part += SIGNATURE_LIKED_BONUS
        if rating_part > 0:
            score += rating_part
            reasons.append(f"Rated {film.rating:g}★" + (" and liked" if film.liked else ""))
    elif film.liked:
        score += SIGNATURE_LIKED_UNRATED_BONUS
        reasons.append("Liked")

    niche = niche_bonus(film.popularity)
    if niche > 0:
        score += niche
        if niche >= SIGNATURE_HIDDEN_GEM_THRESHOLD:
            reasons.append("Hidden gem")
        elif niche >= SIGNATURE_UNDER_RADAR_THRESHOLD:
            reasons.append("Under the radar")

    top_genres = {fw.feature_id: fw.name for fw in profile.top_genres}
    matched = [top_genres[g] for g in film.genre_ids if g in top_genres]
    if matched:
        score += SIGNATURE_GENRE_MATCH_BONUS * len(matched)
        reasons.append(f"Matches your top genres: {', '.join(matched)}")

    decade = decade_of(film.release_year)
    if decade is not None and any(fw.feature_id == decade for fw in profile.top_decades):
        score += SIGNATURE_DECADE_MATCH_BONUS
        reasons.append(f"From a favourite decade: {decade}s")

    return SignatureScore(signature_score=score, reasons=reasons)


def _rating_weight(film: SeedFilm) -> float:
    weight = base_rating_weight(film.rating)
    if film.liked:
        weight = max(weight, LIKED_FLOOR_WEIGHT) * LIKED_MULTIPLIER
    return weight


def select_seed_films(
    films: Iterable[SeedFilm],
    n: int,
    profile: TasteProfile | None = None,
    use_signature: bool = True,
    rng: random.Random | None = None,
) -> list[tuple[SeedFilm, SignatureScore]]:
    """
    Choose up to n seed films for discovery.

    Films are ranked by signature score (or plain rating weight when
    use_signature is False), ties going to the less popular film and then
    the lower id. Passing an rng draws a weighted
    sample from the top 2n instead of taking the top n.
    """
    if n <= 0:
        return []
    profile = profile or TasteProfile()
    scored = []
    for film in films:
        if use_signature:
            result = score_signature_film(film, profile)
        else:
            result = SignatureScore(signature_score=_rating_weight(film))
        scored.append((film, result))

    scored.sort(key=lambda pair: (
        -pair[1].signature_score,
        pair[0].popularity if pair[0].popularity is not None else float("inf"),
        pair[0].candidate_id,
    ))

    if rng is None:
        return scored[:n]

    pool = scored[:2 * n]
    chosen = []
    while pool and len(chosen) < n:
        weights = [max(s.signature_score, 1e-6) for _, s in pool]
        idx = rng.choices(range(len(pool)), weights=weights, k=1)[0]
        chosen.append(pool.pop(idx))
    return chosen
