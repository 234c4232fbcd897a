import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from statistics import mean
from typing import Iterable

from .config import (
    PROFILE_TOP_N,
    MAX_CAST_CONSIDERED,
    ACTOR_WEIGHT_FACTOR,
    EVIDENCE_PER_FEATURE,
    RATING_WEIGHT_STEPS,
    WEIGHT_UNRATED,
    LIKED_MULTIPLIER,
    LIKED_FLOOR_WEIGHT,
    REWATCH_MULTIPLIER,
    AVOID_MAX_RATING,
    AVOID_RATING_STEPS,
    AVOID_WEIGHT_MILD,
    FEEDBACK_PROFILE_WEIGHTS,
    TEMPORAL_DECAY_HALF_LIFE_DAYS,
    TEMPORAL_DECAY_MIN_WEIGHT,
    WATCHLIST_BASE_WEIGHT,
    WATCHLIST_HALF_LIFE_DAYS,
    WATCHLIST_MIN_WEIGHT,
    WATCHLIST_RECENT_DAYS,
    WATCHLIST_RECENT_BOOST,
    ADJACENT_MIN_TRIALS,
    ADJACENT_MIN_WIN_RATE,
    ADJACENT_BORROW_FRACTION,
    ADJACENT_HALF_LIFE_DAYS,
    ADJACENT_LOW_CONFIDENCE_SAMPLES,
)
from .models import (
    AdjacentPreference,
    Candidate,
    FeatureType,
    FeatureWeight,
    FeedbackEvent,
    FeedbackKind,
    ProfileStats,
    Tag,
    TasteProfile,
    WatchEvent,
)

logger = logging.getLogger(__name__)

# Feature types that carry avoid and watchlist-intent lists
SIGNAL_TYPES = (FeatureType.GENRE.value, FeatureType.KEYWORD.value, FeatureType.DIRECTOR.value)
ALL_TYPES = tuple(ft.value for ft in FeatureType)


def _age_days(when: date | datetime | None, reference_time: datetime) -> int | None:
    if when is None:
        return None
    if isinstance(when, datetime):
        return (reference_time - when.replace(tzinfo=None)).days
    return (reference_time.date() - when).days


def compute_recency_decay(
    when: date | datetime | None,
    reference_time: datetime | None = None,
    half_life_days: float = TEMPORAL_DECAY_HALF_LIFE_DAYS,
    min_weight: float = TEMPORAL_DECAY_MIN_WEIGHT,
) -> float:
    """
    Exponential half-life decay: weight = 2^(-age / half_life), floored at min_weight.

    A missing date or a date in the future counts as recent (1.0).
    """
    if reference_time is None:
        reference_time = datetime.now()
    age_days = _age_days(when, reference_time)
    if age_days is None or age_days <= 0:
        return 1.0
    return max(math.pow(2, -age_days / half_life_days), min_weight)


def base_rating_weight(rating: float | None) -> float:
    """Map a star rating to its base weight; unrated films get a neutral-positive weight."""
    if rating is None:
        return WEIGHT_UNRATED
    for threshold, weight in RATING_WEIGHT_STEPS:
        if rating >= threshold:
            return weight
    return 0.0


def compute_film_weight(event: WatchEvent, reference_time: datetime | None = None) -> float:
    """Positive weight a watched film contributes to its features."""
    weight = base_rating_weight(event.rating)
    if event.liked:
        weight = max(weight, LIKED_FLOOR_WEIGHT) * LIKED_MULTIPLIER
    if event.rewatch or event.watch_count > 1:
        weight *= REWATCH_MULTIPLIER
    return weight * compute_recency_decay(event.last_watched, reference_time)


def avoid_weight(rating: float | None, liked: bool = False) -> float:
    """Avoid-list weight for a watched film; 0 when the film is not a negative signal."""
    if liked or rating is None or rating > AVOID_MAX_RATING:
        return 0.0
    for threshold, weight in AVOID_RATING_STEPS:
        if rating <= threshold:
            return weight
    return AVOID_WEIGHT_MILD


def feedback_feature_multiplier(positive: int, negative: int) -> float:
    """0.5 + Laplace win rate; exactly 1.0 with no feedback."""
    return 0.5 + (positive + 1) / (positive + negative + 2)


@dataclass
class _Bucket:
    name: str
    total: float = 0.0
    count: int = 0
    last_seen: date | None = None
    evidence: dict[str, float] = field(default_factory=dict)


class _FeatureAccumulator:
    """Sums weights per (feature_type, feature_id), then dampens by sample count."""

    def __init__(self):
        self._buckets: dict[str, dict[int, _Bucket]] = defaultdict(dict)

    def add(
        self,
        feature_type: str,
        tag: Tag,
        weight: float,
        title: str | None = None,
        seen_at: date | datetime | None = None,
    ):
        if weight <= 0:
            return
        bucket = self._buckets[feature_type].get(tag.id)
        if bucket is None:
            bucket = self._buckets[feature_type][tag.id] = _Bucket(name=tag.name)
        bucket.total += weight
        bucket.count += 1
        if isinstance(seen_at, datetime):
            seen_at = seen_at.date()
        if seen_at and (bucket.last_seen is None or seen_at > bucket.last_seen):
            bucket.last_seen = seen_at
        if title:
            bucket.evidence[title] = max(bucket.evidence.get(title, 0.0), weight)

    def add_film(
        self,
        candidate: Candidate,
        weight: float,
        feature_types: Iterable[str] = ALL_TYPES,
        seen_at: date | datetime | None = None,
        with_evidence: bool = False,
    ):
        """Accumulate one film's weight into every feature it carries."""
        title = candidate.title if with_evidence else None
        for feature_type in feature_types:
            tags = candidate.features(feature_type)
            factor = 1.0
            if feature_type == FeatureType.ACTOR.value:
                tags = tags[:MAX_CAST_CONSIDERED]
                factor = ACTOR_WEIGHT_FACTOR
            for tag in tags:
                self.add(feature_type, tag, weight * factor, title, seen_at)

    def finalize(self, feature_type: str) -> list[FeatureWeight]:
        """Dampened, sorted (unbounded) list for one feature type."""
        weights = [
            FeatureWeight(
                feature_type=feature_type,
                feature_id=feature_id,
                name=bucket.name,
                weight=(bucket.total / bucket.count) * math.log1p(bucket.count),
                sample_count=bucket.count,
                last_seen_at=bucket.last_seen,
            )
            for feature_id, bucket in self._buckets.get(feature_type, {}).items()
        ]
        return sort_feature_weights(weights)

    def evidence(self) -> dict[str, list[str]]:
        result = {}
        for feature_type, buckets in self._buckets.items():
            for bucket in buckets.values():
                if not bucket.evidence:
                    continue
                titles = sorted(bucket.evidence.items(), key=lambda kv: (-kv[1], kv[0]))
                result[f"{feature_type}:{bucket.name}"] = [t for t, _ in titles[:EVIDENCE_PER_FEATURE]]
        return result


def sort_feature_weights(weights: list[FeatureWeight]) -> list[FeatureWeight]:
    return sorted(weights, key=lambda fw: (-fw.weight, -fw.sample_count, fw.name, fw.feature_id))


def _apply_feature_feedback(
    weights: list[FeatureWeight],
    feature_feedback: dict[str, tuple[int, int]],
) -> list[FeatureWeight]:
    if not feature_feedback:
        return weights
    for fw in weights:
        counts = feature_feedback.get(fw.label)
        if counts:
            fw.weight *= feedback_feature_multiplier(*counts)
    return sort_feature_weights(weights)


def _borrow_adjacent_genres(
    genres: list[FeatureWeight],
    top_n: int,
    adjacent: list[AdjacentPreference],
    genre_index: dict[str, Tag],
    reference_time: datetime,
) -> list[FeatureWeight]:
    """
    Let low-confidence genres inherit a fraction of a well-evidenced neighbour's weight.

    Borrowed weight decays with the age of the last reinforcement, so it fades
    away unless the transition keeps being observed.
    """
    top_by_name = {fw.name: fw for fw in genres[:top_n]}
    by_name = {fw.name: fw for fw in genres}
    borrowed_any = False

    for pref in sorted(adjacent, key=lambda p: (p.from_genre, p.to_genre)):
        if pref.trials < ADJACENT_MIN_TRIALS or pref.win_rate < ADJACENT_MIN_WIN_RATE:
            continue
        source = top_by_name.get(pref.from_genre)
        if source is None or pref.to_genre == pref.from_genre:
            continue
        target = by_name.get(pref.to_genre)
        if target is not None and target.sample_count >= ADJACENT_LOW_CONFIDENCE_SAMPLES:
            continue

        decay = compute_recency_decay(
            pref.last_reinforced_at, reference_time,
            half_life_days=ADJACENT_HALF_LIFE_DAYS, min_weight=0.0,
        )
        borrowed = ADJACENT_BORROW_FRACTION * source.weight * pref.win_rate * decay
        if borrowed <= 0:
            continue

        if target is None:
            tag = genre_index.get(pref.to_genre)
            if tag is None:
                logger.debug(f"No catalog id known for adjacent genre '{pref.to_genre}', skipping")
                continue
            target = FeatureWeight(
                feature_type=FeatureType.GENRE.value,
                feature_id=tag.id,
                name=tag.name,
                weight=0.0,
                sample_count=0,
            )
            genres.append(target)
            by_name[target.name] = target
        target.weight += borrowed
        target.borrowed_from = source.label
        borrowed_any = True
        logger.debug(f"Genre '{target.name}' borrowed {borrowed:.3f} from '{source.name}'")

    return sort_feature_weights(genres) if borrowed_any else genres


def _compute_stats(watched: list[WatchEvent]) -> ProfileStats:
    ratings = [e.rating for e in watched if e.rating is not None]
    highly_rated = [
        e.candidate_id for e in watched
        if e.candidate_id is not None and ((e.rating is not None and e.rating >= 4.0) or e.liked)
    ]
    return ProfileStats(
        n_films=len(watched),
        n_rated=len(ratings),
        n_liked=sum(1 for e in watched if e.liked),
        avg_rating=mean(ratings) if ratings else None,
        highly_rated_ids=sorted(set(highly_rated)),
    )


def build_taste_profile(
    events: Iterable[WatchEvent],
    metadata: dict[int, Candidate],
    feedback: Iterable[tuple[FeedbackEvent, Candidate | None]] | None = None,
    feature_feedback: dict[str, tuple[int, int]] | None = None,
    adjacent: Iterable[AdjacentPreference] | None = None,
    reference_time: datetime | None = None,
    top_n: int = PROFILE_TOP_N,
) -> TasteProfile:
    """
    Build a weighted taste profile from watch history and explicit feedback.

    Args:
        events: Watch history (watched films and watchlist entries)
        metadata: Candidate metadata keyed by catalog id
        feedback: (FeedbackEvent, candidate snapshot) pairs; snapshot may be None
        feature_feedback: {"type:name": (positive, negative)} counters
        adjacent: Learned genre transitions for weight borrowing
        reference_time: "Now" for decay computations
        top_n: Length of each top list

    Returns:
        TasteProfile. No history yields an empty profile.
    """
    reference_time = reference_time or datetime.now()
    events = list(events)
    feature_feedback = feature_feedback or {}

    positive = _FeatureAccumulator()
    negative = _FeatureAccumulator()
    intent = _FeatureAccumulator()

    watched = [e for e in events if e.watched]
    runtimes = []
    missing = 0

    for event in events:
        candidate = metadata.get(event.candidate_id) if event.candidate_id is not None else None
        if candidate is None:
            missing += 1
            continue

        if not event.watched:
            if event.on_watchlist:
                weight = WATCHLIST_BASE_WEIGHT * compute_recency_decay(
                    event.watchlist_added, reference_time,
                    half_life_days=WATCHLIST_HALF_LIFE_DAYS, min_weight=WATCHLIST_MIN_WEIGHT,
                )
                age = _age_days(event.watchlist_added, reference_time)
                if age is not None and age <= WATCHLIST_RECENT_DAYS:
                    weight *= WATCHLIST_RECENT_BOOST
                intent.add_film(candidate, weight, SIGNAL_TYPES, seen_at=event.watchlist_added)
            continue

        weight = compute_film_weight(event, reference_time)
        positive.add_film(candidate, weight, seen_at=event.last_watched, with_evidence=True)
        if weight > 0 and candidate.runtime:
            runtimes.append(candidate.runtime)

        penalty = avoid_weight(event.rating, event.liked)
        if penalty > 0:
            decay = compute_recency_decay(event.last_watched, reference_time)
            negative.add_film(candidate, penalty * decay, SIGNAL_TYPES, seen_at=event.last_watched)

    if missing:
        logger.debug(f"{missing} history entries had no metadata and were skipped")

    for fb_event, snapshot in feedback or ():
        candidate = snapshot or metadata.get(fb_event.candidate_id)
        if candidate is None:
            continue
        weight = FEEDBACK_PROFILE_WEIGHTS[fb_event.kind.value] * compute_recency_decay(
            fb_event.timestamp, reference_time,
        )
        if fb_event.kind in (FeedbackKind.POSITIVE, FeedbackKind.PAIRWISE_WIN):
            positive.add_film(candidate, weight, seen_at=fb_event.timestamp)
        else:
            negative.add_film(candidate, weight, SIGNAL_TYPES, seen_at=fb_event.timestamp)

    profile = TasteProfile(
        evidence=positive.evidence(),
        stats=_compute_stats(watched),
        avg_runtime=mean(runtimes) if runtimes else None,
    )

    for feature_type in ALL_TYPES:
        weights = positive.finalize(feature_type)
        if feature_type in SIGNAL_TYPES:
            weights = _apply_feature_feedback(weights, feature_feedback)
        if feature_type == FeatureType.GENRE.value and adjacent:
            genre_index = {
                tag.name: tag for c in metadata.values() for tag in c.genres
            }
            weights = _borrow_adjacent_genres(weights, top_n, list(adjacent), genre_index, reference_time)
        setattr(profile, f"top_{feature_type}s", weights[:top_n])

    for feature_type in SIGNAL_TYPES:
        setattr(profile, f"avoid_{feature_type}s", negative.finalize(feature_type)[:top_n])
        setattr(profile, f"watchlist_{feature_type}s", intent.finalize(feature_type)[:top_n])

    logger.debug(
        f"Built profile from {len(watched)} watched films: "
        f"{len(profile.top_genres)} genres, {len(profile.top_directors)} directors, "
        f"{len(profile.avoid_genres)} avoided genres"
    )
    return profile
