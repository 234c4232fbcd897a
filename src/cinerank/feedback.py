"""
Feedback loop: fold a user's reactions to suggestions back into persisted statistics.

Every feedback row stores the exact counter deltas it applied, so replacing
it with newer feedback or undoing it reverses precisely what it did and the
next scoring run reproduces the pre-feedback state.
"""

import logging
from collections import defaultdict
from datetime import datetime, time
from types import ModuleType
from typing import Iterable

from . import database
from .config import (
    ADJACENT_SUCCESS_RATING,
    ADJACENT_TRANSITION_WINDOW,
    EXPLORATION_BLOCK_PENALTY,
    EXPLORATION_DISLIKE_THRESHOLD,
    EXPLORATION_LEARNING_RATE,
    EXPLORATION_LIKE_THRESHOLD,
    EXPLORATION_MAX,
    EXPLORATION_MIN,
    EXPLORATION_RECENT_FILMS,
)
from .models import (
    Candidate,
    FeatureType,
    FeedbackEvent,
    FeedbackKind,
    SuggestionState,
    TasteProfile,
    WatchEvent,
)
from .reliability import SourceReliabilityWeighter

logger = logging.getLogger(__name__)

FEEDBACK_FEATURE_TYPES = (FeatureType.GENRE.value, FeatureType.KEYWORD.value, FeatureType.DIRECTOR.value)

_KIND_STATES = {
    FeedbackKind.NEGATIVE_SOFT: SuggestionState.DISMISSED_SOFT,
    FeedbackKind.NEGATIVE_HARD: SuggestionState.BLOCKED_HARD,
}


def state_for_kind(kind: FeedbackKind | None) -> SuggestionState:
    return _KIND_STATES.get(kind, SuggestionState.SHOWN)


def _clamp_rate(rate: float) -> float:
    return round(min(EXPLORATION_MAX, max(EXPLORATION_MIN, rate)), 4)


def avoid_weights_from_counts(feature_feedback: dict[str, tuple[int, int]]) -> dict[str, float]:
    """
    Per-feature avoid weights: how far the smoothed miss rate sits above neutral.

    Features with no net negative evidence (including counters reset to zero
    by an undo) are left out entirely.
    """
    weights = {}
    for label, (positive, negative) in feature_feedback.items():
        miss_rate = (negative + 1) / (positive + negative + 2)
        if miss_rate > 0.5:
            weights[label] = miss_rate - 0.5
    return weights


def _is_exploratory(candidate: Candidate, profile: TasteProfile | None) -> bool:
    """A candidate outside both the user's top and avoided genres."""
    if profile is None or not candidate.genres:
        return False
    top = {fw.feature_id for fw in profile.top_genres}
    avoided = {fw.feature_id for fw in profile.avoid_genres}
    genre_ids = {g.id for g in candidate.genres}
    return not (genre_ids & top) and not (genre_ids & avoided)


class FeedbackLearner:
    """
    Records suggestion feedback and maintains the counters it feeds.

    State per (user, candidate): shown -> dismissed-soft | blocked-hard, and
    back to shown on undo. Nothing is terminal; newer feedback always replaces
    older feedback for the same pair.
    """

    def __init__(self, db: ModuleType = database, weighter: SourceReliabilityWeighter | None = None):
        self.db = db
        self.weighter = weighter

    def _resolve_candidate(self, event: FeedbackEvent, candidate: Candidate | None, previous: dict | None):
        if candidate is not None:
            return candidate
        if previous and previous.get('movie_features'):
            try:
                return Candidate.from_payload(previous['movie_features'])
            except ValueError:
                pass
        return self.db.load_film_metadata([event.candidate_id]).get(event.candidate_id)

    def _compute_deltas(
        self,
        event: FeedbackEvent,
        candidate: Candidate | None,
        profile: TasteProfile | None,
    ) -> dict:
        hit = 1 if event.kind.is_hit else 0
        miss = 1 - hit
        deltas = {
            'reliability': [
                {'source': source, 'level': event.consensus_level.value, 'hits': hit, 'misses': miss}
                for source in sorted(set(event.sources))
            ],
            'features': [],
            'exploration': 0.0,
        }
        if candidate is not None:
            for feature_type in FEEDBACK_FEATURE_TYPES:
                for tag in candidate.features(feature_type):
                    deltas['features'].append(
                        {'type': feature_type, 'name': tag.name, 'pos': hit, 'neg': miss}
                    )
            if event.kind == FeedbackKind.NEGATIVE_HARD and _is_exploratory(candidate, profile):
                deltas['exploration'] = -EXPLORATION_BLOCK_PENALTY
        return deltas

    def _apply(self, user_id: str, deltas: dict, sign: int) -> None:
        for cell in deltas.get('reliability', []):
            self.db.adjust_reliability(
                user_id, cell['source'], cell['level'], sign * cell['hits'], sign * cell['misses'],
            )
        for feature in deltas.get('features', []):
            self.db.adjust_feature_feedback(
                user_id, feature['type'], feature['name'], sign * feature['pos'], sign * feature['neg'],
            )
        exploration = deltas.get('exploration', 0.0)
        if exploration:
            current = self.db.get_exploration_rate(user_id)
            updated = _clamp_rate(current + sign * exploration)
            self.db.set_exploration_rate(user_id, updated)
            if sign > 0:
                # Record the clamped change, not the requested one
                deltas['exploration'] = round(updated - current, 4)

    def _invalidate(self, user_id: str):
        if self.weighter is not None:
            self.weighter.invalidate(user_id)

    def record(
        self,
        event: FeedbackEvent,
        candidate: Candidate | None = None,
        profile: TasteProfile | None = None,
    ) -> SuggestionState:
        """
        Upsert feedback for (user, candidate), replacing any earlier feedback.

        Args:
            event: The feedback; its kind must be a FeedbackKind
            candidate: Candidate metadata, stored as a snapshot for later profile builds
            profile: Current profile, used to tell whether a blocked film was exploratory

        Returns:
            The suggestion state after this feedback
        """
        with self.db.get_db():
            previous = self.db.get_feedback_row(event.user_id, event.candidate_id)
            candidate = self._resolve_candidate(event, candidate, previous)
            snapshot = candidate.to_payload() if candidate is not None else None

            if previous and previous['kind'] == event.kind.value:
                # Same reaction again: refresh the row, keep the counters as they are
                self.db.upsert_feedback_row(event, snapshot, previous['applied_deltas'])
                logger.debug(f"Repeated {event.kind.value} feedback for {event.user_id}/{event.candidate_id}")
                return state_for_kind(event.kind)

            if previous:
                self._apply(event.user_id, previous['applied_deltas'], sign=-1)

            deltas = self._compute_deltas(event, candidate, profile)
            self._apply(event.user_id, deltas, sign=1)
            self.db.upsert_feedback_row(event, snapshot, deltas)

        self._invalidate(event.user_id)
        logger.info(
            f"Recorded {event.kind.value} feedback for {event.user_id}/{event.candidate_id}"
            + (f" (replacing {previous['kind']})" if previous else "")
        )
        return state_for_kind(event.kind)

    def undo(self, user_id: str, candidate_id: int) -> bool:
        """Reverse and delete the active feedback for a pair. Returns False if there was none."""
        with self.db.get_db():
            previous = self.db.get_feedback_row(user_id, candidate_id)
            if previous is None:
                return False
            self._apply(user_id, previous['applied_deltas'], sign=-1)
            self.db.delete_feedback_row(user_id, candidate_id)

        self._invalidate(user_id)
        logger.info(f"Undid {previous['kind']} feedback for {user_id}/{candidate_id}")
        return True

    def state(self, user_id: str, candidate_id: int) -> SuggestionState:
        row = self.db.get_feedback_row(user_id, candidate_id)
        if row is None:
            return SuggestionState.SHOWN
        try:
            return state_for_kind(FeedbackKind(row['kind']))
        except ValueError:
            return SuggestionState.SHOWN

    def blocked_ids(self, user_id: str) -> set[int]:
        return self.db.load_feedback_ids(user_id, [FeedbackKind.NEGATIVE_HARD])

    def dismissed_ids(self, user_id: str) -> set[int]:
        return self.db.load_feedback_ids(user_id, [FeedbackKind.NEGATIVE_SOFT])

    def update_exploration_rate(
        self,
        user_id: str,
        rated_films: Iterable[tuple[WatchEvent, Candidate]],
        top_genres: Iterable[str],
    ) -> float:
        """
        Nudge the exploration rate from how the user rated films outside their top genres.

        Looks at the most recent rated exploratory films: a high average raises
        the rate, a low one lowers it, bounded to [EXPLORATION_MIN, EXPLORATION_MAX].
        """
        top = set(top_genres)
        exploratory = [
            (event, candidate) for event, candidate in rated_films
            if event.rating is not None and candidate.genres
            and not any(g.name in top for g in candidate.genres)
        ]
        exploratory.sort(key=lambda pair: (pair[0].last_watched or datetime.min.date(), pair[0].uri), reverse=True)
        recent = exploratory[:EXPLORATION_RECENT_FILMS]

        current = self.db.get_exploration_rate(user_id)
        if not recent:
            return current

        avg = sum(event.rating for event, _ in recent) / len(recent)
        new_rate = current
        if avg >= EXPLORATION_LIKE_THRESHOLD:
            new_rate = _clamp_rate(current + EXPLORATION_LEARNING_RATE)
        elif avg < EXPLORATION_DISLIKE_THRESHOLD:
            new_rate = _clamp_rate(current - EXPLORATION_LEARNING_RATE)

        if new_rate != current:
            self.db.set_exploration_rate(user_id, new_rate)
            logger.info(f"Exploration rate for {user_id}: {current:.2f} -> {new_rate:.2f} (avg {avg:.2f} over {len(recent)} films)")
        return new_rate

    def record_genre_transitions(
        self,
        user_id: str,
        films: Iterable[tuple[WatchEvent, Candidate]],
    ) -> int:
        """
        Learn primary-genre transitions from consecutive rated films.

        Counts over the most recent window are written as absolute values, so
        re-running on the same history is idempotent. Returns the number of
        genre pairs written.
        """
        rated = [
            (event, candidate) for event, candidate in films
            if event.rating is not None and event.last_watched is not None and candidate.genres
        ]
        rated.sort(key=lambda pair: (pair[0].last_watched, pair[0].uri))
        rated = rated[-ADJACENT_TRANSITION_WINDOW:]

        stats: dict[tuple[str, str], list] = defaultdict(lambda: [0, 0, None])
        for (_, prev_film), (event, film) in zip(rated, rated[1:]):
            from_genre = prev_film.genres[0].name
            to_genre = film.genres[0].name
            if from_genre == to_genre:
                continue
            cell = stats[(from_genre, to_genre)]
            cell[1] += 1
            if event.rating >= ADJACENT_SUCCESS_RATING:
                cell[0] += 1
            cell[2] = datetime.combine(event.last_watched, time())

        with self.db.get_db():
            for (from_genre, to_genre), (successes, trials, reinforced_at) in sorted(stats.items()):
                self.db.upsert_adjacent_preference(user_id, from_genre, to_genre, successes, trials, reinforced_at)

        if stats:
            logger.debug(f"Recorded {len(stats)} genre transitions for {user_id}")
        return len(stats)
