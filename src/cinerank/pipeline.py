"""
End-to-end ranking: profile -> overlap scoring -> MMR diversity.

Each run is tagged with a per-user generation token. Starting a new run for
a user supersedes any run still in flight; stale runs notice by comparing
tokens after every suspension point and return without results.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from types import ModuleType
from typing import Callable, Iterable

from . import database
from .config import DEFAULT_MMR_LAMBDA, MMR_POOL_FACTOR, REPEAT_WINDOW_DAYS
from .diversity import clamp_lambda, mmr_rerank
from .discovery import MetadataFetcher, filter_candidate_pool
from .feedback import avoid_weights_from_counts
from .models import (
    AdjacentPreference,
    Candidate,
    FeedbackEvent,
    FeedbackKind,
    ScoredCandidate,
    SessionContext,
    SourceAttribution,
    TasteProfile,
    WatchEvent,
)
from .profile import build_taste_profile
from .reliability import SourceReliabilityWeighter
from .scorer import OverlapScorer

logger = logging.getLogger(__name__)


class GenerationTracker:
    """Thread-safe per-user generation counter."""

    def __init__(self):
        self._lock = threading.Lock()
        self._current: dict[str, int] = {}

    def begin(self, user_id: str) -> int:
        with self._lock:
            token = self._current.get(user_id, 0) + 1
            self._current[user_id] = token
            return token

    def is_current(self, user_id: str, token: int) -> bool:
        with self._lock:
            return self._current.get(user_id) == token


@dataclass
class RankingContext:
    """Request-scoped state for one ranking run."""
    user_id: str
    metadata: dict[int, Candidate] = field(default_factory=dict)
    session: SessionContext = field(default_factory=SessionContext)
    generation: int | None = None


@dataclass
class RankingInputs:
    """Persisted user state a ranking run reads."""
    events: list[WatchEvent] = field(default_factory=list)
    feedback: list[tuple[FeedbackEvent, Candidate | None]] = field(default_factory=list)
    feature_feedback: dict[str, tuple[int, int]] = field(default_factory=dict)
    adjacent: list[AdjacentPreference] = field(default_factory=list)
    blocked_ids: set[int] = field(default_factory=set)
    dismissed_ids: set[int] = field(default_factory=set)
    recently_shown: set[int] = field(default_factory=set)

    @property
    def watched_ids(self) -> set[int]:
        return {e.candidate_id for e in self.events if e.watched and e.candidate_id is not None}


@dataclass
class RankingResult:
    generation: int
    items: list[ScoredCandidate] = field(default_factory=list)
    superseded: bool = False
    profile: TasteProfile | None = None
    mmr_lambda: float | None = None


class RankingObserver:
    """Receives finished rankings; only current generations are delivered."""

    def on_ranking_ready(self, user_id: str, result: RankingResult) -> None:
        raise NotImplementedError


class RankingPipeline:
    def __init__(
        self,
        db: ModuleType | None = database,
        weighter: SourceReliabilityWeighter | None = None,
        scorer: OverlapScorer | None = None,
        tracker: GenerationTracker | None = None,
        fetcher_factory: Callable[[], MetadataFetcher] = MetadataFetcher,
        observers: Iterable[RankingObserver] | None = None,
        repeat_window_days: int = REPEAT_WINDOW_DAYS,
    ):
        self.db = db
        self.weighter = weighter or SourceReliabilityWeighter()
        self.scorer = scorer or OverlapScorer(self.weighter)
        self.tracker = tracker or GenerationTracker()
        self.fetcher_factory = fetcher_factory
        self.observers: list[RankingObserver] = list(observers or [])
        self.repeat_window_days = repeat_window_days

    def add_observer(self, observer: RankingObserver):
        self.observers.append(observer)

    def load_inputs(self, user_id: str) -> RankingInputs:
        db = self.db
        return RankingInputs(
            events=db.load_watch_events(user_id),
            feedback=db.load_feedback_events(user_id),
            feature_feedback=db.load_feature_feedback(user_id),
            adjacent=db.load_adjacent_preferences(user_id),
            blocked_ids=db.load_feedback_ids(user_id, [FeedbackKind.NEGATIVE_HARD]),
            dismissed_ids=db.load_feedback_ids(user_id, [FeedbackKind.NEGATIVE_SOFT]),
            recently_shown=db.load_recent_exposures(user_id, self.repeat_window_days),
        )

    def build_profile(
        self,
        context: RankingContext,
        inputs: RankingInputs,
        reference_time: datetime | None = None,
    ) -> TasteProfile:
        """Build the profile, falling back to an empty one if anything goes wrong."""
        try:
            return build_taste_profile(
                inputs.events,
                context.metadata,
                feedback=inputs.feedback,
                feature_feedback=inputs.feature_feedback,
                adjacent=inputs.adjacent,
                reference_time=reference_time,
            )
        except Exception as e:
            logger.warning(f"Profile build failed for {context.user_id}, ranking by popularity: {e}")
            return TasteProfile()

    def _notify(self, user_id: str, result: RankingResult):
        for observer in self.observers:
            try:
                observer.on_ranking_ready(user_id, result)
            except Exception as e:
                logger.error(f"Ranking observer {type(observer).__name__} failed: {e}")

    def rank(
        self,
        context: RankingContext,
        candidate_ids: Iterable[int],
        inputs: RankingInputs,
        attributions: dict[int, SourceAttribution] | None = None,
        k: int = 20,
        reference_time: datetime | None = None,
    ) -> RankingResult:
        """
        Rank already-fetched candidates for one user.

        Pure over its arguments: no I/O, no shared state beyond the generation
        check. Candidates without metadata in the context are skipped.
        """
        if context.generation is None:
            context.generation = self.tracker.begin(context.user_id)

        pool_ids = filter_candidate_pool(
            candidate_ids,
            watched=inputs.watched_ids,
            blocked=inputs.blocked_ids,
            recently_shown=inputs.recently_shown,
        )
        candidates = [context.metadata[cid] for cid in pool_ids if cid in context.metadata]
        if len(candidates) < len(pool_ids):
            logger.debug(f"{len(pool_ids) - len(candidates)} candidates had no metadata and were skipped")

        profile = self.build_profile(context, inputs, reference_time)
        scored = self.scorer.score_candidates(
            context.user_id,
            profile,
            candidates,
            session=context.session,
            avoid_weights=avoid_weights_from_counts(inputs.feature_feedback),
            dismissed_ids=inputs.dismissed_ids,
            attributions=attributions,
        )

        lam = context.session.mmr_lambda
        lam = clamp_lambda(DEFAULT_MMR_LAMBDA if lam is None else lam)
        items = mmr_rerank(scored[:k * MMR_POOL_FACTOR], k, lam)

        if not self.tracker.is_current(context.user_id, context.generation):
            logger.info(f"Discarding stale ranking generation {context.generation} for {context.user_id}")
            return RankingResult(context.generation, [], superseded=True)

        result = RankingResult(context.generation, items, profile=profile, mmr_lambda=lam)
        self._notify(context.user_id, result)
        return result

    async def rank_async(
        self,
        user_id: str,
        candidate_ids: Iterable[int],
        session: SessionContext | None = None,
        inputs: RankingInputs | None = None,
        attributions: dict[int, SourceAttribution] | None = None,
        fallbacks: dict[int, Candidate] | None = None,
        k: int = 20,
        progress: bool = False,
    ) -> RankingResult:
        """
        Fetch missing metadata, then rank.

        Starts a new generation for the user; if another run starts while
        this one is waiting on the network, this one returns superseded=True
        with no items. Returned items are logged as exposures so the next
        runs within the repeat window leave them out.
        """
        token = self.tracker.begin(user_id)
        candidate_ids = list(dict.fromkeys(candidate_ids))
        inputs = inputs or self.load_inputs(user_id)

        needed = set(candidate_ids) | {e.candidate_id for e in inputs.events if e.candidate_id is not None}
        needed |= {event.candidate_id for event, snapshot in inputs.feedback if snapshot is None}
        metadata = self.db.load_film_metadata(needed) if self.db is not None else {}
        missing = [cid for cid in sorted(needed) if cid not in metadata]

        if missing:
            async with self.fetcher_factory() as fetcher:
                results = await fetcher.fetch_many(
                    missing,
                    fallbacks=fallbacks,
                    is_current=lambda: self.tracker.is_current(user_id, token),
                    progress=progress,
                )
            if not self.tracker.is_current(user_id, token):
                logger.info(f"Ranking generation {token} for {user_id} superseded during fetch")
                return RankingResult(token, [], superseded=True)

            fetched = {r.candidate_id: r.candidate for r in results if r.candidate is not None}
            if self.db is not None:
                self.db.save_film_metadata(r.candidate for r in results if r.ok)
            metadata.update(fetched)

        context = RankingContext(
            user_id=user_id,
            metadata=metadata,
            session=session or SessionContext(),
            generation=token,
        )
        result = self.rank(context, candidate_ids, inputs, attributions=attributions, k=k)
        if self.db is not None and not result.superseded:
            self.db.record_exposures(user_id, result.items, result.generation, result.mmr_lambda)
        return result
