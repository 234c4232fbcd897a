import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from .config import (
    FEATURE_TYPE_WEIGHTS,
    FEATURE_TYPE_CAPS,
    AVOID_PENALTY_MULTIPLIER,
    FEEDBACK_AVOID_FACTOR,
    WATCHLIST_INTENT_WEIGHTS,
    QUALITY_PRIOR_VOTES,
    QUALITY_PRIOR_MEAN,
    QUALITY_PIVOT,
    QUALITY_SPAN,
    QUALITY_MIN,
    QUALITY_MAX,
    QUALITY_WEIGHT,
    POPULARITY_WEIGHT,
    POPULARITY_CEILING,
    MIN_METADATA_COMPLETENESS,
    INCOMPLETE_METADATA_PENALTY,
    SOFT_DISMISS_FACTOR,
    SOFT_DISMISS_PENALTY,
    MAX_REASONS,
    MAX_CAST_CONSIDERED,
    EVIDENCE_PER_FEATURE,
    TONES,
    TONE_SHORT_RUNTIME,
    TONE_LONG_RUNTIME,
    TONE_SHORT_BONUS,
    TONE_WEEKNIGHT_RUNTIME,
    TONE_WEEKNIGHT_BONUS,
    TONE_WEEKNIGHT_QUALITY,
    TONE_WEEKNIGHT_QUALITY_BONUS,
    TONE_FAMILY_BONUS,
    FAMILY_GENRE_IDS,
    FAMILY_AVOID_GENRE_IDS,
)
from .models import (
    Candidate,
    ConsensusLevel,
    FeatureType,
    FeatureWeight,
    ScoredCandidate,
    SessionContext,
    SourceAttribution,
    TasteProfile,
)
from .reliability import NEUTRAL_REASON, SourceReliabilityWeighter

logger = logging.getLogger(__name__)

POPULAR_FALLBACK_REASON = "Popular right now"

# (contribution, text); reasons are ranked by contribution
Reason = tuple[float, str]


@dataclass
class FeatureTypeConfig:
    """Scoring parameters for one feature type."""
    name: str
    weight: float
    cap: float
    reason_template: str                # e.g. "Director: {}"
    warning_template: str               # e.g. "Director: {} (avoided)"
    max_items: Optional[int] = None     # e.g. top-billed cast only


FEATURE_CONFIGS = [
    FeatureTypeConfig('genre', FEATURE_TYPE_WEIGHTS['genre'], FEATURE_TYPE_CAPS['genre'],
                      "Genre: {}", "Genre: {} (you tend to avoid)"),
    FeatureTypeConfig('keyword', FEATURE_TYPE_WEIGHTS['keyword'], FEATURE_TYPE_CAPS['keyword'],
                      "Theme: {}", "Theme: {} (you tend to avoid)"),
    FeatureTypeConfig('director', FEATURE_TYPE_WEIGHTS['director'], FEATURE_TYPE_CAPS['director'],
                      "Director: {}", "Director: {} (you tend to avoid)"),
    FeatureTypeConfig('actor', FEATURE_TYPE_WEIGHTS['actor'], FEATURE_TYPE_CAPS['actor'],
                      "Cast: {}", "Cast: {} (you tend to avoid)", max_items=MAX_CAST_CONSIDERED),
    FeatureTypeConfig('studio', FEATURE_TYPE_WEIGHTS['studio'], FEATURE_TYPE_CAPS['studio'],
                      "Studio: {}", "Studio: {} (you tend to avoid)"),
    FeatureTypeConfig('decade', FEATURE_TYPE_WEIGHTS['decade'], FEATURE_TYPE_CAPS['decade'],
                      "Era: {}", "Era: {} (you tend to avoid)"),
]


@dataclass
class _ProfileIndex:
    """Profile lists keyed by feature id, with per-type max weights for normalisation."""
    top: dict[str, dict[int, FeatureWeight]] = field(default_factory=dict)
    avoid: dict[str, dict[int, FeatureWeight]] = field(default_factory=dict)
    intent: dict[str, dict[int, FeatureWeight]] = field(default_factory=dict)
    top_max: dict[str, float] = field(default_factory=dict)
    avoid_max: dict[str, float] = field(default_factory=dict)
    intent_max: dict[str, float] = field(default_factory=dict)

    @classmethod
    def build(cls, profile: TasteProfile) -> "_ProfileIndex":
        index = cls()
        for ft in FeatureType:
            for target, maxes, weights in (
                (index.top, index.top_max, profile.top(ft.value)),
                (index.avoid, index.avoid_max, profile.avoid(ft.value)),
                (index.intent, index.intent_max, profile.intent(ft.value)),
            ):
                usable = [fw for fw in weights if fw.weight > 0]
                target[ft.value] = {fw.feature_id: fw for fw in usable}
                maxes[ft.value] = max((fw.weight for fw in usable), default=0.0)
        return index


def bayesian_vote_average(vote_average: float | None, vote_count: int | None) -> float:
    """Shrink the vote average toward the prior mean when there are few votes."""
    votes = vote_count or 0
    if vote_average is None or votes <= 0:
        return QUALITY_PRIOR_MEAN
    return (votes * vote_average + QUALITY_PRIOR_VOTES * QUALITY_PRIOR_MEAN) / (votes + QUALITY_PRIOR_VOTES)


def quality_term(vote_average: float | None, vote_count: int | None) -> float:
    bayes = bayesian_vote_average(vote_average, vote_count)
    return min(QUALITY_MAX, max(QUALITY_MIN, (bayes - QUALITY_PIVOT) / QUALITY_SPAN)) * QUALITY_WEIGHT


def popularity_term(popularity: float | None) -> float:
    if not popularity or popularity <= 0:
        return 0.0
    return math.log1p(popularity) / math.log1p(POPULARITY_CEILING) * POPULARITY_WEIGHT


RuleFunc = Callable[[Candidate, TasteProfile, "_ProfileIndex", Optional[SessionContext]],
                    tuple[float, list[Reason], list[str]]]


def _quality_rule(candidate, profile, index, session):
    term = quality_term(candidate.vote_average, candidate.vote_count)
    reasons = []
    bayes = bayesian_vote_average(candidate.vote_average, candidate.vote_count)
    if term > 0 and bayes >= TONE_WEEKNIGHT_QUALITY:
        reasons.append((term, f"Well reviewed ({candidate.vote_average:.1f}/10)"))
    return term, reasons, []


def _popularity_rule(candidate, profile, index, session):
    return popularity_term(candidate.popularity), [], []


def _watchlist_intent_rule(candidate, profile, index, session):
    """Bonus for candidates that share features with the user's watchlist."""
    total = 0.0
    reasons = []
    for feature_type, intent_weight in WATCHLIST_INTENT_WEIGHTS.items():
        max_w = index.intent_max.get(feature_type, 0.0)
        if max_w <= 0:
            continue
        for tag in candidate.features(feature_type):
            fw = index.intent[feature_type].get(tag.id)
            if fw is None:
                continue
            contribution = fw.weight / max_w * intent_weight
            total += contribution
            reasons.append((contribution, f"Like films on your watchlist ({fw.name})"))
    # One watchlist reason is enough
    reasons.sort(key=lambda r: -r[0])
    return total, reasons[:1], []


def _tone_rule(candidate, profile, index, session):
    """Small directional nudges for the session's tone."""
    tone = session.tone if session else None
    if not tone:
        return 0.0, [], []

    delta = 0.0
    reasons = []
    runtime = candidate.runtime
    if tone == 'short' and runtime:
        if runtime <= TONE_SHORT_RUNTIME:
            delta += TONE_SHORT_BONUS
            reasons.append((TONE_SHORT_BONUS, f"Short runtime ({runtime} min)"))
        elif runtime > TONE_LONG_RUNTIME:
            delta -= TONE_SHORT_BONUS
    elif tone == 'weeknight':
        if runtime and runtime <= TONE_WEEKNIGHT_RUNTIME:
            delta += TONE_WEEKNIGHT_BONUS
            reasons.append((TONE_WEEKNIGHT_BONUS, "Fits a weeknight"))
        if candidate.vote_average is not None and candidate.vote_average >= TONE_WEEKNIGHT_QUALITY:
            delta += TONE_WEEKNIGHT_QUALITY_BONUS
    elif tone == 'family':
        genre_ids = {g.id for g in candidate.genres}
        if genre_ids & set(FAMILY_GENRE_IDS):
            delta += TONE_FAMILY_BONUS
            reasons.append((TONE_FAMILY_BONUS, "Family friendly"))
        if genre_ids & set(FAMILY_AVOID_GENRE_IDS):
            delta -= TONE_FAMILY_BONUS
    return delta, reasons, []


DEFAULT_RULES: list[RuleFunc] = [
    _quality_rule,
    _popularity_rule,
    _watchlist_intent_rule,
    _tone_rule,
]


class OverlapScorer:
    """
    Scores candidates by weighted feature overlap with a TasteProfile.

    Every term is a pure function of the inputs, so identical inputs give
    bit-identical scores and ordering.
    """

    def __init__(
        self,
        weighter: SourceReliabilityWeighter | None = None,
        feature_configs: list[FeatureTypeConfig] | None = None,
        rules: list[RuleFunc] | None = None,
    ):
        self.weighter = weighter
        self.feature_configs = feature_configs or FEATURE_CONFIGS
        self.rules = DEFAULT_RULES if rules is None else rules

    def _score_feature_type(
        self,
        candidate: Candidate,
        profile: TasteProfile,
        index: _ProfileIndex,
        config: FeatureTypeConfig,
        avoid_weights: dict[str, float],
    ) -> tuple[float, list[Reason], list[str], dict[str, list[str]]]:
        tags = candidate.features(config.name)
        if config.max_items is not None:
            tags = tags[:config.max_items]

        positive = 0.0
        matched: list[tuple[float, str]] = []
        evidence: dict[str, list[str]] = {}
        top = index.top.get(config.name, {})
        top_max = index.top_max.get(config.name, 0.0)
        if top_max > 0:
            for tag in tags:
                fw = top.get(tag.id)
                if fw is None:
                    continue
                contribution = fw.weight / top_max * config.weight
                positive += contribution
                matched.append((contribution, fw.name))
                titles = profile.evidence.get(fw.label)
                if titles:
                    evidence[fw.label] = titles[:EVIDENCE_PER_FEATURE]
        positive = min(positive, config.cap)

        penalty = 0.0
        warnings = []
        avoid = index.avoid.get(config.name, {})
        avoid_max = index.avoid_max.get(config.name, 0.0)
        for tag in tags:
            fw = avoid.get(tag.id)
            if fw is not None and avoid_max > 0:
                penalty += fw.weight / avoid_max * config.weight * AVOID_PENALTY_MULTIPLIER
                warnings.append(config.warning_template.format(fw.name))
            feedback_w = avoid_weights.get(tag.label(config.name), 0.0)
            if feedback_w > 0:
                penalty += feedback_w * config.weight * FEEDBACK_AVOID_FACTOR
        penalty = min(penalty, config.cap * AVOID_PENALTY_MULTIPLIER)

        reasons = []
        if matched:
            matched.sort(key=lambda m: (-m[0], m[1]))
            names = [name for _, name in matched[:2]]
            reasons.append((positive, config.reason_template.format(", ".join(names))))
        return positive - penalty, reasons, warnings, evidence

    def _score_one(
        self,
        user_id: str,
        candidate: Candidate,
        profile: TasteProfile,
        index: _ProfileIndex,
        session: SessionContext | None,
        avoid_weights: dict[str, float],
        dismissed: bool,
        attribution: SourceAttribution,
    ) -> ScoredCandidate:
        score = 0.0
        reasons: list[Reason] = []
        warnings: list[str] = []
        contributing: dict[str, list[str]] = {}

        if profile.is_empty:
            score = popularity_term(candidate.popularity)
            reasons.append((score, POPULAR_FALLBACK_REASON))
        else:
            for config in self.feature_configs:
                delta, type_reasons, type_warnings, evidence = self._score_feature_type(
                    candidate, profile, index, config, avoid_weights,
                )
                score += delta
                reasons.extend(type_reasons)
                warnings.extend(type_warnings)
                contributing.update(evidence)

            for rule in self.rules:
                delta, rule_reasons, rule_warnings = rule(candidate, profile, index, session)
                score += delta
                reasons.extend(rule_reasons)
                warnings.extend(rule_warnings)

        if dismissed:
            score = score * SOFT_DISMISS_FACTOR if score > 0 else score - SOFT_DISMISS_PENALTY
            warnings.append("You marked this as not interested")

        if (not profile.is_empty
                and candidate.metadata_completeness() < MIN_METADATA_COMPLETENESS
                and attribution.consensus_level != ConsensusLevel.HIGH):
            score -= INCOMPLETE_METADATA_PENALTY
            warnings.append("Limited metadata available")

        multiplier = 1.0
        if self.weighter is not None and not profile.is_empty:
            result = self.weighter.multiplier_for(user_id, attribution.sources, attribution.consensus_level)
            multiplier = result.multiplier
            if multiplier != 1.0:
                before = score
                score = score * multiplier if score >= 0 else score / multiplier
                if result.reason != NEUTRAL_REASON:
                    reasons.append((abs(score - before), result.reason))

        reasons.sort(key=lambda r: -r[0])
        return ScoredCandidate(
            candidate=candidate,
            score=score,
            reasons=list(dict.fromkeys(text for _, text in reasons))[:MAX_REASONS],
            warnings=list(dict.fromkeys(warnings)),
            contributing_films=contributing,
            sources=list(attribution.sources),
            consensus_level=attribution.consensus_level,
            reliability_multiplier=multiplier,
            vote_quality=bayesian_vote_average(candidate.vote_average, candidate.vote_count),
        )

    def score_candidates(
        self,
        user_id: str,
        profile: TasteProfile,
        candidates: Iterable[Candidate],
        session: SessionContext | None = None,
        avoid_weights: dict[str, float] | None = None,
        dismissed_ids: Iterable[int] | None = None,
        attributions: dict[int, SourceAttribution] | None = None,
    ) -> list[ScoredCandidate]:
        """
        Score and order a candidate pool against a profile.

        Args:
            user_id: Owner of the profile (for reliability lookups)
            profile: Taste profile; an empty one falls back to popularity
            candidates: Pool already filtered of watched and blocked ids
            session: Tone and presentation controls
            avoid_weights: {"type:name": weight} penalties learned from feedback
            dismissed_ids: Soft-dismissed ids, damped but still ranked
            attributions: Discovery sources per candidate id

        Returns:
            ScoredCandidates ordered by score, then vote quality, then lower
            popularity, then id.
        """
        if session is not None and session.tone and session.tone not in TONES:
            raise ValueError(f"Unknown session tone '{session.tone}', expected one of {TONES}")

        index = _ProfileIndex.build(profile)
        avoid_weights = avoid_weights or {}
        dismissed = set(dismissed_ids or ())
        attributions = attributions or {}

        seen: set[int] = set()
        scored = []
        for candidate in candidates:
            if candidate.id in seen:
                continue
            seen.add(candidate.id)
            scored.append(self._score_one(
                user_id, candidate, profile, index, session, avoid_weights,
                candidate.id in dismissed,
                attributions.get(candidate.id) or SourceAttribution(),
            ))

        scored.sort(key=ranking_key)
        return scored


def ranking_key(item: ScoredCandidate):
    popularity = item.candidate.popularity
    return (
        -item.score,
        -item.vote_quality,
        popularity if popularity is not None else float("inf"),
        item.candidate.id,
    )
