"""
Typed records exchanged between the ranking core and its collaborators.

Catalog payloads arrive loosely typed; `Candidate.from_payload` coerces them
at the boundary and treats anything malformed as missing metadata.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, NamedTuple

from .config import CONSENSUS_HIGH_MIN_SOURCES, CONSENSUS_MEDIUM_MIN_SOURCES

logger = logging.getLogger(__name__)


class FeatureType(str, Enum):
    GENRE = "genre"
    KEYWORD = "keyword"
    DIRECTOR = "director"
    ACTOR = "actor"
    STUDIO = "studio"
    DECADE = "decade"


class ConsensusLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def from_source_count(cls, count: int) -> "ConsensusLevel":
        """Map the number of agreeing discovery sources to a consensus level."""
        if count >= CONSENSUS_HIGH_MIN_SOURCES:
            return cls.HIGH
        if count >= CONSENSUS_MEDIUM_MIN_SOURCES:
            return cls.MEDIUM
        return cls.LOW

    @classmethod
    def coerce(cls, value: Any) -> "ConsensusLevel":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.LOW


class FeedbackKind(str, Enum):
    POSITIVE = "positive"
    NEGATIVE_SOFT = "negative-soft"
    NEGATIVE_HARD = "negative-hard"
    PAIRWISE_WIN = "pairwise-win"
    PAIRWISE_LOSS = "pairwise-loss"

    @property
    def is_hit(self) -> bool:
        return self in (FeedbackKind.POSITIVE, FeedbackKind.PAIRWISE_WIN)

    @property
    def is_miss(self) -> bool:
        return not self.is_hit


class SuggestionState(str, Enum):
    SHOWN = "shown"
    DISMISSED_SOFT = "dismissed-soft"
    BLOCKED_HARD = "blocked-hard"


class Tag(NamedTuple):
    """Named catalog identifier (genre, keyword, person, studio)."""
    id: int
    name: str

    def key(self, feature_type: str) -> str:
        return f"{feature_type}:{self.id}"

    def label(self, feature_type: str) -> str:
        return f"{feature_type}:{self.name}"


def _to_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _to_float(value: Any) -> float | None:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if result != result:  # NaN
        return None
    return result


def _parse_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.fromisoformat(str(value)).date()
    except ValueError:
        return None


def _parse_tags(items: Any) -> tuple[Tag, ...]:
    """Coerce a list of {id, name} dicts (or bare ids) into Tags, skipping junk."""
    if not isinstance(items, (list, tuple)):
        return ()
    tags: list[Tag] = []
    seen: set[int] = set()
    for item in items:
        if isinstance(item, Tag):
            tag_id, name = item.id, item.name
        elif isinstance(item, dict):
            tag_id = _to_int(item.get("id"))
            name = item.get("name") or (str(tag_id) if tag_id is not None else None)
        else:
            tag_id = _to_int(item)
            name = str(tag_id) if tag_id is not None else None
        if tag_id is None or tag_id in seen:
            continue
        seen.add(tag_id)
        tags.append(Tag(tag_id, str(name)))
    return tuple(tags)


def decade_of(year: int | None) -> int | None:
    return (year // 10) * 10 if year else None


@dataclass(frozen=True)
class Candidate:
    """Read-only film record supplied by the discovery collaborator."""
    id: int
    title: str = ""
    genres: tuple[Tag, ...] = ()
    keywords: tuple[Tag, ...] = ()
    cast: tuple[Tag, ...] = ()
    directors: tuple[Tag, ...] = ()
    studios: tuple[Tag, ...] = ()
    release_year: int | None = None
    popularity: float | None = None
    vote_average: float | None = None
    vote_count: int | None = None
    runtime: int | None = None

    @property
    def decade(self) -> int | None:
        return decade_of(self.release_year)

    def features(self, feature_type: str) -> tuple[Tag, ...]:
        """Return the tags carried for a feature type (decade as a synthetic tag)."""
        if feature_type == FeatureType.DECADE.value:
            decade = self.decade
            return (Tag(decade, f"{decade}s"),) if decade else ()
        return {
            FeatureType.GENRE.value: self.genres,
            FeatureType.KEYWORD.value: self.keywords,
            FeatureType.DIRECTOR.value: self.directors,
            FeatureType.ACTOR.value: self.cast,
            FeatureType.STUDIO.value: self.studios,
        }.get(feature_type, ())

    def metadata_completeness(self) -> float:
        """Fraction of feature categories that carry any data."""
        present = [
            bool(self.genres),
            bool(self.keywords),
            bool(self.directors),
            bool(self.cast),
            bool(self.studios),
            self.release_year is not None,
            self.vote_average is not None and bool(self.vote_count),
        ]
        return sum(present) / len(present)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Candidate":
        """
        Build a Candidate from a TMDB-shaped payload.

        Accepts both list-endpoint records (``genre_ids``) and detail records
        (``genres``, ``keywords``, ``credits``, ``production_companies``).
        Missing or malformed fields become missing metadata. Raises ValueError
        only when the payload has no usable id.
        """
        if not isinstance(payload, dict):
            raise ValueError(f"Candidate payload must be a dict, got {type(payload).__name__}")
        candidate_id = _to_int(payload.get("id"))
        if candidate_id is None:
            raise ValueError(f"Candidate payload without a usable id: {payload.get('id')!r}")

        genres = _parse_tags(payload.get("genres")) or _parse_tags(payload.get("genre_ids"))

        keywords_raw = payload.get("keywords")
        if isinstance(keywords_raw, dict):
            keywords_raw = keywords_raw.get("keywords") or keywords_raw.get("results")
        keywords = _parse_tags(keywords_raw)

        credits = payload.get("credits") if isinstance(payload.get("credits"), dict) else {}
        cast_raw = credits.get("cast") if isinstance(credits.get("cast"), list) else payload.get("cast")
        if isinstance(cast_raw, list):
            cast_raw = sorted(
                (c for c in cast_raw if isinstance(c, dict)),
                key=lambda c: _to_int(c.get("order")) if _to_int(c.get("order")) is not None else 999,
            ) or cast_raw
        crew = credits.get("crew") if isinstance(credits.get("crew"), list) else []
        directors_raw = [c for c in crew if isinstance(c, dict) and c.get("job") == "Director"]
        if not directors_raw:
            directors_raw = payload.get("directors")

        studios_raw = payload.get("production_companies")
        if studios_raw is None:
            studios_raw = payload.get("studios")

        release_year = _to_int(payload.get("release_year"))
        if release_year is None:
            release = _parse_date(payload.get("release_date"))
            release_year = release.year if release else None

        vote_count = _to_int(payload.get("vote_count"))
        runtime = _to_int(payload.get("runtime"))

        return cls(
            id=candidate_id,
            title=str(payload.get("title") or payload.get("name") or ""),
            genres=genres,
            keywords=keywords,
            cast=_parse_tags(cast_raw),
            directors=_parse_tags(directors_raw),
            studios=_parse_tags(studios_raw),
            release_year=release_year,
            popularity=_to_float(payload.get("popularity")),
            vote_average=_to_float(payload.get("vote_average")),
            vote_count=vote_count if vote_count is None or vote_count >= 0 else None,
            runtime=runtime if runtime and runtime > 0 else None,
        )

    def to_payload(self) -> dict[str, Any]:
        """Serialize back to the payload shape accepted by from_payload."""
        def _tags(tags: tuple[Tag, ...]) -> list[dict]:
            return [{"id": t.id, "name": t.name} for t in tags]

        return {
            "id": self.id,
            "title": self.title,
            "genres": _tags(self.genres),
            "keywords": _tags(self.keywords),
            "cast": _tags(self.cast),
            "directors": _tags(self.directors),
            "studios": _tags(self.studios),
            "release_year": self.release_year,
            "popularity": self.popularity,
            "vote_average": self.vote_average,
            "vote_count": self.vote_count,
            "runtime": self.runtime,
        }


@dataclass
class WatchEvent:
    uri: str
    candidate_id: int | None = None
    rating: float | None = None
    liked: bool = False
    rewatch: bool = False
    watch_count: int | None = None
    last_watched: date | None = None
    on_watchlist: bool = False
    watchlist_added: date | None = None

    def __post_init__(self) -> None:
        if self.watch_count is None:
            # A watchlist entry with no sign of a viewing is intent, not history
            intent_only = self.on_watchlist and not (
                self.rating is not None or self.liked or self.rewatch or self.last_watched
            )
            self.watch_count = 0 if intent_only else 1

    @property
    def watched(self) -> bool:
        return self.watch_count > 0 or self.rating is not None or self.liked

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "WatchEvent":
        """Coerce a persisted or imported row."""
        rating = _to_float(row.get("rating"))
        if rating is not None and not 0.5 <= rating <= 5.0:
            logger.warning(f"Rating {rating} outside [0.5-5.0] for {row.get('uri')}, ignoring")
            rating = None
        return cls(
            uri=str(row["uri"]),
            candidate_id=_to_int(row.get("candidate_id")),
            rating=rating,
            liked=bool(row.get("liked")),
            rewatch=bool(row.get("rewatch")),
            watch_count=_to_int(row.get("watch_count")),
            last_watched=_parse_date(row.get("last_watched")),
            on_watchlist=bool(row.get("on_watchlist")),
            watchlist_added=_parse_date(row.get("watchlist_added")),
        )


@dataclass
class FeatureWeight:
    feature_type: str
    feature_id: int
    name: str
    weight: float
    sample_count: int
    last_seen_at: date | None = None
    borrowed_from: str | None = None

    @property
    def key(self) -> str:
        return f"{self.feature_type}:{self.feature_id}"

    @property
    def label(self) -> str:
        return f"{self.feature_type}:{self.name}"


@dataclass
class ProfileStats:
    n_films: int = 0
    n_rated: int = 0
    n_liked: int = 0
    avg_rating: float | None = None
    highly_rated_ids: list[int] = field(default_factory=list)


@dataclass
class TasteProfile:
    """Weighted feature preferences; rebuilt per scoring session, never persisted."""
    top_genres: list[FeatureWeight] = field(default_factory=list)
    top_keywords: list[FeatureWeight] = field(default_factory=list)
    top_directors: list[FeatureWeight] = field(default_factory=list)
    top_actors: list[FeatureWeight] = field(default_factory=list)
    top_studios: list[FeatureWeight] = field(default_factory=list)
    top_decades: list[FeatureWeight] = field(default_factory=list)

    avoid_genres: list[FeatureWeight] = field(default_factory=list)
    avoid_keywords: list[FeatureWeight] = field(default_factory=list)
    avoid_directors: list[FeatureWeight] = field(default_factory=list)

    watchlist_genres: list[FeatureWeight] = field(default_factory=list)
    watchlist_keywords: list[FeatureWeight] = field(default_factory=list)
    watchlist_directors: list[FeatureWeight] = field(default_factory=list)

    # "type:name" -> historical titles that justified the feature
    evidence: dict[str, list[str]] = field(default_factory=dict)
    stats: ProfileStats = field(default_factory=ProfileStats)
    avg_runtime: float | None = None

    def top(self, feature_type: str) -> list[FeatureWeight]:
        return getattr(self, f"top_{feature_type}s", [])

    def avoid(self, feature_type: str) -> list[FeatureWeight]:
        return getattr(self, f"avoid_{feature_type}s", [])

    def intent(self, feature_type: str) -> list[FeatureWeight]:
        return getattr(self, f"watchlist_{feature_type}s", [])

    @property
    def is_empty(self) -> bool:
        """True when there is no positive, avoid or watchlist signal at all."""
        return not any(
            self.top(ft.value) or self.avoid(ft.value) or self.intent(ft.value)
            for ft in FeatureType
        )

    def top_genre_names(self) -> list[str]:
        return [fw.name for fw in self.top_genres]


@dataclass
class ScoredCandidate:
    candidate: Candidate
    score: float
    reasons: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    contributing_films: dict[str, list[str]] = field(default_factory=dict)
    sources: list[str] = field(default_factory=list)
    consensus_level: ConsensusLevel = ConsensusLevel.LOW
    reliability_multiplier: float = 1.0
    vote_quality: float = 0.0

    @property
    def id(self) -> int:
        return self.candidate.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.candidate.id,
            "title": self.candidate.title,
            "release_year": self.candidate.release_year,
            "score": self.score,
            "reasons": list(self.reasons),
            "warnings": list(self.warnings),
            "contributing_films": {k: list(v) for k, v in self.contributing_films.items()},
            "sources": list(self.sources),
            "consensus_level": self.consensus_level.value,
            "reliability_multiplier": self.reliability_multiplier,
        }


@dataclass
class FeedbackEvent:
    user_id: str
    candidate_id: int
    kind: FeedbackKind
    reasons: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)
    consensus_level: ConsensusLevel = ConsensusLevel.LOW
    sources: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not isinstance(self.kind, FeedbackKind):
            try:
                self.kind = FeedbackKind(str(self.kind))
            except ValueError:
                raise ValueError(f"Unknown feedback kind: {self.kind!r}") from None
        self.consensus_level = ConsensusLevel.coerce(self.consensus_level)


@dataclass
class SourceAttribution:
    """Which discovery sources proposed a candidate."""
    sources: list[str] = field(default_factory=list)
    consensus_level: ConsensusLevel = ConsensusLevel.LOW

    @classmethod
    def from_sources(cls, sources) -> "SourceAttribution":
        unique = sorted(set(sources))
        return cls(sources=unique, consensus_level=ConsensusLevel.from_source_count(len(unique)))


@dataclass
class SourceReliabilityPrior:
    user_id: str
    source: str
    consensus_level: ConsensusLevel
    hits: int = 0
    misses: int = 0

    @property
    def observations(self) -> int:
        return self.hits + self.misses

    def smoothed(self) -> float:
        """Laplace-smoothed hit rate; 0.5 with no observations."""
        return (self.hits + 1) / (self.hits + self.misses + 2)


@dataclass
class AdjacentPreference:
    user_id: str
    from_genre: str
    to_genre: str
    successes: int = 0
    trials: int = 0
    last_reinforced_at: datetime | None = None

    @property
    def win_rate(self) -> float:
        return self.successes / self.trials if self.trials else 0.0


@dataclass
class SessionContext:
    """Presentation-side controls for one ranking session."""
    tone: str | None = None
    mmr_lambda: float | None = None
    exploration_rate: float | None = None
