import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable

from .config import (
    CONSENSUS_STRENGTH,
    RELIABILITY_CACHE_TTL,
    RELIABILITY_MAX,
    RELIABILITY_MAX_DELTA,
    RELIABILITY_MIN,
)
from .models import ConsensusLevel, SourceReliabilityPrior

logger = logging.getLogger(__name__)

NEUTRAL_REASON = "Neutral source reliability"

PriorLoader = Callable[[str], list[SourceReliabilityPrior]]


@dataclass(frozen=True)
class ReliabilityResult:
    multiplier: float
    reason: str


def _default_loader(user_id: str) -> list[SourceReliabilityPrior]:
    from . import database
    return database.load_reliability_priors(user_id)


def blend_reliability(priors: Iterable[SourceReliabilityPrior]) -> float:
    """
    Evidence-weighted mean of Laplace-smoothed hit rates.

    Each cell weighs n + 2 so that sparse sources regress toward 0.5 and
    well-observed ones dominate. No cells at all gives exactly 0.5.
    """
    total_weight = 0.0
    weighted = 0.0
    for prior in priors:
        weight = prior.observations + 2
        weighted += prior.smoothed() * weight
        total_weight += weight
    return weighted / total_weight if total_weight else 0.5


def reliability_multiplier(rate: float, consensus_level: ConsensusLevel) -> float:
    strength = CONSENSUS_STRENGTH[ConsensusLevel.coerce(consensus_level).value]
    multiplier = 1.0 + (rate - 0.5) * 2 * RELIABILITY_MAX_DELTA * strength
    return min(RELIABILITY_MAX, max(RELIABILITY_MIN, multiplier))


class SourceReliabilityWeighter:
    """
    Turns per-(source, consensus level) feedback counters into a bounded score multiplier.

    Priors are loaded per user and cached for `ttl` seconds on a monotonic
    clock. A miss reloads synchronously once; a loader failure is logged and
    yields the neutral multiplier without poisoning the cache.
    """

    def __init__(
        self,
        loader: PriorLoader | None = None,
        ttl: float = RELIABILITY_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loader = loader or _default_loader
        self._ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: dict[str, tuple[float, dict[tuple[str, str], SourceReliabilityPrior]]] = {}

    def _priors_for(self, user_id: str) -> dict[tuple[str, str], SourceReliabilityPrior]:
        now = self._clock()
        with self._lock:
            cached = self._cache.get(user_id)
            if cached is not None and now - cached[0] < self._ttl:
                return cached[1]

        priors = {
            (p.source, ConsensusLevel.coerce(p.consensus_level).value): p
            for p in self._loader(user_id)
        }
        with self._lock:
            self._cache[user_id] = (now, priors)
        return priors

    def invalidate(self, user_id: str | None = None):
        """Drop cached priors for one user, or for everyone."""
        with self._lock:
            if user_id is None:
                self._cache.clear()
            else:
                self._cache.pop(user_id, None)

    def multiplier_for(
        self,
        user_id: str,
        sources: Iterable[str],
        consensus_level: ConsensusLevel | str = ConsensusLevel.LOW,
    ) -> ReliabilityResult:
        sources = sorted(set(sources or ()))
        if not sources:
            return ReliabilityResult(1.0, NEUTRAL_REASON)

        level = ConsensusLevel.coerce(consensus_level)
        try:
            priors = self._priors_for(user_id)
        except Exception as e:
            logger.warning(f"Could not load source reliability for {user_id}: {e}")
            return ReliabilityResult(1.0, NEUTRAL_REASON)

        cells = [
            priors.get((source, level.value))
            or SourceReliabilityPrior(user_id=user_id, source=source, consensus_level=level)
            for source in sources
        ]
        multiplier = reliability_multiplier(blend_reliability(cells), level)

        if multiplier > 1.0:
            reason = f"Trusted sources ({', '.join(sources)})"
        elif multiplier < 1.0:
            reason = f"Sources often missed for you ({', '.join(sources)})"
        else:
            reason = NEUTRAL_REASON
        return ReliabilityResult(multiplier, reason)
