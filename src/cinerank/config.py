"""
Configuration constants for the cinerank ranking pipeline.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Database Configuration
DB_PATH = Path(os.environ.get("CINERANK_DB", "data/cinerank.db"))

# Metadata fetching (discovery collaborator)
TMDB_API_KEY = os.environ.get("CINERANK_TMDB_API_KEY", "")
TMDB_BASE_URL = os.environ.get("CINERANK_TMDB_BASE_URL", "https://api.themoviedb.org/3")
DEFAULT_MAX_CONCURRENT = _get_int_env("CINERANK_MAX_CONCURRENT", 6, min_val=1)
HTTP_TIMEOUT = _get_float_env("CINERANK_HTTP_TIMEOUT", 15.0, min_val=1.0)
MAX_HTTP_RETRIES = 3
RETRY_INITIAL_DELAY = _get_float_env("CINERANK_RETRY_DELAY", 0.5, min_val=0.0)
RETRY_BACKOFF_FACTOR = 2.0
DEFAULT_RETRY_AFTER = 5  # Seconds to wait on 429 when Retry-After is missing

# Consensus: number of discovery sources agreeing on a candidate
CONSENSUS_HIGH_MIN_SOURCES = 4
CONSENSUS_MEDIUM_MIN_SOURCES = 2

# Profile Configuration
PROFILE_TOP_N = _get_int_env("CINERANK_PROFILE_TOP_N", 10, min_val=1)
MAX_CAST_CONSIDERED = 5
ACTOR_WEIGHT_FACTOR = 0.5
EVIDENCE_PER_FEATURE = 3  # Historical titles kept per matched feature

# Rating -> base weight step table (checked top-down)
RATING_WEIGHT_STEPS = (
    (4.5, 1.5),
    (4.0, 1.2),
    (3.5, 0.9),
    (2.5, 0.3),
    (1.5, 0.1),
)
WEIGHT_UNRATED = 0.5
LIKED_MULTIPLIER = 1.6
LIKED_FLOOR_WEIGHT = 0.3  # Liked but low-rated films still carry some signal
REWATCH_MULTIPLIER = 1.25

# Avoid-list weights for low-rated, not-liked films
AVOID_MAX_RATING = 2.5
AVOID_RATING_STEPS = (
    (1.0, 1.5),
    (2.0, 1.0),
)
AVOID_WEIGHT_MILD = 0.5

# Feedback event weights folded into the profile
FEEDBACK_PROFILE_WEIGHTS = {
    'positive': 1.0,
    'pairwise-win': 0.5,
    'negative-soft': 0.75,
    'negative-hard': 1.5,
    'pairwise-loss': 0.4,
}

# Temporal Decay Configuration
TEMPORAL_DECAY_HALF_LIFE_DAYS = 365 * 2  # weight halves every 2 years
TEMPORAL_DECAY_MIN_WEIGHT = 0.1  # Floor to prevent old ratings from vanishing completely

# Watchlist intent signals (weaker than watched, shorter horizon)
WATCHLIST_BASE_WEIGHT = 0.35
WATCHLIST_HALF_LIFE_DAYS = 90
WATCHLIST_MIN_WEIGHT = 0.05
WATCHLIST_RECENT_DAYS = 30
WATCHLIST_RECENT_BOOST = 1.25

# Adjacent-feature borrowing
ADJACENT_MIN_TRIALS = 3
ADJACENT_MIN_WIN_RATE = 0.5
ADJACENT_BORROW_FRACTION = 0.15
ADJACENT_HALF_LIFE_DAYS = 60
ADJACENT_LOW_CONFIDENCE_SAMPLES = 2
ADJACENT_TRANSITION_WINDOW = 50
ADJACENT_SUCCESS_RATING = 3.5

# Signature scoring (seed selection)
SIGNATURE_RATING_PIVOT = 2.5
SIGNATURE_RATING_SCALE = 1.2
SIGNATURE_LIKED_BONUS = 0.5
SIGNATURE_LIKED_UNRATED_BONUS = 1.0
SIGNATURE_NICHE_MAX = 2.5
SIGNATURE_POPULARITY_CEILING = 1000.0
SIGNATURE_GENRE_MATCH_BONUS = 0.9
SIGNATURE_DECADE_MATCH_BONUS = 0.6
SIGNATURE_HIDDEN_GEM_THRESHOLD = 1.5
SIGNATURE_UNDER_RADAR_THRESHOLD = 0.75

# Overlap scorer weights per feature type
FEATURE_TYPE_WEIGHTS = {
    'genre': 1.0,
    'keyword': 0.8,
    'director': 2.0,
    'actor': 0.6,
    'studio': 0.5,
    'decade': 0.4,
}

# Soft cap per feature type to avoid any single attribute dominating
FEATURE_TYPE_CAPS = {
    'genre': 2.0,
    'keyword': 2.0,
    'director': 2.5,
    'actor': 1.5,
    'studio': 1.0,
    'decade': 0.4,
}

AVOID_PENALTY_MULTIPLIER = 1.5  # Amplify avoided matches
FEEDBACK_AVOID_FACTOR = 0.5

WATCHLIST_INTENT_WEIGHTS = {
    'genre': 0.3,
    'keyword': 0.3,
    'director': 0.6,
}

# Vote quality (Bayesian average on a 0-10 scale)
QUALITY_PRIOR_VOTES = 200
QUALITY_PRIOR_MEAN = 6.5
QUALITY_PIVOT = 6.0
QUALITY_SPAN = 4.0
QUALITY_MIN = -0.3
QUALITY_MAX = 0.6
QUALITY_WEIGHT = 0.6
POPULARITY_WEIGHT = 0.2
POPULARITY_CEILING = 1000.0

# Metadata completeness floor
MIN_METADATA_COMPLETENESS = 0.4
INCOMPLETE_METADATA_PENALTY = 0.5

# Soft dismissal dampening ("not interested")
SOFT_DISMISS_FACTOR = 0.5
SOFT_DISMISS_PENALTY = 0.5

MAX_REASONS = 6

# Session tone adjustments
TONE_SHORT_RUNTIME = 100
TONE_LONG_RUNTIME = 130
TONE_SHORT_BONUS = 0.3
TONE_WEEKNIGHT_RUNTIME = 120
TONE_WEEKNIGHT_BONUS = 0.15
TONE_WEEKNIGHT_QUALITY = 7.0
TONE_WEEKNIGHT_QUALITY_BONUS = 0.1
TONE_FAMILY_BONUS = 0.4
FAMILY_GENRE_IDS = (10751, 16)  # Family, Animation
FAMILY_AVOID_GENRE_IDS = (27,)  # Horror
TONES = ('short', 'weeknight', 'family')

# Source reliability
RELIABILITY_MAX_DELTA = 0.12
RELIABILITY_MIN = 1.0 - RELIABILITY_MAX_DELTA
RELIABILITY_MAX = 1.0 + RELIABILITY_MAX_DELTA
RELIABILITY_CACHE_TTL = _get_float_env("CINERANK_RELIABILITY_TTL", 300.0, min_val=0.0)
CONSENSUS_STRENGTH = {
    'high': 1.0,
    'medium': 0.85,
    'low': 0.7,
}

# Diversity reranking (MMR)
MMR_LAMBDA_MIN = 0.0
MMR_LAMBDA_MAX = 0.5
DEFAULT_MMR_LAMBDA = _get_float_env("CINERANK_DEFAULT_LAMBDA", 0.35, min_val=0.0)
MMR_POOL_FACTOR = 3  # Score ~3x the requested results before reranking

# Suggestions shown within this many days are left out of the next rankings; 0 disables
REPEAT_WINDOW_DAYS = _get_int_env("CINERANK_REPEAT_WINDOW_DAYS", 14, min_val=0)

# Exploration rate (epsilon for discovery)
DEFAULT_EXPLORATION_RATE = 0.15
EXPLORATION_LEARNING_RATE = 0.05
EXPLORATION_BLOCK_PENALTY = 0.02
EXPLORATION_MIN = 0.05
EXPLORATION_MAX = 0.30
EXPLORATION_RECENT_FILMS = 20
EXPLORATION_LIKE_THRESHOLD = 3.5
EXPLORATION_DISLIKE_THRESHOLD = 3.0
