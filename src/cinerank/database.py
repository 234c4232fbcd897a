import sqlite3
import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterable

from .config import DB_PATH, DEFAULT_EXPLORATION_RATE
from .models import (
    AdjacentPreference,
    Candidate,
    ConsensusLevel,
    FeedbackEvent,
    FeedbackKind,
    ScoredCandidate,
    SourceReliabilityPrior,
    WatchEvent,
)

logger = logging.getLogger(__name__)


def parse_timestamp_naive(timestamp_str: str | None) -> datetime | None:
    """Parse an ISO timestamp, dropping any tzinfo so comparisons stay naive."""
    if not timestamp_str:
        return None
    dt = datetime.fromisoformat(timestamp_str)
    return dt.replace(tzinfo=None) if dt.tzinfo else dt


class ConnectionPool:
    """
    One SQLite connection per thread, plus per-thread transaction depth.

    SQLite connections must not be shared across threads mid-transaction, so
    each thread gets its own; `get_db` uses the depth counter so that only the
    outermost context commits or rolls back.
    """

    def __init__(self, db_path):
        self._db_path = db_path
        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._transaction_depth: dict[int, int] = {}

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    def get_connection(self) -> sqlite3.Connection:
        thread_id = threading.get_ident()
        with self._lock:
            conn = self._connections.get(thread_id)
            if conn is None:
                conn = self._create_connection()
                self._connections[thread_id] = conn
                self._transaction_depth[thread_id] = 0
                logger.debug(f"Created connection for thread {thread_id} (pool size: {len(self._connections)})")
            return conn

    def get_transaction_depth(self) -> int:
        return self._transaction_depth.get(threading.get_ident(), 0)

    def increment_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            self._transaction_depth[thread_id] = self._transaction_depth.get(thread_id, 0) + 1

    def decrement_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            self._transaction_depth[thread_id] = max(0, self._transaction_depth.get(thread_id, 1) - 1)

    def close_all(self):
        with self._lock:
            for thread_id, conn in list(self._connections.items()):
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")
            self._connections.clear()
            self._transaction_depth.clear()


_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def _get_pool() -> ConnectionPool:
    """Get or create the global connection pool."""
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                DB_PATH.parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Get database connection with proper transaction handling.

    Args:
        read_only: If True, skip commit on exit

    Nested calls share the outer transaction: only the outermost context
    commits or rolls back.
    """
    pool = _get_pool()
    conn = pool.get_connection()

    is_outermost = pool.get_transaction_depth() == 0
    pool.increment_transaction_depth()

    try:
        yield conn
        if is_outermost and not read_only:
            conn.commit()
    except Exception:
        if is_outermost:
            conn.rollback()
        raise
    finally:
        pool.decrement_transaction_depth()


def close_pool():
    """Close the connection pool. Call on application shutdown."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS watch_events (
                user_id TEXT NOT NULL,
                uri TEXT NOT NULL,
                candidate_id INTEGER,
                rating REAL,
                liked INTEGER DEFAULT 0,
                rewatch INTEGER DEFAULT 0,
                watch_count INTEGER DEFAULT 1,
                last_watched TEXT,
                on_watchlist INTEGER DEFAULT 0,
                watchlist_added TEXT,
                updated_at TEXT,
                PRIMARY KEY (user_id, uri)
            );

            CREATE TABLE IF NOT EXISTS film_metadata (
                candidate_id INTEGER PRIMARY KEY,
                title TEXT,
                payload TEXT NOT NULL,  -- JSON, Candidate.to_payload()
                fetched_at TEXT
            );

            CREATE TABLE IF NOT EXISTS suggestion_feedback (
                user_id TEXT NOT NULL,
                candidate_id INTEGER NOT NULL,
                kind TEXT NOT NULL,
                reasons TEXT,            -- JSON list
                sources TEXT,            -- JSON list
                consensus_level TEXT,
                movie_features TEXT,     -- JSON snapshot of the candidate
                applied_deltas TEXT,     -- JSON, reversed exactly on overwrite/undo
                created_at TEXT,
                updated_at TEXT,
                PRIMARY KEY (user_id, candidate_id)
            );

            CREATE TABLE IF NOT EXISTS source_reliability (
                user_id TEXT NOT NULL,
                source TEXT NOT NULL,
                consensus_level TEXT NOT NULL,
                hits INTEGER DEFAULT 0,
                misses INTEGER DEFAULT 0,
                updated_at TEXT,
                PRIMARY KEY (user_id, source, consensus_level)
            );

            CREATE TABLE IF NOT EXISTS feature_feedback (
                user_id TEXT NOT NULL,
                feature_type TEXT NOT NULL,
                feature_name TEXT NOT NULL,
                positive_count INTEGER DEFAULT 0,
                negative_count INTEGER DEFAULT 0,
                updated_at TEXT,
                PRIMARY KEY (user_id, feature_type, feature_name)
            );

            CREATE TABLE IF NOT EXISTS adjacent_preferences (
                user_id TEXT NOT NULL,
                from_genre TEXT NOT NULL,
                to_genre TEXT NOT NULL,
                successes INTEGER DEFAULT 0,
                trials INTEGER DEFAULT 0,
                last_reinforced_at TEXT,
                PRIMARY KEY (user_id, from_genre, to_genre)
            );

            CREATE TABLE IF NOT EXISTS exploration_stats (
                user_id TEXT PRIMARY KEY,
                exploration_rate REAL NOT NULL,
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS suggestion_exposures (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                candidate_id INTEGER NOT NULL,
                generation INTEGER,
                diversity_rank INTEGER,
                base_score REAL,
                mmr_lambda REAL,
                consensus_level TEXT,
                sources TEXT,            -- JSON list
                shown_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_watch_events_candidate ON watch_events(candidate_id);
            CREATE INDEX IF NOT EXISTS idx_feedback_user_kind ON suggestion_feedback(user_id, kind);
            CREATE INDEX IF NOT EXISTS idx_exposures_user_shown ON suggestion_exposures(user_id, shown_at);
        """)


def load_json(val, default=None):
    """Safely load JSON from db field."""
    if default is None:
        default = []
    if not val:
        return default
    if isinstance(val, (list, dict)):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{str(val)[:50]}...': {e}")
        return default


def _date_str(value) -> str | None:
    return value.isoformat() if value else None


# --- watch history -------------------------------------------------------

def upsert_watch_events(user_id: str, events: Iterable[WatchEvent]) -> int:
    """Insert or update history rows keyed by (user_id, uri). Returns rows written."""
    now = datetime.now().isoformat()
    rows = [
        (
            user_id, e.uri, e.candidate_id, e.rating, int(e.liked), int(e.rewatch),
            e.watch_count, _date_str(e.last_watched), int(e.on_watchlist),
            _date_str(e.watchlist_added), now,
        )
        for e in events
    ]
    if not rows:
        return 0
    with get_db() as conn:
        conn.executemany("""
            INSERT INTO watch_events
                (user_id, uri, candidate_id, rating, liked, rewatch, watch_count,
                 last_watched, on_watchlist, watchlist_added, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, uri) DO UPDATE SET
                candidate_id = COALESCE(excluded.candidate_id, watch_events.candidate_id),
                rating = excluded.rating,
                liked = excluded.liked,
                rewatch = excluded.rewatch,
                watch_count = excluded.watch_count,
                last_watched = excluded.last_watched,
                on_watchlist = excluded.on_watchlist,
                watchlist_added = excluded.watchlist_added,
                updated_at = excluded.updated_at
        """, rows)
    return len(rows)


def load_watch_events(user_id: str) -> list[WatchEvent]:
    with get_db(read_only=True) as conn:
        cursor = conn.execute("""
            SELECT uri, candidate_id, rating, liked, rewatch, watch_count,
                   last_watched, on_watchlist, watchlist_added
            FROM watch_events
            WHERE user_id = ?
            ORDER BY uri
        """, (user_id,))
        return [WatchEvent.from_row(dict(row)) for row in cursor.fetchall()]


# --- candidate metadata --------------------------------------------------

def save_film_metadata(candidates: Iterable[Candidate]) -> int:
    now = datetime.now().isoformat()
    rows = [(c.id, c.title, json.dumps(c.to_payload()), now) for c in candidates]
    if not rows:
        return 0
    with get_db() as conn:
        conn.executemany("""
            INSERT INTO film_metadata (candidate_id, title, payload, fetched_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(candidate_id) DO UPDATE SET
                title = excluded.title,
                payload = excluded.payload,
                fetched_at = excluded.fetched_at
        """, rows)
    return len(rows)


def load_film_metadata(candidate_ids: Iterable[int] | None = None) -> dict[int, Candidate]:
    """Load cached metadata, optionally restricted to the given ids."""
    with get_db(read_only=True) as conn:
        if candidate_ids is None:
            rows = conn.execute("SELECT candidate_id, payload FROM film_metadata").fetchall()
        else:
            ids = list(dict.fromkeys(int(i) for i in candidate_ids))
            rows = []
            # Stay below SQLite's bound-parameter limit
            for start in range(0, len(ids), 500):
                chunk = ids[start:start + 500]
                placeholders = ",".join("?" * len(chunk))
                rows.extend(conn.execute(
                    f"SELECT candidate_id, payload FROM film_metadata WHERE candidate_id IN ({placeholders})",
                    chunk,
                ).fetchall())

    metadata: dict[int, Candidate] = {}
    for row in rows:
        try:
            metadata[row['candidate_id']] = Candidate.from_payload(load_json(row['payload'], default={}))
        except ValueError as e:
            logger.warning(f"Skipping cached metadata for {row['candidate_id']}: {e}")
    return metadata


# --- suggestion feedback -------------------------------------------------

def get_feedback_row(user_id: str, candidate_id: int) -> dict | None:
    with get_db(read_only=True) as conn:
        row = conn.execute("""
            SELECT * FROM suggestion_feedback WHERE user_id = ? AND candidate_id = ?
        """, (user_id, candidate_id)).fetchone()
    if not row:
        return None
    result = dict(row)
    result['reasons'] = load_json(result['reasons'])
    result['sources'] = load_json(result['sources'])
    result['movie_features'] = load_json(result['movie_features'], default={})
    result['applied_deltas'] = load_json(result['applied_deltas'], default={})
    return result


def upsert_feedback_row(
    event: FeedbackEvent,
    movie_features: dict | None,
    applied_deltas: dict,
) -> None:
    """Write the single active feedback row for (user, candidate); last write wins."""
    with get_db() as conn:
        conn.execute("""
            INSERT INTO suggestion_feedback
                (user_id, candidate_id, kind, reasons, sources, consensus_level,
                 movie_features, applied_deltas, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, candidate_id) DO UPDATE SET
                kind = excluded.kind,
                reasons = excluded.reasons,
                sources = excluded.sources,
                consensus_level = excluded.consensus_level,
                movie_features = COALESCE(excluded.movie_features, suggestion_feedback.movie_features),
                applied_deltas = excluded.applied_deltas,
                updated_at = excluded.updated_at
        """, (
            event.user_id, event.candidate_id, event.kind.value,
            json.dumps(event.reasons), json.dumps(event.sources), event.consensus_level.value,
            json.dumps(movie_features) if movie_features else None,
            json.dumps(applied_deltas),
            event.timestamp.isoformat(), event.timestamp.isoformat(),
        ))


def delete_feedback_row(user_id: str, candidate_id: int) -> bool:
    with get_db() as conn:
        cursor = conn.execute("""
            DELETE FROM suggestion_feedback WHERE user_id = ? AND candidate_id = ?
        """, (user_id, candidate_id))
        return cursor.rowcount > 0


def load_feedback_events(user_id: str) -> list[tuple[FeedbackEvent, Candidate | None]]:
    """All active feedback for a user, each with its candidate snapshot if one was stored."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT candidate_id, kind, reasons, sources, consensus_level, movie_features, updated_at
            FROM suggestion_feedback
            WHERE user_id = ?
            ORDER BY updated_at, candidate_id
        """, (user_id,)).fetchall()

    results = []
    for row in rows:
        try:
            kind = FeedbackKind(row['kind'])
        except ValueError:
            logger.warning(f"Unknown feedback kind '{row['kind']}' for {user_id}/{row['candidate_id']}")
            continue
        event = FeedbackEvent(
            user_id=user_id,
            candidate_id=row['candidate_id'],
            kind=kind,
            reasons=load_json(row['reasons']),
            timestamp=parse_timestamp_naive(row['updated_at']) or datetime.now(),
            consensus_level=ConsensusLevel.coerce(row['consensus_level']),
            sources=load_json(row['sources']),
        )
        features = load_json(row['movie_features'], default={})
        candidate = None
        if features:
            try:
                candidate = Candidate.from_payload(features)
            except ValueError:
                candidate = None
        results.append((event, candidate))
    return results


def load_feedback_ids(user_id: str, kinds: Iterable[FeedbackKind]) -> set[int]:
    kind_values = [k.value for k in kinds]
    if not kind_values:
        return set()
    placeholders = ",".join("?" * len(kind_values))
    with get_db(read_only=True) as conn:
        rows = conn.execute(
            f"SELECT candidate_id FROM suggestion_feedback WHERE user_id = ? AND kind IN ({placeholders})",
            [user_id, *kind_values],
        ).fetchall()
    return {row['candidate_id'] for row in rows}


# --- suggestion exposures -----------------------------------------------

def record_exposures(
    user_id: str,
    items: Iterable[ScoredCandidate],
    generation: int | None = None,
    mmr_lambda: float | None = None,
    shown_at: datetime | None = None,
) -> int:
    """Log the suggestions a ranking returned, in display order. Returns rows written."""
    shown = (shown_at or datetime.now()).isoformat()
    rows = [
        (
            user_id, item.candidate.id, generation, rank, item.score, mmr_lambda,
            item.consensus_level.value, json.dumps(list(item.sources)), shown,
        )
        for rank, item in enumerate(items, 1)
    ]
    if not rows:
        return 0
    with get_db() as conn:
        conn.executemany("""
            INSERT INTO suggestion_exposures
                (user_id, candidate_id, generation, diversity_rank, base_score, mmr_lambda,
                 consensus_level, sources, shown_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, rows)
    return len(rows)


def load_recent_exposures(user_id: str, window_days: int, now: datetime | None = None) -> set[int]:
    """Ids shown to the user within the last window_days days."""
    if window_days <= 0:
        return set()
    cutoff = ((now or datetime.now()) - timedelta(days=window_days)).isoformat()
    with get_db(read_only=True) as conn:
        rows = conn.execute(
            "SELECT DISTINCT candidate_id FROM suggestion_exposures WHERE user_id = ? AND shown_at >= ?",
            (user_id, cutoff),
        ).fetchall()
    return {row['candidate_id'] for row in rows}


# --- source reliability --------------------------------------------------

def adjust_reliability(user_id: str, source: str, consensus_level: str, hits: int, misses: int) -> None:
    """Add (possibly negative) deltas to one reliability cell, never dropping below zero."""
    with get_db() as conn:
        conn.execute("""
            INSERT INTO source_reliability (user_id, source, consensus_level, hits, misses, updated_at)
            VALUES (?, ?, ?, MAX(0, ?), MAX(0, ?), ?)
            ON CONFLICT(user_id, source, consensus_level) DO UPDATE SET
                hits = MAX(0, source_reliability.hits + ?),
                misses = MAX(0, source_reliability.misses + ?),
                updated_at = excluded.updated_at
        """, (user_id, source, consensus_level, hits, misses, datetime.now().isoformat(), hits, misses))


def load_reliability_priors(user_id: str) -> list[SourceReliabilityPrior]:
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT source, consensus_level, hits, misses
            FROM source_reliability
            WHERE user_id = ?
            ORDER BY source, consensus_level
        """, (user_id,)).fetchall()
    return [
        SourceReliabilityPrior(
            user_id=user_id,
            source=row['source'],
            consensus_level=ConsensusLevel.coerce(row['consensus_level']),
            hits=row['hits'],
            misses=row['misses'],
        )
        for row in rows
    ]


# --- per-feature feedback ------------------------------------------------

def adjust_feature_feedback(user_id: str, feature_type: str, feature_name: str, positive: int, negative: int) -> None:
    with get_db() as conn:
        conn.execute("""
            INSERT INTO feature_feedback (user_id, feature_type, feature_name, positive_count, negative_count, updated_at)
            VALUES (?, ?, ?, MAX(0, ?), MAX(0, ?), ?)
            ON CONFLICT(user_id, feature_type, feature_name) DO UPDATE SET
                positive_count = MAX(0, feature_feedback.positive_count + ?),
                negative_count = MAX(0, feature_feedback.negative_count + ?),
                updated_at = excluded.updated_at
        """, (user_id, feature_type, feature_name, positive, negative, datetime.now().isoformat(), positive, negative))


def load_feature_feedback(user_id: str) -> dict[str, tuple[int, int]]:
    """Return {"type:name": (positive, negative)} for a user."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT feature_type, feature_name, positive_count, negative_count
            FROM feature_feedback
            WHERE user_id = ?
        """, (user_id,)).fetchall()
    return {
        f"{row['feature_type']}:{row['feature_name']}": (row['positive_count'], row['negative_count'])
        for row in rows
    }


# --- adjacent preferences ------------------------------------------------

def upsert_adjacent_preference(
    user_id: str,
    from_genre: str,
    to_genre: str,
    successes: int,
    trials: int,
    reinforced_at: datetime | None = None,
) -> None:
    reinforced_at = reinforced_at or datetime.now()
    with get_db() as conn:
        conn.execute("""
            INSERT INTO adjacent_preferences (user_id, from_genre, to_genre, successes, trials, last_reinforced_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, from_genre, to_genre) DO UPDATE SET
                successes = excluded.successes,
                trials = excluded.trials,
                last_reinforced_at = excluded.last_reinforced_at
        """, (user_id, from_genre, to_genre, successes, trials, reinforced_at.isoformat()))


def load_adjacent_preferences(user_id: str) -> list[AdjacentPreference]:
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT from_genre, to_genre, successes, trials, last_reinforced_at
            FROM adjacent_preferences
            WHERE user_id = ?
            ORDER BY from_genre, to_genre
        """, (user_id,)).fetchall()
    return [
        AdjacentPreference(
            user_id=user_id,
            from_genre=row['from_genre'],
            to_genre=row['to_genre'],
            successes=row['successes'],
            trials=row['trials'],
            last_reinforced_at=parse_timestamp_naive(row['last_reinforced_at']),
        )
        for row in rows
    ]


# --- exploration rate ----------------------------------------------------

def get_exploration_rate(user_id: str) -> float:
    with get_db(read_only=True) as conn:
        row = conn.execute(
            "SELECT exploration_rate FROM exploration_stats WHERE user_id = ?", (user_id,)
        ).fetchone()
    return row['exploration_rate'] if row else DEFAULT_EXPLORATION_RATE


def set_exploration_rate(user_id: str, rate: float) -> None:
    with get_db() as conn:
        conn.execute("""
            INSERT INTO exploration_stats (user_id, exploration_rate, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                exploration_rate = excluded.exploration_rate,
                updated_at = excluded.updated_at
        """, (user_id, rate, datetime.now().isoformat()))
