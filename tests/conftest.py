import importlib
import sys
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("CINERANK_DB", str(db_path))
    import cinerank.config as config

    importlib.reload(config)
    return config


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB and cleanly close the pool after use.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("CINERANK_DB", str(db_path))

    import cinerank.config as config
    import cinerank.database as database

    importlib.reload(config)
    database.close_pool()
    importlib.reload(database)
    database.init_db()

    yield database
    database.close_pool()


@pytest.fixture
def make_candidate():
    """Build a Candidate from TMDB-shaped keyword arguments."""
    from cinerank.models import Candidate

    def _make(candidate_id, title=None, genres=(), keywords=(), directors=(), cast=(),
              studios=(), year=None, popularity=None, vote_average=None, vote_count=None,
              runtime=None):
        return Candidate.from_payload({
            "id": candidate_id,
            "title": title or f"Film {candidate_id}",
            "genres": [{"id": gid, "name": name} for gid, name in genres],
            "keywords": [{"id": kid, "name": name} for kid, name in keywords],
            "directors": [{"id": pid, "name": name} for pid, name in directors],
            "cast": [{"id": pid, "name": name} for pid, name in cast],
            "studios": [{"id": sid, "name": name} for sid, name in studios],
            "release_year": year,
            "popularity": popularity,
            "vote_average": vote_average,
            "vote_count": vote_count,
            "runtime": runtime,
        })

    return _make
