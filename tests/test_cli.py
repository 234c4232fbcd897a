import json
import sys

import pytest

from cinerank import cli
from cinerank.discovery import FetchResult, FetchStatus
from cinerank.models import Candidate, FeedbackKind


def _run(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["cinerank", *argv])
    cli.main()


def test_cli_dispatch_profile(monkeypatch, fresh_db):
    called = {}

    def fake_profile(args):
        called["command"] = args.command
        called["format"] = args.format

    monkeypatch.setattr(cli, "cmd_profile", fake_profile)
    _run(monkeypatch, "profile", "alice", "--format", "json")

    assert called == {"command": "profile", "format": "json"}


def test_cli_parses_rank_args(monkeypatch, fresh_db):
    captured = {}

    def fake_rank(args):
        captured.update(vars(args))

    monkeypatch.setattr(cli, "cmd_rank", fake_rank)
    _run(monkeypatch, "-v", "rank", "alice", "--limit", "5", "--lambda", "0.2", "--tone", "weeknight")

    assert captured["user"] == "alice"
    assert captured["limit"] == 5
    assert captured["mmr_lambda"] == 0.2
    assert captured["tone"] == "weeknight"
    assert captured["verbose"] is True
    assert captured["candidates"] is None


def test_cli_rejects_unknown_feedback_kind(monkeypatch, fresh_db):
    with pytest.raises(SystemExit):
        _run(monkeypatch, "feedback", "alice", "10", "meh")


def test_validate_user_id_sanitizes():
    assert cli._validate_user_id("Alice!") == "alice"
    with pytest.raises(ValueError):
        cli._validate_user_id("!!!")


def _film(cid, title, genre, year, **extra):
    return {"id": cid, "title": title, "genres": [{"id": genre[0], "name": genre[1]}], "release_year": year, **extra}


@pytest.fixture
def history_file(tmp_path):
    rows = [
        {"uri": "film:1", "candidate_id": 1, "rating": 5, "liked": True, "last_watched": "2024-05-01",
         "film": _film(1, "Loved", (18, "Drama"), 1994)},
        {"uri": "film:2", "candidate_id": 2, "rating": 4.5, "last_watched": "2024-05-03",
         "film": _film(2, "Also Loved", (18, "Drama"), 1997)},
        {"uri": "film:3", "candidate_id": 3, "rating": 1, "last_watched": "2024-05-05",
         "film": _film(3, "Hated", (27, "Horror"), 2015)},
        {"no_uri": True},
    ]
    path = tmp_path / "history.json"
    path.write_text(json.dumps({"films": rows}))
    return path


def test_import_history_then_profile_json(monkeypatch, capsys, fresh_db, history_file):
    _run(monkeypatch, "import-history", "alice", str(history_file))

    assert len(fresh_db.load_watch_events("alice")) == 3
    assert set(fresh_db.load_film_metadata()) == {1, 2, 3}
    transitions = {(p.from_genre, p.to_genre) for p in fresh_db.load_adjacent_preferences("alice")}
    assert transitions == {("Drama", "Horror")}

    capsys.readouterr()
    _run(monkeypatch, "profile", "alice", "--format", "json")
    data = json.loads(capsys.readouterr().out)

    assert data["films"] == 3
    assert data["top"]["genre"][0]["name"] == "Drama"
    assert data["avoid"]["genre"][0]["name"] == "Horror"


def test_reimport_does_not_move_exploration_rate(monkeypatch, fresh_db, history_file):
    _run(monkeypatch, "import-history", "alice", str(history_file))
    after_first = fresh_db.get_exploration_rate("alice")
    assert after_first == pytest.approx(0.10)

    _run(monkeypatch, "import-history", "alice", str(history_file))
    _run(monkeypatch, "import-history", "alice", str(history_file))

    assert fresh_db.get_exploration_rate("alice") == pytest.approx(after_first)


def test_seeds_json(monkeypatch, capsys, fresh_db, history_file):
    _run(monkeypatch, "import-history", "alice", str(history_file))
    capsys.readouterr()

    _run(monkeypatch, "seeds", "alice", "--limit", "2", "--format", "json")
    seeds = json.loads(capsys.readouterr().out)

    assert [s["id"] for s in seeds] == [1, 2]


class FakeFetcher:
    """Serves details for the films in CATALOG."""

    CATALOG = {
        10: _film(10, "Drama Pick", (18, "Drama"), 1996, vote_average=7.4, vote_count=500, popularity=20),
        11: _film(11, "Horror Pick", (27, "Horror"), 2016, vote_average=7.4, vote_count=500, popularity=20),
    }

    def __init__(self, *args, **kwargs):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False

    async def fetch_many(self, candidate_ids, fallbacks=None, is_current=None, progress=False):
        results = []
        for cid in candidate_ids:
            payload = self.CATALOG.get(cid)
            if payload is None:
                results.append(FetchResult(cid, FetchStatus.NOT_FOUND, None, "not found"))
            else:
                results.append(FetchResult(cid, FetchStatus.OK, Candidate.from_payload(payload)))
        return results


def test_rank_from_candidate_file(monkeypatch, capsys, fresh_db, history_file, tmp_path):
    _run(monkeypatch, "import-history", "alice", str(history_file))
    candidates = tmp_path / "candidates.json"
    candidates.write_text(json.dumps({"similar": [10, 11, 1], "trending": [{"id": 11}, "junk"]}))
    monkeypatch.setattr(cli, "MetadataFetcher", FakeFetcher)
    capsys.readouterr()

    _run(monkeypatch, "rank", "alice", "--candidates", str(candidates), "--format", "json")
    ranked = json.loads(capsys.readouterr().out)

    assert [item["id"] for item in ranked] == [10, 11]
    assert ranked[1]["sources"] == ["similar", "trending"]
    assert ranked[1]["consensus_level"] == "medium"


def test_feedback_and_undo_commands(monkeypatch, fresh_db, history_file):
    _run(monkeypatch, "import-history", "alice", str(history_file))

    _run(monkeypatch, "feedback", "alice", "3", "negative-hard", "--sources", "similar", "--consensus", "medium")
    assert fresh_db.load_feedback_ids("alice", [FeedbackKind.NEGATIVE_HARD]) == {3}
    prior, = fresh_db.load_reliability_priors("alice")
    assert (prior.source, prior.misses) == ("similar", 1)

    _run(monkeypatch, "undo", "alice", "3")
    assert fresh_db.load_feedback_ids("alice", [FeedbackKind.NEGATIVE_HARD]) == set()
    prior, = fresh_db.load_reliability_priors("alice")
    assert prior.misses == 0


def test_reliability_json(monkeypatch, capsys, fresh_db):
    fresh_db.adjust_reliability("alice", "similar", "high", 9, 1)
    capsys.readouterr()

    _run(monkeypatch, "reliability", "alice", "--format", "json")
    rows = json.loads(capsys.readouterr().out)

    assert rows[0]["source"] == "similar"
    assert rows[0]["hits"] == 9
    assert 1.0 < rows[0]["multiplier"] <= 1.12
