from datetime import date

import pytest

from cinerank.feedback import FeedbackLearner, avoid_weights_from_counts
from cinerank.models import (
    FeatureWeight,
    FeedbackEvent,
    FeedbackKind,
    SuggestionState,
    TasteProfile,
    WatchEvent,
)
from cinerank.reliability import SourceReliabilityWeighter

DRAMA = (18, "Drama")
WESTERN = (37, "Western")


@pytest.fixture
def learner(fresh_db):
    return FeedbackLearner(db=fresh_db)


@pytest.fixture
def drama_profile():
    return TasteProfile(top_genres=[FeatureWeight("genre", 18, "Drama", 2.0, 4)])


def _snapshot(db):
    """Every counter feedback can touch."""
    with db.get_db(read_only=True) as conn:
        reliability = [tuple(r) for r in conn.execute(
            "SELECT source, consensus_level, hits, misses FROM source_reliability ORDER BY 1, 2")]
        features = [tuple(r) for r in conn.execute(
            "SELECT feature_type, feature_name, positive_count, negative_count FROM feature_feedback ORDER BY 1, 2")]
    nonzero_reliability = [r for r in reliability if r[2] or r[3]]
    nonzero_features = [f for f in features if f[2] or f[3]]
    return nonzero_reliability, nonzero_features, db.get_exploration_rate("alice")


def test_repeated_feedback_is_idempotent(learner, fresh_db, make_candidate):
    film = make_candidate(10, genres=[WESTERN], directors=[(1, "Leone")])
    event = FeedbackEvent("alice", 10, FeedbackKind.NEGATIVE_SOFT, sources=["similar"], consensus_level="low")

    assert learner.record(event, film) == SuggestionState.DISMISSED_SOFT
    after_first = _snapshot(fresh_db)
    learner.record(FeedbackEvent("alice", 10, FeedbackKind.NEGATIVE_SOFT, sources=["similar"]), film)

    with fresh_db.get_db(read_only=True) as conn:
        rows = conn.execute("SELECT COUNT(*) FROM suggestion_feedback WHERE user_id = 'alice'").fetchone()[0]
    assert rows == 1
    assert _snapshot(fresh_db) == after_first
    assert fresh_db.load_reliability_priors("alice")[0].misses == 1


def test_newer_feedback_replaces_older(learner, fresh_db, make_candidate):
    film = make_candidate(10, genres=[WESTERN])
    learner.record(FeedbackEvent("alice", 10, FeedbackKind.NEGATIVE_SOFT, sources=["similar"]), film)
    state = learner.record(FeedbackEvent("alice", 10, FeedbackKind.POSITIVE, sources=["similar"]), film)

    assert state == SuggestionState.SHOWN
    prior = fresh_db.load_reliability_priors("alice")[0]
    assert (prior.hits, prior.misses) == (1, 0)
    assert fresh_db.load_feature_feedback("alice")["genre:Western"] == (1, 0)


def test_soft_and_hard_negatives_stay_distinct(learner, make_candidate):
    learner.record(FeedbackEvent("alice", 1, FeedbackKind.NEGATIVE_SOFT), make_candidate(1))
    learner.record(FeedbackEvent("alice", 2, FeedbackKind.NEGATIVE_HARD), make_candidate(2))

    assert learner.dismissed_ids("alice") == {1}
    assert learner.blocked_ids("alice") == {2}
    assert learner.state("alice", 1) == SuggestionState.DISMISSED_SOFT
    assert learner.state("alice", 2) == SuggestionState.BLOCKED_HARD
    assert learner.state("alice", 3) == SuggestionState.SHOWN


def test_undo_restores_every_counter(learner, fresh_db, make_candidate, drama_profile):
    film = make_candidate(10, genres=[WESTERN], keywords=[(5, "revenge")], directors=[(1, "Leone")])
    learner.record(FeedbackEvent("alice", 20, FeedbackKind.POSITIVE, sources=["similar"]), make_candidate(20, genres=[DRAMA]))
    before = _snapshot(fresh_db)

    learner.record(
        FeedbackEvent("alice", 10, FeedbackKind.NEGATIVE_HARD, sources=["similar", "trending"], consensus_level="medium"),
        film,
        profile=drama_profile,
    )
    assert _snapshot(fresh_db) != before
    assert fresh_db.get_exploration_rate("alice") == pytest.approx(0.13)

    assert learner.undo("alice", 10) is True
    assert _snapshot(fresh_db) == before
    assert learner.state("alice", 10) == SuggestionState.SHOWN
    assert learner.undo("alice", 10) is False


def test_undo_after_replacement_reverses_only_latest(learner, fresh_db, make_candidate):
    film = make_candidate(10, genres=[WESTERN])
    before = _snapshot(fresh_db)
    learner.record(FeedbackEvent("alice", 10, FeedbackKind.NEGATIVE_SOFT, sources=["similar"]), film)
    learner.record(FeedbackEvent("alice", 10, FeedbackKind.NEGATIVE_HARD, sources=["similar"]), film)
    learner.undo("alice", 10)
    assert _snapshot(fresh_db) == before


def test_exploration_penalty_respects_floor(learner, fresh_db, make_candidate, drama_profile):
    fresh_db.set_exploration_rate("alice", 0.06)
    learner.record(FeedbackEvent("alice", 10, FeedbackKind.NEGATIVE_HARD), make_candidate(10, genres=[WESTERN]),
                   profile=drama_profile)
    assert fresh_db.get_exploration_rate("alice") == pytest.approx(0.05)

    learner.undo("alice", 10)
    assert fresh_db.get_exploration_rate("alice") == pytest.approx(0.06)


def test_hard_block_of_in_profile_film_keeps_exploration(learner, fresh_db, make_candidate, drama_profile):
    learner.record(FeedbackEvent("alice", 10, FeedbackKind.NEGATIVE_HARD), make_candidate(10, genres=[DRAMA]),
                   profile=drama_profile)
    assert fresh_db.get_exploration_rate("alice") == pytest.approx(0.15)


def test_feedback_invalidates_reliability_cache(fresh_db, make_candidate):
    loads = []

    def loader(user_id):
        loads.append(user_id)
        return fresh_db.load_reliability_priors(user_id)

    weighter = SourceReliabilityWeighter(loader=loader, ttl=3600)
    learner = FeedbackLearner(db=fresh_db, weighter=weighter)

    assert weighter.multiplier_for("alice", ["similar"]).multiplier == 1.0
    learner.record(FeedbackEvent("alice", 1, FeedbackKind.POSITIVE, sources=["similar"]), make_candidate(1))
    assert weighter.multiplier_for("alice", ["similar"]).multiplier > 1.0
    assert loads == ["alice", "alice"]


def test_candidate_snapshot_reused_when_not_supplied(learner, fresh_db, make_candidate):
    film = make_candidate(10, genres=[WESTERN])
    learner.record(FeedbackEvent("alice", 10, FeedbackKind.NEGATIVE_SOFT), film)
    learner.record(FeedbackEvent("alice", 10, FeedbackKind.NEGATIVE_HARD))

    events = fresh_db.load_feedback_events("alice")
    assert len(events) == 1
    assert events[0][1].genres == film.genres
    assert fresh_db.load_feature_feedback("alice")["genre:Western"] == (0, 1)


def test_avoid_weights_from_counts():
    weights = avoid_weights_from_counts({
        "genre:Western": (0, 4),
        "genre:Drama": (3, 0),
        "keyword:revenge": (0, 0),
    })
    assert weights == {"genre:Western": pytest.approx(5 / 6 - 0.5)}


def _rated(cid, rating, genre, day, make_candidate):
    event = WatchEvent(uri=f"film:{cid}", candidate_id=cid, rating=rating, last_watched=date(2024, 1, day))
    return event, make_candidate(cid, genres=[genre])


def test_exploration_rate_rises_when_exploring_pays_off(learner, fresh_db, make_candidate):
    films = [_rated(cid, 4.5, WESTERN, cid, make_candidate) for cid in range(1, 4)]
    films.append(_rated(9, 1.0, DRAMA, 9, make_candidate))

    rate = learner.update_exploration_rate("alice", films, ["Drama"])

    assert rate == pytest.approx(0.20)
    assert fresh_db.get_exploration_rate("alice") == pytest.approx(0.20)


def test_exploration_rate_falls_and_is_bounded(learner, fresh_db, make_candidate):
    films = [_rated(cid, 1.5, WESTERN, cid, make_candidate) for cid in range(1, 4)]
    for _ in range(10):
        rate = learner.update_exploration_rate("alice", films, ["Drama"])
    assert rate == pytest.approx(0.05)


def test_genre_transitions_are_idempotent(learner, fresh_db, make_candidate):
    films = [
        _rated(1, 4.0, DRAMA, 1, make_candidate),
        _rated(2, 4.5, WESTERN, 2, make_candidate),
        _rated(3, 3.0, DRAMA, 3, make_candidate),
        _rated(4, 5.0, WESTERN, 4, make_candidate),
    ]

    assert learner.record_genre_transitions("alice", films) == 2
    learner.record_genre_transitions("alice", films)

    prefs = {(p.from_genre, p.to_genre): p for p in fresh_db.load_adjacent_preferences("alice")}
    drama_to_western = prefs[("Drama", "Western")]
    assert (drama_to_western.successes, drama_to_western.trials) == (2, 2)
    western_to_drama = prefs[("Western", "Drama")]
    assert (western_to_drama.successes, western_to_drama.trials) == (0, 1)
    assert drama_to_western.last_reinforced_at.date() == date(2024, 1, 4)
