from datetime import date

import pytest

from cinerank.models import (
    Candidate,
    ConsensusLevel,
    FeedbackEvent,
    FeedbackKind,
    SourceAttribution,
    SourceReliabilityPrior,
    WatchEvent,
)


def test_candidate_from_detail_payload():
    payload = {
        "id": "603",
        "title": "The Matrix",
        "genres": [{"id": 28, "name": "Action"}, {"id": 878, "name": "Science Fiction"}],
        "keywords": {"keywords": [{"id": 310, "name": "artificial intelligence"}]},
        "credits": {
            "cast": [
                {"id": 2, "name": "Carrie-Anne Moss", "order": 2},
                {"id": 1, "name": "Keanu Reeves", "order": 0},
            ],
            "crew": [
                {"id": 9339, "name": "Lana Wachowski", "job": "Director"},
                {"id": 9999, "name": "Bill Pope", "job": "Director of Photography"},
            ],
        },
        "production_companies": [{"id": 79, "name": "Village Roadshow"}],
        "release_date": "1999-03-30",
        "popularity": 80.5,
        "vote_average": 8.2,
        "vote_count": 25000,
        "runtime": 136,
    }

    film = Candidate.from_payload(payload)

    assert film.id == 603
    assert [g.name for g in film.genres] == ["Action", "Science Fiction"]
    assert [k.name for k in film.keywords] == ["artificial intelligence"]
    assert [c.name for c in film.cast] == ["Keanu Reeves", "Carrie-Anne Moss"]
    assert [d.name for d in film.directors] == ["Lana Wachowski"]
    assert film.release_year == 1999
    assert film.decade == 1990
    assert film.features("decade")[0].name == "1990s"
    assert film.metadata_completeness() == 1.0


def test_candidate_from_list_payload_is_partial():
    film = Candidate.from_payload({"id": 11, "title": "Star Wars", "genre_ids": [12, 28], "popularity": 60})

    assert [g.id for g in film.genres] == [12, 28]
    assert film.keywords == ()
    assert film.directors == ()
    assert 0 < film.metadata_completeness() < 0.5


def test_candidate_malformed_fields_become_missing():
    film = Candidate.from_payload({
        "id": 5,
        "genres": "not-a-list",
        "popularity": "NaN",
        "vote_count": -3,
        "runtime": 0,
        "release_date": "someday",
    })

    assert film.genres == ()
    assert film.popularity is None
    assert film.vote_count is None
    assert film.runtime is None
    assert film.release_year is None


def test_candidate_without_id_is_rejected():
    with pytest.raises(ValueError):
        Candidate.from_payload({"title": "No id"})


def test_candidate_payload_round_trip_preserves_features():
    film = Candidate.from_payload({
        "id": 1,
        "title": "A",
        "genres": [{"id": 18, "name": "Drama"}],
        "directors": [{"id": 7, "name": "Someone"}],
        "release_year": 2004,
    })
    assert Candidate.from_payload(film.to_payload()) == film


def test_watch_event_rejects_out_of_range_rating():
    event = WatchEvent.from_row({"uri": "film:1", "candidate_id": 1, "rating": 7})
    assert event.rating is None
    assert event.watched


def test_watchlist_only_row_is_not_watched():
    event = WatchEvent.from_row({
        "uri": "film:2",
        "candidate_id": 2,
        "watch_count": 0,
        "on_watchlist": True,
        "watchlist_added": "2024-05-01",
    })
    assert not event.watched
    assert event.watchlist_added == date(2024, 5, 1)


def test_watchlist_row_without_watch_count_defaults_to_unwatched():
    event = WatchEvent.from_row({
        "uri": "film:2",
        "candidate_id": 2,
        "on_watchlist": True,
        "watchlist_added": "2024-05-30",
    })
    assert event.watch_count == 0
    assert not event.watched

    rated = WatchEvent.from_row({"uri": "film:3", "on_watchlist": True, "rating": 4})
    assert rated.watch_count == 1
    assert rated.watched
    assert WatchEvent(uri="film:4", last_watched=date(2024, 1, 1), on_watchlist=True).watched


def test_consensus_level_from_source_count():
    assert ConsensusLevel.from_source_count(1) == ConsensusLevel.LOW
    assert ConsensusLevel.from_source_count(2) == ConsensusLevel.MEDIUM
    assert ConsensusLevel.from_source_count(4) == ConsensusLevel.HIGH
    assert ConsensusLevel.coerce("HIGH") == ConsensusLevel.HIGH
    assert ConsensusLevel.coerce("bogus") == ConsensusLevel.LOW


def test_feedback_event_coerces_kind_and_rejects_unknown():
    event = FeedbackEvent(user_id="alice", candidate_id=1, kind="negative-soft", consensus_level="medium")
    assert event.kind == FeedbackKind.NEGATIVE_SOFT
    assert event.consensus_level == ConsensusLevel.MEDIUM
    assert event.kind.is_miss

    with pytest.raises(ValueError):
        FeedbackEvent(user_id="alice", candidate_id=1, kind="meh")


def test_source_attribution_dedupes_sources():
    attribution = SourceAttribution.from_sources(["similar", "trending", "similar"])
    assert attribution.sources == ["similar", "trending"]
    assert attribution.consensus_level == ConsensusLevel.MEDIUM


def test_reliability_prior_smoothing_is_neutral_without_observations():
    prior = SourceReliabilityPrior(user_id="alice", source="similar", consensus_level=ConsensusLevel.LOW)
    assert prior.smoothed() == 0.5
    prior.hits = 3
    prior.misses = 1
    assert prior.smoothed() == pytest.approx(4 / 6)
