from datetime import date, datetime, timedelta

import pytest

from cinerank import profile
from cinerank.models import AdjacentPreference, FeedbackEvent, FeedbackKind, WatchEvent

REF = datetime(2024, 6, 1)

DRAMA = (18, "Drama")
HORROR = (27, "Horror")
THRILLER = (53, "Thriller")
COMEDY = (35, "Comedy")


def _event(cid, rating=None, liked=False, days_ago=10, **kwargs):
    return WatchEvent(
        uri=f"film:{cid}",
        candidate_id=cid,
        rating=rating,
        liked=liked,
        last_watched=(REF - timedelta(days=days_ago)).date(),
        **kwargs,
    )


def test_recency_decay_halves_at_half_life_and_keeps_a_floor():
    half_life = 100
    assert profile.compute_recency_decay(REF, REF, half_life, 0.1) == 1.0
    assert profile.compute_recency_decay(REF - timedelta(days=100), REF, half_life, 0.1) == pytest.approx(0.5)
    assert profile.compute_recency_decay(REF - timedelta(days=10_000), REF, half_life, 0.1) == 0.1
    # Missing and future dates count as recent
    assert profile.compute_recency_decay(None, REF) == 1.0
    assert profile.compute_recency_decay(REF + timedelta(days=5), REF) == 1.0


def test_film_weight_orders_ratings_and_boosts_liked():
    five = profile.compute_film_weight(_event(1, rating=5.0, days_ago=0), REF)
    three = profile.compute_film_weight(_event(2, rating=3.0, days_ago=0), REF)
    liked_two = profile.compute_film_weight(_event(3, rating=2.0, liked=True, days_ago=0), REF)
    rewatched = profile.compute_film_weight(_event(4, rating=5.0, days_ago=0, rewatch=True), REF)

    assert five > three > 0
    assert liked_two > 0  # liked floor keeps a low-rated favourite positive
    assert rewatched > five


def test_avoid_weight_only_for_low_unliked_ratings():
    assert profile.avoid_weight(1.0) > profile.avoid_weight(2.0) > profile.avoid_weight(2.5) > 0
    assert profile.avoid_weight(1.0, liked=True) == 0.0
    assert profile.avoid_weight(3.5) == 0.0
    assert profile.avoid_weight(None) == 0.0


def test_empty_history_gives_empty_profile():
    result = profile.build_taste_profile([], {}, reference_time=REF)
    assert result.is_empty
    assert result.stats.n_films == 0
    assert result.top_genres == []


def test_profile_ranks_loved_genres_and_collects_evidence(make_candidate):
    metadata = {
        1: make_candidate(1, "Slow Burn", genres=[DRAMA], directors=[(100, "Auteur")], year=1994),
        2: make_candidate(2, "Quiet Days", genres=[DRAMA], year=1998),
        3: make_candidate(3, "Cheap Scares", genres=[HORROR], directors=[(200, "Hack")], year=2015),
    }
    events = [
        _event(1, rating=5.0, liked=True),
        _event(2, rating=4.5),
        _event(3, rating=1.0),
    ]

    result = profile.build_taste_profile(events, metadata, reference_time=REF)

    assert result.top_genres[0].name == "Drama"
    assert result.top_genres[0].sample_count == 2
    assert result.top_directors[0].name == "Auteur"
    assert [fw.name for fw in result.avoid_genres] == ["Horror"]
    assert [fw.name for fw in result.avoid_directors] == ["Hack"]
    assert result.evidence["genre:Drama"][0] == "Slow Burn"
    assert result.top_decades[0].name == "1990s"
    assert result.stats.n_films == 3
    assert result.stats.n_liked == 1
    assert all(fw.weight >= 0 for fw in result.top_genres + result.avoid_genres)


def test_repetition_is_dampened(make_candidate):
    # Ten mediocre franchise entries vs two loved films
    metadata = {cid: make_candidate(cid, genres=[COMEDY]) for cid in range(1, 11)}
    metadata[50] = make_candidate(50, genres=[DRAMA])
    metadata[51] = make_candidate(51, genres=[DRAMA])
    events = [_event(cid, rating=3.0) for cid in range(1, 11)]
    events += [_event(50, rating=5.0, liked=True), _event(51, rating=5.0, liked=True)]

    result = profile.build_taste_profile(events, metadata, reference_time=REF)

    assert result.top_genres[0].name == "Drama"


def test_watchlist_intent_is_weaker_than_watched(make_candidate):
    metadata = {
        1: make_candidate(1, genres=[DRAMA]),
        2: make_candidate(2, genres=[THRILLER]),
    }
    events = [
        _event(1, rating=3.5),
        WatchEvent(
            uri="film:2", candidate_id=2, watch_count=0, on_watchlist=True,
            watchlist_added=(REF - timedelta(days=3)).date(),
        ),
    ]

    result = profile.build_taste_profile(events, metadata, reference_time=REF)

    assert [fw.name for fw in result.top_genres] == ["Drama"]
    assert [fw.name for fw in result.watchlist_genres] == ["Thriller"]
    assert result.watchlist_genres[0].weight < result.top_genres[0].weight
    assert result.stats.n_films == 1


def test_imported_watchlist_row_without_watch_count_is_intent(make_candidate):
    metadata = {
        1: make_candidate(1, genres=[DRAMA]),
        2: make_candidate(2, genres=[THRILLER]),
    }
    events = [
        _event(1, rating=4.0),
        WatchEvent.from_row({"uri": "film:2", "candidate_id": 2, "on_watchlist": True,
                             "watchlist_added": "2024-05-30"}),
    ]

    result = profile.build_taste_profile(events, metadata, reference_time=REF)

    assert [fw.name for fw in result.top_genres] == ["Drama"]
    assert [fw.name for fw in result.watchlist_genres] == ["Thriller"]
    assert result.stats.n_films == 1


def test_negative_feedback_feeds_avoid_lists(make_candidate):
    snapshot = make_candidate(9, genres=[HORROR], directors=[(300, "Gore Master")])
    feedback = [(FeedbackEvent("alice", 9, FeedbackKind.NEGATIVE_HARD, timestamp=REF), snapshot)]

    result = profile.build_taste_profile([], {}, feedback=feedback, reference_time=REF)

    assert result.top_genres == []
    assert not result.is_empty
    assert [fw.name for fw in result.avoid_directors] == ["Gore Master"]


def test_feature_feedback_scales_weights(make_candidate):
    metadata = {
        1: make_candidate(1, genres=[DRAMA]),
        2: make_candidate(2, genres=[THRILLER]),
    }
    events = [_event(1, rating=4.0), _event(2, rating=4.0)]

    neutral = profile.build_taste_profile(events, metadata, reference_time=REF)
    assert neutral.top_genres[0].weight == pytest.approx(neutral.top_genres[1].weight)

    result = profile.build_taste_profile(
        events, metadata, feature_feedback={"genre:Thriller": (4, 0)}, reference_time=REF,
    )
    assert result.top_genres[0].name == "Thriller"
    assert profile.feedback_feature_multiplier(0, 0) == 1.0


def test_adjacent_genre_borrows_from_strong_neighbour(make_candidate):
    metadata = {
        1: make_candidate(1, genres=[HORROR]),
        2: make_candidate(2, genres=[HORROR]),
        3: make_candidate(3, genres=[THRILLER]),
    }
    events = [_event(1, rating=5.0), _event(2, rating=4.5), _event(3, rating=3.0)]
    adjacent = [AdjacentPreference("alice", "Horror", "Thriller", successes=4, trials=5, last_reinforced_at=REF)]

    without = profile.build_taste_profile(events, metadata, reference_time=REF)
    borrowed = profile.build_taste_profile(events, metadata, adjacent=adjacent, reference_time=REF)

    thriller_before = next(fw for fw in without.top_genres if fw.name == "Thriller")
    thriller_after = next(fw for fw in borrowed.top_genres if fw.name == "Thriller")
    assert thriller_after.weight > thriller_before.weight
    assert thriller_after.borrowed_from == "genre:Horror"


def test_adjacent_borrowing_decays_away(make_candidate):
    metadata = {1: make_candidate(1, genres=[HORROR]), 2: make_candidate(2, genres=[HORROR]),
                3: make_candidate(3, genres=[THRILLER])}
    events = [_event(1, rating=5.0), _event(2, rating=5.0), _event(3, rating=3.0)]
    stale = [AdjacentPreference("alice", "Horror", "Thriller", 5, 5, last_reinforced_at=REF - timedelta(days=3650))]

    without = profile.build_taste_profile(events, metadata, reference_time=REF)
    result = profile.build_taste_profile(events, metadata, adjacent=stale, reference_time=REF)

    before = next(fw for fw in without.top_genres if fw.name == "Thriller").weight
    after = next(fw for fw in result.top_genres if fw.name == "Thriller").weight
    assert after == pytest.approx(before, abs=1e-6)


def test_build_is_deterministic(make_candidate):
    metadata = {cid: make_candidate(cid, genres=[DRAMA, THRILLER], keywords=[(cid, f"kw{cid}")]) for cid in range(1, 6)}
    events = [_event(cid, rating=3.0 + cid * 0.5 if cid < 5 else None) for cid in range(1, 6)]

    first = profile.build_taste_profile(events, metadata, reference_time=REF)
    second = profile.build_taste_profile(list(reversed(events)), metadata, reference_time=REF)

    assert [(fw.name, fw.weight) for fw in first.top_keywords] == [(fw.name, fw.weight) for fw in second.top_keywords]
    assert date(2024, 5, 22) == first.top_genres[0].last_seen_at
