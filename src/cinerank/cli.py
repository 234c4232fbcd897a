import argparse
import asyncio
import atexit
import json
import logging
import random
import re
from pathlib import Path

from .config import DEFAULT_MAX_CONCURRENT, PROFILE_TOP_N, REPEAT_WINDOW_DAYS, TONES
from .database import (
    init_db, close_pool,
    upsert_watch_events, load_watch_events,
    save_film_metadata, load_film_metadata,
    load_feedback_events, load_feature_feedback, load_adjacent_preferences,
    load_reliability_priors, get_exploration_rate,
)
from .discovery import MetadataFetcher, merge_source_candidates
from .feedback import FeedbackLearner
from .models import Candidate, FeedbackEvent, FeedbackKind, ConsensusLevel, SessionContext, WatchEvent
from .pipeline import RankingPipeline
from .profile import build_taste_profile
from .reliability import blend_reliability, reliability_multiplier
from .signature import SeedFilm, select_seed_films

logger = logging.getLogger(__name__)

atexit.register(close_pool)


def _validate_user_id(user_id: str) -> str:
    """Lowercase and strip anything but alphanumerics, underscores and hyphens."""
    sanitized = re.sub(r'[^a-z0-9_-]', '', user_id.lower())
    if not sanitized:
        raise ValueError(f"Invalid user id: '{user_id}'")
    if sanitized != user_id.lower():
        logger.warning(f"User id '{user_id}' sanitized to '{sanitized}'")
    return sanitized


def _load_json_file(path: str):
    with open(Path(path), encoding="utf-8") as f:
        return json.load(f)


async def _fetch_metadata(ids: list[int], max_concurrent: int, progress: bool = False) -> dict[int, Candidate]:
    async with MetadataFetcher(max_concurrent=max_concurrent) as fetcher:
        results = await fetcher.fetch_many(ids, progress=progress)
    fetched = [r.candidate for r in results if r.ok]
    save_film_metadata(fetched)
    return {c.id: c for c in fetched}


def _history_with_metadata(user_id: str) -> tuple[list[WatchEvent], dict[int, Candidate]]:
    events = load_watch_events(user_id)
    ids = [e.candidate_id for e in events if e.candidate_id is not None]
    return events, load_film_metadata(ids)


def _build_profile(user_id: str, top_n: int = PROFILE_TOP_N):
    events, metadata = _history_with_metadata(user_id)
    profile = build_taste_profile(
        events,
        metadata,
        feedback=load_feedback_events(user_id),
        feature_feedback=load_feature_feedback(user_id),
        adjacent=load_adjacent_preferences(user_id),
        top_n=top_n,
    )
    return profile, events, metadata


def cmd_import_history(args: argparse.Namespace) -> None:
    """Import watch history rows (and optional inline metadata) from a JSON file."""
    user_id = _validate_user_id(args.user)
    data = _load_json_file(args.file)
    rows = data.get("films", []) if isinstance(data, dict) else data

    events = []
    inline_metadata = []
    for row in rows:
        if not isinstance(row, dict) or not row.get("uri"):
            logger.warning(f"Skipping history row without uri: {row!r}")
            continue
        events.append(WatchEvent.from_row(row))
        if isinstance(row.get("film"), dict):
            try:
                inline_metadata.append(Candidate.from_payload(row["film"]))
            except ValueError as e:
                logger.warning(f"Ignoring inline metadata for {row['uri']}: {e}")

    previous = {e.uri: e for e in load_watch_events(user_id)}
    new_ratings = [
        e for e in events
        if e.rating is not None and (
            e.uri not in previous
            or (previous[e.uri].rating, previous[e.uri].last_watched) != (e.rating, e.last_watched)
        )
    ]

    count = upsert_watch_events(user_id, events)
    save_film_metadata(inline_metadata)
    logger.info(f"Imported {count} history rows for {user_id} ({len(inline_metadata)} with metadata)")

    if args.fetch:
        known = load_film_metadata(e.candidate_id for e in events if e.candidate_id is not None)
        missing = sorted({e.candidate_id for e in events if e.candidate_id is not None} - set(known))
        if missing:
            fetched = asyncio.run(_fetch_metadata(missing, args.max_concurrent, progress=True))
            logger.info(f"Fetched metadata for {len(fetched)}/{len(missing)} films")

    events, metadata = _history_with_metadata(user_id)
    pairs = [(e, metadata[e.candidate_id]) for e in events if e.candidate_id in metadata]
    learner = FeedbackLearner()
    learner.record_genre_transitions(user_id, pairs)
    # The rate moves by a step per update; only new ratings are new evidence
    if not new_ratings:
        logger.info(f"No new ratings for {user_id}, exploration rate unchanged")
        return
    profile = build_taste_profile(events, metadata)
    rate = learner.update_exploration_rate(user_id, pairs, profile.top_genre_names())
    logger.info(f"Exploration rate for {user_id}: {rate:.2f}")


def cmd_profile(args: argparse.Namespace) -> None:
    """Show a user's taste profile."""
    user_id = _validate_user_id(args.user)
    profile, events, _ = _build_profile(user_id, args.top)

    if args.format == 'json':
        def _weights(items):
            return [{"name": fw.name, "weight": round(fw.weight, 4), "samples": fw.sample_count} for fw in items]
        print(json.dumps({
            "user": user_id,
            "films": profile.stats.n_films,
            "rated": profile.stats.n_rated,
            "liked": profile.stats.n_liked,
            "top": {ft: _weights(profile.top(ft)) for ft in ("genre", "keyword", "director", "actor", "studio", "decade")},
            "avoid": {ft: _weights(profile.avoid(ft)) for ft in ("genre", "keyword", "director")},
            "watchlist": {ft: _weights(profile.intent(ft)) for ft in ("genre", "keyword", "director")},
        }, indent=2))
        return

    if profile.is_empty:
        logger.info(f"No usable history for '{user_id}'. Run: cinerank import-history {user_id} FILE")
        return

    stats = profile.stats
    logger.info(f"\nProfile for {user_id}")
    logger.info(f"  Films: {stats.n_films} ({stats.n_rated} rated, {stats.n_liked} liked)")
    if stats.avg_rating is not None:
        logger.info(f"  Average rating: {stats.avg_rating:.2f}★")

    for title, items in (
        ("Top genres", profile.top_genres),
        ("Top directors", profile.top_directors),
        ("Top keywords", profile.top_keywords),
        ("Top actors", profile.top_actors),
        ("Decades", profile.top_decades),
        ("Avoided genres", profile.avoid_genres),
        ("Watchlist genres", profile.watchlist_genres),
    ):
        if not items:
            continue
        logger.info(f"\n{title}:")
        for fw in items:
            borrowed = f" (borrowed from {fw.borrowed_from})" if fw.borrowed_from else ""
            logger.info(f"  {fw.name}: {fw.weight:.2f} [{fw.sample_count}]{borrowed}")


def cmd_seeds(args: argparse.Namespace) -> None:
    """List the films that best represent a user's taste."""
    user_id = _validate_user_id(args.user)
    profile, events, metadata = _build_profile(user_id)
    films = [
        SeedFilm.from_history(e, metadata[e.candidate_id])
        for e in events
        if e.watched and e.candidate_id in metadata
    ]
    rng = random.Random(args.seed) if args.seed is not None else None
    seeds = select_seed_films(films, args.limit, profile, use_signature=not args.no_signature, rng=rng)

    if args.format == 'json':
        print(json.dumps([
            {"id": f.candidate_id, "title": f.title, "score": round(s.signature_score, 4), "reasons": s.reasons}
            for f, s in seeds
        ], indent=2))
        return
    for i, (film, score) in enumerate(seeds, 1):
        logger.info(f"{i:2}. {film.title} ({film.candidate_id}) {score.signature_score:.2f}  {'; '.join(score.reasons)}")


def _load_candidate_file(path: str) -> tuple[list[int], dict, dict[int, Candidate]]:
    """
    Read candidates from JSON: a list of ids/payloads, or {source: [ids/payloads]}.

    Returns (ordered ids, attributions, partial payloads usable as fetch fallbacks).
    """
    data = _load_json_file(path)
    per_source = data if isinstance(data, dict) else {"file": data}
    fallbacks: dict[int, Candidate] = {}
    ids_per_source: dict[str, list[int]] = {}
    for source, items in per_source.items():
        ids = []
        for item in items or []:
            if isinstance(item, dict):
                try:
                    candidate = Candidate.from_payload(item)
                except ValueError as e:
                    logger.warning(f"Skipping candidate from {source}: {e}")
                    continue
                fallbacks.setdefault(candidate.id, candidate)
                ids.append(candidate.id)
            else:
                try:
                    ids.append(int(item))
                except (TypeError, ValueError):
                    logger.warning(f"Skipping non-numeric candidate id from {source}: {item!r}")
        ids_per_source[source] = ids
    attributions = merge_source_candidates(ids_per_source)
    return list(attributions), attributions, fallbacks


async def _discover_candidates(user_id: str, seed_count: int, max_concurrent: int):
    profile, events, metadata = _build_profile(user_id)
    films = [SeedFilm.from_history(e, metadata[e.candidate_id]) for e in events if e.watched and e.candidate_id in metadata]
    seeds = select_seed_films(films, seed_count, profile)
    async with MetadataFetcher(max_concurrent=max_concurrent) as fetcher:
        per_source = await fetcher.discover_for_seeds([f.candidate_id for f, _ in seeds])
    attributions = merge_source_candidates(per_source)
    fallbacks = {}
    for candidates in per_source.values():
        for c in candidates:
            fallbacks.setdefault(c.id, c)
    return list(attributions), attributions, fallbacks


def cmd_rank(args: argparse.Namespace) -> None:
    """Rank candidates for a user."""
    user_id = _validate_user_id(args.user)
    if args.candidates:
        ids, attributions, fallbacks = _load_candidate_file(args.candidates)
    else:
        ids, attributions, fallbacks = asyncio.run(_discover_candidates(user_id, args.seeds, args.max_concurrent))

    if not ids:
        logger.error("No candidates to rank")
        return

    session = SessionContext(tone=args.tone, mmr_lambda=args.mmr_lambda, exploration_rate=get_exploration_rate(user_id))
    pipeline = RankingPipeline(
        fetcher_factory=lambda: MetadataFetcher(max_concurrent=args.max_concurrent),
        repeat_window_days=args.repeat_window,
    )
    result = asyncio.run(pipeline.rank_async(
        user_id, ids, session=session, attributions=attributions, fallbacks=fallbacks,
        k=args.limit, progress=args.progress,
    ))

    if args.format == 'json':
        print(json.dumps([item.to_dict() for item in result.items], indent=2, ensure_ascii=False))
        return

    logger.info(f"\nTop {len(result.items)} for {user_id}:\n")
    for i, item in enumerate(result.items, 1):
        c = item.candidate
        year = f" ({c.release_year})" if c.release_year else ""
        logger.info(f"{i:2}. {c.title}{year} [{c.id}]  score {item.score:.2f}")
        if item.reasons:
            logger.info(f"      {'; '.join(item.reasons)}")
        for warning in item.warnings:
            logger.info(f"      ! {warning}")
        for label, titles in list(item.contributing_films.items())[:2]:
            logger.info(f"      {label} <- {', '.join(titles)}")


def cmd_feedback(args: argparse.Namespace) -> None:
    """Record feedback on a suggestion."""
    user_id = _validate_user_id(args.user)
    event = FeedbackEvent(
        user_id=user_id,
        candidate_id=args.candidate_id,
        kind=args.kind,
        reasons=args.reason or [],
        consensus_level=args.consensus,
        sources=args.sources or [],
    )
    profile = _build_profile(user_id)[0] if event.kind == FeedbackKind.NEGATIVE_HARD else None
    state = FeedbackLearner().record(event, profile=profile)
    logger.info(f"{user_id}/{args.candidate_id}: {state.value}")


def cmd_undo(args: argparse.Namespace) -> None:
    """Undo the active feedback for a suggestion."""
    user_id = _validate_user_id(args.user)
    if FeedbackLearner().undo(user_id, args.candidate_id):
        logger.info(f"{user_id}/{args.candidate_id}: shown")
    else:
        logger.info(f"No feedback recorded for {user_id}/{args.candidate_id}")


def cmd_reliability(args: argparse.Namespace) -> None:
    """Show learned per-source reliability."""
    user_id = _validate_user_id(args.user)
    priors = load_reliability_priors(user_id)
    rows = [
        {
            "source": p.source,
            "consensus": p.consensus_level.value,
            "hits": p.hits,
            "misses": p.misses,
            "smoothed": round(p.smoothed(), 4),
            "multiplier": round(reliability_multiplier(blend_reliability([p]), p.consensus_level), 4),
        }
        for p in priors
    ]
    if args.format == 'json':
        print(json.dumps(rows, indent=2))
        return
    if not rows:
        logger.info(f"No reliability data for {user_id} yet")
        return
    for row in rows:
        logger.info(
            f"  {row['source']:<16} {row['consensus']:<7} {row['hits']:>4} hits {row['misses']:>4} misses  "
            f"p={row['smoothed']:.2f}  x{row['multiplier']:.3f}"
        )


def cmd_fetch(args: argparse.Namespace) -> None:
    """Fetch and cache metadata for catalog ids."""
    fetched = asyncio.run(_fetch_metadata(args.ids, args.max_concurrent, progress=True))
    logger.info(f"Cached metadata for {len(fetched)}/{len(set(args.ids))} films")


def main():
    parser = argparse.ArgumentParser(description="cinerank: personal film ranking")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    import_parser = subparsers.add_parser("import-history", help="Import watch history from JSON")
    import_parser.add_argument("user", help="User id")
    import_parser.add_argument("file", help="JSON list of history rows (or {\"films\": [...]})")
    import_parser.add_argument("--fetch", action="store_true", help="Fetch missing film metadata after import")
    import_parser.add_argument("--max-concurrent", type=int, default=DEFAULT_MAX_CONCURRENT,
                               help="Max concurrent metadata requests")
    import_parser.set_defaults(func=cmd_import_history)

    profile_parser = subparsers.add_parser("profile", help="Show taste profile")
    profile_parser.add_argument("user", help="User id")
    profile_parser.add_argument("--top", type=int, default=PROFILE_TOP_N, help="Entries per feature list")
    profile_parser.add_argument("--format", choices=['text', 'json'], default='text', help="Output format")
    profile_parser.set_defaults(func=cmd_profile)

    seeds_parser = subparsers.add_parser("seeds", help="Show signature seed films")
    seeds_parser.add_argument("user", help="User id")
    seeds_parser.add_argument("--limit", type=int, default=10, help="Number of seeds")
    seeds_parser.add_argument("--no-signature", action="store_true", help="Rank seeds by rating weight only")
    seeds_parser.add_argument("--seed", type=int, help="Random seed for weighted sampling (default: deterministic)")
    seeds_parser.add_argument("--format", choices=['text', 'json'], default='text', help="Output format")
    seeds_parser.set_defaults(func=cmd_seeds)

    rank_parser = subparsers.add_parser("rank", help="Rank candidates")
    rank_parser.add_argument("user", help="User id")
    rank_parser.add_argument("--candidates", help="JSON file of candidates (list, or {source: [...]})")
    rank_parser.add_argument("--seeds", type=int, default=5, help="Seed films for discovery when no file is given")
    rank_parser.add_argument("--limit", type=int, default=20, help="Number of results")
    rank_parser.add_argument("--lambda", dest="mmr_lambda", type=float, help="MMR lambda (0-0.5)")
    rank_parser.add_argument("--tone", choices=TONES, help="Session tone")
    rank_parser.add_argument("--repeat-window", type=int, default=REPEAT_WINDOW_DAYS,
                             help="Leave out suggestions shown in the last N days (0 to allow repeats)")
    rank_parser.add_argument("--max-concurrent", type=int, default=DEFAULT_MAX_CONCURRENT,
                             help="Max concurrent metadata requests")
    rank_parser.add_argument("--progress", action="store_true", help="Show fetch progress")
    rank_parser.add_argument("--format", choices=['text', 'json'], default='text', help="Output format")
    rank_parser.set_defaults(func=cmd_rank)

    feedback_parser = subparsers.add_parser("feedback", help="Record feedback on a suggestion")
    feedback_parser.add_argument("user", help="User id")
    feedback_parser.add_argument("candidate_id", type=int, help="Catalog id")
    feedback_parser.add_argument("kind", choices=[k.value for k in FeedbackKind], help="Feedback kind")
    feedback_parser.add_argument("--sources", nargs="+", help="Discovery sources that proposed it")
    feedback_parser.add_argument("--consensus", choices=[c.value for c in ConsensusLevel], default='low',
                                 help="Consensus level when it was shown")
    feedback_parser.add_argument("--reason", action="append", help="Free-text reason (repeatable)")
    feedback_parser.set_defaults(func=cmd_feedback)

    undo_parser = subparsers.add_parser("undo", help="Undo feedback on a suggestion")
    undo_parser.add_argument("user", help="User id")
    undo_parser.add_argument("candidate_id", type=int, help="Catalog id")
    undo_parser.set_defaults(func=cmd_undo)

    reliability_parser = subparsers.add_parser("reliability", help="Show per-source reliability")
    reliability_parser.add_argument("user", help="User id")
    reliability_parser.add_argument("--format", choices=['text', 'json'], default='text', help="Output format")
    reliability_parser.set_defaults(func=cmd_reliability)

    fetch_parser = subparsers.add_parser("fetch", help="Fetch and cache film metadata")
    fetch_parser.add_argument("ids", type=int, nargs="+", help="Catalog ids")
    fetch_parser.add_argument("--max-concurrent", type=int, default=DEFAULT_MAX_CONCURRENT,
                              help="Max concurrent requests")
    fetch_parser.set_defaults(func=cmd_fetch)

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    init_db()
    args.func(args)


if __name__ == "__main__":
    main()
