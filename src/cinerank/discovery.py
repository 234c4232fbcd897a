import asyncio
import logging
import random
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable

import httpx
from tqdm import tqdm

from .config import (
    TMDB_API_KEY,
    TMDB_BASE_URL,
    DEFAULT_MAX_CONCURRENT,
    HTTP_TIMEOUT,
    MAX_HTTP_RETRIES,
    RETRY_INITIAL_DELAY,
    RETRY_BACKOFF_FACTOR,
    DEFAULT_RETRY_AFTER,
)
from .models import Candidate, SourceAttribution

logger = logging.getLogger(__name__)


class FetchStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"   # timeouts, 429 and 5xx once retries run out
    FATAL = "fatal"           # other 4xx, malformed payloads


@dataclass
class FetchResult:
    candidate_id: int
    status: FetchStatus
    candidate: Candidate | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == FetchStatus.OK


class MetadataFetcher:
    """
    Async TMDB metadata client with bounded concurrency and retry.

    Must be used as an async context manager. A 429 pauses every in-flight
    task until the Retry-After window passes.
    """

    def __init__(
        self,
        api_key: str = TMDB_API_KEY,
        base_url: str = TMDB_BASE_URL,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        retry_delay: float = RETRY_INITIAL_DELAY,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.retry_delay = retry_delay
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self.client: httpx.AsyncClient | None = None
        self._transport = transport
        self._rate_limit_event = asyncio.Event()
        self._rate_limit_event.set()

    async def __aenter__(self):
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Accept": "application/json", "User-Agent": "cinerank/1.0"},
            params={"api_key": self.api_key} if self.api_key else None,
            timeout=HTTP_TIMEOUT,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.client:
            await self.client.aclose()
            self.client = None
        return False

    async def _request(self, path: str, params: dict | None = None) -> tuple[FetchStatus, dict | None, str | None]:
        """GET a JSON document, retrying transient failures with exponential backoff."""
        if not self.client:
            raise RuntimeError("MetadataFetcher must be used as an async context manager")

        error = None
        async with self.semaphore:
            for attempt in range(MAX_HTTP_RETRIES):
                await self._rate_limit_event.wait()
                wait_time = self.retry_delay * (RETRY_BACKOFF_FACTOR ** attempt)

                try:
                    resp = await self.client.get(path, params=params)

                    if resp.status_code == 404:
                        return FetchStatus.NOT_FOUND, None, "not found"

                    if resp.status_code == 429:
                        try:
                            retry_after = float(resp.headers.get("Retry-After", DEFAULT_RETRY_AFTER))
                        except ValueError:
                            retry_after = DEFAULT_RETRY_AFTER
                        logger.warning(
                            f"Rate limited on {path}, pausing all requests for {retry_after}s "
                            f"(attempt {attempt + 1}/{MAX_HTTP_RETRIES})"
                        )
                        error = "rate limited"
                        self._rate_limit_event.clear()
                        await asyncio.sleep(retry_after)
                        self._rate_limit_event.set()
                        await asyncio.sleep(random.uniform(0, self.retry_delay))
                        continue

                    if resp.status_code >= 500:
                        error = f"HTTP {resp.status_code}"
                        logger.warning(
                            f"HTTP {resp.status_code} on {path}, retrying in {wait_time:.2f}s "
                            f"(attempt {attempt + 1}/{MAX_HTTP_RETRIES})"
                        )
                        await asyncio.sleep(wait_time)
                        continue

                    resp.raise_for_status()
                    payload = resp.json()
                    if not isinstance(payload, dict):
                        return FetchStatus.FATAL, None, f"unexpected payload type {type(payload).__name__}"
                    return FetchStatus.OK, payload, None

                except httpx.TimeoutException:
                    error = "timeout"
                    logger.warning(
                        f"Timeout on {path}, retrying in {wait_time:.2f}s (attempt {attempt + 1}/{MAX_HTTP_RETRIES})"
                    )
                    await asyncio.sleep(wait_time)

                except httpx.HTTPStatusError as e:
                    logger.error(f"HTTP {e.response.status_code} on {path}: {e}")
                    return FetchStatus.FATAL, None, f"HTTP {e.response.status_code}"

                except httpx.TransportError as e:
                    error = f"{type(e).__name__}: {e}"
                    logger.warning(f"Request error on {path}: {error} (attempt {attempt + 1}/{MAX_HTTP_RETRIES})")
                    await asyncio.sleep(wait_time)

                except ValueError as e:
                    logger.error(f"Malformed JSON from {path}: {e}")
                    return FetchStatus.FATAL, None, "malformed JSON"

        logger.error(f"Max retries exceeded for {path}")
        return FetchStatus.TRANSIENT, None, error or "max retries exceeded"

    async def fetch_candidate(
        self,
        candidate_id: int,
        fallback: Candidate | None = None,
        is_current: Callable[[], bool] | None = None,
    ) -> FetchResult:
        """Fetch full details (keywords and credits included) for one film."""
        if is_current is not None and not is_current():
            return FetchResult(candidate_id, FetchStatus.TRANSIENT, fallback, "superseded")

        status, payload, error = await self._request(
            f"/movie/{candidate_id}", params={"append_to_response": "keywords,credits"},
        )
        if status == FetchStatus.OK:
            try:
                return FetchResult(candidate_id, status, Candidate.from_payload(payload))
            except ValueError as e:
                return FetchResult(candidate_id, FetchStatus.FATAL, None, str(e))
        if status == FetchStatus.TRANSIENT:
            return FetchResult(candidate_id, status, fallback, error)
        return FetchResult(candidate_id, status, None, error)

    async def fetch_many(
        self,
        candidate_ids: Iterable[int],
        fallbacks: dict[int, Candidate] | None = None,
        is_current: Callable[[], bool] | None = None,
        progress: bool = False,
    ) -> list[FetchResult]:
        """
        Fetch details for many films concurrently.

        One film failing never affects the others. Results come back in input
        order, one per distinct id.
        """
        ids = list(dict.fromkeys(candidate_ids))
        fallbacks = fallbacks or {}
        pbar = tqdm(total=len(ids), desc="Fetching metadata", unit="film") if progress else None

        async def _tracked(cid: int) -> FetchResult:
            try:
                return await self.fetch_candidate(cid, fallbacks.get(cid), is_current)
            finally:
                if pbar is not None:
                    pbar.update(1)

        try:
            raw = await asyncio.gather(*(_tracked(cid) for cid in ids), return_exceptions=True)
        finally:
            if pbar is not None:
                pbar.close()

        results = []
        error_summary: dict[str, int] = defaultdict(int)
        for cid, result in zip(ids, raw):
            if isinstance(result, Exception):
                error_type = type(result).__name__
                logger.error(f"Failed to fetch {cid}: {error_type}: {result}")
                error_summary[error_type] += 1
                result = FetchResult(cid, FetchStatus.FATAL, fallbacks.get(cid), f"{error_type}: {result}")
            elif not result.ok:
                logger.warning(f"Fetch for {cid} ended {result.status.value}: {result.error}")
                error_summary[result.status.value] += 1
            results.append(result)

        usable = sum(1 for r in results if r.candidate is not None)
        if error_summary:
            logger.warning(f"Batch complete: {usable}/{len(ids)} usable, breakdown: {dict(error_summary)}")
        else:
            logger.info(f"Batch complete: {usable}/{len(ids)} successful")
        return results

    async def fetch_id_list(self, path: str, params: dict | None = None) -> list[Candidate]:
        """Fetch a list endpoint (similar/recommendations/trending) as partial candidates."""
        status, payload, error = await self._request(path, params=params)
        if status != FetchStatus.OK:
            logger.warning(f"List fetch {path} failed ({status.value}): {error}")
            return []
        candidates = []
        for item in payload.get("results") or []:
            try:
                candidates.append(Candidate.from_payload(item))
            except ValueError as e:
                logger.debug(f"Skipping list entry from {path}: {e}")
        return candidates

    async def discover_for_seeds(self, seed_ids: Iterable[int], include_trending: bool = True) -> dict[str, list[Candidate]]:
        """
        Gather raw candidate lists per discovery source.

        Sources are "similar" and "recommendations" (per seed) and "trending".
        """
        seeds = list(dict.fromkeys(seed_ids))
        jobs = []
        for seed in seeds:
            jobs.append(("similar", self.fetch_id_list(f"/movie/{seed}/similar")))
            jobs.append(("recommendations", self.fetch_id_list(f"/movie/{seed}/recommendations")))
        if include_trending:
            jobs.append(("trending", self.fetch_id_list("/trending/movie/week")))

        raw = await asyncio.gather(*(job for _, job in jobs), return_exceptions=True)
        per_source: dict[str, list[Candidate]] = defaultdict(list)
        for (source, _), result in zip(jobs, raw):
            if isinstance(result, Exception):
                logger.error(f"Discovery source {source} failed: {type(result).__name__}: {result}")
                continue
            per_source[source].extend(result)
        return dict(per_source)


def merge_source_candidates(per_source: dict[str, Iterable]) -> dict[int, SourceAttribution]:
    """
    Merge per-source id lists into one attribution per candidate.

    Accepts ids or Candidates. Consensus follows the number of distinct
    sources proposing the candidate.
    """
    sources_by_id: dict[int, set[str]] = defaultdict(set)
    order: list[int] = []
    for source, items in per_source.items():
        for item in items:
            cid = item.id if isinstance(item, Candidate) else int(item)
            if cid not in sources_by_id:
                order.append(cid)
            sources_by_id[cid].add(source)
    return {cid: SourceAttribution.from_sources(sources_by_id[cid]) for cid in order}


def filter_candidate_pool(
    candidate_ids: Iterable[int],
    watched: Iterable[int] = (),
    blocked: Iterable[int] = (),
    recently_shown: Iterable[int] = (),
) -> list[int]:
    """Drop watched, blocked and recently shown ids, dedupe, keep first-seen order."""
    excluded = set(watched) | set(blocked) | set(recently_shown)
    pool = []
    seen = set()
    for cid in candidate_ids:
        if cid in excluded or cid in seen:
            continue
        seen.add(cid)
        pool.append(cid)
    return pool
