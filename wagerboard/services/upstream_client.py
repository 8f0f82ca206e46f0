"""HTTP client for the affiliate wager stats API."""
import asyncio
import json
import logging
import random
import time
from enum import Enum
from typing import Any, Callable, Optional

import aiohttp
from aiohttp import ClientTimeout, ClientError

from wagerboard.config import Settings, get_settings
from wagerboard.schemas.leaderboard import LeaderboardEntity
from wagerboard.services.leaderboard_transformer import extract_entities
from wagerboard.utils.exceptions import UpstreamTransientError, UpstreamUnavailable

logger = logging.getLogger(__name__)


class FetchState(str, Enum):
    """Where the fetch/retry flow currently is."""
    IDLE = "idle"
    FETCHING = "fetching"
    BACKOFF_WAIT = "backoff_wait"
    SUCCEEDED = "succeeded"
    FAILED_EXHAUSTED = "failed_exhausted"


def compute_backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Exponential backoff with +/-20% jitter.

    Args:
        attempt: Zero-based index of the attempt that just failed
        base_delay: Delay after the first failure, in seconds
        max_delay: Upper bound before jitter is applied
        rand: Source of uniform [0, 1) values

    Returns:
        Seconds to wait before the next attempt
    """
    delay = min(base_delay * (2 ** attempt), max_delay)
    return delay * (0.8 + 0.4 * rand())


def _is_raw_text(payload: Any) -> bool:
    return isinstance(payload, dict) and bool(payload.get("parse_error"))


class UpstreamClient:
    """
    Client for the upstream affiliate leaderboard endpoint.

    Keeps the last successful payload and serves it while it is fresh, and as a
    fallback once every retry has failed. The HTTP session is created lazily and
    must be closed on shutdown.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.url = self.settings.upstream_api_url
        self.timeout = ClientTimeout(total=self.settings.upstream_timeout_seconds)
        self.state = FetchState.IDLE
        self.last_error: Optional[str] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._snapshot_lock = asyncio.Lock()
        self._last_good: Any = None
        self._last_good_at: Optional[float] = None

    async def __aenter__(self):
        """Async context manager entry."""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit - ensure session is closed."""
        await self.close()

    async def _ensure_session(self):
        """Ensure session exists and is not closed."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            logger.debug("Created new aiohttp session for upstream client")

    async def close(self):
        """Close the underlying aiohttp client session."""
        if self._session and not self._session.closed:
            await self._session.close()
            logger.debug("Closed aiohttp session for upstream client")
        self._session = None

    def has_api_token(self) -> bool:
        return bool(self.settings.upstream_api_token)

    @property
    def last_fetch_age_seconds(self) -> Optional[float]:
        """Seconds since the last successful fetch, or None if there was none."""
        if self._last_good_at is None:
            return None
        return max(0.0, time.time() - self._last_good_at)

    async def _fresh_snapshot(self) -> Any:
        window = self.settings.upstream_freshness_minutes * 60
        async with self._snapshot_lock:
            if self._last_good is None or self._last_good_at is None:
                return None
            if time.time() - self._last_good_at < window:
                return self._last_good
        return None

    async def _store_snapshot(self, payload: Any) -> None:
        async with self._snapshot_lock:
            self._last_good = payload
            self._last_good_at = time.time()

    async def _backoff_wait(self, delay: float) -> None:
        await asyncio.sleep(delay)

    async def _request_once(self) -> Any:
        """Issue one GET and return the decoded body.

        Raises:
            UpstreamTransientError: on timeout, network failure, non-2xx status
                or an empty body
        """
        await self._ensure_session()
        headers = {
            "Authorization": f"Bearer {self.settings.upstream_api_token}",
            "Accept": "application/json",
        }

        try:
            async with self._session.get(self.url, headers=headers) as response:
                if not 200 <= response.status < 300:
                    error_text = await response.text()
                    raise UpstreamTransientError(
                        f"HTTP {response.status}: {error_text[:200]}",
                        kind="http",
                        status=response.status,
                    )
                body = await response.text()
        except UpstreamTransientError:
            raise
        except asyncio.TimeoutError as e:
            raise UpstreamTransientError("request timed out", kind="timeout") from e
        except ClientError as e:
            raise UpstreamTransientError(f"network error: {e}", kind="network") from e
        except Exception as e:
            raise UpstreamTransientError(f"unexpected error: {e}", kind="other") from e

        if not body or not body.strip():
            raise UpstreamTransientError("empty response body", kind="http", status=response.status)

        try:
            return json.loads(body)
        except ValueError:
            logger.warning(f"Upstream returned non-JSON body ({len(body)} chars), keeping raw text")
            return {"raw_text": body, "parse_error": True}

    async def fetch_snapshot(self, force_fresh: bool = False) -> Any:
        """
        Return the raw leaderboard payload from the upstream API.

        A snapshot younger than the freshness window is reused unless
        ``force_fresh`` is set. Failed attempts are retried with exponential
        backoff. Once retries are exhausted the last good snapshot is returned.
        A non-JSON body is returned wrapped but is never kept as the last good
        snapshot.

        Raises:
            UpstreamUnavailable: every attempt failed and nothing was ever fetched
        """
        if not force_fresh:
            fresh = await self._fresh_snapshot()
            if fresh is not None:
                logger.debug("Serving upstream snapshot from freshness window")
                return fresh

        max_retries = self.settings.upstream_max_retries
        total_attempts = max_retries + 1
        last_error: Optional[UpstreamTransientError] = None

        try:
            for attempt in range(total_attempts):
                self.state = FetchState.FETCHING
                try:
                    payload = await self._request_once()
                except UpstreamTransientError as e:
                    last_error = e
                    self.last_error = str(e)
                    logger.warning(
                        f"Upstream fetch failed with {e.kind} error (attempt {attempt + 1}/{total_attempts}): {e}"
                    )
                    if attempt < max_retries:
                        delay = compute_backoff_delay(
                            attempt,
                            self.settings.upstream_backoff_base_seconds,
                            self.settings.upstream_backoff_cap_seconds,
                        )
                        self.state = FetchState.BACKOFF_WAIT
                        logger.info(f"Retrying upstream fetch in {delay:.2f}s")
                        await self._backoff_wait(delay)
                    continue

                # Raw-text wrappers are handed on but never become the known-good snapshot
                if not _is_raw_text(payload):
                    await self._store_snapshot(payload)
                self.state = FetchState.SUCCEEDED
                self.last_error = None
                if attempt > 0:
                    logger.info(f"Upstream fetch succeeded after {attempt + 1} attempts")
                return payload
        except asyncio.CancelledError:
            self.state = FetchState.IDLE
            raise

        self.state = FetchState.FAILED_EXHAUSTED
        async with self._snapshot_lock:
            fallback = self._last_good

        if fallback is not None:
            logger.error(f"Upstream fetch failed after {total_attempts} attempts, serving last known-good snapshot")
            return fallback

        logger.error(f"Upstream fetch failed after {total_attempts} attempts with no snapshot to fall back on")
        raise UpstreamUnavailable(f"upstream unavailable after {total_attempts} attempts: {last_error}")

    async def find_by_name(self, name: str) -> dict[str, Any]:
        """
        Look a username up in the latest snapshot, ignoring case.

        Returns:
            {"exists": bool, "external_id": str | None}
        """
        target = (name or "").strip().lower()
        if not target:
            return {"exists": False, "external_id": None}

        raw = await self.fetch_snapshot()
        for entity in extract_entities(raw):
            if entity.name.lower() == target:
                return {"exists": True, "external_id": entity.uid}
        return {"exists": False, "external_id": None}

    async def find_by_id(self, external_id: str) -> LeaderboardEntity | None:
        """Look an upstream uid up in the latest snapshot."""
        if not external_id:
            return None

        raw = await self.fetch_snapshot()
        for entity in extract_entities(raw):
            if entity.uid == external_id:
                return entity
        return None
