"""Header-driven rate limiting shared by every API call of a migration run.

The API reports remaining capacity per route through response headers. The
governor keeps one state record per route category, spaces requests out
before capacity runs dry, and backs off when a request is rejected with 429.
"""

import asyncio
import math
import random
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx
import structlog

from ld_migrate.exceptions import ProjectConflictError

logger = structlog.get_logger(__name__)

# Below this many remaining requests, start spreading requests until reset
PROACTIVE_THRESHOLD = 3

# Minimum delay between requests even when not rate limited (seconds)
MIN_REQUEST_SPACING = 0.05

# Upper bound of the random jitter added to computed waits (seconds)
MAX_JITTER = 0.1

# Floor for the wait after a 429 (seconds)
MIN_REJECTION_WAIT = 1.0

Transport = Callable[[httpx.Request], Awaitable[httpx.Response]]


@dataclass(slots=True)
class RateLimitState:
    """Last known capacity of one route category.

    ``None`` means the API has not reported that value yet.
    """

    global_remaining: int | None = None
    route_remaining: int | None = None
    reset_time: float | None = None  # epoch seconds
    last_updated: float = 0.0

    @property
    def remaining(self) -> int | None:
        """Tightest of the known remaining counters."""
        known = [
            value
            for value in (self.global_remaining, self.route_remaining)
            if value is not None
        ]
        return min(known) if known else None


def _parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(float(value.strip()))
    except ValueError:
        return None


class RateGovernor:
    """Tracks per-route capacity and decides how long to wait before each request.

    Provides:
    - Proactive spacing computed from rate-limit response headers
    - Backoff and resubmission on 429 responses
    - Fatal handling of project key collisions

    Clock, sleep and jitter are injectable so the backoff math can be tested
    without real delays.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[], float] | None = None,
        proactive_threshold: int = PROACTIVE_THRESHOLD,
        min_spacing: float = MIN_REQUEST_SPACING,
    ) -> None:
        """Initialize the governor.

        Args:
            clock: Returns the current epoch time in seconds.
            sleep: Awaitable sleep used for every wait.
            jitter: Returns a random extra wait in seconds (default 0-100 ms).
            proactive_threshold: Remaining-request count that triggers spreading.
            min_spacing: Minimum wait before every request, in seconds.
        """
        self._clock = clock
        self._sleep = sleep
        self._jitter = jitter or (lambda: random.uniform(0.0, MAX_JITTER))
        self.proactive_threshold = proactive_threshold
        self.min_spacing = min_spacing
        self._states: dict[str, RateLimitState] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.rejections = 0

    def _lock_for(self, route: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(route)
            if lock is None:
                lock = self._locks[route] = threading.Lock()
            return lock

    def get_state(self, route: str) -> RateLimitState | None:
        """Return a copy of the current state for a route, if any."""
        with self._lock_for(route):
            state = self._states.get(route)
            if state is None:
                return None
            return RateLimitState(
                state.global_remaining,
                state.route_remaining,
                state.reset_time,
                state.last_updated,
            )

    def schedule(self, route: str) -> float:
        """Compute the delay before the next request on a route.

        Args:
            route: Route category (e.g. "flags", "segments").

        Returns:
            Seconds to wait before sending.
        """
        with self._lock_for(route):
            state = self._states.get(route)
            if state is None:
                return self.min_spacing

            remaining = state.remaining
            if remaining is None or remaining > self.proactive_threshold:
                return self.min_spacing

            now = self._clock()
            if state.reset_time is None or state.reset_time <= now:
                return self.min_spacing

            time_until_reset = state.reset_time - now
            if remaining > 0:
                # Spread the remaining requests across the window, in whole ms
                per_request = math.ceil(time_until_reset * 1000 / remaining) / 1000
            else:
                per_request = time_until_reset
            return max(per_request + self._jitter(), self.min_spacing)

    def observe(self, route: str, response: httpx.Response) -> None:
        """Merge rate-limit headers from a response into the route's state.

        Only headers that are present are merged; a response without
        rate-limit headers leaves the previous state untouched.

        Args:
            route: Route category the request belonged to.
            response: Response to read headers from.
        """
        headers = response.headers
        global_remaining = _parse_int(headers.get("x-ratelimit-global-remaining"))
        route_remaining = _parse_int(
            headers.get("x-ratelimit-route-remaining")
            or headers.get("x-ratelimit-remaining")
        )
        reset_ms = _parse_int(headers.get("x-ratelimit-reset"))
        retry_after = _parse_int(headers.get("retry-after"))

        if (
            global_remaining is None
            and route_remaining is None
            and reset_ms is None
            and retry_after is None
        ):
            return

        now = self._clock()
        with self._lock_for(route):
            state = self._states.setdefault(route, RateLimitState())
            if global_remaining is not None:
                state.global_remaining = global_remaining
            if route_remaining is not None:
                state.route_remaining = route_remaining
            if reset_ms is not None:
                state.reset_time = reset_ms / 1000
            elif retry_after is not None:
                state.reset_time = now + retry_after
            state.last_updated = now

    def schedule_after_rejection(self, response: httpx.Response) -> float:
        """Compute the wait after a 429 response.

        The wait is the longest of the retry-after header, the time until the
        reported reset, and one second, plus jitter.

        Args:
            response: The 429 response.

        Returns:
            Seconds to wait before resubmitting.
        """
        now = self._clock()
        retry_after = _parse_int(response.headers.get("retry-after"))
        reset_ms = _parse_int(response.headers.get("x-ratelimit-reset"))

        retry_wait = float(retry_after) if retry_after is not None else 0.0
        reset_wait = (reset_ms / 1000 - now) if reset_ms is not None else 0.0
        return max(retry_wait, reset_wait, MIN_REJECTION_WAIT) + self._jitter()

    async def dispatch(
        self,
        route: str,
        request: httpx.Request,
        transport: Transport,
    ) -> httpx.Response:
        """Send a request through the governor.

        Waits the proactive delay, sends, records the headers, and on 429
        sleeps and resubmits the same request. Retries on 429 are not capped:
        a migration that waits out a long rate-limit window is preferred over
        one that gives up half way.

        Args:
            route: Route category of the request.
            request: Fully built request; it is resent unchanged on 429.
            transport: Coroutine function that performs the HTTP exchange.

        Returns:
            The first non-429 response.

        Raises:
            ProjectConflictError: If creating a project returns 409.
        """
        route_logger = logger.bind(route=route)

        while True:
            delay = self.schedule(route)
            if delay > self.min_spacing:
                route_logger.debug(
                    "Proactive rate limit wait", delay_ms=round(delay * 1000)
                )
            await self._sleep(delay)

            response = await transport(request)
            self.observe(route, response)

            if (
                response.status_code == 409
                and route == "projects"
                and request.method == "POST"
            ):
                route_logger.error("Destination project already exists")
                raise ProjectConflictError(response_text=response.text)

            if response.status_code != 429:
                return response

            self.rejections += 1
            wait = self.schedule_after_rejection(response)
            route_logger.warning(
                "Rate limited, waiting before retry",
                url=str(request.url),
                wait_ms=round(wait * 1000),
            )
            await self._sleep(wait)
