"""
Retrying Client - Quota-aware, retrying package lookups.

Wraps a remote vulnerability source with:
1. Optional local replica (no quota cost) with fallback to the remote source
2. Result cache (no quota cost on hit)
3. Sliding-window admission before each remote HTTP request
4. Bounded retries with server/limiter-reported backoff

The client never decides whether a task fails: after the retry budget is
spent it raises the last lookup error and the orchestrator records an empty
result for that package.
"""

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional

import structlog

from ..core.rate_limiter import SlidingWindowRateLimiter
from .base_source import (
    DEFAULT_RETRY_AFTER_SECONDS,
    PackageLookupError,
    QuotaExceededError,
    RemoteError,
    SourceError,
    Vulnerability,
    VulnerabilitySource,
)
from .cache import ResultCache

if TYPE_CHECKING:
    from ..core.cancellation import CancellationToken
    from ..core.task import PackageRef


WaitCallback = Callable[[float], Awaitable[None]]


@dataclass
class RetryPolicy:
    """Retry configuration for package lookups"""
    max_attempts: int = 3                                      # Attempts per package, first try included
    default_retry_after: float = DEFAULT_RETRY_AFTER_SECONDS   # Used when no wait hint can be parsed
    error_backoff_seconds: float = 5.0                         # Wait before retrying a transient remote error
    cache_ttl_seconds: float = 24 * 60 * 60


@dataclass
class LookupOutcome:
    """Result of one package lookup"""
    vulnerabilities: List[Vulnerability] = field(default_factory=list)
    source: str = "remote"  # 'remote', 'cache', 'local'
    attempts: int = 0

    @property
    def used_quota(self) -> bool:
        return self.source == "remote"


class RetryingClient:
    """
    Looks up one package at a time, spending remote quota only when needed.

    Example:
        >>> client = RetryingClient(remote=NvdSource(), rate_limiter=limiter)
        >>> outcome = await client.lookup(package, token=token)
        >>> print(len(outcome.vulnerabilities), outcome.source)
    """

    def __init__(
        self,
        remote: VulnerabilitySource,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        cache: Optional[ResultCache] = None,
        local: Optional[VulnerabilitySource] = None,
        policy: Optional[RetryPolicy] = None,
    ):
        """
        Initialize the retrying client.

        Args:
            remote: Remote source queried on cache miss
            rate_limiter: Admission control for remote requests
            cache: Result cache (a fresh one is created if None)
            local: Optional local replica preferred when ready
            policy: Retry configuration (uses defaults if None)
        """
        self.remote = remote
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.cache = cache if cache is not None else ResultCache()
        self.local = local
        self.policy = policy or RetryPolicy()

        if self.remote.admits_own_requests:
            self.remote.bind_rate_limiter(self.rate_limiter)

        # Statistics
        self.remote_lookups = 0
        self.failed_lookups = 0

        self.logger = structlog.get_logger(__name__)

    async def lookup(
        self,
        package: "PackageRef",
        token: Optional["CancellationToken"] = None,
        on_wait: Optional[WaitCallback] = None,
    ) -> LookupOutcome:
        """
        Look up vulnerabilities for a package.

        Args:
            package: Package to look up
            token: Cancellation token checked before each attempt and sleep
            on_wait: Awaited with the wait in seconds before each backoff

        Returns:
            LookupOutcome with the vulnerabilities and where they came from

        Raises:
            QuotaExceededError: Quota still exhausted after the last attempt
            RemoteError: Non-retryable failure, or retries exhausted
            ScanCancelledError: The token was cancelled
        """
        local_result = await self._lookup_local(package)
        if local_result is not None:
            return LookupOutcome(vulnerabilities=local_result, source="local")

        cache_key = ResultCache.create_vulnerability_key(package.name, package.version)
        cached = self.cache.get(cache_key)
        if cached is not None:
            self.logger.debug("cache_hit", package=package.key, count=len(cached))
            return LookupOutcome(vulnerabilities=list(cached), source="cache")

        attempt = 0
        while True:
            attempt += 1
            if token is not None:
                token.raise_if_cancelled()

            try:
                vulnerabilities = await self._attempt(package)

            except QuotaExceededError as e:
                error: PackageLookupError = e
                wait = e.wait_seconds(default=self.policy.default_retry_after)

            except RemoteError as e:
                if not e.retryable:
                    self.failed_lookups += 1
                    self.logger.warning(
                        "lookup_failed",
                        package=package.key,
                        status=e.status,
                        error=str(e),
                    )
                    raise
                error = e
                wait = self.policy.error_backoff_seconds

            else:
                self.remote_lookups += 1
                self.cache.set(cache_key, list(vulnerabilities), ttl=self.policy.cache_ttl_seconds)
                self.logger.info(
                    "lookup_complete",
                    package=package.key,
                    vulnerabilities=len(vulnerabilities),
                    attempts=attempt,
                )
                return LookupOutcome(vulnerabilities=vulnerabilities, source="remote", attempts=attempt)

            if attempt >= self.policy.max_attempts:
                self.failed_lookups += 1
                self.logger.warning(
                    "lookup_retries_exhausted",
                    package=package.key,
                    attempts=attempt,
                    error=str(error),
                )
                raise error

            self.logger.warning(
                "lookup_retry_scheduled",
                package=package.key,
                attempt=attempt,
                wait=f"{wait:.0f}s",
                error=str(error),
            )

            if on_wait is not None:
                await on_wait(wait)

            if token is not None:
                if await token.sleep(wait):
                    token.raise_if_cancelled()
            else:
                await asyncio.sleep(wait)

    async def _attempt(self, package: "PackageRef") -> List[Vulnerability]:
        # Self-admitting sources charge the limiter once per HTTP request
        charged = not self.remote.admits_own_requests
        if charged:
            admission = self.rate_limiter.admit()
            if not admission.allowed:
                raise QuotaExceededError.with_wait(admission.retry_after)

        try:
            return await self.remote.lookup(package.name, package.version)
        except RemoteError as e:
            if charged and not e.reached_server:
                self.rate_limiter.retract()
            raise
        except SourceError:
            raise
        except Exception as e:
            raise RemoteError(f"{type(e).__name__}: {e}", retryable=False) from e

    async def _lookup_local(self, package: "PackageRef") -> Optional[List[Vulnerability]]:
        if self.local is None:
            return None

        try:
            if not await self.local.is_ready():
                return None
            results = await self.local.lookup(package.name, package.version)
        except Exception as e:
            self.logger.warning(
                "local_lookup_failed_falling_back",
                package=package.key,
                error=str(e),
            )
            return None

        self.logger.debug("local_lookup_complete", package=package.key, count=len(results))
        return results

    def get_statistics(self) -> dict:
        return {
            "remote_lookups": self.remote_lookups,
            "failed_lookups": self.failed_lookups,
            "cache": self.cache.get_stats(),
            "rate_limit": self.rate_limiter.get_stats(),
        }
