"""
Base Source - Abstract interface for vulnerability data sources.

This module defines the vulnerability record every source returns, the
common interface for sources (remote NVD API, local NVD replica), and the
error taxonomy the retrying client understands.

Design Pattern: Strategy Pattern
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import structlog

if TYPE_CHECKING:
    from ..core.rate_limiter import SlidingWindowRateLimiter


DEFAULT_RETRY_AFTER_SECONDS = 30
WAIT_HINT_PATTERN = re.compile(r"wait (\d+) seconds", re.IGNORECASE)


class SeverityLevel(Enum):
    """Severity levels based on CVSS"""
    CRITICAL = "CRITICAL"  # 9.0-10.0
    HIGH = "HIGH"          # 7.0-8.9
    MEDIUM = "MEDIUM"      # 4.0-6.9
    LOW = "LOW"            # 0.1-3.9
    NONE = "NONE"          # 0.0

    @classmethod
    def from_label(cls, label: Optional[str]) -> "SeverityLevel":
        try:
            return cls((label or "").upper())
        except ValueError:
            return cls.NONE

    @classmethod
    def from_cvss_v2_score(cls, score: float) -> "SeverityLevel":
        if score >= 9.0:
            return cls.CRITICAL
        if score >= 7.0:
            return cls.HIGH
        if score >= 4.0:
            return cls.MEDIUM
        if score > 0:
            return cls.LOW
        return cls.NONE


@dataclass
class Vulnerability:
    """
    A known vulnerability (CVE) affecting a package.

    This is the core record that all sources return. It is stored in scan
    results and persisted with the task.
    """

    cve_id: str
    description: str = "No description available"
    severity: SeverityLevel = SeverityLevel.NONE
    cvss_score: float = 0.0
    cvss_vector: str = ""
    published_date: Optional[str] = None
    last_modified_date: Optional[str] = None
    references: List[str] = field(default_factory=list)
    affected_versions: List[str] = field(default_factory=list)
    fixed_version: Optional[str] = None

    @property
    def is_high_severity(self) -> bool:
        return self.severity in (SeverityLevel.CRITICAL, SeverityLevel.HIGH)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            "cve_id": self.cve_id,
            "description": self.description,
            "severity": self.severity.value,
            "cvss_score": self.cvss_score,
            "cvss_vector": self.cvss_vector,
            "published_date": self.published_date,
            "last_modified_date": self.last_modified_date,
            "references": list(self.references),
            "affected_versions": list(self.affected_versions),
            "fixed_version": self.fixed_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Vulnerability":
        return cls(
            cve_id=data["cve_id"],
            description=data.get("description") or "No description available",
            severity=SeverityLevel.from_label(data.get("severity")),
            cvss_score=float(data.get("cvss_score") or 0.0),
            cvss_vector=data.get("cvss_vector") or "",
            published_date=data.get("published_date"),
            last_modified_date=data.get("last_modified_date"),
            references=list(data.get("references") or []),
            affected_versions=list(data.get("affected_versions") or []),
            fixed_version=data.get("fixed_version"),
        )


class SourceError(Exception):
    """Base exception for vulnerability source errors"""
    pass


class PackageLookupError(SourceError):
    """A single package lookup failed"""
    pass


class QuotaExceededError(PackageLookupError):
    """
    Raised when the request quota is exhausted.

    Attributes:
        retry_after_seconds: Wait time reported by the limiter or server,
            or None when only a human-readable hint is available
    """

    def __init__(self, message: str, retry_after_seconds: Optional[float] = None):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds

    @classmethod
    def with_wait(cls, seconds: float) -> "QuotaExceededError":
        wait = max(1, int(seconds + 0.999))
        return cls(f"API request limit reached, please wait {wait} seconds before retrying", wait)

    def wait_seconds(self, default: float = DEFAULT_RETRY_AFTER_SECONDS) -> float:
        if self.retry_after_seconds is not None and self.retry_after_seconds > 0:
            return float(self.retry_after_seconds)
        return float(parse_wait_seconds(str(self), default=default))


class RemoteError(PackageLookupError):
    """
    Raised for network, timeout, and HTTP failures.

    Attributes:
        status: HTTP status code, if a response was received
        retryable: Whether repeating the same request may succeed
        reached_server: False when the request failed before being sent
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        retryable: bool = True,
        reached_server: bool = True,
    ):
        super().__init__(message)
        self.status = status
        self.retryable = retryable
        self.reached_server = reached_server


def parse_wait_seconds(message: str, default: int = DEFAULT_RETRY_AFTER_SECONDS) -> int:
    """Extract N from a "wait N seconds" hint, falling back to `default`."""
    match = WAIT_HINT_PATTERN.search(message or "")
    return int(match.group(1)) if match else default


class VulnerabilitySource(ABC):
    """
    Abstract base class for vulnerability data sources.

    Remote sources (NVD API) and local replicas both implement lookup().
    Local replicas report availability through is_ready() so callers can
    prefer them when the database has been synchronized.

    A lookup may cost more than one remote request. Sources that know their
    own request count set admits_own_requests and call admit_request()
    before every request against the limiter the client binds to them;
    for other sources the client charges one request per lookup.

    Example:
        >>> class NvdSource(VulnerabilitySource):
        ...     async def lookup(self, name, version):
        ...         return [vulnerability]
    """

    admits_own_requests = False

    def __init__(self, source_name: str):
        """
        Initialize the base source.

        Args:
            source_name: Name of the source (e.g., "nvd")
        """
        self.source_name = source_name
        self.rate_limiter: Optional["SlidingWindowRateLimiter"] = None
        self.logger = structlog.get_logger(__name__, source=self.source_name)

    @abstractmethod
    async def lookup(self, name: str, version: str) -> List[Vulnerability]:
        """
        Look up vulnerabilities affecting one package version.

        Args:
            name: Package name
            version: Package version

        Returns:
            List of vulnerabilities (empty if none found)

        Raises:
            QuotaExceededError: If the request quota is exhausted
            RemoteError: If the source could not be queried
        """
        pass

    def bind_rate_limiter(self, rate_limiter: "SlidingWindowRateLimiter") -> None:
        self.rate_limiter = rate_limiter

    def admit_request(self) -> None:
        """
        Take one request slot from the bound limiter.

        Raises:
            QuotaExceededError: If the window is full
        """
        if self.rate_limiter is None:
            return
        admission = self.rate_limiter.admit()
        if not admission.allowed:
            raise QuotaExceededError.with_wait(admission.retry_after)

    def retract_request(self) -> None:
        """Give back the slot of a request that never reached the server"""
        if self.rate_limiter is not None:
            self.rate_limiter.retract()

    async def is_ready(self) -> bool:
        """Whether the source can currently answer lookups"""
        return True

    async def close(self) -> None:
        """Release any held resources"""
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(source={self.source_name})"
