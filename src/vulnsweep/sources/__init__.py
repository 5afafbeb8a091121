"""
Vulnerability sources module.

This package contains the data sources a scan queries for known
vulnerabilities, plus the quota-aware client the scan loop talks to.

Available sources:
- NvdSource: NIST National Vulnerability Database REST API 2.0
"""

from .base_source import (
    VulnerabilitySource,
    Vulnerability,
    SeverityLevel,
    SourceError,
    PackageLookupError,
    QuotaExceededError,
    RemoteError,
)
from .cache import ResultCache
from .nvd_source import NvdSource
from .retrying_client import RetryingClient, RetryPolicy, LookupOutcome


__all__ = [
    # Base classes
    "VulnerabilitySource",
    "Vulnerability",
    "SeverityLevel",
    # Exceptions
    "SourceError",
    "PackageLookupError",
    "QuotaExceededError",
    "RemoteError",
    # Sources
    "NvdSource",
    "ResultCache",
    # Client
    "RetryingClient",
    "RetryPolicy",
    "LookupOutcome",
]
