"""
NVD Source - NIST National Vulnerability Database REST API 2.0 client.

Lookup strategy for a package:
1. Query the CPE API by keyword and keep CPE names relevant to the package
2. Query the CVE API by the first relevant CPE name
3. Fall back to a CVE keyword search when no CPE name matches

Reference: https://nvd.nist.gov/developers/vulnerabilities
"""

import asyncio
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import aiohttp
import structlog

from .base_source import (
    QuotaExceededError,
    RemoteError,
    SeverityLevel,
    Vulnerability,
    VulnerabilitySource,
)


NVD_CVE_API_URL = "https://services.nvd.nist.gov/rest/json/cves/2.0"
NVD_CPE_API_URL = "https://services.nvd.nist.gov/rest/json/cpes/2.0"

QUOTA_STATUS_CODES = (403, 429)


class NvdSource(VulnerabilitySource):
    """
    Remote vulnerability source backed by the NVD REST API.

    Example:
        >>> source = NvdSource(api_key=os.environ.get("NVD_API_KEY"))
        >>> await source.initialize()
        >>> vulns = await source.lookup("lodash", "4.17.15")
        >>> await source.close()
    """

    # A CPE-cache miss costs two requests (CPE search, then CVE query)
    admits_own_requests = True

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        cve_api_url: str = NVD_CVE_API_URL,
        cpe_api_url: str = NVD_CPE_API_URL,
        results_per_page: int = 2000,
        cpe_results_per_page: int = 50,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize the NVD source.

        Args:
            api_key: Optional NVD API key (raises the request quota)
            timeout: Total timeout per HTTP request (seconds)
            cve_api_url: CVE API endpoint
            cpe_api_url: CPE API endpoint
            results_per_page: Page size for CVE queries
            cpe_results_per_page: Page size for CPE queries
            session: Existing aiohttp session to reuse
        """
        super().__init__(source_name="nvd")
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.cve_api_url = cve_api_url
        self.cpe_api_url = cpe_api_url
        self.results_per_page = results_per_page
        self.cpe_results_per_page = cpe_results_per_page

        self._session = session
        self._owns_session = session is None
        self._cpe_cache: Dict[str, List[str]] = {}

        self.logger = structlog.get_logger(__name__)

    async def initialize(self) -> None:
        if self._session is None:
            headers = {"User-Agent": "VulnSweep/1.0"}
            if self.api_key:
                headers["apiKey"] = self.api_key
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=headers)
            self._owns_session = True

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None
        self._cpe_cache.clear()

    async def lookup(self, name: str, version: str) -> List[Vulnerability]:
        cpe_names = await self._search_cpe_names(name, version)

        if cpe_names:
            self.logger.debug("cpe_names_found", package=name, count=len(cpe_names))
            params = {"cpeName": cpe_names[0]}
        else:
            keyword = f"{name} {version}" if version else name
            self.logger.debug("cpe_not_found_using_keyword", package=name, keyword=keyword)
            params = {"keywordSearch": keyword}

        params["resultsPerPage"] = self.results_per_page
        response = await self._get_json(self.cve_api_url, params, no_rejected=True)
        vulnerabilities = transform_cve_response(response)

        self.logger.info(
            "nvd_lookup_complete",
            package=name,
            version=version,
            total_results=response.get("totalResults", len(vulnerabilities)),
            vulnerabilities=len(vulnerabilities),
        )
        return vulnerabilities

    async def _search_cpe_names(self, name: str, version: str) -> List[str]:
        cache_key = f"cpe_{name}_{version or 'all'}"
        if cache_key in self._cpe_cache:
            return self._cpe_cache[cache_key]

        keyword = f"{name} {version}" if version else name
        params = {"keywordSearch": keyword, "resultsPerPage": self.cpe_results_per_page}

        try:
            response = await self._get_json(self.cpe_api_url, params)
        except QuotaExceededError:
            raise
        except RemoteError as e:
            # A failed CPE query degrades to a keyword search
            self.logger.warning("cpe_query_failed", package=name, error=str(e))
            return []

        cpe_names = [
            product["cpe"]["cpeName"]
            for product in response.get("products", [])
            if product.get("cpe", {}).get("cpeName")
        ]
        relevant = [cpe for cpe in cpe_names if is_cpe_relevant(cpe, name)]

        self._cpe_cache[cache_key] = relevant
        return relevant

    async def _get_json(
        self,
        url: str,
        params: Dict[str, Any],
        no_rejected: bool = False,
    ) -> Dict[str, Any]:
        if self._session is None:
            await self.initialize()

        # noRejected is a bare flag without a value
        query = urlencode({k: str(v) for k, v in params.items()})
        request_url = f"{url}?{query}"
        if no_rejected:
            request_url += "&noRejected"

        self.admit_request()
        try:
            async with self._session.get(request_url) as response:
                if response.status in QUOTA_STATUS_CODES:
                    retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                    message = response.headers.get("message") or f"NVD rejected the request (HTTP {response.status})"
                    if retry_after is not None:
                        message = f"{message}, please wait {retry_after} seconds before retrying"
                    raise QuotaExceededError(message, retry_after)

                if response.status >= 400:
                    raise RemoteError(
                        f"NVD request failed with HTTP {response.status}",
                        status=response.status,
                        retryable=response.status >= 500,
                    )

                return await response.json(content_type=None)

        except aiohttp.ClientConnectorError as e:
            self.retract_request()
            raise RemoteError(f"Cannot connect to NVD: {e}", retryable=True, reached_server=False) from e
        except asyncio.TimeoutError as e:
            raise RemoteError("NVD request timed out", retryable=True) from e
        except aiohttp.ContentTypeError as e:
            raise RemoteError(f"Invalid NVD response: {e}", retryable=False) from e
        except aiohttp.ClientError as e:
            raise RemoteError(f"NVD request error: {e}", retryable=True) from e
        except ValueError as e:
            raise RemoteError(f"Invalid NVD response body: {e}", retryable=False) from e

    async def test_connection(self) -> bool:
        try:
            await self._get_json(
                self.cve_api_url,
                {"keywordSearch": "test", "resultsPerPage": 1},
                no_rejected=True,
            )
        except (QuotaExceededError, RemoteError):
            return False
        return True


def _parse_retry_after(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return max(1, int(float(value)))
    except ValueError:
        return None


def is_cpe_relevant(cpe_name: str, package_name: str) -> bool:
    """Whether a CPE name plausibly refers to the package"""
    cpe = cpe_name.lower()
    package = package_name.lower()

    parts = cpe.split(":")
    product = parts[4] if len(parts) > 4 else ""

    return (
        package in cpe
        or (bool(product) and product in package)
        or _fuzzy_match(cpe, package)
    )


def _fuzzy_match(cpe: str, package: str) -> bool:
    cpe_words = [w for w in re.split(r"[:\-_\s]", cpe) if w]
    package_words = [w for w in re.split(r"[\-_\s]", package) if w]
    return any(
        word in cpe_word or cpe_word in word
        for word in package_words
        for cpe_word in cpe_words
        if len(cpe_word) > 2
    )


def transform_cve_response(response: Dict[str, Any]) -> List[Vulnerability]:
    """Convert an NVD CVE API 2.0 response into Vulnerability records"""
    vulnerabilities = []

    for item in response.get("vulnerabilities", []):
        cve = item.get("cve", {})
        metrics = cve.get("metrics", {}) or {}

        score, severity, vector = 0.0, SeverityLevel.NONE, ""
        for key in ("cvssMetricV31", "cvssMetricV30"):
            if metrics.get(key):
                data = metrics[key][0]["cvssData"]
                score = float(data.get("baseScore", 0.0))
                severity = SeverityLevel.from_label(data.get("baseSeverity"))
                vector = data.get("vectorString", "")
                break
        else:
            if metrics.get("cvssMetricV2"):
                data = metrics["cvssMetricV2"][0]["cvssData"]
                score = float(data.get("baseScore", 0.0))
                severity = SeverityLevel.from_cvss_v2_score(score)
                vector = data.get("vectorString", "")

        descriptions = cve.get("descriptions", [])
        description = next(
            (d["value"] for d in descriptions if d.get("lang") == "en"),
            descriptions[0]["value"] if descriptions else "No description available",
        )

        affected, fixed = parse_version_info(cve.get("configurations", []))

        vulnerabilities.append(
            Vulnerability(
                cve_id=cve.get("id", "UNKNOWN"),
                description=description,
                severity=severity,
                cvss_score=score,
                cvss_vector=vector,
                published_date=cve.get("published"),
                last_modified_date=cve.get("lastModified"),
                references=[ref["url"] for ref in cve.get("references", []) if ref.get("url")],
                affected_versions=affected,
                fixed_version=fixed,
            )
        )

    return vulnerabilities


def parse_version_info(configurations: List[Dict[str, Any]]) -> Tuple[List[str], Optional[str]]:
    """
    Extract affected version ranges and the lowest fixed version.

    Returns:
        (affected version range strings, lowest fixed version or None)
    """
    affected: List[str] = []
    fixed_candidates: List[str] = []

    for config in configurations:
        for node in config.get("nodes", []):
            for match in node.get("cpeMatch", []):
                if not match.get("vulnerable"):
                    continue

                start_incl = match.get("versionStartIncluding")
                start_excl = match.get("versionStartExcluding")
                end_excl = match.get("versionEndExcluding")
                end_incl = match.get("versionEndIncluding")

                bounds = []
                if start_incl:
                    bounds.append(f">={start_incl}")
                elif start_excl:
                    bounds.append(f">{start_excl}")
                if end_excl:
                    bounds.append(f"<{end_excl}")
                elif end_incl:
                    bounds.append(f"<={end_incl}")

                version_range = " ".join(bounds)
                if version_range and version_range not in affected:
                    affected.append(version_range)

                if end_excl:
                    fixed_candidates.append(end_excl)
                elif end_incl:
                    next_version = next_patch_version(end_incl)
                    if next_version:
                        fixed_candidates.append(next_version)

    return affected, lowest_version(fixed_candidates)


def next_patch_version(version: str) -> Optional[str]:
    parts = version.split(".")
    try:
        if len(parts) >= 3:
            return f"{parts[0]}.{parts[1]}.{int(parts[2]) + 1}"
        if len(parts) == 2:
            return f"{parts[0]}.{parts[1]}.1"
        return f"{parts[0]}.0.1"
    except ValueError:
        return None


def _version_key(version: str) -> List[int]:
    key = []
    for part in version.split("."):
        match = re.match(r"\d+", part)
        key.append(int(match.group()) if match else 0)
    return key


def lowest_version(versions: List[str]) -> Optional[str]:
    unique = list(dict.fromkeys(versions))
    if not unique:
        return None

    def padded(version: str) -> List[int]:
        key = _version_key(version)
        width = max(len(_version_key(v)) for v in unique)
        return key + [0] * (width - len(key))

    return min(unique, key=padded)
