from __future__ import annotations

import logging
from typing import Any

import requests

from harrier.config import Settings
from harrier.core.profiles import build_search_queries, merge_identities
from harrier.errors import ExternalServiceError, RateLimitError, RateLimitType, parse_retry_after
from harrier.types import CandidateIdentity, SearchFilters, SearchQuery

logger = logging.getLogger(__name__)


def map_search_item(item: dict[str, Any]) -> CandidateIdentity | None:
    profile_url = item.get("linkedinUrl") or item.get("profileUrl")
    if not profile_url and item.get("publicIdentifier"):
        profile_url = f"https://www.linkedin.com/in/{item['publicIdentifier']}"
    if not profile_url:
        return None

    location = item.get("location")
    if isinstance(location, dict):
        location = location.get("linkedinText") or ""
    name = item.get("fullName") or " ".join(
        part for part in (item.get("firstName") or "", item.get("lastName") or "") if part
    )
    return CandidateIdentity(
        profile_url=str(profile_url),
        full_name=str(name or "").strip(),
        headline=str(item.get("headline") or ""),
        location=str(location or ""),
    )


class ApifyDirectory:
    """Candidate directory backed by two Apify actors: a cheap search and a detail scraper."""

    def __init__(self, settings: Settings, http: requests.Session | None = None):
        self.settings = settings
        self.http = http or requests.Session()

    def discover_candidates(self, filters: SearchFilters, max_results: int) -> list[CandidateIdentity]:
        found: list[CandidateIdentity] = []
        last_error: ExternalServiceError | None = None
        for query in build_search_queries(filters, max_results):
            try:
                results = self.search_profiles(query)
            except ExternalServiceError as exc:
                logger.warning("Search strategy %s failed: %s", query.strategy, exc)
                last_error = exc
                continue

            before = len(found)
            found = merge_identities(found, results, max_results)
            logger.info(
                "Search strategy %s returned %s profiles, %s new", query.strategy, len(results), len(found) - before
            )
            if len(found) >= max_results:
                break

        if not found and last_error is not None:
            raise last_error
        return found

    def search_profiles(self, query: SearchQuery) -> list[CandidateIdentity]:
        payload: dict[str, Any] = {
            "profileScraperMode": "Short",
            "maxItems": query.max_items,
            "takePages": query.take_pages,
        }
        if query.search_query:
            payload["searchQuery"] = query.search_query
        if query.job_titles:
            payload["currentJobTitles"] = query.job_titles
        if query.locations:
            payload["locations"] = query.locations
        if query.industry_ids:
            payload["industryIds"] = query.industry_ids

        items = self._run_actor(self.settings.apify_search_actor, payload, limit_type="directory_search")
        identities = [identity for identity in (map_search_item(item) for item in items) if identity is not None]
        return identities[: query.max_items]

    def enrich_profiles(self, identities: list[CandidateIdentity]) -> list[dict[str, Any]]:
        if not identities:
            return []
        payload = {"profileUrls": [identity.profile_url for identity in identities]}
        items = self._run_actor(self.settings.apify_scrape_actor, payload, limit_type="directory_enrich")
        succeeded = [item for item in items if item.get("succeeded", True) is not False]
        logger.info("Enriched %s/%s profiles", len(succeeded), len(identities))
        return succeeded

    def _run_actor(self, actor: str, payload: dict[str, Any], *, limit_type: RateLimitType) -> list[dict[str, Any]]:
        if not self.settings.apify_api_token:
            raise ExternalServiceError("APIFY_API_TOKEN is not configured", service="apify")

        url = f"{self.settings.apify_base_url.rstrip('/')}/acts/{actor}/run-sync-get-dataset-items"
        timeout = self.settings.apify_timeout_sec
        try:
            response = self.http.post(
                url,
                params={"token": self.settings.apify_api_token, "timeout": timeout},
                json=payload,
                timeout=timeout + 30,
            )
        except requests.Timeout as exc:
            raise ExternalServiceError(f"actor {actor} timed out", service="apify") from exc
        except requests.RequestException as exc:
            raise ExternalServiceError(f"actor {actor} request failed: {exc}", service="apify") from exc

        if response.status_code == 429:
            seconds = parse_retry_after(
                response.headers.get("Retry-After"),
                default_seconds=self.settings.rate_limit_default_reset_sec,
            )
            raise RateLimitError.after(f"actor {actor} rate limited", limit_type=limit_type, seconds=seconds)
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"actor {actor} returned HTTP {response.status_code}",
                service="apify",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ExternalServiceError(f"actor {actor} returned invalid JSON", service="apify") from exc
        if not isinstance(data, list):
            raise ExternalServiceError(f"actor {actor} returned an unexpected payload", service="apify")
        return [item for item in data if isinstance(item, dict)]
