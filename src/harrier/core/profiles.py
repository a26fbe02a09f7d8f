from __future__ import annotations

import math
import re
from typing import Any
from urllib.parse import urlparse

from harrier.types import (
    CandidateIdentity,
    EducationEntry,
    ExperienceEntry,
    ParsedProfile,
    SearchFilters,
    SearchQuery,
)

RESULTS_PER_PAGE = 25

_YEARS_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(?:\+\s*)?(?:yrs?|years?)\b", re.IGNORECASE)
_MONTHS_RE = re.compile(r"(\d+)\s*(?:mos?|months?)\b", re.IGNORECASE)
_YEAR_RE = re.compile(r"\b(19\d{2}|20\d{2})\b")


def canonicalize_profile_url(url: str) -> str:
    """Natural key for a directory profile: host and path, lowercased, no query or trailing slash."""
    value = (url or "").strip()
    if not value:
        return ""
    if "://" not in value:
        value = f"https://{value}"
    parsed = urlparse(value)
    host = parsed.netloc.lower()
    if host.startswith("www."):
        host = host[4:]
    # Country subdomains (uk.linkedin.com) point at the same profile.
    if host.endswith(".linkedin.com"):
        host = "linkedin.com"
    path = parsed.path.rstrip("/").lower()
    return f"{host}{path}"


def build_search_queries(filters: SearchFilters, max_results: int) -> list[SearchQuery]:
    """Search strategies from most to least specific."""
    take_pages = max(1, math.ceil(max_results / RESULTS_PER_PAGE))
    queries = [
        SearchQuery(
            strategy="precise",
            search_query=filters.search_query,
            job_titles=filters.job_titles,
            locations=filters.locations,
            industry_ids=filters.industry_ids,
            max_items=max_results,
            take_pages=take_pages,
        ),
        SearchQuery(
            strategy="broad",
            search_query=filters.search_query,
            job_titles=filters.job_titles[:3],
            locations=filters.locations,
            max_items=max_results,
            take_pages=take_pages,
        ),
    ]
    if filters.nice_to_have_skills:
        queries.append(
            SearchQuery(
                strategy="alternative",
                search_query=" AND ".join(filters.nice_to_have_skills[:3]),
                job_titles=filters.job_titles,
                locations=filters.locations,
                max_items=max_results,
                take_pages=take_pages,
            )
        )
    return queries


def merge_identities(
    found: list[CandidateIdentity], incoming: list[CandidateIdentity], limit: int
) -> list[CandidateIdentity]:
    """Append identities whose canonical URL is new, up to ``limit``."""
    seen = {canonicalize_profile_url(item.profile_url) for item in found}
    merged = list(found)
    for identity in incoming:
        if len(merged) >= limit:
            break
        key = canonicalize_profile_url(identity.profile_url)
        if not key or key in seen:
            continue
        seen.add(key)
        merged.append(identity)
    return merged


def raw_profile_keys(raw: dict[str, Any]) -> set[str]:
    """Canonical URLs an enrichment record can be matched back to its request by."""
    keys = set()
    for field in ("linkedinUrl", "linkedinPublicUrl", "profileUrl", "url", "inputUrl"):
        value = raw.get(field)
        if isinstance(value, str) and value.strip():
            keys.add(canonicalize_profile_url(value))
    return keys


def _first(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, "", [], {}):
            return value
    return None


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, dict):
        return str(value.get("linkedinText") or value.get("name") or value.get("text") or "").strip()
    return str(value).strip()


def extract_skills(raw_skills: Any) -> list[str]:
    if not isinstance(raw_skills, list):
        return []
    skills: list[str] = []
    seen: set[str] = set()
    for item in raw_skills:
        name = _text(item.get("title") or item.get("name")) if isinstance(item, dict) else _text(item)
        if name and name.lower() not in seen:
            seen.add(name.lower())
            skills.append(name)
    return skills


def _experience_entries(raw: dict[str, Any]) -> list[ExperienceEntry]:
    entries: list[ExperienceEntry] = []
    for item in raw.get("experiences") or raw.get("experience") or []:
        if not isinstance(item, dict):
            continue
        start = _text(item.get("jobStartedOn") or item.get("startDate"))
        end = _text(item.get("jobEndedOn") or item.get("endDate")) or "Present"
        duration = _text(item.get("duration") or item.get("currentJobDuration"))
        if not duration and start:
            duration = f"{start} - {end}"
        entries.append(
            ExperienceEntry(
                title=_text(item.get("title") or item.get("jobTitle") or item.get("position")),
                company=_text(item.get("companyName") or item.get("company")),
                duration=duration,
                description=_text(item.get("jobDescription") or item.get("description")),
                location=_text(item.get("jobLocation") or item.get("location")),
            )
        )
    return entries


def _education_entries(raw: dict[str, Any]) -> list[EducationEntry]:
    entries: list[EducationEntry] = []
    for item in raw.get("educations") or raw.get("education") or []:
        if not isinstance(item, dict):
            continue
        entries.append(
            EducationEntry(
                degree=_text(item.get("degree") or item.get("degreeName") or item.get("subtitle")),
                school=_text(item.get("school") or item.get("schoolName") or item.get("title")),
                year=_text(item.get("year") or item.get("endDate")),
            )
        )
    return entries


def duration_years(duration: str, *, current_year: int | None = None) -> float:
    """Years covered by a duration label such as ``3 yrs 2 mos`` or ``2019 - Present``."""
    if not duration:
        return 0.0
    years = sum(float(match) for match in _YEARS_RE.findall(duration))
    months = sum(int(match) for match in _MONTHS_RE.findall(duration))
    if years or months:
        return years + months / 12

    found = [int(year) for year in _YEAR_RE.findall(duration)]
    if not found:
        return 0.0
    if len(found) == 1:
        if "present" not in duration.lower() or current_year is None:
            return 0.0
        found.append(current_year)
    return float(max(0, found[-1] - found[0]))


def estimate_experience_years(experience: list[ExperienceEntry], *, current_year: int | None = None) -> int | None:
    if not experience:
        return None
    total = sum(duration_years(entry.duration, current_year=current_year) for entry in experience)
    return int(total)


def clean_profile(raw: dict[str, Any], *, fallback: CandidateIdentity | None = None, current_year: int | None = None) -> ParsedProfile:
    """Map a raw enrichment record onto the candidate shape."""
    experience = _experience_entries(raw)
    fallback = fallback or CandidateIdentity(profile_url="")
    return ParsedProfile(
        full_name=_text(_first(raw, "fullName", "name"))
        or " ".join(part for part in (_text(raw.get("firstName")), _text(raw.get("lastName"))) if part)
        or fallback.full_name,
        headline=_text(raw.get("headline")) or fallback.headline,
        location=_text(_first(raw, "location", "addressWithCountry", "jobLocation")) or fallback.location,
        profile_url=_text(_first(raw, "linkedinUrl", "linkedinPublicUrl", "profileUrl", "url"))
        or fallback.profile_url,
        photo_url=_text(_first(raw, "photoUrl", "profilePic", "photo")),
        current_position=_text(_first(raw, "jobTitle", "position", "currentPosition")),
        current_company=_text(_first(raw, "companyName", "company", "currentCompany")),
        experience_years=estimate_experience_years(experience, current_year=current_year),
        skills=extract_skills(raw.get("skills")),
        experience=experience,
        education=_education_entries(raw),
        email=_text(raw.get("email")),
        phone=_text(_first(raw, "mobileNumber", "phone", "phoneNumber")),
    )


def is_valid_profile(profile: ParsedProfile) -> bool:
    return bool(
        profile.full_name
        and profile.profile_url
        and (profile.headline or profile.current_position or profile.experience)
    )
