"""Deterministic stand-ins for the LLM formatter and scorer.

Used when no provider is configured or a provider returns something unusable,
so a job can always finish.
"""

from __future__ import annotations

import re

from harrier.types import JobRequirements, ParsedProfile, ProfileScore, SearchFilters, SeniorityLevel

_NUMBER_RE = re.compile(r"\d+")

_INDUSTRY_IDS = {
    "software": 4,
    "saas": 4,
    "tech": 4,
    "internet": 6,
    "e-commerce": 6,
    "ecommerce": 6,
    "it services": 96,
    "consulting": 11,
    "fintech": 43,
    "finance": 43,
    "banking": 43,
    "healthcare": 14,
    "biotech": 14,
}

_SENIORITY_WORDS: list[tuple[str, SeniorityLevel]] = [
    ("chief", "Executive"),
    ("vp", "Executive"),
    ("director", "Executive"),
    ("head of", "Lead"),
    ("principal", "Lead"),
    ("lead", "Lead"),
    ("staff", "Lead"),
    ("manager", "Lead"),
    ("senior", "Senior"),
    ("sr", "Senior"),
    ("junior", "Entry"),
    ("intern", "Entry"),
    ("graduate", "Entry"),
]


def parse_years(value: str) -> int | None:
    match = _NUMBER_RE.search(value or "")
    return int(match.group()) if match else None


def seniority_for_years(years: float | None) -> SeniorityLevel:
    if years is None:
        return "Mid"
    if years < 2:
        return "Entry"
    if years < 5:
        return "Mid"
    if years < 9:
        return "Senior"
    return "Lead"


def seniority_from_title(title: str) -> SeniorityLevel | None:
    words = f" {title.lower()} "
    for keyword, level in _SENIORITY_WORDS:
        if f" {keyword} " in words or f" {keyword}." in words:
            return level
    return None


def heuristic_search_filters(*, title: str, requirements: JobRequirements) -> SearchFilters:
    required = requirements.required_skill_list
    years = parse_years(requirements.years_of_experience)
    industry = requirements.industry.lower()
    industry_ids = sorted({industry_id for name, industry_id in _INDUSTRY_IDS.items() if name in industry})
    return SearchFilters(
        search_query=" AND ".join(required[:3]),
        job_titles=[title],
        locations=[requirements.location] if requirements.location else [],
        industry_ids=industry_ids,
        required_skills=required,
        nice_to_have_skills=requirements.nice_to_have_list,
        years_of_experience=years,
        seniority=seniority_from_title(title) or seniority_for_years(years),
    )


def _skill_matches(wanted: list[str], have: set[str], text: str) -> list[str]:
    return [skill for skill in wanted if skill.lower() in have or skill.lower() in text]


def heuristic_score(profile: ParsedProfile, filters: SearchFilters, requirements: JobRequirements) -> ProfileScore:
    required = filters.required_skills or requirements.required_skill_list
    nice = filters.nice_to_have_skills or requirements.nice_to_have_list
    have = {skill.lower() for skill in profile.skills}
    text = " ".join(
        [profile.headline, profile.current_position]
        + [f"{entry.title} {entry.description}" for entry in profile.experience]
    ).lower()

    matched = _skill_matches(required, have, text)
    missing = [skill for skill in required if skill not in matched]
    bonus = _skill_matches(nice, have, text)

    skills_score = 30.0 * len(matched) / len(required) if required else 15.0
    nice_score = 10.0 * len(bonus) / len(nice) if nice else 0.0

    wanted_years = filters.years_of_experience
    years = profile.experience_years
    if wanted_years is None or years is None:
        experience_score = 12.5
    else:
        gap = abs(years - wanted_years)
        experience_score = max(0.0, 25.0 - 5.0 * max(0, gap - 1))

    industry_terms = [term.lower() for term in requirements.industry.replace("/", ",").split(",") if term.strip()]
    industry_hit = next((term.strip() for term in industry_terms if term.strip() in text), "")
    industry_score = 20.0 if industry_hit else (10.0 if not industry_terms else 5.0)

    title_text = f"{profile.current_position} {profile.headline}".lower()
    title_hit = any(title.lower() in title_text for title in filters.job_titles if title)
    title_score = 15.0 if title_hit else 5.0

    seniority = seniority_from_title(profile.current_position or profile.headline) or seniority_for_years(years)
    return ProfileScore(
        skills_score=round(skills_score, 2),
        experience_score=round(experience_score, 2),
        industry_score=industry_score,
        title_score=title_score,
        nice_to_have_score=round(nice_score, 2),
        reasoning=(
            f"Matched {len(matched)} of {len(required)} required skills"
            f" and {len(bonus)} of {len(nice)} nice-to-have skills."
        ),
        matched_skills=matched,
        missing_skills=missing,
        bonus_skills=bonus,
        relevant_years=float(years) if years is not None else None,
        seniority_level=seniority,
        industry_match=industry_hit or None,
    )
