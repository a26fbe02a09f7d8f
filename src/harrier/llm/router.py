from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import ValidationError

from harrier.config import Settings, get_settings
from harrier.errors import RateLimitError
from harrier.llm.heuristics import heuristic_score, heuristic_search_filters, parse_years
from harrier.llm.prompts import FORMAT_REQUIREMENTS_PROMPT, SCORE_PROFILE_PROMPT
from harrier.llm.providers import LLMProvider, ProviderPool
from harrier.types import JobRequirements, ParsedProfile, ProfileScore, SearchFilters

logger = logging.getLogger(__name__)

_SUBSCORE_LIMITS = {
    "skills_score": 30.0,
    "experience_score": 25.0,
    "industry_score": 20.0,
    "title_score": 15.0,
    "nice_to_have_score": 10.0,
}


class LLMRouter:
    """Requirement formatter and profile scorer over OpenAI-compatible providers.

    Provider rate limits propagate as ``RateLimitError`` so the job pauses;
    any other provider problem falls back to the deterministic heuristics.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.pool = ProviderPool(self.settings)

    def format_requirements(self, *, title: str, description: str, requirements: JobRequirements) -> SearchFilters:
        prompt = FORMAT_REQUIREMENTS_PROMPT.format(
            title=title,
            description=description[:20000],
            required_skills=requirements.required_skills or "Not specified",
            nice_to_have=requirements.nice_to_have or "Not specified",
            years_of_experience=requirements.years_of_experience or "Not specified",
            location=requirements.location or "Not specified",
            industry=requirements.industry or "Not specified",
            education_level=requirements.education_level or "Not specified",
        )
        fallback = heuristic_search_filters(title=title, requirements=requirements)

        data = self._call_json(task="format", prompt=prompt, model=self.settings.openai_model_formatter)
        if not data:
            return fallback

        try:
            filters = SearchFilters.model_validate(data)
        except ValidationError:
            logger.warning("Invalid search filter output; falling back to heuristic")
            return fallback

        # Skill lists and experience come from the intake form, never from the model.
        return filters.model_copy(
            update={
                "search_query": filters.search_query or fallback.search_query,
                "job_titles": filters.job_titles or fallback.job_titles,
                "locations": filters.locations or fallback.locations,
                "required_skills": requirements.required_skill_list,
                "nice_to_have_skills": requirements.nice_to_have_list,
                "years_of_experience": parse_years(requirements.years_of_experience),
                "seniority": filters.seniority or fallback.seniority,
            }
        )

    def score_profile(
        self, profile: ParsedProfile, filters: SearchFilters, requirements: JobRequirements
    ) -> ProfileScore:
        prompt = SCORE_PROFILE_PROMPT.format(
            filters_json=filters.model_dump_json(indent=2),
            requirements_json=requirements.model_dump_json(indent=2),
            profile_json=json.dumps(profile.model_dump(), ensure_ascii=True, default=str)[:20000],
        )
        data = self._call_json(task="score", prompt=prompt, model=self.settings.openai_model_scorer)
        if not data:
            return heuristic_score(profile, filters, requirements)

        try:
            return ProfileScore.model_validate(clamp_subscores(data))
        except ValidationError:
            logger.warning("Invalid score output for %s; falling back to heuristic", profile.profile_url)
            return heuristic_score(profile, filters, requirements)

    def _provider_for(self, task: str) -> tuple[LLMProvider, LLMProvider]:
        provider_name = {
            "format": self.settings.llm_router_format_provider,
            "score": self.settings.llm_router_score_provider,
        }.get(task, self.settings.llm_router_default)

        if provider_name == "local":
            return self.pool.local(), self.pool.openai()
        return self.pool.openai(), self.pool.local()

    def _call_json(self, *, task: str, prompt: str, model: str) -> dict[str, Any]:
        primary, fallback = self._provider_for(task)
        rate_limited: RateLimitError | None = None

        for provider in [primary, fallback]:
            if not self.pool.is_enabled(provider):
                continue
            provider_model = self.settings.local_llm_model if provider.config.name == "local" else model
            try:
                return provider.complete_json(model=provider_model, prompt=prompt)
            except RateLimitError as exc:
                logger.warning("LLM provider rate limited provider=%s reset_at=%s", provider.config.name, exc.reset_at)
                rate_limited = exc
            except Exception as exc:
                logger.warning("LLM JSON call failed provider=%s error=%s", provider.config.name, exc)

        if rate_limited is not None:
            raise rate_limited
        return {}


def clamp_subscores(data: dict[str, Any]) -> dict[str, Any]:
    """Pull numeric sub-scores into their rubric range; models occasionally overshoot."""
    cleaned = dict(data)
    for key, limit in _SUBSCORE_LIMITS.items():
        try:
            value = float(cleaned.get(key, 0) or 0)
        except (TypeError, ValueError):
            value = 0.0
        cleaned[key] = max(0.0, min(limit, value))
    cleaned.pop("total_score", None)
    if cleaned.get("seniority_level") not in {"Entry", "Mid", "Senior", "Lead", "Executive"}:
        cleaned.pop("seniority_level", None)
    return cleaned
