import pytest

from harrier.config import Settings
from harrier.errors import RateLimitError
from harrier.llm.router import LLMRouter, clamp_subscores
from harrier.types import JobRequirements, ParsedProfile, SearchFilters

REQUIREMENTS = JobRequirements(
    required_skills="Python, PostgreSQL, Kafka",
    nice_to_have="Docker",
    years_of_experience="5+ years",
    location="Berlin",
    industry="Fintech",
)


def _profile() -> ParsedProfile:
    return ParsedProfile.model_validate(
        {
            "full_name": "Ada Example",
            "headline": "Senior Backend Engineer in fintech",
            "profile_url": "https://www.linkedin.com/in/ada",
            "current_position": "Senior Backend Engineer",
            "experience_years": 6,
            "skills": ["Python", "PostgreSQL", "Docker"],
        }
    )


def test_format_requirements_falls_back_to_heuristic_without_providers() -> None:
    router = LLMRouter(settings=Settings(openai_api_key="", local_llm_enabled=False))

    filters = router.format_requirements(
        title="Senior Backend Engineer",
        description="Build payment services.",
        requirements=REQUIREMENTS,
    )

    assert filters.job_titles == ["Senior Backend Engineer"]
    assert filters.required_skills == ["Python", "PostgreSQL", "Kafka"]
    assert filters.years_of_experience == 5
    assert 43 in filters.industry_ids
    assert filters.seniority == "Senior"


def test_model_output_keeps_intake_skills(monkeypatch) -> None:
    router = LLMRouter(settings=Settings(openai_api_key="sk-test", local_llm_enabled=False))
    monkeypatch.setattr(
        router,
        "_call_json",
        lambda **kwargs: {
            "search_query": "Python AND Kafka",
            "job_titles": ["Backend Engineer", "Platform Engineer"],
            "required_skills": ["Java"],
        },
    )

    filters = router.format_requirements(title="Backend", description="", requirements=REQUIREMENTS)

    assert filters.search_query == "Python AND Kafka"
    assert filters.job_titles == ["Backend Engineer", "Platform Engineer"]
    assert filters.required_skills == ["Python", "PostgreSQL", "Kafka"]
    assert filters.locations == ["Berlin"]


def test_heuristic_score_stays_inside_rubric() -> None:
    router = LLMRouter(settings=Settings(openai_api_key="", local_llm_enabled=False))
    filters = SearchFilters(
        job_titles=["Senior Backend Engineer"],
        required_skills=REQUIREMENTS.required_skill_list,
        nice_to_have_skills=["Docker"],
        years_of_experience=5,
    )

    score = router.score_profile(_profile(), filters, REQUIREMENTS)

    assert score.matched_skills == ["Python", "PostgreSQL"]
    assert score.missing_skills == ["Kafka"]
    assert score.bonus_skills == ["Docker"]
    assert score.title_score == 15.0
    assert score.industry_score == 20.0
    assert 0 <= score.total_score <= 100
    assert score.total_score == pytest.approx(
        score.skills_score + score.experience_score + score.industry_score + score.title_score + score.nice_to_have_score
    )


def test_provider_rate_limit_is_raised_not_swallowed(monkeypatch) -> None:
    router = LLMRouter(settings=Settings(openai_api_key="sk-test", local_llm_enabled=False))
    provider = router.pool.openai()

    def limited(**kwargs):
        raise RateLimitError.after("quota", limit_type="llm", seconds=30)

    monkeypatch.setattr(provider, "complete_json", limited)

    with pytest.raises(RateLimitError):
        router.score_profile(_profile(), SearchFilters(), REQUIREMENTS)


def test_other_provider_failure_falls_back_to_heuristic(monkeypatch) -> None:
    router = LLMRouter(settings=Settings(openai_api_key="sk-test", local_llm_enabled=False))

    def broken(**kwargs):
        raise ConnectionError("boom")

    monkeypatch.setattr(router.pool.openai(), "complete_json", broken)

    score = router.score_profile(_profile(), SearchFilters(required_skills=["Python"]), REQUIREMENTS)
    assert score.matched_skills == ["Python"]


def test_clamp_subscores_limits_each_part() -> None:
    cleaned = clamp_subscores(
        {"skills_score": 45, "experience_score": -3, "industry_score": "12", "total_score": 300, "seniority_level": "Guru"}
    )
    assert cleaned["skills_score"] == 30.0
    assert cleaned["experience_score"] == 0.0
    assert cleaned["industry_score"] == 12.0
    assert cleaned["title_score"] == 0.0
    assert "total_score" not in cleaned
    assert "seniority_level" not in cleaned
