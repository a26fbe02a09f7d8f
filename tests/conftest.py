from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any

_TEST_DATA_DIR = Path(tempfile.mkdtemp(prefix="harrier-tests-"))
os.environ["APP_ENV"] = "test"
os.environ["DATA_DIR"] = str(_TEST_DATA_DIR)
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DATA_DIR / 'harrier-test.db'}"
os.environ["APIFY_API_TOKEN"] = ""
os.environ["OPENAI_API_KEY"] = ""
os.environ["RESUME_ON_STARTUP"] = "false"

import pytest  # noqa: E402

from harrier.core.profiles import canonicalize_profile_url  # noqa: E402
from harrier.db.base import Base  # noqa: E402
from harrier.db.session import engine  # noqa: E402
from harrier.errors import RateLimitError  # noqa: E402
from harrier.llm.heuristics import heuristic_score, heuristic_search_filters  # noqa: E402
from harrier.types import CandidateIdentity, JobRequirements, SourcingJobCreate  # noqa: E402


@pytest.fixture(autouse=True)
def reset_db() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


class FakeSupervisor:
    """Records submissions instead of running them on a thread pool."""

    def __init__(self) -> None:
        self.submitted: list[int] = []
        self.running: set[int] = set()
        self.accepting = True

    def submit(self, job_id: int) -> bool:
        self.submitted.append(job_id)
        return self.accepting

    def is_running(self, job_id: int) -> bool:
        return job_id in self.running

    def wait(self, job_id: int, timeout: float | None = None) -> None:
        return None


class FakeDirectory:
    """In-memory directory: ``count`` identities, optional URL aliases and a scripted enrich rate limit."""

    def __init__(
        self,
        count: int = 50,
        *,
        aliases: dict[int, int] | None = None,
        rate_limit_on_call: int | None = None,
    ):
        self.identities = [
            CandidateIdentity(
                profile_url=f"https://www.linkedin.com/in/person-{index}",
                full_name=f"Person {index}",
                headline="Backend Engineer",
                location="Berlin",
            )
            for index in range(count)
        ]
        self.aliases = aliases or {}
        self.rate_limit_on_call = rate_limit_on_call
        self.discover_calls = 0
        self.enrich_calls: list[list[str]] = []

    def discover_candidates(self, filters, max_results: int) -> list[CandidateIdentity]:
        self.discover_calls += 1
        return self.identities[:max_results]

    def enrich_profiles(self, identities: list[CandidateIdentity]) -> list[dict[str, Any]]:
        self.enrich_calls.append([identity.profile_url for identity in identities])
        if self.rate_limit_on_call is not None and len(self.enrich_calls) == self.rate_limit_on_call:
            raise RateLimitError.after("enrich quota exhausted", limit_type="directory_enrich", seconds=60)

        raws = []
        for identity in identities:
            index = int(identity.profile_url.rsplit("-", 1)[-1])
            linkedin_url = identity.profile_url
            if index in self.aliases:
                linkedin_url = f"https://uk.linkedin.com/in/person-{self.aliases[index]}/"
            raws.append(
                {
                    "inputUrl": identity.profile_url,
                    "linkedinUrl": linkedin_url,
                    "fullName": identity.full_name,
                    "headline": "Senior Backend Engineer at Example",
                    "jobTitle": "Senior Backend Engineer",
                    "companyName": "Example GmbH",
                    "addressWithCountry": "Berlin, Germany",
                    "skills": [{"title": "Python"}, {"title": "PostgreSQL"}, {"title": "Docker"}],
                    "experiences": [
                        {"title": "Backend Engineer", "companyName": "Example GmbH", "duration": "4 yrs 6 mos"},
                        {"title": "Developer", "companyName": "Startup", "duration": "2 yrs"},
                    ],
                }
            )
        return raws

    def key(self, index: int) -> str:
        return canonicalize_profile_url(self.identities[index].profile_url)


class FakeFormatter:
    def __init__(self) -> None:
        self.calls = 0

    def format_requirements(self, *, title: str, description: str, requirements: JobRequirements):
        self.calls += 1
        return heuristic_search_filters(title=title, requirements=requirements)


class FakeScorer:
    def __init__(self, *, rate_limit_after: int | None = None) -> None:
        self.scored: list[str] = []
        self.rate_limit_after = rate_limit_after

    def score_profile(self, profile, filters, requirements):
        if self.rate_limit_after is not None and len(self.scored) >= self.rate_limit_after:
            raise RateLimitError.after("llm quota exhausted", limit_type="llm", seconds=30)
        self.scored.append(profile.profile_url)
        return heuristic_score(profile, filters, requirements)


def make_job_payload(**overrides: Any) -> SourcingJobCreate:
    data: dict[str, Any] = {
        "title": "Senior Backend Engineer",
        "job_description": (
            "We are hiring a senior backend engineer to build and operate Python services "
            "on PostgreSQL for our logistics platform."
        ),
        "max_candidates": 50,
        "job_requirements": {
            "required_skills": "Python, PostgreSQL",
            "nice_to_have": "Docker, Kubernetes",
            "years_of_experience": "5+ years",
            "location": "Berlin",
            "industry": "Software",
        },
    }
    data.update(overrides)
    return SourcingJobCreate.model_validate(data)


@pytest.fixture
def fake_supervisor() -> FakeSupervisor:
    return FakeSupervisor()
