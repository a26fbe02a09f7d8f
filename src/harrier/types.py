from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

SearchStrategy = Literal["precise", "broad", "alternative"]
SeniorityLevel = Literal["Entry", "Mid", "Senior", "Lead", "Executive"]


def split_skills(value: str) -> list[str]:
    return [item.strip() for item in value.replace(";", ",").split(",") if item.strip()]


class JobRequirements(BaseModel):
    required_skills: str = Field(min_length=3, max_length=1000)
    nice_to_have: str = Field(default="", max_length=1000)
    years_of_experience: str = ""
    location: str = Field(default="", max_length=200)
    industry: str = ""
    education_level: str = ""
    company_type: str = ""

    @property
    def required_skill_list(self) -> list[str]:
        return split_skills(self.required_skills)

    @property
    def nice_to_have_list(self) -> list[str]:
        return split_skills(self.nice_to_have)


class SourcingJobCreate(BaseModel):
    title: str = Field(min_length=3, max_length=200)
    job_description: str = Field(min_length=50, max_length=5000)
    max_candidates: int = Field(default=50, ge=10, le=100)
    job_requirements: JobRequirements
    owner_id: str = "local"

    @field_validator("title", "job_description")
    @classmethod
    def strip_text(cls, value: str) -> str:
        return value.strip()


class SearchFilters(BaseModel):
    search_query: str = ""
    job_titles: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    industry_ids: list[int] = Field(default_factory=list)
    required_skills: list[str] = Field(default_factory=list)
    nice_to_have_skills: list[str] = Field(default_factory=list)
    years_of_experience: int | None = None
    seniority: str = ""


class SearchQuery(BaseModel):
    strategy: SearchStrategy
    search_query: str = ""
    job_titles: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    industry_ids: list[int] = Field(default_factory=list)
    max_items: int = 50
    take_pages: int = 2


class CandidateIdentity(BaseModel):
    profile_url: str
    full_name: str = ""
    headline: str = ""
    location: str = ""


class ExperienceEntry(BaseModel):
    title: str = ""
    company: str = ""
    duration: str = ""
    description: str = ""
    location: str = ""


class EducationEntry(BaseModel):
    degree: str = ""
    school: str = ""
    year: str = ""


class ParsedProfile(BaseModel):
    full_name: str = ""
    headline: str = ""
    location: str = ""
    profile_url: str = ""
    photo_url: str = ""
    current_position: str = ""
    current_company: str = ""
    experience_years: int | None = None
    skills: list[str] = Field(default_factory=list)
    experience: list[ExperienceEntry] = Field(default_factory=list)
    education: list[EducationEntry] = Field(default_factory=list)
    email: str = ""
    phone: str = ""

    @property
    def has_contact_info(self) -> bool:
        return bool(self.email or self.phone)


class ProfileScore(BaseModel):
    skills_score: float = Field(ge=0, le=30)
    experience_score: float = Field(ge=0, le=25)
    industry_score: float = Field(ge=0, le=20)
    title_score: float = Field(ge=0, le=15)
    nice_to_have_score: float = Field(ge=0, le=10)
    total_score: float = Field(default=0.0, ge=0, le=100)
    reasoning: str = ""
    matched_skills: list[str] = Field(default_factory=list)
    missing_skills: list[str] = Field(default_factory=list)
    bonus_skills: list[str] = Field(default_factory=list)
    relevant_years: float | None = None
    seniority_level: SeniorityLevel = "Mid"
    industry_match: str | None = None

    @model_validator(mode="after")
    def total_is_sum_of_parts(self) -> ProfileScore:
        self.total_score = round(
            self.skills_score
            + self.experience_score
            + self.industry_score
            + self.title_score
            + self.nice_to_have_score,
            2,
        )
        return self


class ModelResponse(BaseModel):
    content: str
    raw: dict[str, Any] = Field(default_factory=dict)
