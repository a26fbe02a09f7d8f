from harrier.core.profiles import (
    build_search_queries,
    canonicalize_profile_url,
    clean_profile,
    duration_years,
    is_valid_profile,
    merge_identities,
)
from harrier.types import CandidateIdentity, SearchFilters


def test_canonical_url_ignores_scheme_subdomain_case_and_trailing_slash() -> None:
    expected = "linkedin.com/in/jane-doe"
    assert canonicalize_profile_url("https://www.linkedin.com/in/Jane-Doe/") == expected
    assert canonicalize_profile_url("http://uk.linkedin.com/in/jane-doe?trk=abc") == expected
    assert canonicalize_profile_url("linkedin.com/in/jane-doe") == expected
    assert canonicalize_profile_url("") == ""


def test_search_queries_go_from_precise_to_alternative() -> None:
    filters = SearchFilters(
        search_query="Python AND PostgreSQL",
        job_titles=["Backend Engineer", "Software Engineer", "Python Developer", "API Engineer"],
        locations=["Berlin"],
        industry_ids=[4],
        nice_to_have_skills=["Docker", "Kubernetes", "Terraform", "Go"],
    )

    queries = build_search_queries(filters, max_results=60)

    assert [query.strategy for query in queries] == ["precise", "broad", "alternative"]
    assert queries[0].industry_ids == [4]
    assert queries[0].take_pages == 3
    assert queries[1].industry_ids == []
    assert len(queries[1].job_titles) == 3
    assert queries[2].search_query == "Docker AND Kubernetes AND Terraform"


def test_query_size_comes_from_the_candidate_limit() -> None:
    filters = SearchFilters.model_validate({"search_query": "Python", "max_items": 5, "take_pages": 9})

    queries = build_search_queries(filters, max_results=30)

    assert {(query.max_items, query.take_pages) for query in queries} == {(30, 2)}
    assert "max_items" not in filters.model_dump()
    assert "take_pages" not in filters.model_dump()


def test_alternative_strategy_needs_nice_to_have_skills() -> None:
    queries = build_search_queries(SearchFilters(search_query="Python"), max_results=10)
    assert [query.strategy for query in queries] == ["precise", "broad"]


def test_merge_identities_skips_known_urls_and_respects_limit() -> None:
    found = [CandidateIdentity(profile_url="https://www.linkedin.com/in/a")]
    incoming = [
        CandidateIdentity(profile_url="https://linkedin.com/in/A/"),
        CandidateIdentity(profile_url="https://linkedin.com/in/b"),
        CandidateIdentity(profile_url=""),
        CandidateIdentity(profile_url="https://linkedin.com/in/c"),
    ]

    merged = merge_identities(found, incoming, limit=2)

    assert [item.profile_url for item in merged] == [
        "https://www.linkedin.com/in/a",
        "https://linkedin.com/in/b",
    ]


def test_duration_years_reads_labels_and_ranges() -> None:
    assert duration_years("3 yrs 6 mos") == 3.5
    assert duration_years("1 year") == 1.0
    assert duration_years("2016 - 2020") == 4.0
    assert duration_years("2019 - Present", current_year=2025) == 6.0
    assert duration_years("") == 0.0


def test_clean_profile_maps_scraper_fields() -> None:
    raw = {
        "firstName": "Jane",
        "lastName": "Doe",
        "headline": "Staff Engineer",
        "linkedinUrl": "https://www.linkedin.com/in/jane-doe",
        "addressWithCountry": "Lisbon, Portugal",
        "jobTitle": "Staff Engineer",
        "companyName": "Acme",
        "email": "jane@example.com",
        "skills": [{"title": "Python"}, "python", {"name": "Rust"}],
        "experiences": [
            {"title": "Staff Engineer", "companyName": "Acme", "duration": "3 yrs"},
            {"title": "Engineer", "companyName": "Beta", "jobStartedOn": "2015", "jobEndedOn": "2019"},
        ],
        "educations": [{"schoolName": "TU Lisbon", "degreeName": "MSc"}],
    }

    profile = clean_profile(raw)

    assert profile.full_name == "Jane Doe"
    assert profile.location == "Lisbon, Portugal"
    assert profile.skills == ["Python", "Rust"]
    assert profile.experience_years == 7
    assert profile.education[0].school == "TU Lisbon"
    assert profile.has_contact_info is True
    assert is_valid_profile(profile)


def test_clean_profile_falls_back_to_search_identity() -> None:
    identity = CandidateIdentity(
        profile_url="https://www.linkedin.com/in/sam",
        full_name="Sam Roe",
        headline="Data Engineer",
        location="Oslo",
    )

    profile = clean_profile({}, fallback=identity)

    assert profile.full_name == "Sam Roe"
    assert profile.profile_url == identity.profile_url
    assert profile.experience_years is None
    assert is_valid_profile(profile)


def test_profile_without_name_is_invalid() -> None:
    assert not is_valid_profile(clean_profile({"headline": "Engineer", "linkedinUrl": "https://linkedin.com/in/x"}))
