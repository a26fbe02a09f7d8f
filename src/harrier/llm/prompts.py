from __future__ import annotations

FORMAT_REQUIREMENTS_PROMPT = """
You are turning a job description into filters for a professional-profile search.
Return strict JSON with keys:
- search_query: string, the 2-3 most critical required skills joined with " AND "
- job_titles: string[], 3-5 exact job titles as they appear on profiles
- locations: string[], metro-area names (e.g. "San Francisco Bay Area")
- industry_ids: number[], directory industry ids
  (Software Development=4, Internet=6, IT Services=96, Financial Services=43,
  Healthcare=14, Consulting=11)
- seniority: one of [Entry, Mid, Senior, Lead, Executive]

Do not over-filter. Candidates are scored later, so cast a wide net.

Job title: {title}
Job description:
{description}

Requirements:
- Required skills: {required_skills}
- Nice to have: {nice_to_have}
- Years of experience: {years_of_experience}
- Location: {location}
- Industry: {industry}
- Education: {education_level}
""".strip()

SCORE_PROFILE_PROMPT = """
You are an expert recruiter scoring one candidate against a job. Use this rubric:

1. skills_score (0-30): share of required skills the candidate has.
2. experience_score (0-25): how close relevant experience is to the requirement.
3. industry_score (0-20): same, adjacent or unrelated industry.
4. title_score (0-15): how well the current title matches the target seniority.
5. nice_to_have_score (0-10): nice-to-have skills present.

Return strict JSON with keys:
- skills_score, experience_score, industry_score, title_score, nice_to_have_score: numbers
- reasoning: string, 2-3 sentences
- matched_skills: string[], required skills the candidate has
- missing_skills: string[], required skills the candidate lacks
- bonus_skills: string[], nice-to-have skills the candidate has
- relevant_years: number
- seniority_level: one of [Entry, Mid, Senior, Lead, Executive]
- industry_match: string

Be strict and objective.

Search filters JSON:
{filters_json}

Requirements JSON:
{requirements_json}

Candidate JSON:
{profile_json}
""".strip()
