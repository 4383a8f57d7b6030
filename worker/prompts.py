"""
Prompt construction for the entity-extraction turn.
"""

import json
from string import Template

EXTRACTION_PROMPT = Template("""
You are an expert Information Extraction and Named Entity Recognition (NER) system. Your task is to analyze the provided JSON data, which represents a job posting, and extract three specific entities: the **Hiring Company Name(s)**, the **Specific Person Name(s)** associated with managing the job or communicating with freelancers, and the **Client Website URL**.

Constraints & Guidelines:
1. Scope: The entities can appear anywhere within the title, summary, freelancer_feedback or client_context fields.
2. Person Name Extraction: Focus on the names of individuals who appear to be the client, manager, or point of contact. Multiple names should be captured in the list.
3. Company Name Extraction: Focus on the actual Hiring Company/Client. Distinguish between the hiring company and any other organizations, tools, or platforms. If the company name is part of a team name (e.g., "PeopleMovers Team"), extract the company-specific part ("PeopleMovers").
4. Client Website Extraction: Extract a single, complete website URL mentioned by the client/company in the job post. If no website is explicitly mentioned, return an empty string for this field.
5. No Tool/Platform Names: Do not extract names of programming languages, databases, or non-hiring-client tools.
6. Confidence: Provide a numerical confidence score (0.0 to 1.0) for the extraction quality. A high confidence means the name is explicitly confirmed, typically within the feedback section.
7. Reasoning (CONCISE): Provide a brief, factual justification that only states the section and the text fragment where each entity was found.

DATA:
$data

Required Output Format (Strict JSON):
```json
{
  "personName": ["Name 1", "Name 2"],
  "companyName": "The Company Name",
  "clientWebsite": "http://example.com",
  "confidence": 0.0,
  "reasoning": "1. Person Name(s) found in [Section] as 'Text Fragment'. 2. Company Name found in [Section] as 'Text Fragment'. 3. Client Website found in [Section] as 'Text Fragment'."
}
```
""")


def task_view(payload: dict) -> dict:
    """The subset of a task payload the model gets to see."""
    if payload.get("job_url"):
        feedback = payload.get("feedback_received_From_Freelancer")
        return {
            "type": "Main Job Post",
            "title": payload.get("title"),
            "summary": payload.get("summary"),
            "freelancer_feedback": feedback if isinstance(feedback, list) else [],
            "client_context": payload.get("about_the_client") or {},
        }
    return {
        "type": "Past Job History",
        "title": payload.get("title"),
        "summary": payload.get("summary"),
    }


def build_prompt(payload: dict) -> str:
    return EXTRACTION_PROMPT.substitute(data=json.dumps(task_view(payload), ensure_ascii=False))
