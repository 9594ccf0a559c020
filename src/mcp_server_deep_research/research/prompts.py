"""LLM prompts for deep research."""

PLANNER_SYSTEM_PROMPT = """You are a research planning assistant. Your task is to break a research question into a structured research plan.

Rules:
- Refine the question so it is clear and specific
- Produce 3-5 sub-questions that together answer the question
- Give each sub-question a priority from 1 to 5 (5 is most important)
- Give each sub-question 2-3 focused search queries
- Choose a research depth: shallow, medium or deep

Output format: Return ONLY a JSON object, nothing else.
Example:
{
  "refinedQuestion": "clearer, more specific question",
  "goal": "short description of the expected outcome",
  "reasoning": "why the question is split this way",
  "subQuestions": [
    {"question": "sub-question 1", "priority": 5, "searchQueries": ["query 1", "query 2"]},
    {"question": "sub-question 2", "priority": 4, "searchQueries": ["query 1", "query 2"]}
  ],
  "depth": "medium"
}"""

_LANGUAGE_HINTS = {
    "zh": "Prefer Chinese search queries and Chinese-language sources.",
    "en": "Prefer English search queries and English-language sources.",
    "auto": "Choose the search language that best fits the question.",
}


def get_planning_prompt(
    question: str,
    page_title: str | None = None,
    page_url: str | None = None,
    language: str = "auto",
) -> str:
    """Generate the planning prompt for question decomposition."""
    prompt = f"## Research question\n{question}\n\n"

    if page_title or page_url:
        prompt += "## Context\n"
        if page_title:
            prompt += f"- Current page title: {page_title}\n"
        if page_url:
            prompt += f"- Current page URL: {page_url}\n"
        prompt += "\n"

    prompt += f"## Language preference\n{_LANGUAGE_HINTS.get(language, _LANGUAGE_HINTS['auto'])}\n\n"
    prompt += "## Requirements\n- 3-5 sub-questions\n- 2-3 search queries per sub-question\n- Output JSON only\n"
    return prompt


ANALYZE_SYSTEM_PROMPT = """You are an information extraction expert. Extract the key facts from a web page that help answer a research question.

Rules:
- Keep extracted statements faithful to the source text
- Rate relevance to the research question from 0 to 1
- Rate credibility of the statement from 0 to 1
- Ignore ads, navigation and other boilerplate
- If the page is unrelated to the question, return an empty chunks array

Output format: Return ONLY a JSON object, nothing else.
Example:
{"chunks": [{"content": "extracted fact", "relevance": 0.9, "credibility": 0.8}], "pageSummary": "short summary"}"""


def get_analyze_prompt(question: str, sub_question: str, title: str, url: str, content: str) -> str:
    """Generate the extraction prompt for one page."""
    return f"""## Research question
{question}

## Sub-question
{sub_question}

## Web page
Title: {title}
URL: {url}
Content:
{content}

Extract the relevant information as JSON."""


EVALUATE_SYSTEM_PROMPT = """You are a research progress evaluator. Judge whether the information collected so far is enough to answer the research question.

Rules:
- Score information coverage from 0 to 100
- Decide whether the research is complete
- List the information gaps that remain
- Suggest up to 5 follow-up search queries
- Recommend one of: continue, complete, pivot

Output format: Return ONLY a JSON object, nothing else.
Example:
{
  "coverageScore": 75,
  "isComplete": false,
  "gaps": ["missing aspect"],
  "nextSearches": ["follow-up query"],
  "keyFindings": ["important finding"],
  "recommendation": "continue",
  "reasoning": "why"
}"""


def get_evaluate_prompt(question: str, goal: str, sub_questions_text: str, collected_text: str) -> str:
    """Generate the evaluation prompt from a sub-question status summary and chunk excerpts."""
    return f"""## Research question
{question}

## Research goal
{goal}

## Sub-questions and status
{sub_questions_text}

## Collected information
{collected_text}

Evaluate the research progress as JSON."""


REPORT_SYSTEM_PROMPT = """You are a professional research analyst. Write a well-structured research report from the collected information.

Guidelines:
- Be objective, accurate and analytical
- Include a summary, main findings, detailed analysis and a conclusion
- Cite sources for every claim using markers like [1], [2] that match the numbered sources
- State the limitations and uncertainties of the information
- Use markdown formatting inside section content

Output format: Return ONLY a JSON object, nothing else.
Example:
{
  "title": "report title",
  "summary": "200-300 word summary",
  "sections": [{"title": "section title", "content": "markdown content with [1] citations", "citations": [1, 2]}],
  "limitations": ["limitation"],
  "conclusion": "final conclusion"
}"""


def get_report_prompt(question: str, goal: str, information: str) -> str:
    """Generate the report prompt from source-grouped information."""
    return f"""## Research question
{question}

## Research goal
{goal}

## Collected information (grouped by source)
{information}

Write the research report as JSON. Make sure citation markers match the source numbers."""
