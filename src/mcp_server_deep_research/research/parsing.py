"""Tolerant parsing of generated text.

Each parser is a pure function returning a ``ParseResult`` instead of raising, so
callers compose fallback tiers explicitly:

    draft = report_draft_from_json(text)
    if not draft.ok:
        draft = parse_markdown_report(text)
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)
_CITATION_RE = re.compile(r"\[(\d+)\]")


@dataclass(frozen=True)
class ParseResult(Generic[T]):
    """Tagged outcome of a parse: either a value or an error description."""

    value: T | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "ParseResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: str) -> "ParseResult[T]":
        return cls(error=error)


def strip_code_fences(text: str) -> str:
    """Return the body of the first fenced code block, or the text unchanged."""
    match = _FENCE_RE.search(text)
    return match.group(1).strip() if match else text.strip()


def _outermost(text: str, open_char: str, close_char: str) -> str | None:
    start = text.find(open_char)
    end = text.rfind(close_char)
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]


def parse_json_object(text: str) -> ParseResult[dict[str, Any]]:
    """Extract the outermost JSON object from generated text."""
    if not text or not text.strip():
        return ParseResult.failure("empty response")

    candidate = _outermost(strip_code_fences(text), "{", "}")
    if candidate is None:
        return ParseResult.failure("no JSON object found")

    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        return ParseResult.failure(f"invalid JSON: {e}")

    if not isinstance(data, dict):
        return ParseResult.failure("JSON value is not an object")
    return ParseResult.success(data)


def parse_json_array(text: str) -> ParseResult[list[Any]]:
    """Extract the outermost JSON array from generated text."""
    if not text or not text.strip():
        return ParseResult.failure("empty response")

    candidate = _outermost(strip_code_fences(text), "[", "]")
    if candidate is None:
        return ParseResult.failure("no JSON array found")

    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        return ParseResult.failure(f"invalid JSON: {e}")

    if not isinstance(data, list):
        return ParseResult.failure("JSON value is not an array")
    return ParseResult.success(data)


def as_str_list(value: Any) -> list[str]:
    """Coerce a generated field into a list of non-empty strings."""
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


def citation_numbers(text: str) -> list[int]:
    """Citation markers like ``[3]`` found in text, in order of first use."""
    seen: list[int] = []
    for match in _CITATION_RE.finditer(text):
        number = int(match.group(1))
        if number not in seen:
            seen.append(number)
    return seen


# --- Report drafts ---


@dataclass
class DraftSection:
    title: str
    content: str
    citations: list[str] = field(default_factory=list)


@dataclass
class ReportDraft:
    """Narrative part of a report as produced by the generator, before bookkeeping."""

    title: str | None = None
    summary: str | None = None
    sections: list[DraftSection] = field(default_factory=list)
    limitations: list[str] = field(default_factory=list)
    conclusion: str | None = None


def report_draft_from_json(text: str) -> ParseResult[ReportDraft]:
    """Strict tier: a JSON object with a summary or at least one section."""
    parsed = parse_json_object(text)
    if not parsed.ok:
        return ParseResult.failure(parsed.error or "invalid JSON")

    data = parsed.value or {}
    sections: list[DraftSection] = []
    raw_sections = data.get("sections")
    if isinstance(raw_sections, list):
        for raw in raw_sections:
            if not isinstance(raw, dict):
                continue
            title = str(raw.get("title") or "").strip()
            content = str(raw.get("content") or "").strip()
            if not title and not content:
                continue
            sections.append(
                DraftSection(
                    title=title or "Untitled section",
                    content=content,
                    citations=[str(c) for c in raw.get("citations") or [] if c is not None]
                    if isinstance(raw.get("citations"), list)
                    else [],
                )
            )

    summary = data.get("summary")
    summary = str(summary).strip() if summary else None
    if not sections and not summary:
        return ParseResult.failure("report JSON has neither sections nor summary")

    title = data.get("title")
    conclusion = data.get("conclusion")
    return ParseResult.success(
        ReportDraft(
            title=str(title).strip() if title else None,
            summary=summary,
            sections=sections,
            limitations=as_str_list(data.get("limitations")),
            conclusion=str(conclusion).strip() if conclusion else None,
        )
    )


def parse_markdown_report(text: str) -> ParseResult[ReportDraft]:
    """Structural tier: H1 is the title, each H2 opens a section.

    Text between the title and the first section becomes the summary.
    """
    if not text or not text.strip():
        return ParseResult.failure("empty response")

    title: str | None = None
    summary_lines: list[str] = []
    sections: list[DraftSection] = []
    current: DraftSection | None = None

    for line in text.splitlines():
        if line.startswith("# ") and title is None and current is None:
            title = line[2:].strip()
            continue
        if line.startswith("## "):
            if current is not None:
                sections.append(current)
            current = DraftSection(title=line[3:].strip(), content="")
            continue
        if current is not None:
            current.content += line + "\n"
        elif line.strip():
            summary_lines.append(line.strip())

    if current is not None:
        sections.append(current)

    if not sections:
        return ParseResult.failure("no markdown sections found")

    for section in sections:
        section.content = section.content.strip()
        section.citations = [str(n) for n in citation_numbers(section.content)]

    return ParseResult.success(
        ReportDraft(
            title=title,
            summary=" ".join(summary_lines) or None,
            sections=sections,
        )
    )
