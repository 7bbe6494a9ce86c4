from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable

from streamjob.pipeline.stream_tags import split_final_json_block

FENCED_JSON_RE = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
FENCED_BLOCK_RE = re.compile(r"```\s*([\s\S]*?)```")

CandidateStrategy = Callable[[str], str | None]

_NOT_PARSED = object()


@dataclass(frozen=True, slots=True)
class ExtractionResult:
    display_text: str
    json_text: str | None
    parsed_json: Any | None
    candidate: str | None


def _final_json_block(text: str) -> str | None:
    return split_final_json_block(text).json_text or None


def _fenced_json_block(text: str) -> str | None:
    return _first_group(FENCED_JSON_RE, text)


def _fenced_block(text: str) -> str | None:
    return _first_group(FENCED_BLOCK_RE, text)


def _full_text(text: str) -> str | None:
    return text


# Priority order; the first candidate that parses wins, even to null.
CANDIDATE_STRATEGIES: tuple[tuple[str, CandidateStrategy], ...] = (
    ("final_json_block", _final_json_block),
    ("fenced_json", _fenced_json_block),
    ("fenced_block", _fenced_block),
    ("full_text", _full_text),
)


def collect_candidates(full_text: str | None) -> list[tuple[str, str]]:
    text = (full_text or "").strip()
    candidates: list[tuple[str, str]] = []
    seen: set[str] = set()

    for name, strategy in CANDIDATE_STRATEGIES:
        candidate = strategy(text)
        if candidate is None or candidate in seen:
            continue
        seen.add(candidate)
        candidates.append((name, candidate))

    return candidates


def parse_json_from_response(full_text: str | None) -> ExtractionResult:
    text = (full_text or "").strip()
    split = split_final_json_block(text)

    for name, candidate in collect_candidates(text):
        parsed = _try_parse(candidate)
        if parsed is not _NOT_PARSED:
            return ExtractionResult(
                display_text=split.display_text,
                json_text=split.json_text,
                parsed_json=parsed,
                candidate=name,
            )

    return ExtractionResult(
        display_text=split.display_text,
        json_text=split.json_text,
        parsed_json=None,
        candidate=None,
    )


def _try_parse(candidate: str) -> Any:
    """Return the decoded value, or ``_NOT_PARSED``. JSON ``null`` decodes to None."""
    if not candidate:
        return _NOT_PARSED
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        return _NOT_PARSED


def _first_group(pattern: re.Pattern[str], text: str) -> str | None:
    match = pattern.search(text)
    if match is None:
        return None
    value = match.group(1).strip()
    return value or None
