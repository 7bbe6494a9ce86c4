from __future__ import annotations

from dataclasses import dataclass

FINAL_JSON_START_TAG = "<FINAL_JSON>"
FINAL_JSON_END_TAG = "</FINAL_JSON>"

DEFAULT_MARKDOWN_INSTRUCTION = (
    "First write the Markdown feedback shown to the student (it is streamed live)."
)

JSON_EXAMPLES: dict[str, str] = {
    "logic-check": (
        '{ "status": "pass/warn/fail", "comment": "(may reuse the Markdown above)", '
        '"suggestion": "concrete improvement", "keyPoints": [] }'
    ),
    "grammar-check": (
        '{ "score": 0-10, "comment": "(may reuse the Markdown above)", '
        '"grammar_issues": [{ "original": "", "correction": "", "issue": "" }], '
        '"recommended_vocab": [{ "word": "", "meaning": "", "collocation": "", '
        '"example": "", "scenario": "" }], "improved_version": "" }'
    ),
    "scoring": (
        '{ "score": 0-20, "comment": "(may reuse the Markdown above)", '
        '"strengths": [], "weaknesses": [] }'
    ),
    "letter-logic": (
        '{ "status": "pass/warn/fail", "score": 0-10, '
        '"comment": "(may reuse the Markdown above)", "suggestion": "", '
        '"format_hints": [], "content_check": { "covered": [], "missing": [] }, '
        '"vocab_tips": [] }'
    ),
    "letter-scoring": (
        '{ "score": 0-10, "level": "", "comment": "(may reuse the Markdown above)", '
        '"dimensions": {}, "format_check": { "salutation": "pass/warn/fail", '
        '"signOff": "pass/warn/fail", "punctuation": "pass/warn/fail", "issues": [] }, '
        '"strengths": [], "weaknesses": [], "improved_version": "", '
        '"checklist_reminder": [] }'
    ),
}


@dataclass(frozen=True, slots=True)
class FinalJsonSplit:
    display_text: str
    json_text: str | None


def split_final_json_block(full_text: str | None) -> FinalJsonSplit:
    """Split cumulative stream text into display prose and the terminal JSON block.

    Anchors on the last start tag and the last end tag so a tag mentioned
    earlier in the prose cannot cut the display text short. The pair is only
    accepted when the end tag follows the start tag; otherwise the whole text
    is display text.
    """
    text = full_text or ""
    start = text.rfind(FINAL_JSON_START_TAG)
    end = text.rfind(FINAL_JSON_END_TAG)

    if start != -1 and end != -1 and end > start:
        return FinalJsonSplit(
            display_text=text[:start].rstrip(),
            json_text=text[start + len(FINAL_JSON_START_TAG) : end].strip(),
        )

    return FinalJsonSplit(display_text=text.rstrip(), json_text=None)


def streaming_display_text(full_text: str | None) -> str:
    """Display prefix for a stream that may still be inside the terminal block.

    Same as ``split_final_json_block`` once a complete pair has arrived. Before
    that, an unterminated start tag and anything after it is hidden, as is a
    start tag that is only partially typed at the very end.
    """
    text = full_text or ""
    split = split_final_json_block(text)
    if split.json_text is not None:
        return split.display_text

    start = text.rfind(FINAL_JSON_START_TAG)
    if start != -1:
        return text[:start].rstrip()

    for size in range(len(FINAL_JSON_START_TAG) - 1, 0, -1):
        if text.endswith(FINAL_JSON_START_TAG[:size]):
            return text[:-size].rstrip()

    return split.display_text


def build_final_json_prompt(
    base_prompt: str | None,
    *,
    markdown_instruction: str = DEFAULT_MARKDOWN_INSTRUCTION,
    json_example: str = "{}",
) -> str:
    return (
        f"{base_prompt or ''}\n\n"
        "## Output format (important, the answer is streamed)\n"
        "Ignore any output format requested above and answer in exactly two parts:\n"
        f"1) {markdown_instruction}\n"
        "2) The last part must be a single JSON object wrapped as shown below "
        "(no ``` fences, no extra characters):\n"
        f"{FINAL_JSON_START_TAG}\n"
        f"{json_example}\n"
        f"{FINAL_JSON_END_TAG}"
    )


def build_job_prompt(
    base_prompt: str | None,
    *,
    job_type: str,
    markdown_instruction: str = DEFAULT_MARKDOWN_INSTRUCTION,
) -> str:
    json_example = JSON_EXAMPLES.get(job_type)
    if json_example is None:
        raise ValueError(f"No JSON example registered for job type: {job_type}")

    return build_final_json_prompt(
        base_prompt,
        markdown_instruction=markdown_instruction,
        json_example=json_example,
    )
