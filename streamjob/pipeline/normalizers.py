"""Per-job-type coercion of parsed model payloads into fully shaped records.

Every normalizer is driven by a table of ``FieldSpec`` entries interpreted by
``normalize_fields``. Adding a job type means adding a table, not new
coercion code.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from streamjob.utils.error_taxonomy import ResponseStructureError

FieldKind = Literal[
    "string",
    "number",
    "status",
    "string_list",
    "object_list",
    "object",
    "object_map",
]
Status = Literal["pass", "warn", "fail"]
Normalizer = Callable[..., dict[str, Any]]

STATUS_VALUES: frozenset[str] = frozenset({"pass", "warn", "fail"})


@dataclass(frozen=True, slots=True)
class FieldSpec:
    name: str
    kind: FieldKind
    default: Any = None
    value_range: tuple[float, float] | None = None
    mirror_display: bool = False
    fields: tuple["FieldSpec", ...] = field(default_factory=tuple)


def is_plain_object(value: Any) -> bool:
    return isinstance(value, dict)


def as_string(value: Any, fallback: str = "") -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return fallback
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def as_number(value: Any, fallback: float = 0) -> float:
    if isinstance(value, bool):
        number = float(value)
    elif isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return fallback
    else:
        return fallback

    return number if math.isfinite(number) else fallback


def clamp(value: float, minimum: float, maximum: float) -> float:
    if not math.isfinite(value):
        return minimum
    return min(maximum, max(minimum, value))


def normalize_status(value: Any, fallback: Status = "warn") -> Status:
    status = str(value or "").strip().lower()
    if status in STATUS_VALUES:
        return status  # type: ignore[return-value]
    return fallback


def to_string_list(value: Any) -> list[str]:
    if isinstance(value, list):
        items = [_item_text(item) for item in value]
        return [item for item in items if item]

    text = _item_text(value)
    return [text] if text else []


def to_object_list(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if is_plain_object(item)]


def normalize_fields(
    payload: dict[str, Any],
    specs: tuple[FieldSpec, ...],
    *,
    display_text: str = "",
) -> dict[str, Any]:
    """Coerce every declared field; undeclared keys are carried through."""
    normalized = dict(payload)
    for spec in specs:
        normalized[spec.name] = _coerce(
            payload.get(spec.name), spec, display_text=display_text
        )
    return normalized


def _coerce(value: Any, spec: FieldSpec, *, display_text: str) -> Any:
    if spec.kind == "string":
        fallback = display_text if spec.mirror_display else spec.default
        return as_string(value, fallback or "")

    if spec.kind == "number":
        number = as_number(value, spec.default or 0)
        if spec.value_range is not None:
            number = clamp(number, *spec.value_range)
        return _compact_number(number)

    if spec.kind == "status":
        return normalize_status(value, spec.default or "warn")

    if spec.kind == "string_list":
        return to_string_list(value)

    if spec.kind == "object_list":
        return [
            normalize_fields(item, spec.fields) for item in to_object_list(value)
        ]

    if spec.kind == "object":
        source = value if is_plain_object(value) else {}
        return {
            sub_spec.name: _coerce(
                source.get(sub_spec.name), sub_spec, display_text=display_text
            )
            for sub_spec in spec.fields
        }

    if spec.kind == "object_map":
        if not is_plain_object(value):
            return {}
        return {
            str(key): normalize_fields(item, spec.fields)
            for key, item in value.items()
            if is_plain_object(item)
        }

    raise ValueError(f"Unsupported field kind: {spec.kind}")


def _compact_number(number: float) -> int | float:
    if number.is_integer():
        return int(number)
    return number


def _item_text(value: Any) -> str:
    if value is None or value is False:
        return ""
    return as_string(value).strip()


LOGIC_CHECK_FIELDS: tuple[FieldSpec, ...] = (
    FieldSpec("status", "status", default="warn"),
    FieldSpec("comment", "string", mirror_display=True),
    FieldSpec("suggestion", "string", default=""),
    FieldSpec("keyPoints", "string_list"),
)

GRAMMAR_CHECK_FIELDS: tuple[FieldSpec, ...] = (
    FieldSpec("score", "number", default=0, value_range=(0, 10)),
    FieldSpec("comment", "string", mirror_display=True),
    FieldSpec(
        "grammar_issues",
        "object_list",
        fields=(
            FieldSpec("original", "string", default=""),
            FieldSpec("correction", "string", default=""),
            FieldSpec("issue", "string", default=""),
        ),
    ),
    FieldSpec(
        "recommended_vocab",
        "object_list",
        fields=(
            FieldSpec("word", "string", default=""),
            FieldSpec("meaning", "string", default=""),
            FieldSpec("collocation", "string", default=""),
            FieldSpec("example", "string", default=""),
            FieldSpec("scenario", "string", default=""),
        ),
    ),
    FieldSpec("improved_version", "string", default=""),
)

SCORING_FIELDS: tuple[FieldSpec, ...] = (
    FieldSpec("score", "number", default=0, value_range=(0, 20)),
    FieldSpec("comment", "string", mirror_display=True),
    FieldSpec("strengths", "string_list"),
    FieldSpec("weaknesses", "string_list"),
)

LETTER_LOGIC_FIELDS: tuple[FieldSpec, ...] = (
    FieldSpec("status", "status", default="warn"),
    FieldSpec("score", "number", default=0, value_range=(0, 10)),
    FieldSpec("comment", "string", mirror_display=True),
    FieldSpec("suggestion", "string", default=""),
    FieldSpec("format_hints", "string_list"),
    FieldSpec(
        "content_check",
        "object",
        fields=(
            FieldSpec("covered", "string_list"),
            FieldSpec("missing", "string_list"),
        ),
    ),
    FieldSpec("vocab_tips", "string_list"),
)

LETTER_SCORING_FIELDS: tuple[FieldSpec, ...] = (
    FieldSpec("score", "number", default=0, value_range=(0, 10)),
    FieldSpec("level", "string", default=""),
    FieldSpec("comment", "string", mirror_display=True),
    # Per-dimension scores are not clamped; each rubric defines its own scale.
    FieldSpec(
        "dimensions",
        "object_map",
        fields=(
            FieldSpec("score", "number", default=0),
            FieldSpec("comment", "string", default=""),
        ),
    ),
    FieldSpec(
        "format_check",
        "object",
        fields=(
            FieldSpec("salutation", "status", default="warn"),
            FieldSpec("signOff", "status", default="warn"),
            FieldSpec("punctuation", "status", default="warn"),
            FieldSpec("issues", "string_list"),
        ),
    ),
    FieldSpec("strengths", "string_list"),
    FieldSpec("weaknesses", "string_list"),
    FieldSpec("improved_version", "string", default=""),
    FieldSpec("checklist_reminder", "string_list"),
)

FIELD_TABLES: dict[str, tuple[FieldSpec, ...]] = {
    "logic-check": LOGIC_CHECK_FIELDS,
    "grammar-check": GRAMMAR_CHECK_FIELDS,
    "scoring": SCORING_FIELDS,
    "letter-logic": LETTER_LOGIC_FIELDS,
    "letter-scoring": LETTER_SCORING_FIELDS,
}


def build_normalizer(specs: tuple[FieldSpec, ...]) -> Normalizer:
    def normalize(
        payload: Any, *, display_text: str = "", raw: str = ""
    ) -> dict[str, Any]:
        del raw
        if not is_plain_object(payload):
            raise ResponseStructureError("AI response JSON is not an object")
        return normalize_fields(payload, specs, display_text=display_text)

    return normalize


NORMALIZERS: dict[str, Normalizer] = {
    job_type: build_normalizer(specs) for job_type, specs in FIELD_TABLES.items()
}


def get_normalizer(job_type: str) -> Normalizer:
    normalizer = NORMALIZERS.get(job_type)
    if normalizer is None:
        raise ValueError(f"No normalizer registered for job type: {job_type}")
    return normalizer
