"""
Recovery parser for LLM classification responses.

Model output is often malformed: chat special tokens, markdown fences,
commentary around the JSON, spelled-out decimals, trailing commas. Recovery
runs in stages and stops at the first one that yields a verdict:

    1. strict ``json.loads`` of the raw text
    2. strip wrapper artifacts, repair common defects, parse again
    3. regex extraction of individually recognizable fields
    4. give up: ``parse_status="failed"``, raw text kept verbatim

A missing verdict is always ``None``. It is never turned into "not detected".
"""

import json
import logging
import re

from nvdrs_ipv.schemas import (
    UNCLEAR,
    ModelInvocation,
    ParsedResult,
    ResponseSchema,
)

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA = ResponseSchema()

SCALAR_FIELDS = ("detected", "confidence", "rationale")

_FIELD_ALIASES = {
    "detected": ("detected", "ipv_detected", "ipv"),
    "confidence": ("confidence", "confidence_score", "score"),
    "rationale": ("rationale", "reasoning", "explanation", "reason"),
    "indicators": ("indicators", "ipv_indicators", "key_facts"),
}

_EMPTY_PLACEHOLDERS = {"", "na", "n/a", "null", "none", "nan", "-", "unknown"}

_SPECIAL_TOKEN_RE = re.compile(r"<\|[^|]+\|>")
_FENCE_RE = re.compile(r"```(?:json|JSON)?")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_PY_LITERAL_RE = re.compile(r"([:\[,]\s*)(True|False|None)\b")
_PY_LITERALS = {"True": "true", "False": "false", "None": "null"}
_JSON_STRING_RE = re.compile(r'("(?:[^"\\]|\\.)*")')

_DIGIT_WORDS = {
    "zero": "0", "one": "1", "two": "2", "three": "3", "four": "4",
    "five": "5", "six": "6", "seven": "7", "eight": "8", "nine": "9",
}
# "0. nine" or "0.nine" -> "0.9"
_SPELLED_DECIMAL_RE = re.compile(
    r"\b0\s*\.\s*(" + "|".join(_DIGIT_WORDS) + r")\b", re.IGNORECASE
)

_DETECTED_RE = re.compile(
    r"[\"']?\b(?:ipv_)?detected[\"']?\s*[:=]\s*[\"']?(true|false|yes|no)\b", re.IGNORECASE
)
_CONFIDENCE_RE = re.compile(
    r"[\"']?\bconfidence[\"']?\s*[:=]\s*[\"']?(-?\d+(?:\.\d+)?)\s*(%)?", re.IGNORECASE
)
_RATIONALE_RE = re.compile(
    r"[\"']?(?:rationale|reasoning)[\"']?\s*[:=]\s*\"((?:[^\"\\]|\\.)*)\"", re.IGNORECASE
)


def is_empty_narrative(text: str | None, min_chars: int = 10) -> bool:
    """True for missing, whitespace, placeholder or too-short narrative text."""
    if text is None:
        return True
    stripped = text.strip()
    if stripped.lower() in _EMPTY_PLACEHOLDERS:
        return True
    return len(stripped) < min_chars


def skipped_empty_result() -> ParsedResult:
    return ParsedResult(
        parse_status="skipped_empty",
        missing_fields=list(SCALAR_FIELDS),
        prompt_tokens=0,
        completion_tokens=0,
        total_tokens=0,
        latency_seconds=0.0,
    )


def parse_invocation(invocation: ModelInvocation, schema: ResponseSchema = DEFAULT_SCHEMA) -> ParsedResult:
    """Turn one ModelInvocation into a ParsedResult, carrying usage figures along."""
    usage = {
        "prompt_tokens": invocation.prompt_tokens,
        "completion_tokens": invocation.completion_tokens,
        "total_tokens": invocation.total_tokens,
        "latency_seconds": invocation.latency_seconds,
    }
    if not invocation.ok:
        return ParsedResult(
            parse_status="failed",
            missing_fields=list(SCALAR_FIELDS),
            indicator_flags={name: UNCLEAR for name in schema.indicator_fields},
            raw_response=invocation.response_raw,
            error_message=invocation.error,
            **usage,
        )
    result = parse(invocation.response_raw, schema)
    return result.model_copy(update=usage)


def parse(raw_response: str | None, schema: ResponseSchema = DEFAULT_SCHEMA) -> ParsedResult:
    if raw_response is None or not raw_response.strip():
        return _failed(raw_response, schema, "Empty response")

    # Stage 1: strict
    data = _loads_object(raw_response)
    if data is not None and _pick(data, "detected") is not None:
        return _from_mapping(data, raw_response, schema, "ok", 1)

    # Stage 2: clean and repair
    repaired = repair_json(raw_response)
    data = _loads_object(repaired)
    if data is not None and _pick(data, "detected") is not None:
        return _from_mapping(data, raw_response, schema, "recovered", 2)

    # Stage 3: field-by-field regex
    result = _regex_extract(_SPECIAL_TOKEN_RE.sub("", raw_response), raw_response, schema)
    if result is not None:
        return result

    logger.warning("Unparseable response (%d chars)", len(raw_response))
    return _failed(raw_response, schema, "Could not recover a verdict from response")


def repair_json(text: str) -> str:
    """Strip chat tokens and fences, keep the outermost object, fix common defects."""
    cleaned = _SPECIAL_TOKEN_RE.sub("", text)
    cleaned = _FENCE_RE.sub("", cleaned).strip()

    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        cleaned = cleaned[start:end + 1]

    cleaned = _SPELLED_DECIMAL_RE.sub(lambda m: "0." + _DIGIT_WORDS[m.group(1).lower()], cleaned)
    return _outside_strings(cleaned, _repair_syntax)


def _repair_syntax(text: str) -> str:
    text = _TRAILING_COMMA_RE.sub(r"\1", text)
    return _PY_LITERAL_RE.sub(lambda m: m.group(1) + _PY_LITERALS[m.group(2)], text)


def _outside_strings(text: str, fix) -> str:
    """Apply ``fix`` to the parts of ``text`` that are not quoted JSON strings."""
    parts = _JSON_STRING_RE.split(text)
    # re.split with one capture group alternates: outside, string, outside, ...
    return "".join(fix(part) if i % 2 == 0 else part for i, part in enumerate(parts))


def _loads_object(text: str) -> dict | None:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _pick(data: dict, field: str):
    for alias in _FIELD_ALIASES[field]:
        if alias in data:
            value = data[alias]
            if field == "detected":
                return _coerce_bool(value)
            return value
    return None


def _coerce_bool(value) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "y"):
            return True
        if lowered in ("false", "no", "n"):
            return False
    return None


def _coerce_confidence(value) -> float | None:
    """Numbers in [0, 1] pass through; percentages are scaled; anything else is None."""
    if isinstance(value, bool) or value is None:
        return None
    percent = False
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("%"):
            percent = True
            text = text[:-1]
        try:
            value = float(text)
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    value = float(value)
    if percent:
        value /= 100.0
    if 0.0 <= value <= 1.0:
        return value
    return None


def _indicator_flags(data: dict, schema: ResponseSchema) -> tuple[list[str], dict[str, str]]:
    raw = None
    for alias in _FIELD_ALIASES["indicators"]:
        if alias in data:
            raw = data[alias]
            break

    indicators: list[str] = []
    reported: dict[str, str] = {}
    if isinstance(raw, list):
        indicators = [str(item) for item in raw if item is not None]
        reported = {name: "yes" for name in indicators}
    elif isinstance(raw, dict):
        for name, value in raw.items():
            flag = _flag_value(value)
            reported[str(name)] = flag
            if flag == "yes":
                indicators.append(str(name))

    # Expected fields may also appear at the top level of the response.
    for name in schema.indicator_fields:
        if name not in reported and name in data:
            reported[name] = _flag_value(data[name])

    flags = {name: reported.get(name, UNCLEAR) for name in schema.indicator_fields}
    return indicators, flags


def _flag_value(value) -> str:
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("yes", "true", "y", "present"):
            return "yes"
        if lowered in ("no", "false", "n", "absent"):
            return "no"
    return UNCLEAR


def _from_mapping(data: dict, raw: str, schema: ResponseSchema, status: str, stage: int) -> ParsedResult:
    detected = _pick(data, "detected")
    confidence = _coerce_confidence(_pick(data, "confidence"))
    rationale = _pick(data, "rationale")
    if rationale is not None and not isinstance(rationale, str):
        rationale = str(rationale)
    indicators, flags = _indicator_flags(data, schema)

    values = {"detected": detected, "confidence": confidence, "rationale": rationale}
    return ParsedResult(
        detected=detected,
        confidence=confidence,
        rationale=rationale,
        indicators=indicators,
        indicator_flags=flags,
        missing_fields=[f for f in SCALAR_FIELDS if values[f] is None],
        parse_status=status,
        recovery_stage=stage,
        raw_response=raw,
    )


def _regex_extract(text: str, raw: str, schema: ResponseSchema) -> ParsedResult | None:
    detected = None
    m = _DETECTED_RE.search(text)
    if m:
        detected = _coerce_bool(m.group(1))

    confidence = None
    m = _CONFIDENCE_RE.search(_SPELLED_DECIMAL_RE.sub(
        lambda d: "0." + _DIGIT_WORDS[d.group(1).lower()], text
    ))
    if m:
        confidence = _coerce_confidence(m.group(1) + (m.group(2) or ""))

    if detected is None and confidence is None:
        return None

    rationale = None
    m = _RATIONALE_RE.search(text)
    if m:
        rationale = m.group(1).replace('\\"', '"')

    values = {"detected": detected, "confidence": confidence, "rationale": rationale}
    return ParsedResult(
        detected=detected,
        confidence=confidence,
        rationale=rationale,
        indicator_flags={name: UNCLEAR for name in schema.indicator_fields},
        missing_fields=[f for f in SCALAR_FIELDS if values[f] is None],
        parse_status="recovered",
        recovery_stage=3,
        raw_response=raw,
        error_message="Partial recovery by field extraction",
    )


def _failed(raw: str | None, schema: ResponseSchema, message: str) -> ParsedResult:
    return ParsedResult(
        parse_status="failed",
        recovery_stage=4,
        missing_fields=list(SCALAR_FIELDS),
        indicator_flags={name: UNCLEAR for name in schema.indicator_fields},
        raw_response=raw,
        error_message=message,
    )
