"""Model identity parsing utilities for session display."""
from __future__ import annotations

import re


_VERSION_TOKEN_PATTERN = re.compile(r"^\d+$")
_DATE_SUFFIX_PATTERN = re.compile(r"(?:-\d{8}|-\d{4}-\d{2}-\d{2})+$")
_CONTEXT_SUFFIX_PATTERN = re.compile(r"\[\d+[km]\]$", re.IGNORECASE)


def _title_case(value: str) -> str:
    return " ".join(part.capitalize() for part in (value or "").strip().split() if part.strip())


def _provider_label(token: str) -> str:
    lowered = (token or "").strip().lower()
    if lowered == "claude":
        return "Claude"
    if lowered in {"gpt", "openai"}:
        return "OpenAI"
    if lowered == "gemini":
        return "Gemini"
    if lowered:
        return _title_case(lowered)
    return "Unknown"


def strip_context_suffix(raw_model: str | None) -> str:
    """Drop an extended-context marker such as ``[1m]`` from a model id."""
    return _CONTEXT_SUFFIX_PATTERN.sub("", (raw_model or "").strip())


def derive_model_identity(raw_model: str | None) -> dict[str, str]:
    """Derive normalized model identity fields from a raw model string.

    Handles both the current ``claude-opus-4-5-20251101`` ordering and the
    legacy ``claude-3-5-sonnet-20241022`` ordering where the version comes
    before the family.
    """
    raw = strip_context_suffix(raw_model)
    if not raw:
        return {
            "modelDisplayName": "",
            "modelProvider": "",
            "modelFamily": "",
            "modelVersion": "",
        }

    normalized = _DATE_SUFFIX_PATTERN.sub("", raw.lower())
    parts = [part for part in re.split(r"[-_\s]+", normalized) if part]
    provider = _provider_label(parts[0] if parts else "")

    family = ""
    numeric_tokens: list[str] = []
    for token in parts[1:]:
        if _VERSION_TOKEN_PATTERN.match(token):
            if len(numeric_tokens) < 2:
                numeric_tokens.append(token)
            continue
        if not family:
            family = _title_case(token)
        elif numeric_tokens:
            break

    version_number = ".".join(numeric_tokens)

    model_version = ""
    if family and version_number:
        model_version = f"{family} {version_number}"
    elif family:
        model_version = family
    elif version_number:
        model_version = version_number

    display_name = " ".join(part for part in [provider, model_version] if part).strip()
    if not display_name:
        display_name = raw

    return {
        "modelDisplayName": display_name,
        "modelProvider": provider,
        "modelFamily": family,
        "modelVersion": model_version,
    }


def canonical_model_name(raw_model: str | None) -> str:
    """Return a canonical model identifier with build/date and context suffixes removed.

    Example:
      claude-opus-4-5-20251101[1m] -> claude-opus-4-5
    """
    raw = strip_context_suffix(raw_model).lower()
    if not raw:
        return ""
    normalized = re.sub(r"[\s_]+", "-", raw)
    normalized = re.sub(r"-{2,}", "-", normalized).strip("-")
    stripped = _DATE_SUFFIX_PATTERN.sub("", normalized).strip("-")
    return stripped or normalized
