"""Output filters applied to PowerShell output before it is returned to the AI.

Public API:
    text, meta = process_output(raw)     # truncate, then redact

Truncation is format-aware (ConvertTo-Json arrays/objects, Format-Table style
tables, free-form log streams). Redaction removes secrets that diagnostic
commands commonly surface (connection strings, keys, tokens, passwords).
"""

import json
import re
from typing import Callable


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TRUNCATION_LINE_LIMIT = 200
TRUNCATION_TOKEN_ESTIMATE_LIMIT = 4000  # ~4 chars per token
LOG_HEAD_LINES = 20
LOG_TAIL_LINES = 10
JSON_ITEMS_SHOWN = 4


# ---------------------------------------------------------------------------
# Truncation
# ---------------------------------------------------------------------------

def _estimate_tokens(text: str) -> int:
    return len(text) // 4


def detect_output_type(output: str) -> str:
    """Classify output as empty, json_array, json_object, tabular or log_stream."""
    stripped = output.strip()
    if not stripped:
        return "empty"

    if stripped[0] in "[{":
        try:
            data = json.loads(stripped)
        except (json.JSONDecodeError, RecursionError):
            data = None
        if isinstance(data, list):
            return "json_array"
        if isinstance(data, dict):
            return "json_object"

    # Format-Table output: header, dashed underline, rows separated by 2+ spaces
    lines = [line for line in stripped.split("\n") if line.strip()]
    if len(lines) >= 3 and re.fullmatch(r"[-\s]+", lines[1].strip()) and "-" in lines[1]:
        return "tabular"
    if len(lines) >= 3:
        col_counts = [
            len(re.split(r"\s{2,}", line.strip())) for line in lines[:10] if "  " in line.strip()
        ]
        if len(col_counts) >= 3 and min(col_counts) >= 2 and len(set(col_counts)) <= 2:
            return "tabular"

    return "log_stream"


def _truncate_list(values: list, total: int) -> list:
    return values[:3] + [f"[truncated: showing {JSON_ITEMS_SHOWN} of {total} items]"] + values[-1:]


def _truncate_json_object(data: dict, depth: int = 0):
    if depth >= 3:
        return "..."
    result = {}
    for key, value in data.items():
        if isinstance(value, list) and len(value) > JSON_ITEMS_SHOWN:
            result[key] = _truncate_list(value, len(value))
        elif isinstance(value, dict):
            result[key] = _truncate_json_object(value, depth + 1)
        else:
            result[key] = value
    return result


def truncate_output(output: str) -> tuple[str, dict]:
    """Apply format-aware truncation. Returns (text, metadata)."""
    if not output:
        return "", {"truncation_applied": False, "total_lines": 0, "output_type": "empty"}

    output_type = detect_output_type(output)
    lines = output.split("\n")
    total_lines = len(lines)
    meta = {"truncation_applied": False, "total_lines": total_lines, "output_type": output_type}

    if total_lines <= TRUNCATION_LINE_LIMIT and _estimate_tokens(output) <= TRUNCATION_TOKEN_ESTIMATE_LIMIT:
        return output, meta

    meta["truncation_applied"] = True

    if output_type == "json_array":
        data = json.loads(output)
        if len(data) > JSON_ITEMS_SHOWN:
            return json.dumps(_truncate_list(data, len(data)), indent=2), meta
        meta["truncation_applied"] = False
        return output, meta

    if output_type == "json_object":
        return json.dumps(_truncate_json_object(json.loads(output)), indent=2), meta

    if output_type == "tabular":
        data_rows = TRUNCATION_LINE_LIMIT - 2
        shown = lines[: data_rows + 2]
        remaining = total_lines - len(shown)
        if remaining > 0:
            shown.append(f"[truncated: {remaining} more rows]")
        else:
            meta["truncation_applied"] = False
        return "\n".join(shown), meta

    head = lines[:LOG_HEAD_LINES]
    tail = lines[-LOG_TAIL_LINES:]
    omitted = total_lines - LOG_HEAD_LINES - LOG_TAIL_LINES
    if omitted <= 0:
        # Few very long lines: cap by characters instead
        limit = TRUNCATION_TOKEN_ESTIMATE_LIMIT * 4
        return output[:limit] + f"\n[truncated: {len(output) - limit} characters omitted]", meta
    return "\n".join(head + [f"[truncated: {omitted} lines omitted]"] + tail), meta


# ---------------------------------------------------------------------------
# Privacy redaction
# ---------------------------------------------------------------------------

def _keep_label(match: re.Match) -> str:
    """Keep everything up to and including the first '=' or ':' separator."""
    s = match.group(0)
    for sep in ("=", ":"):
        idx = s.find(sep)
        if idx != -1:
            return s[: idx + 1] + "[REDACTED]"
    return "[REDACTED]"


_REDACTIONS: list[tuple[str, re.Pattern, Callable[[re.Match], str]]] = [
    ("private_key", re.compile(
        r"-----BEGIN\s+[A-Z ]*PRIVATE\s+KEY-----[\s\S]*?-----END\s+[A-Z ]*PRIVATE\s+KEY-----"
    ), lambda m: "[REDACTED_PRIVATE_KEY]"),
    ("connection_string", re.compile(
        r"(?:Server|Data Source|Provider)=[^;\n]+(?:;[^;\n]+){2,}", re.IGNORECASE
    ), lambda m: "[REDACTED_CONNECTION_STRING]"),
    ("storage_key", re.compile(
        r"AccountKey\s*=\s*[A-Za-z0-9+/=]{20,}", re.IGNORECASE
    ), _keep_label),
    ("api_key", re.compile(
        r"(?:api[_-]?key|apikey)\s*[:=]\s*\S+", re.IGNORECASE
    ), _keep_label),
    ("password", re.compile(
        r"(?:password|passwd|pwd)\s*[:=]\s*\S+", re.IGNORECASE
    ), _keep_label),
    ("bearer_token", re.compile(
        r"Bearer\s+[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE
    ), lambda m: "Bearer [REDACTED]"),
    ("sas_token", re.compile(
        r"\?sv=[^&\s]+(?:&[^&\s]+){3,}"
    ), lambda m: "[REDACTED_SAS_TOKEN]"),
    ("product_key", re.compile(
        r"\b[A-Z0-9]{5}(?:-[A-Z0-9]{5}){4}\b"
    ), lambda m: "[REDACTED_PRODUCT_KEY]"),
]


def redact_output(text: str) -> tuple[str, dict]:
    """Apply all redaction patterns. Returns (text, metadata)."""
    total = 0
    categories = []
    for category, pattern, replacement in _REDACTIONS:
        text, count = pattern.subn(replacement, text)
        if count:
            total += count
            categories.append(category)
    return text, {
        "redactions_applied": total > 0,
        "redaction_count": total,
        "redaction_categories": categories,
    }


def process_output(output: str) -> tuple[str, dict]:
    """Truncate then redact. Returns (text, merged metadata)."""
    truncated, truncation_meta = truncate_output(output)
    redacted, redaction_meta = redact_output(truncated)
    return redacted, {**truncation_meta, **redaction_meta}
