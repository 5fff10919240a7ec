"""Utility functions for parsing LLM responses and normalising extracted values."""
import json
import logging
import re
from datetime import datetime
from typing import Any

import json_repair

logger = logging.getLogger(__name__)

_SEX = {"male": "male", "m": "male", "female": "female", "f": "female", "other": "other"}
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DAY_FIRST_DATE = re.compile(r"^(\d{1,2})[/.\-](\d{1,2})[/.\-](\d{4})$")
# Tried in order after the ISO and day-first numeric forms
_FALLBACK_DATE_FORMATS = (
    "%d %B %Y",
    "%d %b %Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%Y/%m/%d",
    "%Y.%m.%d",
)


def _preprocess_response(response: str) -> str:
    """Strip markdown, preamble, and return content from first '{'."""
    response = response.strip()
    if response.startswith("```json"):
        response = response[7:]
    if response.startswith("```"):
        response = response[3:]
    if response.endswith("```"):
        response = response[:-3]
    response = response.strip()
    idx = response.find("{")
    if idx >= 0:
        response = response[idx:]
    return response


def _try_close_truncated_json(s: str) -> str:
    """Close a response cut off mid-object.

    Finishes an open string, gives a dangling key or colon a null value, drops a
    trailing comma, then closes every bracket still open. Balanced input is
    returned unchanged.
    """
    s = s.rstrip()
    closers = []
    in_string = escaped = False
    last_sig = ""
    string_opened_after = ""
    for ch in s:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
            string_opened_after = last_sig
        elif ch == "{":
            closers.append("}")
        elif ch == "[":
            closers.append("]")
        elif ch in "}]" and closers:
            closers.pop()
        if not ch.isspace():
            last_sig = ch
    if not closers and not in_string:
        return s

    if in_string:
        s += '"'
    in_object = bool(closers) and closers[-1] == "}"
    if s.endswith(","):
        s = s[:-1]
    elif s.endswith(":"):
        s += " null"
    elif s.endswith('"') and in_object and string_opened_after in ("{", ","):
        # Key with no value yet
        s += ": null"
    return s + "".join(reversed(closers))


def parse_json_response(response: str) -> dict:
    """Parse a JSON object from an LLM response, tolerating markdown fences, preamble and trailing text.

    Tries: 1) strict parse, 2) truncate at last balanced '}', 3) strict parse after
    closing a truncated tail, 4) json_repair on the full and the closed text. Raises
    json.JSONDecodeError (or ValueError) if nothing yields a dict.
    """
    if not response or not response.strip():
        raise ValueError("Empty LLM response")
    preprocessed = _preprocess_response(response)
    first_error = None

    try:
        obj, _ = json.JSONDecoder().raw_decode(preprocessed)
        if isinstance(obj, dict):
            return obj
    except json.JSONDecodeError as e:
        first_error = e
        logger.warning(f"Strict JSON parse failed: {e}")

    last_brace = preprocessed.rfind("}")
    if last_brace > 0:
        partial = preprocessed[: last_brace + 1]
        if partial.count("{") == partial.count("}"):
            try:
                obj, _ = json.JSONDecoder().raw_decode(partial)
                if isinstance(obj, dict):
                    logger.warning("Recovered partial JSON by truncating at last complete brace")
                    return obj
            except json.JSONDecodeError:
                pass

    closed = _try_close_truncated_json(preprocessed)
    if closed != preprocessed:
        try:
            obj = json.loads(closed)
            if isinstance(obj, dict):
                logger.warning("Recovered truncated JSON by closing open brackets")
                return obj
        except json.JSONDecodeError:
            pass

    for candidate in (preprocessed, closed):
        try:
            obj = json_repair.loads(candidate)
        except Exception as repair_err:
            logger.debug(f"json_repair failed: {repair_err}")
            continue
        if isinstance(obj, dict) and obj:
            logger.warning("Recovered JSON using json_repair after strict parse failed")
            return obj

    if first_error is not None:
        raise first_error
    raise ValueError("Failed to parse JSON")


def parse_string(value: Any) -> str | None:
    """Trimmed string, or None for null/empty/whitespace. Non-strings are stringified."""
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    value = value.strip()
    if not value or value.lower() in ("null", "none", "n/a"):
        return None
    return value


def parse_sex(value: Any) -> str | None:
    """male, female or other; None for blank or unrecognised values."""
    s = parse_string(value)
    return _SEX.get(s.lower()) if s else None


def parse_confidence(value: Any) -> float:
    """Coerce a model-reported confidence into [0, 1]. Non-numeric or NaN -> 0."""
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return 0.0
    if not isinstance(value, (int, float)):
        return 0.0
    value = float(value)
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(1.0, value))


def parse_string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    out = []
    for item in value:
        s = parse_string(item)
        if s:
            out.append(s)
    return out


def normalize_date(value: Any) -> str | None:
    """Normalise a date to YYYY-MM-DD.

    ISO dates pass through; DD/MM/YYYY, DD-MM-YYYY and DD.MM.YYYY are read day-first
    (letters come from AU/UK practices). A few spelled-out formats are also accepted.
    Anything else returns None.
    """
    s = parse_string(value)
    if not s:
        return None
    if _ISO_DATE.match(s):
        try:
            datetime.strptime(s, "%Y-%m-%d")
            return s
        except ValueError:
            return None
    m = _DAY_FIRST_DATE.match(s)
    if m:
        day, month, year = m.groups()
        try:
            return datetime(int(year), int(month), int(day)).strftime("%Y-%m-%d")
        except ValueError:
            return None
    for fmt in _FALLBACK_DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).strftime("%Y-%m-%d")
        except ValueError:
            continue
    return None
