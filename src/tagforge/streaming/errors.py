"""Provider error types and the short user-facing classification of failures."""

import json
from typing import Any, Callable

GENERATION_STOPPED = "Generation Stopped"
GENERATION_FAILED = "Generation Failed"
FALLBACK_ERROR_MESSAGE = "An error occurred. Check the Logs tab for details."
BODY_LIMIT = 500


class ProviderError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body[:BODY_LIMIT] if body is not None else None


class GenerationInProgressError(Exception):
    pass


def _str_or_none(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _nested_error_message(obj: dict) -> str | None:
    error = obj.get("error")
    if isinstance(error, dict):
        return _str_or_none(error.get("message"))
    return None


def _error_string(obj: dict) -> str | None:
    return _str_or_none(obj.get("error"))


def _top_level_message(obj: dict) -> str | None:
    return _str_or_none(obj.get("message"))


def _detail(obj: dict) -> str | None:
    detail = obj.get("detail")
    if isinstance(detail, list) and detail and isinstance(detail[0], dict):
        return _str_or_none(detail[0].get("msg"))
    return _str_or_none(detail)


def _any_error(obj: dict) -> str | None:
    error = obj.get("error")
    if error is None or error == "" or error == {}:
        return None
    return json.dumps(error, ensure_ascii=False) if isinstance(error, (dict, list)) else str(error)


# Tried in order against the first JSON object embedded in the error text.
ERROR_SHAPES: list[tuple[str, Callable[[dict], str | None]]] = [
    ("error.message", _nested_error_message),
    ("error", _error_string),
    ("message", _top_level_message),
    ("detail", _detail),
    ("error.any", _any_error),
]


def _embedded_json(text: str | None) -> dict | None:
    if not text:
        return None
    decoder = json.JSONDecoder()
    start = text.find("{")
    list_start = text.find("[")
    if list_start >= 0 and (start < 0 or list_start < start):
        start = list_start
    while start >= 0:
        try:
            obj, _ = decoder.raw_decode(text, start)
        except ValueError:
            start = text.find("{", start + 1)
            continue
        if isinstance(obj, list):
            obj = next((item for item in obj if isinstance(item, dict)), None)
        return obj if isinstance(obj, dict) else None
    return None


def _message_from_json(text: str | None) -> str | None:
    obj = _embedded_json(text)
    if obj is None:
        return None
    for _name, extract in ERROR_SHAPES:
        found = extract(obj)
        if found:
            return found
    return None


def _first_meaningful_line(text: str) -> str | None:
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if "API Error:" in stripped or stripped.startswith("HTTP "):
            continue
        return stripped
    return None


def classify_error(exc: BaseException) -> str:
    text = str(exc)
    body = getattr(exc, "body", None)
    return (
        _message_from_json(text)
        or _message_from_json(body if isinstance(body, str) else None)
        or _first_meaningful_line(text)
        or FALLBACK_ERROR_MESSAGE
    )
