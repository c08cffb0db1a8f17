import asyncio
import functools
import json
import logging
import random
import re
from typing import Any, Callable, Dict, List, Optional, Tuple, Type
from urllib.parse import urldefrag, urlparse, urlunparse

logger = logging.getLogger("rowpipe.utils")

_FENCE_PATTERN = r"```(?:json)?\s*([\s\S]*?)\s*```"
_PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")


def parse_json_response(response: str) -> Any:
    """
    Extracts and parses JSON from an LLM response.
    Tolerates markdown fences, literal newlines inside strings, trailing
    commas and prose around a single top-level object or array.

    Raises:
        ValueError: when no JSON value can be recovered
    """
    if response is None or not response.strip():
        raise ValueError("Empty response")

    text = response.strip()
    match = re.search(_FENCE_PATTERN, text)
    if match:
        text = match.group(1)

    def _repair_json(s):
        parts = re.split(r'("(?:\\.|[^"\\])*")', s)
        for idx in range(1, len(parts), 2):
            parts[idx] = parts[idx].replace('\n', '\\n').replace('\r', '\\r')
        s = "".join(parts)
        return re.sub(r',\s*([}\]])', r'\1', s)

    candidates = [text, _repair_json(text)]
    for open_char, close_char in (("{", "}"), ("[", "]")):
        start, end = text.find(open_char), text.rfind(close_char)
        if start != -1 and end > start:
            candidates.append(_repair_json(text[start:end + 1]))

    last_error = None
    for candidate in candidates:
        try:
            return json.loads(candidate, strict=False)
        except json.JSONDecodeError as e:
            last_error = e
    raise ValueError(f"Invalid JSON: {last_error}")


def _lookup(context: Dict[str, Any], path: str) -> Any:
    value: Any = context
    for key in path.split("."):
        if isinstance(value, dict):
            value = value.get(key)
        elif isinstance(value, list) and key.isdigit() and int(key) < len(value):
            value = value[int(key)]
        else:
            return None
    return value


def render_template(template: str, context: Dict[str, Any],
                    transform: Optional[Callable[[str], str]] = None) -> str:
    """
    Replaces `{{field}}` / `{{a.b.0}}` placeholders with values from `context`.
    Missing values render empty; objects and lists render as JSON.
    """
    def _replace(match):
        value = _lookup(context, match.group(1))
        if value is None:
            text = ""
        elif isinstance(value, (dict, list)):
            text = json.dumps(value, ensure_ascii=False)
        else:
            text = str(value)
        return transform(text) if transform else text

    return _PLACEHOLDER_PATTERN.sub(_replace, template)


def sanitize_filename(value: str) -> str:
    """Whitespace to underscores, drop anything outside [A-Za-z0-9_-], cap at 100 chars."""
    sanitized = re.sub(r"\s+", "_", value.strip())
    sanitized = re.sub(r"[^a-zA-Z0-9_\-]", "", sanitized)
    return sanitized[:100]


def normalize_url(url: str) -> str:
    """Drops the fragment and a trailing path slash so equivalent links collapse."""
    url, _ = urldefrag(url.strip())
    parsed = urlparse(url)
    path = parsed.path
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/")
    return urlunparse(parsed._replace(netloc=parsed.netloc.lower(), path=path or "/"))


def same_origin(url: str, other: str) -> bool:
    a, b = urlparse(url), urlparse(other)
    return (a.scheme, a.netloc.lower()) == (b.scheme, b.netloc.lower())


def async_retry(max_retries: int = 3, delay: float = 1.0,
                exceptions: Tuple[Type[BaseException], ...] = (Exception,)):
    """
    Retries an async callable with exponential backoff plus jitter.
    The last exception propagates once `max_retries` retries are spent.
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_retries:
                        raise
                    logger.warning(f"Attempt {attempt + 1} of {func.__name__} failed: {e}")
                    await asyncio.sleep(delay * (2 ** attempt) + random.uniform(0, delay))
        return wrapper
    return decorator


def render_parts(parts: List[Dict[str, Any]], context: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Renders placeholders in text blocks; media blocks pass through untouched."""
    rendered = []
    for part in parts:
        if part.get("type") == "text":
            rendered.append({"type": "text", "text": render_template(part["text"], context)})
        else:
            rendered.append(part)
    return rendered
