"""
Schema-constrained retry querier.
=================================
Asks a model, checks the answer (content present, JSON parses, schema holds,
verification commands pass) and re-asks with targeted feedback in the system
preamble until an attempt succeeds or the attempt budget is spent.
"""
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .domain import ExtractedContent, Message, ModelResponse, parts_text
from .errors import ConfigurationError, ModelResponseError, RetryExhaustedError
from .llm import BoundLLMClient
from .utils import parse_json_response
from .utils.schema import schema_errors

logger = logging.getLogger("rowpipe.querier")

SNIPPET_LIMIT = 500

SCHEMA_FOOTER = (
    "Your response MUST be a single JSON object that strictly adheres to the following "
    "JSON schema. Your response MUST start with '{{' and end with '}}'. Do NOT include any "
    "other text, explanations, or markdown formatting.\n\nJSON Schema:\n{schema}"
)


class FeedbackKind(str, Enum):
    NO_RESPONSE = "NO_RESPONSE"
    JSON_PARSE_ERROR = "JSON_PARSE_ERROR"
    SCHEMA_VALIDATION_ERROR = "SCHEMA_VALIDATION_ERROR"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    OPERATION_EXCEPTION = "OPERATION_EXCEPTION"


@dataclass
class QueryResult:
    value: Any
    content: ExtractedContent
    response: ModelResponse
    attempts: int


# Called with (content, parsed value); raises ModelResponseError subclasses to reject.
ResponseValidator = Callable[[ExtractedContent, Any], Awaitable[None]]


def extract_content(response: ModelResponse) -> ExtractedContent:
    """Audio first, then images, then text."""
    if response.audio and response.audio.get("data"):
        fmt = response.audio.get("format") or "wav"
        return ExtractedContent(kind="audio", data=response.audio["data"], extension=f".{fmt}")
    if response.images:
        url = response.images[0]
        extension = ".jpg" if url.startswith("data:image/jpeg") else ".png"
        return ExtractedContent(kind="image", data=url, extension=extension)
    if response.text is not None and response.text.strip():
        return ExtractedContent(kind="text", data=response.text, extension=".txt")
    raise ModelResponseError("The model returned no content.", kind=FeedbackKind.NO_RESPONSE.value)


def _system_text(content: Any) -> str:
    if isinstance(content, list):
        return parts_text(content)
    return content or ""


class RetryQuerier:
    """Runs the attempt loop; `max_retries` counts total attempts."""

    def __init__(self, max_retries: int = 3):
        if max_retries < 1:
            raise ConfigurationError("max_retries must be at least 1")
        self.max_retries = max_retries

    async def query(self, client: BoundLLMClient, messages: List[Message],
                    schema: Optional[Dict[str, Any]] = None,
                    validators: Sequence[ResponseValidator] = (),
                    aspect_ratio: Optional[str] = None,
                    cache_salt: str = "") -> QueryResult:
        base_system = ""
        rest = list(messages)
        if rest and rest[0].get("role") == "system":
            base_system = _system_text(rest.pop(0)["content"])

        kind, feedback = None, None
        for attempt in range(self.max_retries):
            preamble = self._preamble(base_system, schema, attempt, feedback)
            attempt_messages = ([{"role": "system", "content": preamble}] if preamble else []) + rest
            try:
                response = await client.complete(
                    attempt_messages,
                    json_mode=schema is not None,
                    aspect_ratio=aspect_ratio,
                    cache_salt=cache_salt,
                )
                content = extract_content(response)
                value = self._check(content, schema)
                for validator in validators:
                    await validator(content, value)
                if attempt:
                    logger.info(f"[Querier] succeeded on attempt {attempt + 1}")
                return QueryResult(value=value, content=content, response=response, attempts=attempt + 1)
            except ConfigurationError:
                raise
            except ModelResponseError as e:
                kind = e.kind or FeedbackKind.OPERATION_EXCEPTION.value
                feedback = str(e)
            except Exception as e:
                kind = FeedbackKind.OPERATION_EXCEPTION.value
                feedback = f"An error occurred while processing your response: {type(e).__name__}: {e}"
            logger.warning(f"⚠️ [Querier] attempt {attempt + 1}/{self.max_retries} failed ({kind})")

        raise RetryExhaustedError(self.max_retries, kind, feedback)

    @staticmethod
    def _check(content: ExtractedContent, schema: Optional[Dict[str, Any]]) -> Any:
        if schema is None:
            return content.data
        if content.kind != "text":
            raise ModelResponseError(
                f"Expected a JSON text answer but received {content.kind} content.",
                kind=FeedbackKind.NO_RESPONSE.value,
            )
        try:
            value = parse_json_response(content.data)
        except ValueError as e:
            snippet = content.data[:SNIPPET_LIMIT]
            raise ModelResponseError(
                f"Your response was not valid JSON. Parse error: {e}. "
                f"Response snippet: '{snippet}'",
                kind=FeedbackKind.JSON_PARSE_ERROR.value,
            ) from e
        errors = schema_errors(value, schema)
        if errors:
            details = "\n".join(f"- {error}" for error in errors)
            raise ModelResponseError(
                f"Your JSON did not match the required schema. Validation errors:\n{details}",
                kind=FeedbackKind.SCHEMA_VALIDATION_ERROR.value,
            )
        return value

    def _preamble(self, base_system: str, schema: Optional[Dict[str, Any]],
                  attempt: int, feedback: Optional[str]) -> str:
        footer = SCHEMA_FOOTER.format(schema=json.dumps(schema, indent=2)) if schema is not None else ""
        if attempt == 0:
            return "\n\n".join(p for p in (base_system, footer) if p)
        advisory = (
            f"SYSTEM ADVISORY: This is attempt {attempt + 1} of {self.max_retries}. "
            f"Your previous attempt was unsuccessful.\nSpecific feedback: {feedback}"
        )
        original = f"Original Task:\n{base_system}" if base_system else ""
        return "\n\n".join(p for p in (advisory, original, footer) if p)
