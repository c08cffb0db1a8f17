"""
Error taxonomy for pipeline execution.
=======================================
Configuration problems are fatal and never retried; model response problems
are retried with feedback by the querier; page errors stay inside the crawl.
"""
from typing import Optional


class RowpipeError(Exception):
    """Base class for every error raised by the pipeline."""


class ConfigurationError(RowpipeError):
    """Invalid configuration or an impossible routing request (never retried)."""


class PluginExecutionError(RowpipeError):
    """A plugin failed; aborts the owning row."""

    def __init__(self, plugin: str, message: str):
        super().__init__(f"[{plugin}] {message}")
        self.plugin = plugin


class ModelResponseError(RowpipeError):
    """The model returned nothing usable (empty, malformed or off-schema)."""

    def __init__(self, message: str, kind: Optional[str] = None):
        super().__init__(message)
        self.kind = kind


class RetryExhaustedError(ModelResponseError):
    """All attempts of the retry querier failed."""

    def __init__(self, attempts: int, kind: str, feedback: str):
        super().__init__(
            f"Failed after {attempts} attempt(s). Last failure ({kind}): {feedback}",
            kind=kind,
        )
        self.attempts = attempts
        self.feedback = feedback


class ExternalVerificationFailure(ModelResponseError):
    """A verification command exited non-zero."""

    def __init__(self, command: str, returncode: int, output: str):
        super().__init__(
            f"Verification command failed (exit {returncode}): {command}\n{output}",
            kind="VERIFICATION_FAILED",
        )
        self.command = command
        self.returncode = returncode
        self.output = output


class CrawlPageError(RowpipeError):
    """A single page of a crawl could not be visited or extracted."""

    def __init__(self, url: str, message: str):
        super().__init__(f"{url}: {message}")
        self.url = url


class NetworkError(RowpipeError):
    """HTTP fetch failed."""

    def __init__(self, url: str, message: str, status: Optional[int] = None):
        super().__init__(f"{url}: {message}")
        self.url = url
        self.status = status


class StepTimeoutError(RowpipeError):
    """A step exceeded its time budget, embedded retries included."""

    def __init__(self, step_index: int, timeout: float):
        super().__init__(f"Step {step_index + 1} timed out after {timeout}s")
        self.step_index = step_index
        self.timeout = timeout
