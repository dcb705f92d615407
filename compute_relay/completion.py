"""
CompletionClient - HTTP client for an OpenAI-compatible completion engine.
"""
import logging
import urllib.parse
from typing import Any, Dict, Optional

import requests
from pydantic import ValidationError

from .exceptions import CompletionError, ErrorKind
from .models import CompletionResponse, CompletionUsage

DEFAULT_TEMPERATURE = 0.7
DEFAULT_TIMEOUT = 120


def classify_status(status_code: Optional[int]) -> Optional[ErrorKind]:
    """
    Map an upstream HTTP status to a failure kind.

    Returns None for statuses that are passed through unclassified.
    """
    if status_code is None:
        return None
    if status_code == 429:
        return ErrorKind.RATE_LIMIT_EXCEEDED
    if status_code in (401, 403):
        return ErrorKind.AUTH_FAILED
    if status_code >= 500:
        return ErrorKind.PROVIDER_ERROR
    return None


class CompletionClient:
    """
    Client for the completion engine's ``/chat/completions`` endpoint.

    The client does not retry. Failures with a recognised status are raised as
    :class:`CompletionError` carrying an :class:`ErrorKind`, so the caller can
    decide on a retry policy; anything else propagates unchanged.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        default_model: str,
        max_tokens: int = 4000,
        timeout: int = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the CompletionClient

        Args:
            base_url: Base URL of the engine (e.g., "https://api.example.com/v1")
            api_key: Bearer token for the engine
            default_model: Model used when a request does not name one
            max_tokens: Token ceiling used when a request does not set one
            timeout: Request timeout in seconds
            session: Optional requests session to use
            logger: Optional logger instance

        Raises:
            ValueError: If base_url is not https (unless it's localhost/127.0.0.1)
        """
        parsed = urllib.parse.urlparse(base_url)
        host = parsed.hostname or ""
        is_local = host in ("localhost", "127.0.0.1", "::1")
        if parsed.scheme != "https" and not (is_local and parsed.scheme == "http"):
            raise ValueError(f"base_url must use https:// for security (got: {parsed.scheme}://)")

        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.default_model = default_model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger(__name__)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None
    ) -> CompletionResponse:
        """
        Generate a completion for a single user prompt

        Args:
            prompt: The prompt text
            model: Model identifier (defaults to the configured model)
            max_tokens: Token ceiling (defaults to the configured ceiling)
            temperature: Sampling temperature (defaults to 0.7)

        Returns:
            The generated content, the model that produced it and token usage

        Raises:
            CompletionError: For rate limiting, auth failures, server errors
                and malformed success responses
            requests.RequestException: For any other HTTP or network failure
        """
        model = model or self.default_model
        body = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": DEFAULT_TEMPERATURE if temperature is None else temperature,
        }
        self.logger.debug(f"Calling completion engine: model={model}, prompt_length={len(prompt)}")

        try:
            response = self.session.post(
                f"{self.base_url}/chat/completions",
                json=body,
                headers=self._headers(),
                timeout=self.timeout
            )
            response.raise_for_status()
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            self.logger.error(
                f"Completion engine error: status={status}, model={model}, body={self._error_body(e.response)}"
            )
            kind = classify_status(status)
            if kind is not None:
                raise CompletionError(f"Completion engine returned HTTP {status}", kind, status) from e
            raise

        return self._parse_response(response)

    def _parse_response(self, response: requests.Response) -> CompletionResponse:
        try:
            data = response.json()
        except ValueError as e:
            raise CompletionError(f"Invalid JSON from completion engine: {e}", ErrorKind.INVALID_RESPONSE) from e

        if not isinstance(data, dict) or "choices" not in data or "model" not in data:
            raise CompletionError(f"Unexpected completion response: {data!r}", ErrorKind.INVALID_RESPONSE)

        self.logger.debug(f"Completion received: model={data.get('model')}, usage={data.get('usage')}")

        content = ""
        choices = data.get("choices") or []
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message")
            if isinstance(message, dict):
                content = message.get("content") or ""

        try:
            return CompletionResponse(
                content=content,
                model=data["model"],
                usage=self._parse_usage(data.get("usage")),
            )
        except ValidationError as e:
            raise CompletionError(f"Unexpected completion response: {e}", ErrorKind.INVALID_RESPONSE) from e

    def _parse_usage(self, usage: Any) -> Optional[CompletionUsage]:
        """Token usage is advisory; an unusable block is dropped, not fatal"""
        if not isinstance(usage, dict):
            return None
        try:
            return CompletionUsage(**{k: v for k, v in usage.items() if v is not None})
        except ValidationError as e:
            self.logger.warning(f"Ignoring malformed usage from completion engine: {e}")
            return None

    @staticmethod
    def _error_body(response: Optional[requests.Response]) -> Any:
        if response is None:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text[:200]

    def close(self) -> None:
        """Close the underlying HTTP session."""
        self.session.close()
