"""
Model invocation client for target and judge models.

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. RATE LIMIT HANDLING WITH EXPONENTIAL BACKOFF (Feature: rate-limit-retry)
   - Automatic retry with exponential backoff when the endpoint returns 429 errors
   - Configurable max attempts, base delay, and max delay via config.py
   - Jitter added to prevent thundering herd on retries

2. COMPLETION CALLS (Feature: model-invocation)
   - One OpenAI-compatible client shared by target and judge calls
   - Blocking SDK call runs in a worker thread so the event loop stays free
   - Returns content, token usage and wall-clock latency
   - Every failure surfaces as ProviderError

3. FILE ATTACHMENTS (Feature: file-attachments)
   - FileAttachmentResolver turns an attachment into a file_ref content part
   - Attachments are skipped when file processing is "none", and in "vision"
     mode when the target model cannot take image input

==============================================================================
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TypeVar, Generic, Union

import httpx

from .errors import ProviderError
from .models import FileAttachment, FileProcessingMode, ModelParameters, OcrProvider
from . import config

import logging
logger = logging.getLogger(__name__)

T = TypeVar('T')


# ==============================================================================
# RETRY RESULT WRAPPER (Feature: rate-limit-retry)
# ==============================================================================
@dataclass
class RetryResult(Generic[T]):
    """Result from retry_with_backoff including retry statistics.

    Attributes:
        result: The actual return value from the wrapped function
        retry_count: Number of retries that occurred (0 = success on first try)
        had_rate_limit: True if any rate limit error was encountered
    """
    result: T
    retry_count: int
    had_rate_limit: bool


def _is_rate_limit(error: Exception) -> bool:
    error_str = str(error).lower()
    return (
        '429' in error_str or
        'rate' in error_str and 'limit' in error_str or
        'too many requests' in error_str
    )


# ==============================================================================
# EXPONENTIAL BACKOFF RETRY WRAPPER (Feature: rate-limit-retry)
# ==============================================================================
# Only rate limit errors are retried; anything else is raised immediately.
# Delay doubles each attempt, capped at RETRY_MAX_DELAY, plus 0-10% jitter.
# ==============================================================================
async def retry_with_backoff(func, *args, max_attempts=None, base_delay=None, on_retry=None, **kwargs) -> RetryResult:
    """
    Retry an async function with exponential backoff for rate limit errors.

    Args:
        func: The async function to call
        max_attempts: Maximum number of attempts (default from config)
        base_delay: Base delay in seconds (doubled each retry)
        on_retry: Optional async callback(attempt, max_attempts, wait_time, error)
        *args, **kwargs: Arguments to pass to the function

    Returns:
        RetryResult with the function's return value and retry statistics

    Raises:
        The last exception if all retries fail or if a non-rate-limit error occurs
    """
    if max_attempts is None:
        max_attempts = config.RETRY_MAX_ATTEMPTS
    if base_delay is None:
        base_delay = config.RETRY_BASE_DELAY

    last_exception = None
    retry_count = 0

    for attempt in range(max_attempts):
        try:
            result = await func(*args, **kwargs)
            return RetryResult(result=result, retry_count=retry_count, had_rate_limit=retry_count > 0)
        except Exception as e:
            if not _is_rate_limit(e):
                raise

            last_exception = e
            retry_count += 1

            if attempt < max_attempts - 1:
                delay = min(base_delay * (2 ** attempt), config.RETRY_MAX_DELAY)
                wait_time = delay + random.uniform(0, delay * 0.1)

                logger.warning(
                    f"Rate limit hit (attempt {attempt + 1}/{max_attempts}). "
                    f"Retrying in {wait_time:.1f}s... Error: {str(e)[:100]}"
                )

                if on_retry:
                    try:
                        await on_retry(attempt + 1, max_attempts, wait_time, str(e)[:100])
                    except Exception as cb_err:
                        logger.warning(f"on_retry callback failed: {cb_err}")

                await asyncio.sleep(wait_time)
            else:
                logger.error(f"Max retries ({max_attempts}) exceeded for rate limit error: {str(e)[:200]}")

    raise last_exception


# ==============================================================================
# COMPLETION RESULT
# ==============================================================================
@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass
class Completion:
    content: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    latency_ms: int = 0


Message = Dict[str, Any]


class FileAttachmentResolver:
    """Maps an attachment to a content part referencing the stored file.

    The engine never reads file bytes; text extraction and OCR happen on the
    provider side, steered by the file_processing / ocr_provider hints.
    """

    def resolve(self, attachment: FileAttachment) -> Dict[str, Any]:
        return {"type": "file_ref", "file_ref": {"fileId": attachment.file_id}}


class ModelClient:
    """OpenAI-compatible completion client for target and judge models."""

    def __init__(self, base_url: str = None, api_key: str = None, resolver: FileAttachmentResolver = None):
        self.base_url = base_url or config.LLM_BASE_URL
        self.api_key = api_key or config.LLM_API_KEY
        self.resolver = resolver or FileAttachmentResolver()
        self._client = None

    def _get_client(self):
        if self._client is None:
            from openai import OpenAI  # Lazy import to speed up server startup
            logger.info(f"Initializing OpenAI-compatible client (base_url: {self.base_url})")
            self._client = OpenAI(
                base_url=self.base_url,
                api_key=self.api_key,
                timeout=httpx.Timeout(config.MODEL_CALL_TIMEOUT_SECONDS),
                max_retries=0,
            )
        return self._client

    @staticmethod
    def supports_vision(model_id: Optional[str]) -> bool:
        model = (model_id or "").lower()
        return any(marker in model for marker in config.VISION_MODELS)

    def build_user_message(
        self,
        text: str,
        attachments: List[FileAttachment],
        model_id: str,
        file_processing: FileProcessingMode = FileProcessingMode.auto,
    ) -> Message:
        """Single user message; content becomes a part list when files are attached."""
        include = bool(attachments) and file_processing != FileProcessingMode.none
        if include and file_processing == FileProcessingMode.vision and not self.supports_vision(model_id):
            logger.warning(f"Model {model_id} has no vision support; sending {len(attachments)} attachment(s) as text only")
            include = False

        if not include:
            return {"role": "user", "content": text}

        content: List[Dict[str, Any]] = [{"type": "text", "text": text}]
        content.extend(self.resolver.resolve(a) for a in attachments)
        return {"role": "user", "content": content}

    async def complete(
        self,
        model_id: str,
        messages: List[Message],
        params: Optional[ModelParameters] = None,
        file_processing: Optional[FileProcessingMode] = None,
        ocr_provider: Optional[OcrProvider] = None,
    ) -> Completion:
        """Run one chat completion.

        Raises:
            ProviderError: on any transport, HTTP or response-shape failure
        """
        client = self._get_client()
        request: Dict[str, Any] = {"model": model_id, "messages": messages}
        if params is not None:
            request.update(params.to_request_kwargs())

        has_files = any(isinstance(m.get("content"), list) for m in messages)
        if has_files:
            extra_body: Dict[str, Union[str, None]] = {}
            if file_processing is not None:
                extra_body["file_processing"] = file_processing.value
            if ocr_provider is not None:
                extra_body["ocr_provider"] = ocr_provider.value
            if extra_body:
                request["extra_body"] = extra_body

        async def _call():
            return await asyncio.to_thread(client.chat.completions.create, **request)

        started = time.perf_counter()
        try:
            retry_result = await retry_with_backoff(_call)
        except Exception as e:
            logger.error(f"Completion call to {model_id} failed: {str(e)[:200]}")
            raise ProviderError(str(e), model_id=model_id) from e
        latency_ms = int((time.perf_counter() - started) * 1000)

        response = retry_result.result
        if not getattr(response, "choices", None):
            raise ProviderError(f"Model {model_id} returned no choices", model_id=model_id)

        content = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        token_usage = TokenUsage(
            prompt_tokens=(getattr(usage, "prompt_tokens", 0) or 0) if usage else 0,
            completion_tokens=(getattr(usage, "completion_tokens", 0) or 0) if usage else 0,
        )

        if retry_result.had_rate_limit:
            logger.info(f"Completion from {model_id} succeeded after {retry_result.retry_count} retr(ies)")

        return Completion(content=content, usage=token_usage, latency_ms=latency_ms)


# Client instance
_model_client: Optional[ModelClient] = None


def get_model_client() -> ModelClient:
    """Get or create the shared model client."""
    global _model_client
    if _model_client is None:
        _model_client = ModelClient()
    return _model_client
