"""
Structured-extraction engine for OpenAI-compatible chat completion APIs.

The same adapter serves the text tier (page text only) and the vision tier (page image +
text + prior candidate). Provider choice is configuration: base URL, key and model name.
"""

import asyncio
import base64
import json
import random
import time
from typing import Optional

import structlog
from openai import (
    APIConnectionError,
    APIError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    RateLimitError,
)
from pydantic import ValidationError

from bankrecon.config import settings
from bankrecon.engines.base import (
    EngineError,
    ExtractionEngine,
    ExtractionSchemaViolation,
    ExtractionTimeout,
    ProviderUnavailable,
)
from bankrecon.engines.prompts import BANK_STATEMENT_SYSTEM_PROMPT, VISION_REPAIR_PROMPT
from bankrecon.observability.metrics import model_call_errors_total, model_call_latency_seconds
from bankrecon.schemas.contracts import PageCandidate, PageContext

logger = structlog.get_logger(__name__)


def parse_candidate_json(engine_name: str, content: Optional[str]) -> PageCandidate:
    """
    Validate a model response against the PageCandidate schema.
    Anything other than a JSON object of the right shape is a schema violation.
    """
    if not content or not content.strip():
        raise ExtractionSchemaViolation(engine_name, "Empty response")
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as e:
        raise ExtractionSchemaViolation(engine_name, f"Response is not JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ExtractionSchemaViolation(engine_name, "Response JSON is not an object")
    if "transactions" not in payload:
        raise ExtractionSchemaViolation(engine_name, "Response has no 'transactions' key")
    try:
        return PageCandidate.model_validate(payload)
    except ValidationError as e:
        raise ExtractionSchemaViolation(
            engine_name, f"Response does not match schema: {e.error_count()} errors"
        ) from e


def backoff_delay(attempt: int) -> float:
    """Exponential backoff with jitter, capped at RETRY_MAX_DELAY."""
    base_wait = min(settings.RETRY_BASE_DELAY * (2 ** attempt), settings.RETRY_MAX_DELAY)
    return base_wait + random.uniform(0, settings.RETRY_JITTER)


class OpenAICompatibleEngine(ExtractionEngine):
    """Chat-completions engine with enforced JSON output, per-call timeout and retries."""

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str],
        model: str,
        timeout_seconds: float,
        use_images: bool = False,
        max_retries: Optional[int] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.use_images = use_images
        self.max_retries = max_retries or settings.MAX_API_RETRIES
        self._configured = bool(api_key) or client is not None
        self._client = client
        if self._client is None and self._configured:
            # SDK-level retries off: retry policy lives here
            self._client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url,
                timeout=timeout_seconds,
                max_retries=0,
            )

    @property
    def engine_name(self) -> str:
        kind = "vision" if self.use_images else "text"
        return f"{kind}:{self.model}"

    @property
    def supports_images(self) -> bool:
        return self.use_images

    async def health_check(self) -> bool:
        return self._configured

    def _build_messages(self, context: PageContext) -> list[dict]:
        if not self.use_images:
            return [
                {"role": "system", "content": BANK_STATEMENT_SYSTEM_PROMPT},
                {"role": "user", "content": context.raw_text or "(page has no text layer)"},
            ]

        prior = (
            context.prior_candidate.model_dump_json(by_alias=True)
            if context.prior_candidate is not None else "null"
        )
        content: list[dict] = [
            {"type": "text", "text": f"PAGE {context.page_number}"},
            {"type": "text", "text": "RAW_PAGE_TEXT:\n" + (context.raw_text or "")},
            {"type": "text", "text": "PREVIOUS_JSON:\n" + prior},
        ]
        if context.image_png:
            encoded = base64.b64encode(context.image_png).decode("ascii")
            content.append({
                "type": "image_url",
                "image_url": {"url": f"data:image/png;base64,{encoded}"},
            })
        return [
            {"role": "system", "content": VISION_REPAIR_PROMPT},
            {"role": "user", "content": content},
        ]

    async def _complete(self, messages: list[dict]) -> Optional[str]:
        response = await asyncio.wait_for(
            self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                response_format={"type": "json_object"},
                temperature=0,
            ),
            timeout=self.timeout_seconds,
        )
        if not response.choices:
            return None
        return response.choices[0].message.content

    async def _call_with_retry(self, messages: list[dict], page_number: int) -> Optional[str]:
        """Retry transient failures with exponential backoff; map everything to EngineError."""
        last_error: Optional[EngineError] = None

        for attempt in range(self.max_retries):
            started = time.monotonic()
            try:
                content = await self._complete(messages)
                model_call_latency_seconds.labels(engine_name=self.engine_name).observe(
                    time.monotonic() - started
                )
                return content
            except (asyncio.TimeoutError, APITimeoutError):
                last_error = ExtractionTimeout(
                    self.engine_name, f"No response within {self.timeout_seconds}s"
                )
            except RateLimitError as e:
                last_error = ProviderUnavailable(self.engine_name, f"Rate limited: {e}")
            except APIConnectionError as e:
                last_error = ProviderUnavailable(self.engine_name, f"Connection failed: {e}")
            except APIStatusError as e:
                if e.status_code < 500:
                    # 4xx other than 429 will not succeed on retry
                    raise ProviderUnavailable(
                        self.engine_name, f"HTTP {e.status_code}: {e.message}"
                    ) from e
                last_error = ProviderUnavailable(self.engine_name, f"HTTP {e.status_code}: {e.message}")
            except APIError as e:
                # Malformed or unparseable provider responses; a retry returns the same
                raise ProviderUnavailable(self.engine_name, f"{type(e).__name__}: {e.message}") from e

            model_call_errors_total.labels(
                engine_name=self.engine_name, error_code=last_error.error_code
            ).inc()

            if attempt < self.max_retries - 1:
                wait_time = backoff_delay(attempt)
                logger.warning(
                    "model_call_retry",
                    engine=self.engine_name,
                    page=page_number,
                    attempt=attempt + 1,
                    max_attempts=self.max_retries,
                    wait_seconds=round(wait_time, 2),
                    error=last_error.message,
                )
                await asyncio.sleep(wait_time)

        raise last_error

    async def extract(self, context: PageContext) -> PageCandidate:
        if not self._configured:
            raise ProviderUnavailable(self.engine_name, "Provider not configured (no API key)")

        messages = self._build_messages(context)
        content = await self._call_with_retry(messages, context.page_number)
        candidate = parse_candidate_json(self.engine_name, content)

        logger.debug(
            "model_extraction_complete",
            engine=self.engine_name,
            page=context.page_number,
            transactions=len(candidate.transactions),
        )
        return candidate


# ── Provider selection ───────────────────────────────────────

def build_text_engine() -> ExtractionEngine:
    return OpenAICompatibleEngine(
        base_url=settings.TEXT_MODEL_BASE_URL,
        api_key=settings.TEXT_MODEL_API_KEY,
        model=settings.TEXT_MODEL_NAME,
        timeout_seconds=settings.TEXT_MODEL_TIMEOUT_SECONDS,
    )


def build_vision_engines() -> list[ExtractionEngine]:
    """Primary vision provider first, then the secondary if configured."""
    engines: list[ExtractionEngine] = [
        OpenAICompatibleEngine(
            base_url=settings.VISION_MODEL_BASE_URL,
            api_key=settings.VISION_MODEL_API_KEY,
            model=settings.VISION_MODEL_NAME,
            timeout_seconds=settings.VISION_MODEL_TIMEOUT_SECONDS,
            use_images=True,
        )
    ]
    if settings.VISION_SECONDARY_API_KEY:
        engines.append(
            OpenAICompatibleEngine(
                base_url=settings.VISION_SECONDARY_BASE_URL,
                api_key=settings.VISION_SECONDARY_API_KEY,
                model=settings.VISION_SECONDARY_MODEL_NAME,
                timeout_seconds=settings.VISION_MODEL_TIMEOUT_SECONDS,
                use_images=True,
            )
        )
    return engines
