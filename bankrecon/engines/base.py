"""
Abstract base class for structured-extraction providers.
Every provider turns a PageContext into a PageCandidate.
"""

from abc import ABC, abstractmethod

from bankrecon.schemas.contracts import PageCandidate, PageContext


class ExtractionEngine(ABC):
    """
    Capability interface for text and vision extraction providers.

    Every engine must:
    1. Accept a PageContext (page text, optional image, optional prior candidate)
    2. Return a schema-valid PageCandidate
    3. Report its name
    4. Fail only with EngineError subclasses, never raw provider exceptions
    """

    @property
    @abstractmethod
    def engine_name(self) -> str:
        """Unique identifier, e.g. 'text:deepseek-chat' or 'vision:gpt-4o-mini'."""
        ...

    @property
    @abstractmethod
    def supports_images(self) -> bool:
        """Whether page images are sent to the model."""
        ...

    @abstractmethod
    async def extract(self, context: PageContext) -> PageCandidate:
        """Extract transactions and boundary balances for one page."""
        ...

    async def health_check(self) -> bool:
        return True


class EngineError(Exception):
    """Raised when an extraction engine fails."""

    error_code = "ERR_ENGINE"
    transient = False

    def __init__(self, engine_name: str, message: str, error_code: str = None):
        self.engine_name = engine_name
        self.message = message
        if error_code:
            self.error_code = error_code
        super().__init__(f"[{engine_name}] {self.error_code}: {message}")


class ExtractionTimeout(EngineError):
    error_code = "ERR_EXTRACTION_TIMEOUT"
    transient = True


class ExtractionSchemaViolation(EngineError):
    """The model answered, but not with JSON matching PageCandidate."""

    error_code = "ERR_EXTRACTION_SCHEMA"


class ProviderUnavailable(EngineError):
    """Provider unreachable, unconfigured, or retries exhausted."""

    error_code = "ERR_PROVIDER_UNAVAILABLE"
