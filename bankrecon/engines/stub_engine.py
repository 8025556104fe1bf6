"""
Stub extraction engine for testing pipeline plumbing.
Replays canned PageCandidates (or errors) per page without calling any provider.
"""

from typing import Optional, Union

from bankrecon.engines.base import ExtractionEngine
from bankrecon.schemas.contracts import PageCandidate, PageContext

Scripted = Union[PageCandidate, Exception]


class StubEngine(ExtractionEngine):
    """Fake adapter that returns scripted results keyed by page number."""

    def __init__(
        self,
        responses: Optional[dict[int, Scripted]] = None,
        default: Optional[Scripted] = None,
        name: str = "stub",
        images: bool = False,
    ):
        self.responses = responses or {}
        self.default = default if default is not None else PageCandidate()
        self._name = name
        self._images = images
        self.calls: list[PageContext] = []

    @property
    def engine_name(self) -> str:
        return self._name

    @property
    def supports_images(self) -> bool:
        return self._images

    async def extract(self, context: PageContext) -> PageCandidate:
        self.calls.append(context)
        result = self.responses.get(context.page_number, self.default)
        if isinstance(result, Exception):
            raise result
        return result

    async def health_check(self) -> bool:
        """Stub is always healthy."""
        return True
