from abc import ABC, abstractmethod
from typing import List, Optional

from embedrelay.models import SourceAttempt, StreamCandidate


class ExtractorError(Exception):
    """Base exception for all extractors."""
    pass


class InvalidContentIdentifier(ExtractorError):
    """The request does not describe a movie or a complete TV episode."""
    pass


class NavigationTimeout(ExtractorError):
    """A provider page did not settle within the navigation timeout."""
    pass


class NavigationFailure(ExtractorError):
    """A provider page could not be loaded."""
    pass


class NoCandidateFound(ExtractorError):
    """Every provider and fallback was tried without finding a stream."""

    def __init__(self, attempts: List[SourceAttempt]):
        self.attempts = attempts
        super().__init__(f"No stream found after trying {len(attempts)} source(s)")

    @property
    def attempted_sources(self) -> List[str]:
        return [attempt.source for attempt in self.attempts if not attempt.outcome.startswith("skipped")]


class BasePageExtractor(ABC):
    """Finds a stream on one provider page."""

    @abstractmethod
    async def extract(self, page_url: str) -> Optional[StreamCandidate]:
        """Return the stream found on the page, or None when the page yields nothing."""
        pass
