import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from embedrelay.browser.session import BrowserSessionError
from embedrelay.extractors.base import BasePageExtractor, ExtractorError, NoCandidateFound
from embedrelay.extractors.page import PageStreamExtractor
from embedrelay.extractors.providers import ProviderSource, sources_for
from embedrelay.models import ExtractionRequest, ExtractionResult, SourceAttempt

logger = logging.getLogger(__name__)


class ResolverState(str, Enum):
    PENDING = "pending"
    TRYING_SOURCE = "trying_source"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


@dataclass
class ResolutionProgress:
    """Where a resolution run stands: its state, the source index and what happened so far."""

    state: ResolverState = ResolverState.PENDING
    index: int = -1
    attempts: List[SourceAttempt] = field(default_factory=list)
    result: Optional[ExtractionResult] = None


class MultiSourceResolver:
    """
    Tries provider sources one after another, in priority order, until one yields a stream.

    First success wins; sources are never raced in parallel so only one page context per request is
    alive at a time.
    """

    def __init__(
        self,
        extractor: Optional[BasePageExtractor] = None,
        providers: Optional[Sequence[ProviderSource]] = None,
    ):
        self.extractor = extractor or PageStreamExtractor()
        self.providers = providers

    async def resolve(self, request: ExtractionRequest) -> ExtractionResult:
        """
        Resolve a request into a single stream.

        Args:
            request (ExtractionRequest): The validated extraction request.

        Returns:
            ExtractionResult: The stream of the first source that yielded one.

        Raises:
            NoCandidateFound: If every source failed or yielded nothing.
        """
        progress = ResolutionProgress()
        sources = sources_for(request, self.providers)
        tried_urls = set()

        progress.state = ResolverState.TRYING_SOURCE
        for index, source in enumerate(sources):
            progress.index = index
            page_url = source.build_url(request)
            if not page_url:
                logger.info(f"Skipping {source.name}: it cannot serve {request.content_kind.value} content")
                progress.attempts.append(SourceAttempt(source.name, None, "skipped: unsupported content"))
                continue
            if page_url in tried_urls:
                progress.attempts.append(SourceAttempt(source.name, page_url, "skipped: page already tried"))
                continue
            tried_urls.add(page_url)

            logger.info(f"Trying source {source.name} ({progress.index + 1}/{len(sources)}): {page_url}")
            try:
                candidate = await self.extractor.extract(page_url)
            except BrowserSessionError:
                raise
            except ExtractorError as e:
                logger.warning(f"Source {source.name} failed: {e}")
                progress.attempts.append(SourceAttempt(source.name, page_url, f"failed: {e}"))
                continue
            except Exception as e:
                logger.exception(f"Unexpected error while trying source {source.name}: {e}")
                progress.attempts.append(SourceAttempt(source.name, page_url, f"error: {e}"))
                continue

            if candidate is None:
                logger.warning(f"Source {source.name} yielded no stream")
                progress.attempts.append(SourceAttempt(source.name, page_url, "no stream found"))
                continue

            progress.attempts.append(SourceAttempt(source.name, page_url, "succeeded"))
            progress.state = ResolverState.SUCCEEDED
            progress.result = ExtractionResult(
                stream_url=candidate.url,
                media_kind=candidate.media_kind,
                content_kind=request.content_kind,
                source_provider_name=source.name,
                page_url=page_url,
            )
            logger.info(
                f"Stream extracted from {source.name} via {candidate.origin}: {candidate.url} "
                f"({candidate.media_kind.value})"
            )
            return progress.result

        progress.state = ResolverState.EXHAUSTED
        logger.error(f"Could not extract a stream; attempted sources: {[a.source for a in progress.attempts]}")
        raise NoCandidateFound(progress.attempts)
