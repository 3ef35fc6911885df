from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from embedrelay.models import ExtractionResult, SourceAttempt


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExtractionResponse(CamelModel):
    stream_url: str = Field(..., description="The extracted stream URL.")
    media_kind: Literal["hls", "direct"] = Field(..., description="Whether the stream is an HLS playlist.")
    content_kind: Literal["movie", "tv"]
    source_provider_name: str = Field(..., description="Provider the stream was found on.")
    page_url: str = Field(..., description="Provider page the stream was found on.")
    proxy_url: str = Field(..., description="The stream wrapped into a relay URL.")

    @classmethod
    def from_result(cls, result: ExtractionResult, proxy_url: str) -> "ExtractionResponse":
        return cls(
            stream_url=result.stream_url,
            media_kind=result.media_kind.value,
            content_kind=result.content_kind.value,
            source_provider_name=result.source_provider_name,
            page_url=result.page_url,
            proxy_url=proxy_url,
        )


class AttemptInfo(CamelModel):
    source: str
    page_url: Optional[str] = None
    outcome: str

    @classmethod
    def from_attempt(cls, attempt: SourceAttempt) -> "AttemptInfo":
        return cls(source=attempt.source, page_url=attempt.page_url, outcome=attempt.outcome)


class ExtractionFailure(CamelModel):
    error: str = "Could not extract stream URL"
    attempted_sources: List[str] = Field(default_factory=list)
    attempts: List[AttemptInfo] = Field(default_factory=list)
