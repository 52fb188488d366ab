from __future__ import annotations

from pydantic import BaseModel, Field

from src.models.enums import GovernmentLevel, ParserKind


class SourceDescriptor(BaseModel):
    """An external endpoint polled by the ingestion pipeline.

    ``parser`` selects the parse function; ``headers`` and ``params`` carry
    optional auth or query configuration (e.g. an ``api-key`` parameter).
    """

    model_config = {"frozen": True}

    key: str = Field(min_length=1)
    url: str = Field(min_length=1)
    parser: ParserKind
    government_level: GovernmentLevel | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    params: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True
    timeout_seconds: float | None = Field(default=None, gt=0)
