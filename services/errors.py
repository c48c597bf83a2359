"""Pipeline error classes."""

from typing import Optional


class PipelineError(Exception):
    """Base error for the podcast knowledge graph pipeline."""

    pass


class ExtractionError(PipelineError):
    """Base error for extraction failures."""

    pass


class ProviderError(ExtractionError):
    """Error from an LLM provider (API error, rate limit, etc.)."""

    def __init__(self, message: str, provider: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class PayloadParseError(ExtractionError):
    """LLM response could not be read as an extraction payload."""

    pass


class UnsupportedProviderError(PipelineError):
    """Requested provider is unknown or has no API key configured."""

    pass


class EnrichmentError(PipelineError):
    """Amazon product lookup failed."""

    pass


class DataFileNotFoundError(PipelineError):
    """Corpus or graph file does not exist."""

    pass
