"""
Configuration module for the Podcast Knowledge Graph Pipeline.
Uses Pydantic for validation and environment variable loading.
"""

from typing import List, Dict, Optional
from functools import lru_cache
import logging

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # API Keys
    openai_api_key: str = Field(default="")
    anthropic_api_key: str = Field(default="")
    groq_api_key: str = Field(default="")
    gemini_api_key: str = Field(default="")
    serpapi_key: str = Field(default="")

    # Provider Models
    openai_model: str = Field(default="gpt-4o-mini")
    anthropic_model: str = Field(default="claude-3-5-sonnet-20241022")
    groq_model: str = Field(default="llama3-8b-8192")
    gemini_model: str = Field(default="gemini-1.5-pro")
    groq_api_base: str = Field(default="https://api.groq.com/openai/v1")
    gemini_api_base: str = Field(default="https://generativelanguage.googleapis.com/v1beta/openai/")

    # Logging
    log_level: str = Field(default="INFO")

    # Extraction Settings
    max_transcript_tokens: int = Field(default=2000)
    extraction_max_tokens: int = Field(default=4000)
    extraction_temperature: float = Field(default=0.1)
    min_episode_text_length: int = Field(default=100)
    default_confidence: float = Field(default=0.8, ge=0.0, le=1.0)

    # Rate Limiting
    max_concurrent_requests: int = Field(default=2)
    request_delay: float = Field(default=1.0)

    # Retry Settings
    max_retries: int = Field(default=3)
    retry_delay: float = Field(default=1.0)
    retry_exponential_base: float = Field(default=2.0)

    # Amazon Enrichment
    amazon_affiliate_tag: str = Field(default="chanelmunezer-20")
    amazon_max_results: int = Field(default=3)
    serpapi_url: str = Field(default="https://serpapi.com/search.json")
    serpapi_delay: float = Field(default=0.1)
    serpapi_timeout: float = Field(default=30.0)

    # Linking
    relationship_strength_threshold: float = Field(default=0.3, ge=0.0, le=1.0)

    # Paths
    data_dir: str = Field(default="./data")
    corpus_file: str = Field(default="./data/podcast-summary.json")

    def linker_config(self) -> "LinkerConfig":
        """Build the cross-episode linker configuration."""
        return LinkerConfig(strength_threshold=self.relationship_strength_threshold)

    def relevance_config(self) -> "RelevanceConfig":
        """Build the search relevance configuration."""
        return RelevanceConfig()

    def graph_path(self, provider: str) -> str:
        """Location of the knowledge graph written for a provider."""
        return f"{self.data_dir.rstrip('/')}/podcast-graph-{provider}.json"


class LogConfig:
    """Logging configuration."""

    @staticmethod
    def setup_logging(level: str = "INFO") -> logging.Logger:
        """Set up logging configuration."""
        log_level = getattr(logging, level.upper(), logging.INFO)

        # Create formatter
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        # Console handler
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(formatter)

        # Root logger
        root_logger = logging.getLogger()
        root_logger.setLevel(log_level)
        root_logger.addHandler(console_handler)

        # Suppress noisy loggers
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("openai").setLevel(logging.WARNING)
        logging.getLogger("anthropic").setLevel(logging.WARNING)

        return root_logger


# Relative significance of a shared entity when linking episodes
DEFAULT_TYPE_WEIGHTS: Dict[str, float] = {
    "person": 3.0,
    "place": 2.5,
    "product": 2.0,
    "media": 1.5,
}


class ThemeRule(BaseModel):
    """
    Maps a shared entity to a common theme label.

    A rule fires when every condition it sets holds for the entity.
    Unset conditions are ignored.
    """
    theme: str
    entity_type: Optional[str] = None
    context_contains: Optional[str] = None
    amazon_searchable: Optional[bool] = None


DEFAULT_THEME_RULES: List[ThemeRule] = [
    ThemeRule(theme="Entrepreneurship", entity_type="person"),
    ThemeRule(theme="Business Strategy", entity_type="place", context_contains="company"),
    ThemeRule(theme="Product Development", entity_type="product"),
    ThemeRule(theme="Business Literature", entity_type="media", context_contains="book"),
    ThemeRule(theme="Recommended Products", amazon_searchable=True),
]


class LinkerConfig(BaseModel):
    """Tunable tables and threshold for cross-episode linking."""
    type_weights: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_TYPE_WEIGHTS))
    default_weight: float = 1.0
    strength_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    theme_rules: List[ThemeRule] = Field(default_factory=lambda: list(DEFAULT_THEME_RULES))


# Base score per match type, highest to lowest precedence
DEFAULT_BASE_SCORES: Dict[str, float] = {
    "episode_title": 100.0,
    "entity_name": 90.0,
    "relationship_type": 80.0,
    "relationship_description": 80.0,
    "entity_context": 70.0,
    "episode_text": 60.0,
}

BASE_SCORE_ORDER = [
    "episode_title",
    "entity_name",
    "relationship_type",
    "entity_context",
    "episode_text",
]


class RelevanceConfig(BaseModel):
    """Score constants for the search relevance engine."""
    base_scores: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_BASE_SCORES))
    occurrence_bonus: float = 10.0
    max_occurrence_bonus: float = 50.0
    length_baseline: int = 100
    length_divisor: float = 100.0
    min_score: float = 1.0
    fuzzy_max_score: float = 0.9
    snippet_radius: int = 100

    @model_validator(mode="after")
    def check_ordering(self) -> "RelevanceConfig":
        missing = [k for k in DEFAULT_BASE_SCORES if k not in self.base_scores]
        if missing:
            raise ValueError(f"Missing base scores for: {', '.join(missing)}")
        if self.base_scores["relationship_type"] != self.base_scores["relationship_description"]:
            raise ValueError("Relationship type and description must share a base score")
        ordered = [self.base_scores[k] for k in BASE_SCORE_ORDER]
        if any(a <= b for a, b in zip(ordered, ordered[1:])):
            raise ValueError(
                "Base scores must be strictly decreasing: " + " > ".join(BASE_SCORE_ORDER)
            )
        if self.fuzzy_max_score >= self.min_score:
            raise ValueError("fuzzy_max_score must be below min_score")
        if self.length_divisor <= 0:
            raise ValueError("length_divisor must be positive")
        return self


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the specified name."""
    return logging.getLogger(name)
