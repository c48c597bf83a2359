"""Data models for the Podcast Knowledge Graph Pipeline."""

from .entities import (
    Episode,
    Entity,
    EntityType,
    AmazonProduct,
    Relationship,
    EpisodeExtraction,
    CrossEpisodeRelationship,
    SearchResult,
    RecordKind,
    MatchType
)

from .graph_schema import (
    KnowledgeGraph,
    ExtractionMetadata,
    SearchCorpus,
    IdConflict
)

__all__ = [
    "Episode",
    "Entity",
    "EntityType",
    "AmazonProduct",
    "Relationship",
    "EpisodeExtraction",
    "CrossEpisodeRelationship",
    "SearchResult",
    "RecordKind",
    "MatchType",
    "KnowledgeGraph",
    "ExtractionMetadata",
    "SearchCorpus",
    "IdConflict"
]
