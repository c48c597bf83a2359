"""
Knowledge graph document schema.
Defines the aggregated output written after extraction and linking, and the
flattened corpus the search engine reads.
"""

from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator

from .entities import (
    Episode,
    Entity,
    Relationship,
    EpisodeExtraction,
    CrossEpisodeRelationship
)


class IdConflict(BaseModel):
    """Two different entities derived the same identifier."""
    candidate_id: str
    assigned_id: str
    existing_name: str
    conflicting_name: str
    episode_id: str


class ExtractionMetadata(BaseModel):
    """Run summary stored alongside the graph."""
    total_episodes: int = 0
    total_entities: int = 0
    total_unique_entities: int = 0
    total_relationships: int = 0
    total_cross_episode_relationships: int = 0
    models_used: List[str] = Field(default_factory=list)
    extracted_at: str = ""
    id_conflicts: List[IdConflict] = Field(default_factory=list)
    dropped_relationships: int = 0


class KnowledgeGraph(BaseModel):
    """
    The knowledge graph document produced by one pipeline run.

    Attributes:
        episodes: Per-episode extraction records
        all_entities: Entities of every episode, flattened
        all_relationships: Relationships of every episode, flattened
        cross_episode_relationships: Episode pairs linked by shared entities
        amazon_products: Entities flagged as Amazon-searchable
        extraction_metadata: Counts and run details
    """
    episodes: List[EpisodeExtraction] = Field(default_factory=list)
    all_entities: List[Entity] = Field(default_factory=list)
    all_relationships: List[Relationship] = Field(default_factory=list)
    cross_episode_relationships: List[CrossEpisodeRelationship] = Field(default_factory=list)
    amazon_products: List[Entity] = Field(default_factory=list)
    extraction_metadata: ExtractionMetadata = Field(default_factory=ExtractionMetadata)

    @field_validator(
        'episodes', 'all_entities', 'all_relationships',
        'cross_episode_relationships', 'amazon_products',
        mode='before'
    )
    @classmethod
    def default_empty(cls, v: Any) -> Any:
        if not isinstance(v, list):
            return []
        return v

    def entities_for(self, episode_id: str) -> List[Entity]:
        """Entities owned by an episode."""
        return [e for e in self.all_entities if e.episode_id == episode_id]

    def relationships_for(self, episode_id: str) -> List[Relationship]:
        """Relationships owned by an episode."""
        return [r for r in self.all_relationships if r.episode_id == episode_id]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.model_dump(mode="json", exclude_none=True)


class SearchCorpus(BaseModel):
    """Flattened records the search engine ranks over."""
    episodes: List[Episode] = Field(default_factory=list)
    entities: List[Entity] = Field(default_factory=list)
    relationships: List[Relationship] = Field(default_factory=list)

    @field_validator('episodes', 'entities', 'relationships', mode='before')
    @classmethod
    def default_empty(cls, v: Any) -> Any:
        if not isinstance(v, list):
            return []
        return v

    @property
    def is_empty(self) -> bool:
        return not (self.episodes or self.entities or self.relationships)

    def find_episode(self, episode_id: str) -> Optional[Episode]:
        """Look up an episode by id."""
        for episode in self.episodes:
            if episode.episode_id == episode_id:
                return episode
        return None
