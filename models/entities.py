"""
Entity data models for the Podcast Knowledge Graph Pipeline.
Defines Pydantic models for episodes, entities, relationships and search results.
"""

from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum


class EntityType(str, Enum):
    """Types of entities that can be extracted from podcasts."""
    PERSON = "person"
    PLACE = "place"
    EVENT = "event"
    OBJECT = "object"
    MEDIA = "media"
    PRODUCT = "product"


class RecordKind(str, Enum):
    """Kinds of corpus records a search can match."""
    EPISODE = "episode"
    ENTITY = "entity"
    RELATIONSHIP = "relationship"


class MatchType(str, Enum):
    """Which field of a record produced a search match."""
    EPISODE_TITLE = "episode_title"
    EPISODE_TEXT = "episode_text"
    ENTITY_NAME = "entity_name"
    ENTITY_CONTEXT = "entity_context"
    RELATIONSHIP_TYPE = "relationship_type"
    RELATIONSHIP_DESCRIPTION = "relationship_description"
    FUZZY = "fuzzy"


class Episode(BaseModel):
    """
    Represents a cleaned podcast episode.

    Attributes:
        episode_id: Stable identifier, assigned by the id mapper
        title: Episode title
        text: Cleaned transcript text
        episode_number: Sequential number when the site publishes one
        date: Publish date as scraped
        url: Source page URL
    """
    title: str
    text: str = ""
    episode_id: Optional[str] = None
    episode_number: Optional[int] = None
    date: Optional[str] = None
    url: Optional[str] = None

    @field_validator('text', mode='before')
    @classmethod
    def text_not_null(cls, v: Any) -> str:
        return v or ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.model_dump(exclude_none=True)


class AmazonProduct(BaseModel):
    """An affiliate-tagged Amazon product candidate for an entity."""
    url: str
    title: str
    thumbnail: Optional[str] = None


class Entity(BaseModel):
    """
    Represents an entity extracted from one episode.

    Attributes:
        id: Derived identifier (type, normalized name, episode id prefix)
        episode_id: Owning episode
        name: Display name
        type: Entity category
        context: Why the entity matters in the episode
        confidence_score: Extraction confidence (0.0-1.0)
        amazon_searchable: Whether the entity can be bought on Amazon
        amazon_keywords: Extra search keywords suggested by the LLM
        amazon_products: Resolved Amazon product links
    """
    id: str
    episode_id: str
    name: str
    type: EntityType
    context: str = ""
    confidence_score: float = Field(ge=0.0, le=1.0, default=0.8)
    amazon_searchable: bool = False
    amazon_keywords: Optional[List[str]] = None
    amazon_products: Optional[List[AmazonProduct]] = None

    @field_validator('name')
    @classmethod
    def name_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Entity name cannot be empty")
        return v.strip()

    @field_validator('type', mode='before')
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator('context', mode='before')
    @classmethod
    def context_not_null(cls, v: Any) -> str:
        return v or ""

    @property
    def link_key(self) -> tuple:
        """Key under which the same real-world entity matches across episodes."""
        return (self.name.lower(), self.type)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.model_dump(mode="json", exclude_none=True)


class Relationship(BaseModel):
    """
    A typed connection between two entities of the same episode.

    Entity names are kept next to the ids so the relationship stays readable
    even when an id can no longer be resolved.
    """
    id: str
    episode_id: str
    entity1_id: str
    entity1_name: str
    entity2_id: str
    entity2_name: str
    relationship_type: str
    description: str = ""
    confidence_score: float = Field(ge=0.0, le=1.0, default=0.8)
    is_cross_episode: bool = False

    @field_validator('description', 'relationship_type', mode='before')
    @classmethod
    def text_not_null(cls, v: Any) -> str:
        return v or ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.model_dump(mode="json", exclude_none=True)


class EpisodeExtraction(BaseModel):
    """
    Entities and relationships extracted from one episode by one provider.

    Missing or null entity/relationship arrays are read as empty lists.
    """
    episode_id: str
    episode_title: str
    episode_number: Optional[int] = None
    date: Optional[str] = None
    url: Optional[str] = None
    entities: List[Entity] = Field(default_factory=list)
    relationships: List[Relationship] = Field(default_factory=list)
    extracted_by: str = ""
    extracted_at: str = ""

    @field_validator('entities', 'relationships', mode='before')
    @classmethod
    def default_empty(cls, v: Any) -> Any:
        if not isinstance(v, list):
            return []
        return v

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.model_dump(mode="json", exclude_none=True)


class CrossEpisodeRelationship(BaseModel):
    """
    A link between two episodes that share entities.

    Attributes:
        id: cross_<episode1_id>_<episode2_id>
        shared_entities: Names of the shared entities, as spelled in episode 1
        relationship_strength: Weighted overlap score (0.0-1.0)
        common_themes: Heuristic theme labels derived from the shared entities
    """
    id: str
    episode1_id: str
    episode1_title: str
    episode2_id: str
    episode2_title: str
    shared_entities: List[str] = Field(default_factory=list)
    relationship_strength: float = Field(ge=0.0, le=1.0)
    common_themes: List[str] = Field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.model_dump(mode="json")


class SearchResult(BaseModel):
    """
    One ranked search hit, attributed to an episode.

    Attributes:
        episode_id: Owning episode of the matched record
        episode_title: Human-readable title of the hit
        record_id: Id of the record that matched
        record_kind: Whether an episode, entity or relationship matched
        match_type: Field that matched
        match_details: Snippet describing the match
        entities_linked: All entities of the episode
        relationships_linked: All relationships of the episode
        relevance_score: Ranking score
    """
    episode_id: str
    episode_title: str
    episode_number: Optional[int] = None
    episode_url: Optional[str] = None
    episode_date: Optional[str] = None
    record_id: str
    record_kind: RecordKind
    match_type: MatchType
    match_details: str = ""
    entities_linked: List[Entity] = Field(default_factory=list)
    relationships_linked: List[Relationship] = Field(default_factory=list)
    relevance_score: float

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.model_dump(mode="json", exclude_none=True)
