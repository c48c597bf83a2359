"""
Graph Builder Service for the Podcast Knowledge Graph Pipeline.
Assembles extraction records into a knowledge graph document and handles
JSON persistence of the episode corpus and the graph.
"""

import json
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Dict, Any, Optional

from pydantic import ValidationError

from models.entities import Episode, EpisodeExtraction
from models.graph_schema import ExtractionMetadata, KnowledgeGraph, SearchCorpus
from services.cross_episode_linker import CrossEpisodeLinker
from services.entity_extraction import ExtractionAccumulator
from services.errors import DataFileNotFoundError, PipelineError
from config import LinkerConfig, get_settings, get_logger

logger = get_logger(__name__)


def _read_json(path: str) -> Any:
    file_path = Path(path)
    if not file_path.exists():
        raise DataFileNotFoundError(f"File not found: {path}")
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise PipelineError(f"Invalid JSON in {path}: {e}") from e


def _write_json(data: Any, path: str) -> None:
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    with open(file_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


class GraphBuilder:
    """
    Service for building and persisting the knowledge graph.

    Features:
    - Cross-episode linking of extraction records
    - Merging re-extracted episodes into an existing graph
    - Flattened entity and relationship lists
    - Amazon product collection
    - Run metadata with id conflicts and dropped relationships
    - JSON load/save of corpus and graph documents
    """

    def __init__(self, linker_config: Optional[LinkerConfig] = None, use_index: bool = False):
        self.settings = get_settings()
        self.linker = CrossEpisodeLinker(
            linker_config or self.settings.linker_config(),
            use_index=use_index
        )

    def build_graph(
        self,
        extractions: List[EpisodeExtraction],
        accumulator: Optional[ExtractionAccumulator] = None,
        models_used: Optional[List[str]] = None
    ) -> KnowledgeGraph:
        """
        Assemble the knowledge graph for a set of extraction records.

        Args:
            extractions: Per-episode records in corpus order
            accumulator: Run state holding id conflicts and dropped counts
            models_used: Provider names, defaults to the extracted_by values

        Returns:
            KnowledgeGraph document
        """
        all_entities = [e for x in extractions for e in x.entities]
        all_relationships = [r for x in extractions for r in x.relationships]
        cross_relationships = self.linker.link(extractions)
        amazon_products = [e for e in all_entities if e.amazon_searchable]

        # Distinct (name, type) pairs across episodes, first occurrence wins
        unique_entities = dict(accumulator.global_entities) if accumulator else {}
        for entity in all_entities:
            unique_entities.setdefault(entity.link_key, entity)

        if models_used is None:
            models_used = []
            for extraction in extractions:
                if extraction.extracted_by and extraction.extracted_by not in models_used:
                    models_used.append(extraction.extracted_by)

        metadata = ExtractionMetadata(
            total_episodes=len(extractions),
            total_entities=len(all_entities),
            total_unique_entities=len(unique_entities),
            total_relationships=len(all_relationships),
            total_cross_episode_relationships=len(cross_relationships),
            models_used=models_used,
            extracted_at=datetime.now(timezone.utc).isoformat(),
            id_conflicts=list(accumulator.id_conflicts) if accumulator else [],
            dropped_relationships=accumulator.dropped_relationships if accumulator else 0
        )

        logger.info(
            f"Built graph: {metadata.total_episodes} episodes, {metadata.total_entities} entities "
            f"({metadata.total_unique_entities} unique), "
            f"{metadata.total_relationships} relationships, "
            f"{metadata.total_cross_episode_relationships} cross-episode links"
        )

        return KnowledgeGraph(
            episodes=extractions,
            all_entities=all_entities,
            all_relationships=all_relationships,
            cross_episode_relationships=cross_relationships,
            amazon_products=amazon_products,
            extraction_metadata=metadata
        )

    def merge_extractions(
        self,
        graph: KnowledgeGraph,
        extractions: List[EpisodeExtraction],
        accumulator: Optional[ExtractionAccumulator] = None
    ) -> KnowledgeGraph:
        """
        Fold re-extracted episodes into an existing graph.

        A new record replaces the graph's record with the same episode id, or
        failing that the same episode number; unmatched records are appended.
        Flattened lists, cross-episode links and metadata are then rebuilt.

        Args:
            graph: Previously built graph
            extractions: Fresh extraction records
            accumulator: Run state of the re-extraction

        Returns:
            New KnowledgeGraph; the input graph is not modified
        """
        merged = list(graph.episodes)
        replaced_ids = set()

        for extraction in extractions:
            index = next(
                (i for i, x in enumerate(merged) if x.episode_id == extraction.episode_id),
                None
            )
            if index is None and extraction.episode_number is not None:
                index = next(
                    (i for i, x in enumerate(merged) if x.episode_number == extraction.episode_number),
                    None
                )

            if index is None:
                merged.append(extraction)
                logger.info(f"Adding episode '{extraction.episode_title}' to graph")
            else:
                replaced_ids.add(merged[index].episode_id)
                merged[index] = extraction
                logger.info(f"Replacing episode '{extraction.episode_title}' in graph")

        previous = graph.extraction_metadata
        models_used = list(previous.models_used)
        for extraction in extractions:
            if extraction.extracted_by and extraction.extracted_by not in models_used:
                models_used.append(extraction.extracted_by)

        result = self.build_graph(merged, accumulator, models_used)

        replaced_ids.update(x.episode_id for x in extractions)
        kept_conflicts = [c for c in previous.id_conflicts if c.episode_id not in replaced_ids]
        result.extraction_metadata.id_conflicts = kept_conflicts + result.extraction_metadata.id_conflicts
        # Per-episode drop counts are not stored, so the total only grows
        result.extraction_metadata.dropped_relationships += previous.dropped_relationships

        return result

    def get_statistics(self, graph: KnowledgeGraph) -> Dict[str, Any]:
        """Summary counts for a graph."""
        type_counts = Counter(e.type.value for e in graph.all_entities)
        relationship_counts = Counter(r.relationship_type for r in graph.all_relationships)
        return {
            "episodes": len(graph.episodes),
            "entities": len(graph.all_entities),
            "unique_entities": graph.extraction_metadata.total_unique_entities,
            "relationships": len(graph.all_relationships),
            "cross_episode_relationships": len(graph.cross_episode_relationships),
            "amazon_products": len(graph.amazon_products),
            "enriched_entities": sum(1 for e in graph.all_entities if e.amazon_products),
            "entities_by_type": dict(type_counts),
            "top_relationship_types": dict(relationship_counts.most_common(10)),
            "id_conflicts": len(graph.extraction_metadata.id_conflicts),
            "dropped_relationships": graph.extraction_metadata.dropped_relationships,
            "models_used": graph.extraction_metadata.models_used,
        }


# Persistence

def load_corpus(path: str) -> List[Episode]:
    """
    Read the cleaned episode corpus.

    Args:
        path: JSON file of the form {"episodes": [...]}

    Returns:
        Episodes in file order; invalid records are skipped

    Raises:
        DataFileNotFoundError: If the file does not exist
    """
    data = _read_json(path)
    records = data.get("episodes", []) if isinstance(data, dict) else []

    episodes = []
    for record in records or []:
        try:
            episodes.append(Episode(**record))
        except (ValidationError, TypeError) as e:
            logger.warning(f"Skipping invalid episode record: {e}")

    logger.info(f"Loaded {len(episodes)} episodes from {path}")
    return episodes


def save_corpus(episodes: List[Episode], path: str, source: Optional[str] = None) -> None:
    """Write the episode corpus."""
    data: Dict[str, Any] = {}
    if source:
        data["source"] = source
    data["updated_at"] = datetime.now(timezone.utc).isoformat()
    data["total_episodes"] = len(episodes)
    data["episodes"] = [e.to_dict() for e in episodes]
    _write_json(data, path)
    logger.info(f"Saved {len(episodes)} episodes to {path}")


def save_graph(graph: KnowledgeGraph, path: str) -> None:
    """Write a knowledge graph document."""
    _write_json(graph.to_dict(), path)
    logger.info(f"Saved knowledge graph to {path}")


def load_graph(path: str) -> KnowledgeGraph:
    """
    Read a knowledge graph document.

    Raises:
        DataFileNotFoundError: If the file does not exist
        PipelineError: If the document is not a valid graph
    """
    data = _read_json(path)
    try:
        graph = KnowledgeGraph(**data) if isinstance(data, dict) else KnowledgeGraph()
    except ValidationError as e:
        raise PipelineError(f"Invalid knowledge graph in {path}: {e}") from e
    logger.info(f"Loaded graph with {len(graph.all_entities)} entities from {path}")
    return graph


def build_search_corpus(episodes: List[Episode], graph: Optional[KnowledgeGraph] = None) -> SearchCorpus:
    """Combine the episode corpus and a graph into a searchable corpus."""
    if graph is None:
        return SearchCorpus(episodes=episodes)
    return SearchCorpus(
        episodes=episodes,
        entities=graph.all_entities,
        relationships=graph.all_relationships
    )
