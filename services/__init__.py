"""Services package for the Podcast Knowledge Graph Pipeline."""

from .identity import EpisodeIdMapper, IdRegistry
from .entity_extraction import EntityExtractor, ExtractionAccumulator
from .cross_episode_linker import CrossEpisodeLinker
from .search_engine import PodcastSearchEngine
from .amazon_enrichment import AmazonEnricher
from .graph_builder import GraphBuilder

__all__ = [
    "EpisodeIdMapper",
    "IdRegistry",
    "EntityExtractor",
    "ExtractionAccumulator",
    "CrossEpisodeLinker",
    "PodcastSearchEngine",
    "AmazonEnricher",
    "GraphBuilder"
]
