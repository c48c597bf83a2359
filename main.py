"""
Podcast Knowledge Graph Pipeline - Main Orchestrator

This is the main entry point for the podcast knowledge graph pipeline.
It coordinates id assignment, entity extraction, Amazon enrichment, graph
building and search.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import List, Dict, Any, Optional, Tuple, Callable
import argparse

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from config import Settings, get_settings, LogConfig, get_logger
from models.entities import Episode, EpisodeExtraction, SearchResult
from models.graph_schema import KnowledgeGraph
from services.identity import EpisodeIdMapper
from services.entity_extraction import EntityExtractor, ExtractionAccumulator
from services.amazon_enrichment import AmazonEnricher
from services.graph_builder import (
    GraphBuilder,
    build_search_corpus,
    load_corpus,
    load_graph,
    save_corpus,
    save_graph
)
from services.search_engine import PodcastSearchEngine
from services.errors import PipelineError, UnsupportedProviderError

# Initialize logging
settings = get_settings()
LogConfig.setup_logging(settings.log_level)
logger = get_logger(__name__)


class PodcastKnowledgeSystem:
    """
    Main orchestrator for the Podcast Knowledge Graph Pipeline.

    Coordinates the entire pipeline:
    1. Stable episode id assignment
    2. Entity and relationship extraction with an LLM provider
    3. Amazon product enrichment
    4. Cross-episode linking and graph assembly
    5. Ranked search over episodes, entities and relationships
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

        # Initialize services
        self.entity_extractor = EntityExtractor(self.settings)
        self.enricher = AmazonEnricher(self.settings)
        self.graph_builder = GraphBuilder(self.settings.linker_config())

    def assign_episode_ids(
        self,
        episodes: List[Episode],
        existing_graph_paths: List[str] = None
    ) -> Tuple[List[Episode], Dict[str, int]]:
        """
        Give every episode a stable identifier.

        Ids found in earlier graph files or already present on the episodes
        are reused; the rest are minted.

        Args:
            episodes: Corpus episodes
            existing_graph_paths: Graph documents from earlier runs

        Returns:
            (episodes with ids, mapper report)
        """
        mapper = EpisodeIdMapper()

        for path in existing_graph_paths or []:
            try:
                graph = load_graph(path)
            except PipelineError as e:
                logger.warning(f"Skipping existing graph {path}: {e}")
                continue
            mapper.load_existing([x.model_dump() for x in graph.episodes])

        mapper.load_existing([e.model_dump() for e in episodes if e.episode_id])

        assigned = mapper.assign_ids(episodes)
        report = mapper.report()
        logger.info(f"Assigned episode ids: {report['reused']} reused, {report['new']} new")
        return assigned, report

    async def process_episodes(
        self,
        episodes: List[Episode],
        provider: str,
        limit: int = None,
        enrich: bool = True,
        progress_callback: Callable = None
    ) -> KnowledgeGraph:
        """
        Complete pipeline for a set of episodes.

        Args:
            episodes: Episodes with ids assigned
            provider: LLM provider name
            limit: Only process the first N episodes
            enrich: Whether to run Amazon enrichment
            progress_callback: Optional callback receiving extraction progress

        Returns:
            KnowledgeGraph for the processed episodes
        """
        if limit is not None:
            episodes = episodes[:limit]

        logger.info(f"Processing {len(episodes)} episodes with {provider}")
        accumulator = ExtractionAccumulator()

        extractions = await self.entity_extractor.extract_all(
            episodes,
            provider,
            accumulator,
            progress_callback=progress_callback
        )

        if enrich:
            extractions = await self.enricher.enrich_extractions(extractions)

        return self.graph_builder.build_graph(extractions, accumulator, models_used=[provider])

    async def process_with_all_providers(
        self,
        episodes: List[Episode],
        limit: int = None,
        enrich: bool = True,
        providers: List[str] = None
    ) -> Dict[str, KnowledgeGraph]:
        """
        Run every configured provider over the episodes, one graph each.

        Providers are run side by side on one episode at a time, with
        `request_delay` between episodes.

        Args:
            episodes: Episodes with ids assigned
            limit: Only process the first N episodes
            enrich: Whether to run Amazon enrichment
            providers: Provider names (all configured ones if omitted)

        Returns:
            KnowledgeGraph per provider name

        Raises:
            UnsupportedProviderError: If no provider is configured
        """
        if providers:
            chosen = [p.lower() for p in providers]
        else:
            chosen = [p.value for p in self.entity_extractor.available_providers()]
        if not chosen:
            raise UnsupportedProviderError("No LLM provider API key configured")

        if limit is not None:
            episodes = episodes[:limit]
        eligible = [e for e in episodes if self.entity_extractor.has_enough_text(e)]

        logger.info(f"Processing {len(eligible)} episodes with {', '.join(chosen)}")
        accumulators: Dict[str, ExtractionAccumulator] = {}
        extractions: Dict[str, List[EpisodeExtraction]] = {p: [] for p in chosen}

        for i, episode in enumerate(eligible):
            results = await self.entity_extractor.extract_with_all_providers(
                episode, accumulators, chosen
            )
            for provider, extraction in results.items():
                extractions[provider].append(extraction)

            if i + 1 < len(eligible):
                await asyncio.sleep(self.settings.request_delay)

        graphs: Dict[str, KnowledgeGraph] = {}
        for provider in chosen:
            provider_extractions = extractions[provider]
            if enrich:
                provider_extractions = await self.enricher.enrich_extractions(provider_extractions)
            graphs[provider] = self.graph_builder.build_graph(
                provider_extractions,
                accumulators.get(provider),
                models_used=[provider]
            )
            logger.info(f"{provider}: {len(provider_extractions)}/{len(eligible)} episodes extracted")

        return graphs

    async def reprocess_episodes(
        self,
        episode_numbers: List[int],
        provider: str,
        episodes: List[Episode],
        graph: KnowledgeGraph,
        enrich: bool = True
    ) -> KnowledgeGraph:
        """
        Re-extract selected episodes and merge them into an existing graph.

        Args:
            episode_numbers: Episode numbers to re-extract
            provider: LLM provider name
            episodes: Corpus episodes
            graph: Graph the new records are merged into
            enrich: Whether to run Amazon enrichment

        Returns:
            Merged KnowledgeGraph

        Raises:
            PipelineError: If no corpus episode has one of the numbers
        """
        wanted = set(episode_numbers)
        selected = [e for e in episodes if e.episode_number in wanted]
        if not selected:
            raise PipelineError(f"No episodes numbered {episode_numbers} in the corpus")

        missing = wanted - {e.episode_number for e in selected}
        if missing:
            logger.warning(f"Episodes not found in corpus: {sorted(missing)}")

        logger.info(f"Reprocessing {len(selected)} episodes with {provider}")
        accumulator = ExtractionAccumulator()
        extractions = await self.entity_extractor.extract_all(selected, provider, accumulator)

        if enrich:
            extractions = await self.enricher.enrich_extractions(extractions)

        return self.graph_builder.merge_extractions(graph, extractions, accumulator)

    def search(
        self,
        query: str,
        episodes: List[Episode],
        graph: Optional[KnowledgeGraph] = None,
        limit: int = None
    ) -> List[SearchResult]:
        """
        Search the corpus.

        Args:
            query: Free-text search term
            episodes: Corpus episodes
            graph: Knowledge graph whose entities and relationships are searched too
            limit: Maximum number of results

        Returns:
            Ranked results, one per episode
        """
        corpus = build_search_corpus(episodes, graph)
        engine = PodcastSearchEngine(corpus, self.settings.relevance_config())
        return engine.search(query, limit)

    def get_statistics(self, graph: KnowledgeGraph) -> Dict[str, Any]:
        """Get graph statistics."""
        return self.graph_builder.get_statistics(graph)


def _print_results(query: str, results: List[SearchResult]) -> None:
    print("\n" + "="*60)
    print(f"Search: {query}")
    print("="*60)
    if not results:
        print("\nNo results found")
    for i, result in enumerate(results, 1):
        number = f"#{result.episode_number} " if result.episode_number is not None else ""
        print(f"\n{i}. {number}{result.episode_title} (score {result.relevance_score:.1f})")
        print(f"   {result.match_type.value}: {result.match_details}")
        if result.episode_url:
            print(f"   {result.episode_url}")
    print("="*60)


def _parse_episode_numbers(value: str) -> List[int]:
    try:
        return [int(part) for part in value.split(",") if part.strip()]
    except ValueError:
        raise PipelineError(f"Invalid episode numbers: {value}")


def _load_graph_if_present(path: str) -> Optional[KnowledgeGraph]:
    try:
        return load_graph(path)
    except PipelineError as e:
        logger.warning(f"Searching episodes only: {e}")
        return None


# CLI Interface
def main():
    parser = argparse.ArgumentParser(
        description="Podcast Knowledge Graph Pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Assign stable ids to the corpus
  python main.py --assign-ids

  # Extract entities with a provider
  python main.py --extract openai --limit 10

  # Extract with every configured provider, one graph each
  python main.py --extract all --limit 10

  # Re-extract episodes 12 and 40 and merge them into the saved graph
  python main.py --reprocess 12,40 --provider gemini

  # Search episodes, entities and relationships
  python main.py --search "Jeff Bezos"

  # Get statistics
  python main.py --stats --provider openai
        """
    )

    parser.add_argument("--assign-ids", action="store_true", help="Assign stable episode ids")
    parser.add_argument("--extract", metavar="PROVIDER", help="Extract entities (openai, anthropic, groq, gemini or all)")
    parser.add_argument("--reprocess", metavar="N[,N]", help="Re-extract episode numbers into an existing graph")
    parser.add_argument("--search", metavar="TERM", help="Search the corpus")
    parser.add_argument("--stats", action="store_true", help="Show graph statistics")

    parser.add_argument("--corpus", help="Episode corpus JSON file")
    parser.add_argument("--graph", help="Knowledge graph JSON file")
    parser.add_argument("--provider", default="openai", help="Provider whose graph is read or reprocessed")
    parser.add_argument("--limit", type=int, help="Maximum number of episodes or results")
    parser.add_argument("--no-enrich", action="store_true", help="Skip Amazon enrichment")

    args = parser.parse_args()

    system = PodcastKnowledgeSystem()
    corpus_path = args.corpus or settings.corpus_file

    try:
        if args.assign_ids:
            episodes = load_corpus(corpus_path)
            existing = [settings.graph_path(p) for p in ("openai", "anthropic", "groq", "gemini")]
            episodes, report = system.assign_episode_ids(
                episodes,
                [p for p in existing if Path(p).exists()]
            )
            save_corpus(episodes, corpus_path)
            print(json.dumps(report, indent=2))

        elif args.extract and args.extract.lower() == "all":
            episodes = load_corpus(corpus_path)
            graphs = asyncio.run(system.process_with_all_providers(
                episodes,
                limit=args.limit,
                enrich=not args.no_enrich
            ))
            for provider, graph in graphs.items():
                save_graph(graph, settings.graph_path(provider))
            print(json.dumps(
                {provider: system.get_statistics(graph) for provider, graph in graphs.items()},
                indent=2
            ))

        elif args.extract:
            episodes = load_corpus(corpus_path)
            graph = asyncio.run(system.process_episodes(
                episodes,
                args.extract,
                limit=args.limit,
                enrich=not args.no_enrich
            ))
            output = args.graph or settings.graph_path(args.extract)
            save_graph(graph, output)
            print(json.dumps(system.get_statistics(graph), indent=2))

        elif args.reprocess:
            episode_numbers = _parse_episode_numbers(args.reprocess)
            episodes = load_corpus(corpus_path)
            graph_path = args.graph or settings.graph_path(args.provider)
            graph = asyncio.run(system.reprocess_episodes(
                episode_numbers,
                args.provider,
                episodes,
                load_graph(graph_path),
                enrich=not args.no_enrich
            ))
            save_graph(graph, graph_path)
            print(json.dumps(system.get_statistics(graph), indent=2))

        elif args.search:
            episodes = load_corpus(corpus_path)
            graph = _load_graph_if_present(args.graph or settings.graph_path(args.provider))
            results = system.search(args.search, episodes, graph, limit=args.limit)
            _print_results(args.search, results)

        elif args.stats:
            graph = load_graph(args.graph or settings.graph_path(args.provider))
            stats = system.get_statistics(graph)
            print("\n" + "="*40)
            print("PODCAST KNOWLEDGE GRAPH STATISTICS")
            print("="*40)
            for key, value in stats.items():
                print(f"  {key}: {value}")
            print("="*40)

        else:
            parser.print_help()

    except PipelineError as e:
        logger.error(f"✗ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
