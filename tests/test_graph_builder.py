"""
Tests for graph assembly and JSON persistence.
"""

import json
import pytest
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))


def make_extraction(episode_id, names, extracted_by="openai"):
    from models.entities import Entity, EpisodeExtraction, Relationship

    entities = [
        Entity(
            id=f"{entity_type}_{name.lower().replace(' ', '')}_{episode_id[:8]}",
            episode_id=episode_id,
            name=name,
            type=entity_type,
            amazon_searchable=entity_type == "media"
        )
        for name, entity_type in names
    ]
    relationships = []
    if len(entities) >= 2:
        relationships.append(Relationship(
            id=f"rel_{episode_id}",
            episode_id=episode_id,
            entity1_id=entities[0].id,
            entity1_name=entities[0].name,
            entity2_id=entities[1].id,
            entity2_name=entities[1].name,
            relationship_type="wrote"
        ))
    return EpisodeExtraction(
        episode_id=episode_id,
        episode_title=f"Episode {episode_id}",
        entities=entities,
        relationships=relationships,
        extracted_by=extracted_by
    )


def sample_extractions():
    return [
        make_extraction("ep_1_aaaa", [("Jeff Bezos", "person"), ("Invent and Wander", "media")]),
        make_extraction("ep_2_bbbb", [("Jeff Bezos", "person")]),
        make_extraction("ep_3_cccc", [("Walt Disney", "person")]),
    ]


class TestBuildGraph:
    """Test graph assembly."""

    def test_build_graph(self):
        from services.graph_builder import GraphBuilder

        graph = GraphBuilder().build_graph(sample_extractions())

        assert len(graph.episodes) == 3
        assert len(graph.all_entities) == 4
        assert len(graph.all_relationships) == 1
        assert [l.id for l in graph.cross_episode_relationships] == ["cross_ep_1_aaaa_ep_2_bbbb"]
        assert [e.name for e in graph.amazon_products] == ["Invent and Wander"]

        metadata = graph.extraction_metadata
        assert metadata.total_episodes == 3
        assert metadata.total_entities == 4
        assert metadata.total_relationships == 1
        assert metadata.total_cross_episode_relationships == 1
        assert metadata.models_used == ["openai"]
        assert metadata.extracted_at

    def test_accumulator_details_in_metadata(self):
        from models.graph_schema import IdConflict
        from services.entity_extraction import ExtractionAccumulator
        from services.graph_builder import GraphBuilder

        accumulator = ExtractionAccumulator()
        accumulator.dropped_relationships = 2
        accumulator.id_conflicts.append(IdConflict(
            candidate_id="media_abc_ep_1_aaa",
            assigned_id="media_abc_ep_1_aaa_2",
            existing_name="A.B.C.",
            conflicting_name="ABC",
            episode_id="ep_1_aaaa"
        ))

        graph = GraphBuilder().build_graph(sample_extractions(), accumulator, models_used=["groq"])

        assert graph.extraction_metadata.dropped_relationships == 2
        assert len(graph.extraction_metadata.id_conflicts) == 1
        assert graph.extraction_metadata.models_used == ["groq"]

    def test_empty_graph(self):
        from services.graph_builder import GraphBuilder

        graph = GraphBuilder().build_graph([])
        assert graph.all_entities == []
        assert graph.cross_episode_relationships == []
        assert graph.extraction_metadata.total_episodes == 0

    def test_statistics(self):
        from services.graph_builder import GraphBuilder

        builder = GraphBuilder()
        stats = builder.get_statistics(builder.build_graph(sample_extractions()))

        assert stats["episodes"] == 3
        assert stats["entities"] == 4
        assert stats["unique_entities"] == 3
        assert stats["entities_by_type"] == {"person": 3, "media": 1}
        assert stats["top_relationship_types"] == {"wrote": 1}
        assert stats["cross_episode_relationships"] == 1

    def test_unique_entities_from_accumulator(self):
        from models.entities import EntityType
        from services.entity_extraction import ExtractionAccumulator
        from services.graph_builder import GraphBuilder

        extractions = sample_extractions()
        accumulator = ExtractionAccumulator()
        for extraction in extractions:
            for entity in extraction.entities:
                accumulator.remember(entity)

        graph = GraphBuilder().build_graph(extractions, accumulator)

        assert len(accumulator.global_entities) == 3
        assert graph.extraction_metadata.total_unique_entities == 3
        # First occurrence across episodes is the one kept
        assert accumulator.global_entities[("jeff bezos", EntityType.PERSON)].episode_id == "ep_1_aaaa"


class TestMergeExtractions:
    """Test folding re-extracted episodes into a saved graph."""

    def test_replace_episode_in_saved_graph(self, tmp_path):
        from services.graph_builder import GraphBuilder, load_graph, save_graph

        builder = GraphBuilder()
        path = str(tmp_path / "podcast-graph-openai.json")
        save_graph(builder.build_graph(sample_extractions()), path)
        saved = load_graph(path)

        fresh = make_extraction("ep_2_bbbb", [("Walt Disney", "person")], extracted_by="gemini")
        merged = builder.merge_extractions(saved, [fresh])
        save_graph(merged, path)
        reloaded = load_graph(path)

        assert [x.episode_id for x in reloaded.episodes] == ["ep_1_aaaa", "ep_2_bbbb", "ep_3_cccc"]
        assert [e.name for e in reloaded.entities_for("ep_2_bbbb")] == ["Walt Disney"]
        assert [l.id for l in reloaded.cross_episode_relationships] == ["cross_ep_2_bbbb_ep_3_cccc"]

        metadata = reloaded.extraction_metadata
        assert metadata.total_episodes == 3
        assert metadata.total_entities == 4
        assert metadata.total_unique_entities == 3
        assert metadata.total_cross_episode_relationships == 1
        assert metadata.models_used == ["openai", "gemini"]

        # The graph passed in is left as it was
        assert [e.name for e in saved.entities_for("ep_2_bbbb")] == ["Jeff Bezos"]

    def test_match_by_episode_number_and_append(self):
        from services.graph_builder import GraphBuilder

        builder = GraphBuilder()
        old = make_extraction("ep_7_old", [("Sam Walton", "person")])
        old.episode_number = 7
        graph = builder.build_graph([old])

        renumbered = make_extraction("ep_7_new", [("Sam Walton", "person"), ("Made in America", "media")])
        renumbered.episode_number = 7
        added = make_extraction("ep_9_cccc", [("Sam Walton", "person")])
        added.episode_number = 9

        merged = builder.merge_extractions(graph, [renumbered, added])

        assert [x.episode_id for x in merged.episodes] == ["ep_7_new", "ep_9_cccc"]
        assert len(merged.all_entities) == 3
        assert len(merged.all_relationships) == 1
        assert [e.name for e in merged.amazon_products] == ["Made in America"]
        assert [l.id for l in merged.cross_episode_relationships] == ["cross_ep_7_new_ep_9_cccc"]

    def test_metadata_carries_over(self):
        from models.graph_schema import IdConflict
        from services.entity_extraction import ExtractionAccumulator
        from services.graph_builder import GraphBuilder

        def conflict(episode_id):
            return IdConflict(
                candidate_id=f"media_abc_{episode_id[:8]}",
                assigned_id=f"media_abc_{episode_id[:8]}_2",
                existing_name="A.B.C.",
                conflicting_name="ABC",
                episode_id=episode_id
            )

        builder = GraphBuilder()
        previous = ExtractionAccumulator()
        previous.dropped_relationships = 2
        previous.id_conflicts.extend([conflict("ep_1_aaaa"), conflict("ep_2_bbbb")])
        graph = builder.build_graph(sample_extractions(), previous)

        current = ExtractionAccumulator()
        current.dropped_relationships = 1
        current.id_conflicts.append(conflict("ep_3_cccc"))

        merged = builder.merge_extractions(
            graph,
            [make_extraction("ep_2_bbbb", [("Jeff Bezos", "person")])],
            current
        )

        metadata = merged.extraction_metadata
        assert [c.episode_id for c in metadata.id_conflicts] == ["ep_1_aaaa", "ep_3_cccc"]
        assert metadata.dropped_relationships == 3
        assert metadata.models_used == ["openai"]


class TestPersistence:
    """Test corpus and graph files."""

    def test_corpus_round_trip(self, tmp_path):
        from models.entities import Episode
        from services.graph_builder import load_corpus, save_corpus

        path = str(tmp_path / "data" / "podcast-summary.json")
        episodes = [
            Episode(episode_id="ep_1_aaaa", title="Jeff Bezos", text="Text", episode_number=1),
            Episode(title="Sam Walton", url="https://example.com/walton"),
        ]

        save_corpus(episodes, path, source="https://example.com")
        data = json.loads(Path(path).read_text())
        assert data["source"] == "https://example.com"
        assert data["total_episodes"] == 2

        loaded = load_corpus(path)
        assert [e.title for e in loaded] == ["Jeff Bezos", "Sam Walton"]
        assert loaded[0].episode_id == "ep_1_aaaa"
        assert loaded[1].episode_id is None

    def test_load_corpus_skips_invalid_records(self, tmp_path):
        from services.graph_builder import load_corpus

        path = tmp_path / "corpus.json"
        path.write_text(json.dumps({"episodes": [{"title": "Valid", "text": None}, {"text": "no title"}]}))

        episodes = load_corpus(str(path))
        assert [e.title for e in episodes] == ["Valid"]
        assert episodes[0].text == ""

    def test_graph_round_trip(self, tmp_path):
        from services.graph_builder import GraphBuilder, load_graph, save_graph

        path = str(tmp_path / "podcast-graph-openai.json")
        graph = GraphBuilder().build_graph(sample_extractions())

        save_graph(graph, path)
        loaded = load_graph(path)

        assert loaded.to_dict() == graph.to_dict()

    def test_missing_files(self, tmp_path):
        from services.errors import DataFileNotFoundError
        from services.graph_builder import load_corpus, load_graph

        with pytest.raises(DataFileNotFoundError):
            load_corpus(str(tmp_path / "missing.json"))
        with pytest.raises(DataFileNotFoundError):
            load_graph(str(tmp_path / "missing.json"))

    def test_invalid_json(self, tmp_path):
        from services.errors import PipelineError
        from services.graph_builder import load_graph

        path = tmp_path / "broken.json"
        path.write_text("{not json")
        with pytest.raises(PipelineError):
            load_graph(str(path))

    def test_build_search_corpus(self):
        from models.entities import Episode
        from services.graph_builder import GraphBuilder, build_search_corpus

        episodes = [Episode(episode_id="ep_1_aaaa", title="Jeff Bezos")]
        graph = GraphBuilder().build_graph(sample_extractions())

        corpus = build_search_corpus(episodes, graph)
        assert len(corpus.episodes) == 1
        assert len(corpus.entities) == 4
        assert len(corpus.relationships) == 1

        assert build_search_corpus(episodes).entities == []
