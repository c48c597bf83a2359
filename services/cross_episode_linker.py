"""
Cross-Episode Linker for the Podcast Knowledge Graph Pipeline.
Connects episodes that mention the same entities and scores how strongly
they are related.
"""

from collections import defaultdict
from typing import List, Dict, Optional, Set, Tuple

from models.entities import Entity, EpisodeExtraction, CrossEpisodeRelationship
from config import LinkerConfig, ThemeRule, get_logger

logger = get_logger(__name__)


class CrossEpisodeLinker:
    """
    Computes CrossEpisodeRelationship records for every pair of episodes
    whose entity overlap is meaningful.

    Features:
    - Case-insensitive name + type matching of entities across episodes
    - Type-weighted relationship strength, clamped to [0, 1]
    - Strict threshold on strength
    - Heuristic common themes from lookup rules
    - Optional inverted index so only pairs sharing an entity are compared

    Pairwise comparison is quadratic in the number of episodes and in the
    number of entities per episode; use_index avoids evaluating pairs with no
    shared key at all and produces the same output.
    """

    def __init__(self, config: Optional[LinkerConfig] = None, use_index: bool = False):
        self.config = config or LinkerConfig()
        self.use_index = use_index

    def link(self, extractions: List[EpisodeExtraction]) -> List[CrossEpisodeRelationship]:
        """
        Link all episode pairs.

        Args:
            extractions: Per-episode extraction records, in corpus order

        Returns:
            Retained relationships ordered by (i, j) with i < j
        """
        if len(extractions) < 2:
            return []

        if self.use_index:
            pairs = self._candidate_pairs(extractions)
        else:
            pairs = (
                (i, j)
                for i in range(len(extractions))
                for j in range(i + 1, len(extractions))
            )

        relationships = []
        for i, j in pairs:
            try:
                relationship = self.link_pair(extractions[i], extractions[j])
            except Exception as e:
                logger.warning(
                    f"Failed to link {extractions[i].episode_id} and {extractions[j].episode_id}: {e}"
                )
                continue
            if relationship is not None:
                relationships.append(relationship)

        logger.info(
            f"Linked {len(relationships)} episode pairs across {len(extractions)} episodes"
        )
        return relationships

    def link_pair(
        self,
        episode1: EpisodeExtraction,
        episode2: EpisodeExtraction
    ) -> Optional[CrossEpisodeRelationship]:
        """Evaluate one pair; None when nothing meaningful is shared."""
        shared = self.find_shared_entities(episode1.entities, episode2.entities)
        if not shared:
            return None

        strength = self.calculate_strength(shared, episode1, episode2)
        if not self.is_meaningful(strength):
            return None

        return CrossEpisodeRelationship(
            id=f"cross_{episode1.episode_id}_{episode2.episode_id}",
            episode1_id=episode1.episode_id,
            episode1_title=episode1.episode_title,
            episode2_id=episode2.episode_id,
            episode2_title=episode2.episode_title,
            shared_entities=[e.name for e in shared],
            relationship_strength=strength,
            common_themes=self.extract_common_themes(shared)
        )

    def find_shared_entities(
        self,
        entities1: List[Entity],
        entities2: List[Entity]
    ) -> List[Entity]:
        """Entities of the first list that reappear (name and type) in the second."""
        keys2 = {e.link_key for e in entities2}
        return [e for e in entities1 if e.link_key in keys2]

    def type_weight(self, entity: Entity) -> float:
        return self.config.type_weights.get(entity.type.value, self.config.default_weight)

    def calculate_strength(
        self,
        shared: List[Entity],
        episode1: EpisodeExtraction,
        episode2: EpisodeExtraction
    ) -> float:
        """
        Weighted share of entities that reappear.

        Sum of type weights over shared entities, divided by the larger
        episode's entity count, doubled and capped at 1.
        """
        largest = max(len(episode1.entities), len(episode2.entities))
        if largest == 0:
            return 0.0
        weighted = sum(self.type_weight(e) for e in shared)
        return max(0.0, min(1.0, weighted / largest * 2))

    def is_meaningful(self, strength: float) -> bool:
        """Strictly above the threshold."""
        return strength > self.config.strength_threshold

    def extract_common_themes(self, shared: List[Entity]) -> List[str]:
        """Deduplicated theme labels in first-seen order."""
        themes: List[str] = []
        for entity in shared:
            for rule in self.config.theme_rules:
                if rule.theme not in themes and self._rule_matches(rule, entity):
                    themes.append(rule.theme)
        return themes

    def _rule_matches(self, rule: ThemeRule, entity: Entity) -> bool:
        if rule.entity_type is not None and entity.type.value != rule.entity_type.lower():
            return False
        if rule.context_contains is not None and rule.context_contains not in entity.context:
            return False
        if rule.amazon_searchable is not None and entity.amazon_searchable != rule.amazon_searchable:
            return False
        return True

    def _candidate_pairs(self, extractions: List[EpisodeExtraction]) -> List[Tuple[int, int]]:
        """Pairs of episode indices that share at least one (name, type) key."""
        index: Dict[tuple, List[int]] = defaultdict(list)
        for position, extraction in enumerate(extractions):
            for key in {e.link_key for e in extraction.entities}:
                index[key].append(position)

        pairs: Set[Tuple[int, int]] = set()
        for positions in index.values():
            for a in range(len(positions)):
                for b in range(a + 1, len(positions)):
                    pairs.add((positions[a], positions[b]))

        # Same evaluation order as the nested loops
        return sorted(pairs)


def detect_cross_episode_relationships(
    extractions: List[EpisodeExtraction],
    config: Optional[LinkerConfig] = None
) -> List[CrossEpisodeRelationship]:
    """Link episodes (convenience function)."""
    return CrossEpisodeLinker(config).link(extractions)
