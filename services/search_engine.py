"""
Search Engine Service for the Podcast Knowledge Graph Pipeline.
Ranks episodes, entities and relationships against a free-text query with a
deterministic substring relevance score.
"""

from typing import List, Dict, Optional, Tuple

from pydantic import BaseModel

from models.entities import (
    Episode,
    Entity,
    Relationship,
    SearchResult,
    RecordKind,
    MatchType
)
from models.graph_schema import SearchCorpus
from config import RelevanceConfig, get_logger

logger = get_logger(__name__)


class _Candidate(BaseModel):
    """A scored match before it is attributed to an episode row."""
    episode_id: str
    record_id: str
    record_kind: RecordKind
    match_type: MatchType
    match_details: str
    score: float
    fallback_title: str


class PodcastSearchEngine:
    """
    Case-insensitive substring search over a precomputed corpus.

    Matching precedence per record kind:
    - Episode: title, then transcript text
    - Entity: name, then context
    - Relationship: type label, then description

    Every match is attributed to its owning episode. Only the best-scoring
    match is kept per episode, and the rows are sorted by descending score
    with ties left in the order they were found.
    """

    def __init__(self, corpus: SearchCorpus, config: Optional[RelevanceConfig] = None):
        self.corpus = corpus
        self.config = config or RelevanceConfig()
        self._episodes: Dict[str, Episode] = {}
        for episode in corpus.episodes:
            if episode.episode_id and episode.episode_id not in self._episodes:
                self._episodes[episode.episode_id] = episode

    def search(self, query: str, limit: Optional[int] = None) -> List[SearchResult]:
        """
        Rank corpus records against a query.

        Args:
            query: Free-text search term
            limit: Optional maximum number of rows

        Returns:
            Ranked results, one per episode
        """
        if not query or not query.strip():
            return []
        if self.corpus.is_empty:
            return []

        try:
            candidates = self._exact_candidates(query)
            if not candidates:
                candidates = self._fuzzy_candidates(query)

            results = self._rank(candidates)
        except Exception as e:
            logger.error(f"Search for '{query}' failed: {e}")
            return []

        logger.info(f"Found {len(results)} episodes matching '{query}'")
        if limit is not None:
            return results[:limit]
        return results

    # Scoring

    def calculate_relevance_score(self, query: str, text: str, match_type: MatchType) -> float:
        """
        Score an exact match of query inside text.

        Base score for the match type, plus a capped bonus per occurrence,
        minus a penalty for field length beyond the baseline, floored at
        min_score.
        """
        lower_query = query.lower()
        lower_text = text.lower()
        occurrences = lower_text.count(lower_query)
        if occurrences == 0:
            return 0.0

        base = self.config.base_scores[match_type.value]
        bonus = min(occurrences * self.config.occurrence_bonus, self.config.max_occurrence_bonus)
        penalty = max(0.0, (len(text) - self.config.length_baseline) / self.config.length_divisor)
        return max(self.config.min_score, base + bonus - penalty)

    def calculate_fuzzy_score(self, query: str, text: str) -> float:
        """Share of query words found in text, scaled into the fuzzy band."""
        words = [w for w in query.lower().split(" ") if w]
        if not words or not text:
            return 0.0
        lower_text = text.lower()
        matching = [w for w in words if w in lower_text]
        ratio = len(matching) / len(words)
        return ratio * self.config.fuzzy_max_score

    # Candidate generation

    def _exact_candidates(self, query: str) -> List[_Candidate]:
        lower_query = query.lower()
        candidates: List[_Candidate] = []

        for episode in self.corpus.episodes:
            candidate = self._match_episode(episode, query, lower_query)
            if candidate:
                candidates.append(candidate)

        for entity in self.corpus.entities:
            candidate = self._match_entity(entity, query, lower_query)
            if candidate:
                candidates.append(candidate)

        for relationship in self.corpus.relationships:
            candidate = self._match_relationship(relationship, query, lower_query)
            if candidate:
                candidates.append(candidate)

        return candidates

    def _match_episode(self, episode: Episode, query: str, lower_query: str) -> Optional[_Candidate]:
        if not episode.episode_id:
            return None

        if lower_query in episode.title.lower():
            match_type = MatchType.EPISODE_TITLE
            details = f'Found "{query}" in episode title: "{episode.title}"'
            score = self.calculate_relevance_score(query, episode.title, match_type)
        elif lower_query in episode.text.lower():
            match_type = MatchType.EPISODE_TEXT
            details = f'Found "{query}" in episode text: "...{self._snippet(episode.text, lower_query)}..."'
            score = self.calculate_relevance_score(query, episode.text, match_type)
        else:
            return None

        return _Candidate(
            episode_id=episode.episode_id,
            record_id=episode.episode_id,
            record_kind=RecordKind.EPISODE,
            match_type=match_type,
            match_details=details,
            score=score,
            fallback_title=episode.title
        )

    def _match_entity(self, entity: Entity, query: str, lower_query: str) -> Optional[_Candidate]:
        if lower_query in entity.name.lower():
            match_type = MatchType.ENTITY_NAME
            details = f'Found "{query}" in entity name: "{entity.name}" ({entity.type.value})'
            score = self.calculate_relevance_score(query, entity.name, match_type)
        elif lower_query in entity.context.lower():
            match_type = MatchType.ENTITY_CONTEXT
            details = f'Found "{query}" in entity context for "{entity.name}": "{entity.context}"'
            score = self.calculate_relevance_score(query, entity.context, match_type)
        else:
            return None

        return _Candidate(
            episode_id=entity.episode_id,
            record_id=entity.id,
            record_kind=RecordKind.ENTITY,
            match_type=match_type,
            match_details=details,
            score=score,
            fallback_title=entity.name
        )

    def _match_relationship(
        self,
        relationship: Relationship,
        query: str,
        lower_query: str
    ) -> Optional[_Candidate]:
        summary = (
            f'"{relationship.entity1_name}" {relationship.relationship_type} '
            f'"{relationship.entity2_name}"'
        )
        if lower_query in relationship.relationship_type.lower():
            match_type = MatchType.RELATIONSHIP_TYPE
            details = f'Found "{query}" in relationship type: {summary}'
            score = self.calculate_relevance_score(query, relationship.relationship_type, match_type)
        elif lower_query in relationship.description.lower():
            match_type = MatchType.RELATIONSHIP_DESCRIPTION
            details = f'Found "{query}" in relationship: {summary} - {relationship.description}'
            score = self.calculate_relevance_score(query, relationship.description, match_type)
        else:
            return None

        return _Candidate(
            episode_id=relationship.episode_id,
            record_id=relationship.id,
            record_kind=RecordKind.RELATIONSHIP,
            match_type=match_type,
            match_details=details,
            score=score,
            fallback_title=summary
        )

    def _fuzzy_candidates(self, query: str) -> List[_Candidate]:
        """Partial word matches, used only when nothing contains the full query."""
        candidates: List[_Candidate] = []
        records: List[Tuple[str, str, RecordKind, str, List[str]]] = []

        for episode in self.corpus.episodes:
            if episode.episode_id:
                records.append((
                    episode.episode_id, episode.episode_id, RecordKind.EPISODE,
                    episode.title, [episode.title, episode.text]
                ))
        for entity in self.corpus.entities:
            records.append((
                entity.episode_id, entity.id, RecordKind.ENTITY,
                entity.name, [entity.name, entity.context]
            ))
        for relationship in self.corpus.relationships:
            records.append((
                relationship.episode_id, relationship.id, RecordKind.RELATIONSHIP,
                relationship.relationship_type,
                [relationship.relationship_type, relationship.description]
            ))

        for episode_id, record_id, kind, title, fields in records:
            score = max(self.calculate_fuzzy_score(query, field) for field in fields)
            if score <= 0:
                continue
            candidates.append(_Candidate(
                episode_id=episode_id,
                record_id=record_id,
                record_kind=kind,
                match_type=MatchType.FUZZY,
                match_details=f'Partial match for "{query}" in {kind.value} "{title}"',
                score=score,
                fallback_title=title
            ))

        return candidates

    # Aggregation

    def _rank(self, candidates: List[_Candidate]) -> List[SearchResult]:
        best: Dict[str, _Candidate] = {}
        for candidate in candidates:
            existing = best.get(candidate.episode_id)
            if existing is None or candidate.score > existing.score:
                best[candidate.episode_id] = candidate

        # Dict keeps first-insertion order, sorted() is stable
        ordered = sorted(best.values(), key=lambda c: c.score, reverse=True)
        return [self._to_result(c) for c in ordered]

    def _to_result(self, candidate: _Candidate) -> SearchResult:
        episode = self._episodes.get(candidate.episode_id)
        return SearchResult(
            episode_id=candidate.episode_id,
            episode_title=episode.title if episode else candidate.fallback_title,
            episode_number=episode.episode_number if episode else None,
            episode_url=episode.url if episode else None,
            episode_date=episode.date if episode else None,
            record_id=candidate.record_id,
            record_kind=candidate.record_kind,
            match_type=candidate.match_type,
            match_details=candidate.match_details,
            entities_linked=[e for e in self.corpus.entities if e.episode_id == candidate.episode_id],
            relationships_linked=[
                r for r in self.corpus.relationships if r.episode_id == candidate.episode_id
            ],
            relevance_score=candidate.score
        )

    def _snippet(self, text: str, lower_query: str) -> str:
        index = text.lower().find(lower_query)
        radius = self.config.snippet_radius
        start = max(0, index - radius)
        end = min(len(text), index + len(lower_query) + radius)
        return text[start:end]


def search_corpus(
    corpus: SearchCorpus,
    query: str,
    limit: Optional[int] = None,
    config: Optional[RelevanceConfig] = None
) -> List[SearchResult]:
    """Search a corpus (convenience function)."""
    return PodcastSearchEngine(corpus, config).search(query, limit)
