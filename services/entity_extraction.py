"""
Entity Extraction Service for the Podcast Knowledge Graph Pipeline.
Uses LLM providers to extract entities and relationships from episode text.
"""

import asyncio
import json
import re
from datetime import datetime, timezone
from enum import Enum
from typing import List, Dict, Any, Optional, Tuple, Callable

import tiktoken
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential
)

from models.entities import (
    Entity,
    EntityType,
    Episode,
    EpisodeExtraction,
    Relationship
)
from models.graph_schema import IdConflict
from services.errors import (
    PayloadParseError,
    ProviderError,
    UnsupportedProviderError
)
from services.identity import (
    IdRegistry,
    RegistrationStatus,
    derive_entity_id,
    derive_relationship_id,
    generate_episode_id
)
from config import Settings, get_settings, get_logger

logger = get_logger(__name__)


class Provider(str, Enum):
    """LLM providers that can run an extraction."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GROQ = "groq"
    GEMINI = "gemini"


EXTRACTION_SYSTEM_PROMPT = (
    "You are an expert at extracting named entities and relationships from business "
    "podcast transcripts. You specialize in identifying Amazon-searchable products and "
    "creating knowledge graphs. Return only valid JSON."
)

# Entity extraction prompt template
ENTITY_EXTRACTION_PROMPT = """Extract named entities and relationships from this business podcast episode for building a knowledge graph.

EPISODE: "{episode_title}"

ENTITY TYPES TO EXTRACT:
1. person: Founders, entrepreneurs, CEOs, investors, historical business figures
2. place: Companies, organizations, countries, cities, institutions
3. event: Product launches, acquisitions, IPOs, business milestones, historical events
4. object: Technologies, business strategies, methodologies, concepts, frameworks
5. media: Books, documentaries, movies, podcasts, articles, publications
6. product: Physical/digital products, services, brands, tools, software

AMAZON PRODUCT FOCUS:
Mark amazon_searchable=true for books, audiobooks, physical products, gadgets, tools,
branded merchandise and business supplies. For those items give 2-3 specific Amazon
search keywords.

RELATIONSHIP EXTRACTION:
- Business relationships (founded, invested_in, acquired, competed_with)
- Influence relationships (inspired_by, mentored_by, influenced)
- Product relationships (created, used, recommended)
- Content relationships (wrote_book, appeared_in, featured_in)
Both entities of a relationship must appear in the entities list with the same spelling.

Return ONLY valid JSON in this exact format:
{{
  "entities": [
    {{
      "name": "Exact Entity Name",
      "type": "person|place|event|object|media|product",
      "context": "Description and significance in the episode",
      "amazon_searchable": true,
      "amazon_keywords": ["keyword1", "keyword2"],
      "confidence_score": 0.9
    }}
  ],
  "relationships": [
    {{
      "entity1_name": "First Entity",
      "entity2_name": "Second Entity",
      "relationship_type": "specific_relationship_type",
      "description": "Description of the relationship",
      "confidence_score": 0.8
    }}
  ]
}}

TRANSCRIPT:
---
{transcript}
---"""


def _coerce_payload(data: Any) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise PayloadParseError("Extraction payload is not a JSON object")
    if not isinstance(data.get("entities"), list):
        data["entities"] = []
    if not isinstance(data.get("relationships"), list):
        data["relationships"] = []
    return data


def parse_extraction_payload(content: str) -> Dict[str, Any]:
    """
    Read an LLM response as an extraction payload.

    Providers often wrap the JSON in a code fence or add prose around it, so
    several strategies are tried in turn: the raw content, a fenced block,
    the outermost object, and finally the outermost object with trailing
    commas removed.

    Args:
        content: Raw response text

    Returns:
        Dict with "entities" and "relationships" lists (possibly empty)

    Raises:
        PayloadParseError: If no strategy yields a JSON object
    """
    if not content or not content.strip():
        raise PayloadParseError("Empty response")

    text = content.strip()
    candidates = [text]

    fenced = re.search(r'```(?:json)?\s*(\{.*?\})\s*```', text, re.DOTALL | re.IGNORECASE)
    if fenced:
        candidates.append(fenced.group(1))

    outer = re.search(r'\{.*\}', text, re.DOTALL)
    if outer:
        candidates.append(outer.group())
        candidates.append(re.sub(r',(\s*[}\]])', r'\1', outer.group()))

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        return _coerce_payload(data)

    raise PayloadParseError(f"Could not parse extraction payload: {text[:100]}")


def _confidence(value: Any, default: float) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return default
    return min(1.0, max(0.0, score))


def _keywords(value: Any) -> Optional[List[str]]:
    if not isinstance(value, list):
        return None
    keywords = [str(k).strip() for k in value if k and str(k).strip()]
    return keywords or None


class ExtractionAccumulator:
    """
    State shared by the extractions of one pipeline run.

    Holds the id registry, the first entity seen for each (name, type) across
    episodes, the id conflicts that had to be disambiguated and the number of
    relationships dropped because an endpoint could not be resolved.
    """

    def __init__(self):
        self.registry = IdRegistry()
        self.global_entities: Dict[tuple, Entity] = {}
        self.id_conflicts: List[IdConflict] = []
        self.dropped_relationships = 0
        self._names: Dict[str, str] = {}

    def assign_entity_id(
        self,
        name: str,
        entity_type: EntityType,
        episode_id: str
    ) -> Tuple[str, bool]:
        """
        Derive and register an entity id.

        Returns:
            (entity_id, is_duplicate) where is_duplicate means the same entity
            was already registered for this episode
        """
        fingerprint = (name.strip().lower(), entity_type.value, episode_id)
        candidate = derive_entity_id(name, entity_type, episode_id)
        registration = self.registry.register(candidate, fingerprint)

        if registration.status == RegistrationStatus.NEW:
            self._names[candidate] = name
            return candidate, False
        if registration.status == RegistrationStatus.EXISTING:
            return candidate, True

        assigned = self.registry.resolve_conflict(candidate, fingerprint)
        duplicate = assigned in self._names
        if not duplicate:
            self._names[assigned] = name
            conflict = IdConflict(
                candidate_id=candidate,
                assigned_id=assigned,
                existing_name=self._names.get(candidate, ""),
                conflicting_name=name,
                episode_id=episode_id
            )
            self.id_conflicts.append(conflict)
            logger.warning(
                f"Entity id collision: '{name}' and '{conflict.existing_name}' both derive "
                f"{candidate}; assigned {assigned}"
            )
        return assigned, duplicate

    def remember(self, entity: Entity) -> None:
        """Keep the first occurrence of an entity across episodes."""
        self.global_entities.setdefault(entity.link_key, entity)


class EntityExtractor:
    """
    Service for extracting entities and relationships with LLM providers.

    Features:
    - OpenAI, Anthropic, Groq and Gemini providers
    - Token-bounded transcript truncation
    - Tolerant JSON payload parsing with retries
    - Explicit id registration with collision reporting
    - Dangling relationship filtering
    - Semaphore-bounded, rate-limited processing of many episodes
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._clients: Dict[Provider, Any] = {}
        self._encoding = None

    @property
    def encoding(self):
        if self._encoding is None:
            self._encoding = tiktoken.encoding_for_model("gpt-4")
        return self._encoding

    def truncate_transcript(self, text: str, max_tokens: int = None) -> str:
        """Cut a transcript down to the prompt token budget."""
        max_tokens = max_tokens or self.settings.max_transcript_tokens
        # A token never spans less than one character
        if len(text) <= max_tokens:
            return text
        tokens = self.encoding.encode(text)
        if len(tokens) <= max_tokens:
            return text
        return self.encoding.decode(tokens[:max_tokens])

    def build_prompt(self, episode: Episode) -> str:
        return ENTITY_EXTRACTION_PROMPT.format(
            episode_title=episode.title,
            transcript=self.truncate_transcript(episode.text)
        )

    def _api_key(self, provider: Provider) -> str:
        return {
            Provider.OPENAI: self.settings.openai_api_key,
            Provider.ANTHROPIC: self.settings.anthropic_api_key,
            Provider.GROQ: self.settings.groq_api_key,
            Provider.GEMINI: self.settings.gemini_api_key,
        }[provider]

    def available_providers(self) -> List[Provider]:
        """Providers with an API key configured."""
        return [p for p in Provider if self._api_key(p)]

    def _resolve_provider(self, provider: Any) -> Provider:
        try:
            return Provider(str(provider.value if isinstance(provider, Enum) else provider).lower())
        except ValueError:
            raise UnsupportedProviderError(f"Unsupported provider: {provider}")

    def _client(self, provider: Provider) -> Any:
        if provider in self._clients:
            return self._clients[provider]

        api_key = self._api_key(provider)
        if not api_key:
            raise UnsupportedProviderError(f"No API key configured for {provider.value}")

        if provider == Provider.ANTHROPIC:
            client = AsyncAnthropic(api_key=api_key)
        elif provider == Provider.GROQ:
            client = AsyncOpenAI(api_key=api_key, base_url=self.settings.groq_api_base)
        elif provider == Provider.GEMINI:
            client = AsyncOpenAI(api_key=api_key, base_url=self.settings.gemini_api_base)
        else:
            client = AsyncOpenAI(api_key=api_key)

        self._clients[provider] = client
        return client

    def _model(self, provider: Provider) -> str:
        return {
            Provider.OPENAI: self.settings.openai_model,
            Provider.ANTHROPIC: self.settings.anthropic_model,
            Provider.GROQ: self.settings.groq_model,
            Provider.GEMINI: self.settings.gemini_model,
        }[provider]

    async def _complete(self, provider: Provider, prompt: str) -> str:
        """Send one prompt to a provider and return the raw text response."""
        client = self._client(provider)
        try:
            if provider == Provider.ANTHROPIC:
                response = await client.messages.create(
                    model=self._model(provider),
                    max_tokens=self.settings.extraction_max_tokens,
                    temperature=self.settings.extraction_temperature,
                    system=EXTRACTION_SYSTEM_PROMPT,
                    messages=[{"role": "user", "content": prompt}]
                )
                return "".join(
                    block.text for block in response.content if hasattr(block, "text")
                )

            request: Dict[str, Any] = {
                "model": self._model(provider),
                "messages": [
                    {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt}
                ],
                "temperature": self.settings.extraction_temperature,
                "max_tokens": self.settings.extraction_max_tokens,
            }
            if provider == Provider.OPENAI:
                request["response_format"] = {"type": "json_object"}

            response = await client.chat.completions.create(**request)
            return response.choices[0].message.content or ""

        except Exception as e:
            status_code = getattr(e, "status_code", None)
            raise ProviderError(
                f"{provider.value} API error: {e}", provider=provider.value, status_code=status_code
            ) from e

    def _log_retry(self, retry_state: RetryCallState) -> None:
        if retry_state.outcome and retry_state.outcome.failed:
            logger.warning(
                f"Extraction attempt {retry_state.attempt_number} failed: "
                f"{retry_state.outcome.exception()}"
            )

    async def request_extraction(self, provider: Any, episode: Episode) -> Dict[str, Any]:
        """
        Ask a provider for the entities and relationships of one episode.

        Provider failures and unparseable responses are retried with
        exponential backoff.

        Returns:
            Parsed payload with "entities" and "relationships" lists
        """
        provider = self._resolve_provider(provider)
        prompt = self.build_prompt(episode)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.settings.max_retries)),
            wait=wait_exponential(
                multiplier=self.settings.retry_delay,
                exp_base=self.settings.retry_exponential_base
            ),
            retry=retry_if_exception_type((ProviderError, PayloadParseError)),
            before_sleep=self._log_retry,
            reraise=True
        )
        async for attempt in retrying:
            with attempt:
                content = await self._complete(provider, prompt)
                return parse_extraction_payload(content)

    def process_extracted(
        self,
        data: Dict[str, Any],
        episode_id: str,
        accumulator: ExtractionAccumulator
    ) -> Tuple[List[Entity], List[Relationship]]:
        """
        Turn a raw payload into validated entities and relationships.

        Args:
            data: Parsed payload (missing arrays are treated as empty)
            episode_id: Owning episode
            accumulator: Run-scoped registry and counters

        Returns:
            (entities, relationships) for the episode
        """
        entities: List[Entity] = []
        relationships: List[Relationship] = []
        data = data if isinstance(data, dict) else {}
        default_confidence = self.settings.default_confidence

        for item in data.get("entities") or []:
            if not isinstance(item, dict):
                logger.warning(f"Skipping malformed entity: {item}")
                continue

            name = str(item.get("name") or "").strip()
            if not name:
                logger.warning(f"Skipping entity without a name: {item}")
                continue

            try:
                entity_type = EntityType(str(item.get("type") or "").strip().lower())
            except ValueError:
                logger.warning(f"Skipping entity '{name}' with unknown type: {item.get('type')}")
                continue

            entity_id, duplicate = accumulator.assign_entity_id(name, entity_type, episode_id)
            if duplicate:
                logger.debug(f"Skipping duplicate entity '{name}' in {episode_id}")
                continue

            try:
                entity = Entity(
                    id=entity_id,
                    episode_id=episode_id,
                    name=name,
                    type=entity_type,
                    context=str(item.get("context") or ""),
                    confidence_score=_confidence(item.get("confidence_score"), default_confidence),
                    amazon_searchable=bool(item.get("amazon_searchable", False)),
                    amazon_keywords=_keywords(item.get("amazon_keywords"))
                )
            except ValidationError as e:
                logger.warning(f"Failed to parse entity: {e} - {item}")
                continue

            entities.append(entity)
            accumulator.remember(entity)

        name_to_id: Dict[str, str] = {}
        for entity in entities:
            name_to_id.setdefault(entity.name.lower(), entity.id)

        for item in data.get("relationships") or []:
            if not isinstance(item, dict):
                logger.warning(f"Skipping malformed relationship: {item}")
                continue

            entity1_name = str(item.get("entity1_name") or "").strip()
            entity2_name = str(item.get("entity2_name") or "").strip()
            entity1_id = name_to_id.get(entity1_name.lower())
            entity2_id = name_to_id.get(entity2_name.lower())

            if not entity1_id or not entity2_id:
                accumulator.dropped_relationships += 1
                logger.debug(
                    f"Dropping relationship '{entity1_name}' -> '{entity2_name}' in {episode_id}: "
                    f"unknown entity"
                )
                continue

            try:
                relationship = Relationship(
                    id=derive_relationship_id(entity1_id, entity2_id),
                    episode_id=episode_id,
                    entity1_id=entity1_id,
                    entity1_name=entity1_name,
                    entity2_id=entity2_id,
                    entity2_name=entity2_name,
                    relationship_type=str(item.get("relationship_type") or "related_to"),
                    description=str(item.get("description") or ""),
                    confidence_score=_confidence(item.get("confidence_score"), default_confidence),
                    is_cross_episode=False
                )
            except ValidationError as e:
                logger.warning(f"Failed to parse relationship: {e} - {item}")
                continue

            relationships.append(relationship)

        return entities, relationships

    async def extract_from_episode(
        self,
        episode: Episode,
        provider: Any,
        accumulator: ExtractionAccumulator
    ) -> EpisodeExtraction:
        """
        Extract entities and relationships from one episode.

        Args:
            episode: Episode with cleaned text
            provider: Provider name or Provider
            accumulator: Run-scoped state

        Returns:
            EpisodeExtraction record

        Raises:
            ExtractionError: If the provider fails after all retries
        """
        provider = self._resolve_provider(provider)
        episode_id = episode.episode_id
        if not episode_id:
            episode_id = generate_episode_id(episode.episode_number, episode.date)
            logger.warning(f"Episode '{episode.title}' had no ID, assigned {episode_id}")

        logger.info(f"Extracting entities from '{episode.title}' using {provider.value}")
        data = await self.request_extraction(provider, episode)
        entities, relationships = self.process_extracted(data, episode_id, accumulator)

        return EpisodeExtraction(
            episode_id=episode_id,
            episode_title=episode.title,
            episode_number=episode.episode_number,
            date=episode.date,
            url=episode.url,
            entities=entities,
            relationships=relationships,
            extracted_by=provider.value,
            extracted_at=datetime.now(timezone.utc).isoformat()
        )

    def has_enough_text(self, episode: Episode) -> bool:
        return len(episode.text or "") >= self.settings.min_episode_text_length

    async def extract_all(
        self,
        episodes: List[Episode],
        provider: Any,
        accumulator: Optional[ExtractionAccumulator] = None,
        progress_callback: Callable = None
    ) -> List[EpisodeExtraction]:
        """
        Extract every episode with one provider.

        Episodes with too little text are skipped, failures are logged and
        skipped, and results keep the input order.

        Args:
            episodes: Episodes to process
            provider: Provider name or Provider
            accumulator: Run-scoped state (a fresh one if omitted)
            progress_callback: Optional callback receiving progress in [0, 1]

        Returns:
            Successful extraction records
        """
        provider = self._resolve_provider(provider)
        accumulator = accumulator or ExtractionAccumulator()

        eligible = []
        for episode in episodes:
            if self.has_enough_text(episode):
                eligible.append(episode)
            else:
                logger.info(
                    f"Skipping episode '{episode.title}' - insufficient text "
                    f"({len(episode.text or '')} chars)"
                )

        semaphore = asyncio.Semaphore(max(1, self.settings.max_concurrent_requests))
        completed = 0

        async def process_with_semaphore(episode: Episode) -> EpisodeExtraction:
            nonlocal completed
            async with semaphore:
                try:
                    return await self.extract_from_episode(episode, provider, accumulator)
                finally:
                    completed += 1
                    if progress_callback:
                        progress_callback(completed / len(eligible))
                    # Rate limiting delay, the slot stays taken while sleeping
                    if completed < len(eligible):
                        await asyncio.sleep(self.settings.request_delay)

        outcomes = await asyncio.gather(
            *[process_with_semaphore(episode) for episode in eligible],
            return_exceptions=True
        )

        results: List[EpisodeExtraction] = []
        for episode, outcome in zip(eligible, outcomes):
            if isinstance(outcome, EpisodeExtraction):
                results.append(outcome)
                logger.info(
                    f"Processed '{episode.title}': {len(outcome.entities)} entities, "
                    f"{len(outcome.relationships)} relationships"
                )
            elif isinstance(outcome, Exception):
                logger.error(f"Failed to process episode '{episode.title}' with {provider.value}: {outcome}")

        logger.info(f"Extracted {len(results)}/{len(eligible)} episodes with {provider.value}")
        return results

    async def extract_with_all_providers(
        self,
        episode: Episode,
        accumulators: Dict[str, ExtractionAccumulator],
        providers: List[Any] = None
    ) -> Dict[str, EpisodeExtraction]:
        """
        Run several providers on one episode in parallel.

        Args:
            episode: Episode to process
            accumulators: Per-provider run state, created on demand
            providers: Providers to use (all configured ones if omitted)

        Returns:
            Successful extractions keyed by provider name
        """
        chosen = [self._resolve_provider(p) for p in providers] if providers else self.available_providers()
        for provider in chosen:
            accumulators.setdefault(provider.value, ExtractionAccumulator())

        outcomes = await asyncio.gather(
            *[
                self.extract_from_episode(episode, provider, accumulators[provider.value])
                for provider in chosen
            ],
            return_exceptions=True
        )

        results: Dict[str, EpisodeExtraction] = {}
        for provider, outcome in zip(chosen, outcomes):
            if isinstance(outcome, EpisodeExtraction):
                results[provider.value] = outcome
            else:
                logger.warning(f"{provider.value} failed for '{episode.title}': {outcome}")
        return results
