"""
Amazon Enrichment Service for the Podcast Knowledge Graph Pipeline.
Looks up purchasable entities on Amazon through SerpAPI and attaches
affiliate-tagged product links.
"""

import asyncio
from typing import List, Optional

import httpx

from models.entities import AmazonProduct, Entity, EntityType, EpisodeExtraction
from services.errors import EnrichmentError
from config import Settings, get_settings, get_logger

logger = get_logger(__name__)


# Entity types that usually correspond to something sold on Amazon
PURCHASABLE_TYPES = {EntityType.MEDIA, EntityType.PRODUCT, EntityType.OBJECT}


class AmazonEnricher:
    """
    Service for attaching Amazon product links to entities.

    Features:
    - SerpAPI Amazon engine search
    - Affiliate tag on every product URL
    - Sequential, rate-limited lookups
    - Failures leave the entity unenriched
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.settings = settings or get_settings()
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self.settings.serpapi_key)

    def should_enrich(self, entity: Entity) -> bool:
        """Whether an entity is worth an Amazon lookup."""
        return (
            entity.amazon_searchable
            or entity.type in PURCHASABLE_TYPES
            or "book" in entity.context.lower()
        )

    def build_query(self, entity: Entity) -> str:
        """Entity name followed by any suggested keywords."""
        if entity.amazon_keywords:
            return f"{entity.name} {' '.join(entity.amazon_keywords)}"
        return entity.name

    def tag_url(self, link: str) -> str:
        """Set the affiliate tag query parameter on a product URL."""
        return str(httpx.URL(link).copy_set_param("tag", self.settings.amazon_affiliate_tag))

    async def search(self, query: str, client: httpx.AsyncClient) -> List[AmazonProduct]:
        """
        Search Amazon for a query.

        Args:
            query: Search text
            client: HTTP client to use

        Returns:
            Up to amazon_max_results tagged products

        Raises:
            EnrichmentError: On HTTP or response format errors
        """
        params = {
            "engine": "amazon",
            "k": query,
            "api_key": self.settings.serpapi_key,
        }
        try:
            response = await client.get(
                self.settings.serpapi_url,
                params=params,
                timeout=self.settings.serpapi_timeout
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise EnrichmentError(
                f"SerpAPI error {e.response.status_code} for '{query}': {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise EnrichmentError(f"SerpAPI request failed for '{query}': {e}") from e
        except ValueError as e:
            raise EnrichmentError(f"SerpAPI returned invalid JSON for '{query}'") from e

        results = data.get("organic_results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            return []

        products: List[AmazonProduct] = []
        for result in results[:self.settings.amazon_max_results]:
            if not isinstance(result, dict) or not result.get("link"):
                continue
            try:
                url = self.tag_url(result["link"])
            except httpx.InvalidURL:
                logger.warning(f"Skipping invalid product link: {result['link']}")
                continue
            products.append(AmazonProduct(
                url=url,
                title=result.get("title") or query,
                thumbnail=result.get("thumbnail")
            ))

        return products

    async def enrich_entity(self, entity: Entity, client: httpx.AsyncClient) -> Entity:
        """Return the entity with amazon_products set, or unchanged on failure."""
        query = self.build_query(entity)
        try:
            products = await self.search(query, client)
        except EnrichmentError as e:
            logger.warning(f"Amazon lookup failed for '{entity.name}': {e}")
            return entity

        if not products:
            logger.debug(f"No Amazon products found for '{entity.name}'")
            return entity

        logger.info(f"Found {len(products)} Amazon products for '{entity.name}'")
        return entity.model_copy(update={"amazon_products": products})

    async def enrich_entities(self, entities: List[Entity]) -> List[Entity]:
        """
        Enrich every qualifying entity.

        Args:
            entities: Entities in any order

        Returns:
            Entities in the same order, qualifying ones enriched
        """
        if not self.enabled:
            logger.warning("SERPAPI_KEY not set, skipping Amazon enrichment")
            return list(entities)

        if self._client is not None:
            return await self._enrich_with(entities, self._client)

        async with httpx.AsyncClient(timeout=self.settings.serpapi_timeout) as client:
            return await self._enrich_with(entities, client)

    async def _enrich_with(self, entities: List[Entity], client: httpx.AsyncClient) -> List[Entity]:
        enriched: List[Entity] = []
        lookups = 0
        for entity in entities:
            if entity.amazon_products or not self.should_enrich(entity):
                enriched.append(entity)
                continue

            if lookups:
                await asyncio.sleep(self.settings.serpapi_delay)
            lookups += 1
            enriched.append(await self.enrich_entity(entity, client))

        logger.info(f"Ran {lookups} Amazon lookups for {len(entities)} entities")
        return enriched

    async def enrich_extractions(self, extractions: List[EpisodeExtraction]) -> List[EpisodeExtraction]:
        """Enrich the entities of each extraction record."""
        if not self.enabled:
            logger.warning("SERPAPI_KEY not set, skipping Amazon enrichment")
            return list(extractions)

        results = []
        for extraction in extractions:
            entities = await self.enrich_entities(extraction.entities)
            results.append(extraction.model_copy(update={"entities": entities}))
        return results
