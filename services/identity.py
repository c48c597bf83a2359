"""
Identity Service for the Podcast Knowledge Graph Pipeline.
Derives episode, entity and relationship identifiers and keeps episode ids
stable across reprocessing runs.
"""

import re
import time
import uuid
from datetime import datetime
from enum import Enum
from typing import List, Dict, Any, Optional, Tuple

from pydantic import BaseModel

from models.entities import Episode
from config import get_logger

logger = get_logger(__name__)


DATE_FORMATS = [
    "%Y-%m-%d",
    "%Y-%m-%dT%H:%M:%S",
    "%B %d, %Y",
    "%b %d, %Y",
    "%m/%d/%Y",
    "%d %B %Y",
]


def _short_suffix() -> str:
    return uuid.uuid4().hex[:8]


def parse_date_timestamp(date: Optional[str]) -> Optional[int]:
    """
    Convert a scraped date string to a millisecond timestamp.

    Args:
        date: Date in ISO or a common long-hand format

    Returns:
        Milliseconds since the epoch, or None if the date cannot be read
    """
    if not date:
        return None
    value = date.strip()
    try:
        return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000)
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return int(datetime.strptime(value, fmt).timestamp() * 1000)
        except ValueError:
            continue
    return None


def generate_episode_id(
    episode_number: Optional[int] = None,
    date: Optional[str] = None,
    suffix: Optional[str] = None
) -> str:
    """
    Mint a new episode identifier of the form ep_<key>_<suffix>.

    The key is the episode number when present, else the publish date as a
    millisecond timestamp, else the current time.
    """
    if episode_number is not None:
        key = str(episode_number)
    else:
        timestamp = parse_date_timestamp(date)
        if timestamp is None:
            timestamp = int(time.time() * 1000)
        key = str(timestamp)
    return f"ep_{key}_{suffix or _short_suffix()}"


def normalize_entity_name(name: str) -> str:
    """Lowercase and drop everything except a-z and 0-9."""
    return re.sub(r'[^a-z0-9]', '', name.lower())


def derive_entity_id(name: str, entity_type: str, episode_id: str) -> str:
    """Candidate entity id: <type>_<normalized-name>_<episode-id-prefix>."""
    type_label = entity_type.value if isinstance(entity_type, Enum) else str(entity_type)
    return f"{type_label}_{normalize_entity_name(name)}_{episode_id[:8]}"


def derive_relationship_id(entity1_id: str, entity2_id: str, suffix: Optional[str] = None) -> str:
    """Relationship id built from the sorted endpoint ids."""
    first, second = sorted([entity1_id, entity2_id])
    return f"rel_{first}_{second}_{suffix or _short_suffix()}"


def normalize_title(title: str) -> str:
    """Normalize an episode title for re-identification."""
    normalized = title.lower()
    normalized = re.sub(r'[^\w\s]', '', normalized)
    normalized = re.sub(r'\s+', ' ', normalized)
    return normalized.strip()


class RegistrationStatus(str, Enum):
    """Outcome of registering a candidate identifier."""
    NEW = "new"
    EXISTING = "existing"
    CONFLICT = "conflict"


class Registration(BaseModel):
    """
    Result of IdRegistry.register.

    Attributes:
        id: The identifier that was checked
        status: new, existing (same record again) or conflict
        existing_fingerprint: Fingerprint already holding the id on conflict
    """
    id: str
    status: RegistrationStatus
    existing_fingerprint: Optional[Tuple[Any, ...]] = None

    @property
    def is_conflict(self) -> bool:
        return self.status == RegistrationStatus.CONFLICT


class IdRegistry:
    """
    Registry of issued identifiers.

    Derivation only proposes a candidate id; the registry decides whether it
    can be used. An id already held by a different fingerprint is reported as
    a conflict and never overwritten.
    """

    def __init__(self):
        self._owners: Dict[str, Tuple[Any, ...]] = {}

    def __contains__(self, identifier: str) -> bool:
        return identifier in self._owners

    def __len__(self) -> int:
        return len(self._owners)

    def owner(self, identifier: str) -> Optional[Tuple[Any, ...]]:
        """Fingerprint registered for an id."""
        return self._owners.get(identifier)

    def register(self, candidate_id: str, fingerprint: Tuple[Any, ...]) -> Registration:
        """
        Check a candidate id and claim it if free.

        Args:
            candidate_id: Derived identifier
            fingerprint: Value identifying the logical record

        Returns:
            Registration describing the outcome
        """
        existing = self._owners.get(candidate_id)
        if existing is None:
            self._owners[candidate_id] = fingerprint
            return Registration(id=candidate_id, status=RegistrationStatus.NEW)
        if existing == fingerprint:
            return Registration(id=candidate_id, status=RegistrationStatus.EXISTING)
        return Registration(
            id=candidate_id,
            status=RegistrationStatus.CONFLICT,
            existing_fingerprint=existing
        )

    def resolve_conflict(self, candidate_id: str, fingerprint: Tuple[Any, ...]) -> str:
        """
        Claim a disambiguated id (<candidate>_2, _3, ...) for a conflicting record.

        A fingerprint that already owns one of the disambiguated ids gets that id back.
        """
        counter = 2
        while True:
            alternative = f"{candidate_id}_{counter}"
            registration = self.register(alternative, fingerprint)
            if not registration.is_conflict:
                return alternative
            counter += 1


class EpisodeIdMapper:
    """
    Keeps episode identifiers stable across reprocessing runs.

    Previously assigned ids are looked up by episode number, then by source
    URL, then by normalized title. Numbers are the most stable signal and
    titles the weakest, so the order matters.
    """

    def __init__(self):
        self.number_to_id: Dict[int, str] = {}
        self.url_to_id: Dict[str, str] = {}
        self.title_to_id: Dict[str, str] = {}
        self.stats: Dict[str, int] = {
            "number": 0,
            "url": 0,
            "title": 0,
            "new": 0,
        }

    def index(
        self,
        episode_id: str,
        title: Optional[str] = None,
        episode_number: Optional[int] = None,
        url: Optional[str] = None
    ) -> None:
        """Record a known id under every key it can be found by."""
        if episode_number is not None:
            self.number_to_id[episode_number] = episode_id
        if url:
            self.url_to_id[url] = episode_id
        if title:
            self.title_to_id[normalize_title(title)] = episode_id

    def load_existing(self, records: List[Dict[str, Any]]) -> int:
        """
        Seed the mapper from previously written episode records.

        Accepts graph episode records (episode_title) as well as corpus
        episodes (title). Records without an id are ignored.

        Returns:
            Number of records indexed
        """
        count = 0
        for record in records:
            episode_id = record.get("episode_id")
            if not episode_id:
                continue
            self.index(
                episode_id,
                title=record.get("episode_title") or record.get("title"),
                episode_number=record.get("episode_number"),
                url=record.get("url")
            )
            count += 1

        logger.info(
            f"Loaded {len(self.number_to_id)} number, {len(self.url_to_id)} URL "
            f"and {len(self.title_to_id)} title mappings"
        )
        return count

    def lookup(self, episode: Episode) -> Tuple[Optional[str], Optional[str]]:
        """
        Find a previously assigned id.

        Returns:
            (episode_id, matched_by) or (None, None)
        """
        if episode.episode_number is not None and episode.episode_number in self.number_to_id:
            return self.number_to_id[episode.episode_number], "number"

        if episode.url and episode.url in self.url_to_id:
            return self.url_to_id[episode.url], "url"

        normalized = normalize_title(episode.title)
        if normalized in self.title_to_id:
            return self.title_to_id[normalized], "title"

        return None, None

    def find_or_create(self, episode: Episode) -> str:
        """Return the existing id for an episode or mint and index a new one."""
        existing_id, matched_by = self.lookup(episode)
        if existing_id:
            self.stats[matched_by] += 1
            logger.debug(f"Found existing ID by {matched_by} for '{episode.title}': {existing_id}")
            return existing_id

        new_id = generate_episode_id(episode.episode_number, episode.date)
        self.index(new_id, episode.title, episode.episode_number, episode.url)
        self.stats["new"] += 1
        logger.debug(f"Generated new ID for '{episode.title}': {new_id}")
        return new_id

    def assign_ids(self, episodes: List[Episode]) -> List[Episode]:
        """Return copies of the episodes with episode_id set."""
        return [
            episode.model_copy(update={"episode_id": self.find_or_create(episode)})
            for episode in episodes
        ]

    def report(self) -> Dict[str, int]:
        """Counts of reused ids (by matching key) and newly minted ids."""
        reused = self.stats["number"] + self.stats["url"] + self.stats["title"]
        return {
            "reused": reused,
            "new": self.stats["new"],
            "matched_by_number": self.stats["number"],
            "matched_by_url": self.stats["url"],
            "matched_by_title": self.stats["title"],
        }
