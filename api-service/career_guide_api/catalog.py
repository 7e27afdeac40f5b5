"""Read-only occupation catalog loaded from a JSON file."""

import json
from pathlib import Path
from typing import Iterable

import structlog
from pydantic import ValidationError

from career_guide_api.config import get_settings
from career_guide_api.models import BuildingProfile, Occupation
from career_guide_api.traits import validate_vector

logger = structlog.get_logger()

SERVICE_ROOT = Path(__file__).resolve().parent.parent

INTEREST_WEIGHT = 0.6
TRAIT_WEIGHT = 0.3
ESCO_BONUS = 0.1
STRONG_JOB_TRAIT = 0.5

INTEREST_KEYWORDS: dict[str, list[str]] = {
    "animals": [
        "animal", "chien", "chat", "vétérin", "soign", "soigneur", "élevage", "zoo", "refuge",
        "créature", "breeder", "caretaker", "trainer", "veterinary",
    ],
    "animal-care": ["soin", "care", "nourrir", "animal", "élevage", "soigneur", "refuge", "breeder", "caretaker"],
    "agriculture": ["agricul", "farm", "elevage", "crop", "rural", "livestock", "fermier", "éleveur", "cultiva"],
    "environment": ["environ", "nature", "durable", "écolog", "parc", "sustain", "wildlife"],
    "health": ["santé", "médical", "clinique", "soin", "hospita", "infirm", "nurse", "care", "caregiver"],
    "education": ["éducation", "enseign", "formateur", "école", "teacher", "pédagog", "trainer", "coach"],
    "science": ["science", "recherche", "research", "laboratoire", "laboratory", "chimie", "biolog"],
    "business": ["business", "manag", "market", "sales", "financ", "entrepr", "gestion"],
    "art": ["art", "créat", "creative", "design", "musique", "music", "graphi", "visual"],
    "technology": ["technolog", "informatique", "software", "code", "programm", "digital", "logiciel"],
    "service": ["service", "client", "customer", "accueil", "relation", "hospit"],
    "sports": ["sport", "entraîn", "fitness", "coach", "athlet"],
    "travel": ["voyage", "travel", "tourism", "transport", "hôtel", "hotel", "international"],
    "culinary": ["cuisine", "culin", "restau", "chef", "gastronom", "aliment", "food"],
    "construction": ["construction", "bâtiment", "building", "architect", "génie civil", "maçon"],
}


def interest_keywords(domain: str) -> list[str]:
    return INTEREST_KEYWORDS.get(domain, [domain])


def relevance_score(occupation: Occupation, profile: BuildingProfile) -> float:
    """How relevant a record is to the profile, used to pick a prompt sample."""
    score = 0.0

    if profile.interests:
        text = f"{occupation.title} {occupation.description} {occupation.sector or ''}".lower()
        skills = " ".join(occupation.skills).lower()
        weighted = 0.0
        for interest in profile.interests:
            if any(kw in text or kw in skills for kw in interest_keywords(interest.domain)):
                weighted += interest.level
        score += weighted / (len(profile.interests) * 5) * INTEREST_WEIGHT

    if profile.traits:
        job_traits = {n for n, v in occupation.trait_vector.items() if v > STRONG_JOB_TRAIT}
        overlap = sum(data.score for name, data in profile.traits.items() if name in job_traits)
        score += min(overlap / len(profile.traits), 1.0) * TRAIT_WEIGHT

    if occupation.source == "ESCO":
        score += ESCO_BONUS

    return min(score, 1.0)


class CatalogStore:
    """In-memory occupation catalog."""

    def __init__(self, occupations: Iterable[Occupation] = ()):
        self._occupations: list[Occupation] = list(occupations)

    @classmethod
    def from_file(cls, path: str | Path) -> "CatalogStore":
        """Load records from a JSON array, skipping invalid entries."""
        path = Path(path)
        if not path.is_absolute():
            path = SERVICE_ROOT / path
        if not path.exists():
            logger.warning("Catalog file not found", path=str(path))
            return cls()

        with path.open(encoding="utf-8") as f:
            raw = json.load(f)

        occupations = []
        for entry in raw:
            try:
                occupation = Occupation.model_validate(entry)
                occupation.trait_vector = validate_vector(occupation.trait_vector)
                occupations.append(occupation)
            except (ValidationError, ValueError) as e:
                logger.warning("Skipping invalid occupation", id=entry.get("id"), error=str(e))
        logger.info("Catalog loaded", path=str(path), occupations=len(occupations))
        return cls(occupations)

    def __len__(self) -> int:
        return len(self._occupations)

    def fetch(self, sources: Iterable[str] | None = None) -> list[Occupation]:
        """All records, optionally restricted to the given source tags."""
        if sources is None:
            return list(self._occupations)
        allowed = set(sources)
        return [o for o in self._occupations if o.source in allowed]

    def get(self, occupation_id: str) -> Occupation | None:
        for occupation in self._occupations:
            if occupation.id == occupation_id:
                return occupation
        return None

    def sample_for_profile(
        self, profile: BuildingProfile, size: int, sources: Iterable[str] | None = None
    ) -> list[Occupation]:
        """The ``size`` records most relevant to the profile."""
        records = self.fetch(sources)
        if len(records) <= size:
            return records
        scored = sorted(records, key=lambda o: relevance_score(o, profile), reverse=True)
        return scored[:size]


# Global catalog instance
_catalog: CatalogStore | None = None


def get_catalog() -> CatalogStore:
    """Get or create the global catalog."""
    global _catalog
    if _catalog is None:
        _catalog = CatalogStore.from_file(get_settings().catalog_path)
    return _catalog


def set_catalog(catalog: CatalogStore) -> None:
    global _catalog
    _catalog = catalog


def reset_catalog() -> None:
    """Reset the global catalog (for testing)."""
    global _catalog
    _catalog = None
