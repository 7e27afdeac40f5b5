"""Rule-based message analyzer.

Extracts structured signals from a user message with keyword matching only.
Keywords are prefix-matched on word boundaries so simple inflections
("organise", "organising") hit the same entry. Vocabularies cover English
and French.
"""

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Protocol

import structlog

from career_guide_api.signals import (
    AnalysisResult,
    ConstraintInsight,
    EmotionalTone,
    Insights,
    InterestInsight,
    TraitInsight,
    ValueInsight,
)

logger = structlog.get_logger()


@dataclass
class AnalysisContext:
    """Light conversation context passed to analyzers."""

    phase: str = "intro"
    known_traits: set[str] = field(default_factory=set)
    questions_asked: int = 0


class Analyzer(Protocol):
    async def analyze(self, text: str, context: AnalysisContext) -> AnalysisResult: ...


# =============================================================================
# Vocabularies
# =============================================================================

TRAIT_KEYWORDS: dict[str, list[str]] = {
    "analytical": ["analy", "logic", "logique", "data", "données", "research", "recherche", "evaluat", "méthodique"],
    "problem-solving": ["solve", "résoudre", "solution", "problem", "problème", "fix", "repair", "réparer", "troubleshoot"],
    "creativity": ["creat", "créat", "imagin", "artistic", "artistique", "original", "invent", "inspiration"],
    "innovation": ["innov", "new idea", "pioneer", "pionnier", "modern", "futur", "transform"],
    "detail-oriented": ["detail", "détail", "precise", "précis", "meticulous", "minutieux", "rigor", "rigoureux", "quality"],
    "independent": ["independ", "indépendant", "autonom", "alone", "seul", "on my own", "freedom", "liberté"],
    "teamwork": ["team", "équipe", "together", "ensemble", "group", "groupe", "collectif"],
    "leadership": ["lead", "diriger", "manage", "manager", "decision", "décision", "supervis", "motivat"],
    "communication": ["talk", "parler", "explain", "expliquer", "present", "présenter", "convinc", "convaincre", "discuss"],
    "organizational": ["organi", "planning", "planifier", "schedule", "structur", "coordinat"],
    "empathy": ["help", "aider", "support", "soutenir", "listen", "écouter", "care about", "bienveillan", "compassion"],
    "design": ["design", "aesthetic", "esthétique", "visual", "visuel", "graphic", "graphique", "style"],
    "service": ["service", "customer", "client", "assist", "accueil", "welcom"],
    "teaching": ["teach", "enseign", "train", "former", "educat", "mentor", "pédagog"],
    "collaborative": ["collaborat", "cooperat", "coopér", "partner", "partenaire", "contribut", "share", "partager"],
}

INTEREST_KEYWORDS: dict[str, list[str]] = {
    "technology": ["computer", "ordinateur", "programm", "software", "logiciel", "code", "coding", "tech", "informatique", "numérique", "digital"],
    "health": ["health", "santé", "medic", "médec", "patient", "hospital", "hôpital", "nurs", "infirm", "therap"],
    "education": ["school", "école", "teach", "enseign", "student", "étudiant", "educat", "éducation", "formation"],
    "business": ["business", "entreprise", "sales", "vente", "market", "financ", "commerce", "econom"],
    "art": ["art", "music", "musique", "paint", "peinture", "draw", "dessin", "photo", "theat", "théâtre", "cinema"],
    "environment": ["environment", "environnement", "ecolog", "écolog", "climate", "climat", "sustainab", "durable", "forest", "forêt"],
    "animals": ["animal", "animaux", "dog", "chien", "cats", "chat", "horse", "cheval", "pets", "zoo", "wildlife", "faune"],
    "sports": ["sport", "fitness", "athlet", "athlète", "training", "entraîn", "football", "running", "course"],
    "science": ["science", "laborator", "laboratoire", "experiment", "chemi", "chimie", "physics", "physique", "biolog"],
    "agriculture": ["farm", "ferme", "agricult", "crop", "récolte", "harvest", "tractor", "tracteur", "élevage"],
    "horticulture": ["garden", "jardin", "plant", "flower", "fleur", "botan", "landscap", "paysag", "tree", "arbre"],
    "construction": ["build", "construct", "bâtiment", "chantier", "carpent", "menuis", "renovat", "rénov", "brick"],
    "culinary": ["cook", "cuisin", "chef", "recipe", "recette", "bak", "pâtiss", "boulang", "restaurant", "food"],
    "mechanics": ["mechanic", "mécani", "engine", "moteur", "garage", "motor", "machine", "maintenance"],
    "social": ["social", "volunteer", "bénévol", "charity", "humanitar", "community", "communauté"],
    "law": ["law", "droit", "legal", "juridique", "justice", "court", "tribunal", "lawyer", "avocat"],
    "communication": ["media", "média", "journalis", "press", "presse", "radio", "advertis", "publicité"],
    "hospitality": ["hotel", "hôtel", "touris", "reception", "réception", "hospitality", "hôtellerie"],
    "security": ["security", "sécurité", "police", "firefight", "pompier", "surveillance", "guard"],
}

VALUE_KEYWORDS: dict[str, list[str]] = {
    "autonomy": ["autonomy", "autonomie", "freedom", "liberté", "independence", "indépendance"],
    "security": ["stability", "stabilité", "stable", "secure job", "permanent", "sécurité de l'emploi"],
    "creativity": ["creativity", "créativité", "self-expression", "originality", "originalité"],
    "recognition": ["recognition", "reconnaissance", "appreciat", "valoris", "reward", "récompense"],
    "growth": ["growth", "progress", "évolution", "career", "carrière", "learn", "apprendre"],
    "balance": ["balance", "équilibre", "family time", "free time", "temps libre", "vie privée"],
    "impact": ["impact", "meaning", "sens", "mission", "make a difference", "utile", "useful"],
    "challenge": ["challeng", "défi", "stimulat", "complex"],
}

CONSTRAINT_KEYWORDS: dict[str, list[str]] = {
    "geographic": ["relocat", "déménager", "move", "region", "région", "commute", "distance", "travel", "voyager"],
    "schedule": ["schedule", "horaires", "hours", "weekend", "week-end", "night", "nuit", "evening", "soir"],
    "physical": ["physical", "physique", "mobility", "mobilité", "disab", "handicap", "back pain", "fatigue"],
    "financial": ["salary", "salaire", "money", "argent", "income", "revenu", "budget", "pay"],
    "family": ["family", "famille", "children", "enfants", "kids", "spouse", "conjoint"],
    "education": ["degree", "diplôme", "qualification", "study", "études"],
}

HIGH_INTENSITY = ["absolutely", "really", "love", "passion", "adore", "vraiment", "absolument", "passionn", "énormément"]
MEDIUM_INTENSITY = ["like", "enjoy", "quite", "aime", "beaucoup", "assez", "plutôt"]
NEGATIONS = ["not", "never", "hate", "don't", "pas", "jamais", "déteste", "horrible"]
BLOCKING_WORDS = ["can't", "cannot", "impossible", "never", "must", "obligé", "jamais"]
LIMITING_WORDS = ["difficult", "hard", "difficile", "compliqué", "tricky"]

TONE_WORDS: dict[str, list[str]] = {
    "positive": ["happy", "glad", "excited", "motivated", "heureux", "content", "motivé", "ravi", "enthousias"],
    "negative": ["sad", "bored", "frustrat", "anxious", "stress", "triste", "ennuy", "déçu", "anxieux"],
    "uncertain": ["maybe", "not sure", "unsure", "perhaps", "peut-être", "pas sûr", "hésit", "confus"],
}

NEGATION_PATTERN = re.compile(r"\b(not|never|no|pas|non|jamais|aucun)\b")


@lru_cache(maxsize=None)
def _keyword_pattern(keyword: str) -> re.Pattern:
    return re.compile(r"\b" + re.escape(keyword))


def find_matches(text: str, keywords: list[str]) -> list[str]:
    """Keywords that occur in ``text`` as a word or word prefix."""
    return [kw for kw in keywords if _keyword_pattern(kw).search(text)]


def _window(text: str, keyword: str, radius: int = 25) -> str:
    index = text.find(keyword)
    if index == -1:
        return ""
    return text[max(0, index - radius) : index + len(keyword) + radius]


def intensity(text: str, matches: list[str]) -> float:
    """Intensity multiplier in [0.1, 2] from words near the matches."""
    value = 1.0
    for match in matches:
        context = _window(text, match)
        value += 0.3 * sum(1 for w in HIGH_INTENSITY if w in context)
        value += 0.1 * sum(1 for w in MEDIUM_INTENSITY if w in context)
        if any(re.search(r"\b" + re.escape(w), context) for w in NEGATIONS):
            value *= 0.3
    return max(0.1, min(2.0, value))


def constraint_impact(text: str, keyword: str) -> str:
    context = _window(text, keyword, radius=30)
    if any(w in context for w in BLOCKING_WORDS):
        return "blocking"
    if any(w in context for w in LIMITING_WORDS):
        return "limiting"
    return "preferential"


def detect_tone(text: str) -> EmotionalTone:
    scores = {tone: float(len(find_matches(text, words))) for tone, words in TONE_WORDS.items()}
    exclamations = text.count("!")
    scores["positive"] += exclamations * 0.5
    scores["uncertain"] += text.count("?") * 0.3

    if scores["positive"] > scores["negative"] and scores["positive"] > scores["uncertain"]:
        return "excited" if exclamations > 1 else "positive"
    if scores["negative"] > scores["positive"]:
        return "negative"
    if scores["uncertain"] > 0.5:
        return "uncertain"
    return "neutral"


def engagement_level(text: str) -> int:
    words = len(text.split())
    score = 3.0
    if words > 50:
        score += 1
    if words > 100:
        score += 0.5
    if words < 5:
        score -= 2
    score += text.count("!") * 0.3 + text.count("?") * 0.2
    score += 0.5 * len(find_matches(text, HIGH_INTENSITY))
    if any(p in text for p in ("for example", "such as", "par exemple", "notamment")):
        score += 0.5
    return int(round(max(1.0, min(5.0, score))))


class KeywordAnalyzer:
    """Keyword and regex based signal extraction.

    With ``use_context`` the phase and previously seen traits tune the
    confidence thresholds; without it every message is read in isolation.
    """

    def __init__(self, use_context: bool = True):
        self.use_context = use_context

    async def analyze(self, text: str, context: AnalysisContext) -> AnalysisResult:
        return self.analyze_sync(text, context)

    def analyze_sync(self, text: str, context: AnalysisContext | None = None) -> AnalysisResult:
        normalized = text.lower().strip()
        if not normalized:
            return AnalysisResult()

        traits = self._traits(normalized)
        if self.use_context and context is not None:
            traits = self._adjust(traits, context)

        interests = []
        for domain, keywords in INTEREST_KEYWORDS.items():
            matches = find_matches(normalized, keywords)
            if matches:
                confidence = min(len(matches) * 0.3 * intensity(normalized, matches), 1.0)
                interests.append(
                    InterestInsight(domain=domain, confidence=confidence, context=", ".join(matches[:2]))
                )

        values = []
        for value, keywords in VALUE_KEYWORDS.items():
            matches = find_matches(normalized, keywords)
            if matches:
                confidence = min(len(matches) * 0.4, 1.0)
                values.append(
                    ValueInsight(
                        value=value,
                        importance=max(1, round(confidence * 5)),
                        context=_window(normalized, matches[0]).strip(),
                    )
                )

        constraints = []
        for kind, keywords in CONSTRAINT_KEYWORDS.items():
            matches = find_matches(normalized, keywords)
            if matches:
                constraints.append(
                    ConstraintInsight(
                        type=kind,
                        description=_window(normalized, matches[0]).strip(),
                        impact=constraint_impact(normalized, matches[0]),
                    )
                )

        topics = [i.domain for i in interests] + [v.value for v in values]
        return AnalysisResult(
            insights=Insights(traits=traits, interests=interests, values=values, constraints=constraints),
            emotional_tone=detect_tone(normalized),
            engagement_level=engagement_level(normalized),
            key_topics=list(dict.fromkeys(topics))[:5],
            source="rule_based",
        )

    def _traits(self, text: str) -> list[TraitInsight]:
        negations = len(NEGATION_PATTERN.findall(text))
        length_factor = min(len(text) / 100, 1.5)
        traits = []
        for trait, keywords in TRAIT_KEYWORDS.items():
            matches = find_matches(text, keywords)
            if not matches:
                continue
            confidence = len(matches) * 0.2 * intensity(text, matches) * length_factor
            if negations:
                confidence *= max(0.3, 1 - negations * 0.3)
            confidence = min(confidence, 1.0)
            if confidence > 0.1:
                traits.append(
                    TraitInsight(
                        trait=trait,
                        score=confidence,
                        confidence=confidence,
                        evidence=", ".join(matches[:3]),
                    )
                )
        traits.sort(key=lambda t: t.confidence, reverse=True)
        return traits

    def _adjust(self, traits: list[TraitInsight], context: AnalysisContext) -> list[TraitInsight]:
        if context.phase == "refinement":
            traits = [t for t in traits if t.confidence > 0.3]
        for t in traits:
            if t.trait in context.known_traits:
                t.confidence = min(1.0, t.confidence * 1.2)
        return traits
