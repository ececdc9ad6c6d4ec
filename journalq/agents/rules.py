"""Keyword rule tables used by the classifier and decomposer.

Each table is versioned and covers one axis. Tuning a heuristic means
editing a table here, bumping RULES_VERSION, and re-running the tests;
no matching logic lives outside RuleTable.
"""

import re
from dataclasses import dataclass, field

RULES_VERSION = "2025.2"


@dataclass(slots=True, frozen=True)
class RuleTable:
    """Ordered (label, pattern) rules matched against normalized text.

    Several rules may share a label; a label matches if any of its
    patterns match. Patterns are compiled once, case-insensitive.
    """
    axis: str
    rules: tuple[tuple[str, str], ...]
    version: str = RULES_VERSION
    _compiled: tuple[tuple[str, re.Pattern], ...] = field(
        init=False, repr=False, compare=False
    )

    def __post_init__(self):
        compiled = tuple((label, re.compile(pattern, re.IGNORECASE)) for label, pattern in self.rules)
        object.__setattr__(self, "_compiled", compiled)

    def matches(self, text: str) -> bool:
        return any(p.search(text) for _, p in self._compiled)

    def labels(self, text: str) -> tuple[str, ...]:
        """Matching labels, ordered by first position in the text."""
        positions: dict[str, int] = {}
        for label, pattern in self._compiled:
            m = pattern.search(text)
            if m and (label not in positions or m.start() < positions[label]):
                positions[label] = m.start()
        return tuple(sorted(positions, key=lambda label: positions[label]))

    def terms(self, text: str) -> tuple[str, ...]:
        """Distinct matched substrings, in text order."""
        found: list[tuple[int, str]] = []
        seen = set()
        for _, pattern in self._compiled:
            for m in pattern.finditer(text):
                term = m.group(0).lower()
                if term not in seen:
                    seen.add(term)
                    found.append((m.start(), term))
        return tuple(term for _, term in sorted(found))


# ============================================================================
# Complexity axis
# ============================================================================

ANALYSIS_MARKERS = RuleTable("complexity.analysis", (
    ("analysis", r"\b(analy[sz]\w*|insights?|correlat\w*|trends?|patterns?|statistic\w*|stats)\b"),
    ("analysis", r"\b(summari[sz]e|breakdown|break down|evaluate|assess\w*|track\w*)\b"),
    ("quantitative", r"\bhow (many|much|often)\b"),
    ("quantitative", r"\b(number of|count|percent(age)?|average|mean|total|frequency|ratio)\b"),
    ("quantitative", r"\b(top \d+|most (common|frequent)|least (common|frequent))\b"),
    ("quantitative", r"\btimes did\b"),
))

TEMPORAL_MARKERS = RuleTable("complexity.temporal", (
    ("relative", r"\b(today|tonight|yesterday|this (morning|afternoon|evening|week|month|year))\b"),
    ("relative", r"\b(last|past|previous) (night|week|month|year|\d+ (days?|weeks?|months?))\b"),
    ("relative", r"\b(recently|lately|these days|over time|over the (past|last)|since)\b"),
    ("calendar", r"\b(january|february|april|june|july|august|september|october|november|december)\b"),
    ("calendar", r"\b(in|during|since|of|from|last|this) (march|may)\b|\b(march|may) \d{4}\b"),
    ("calendar", r"\b\d{4}-\d{2}-\d{2}\b|\b\d{1,2}/\d{1,2}/\d{4}\b"),
))

MULTI_ASPECT_MARKERS = RuleTable("complexity.multi_aspect", (
    ("comparison", r"\b(compare[sd]?|comparison|versus|vs\.?|between)\b"),
    ("relation", r"\b(relationship between|relate[sd]? to|affect\w*|impact\w*|influence\w*)\b"),
    ("relation", r"\b(cause[sd]?|why|trigger\w*|because|lead(s)? to|due to)\b"),
    ("combined", r"\b(both|as well as|along with|together with|in addition to)\b"),
))

MULTI_PART_MARKERS = RuleTable("complexity.multi_part", (
    ("conjoined_question", r"\b(and|but|or)\s+(also\s+)?(how|what|why|when|where|which|who)\b"),
    (
        "conjoined_predicate",
        r"\b(and|but|or)\s+(also\s+)?(did|do|does|am|is|are|was|were|have|has|had|can|could|should|will|would)"
        r"\s+(i|my|me|we|it|there|they)\b",
    ),
    ("also", r"\band also\b"),
    ("also", r"[.;]\s*(also|additionally)\b"),
))

QUANTITATIVE_MARKERS = RuleTable("complexity.quantitative", (
    ("count", r"\bhow (many|often)\b|\bnumber of\b|\bcount\b|\btimes did\b"),
    ("average", r"\b(average|mean|how much)\b"),
    ("share", r"\bpercent(age)?\b|\bratio\b|\bproportion\b"),
    ("ranking", r"\b(top \d+|most (common|frequent)|least (common|frequent))\b"),
    ("stats", r"\b(statistic\w*|stats|frequency|total)\b"),
))


# ============================================================================
# Topic axis
# ============================================================================

EMOTION_TERMS = RuleTable("topic.emotion", (
    ("joy", r"\b(happy|happiness|joy\w*|excited|elated|cheerful|delighted)\b"),
    ("sadness", r"\b(sad|sadness|depressed|melancholy|grief|sorrow|upset)\b"),
    ("anger", r"\b(angry|anger|mad|furious|irritated|annoyed|frustrat\w*|rage)\b"),
    ("anxiety", r"\b(anxious|anxiety|worried|worry|nervous|stressed|panic\w*|fear\w*)\b"),
    ("love", r"\b(love|loving|affection|caring|tender|devoted|adore)\b"),
    ("pride", r"\b(proud|pride|accomplished|confident|satisfied)\b"),
    ("gratitude", r"\b(grateful|thankful|gratitude|appreciat\w*|blessed)\b"),
    ("disappointment", r"\b(disappoint\w*|letdown|discouraged|dejected)\b"),
    ("confusion", r"\b(confused|confusion|uncertain\w*|bewildered|puzzled)\b"),
    ("calm", r"\b(calm|peaceful|relaxed|serene|tranquil)\b"),
))

EMOTION_MARKERS = RuleTable("topic.emotion_marker", (
    ("emotion", r"\b(emotion\w*|feel(ing|ings|s)?|felt|mood\w*|sentiment)\b"),
))

THEME_AREAS = RuleTable("topic.area", (
    ("meditation", r"\b(meditat\w*|mindful\w*|practice)\b"),
    ("sleep", r"\b(sleep\w*|slept|rested|restful|bedtime|insomnia|wak(e|ing) up|naps?)\b"),
    ("work", r"\b(work|working|workload|job|career|productiv\w*)\b"),
    ("relationships", r"\b(relationships?|friends?|friendships?|family|social\w*|dating)\b"),
    ("health", r"\b(health\w*|exercis\w*|fitness|physical\w*|workouts?|diet|eating)\b"),
    ("mood", r"\b(mood\w*|mental\w*|stress\w*|anxi\w*)\b"),
))

THEME_MARKERS = RuleTable("topic.theme_marker", (
    ("theme", r"\b(themes?|topics?|recurring|what do i (write|talk|journal) about|talk about)\b"),
))

COMPARISON_MARKERS = RuleTable("topic.comparison", (
    ("comparison", r"\b(compare[sd]?|comparison|versus|vs\.?|differen\w*|differ)\b"),
    ("comparison", r"\b(better|worse|more|less) than\b"),
    ("comparison", r"\b(changed?|changes) (between|from|since)\b"),
))

PERSON_MARKERS = RuleTable("topic.person", (
    (
        "person",
        r"\b(mom|dad|mother|father|parents?|brother|sister|sibling|friend|colleague|coworker"
        r"|boss|manager|doctor|therapist|teacher|partner|spouse|wife|husband|girlfriend|boyfriend"
        r"|son|daughter|kids?|grandma|grandpa)\b",
    ),
    ("person", r"\bwho\b"),
))

ENTITY_MARKERS = RuleTable("topic.entity", (
    ("place", r"\b(home|office|gym|restaurant|hospital|school|university|park|beach|store|mall|clinic)\b"),
    ("organization", r"\b(company|workplace|team|department|organization)\b"),
    ("event", r"\b(meeting|appointment|party|wedding|conference|interview|vacation|trip|presentation)\b"),
))

MENTAL_HEALTH_MARKERS = RuleTable("topic.mental_health", (
    ("crisis", r"\b(suicid\w*|self[- ]harm|kill myself|end it all|hopeless\w*)\b"),
    ("clinical", r"\b(depression|depressed|panic attacks?|ptsd|trauma\w*|burn(ed)? ?out|eating disorder)\b"),
    ("support", r"\b(therap(y|ist)|counsel\w*|mental health|can'?t cope|overwhelm\w*)\b"),
))


# ============================================================================
# Scope axis
# ============================================================================

GREETINGS = RuleTable("scope.greeting", (
    ("greeting", r"^(hi|hello|hey|yo|good (morning|afternoon|evening)|thanks|thank you|ok|okay|cool)[\s!.?]*$"),
))

OUT_OF_SCOPE_MARKERS = RuleTable("scope.out_of_scope", (
    ("weather", r"\bweather\b|\bforecast\b"),
    ("general_knowledge", r"\bcapital of\b|\bwho invented\b|\bpresident of\b|\bhistory of\b"),
    ("general_knowledge", r"\bwhat is the (meaning|definition) of\b|\bdefine\b"),
    ("coding", r"\bwrite (me )?(a )?(code|program|script|function)\b|\b(python|javascript|java|sql) (code|function|script)\b"),
    ("recipes", r"\brecipe for\b|\bhow (do i |to )(cook|bake)\b"),
    ("sports", r"\bwho won\b|\b(nba|nfl|mlb|nhl|super bowl|world cup)\b"),
    ("finance", r"\bstock (price|market)\b|\bcrypto\w*\b"),
    ("misc", r"\btell me a joke\b|\btranslate\b|\bnews\b"),
))

PERSONAL_REFERENCES = RuleTable("scope.personal", (
    ("self", r"\b(i|me|my|mine|myself|i'm|i've|i'd)\b"),
    ("journal", r"\b(journal\w*|entr(y|ies)|diary|wrote|written|logged)\b"),
))
