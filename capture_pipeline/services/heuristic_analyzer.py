"""
Deterministic keyword-based analysis.

Used when the LLM is unavailable. Results carry a fixed low confidence so the
rest of the pipeline always treats them as suggestions.
"""

import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

CATEGORY_VOCABULARY: Dict[str, List[str]] = {
    "reminders": [
        r"\bremind(?:er)?\b", r"\bdon'?t forget\b", r"\bremember to\b", r"\bcall\b",
        r"\bappointment\b", r"\bdeadline\b", r"\bdue\b",
    ],
    "projects": [
        r"\bproject\b", r"\bmilestone\b", r"\bsprint\b", r"\bship\b", r"\brelease\b",
        r"\bdeliverable\b", r"\broadmap\b",
    ],
    "ideas": [r"\bidea\b", r"\bwhat if\b", r"\bcould we\b", r"\bconcept\b", r"\binvent\b"],
    "brainstorm": [r"\bbrainstorm\b", r"\boptions?\b", r"\balternatives?\b", r"\bpros and cons\b"],
    "self-improvement": [r"\bhabit\b", r"\bworkout\b", r"\blearn\b", r"\bpractice\b", r"\bgoal\b"],
    "mental-health": [r"\banxious\b", r"\bstress(?:ed)?\b", r"\bgrateful\b", r"\bmood\b", r"\btherapy\b"],
}
DEFAULT_CATEGORY = "notes"

_EVENT_PATTERN = re.compile(
    r"\b(call|meet(?:ing)?|schedule|appointment|lunch|dinner|interview|sync up|catch up)\b",
    re.IGNORECASE,
)
_TASK_PATTERN = re.compile(
    r"\b(?:todo|to-do|need to|have to|must|remind me to|don'?t forget to)\s+([^.!?\n]+)",
    re.IGNORECASE,
)
_TIME_PATTERN = re.compile(r"\b(?:at\s+)?(\d{1,2})(?::(\d{2}))?\s*(am|pm)\b", re.IGNORECASE)
_WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
_DAY_PATTERN = re.compile(r"\b(today|tonight|tomorrow|next week|" + "|".join(_WEEKDAYS) + r")\b", re.IGNORECASE)
_PLACE_PATTERN = re.compile(r"\b(?:at|in)\s+(?:the\s+)?([A-Z][a-zA-Z]+(?:\s+[A-Z][a-zA-Z]+)*)")

_NOT_PEOPLE = {
    "i", "the", "a", "an", "and", "or", "but", "my", "we", "our", "you", "your", "it", "this",
    "that", "today", "tonight", "tomorrow", "call", "meet", "email", "remind", "buy",
    "january", "february", "march", "april", "may", "june", "july", "august", "september",
    "october", "november", "december", *_WEEKDAYS,
}
_STOPWORDS = {
    "the", "and", "for", "with", "that", "this", "from", "have", "will", "about", "into",
    "your", "you", "are", "was", "were", "been", "tomorrow", "today", "need", "should",
    "call", "remind", "don", "forget", "at", "pm", "am",
}


def classify_category(text: str) -> Tuple[str, Optional[str]]:
    """Best matching vocabulary category and the keyword that decided it."""
    scores: Dict[str, int] = {}
    hits: Dict[str, str] = {}
    for category, patterns in CATEGORY_VOCABULARY.items():
        for pattern in patterns:
            found = re.findall(pattern, text, re.IGNORECASE)
            if found:
                scores[category] = scores.get(category, 0) + len(found)
                hits.setdefault(category, found[0] if isinstance(found[0], str) else pattern)
    if not scores:
        return DEFAULT_CATEGORY, None
    best = max(scores, key=scores.get)
    return best, hits.get(best)


def extract_people(text: str) -> List[str]:
    """Capitalized words that do not open a sentence."""
    people: List[str] = []
    for sentence in re.split(r"[.!?\n]+", text):
        words = re.findall(r"[A-Za-z][A-Za-z'\-]*", sentence)
        for word in words[1:]:
            if word[0].isupper() and word.lower() not in _NOT_PEOPLE and word not in people:
                people.append(word)
    return people


def extract_dates(text: str) -> List[str]:
    found = [m.group(0) for m in _DAY_PATTERN.finditer(text)]
    found += [m.group(0).strip() for m in _TIME_PATTERN.finditer(text)]
    return found


def resolve_when(text: str, reference: datetime) -> Optional[datetime]:
    """Resolve phrases like 'tomorrow at 5pm' against reference."""
    day = _DAY_PATTERN.search(text)
    time_match = _TIME_PATTERN.search(text)
    if not day and not time_match:
        return None

    when = reference
    if day:
        word = day.group(1).lower()
        if word == "tomorrow":
            when = reference + timedelta(days=1)
        elif word == "next week":
            when = reference + timedelta(days=7)
        elif word in _WEEKDAYS:
            delta = (_WEEKDAYS.index(word) - reference.weekday()) % 7 or 7
            when = reference + timedelta(days=delta)
        elif word == "tonight" and not time_match:
            return when.replace(hour=20, minute=0, second=0, microsecond=0)

    if time_match:
        hour = int(time_match.group(1)) % 12
        if time_match.group(3).lower() == "pm":
            hour += 12
        minute = int(time_match.group(2) or 0)
        return when.replace(hour=hour, minute=minute, second=0, microsecond=0)
    return when.replace(hour=9, minute=0, second=0, microsecond=0)


def extract_keywords(text: str, top_k: int) -> List[str]:
    words = re.findall(r"\b[a-zA-Z]{3,}\b", text.lower())
    freq: Dict[str, int] = {}
    for word in words:
        if word not in _STOPWORDS:
            freq[word] = freq.get(word, 0) + 1
    ranked = sorted(freq.items(), key=lambda item: (-item[1], -len(item[0])))
    return [word for word, _ in ranked[:top_k]]


def extract_commands(text: str, reference: datetime) -> List[Dict[str, Any]]:
    commands: List[Dict[str, Any]] = []
    when = resolve_when(text, reference)
    event = _EVENT_PATTERN.search(text)
    if event and when is not None:
        title = text.strip().rstrip(".!?")[:120]
        commands.append({
            "type": "create_event",
            "title": title,
            "params": {
                "title": title,
                "start": when.isoformat(),
                "end": (when + timedelta(minutes=30)).isoformat(),
                "description": text,
            },
            "confidence": 0.6,
        })
    for match in _TASK_PATTERN.finditer(text):
        task = match.group(1).strip()
        if 3 <= len(task) <= 200:
            params: Dict[str, Any] = {"title": task}
            if when is not None:
                params["due"] = when.isoformat()
            commands.append({"type": "create_task", "title": task, "params": params, "confidence": 0.5})
    return commands


def analyze(text: str, reference: datetime, *, confidence: float, max_tags: int = 10) -> Dict[str, Any]:
    """Full heuristic enrichment in the same shape the enrichment service returns."""
    category, keyword = classify_category(text)
    entities = {
        "people": extract_people(text),
        "places": [m.group(1) for m in _PLACE_PATTERN.finditer(text) if m.group(1).lower() not in _NOT_PEOPLE],
        "dates": extract_dates(text),
        "organizations": [],
        "topics": [],
    }
    entities["places"] = [p for p in entities["places"] if p not in entities["people"]]
    summary = text.strip().split("\n", 1)[0][:140]
    return {
        "summary": summary,
        "category": category,
        "subcategory": keyword,
        "confidence": confidence,
        "tags": extract_keywords(text, max_tags),
        "entities": entities,
        "commands": [dict(c, confidence=min(c["confidence"], confidence)) for c in extract_commands(text, reference)],
    }
