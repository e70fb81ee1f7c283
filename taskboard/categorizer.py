"""
Task categorizer.

The scoring itself is an external service; this module builds its prompt,
normalises its JSON reply, and provides a rule-based fallback used when the
service is unavailable or for fast inline suggestions.

Result shape:
    {"category": str, "task_type": str, "priority": str,
     "tags": [str], "confidence": float}
"""
import json
import re
from typing import Any, Dict, List

from .schema import PRIORITIES, TASK_TYPES, TaskCard

CATEGORIES = ["frontend", "backend", "database", "infrastructure", "testing",
              "documentation", "design", "research", "uncategorized"]

SCORING_PROMPT = """You categorize tasks on a team task board. Given a task title and optional description, return a JSON object with:

1. "category": one of: frontend, backend, database, infrastructure, testing, documentation, design, research, uncategorized
2. "task_type": one of: task, bug, feature, epic
3. "priority": one of: low, medium, high, critical
4. "tags": array of 1-3 short lowercase tags
5. "confidence": number between 0 and 1

Respond with ONLY the JSON object, no markdown, no explanation"""


def build_prompt(title: str, description: str = "") -> str:
    """User prompt for the scoring service."""
    prompt = f"Task: {title}"
    if description:
        prompt += f"\nDescription: {description[:500]}"
    return prompt


def scoring_messages(title: str, description: str = "") -> List[Dict[str, str]]:
    """Chat-style request body for the scoring service."""
    return [
        {"role": "system", "content": SCORING_PROMPT},
        {"role": "user", "content": build_prompt(title, description)},
    ]


def _default_categorization() -> Dict[str, Any]:
    return {
        "category": "uncategorized",
        "task_type": "task",
        "priority": "medium",
        "tags": [],
        "confidence": 0.0,
    }


def parse_scoring_response(response: str) -> Dict[str, Any]:
    """Parse the scoring service's JSON reply into a categorization dict."""
    response = response.strip()
    if response.startswith("```"):
        response = re.sub(r'^```(?:json)?\s*', '', response)
        response = re.sub(r'\s*```$', '', response)

    try:
        result = json.loads(response)
    except json.JSONDecodeError:
        match = re.search(r'\{[^}]+\}', response, re.DOTALL)
        if not match:
            return _default_categorization()
        try:
            result = json.loads(match.group())
        except json.JSONDecodeError:
            return _default_categorization()
    if not isinstance(result, dict):
        return _default_categorization()

    if result.get("category") not in CATEGORIES:
        result["category"] = "uncategorized"
    if result.get("task_type") not in TASK_TYPES:
        result["task_type"] = "task"
    if result.get("priority") not in PRIORITIES:
        result["priority"] = "medium"

    if not isinstance(result.get("tags"), list):
        result["tags"] = []
    result["tags"] = [str(t).lower()[:20] for t in result["tags"][:5]]

    try:
        confidence = float(result.get("confidence", 0.0))
    except (TypeError, ValueError):
        confidence = 0.0
    result["confidence"] = max(0.0, min(confidence, 1.0))

    return {k: result[k] for k in _default_categorization()}


# Ordered: first match wins
_CATEGORY_RULES = [
    ("testing", ["test", "pytest", "coverage", "e2e", "qa"]),
    ("documentation", ["docs", "documentation", "readme", "guide"]),
    ("database", ["database", "migration", "sql", "index", "schema", "query"]),
    ("infrastructure", ["deploy", "docker", "ci", "pipeline", "server", "kubernetes", "nginx"]),
    ("frontend", ["ui", "frontend", "css", "react", "page", "button", "modal", "layout"]),
    ("backend", ["api", "endpoint", "backend", "service", "auth", "websocket"]),
    ("design", ["design", "mockup", "wireframe", "ux"]),
    ("research", ["research", "investigate", "spike", "evaluate", "compare"]),
]


def categorize_by_rules(title: str, description: str = "") -> Dict[str, Any]:
    """Keyword-based categorizer (no external service needed)."""
    text = (title + " " + description).lower()
    words = set(re.findall(r"[a-z0-9]+", text))
    result = _default_categorization()
    hits = 0

    for category, keywords in _CATEGORY_RULES:
        matched = [k for k in keywords if k in words]
        if matched:
            result["category"] = category
            result["tags"].append(matched[0])
            hits += len(matched)
            break

    if words & {"fix", "bug", "broken", "error", "crash", "fails", "regression"}:
        result["task_type"] = "bug"
        hits += 1
    elif words & {"add", "implement", "new", "feature", "support"}:
        result["task_type"] = "feature"
        hits += 1
    elif words & {"epic", "initiative", "milestone"}:
        result["task_type"] = "epic"
        hits += 1

    if words & {"urgent", "critical", "asap", "outage", "security"}:
        result["priority"] = "critical"
        result["tags"].append("urgent")
    elif words & {"important", "blocker", "blocking"}:
        result["priority"] = "high"
    elif "nice to have" in text or words & {"someday", "eventually"}:
        result["priority"] = "low"

    result["tags"] = result["tags"][:3]
    result["confidence"] = round(min(0.3 + 0.2 * hits, 0.9), 2) if hits else 0.1
    return result


def apply_categorization(card: TaskCard, categorization: Dict[str, Any]) -> Dict[str, Any]:
    """
    Fields to update on a card from a categorization result.

    Tags are merged; priority and type are only filled in when the card still
    has the defaults, so a human choice is never overridden.
    """
    fields: Dict[str, Any] = {"category": categorization.get("category", "uncategorized")}
    if categorization.get("tags"):
        merged = list(card.tags)
        merged += [t for t in categorization["tags"] if t not in merged]
        fields["tags"] = merged
    if card.priority == "medium" and categorization.get("priority") in PRIORITIES:
        fields["priority"] = categorization["priority"]
    if card.task_type == "task" and categorization.get("task_type") in TASK_TYPES:
        fields["task_type"] = categorization["task_type"]
    return fields
