# file: branchtree/core/context/labeler.py
"""
Short topic labels for tree nodes. Display aid only; nothing in the tree
depends on these values.
"""

import re
from typing import List, Pattern

MAX_LABEL_LENGTH = 25

# Conversation openers: the first group holds the topic
_TOPIC_PATTERNS: List[Pattern[str]] = [
    re.compile(r"(?:here(?:'s| are)?\s+(?:some|a few)?)\s+(.+?)(?:\s+(?:for|to|that|you))", re.I),
    re.compile(r"(?:let(?:'s| me| us))\s+(.+?)(?:\s+(?:the|your|this))", re.I),
    re.compile(r"(?:you (?:can|could|should|might))\s+(.+?)(?:\s+(?:by|with|using|to))", re.I),
    re.compile(r"(?:(?:i|we) (?:can|could|will|would))\s+(.+?)(?:\s+(?:by|with|the))", re.I),
    re.compile(r"(?:how (?:about|to))\s+(.+?)(?:\?|\.|\s+(?:for|with))", re.I),
    re.compile(r"(?:what (?:is|are|about))\s+(.+?)(?:\?|\.|\s+(?:is|are))", re.I),
    re.compile(r"(?:why (?:not|don't|is))\s+(.+?)(?:\?|\.)", re.I),
    re.compile(r"(?:consider|try|explore)\s+(.+?)(?:\s+(?:for|to|with))", re.I),
]

_TOPIC_INDICATORS: List[Pattern[str]] = [
    re.compile(r"(?:focus on|talking about|discussing|regarding)\s+(.+?)(?:\.|,|$)", re.I),
    re.compile(r"(?:idea(?:s)? (?:of|for|about))\s+(.+?)(?:\.|,|$)", re.I),
    re.compile(r"(?:approach(?:es)? (?:to|for))\s+(.+?)(?:\.|,|$)", re.I),
]

_ARTICLE = re.compile(r"^(a|an|the)\s+", re.I)

_STOP_WORDS = {
    "about", "would", "could", "should", "there", "their", "these", "those",
    "this", "that", "with", "from", "have", "been", "will", "what", "when",
    "where", "which", "while", "whom", "such", "both", "each", "other",
    "some", "many", "more", "most", "very", "also", "just",
}


def _capitalize_first(text: str) -> str:
    return text[:1].upper() + text[1:]


def label_for(text: str) -> str:
    """Derives a short human-readable topic label from free text."""
    text = (text or "").strip()
    if not text:
        return ""

    for pattern in _TOPIC_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1):
            extracted = _ARTICLE.sub("", match.group(1).strip())
            return _capitalize_first(extracted)[:MAX_LABEL_LENGTH]

    for indicator in _TOPIC_INDICATORS:
        match = indicator.search(text)
        if match and match.group(1).strip():
            return _capitalize_first(match.group(1).strip())[:MAX_LABEL_LENGTH]

    first_sentence = re.split(r"[.!?]", text)[0] or text
    words = [re.sub(r"[^a-z0-9]", "", w, flags=re.I) for w in first_sentence.split()]
    words = [w for w in words if len(w) > 3 and w.lower() not in _STOP_WORDS]

    proper_nouns = [w for w in words if w[0].isupper()]
    if proper_nouns:
        return " ".join(proper_nouns[:3])[:MAX_LABEL_LENGTH]

    if len(words) >= 2:
        return _capitalize_first(" ".join(words[:3]).lower())[:MAX_LABEL_LENGTH]

    fallback = " ".join(first_sentence.split()[:3])
    return _capitalize_first(fallback)[:MAX_LABEL_LENGTH] or "Response"
