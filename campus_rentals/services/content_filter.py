from __future__ import annotations


BANNED_WORDS = (
    "scam",
    "illegal",
    "weapon",
    "drugs",
    "violence",
)


def contains_banned_words(text: str | None) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(word in lowered for word in BANNED_WORDS)
