"""
Deskpilot Locale Phrase Lists

Heuristic detection of destructive intent and confirmations in end-user
messages. The model is not trusted to flag destructive requests on its
own, so the user's wording is scanned as a second signal.

Unknown locales fall back to English.
"""

from __future__ import annotations

import re

DEFAULT_LOCALE = "en"

IMPLIED_DESTRUCTIVE_PHRASES: dict[str, tuple[str, ...]] = {
    "en": (
        "don't want",
        "get rid of",
        "remove",
        "undo",
        "delete",
        "cancel",
        "throw away",
        "discard",
        "eliminate",
        "refund",
    ),
    "he": (
        "לא רוצה",
        "תבטל",
        "בטל",
        "תסיר",
        "תמחק",
        "מחק",
        "להיפטר",
        "לזרוק",
        "לבטל",
        "החזר",
    ),
}

CONFIRMATION_PHRASES: dict[str, tuple[str, ...]] = {
    "en": (
        "yes",
        "yeah",
        "yep",
        "sure",
        "ok",
        "okay",
        "confirm",
        "confirmed",
        "go ahead",
        "do it",
        "proceed",
        "correct",
        "right",
        "affirmative",
    ),
    "he": (
        "כן",
        "בסדר",
        "אוקיי",
        "נכון",
        "תאשר",
        "אישור",
        "תמשיך",
        "קדימה",
        "בצע",
        "המשך",
    ),
}

# Anything that is not a word character, whitespace or apostrophe splits tokens
_PUNCTUATION = re.compile(r"[^\w\s']+", re.UNICODE)


def supported_locales() -> list[str]:
    return sorted(set(IMPLIED_DESTRUCTIVE_PHRASES) | set(CONFIRMATION_PHRASES))


def _phrases_for(table: dict[str, tuple[str, ...]], locale: str | None) -> tuple[str, ...]:
    key = (locale or DEFAULT_LOCALE).lower().split("-")[0]
    return table.get(key, table[DEFAULT_LOCALE])


def tokenize(message: str) -> list[str]:
    """Casefold and split a message into word tokens."""
    normalized = (message or "").replace("’", "'").casefold()
    return _PUNCTUATION.sub(" ", normalized).split()


def detect_implied_destructive_intent(message: str, locale: str = DEFAULT_LOCALE) -> bool:
    """True if the message contains any destructive phrase for the locale."""
    text = (message or "").replace("’", "'").casefold()
    if not text:
        return False
    return any(phrase.casefold() in text for phrase in _phrases_for(IMPLIED_DESTRUCTIVE_PHRASES, locale))


def is_confirmation(message: str, locale: str = DEFAULT_LOCALE) -> bool:
    """True if the message *is* an affirmative reply.

    The message must begin with a whole confirmation phrase; trailing
    words and punctuation are allowed ("yes please", "ok!"). Phrases
    embedded in longer words or preceded by other words do not count,
    so "yesterday" and "not right" are not confirmations.
    """
    tokens = tokenize(message)
    if not tokens:
        return False
    for phrase in _phrases_for(CONFIRMATION_PHRASES, locale):
        phrase_tokens = tokenize(phrase)
        if tokens[:len(phrase_tokens)] == phrase_tokens:
            return True
    return False
