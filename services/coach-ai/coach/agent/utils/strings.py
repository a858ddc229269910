import re

WORD_BOUNDARY = re.compile(r"[A-Z]{2,}(?=[A-Z][a-z]+[0-9]*|\b)|[A-Z]?[a-z]+[0-9]*|[A-Z]+|[0-9]+")
NON_WORD = re.compile(r"[^a-z0-9\s]+")
WHITESPACE = re.compile(r"\s+")


def to_snake_case(value: str) -> str:
    """``ReviewProgress``, ``review-progress`` and ``Review Progress`` all become ``review_progress``."""
    if not value:
        return ""
    trimmed = value.strip()
    matches = WORD_BOUNDARY.findall(trimmed)
    if not matches:
        return WHITESPACE.sub("_", trimmed.lower())
    return "_".join(part.lower() for part in matches)


def normalize_text(value: str) -> str:
    if not value:
        return ""
    lowered = NON_WORD.sub(" ", value.lower())
    return WHITESPACE.sub(" ", lowered).strip()


def contains_phrase(text: str, phrase: str) -> bool:
    haystack = f" {normalize_text(text)} "
    needle = normalize_text(phrase)
    return bool(needle) and f" {needle} " in haystack
