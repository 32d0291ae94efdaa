"""
Entity extraction for the NER stage.
"""

import re
from typing import List, Protocol

MAX_ENTITIES = 8

URL_PATTERN = re.compile(r"https?://[^\s<>\"')\]]+")
EMAIL_PATTERN = re.compile(r"\b[\w.+-]+@[\w-]+(?:\.[\w-]+)+\b")
HASHTAG_PATTERN = re.compile(r"(?<![\w#])#\w+")
ACRONYM_PATTERN = re.compile(r"\b[A-Z][A-Z0-9]{1,9}\b")
NAME_PATTERN = re.compile(r"\b[A-Z][a-z]+(?:[ \t]+(?:of|the|de|van|von)?[ \t]*[A-Z][a-z]+)+\b")


class EntityExtractor(Protocol):
    async def extract(self, text: str) -> List[str]:
        """Return entity strings found in ``text``."""


class PatternEntityExtractor:
    """
    Regex-based entity finder.

    Finds URLs, e-mail addresses, hashtags, capitalized multi-word names and
    acronyms, in that order of precedence. Duplicates and entities contained
    in a longer entity are dropped, and at most ``max_entities`` are kept.
    """

    def __init__(self, max_entities: int = MAX_ENTITIES):
        self.max_entities = max_entities

    async def extract(self, text: str) -> List[str]:
        return self.find_entities(text)

    def find_entities(self, text: str) -> List[str]:
        candidates: List[str] = []
        for pattern in (URL_PATTERN, EMAIL_PATTERN, HASHTAG_PATTERN, NAME_PATTERN, ACRONYM_PATTERN):
            for match in pattern.finditer(text):
                value = " ".join(match.group(0).split()).rstrip(".,;:")
                if value:
                    candidates.append(value)

        entities: List[str] = []
        seen = set()
        for value in candidates:
            key = value.lower()
            if key in seen:
                continue
            seen.add(key)
            entities.append(value)

        kept = [
            entity
            for entity in entities
            if not any(
                entity != other and entity.lower() in other.lower() for other in entities
            )
        ]
        return kept[: self.max_entities]
