"""
Stop-word table for the keyword-frequency topic fallback.

Kept apart from the ranking code so the list can be tuned (or swapped via
the STOPWORDS_FILE setting) without touching the algorithm. Bump
STOPWORDS_VERSION whenever the default table changes.
"""

import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

STOPWORDS_VERSION = 1

DEFAULT_STOPWORDS = frozenset({
    "that", "this", "with", "from", "have", "been", "were", "said",
    "what", "when", "where", "which", "their", "there", "would", "could",
    "should", "about", "after", "before", "just", "also", "more", "some",
    "very", "know", "think", "want", "need", "like", "well", "much",
    "many", "your", "mine", "going", "doing", "make", "take", "yeah",
    "okay", "sure", "really", "maybe", "hello", "thanks", "please",
})


def load_stopwords(path: Optional[str] = None) -> frozenset:
    """
    Load a stop-word table.

    The file holds one word per line; blank lines and lines starting with
    '#' are ignored. Without a path the built-in table is returned.
    """
    if not path:
        return DEFAULT_STOPWORDS

    words = set()
    for line in Path(path).read_text(encoding="utf-8").splitlines():
        word = line.strip().lower()
        if word and not word.startswith("#"):
            words.add(word)
    logger.info(f"Loaded {len(words)} stop words from {path}")
    return frozenset(words)
