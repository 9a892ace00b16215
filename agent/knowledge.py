"""Knowledge store collaborator.

The engine may ask a knowledge store for a prior snippet relevant to the
current request and record the final output of a successful session. The
real store lives outside this package; InMemoryKnowledgeStore is a simple
word-overlap implementation used by the CLI and tests.
"""

import re
from typing import Dict, Optional, Protocol, Set

_WORD = re.compile(r"[a-z0-9_]{3,}")


class KnowledgeStore(Protocol):
    def lookup(self, query: str) -> Optional[str]:
        ...

    def record(self, key: str, value: str) -> None:
        ...


def _words(text: str) -> Set[str]:
    return set(_WORD.findall((text or "").lower()))


class InMemoryKnowledgeStore:
    """Key/value snippets; lookup returns the value whose key shares the most words."""

    def __init__(self, entries: Optional[Dict[str, str]] = None):
        self._entries: Dict[str, str] = dict(entries or {})

    def record(self, key: str, value: str) -> None:
        if key and value:
            self._entries[key] = value

    def lookup(self, query: str) -> Optional[str]:
        if query in self._entries:
            return self._entries[query]
        wanted = _words(query)
        best_value, best_score = None, 0
        for key, value in self._entries.items():
            score = len(wanted & _words(key))
            if score > best_score:
                best_value, best_score = value, score
        return best_value

    def __len__(self) -> int:
        return len(self._entries)
