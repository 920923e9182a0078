from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple
import json
import re
import threading
import unicodedata

from ..utils.cache import SnapshotCache
from ..utils.fp import pipe
from ..utils.log import get_child

log = get_child("nlp.normalize")

_PARENS = re.compile(r"\([^)]*\)")
_SEPARATORS = re.compile(r"[_\-]+")
_SPACES = re.compile(r"\s+")


def strip_accents(s: str) -> str:
    return "".join(c for c in unicodedata.normalize("NFD", s) if unicodedata.category(c) != "Mn")


def normalize(name: Any) -> str:
    """
    Column-name normal form: lowercase, parenthetical units dropped,
    `_`/`-` as spaces, single spaces, no diacritics.

      normalize("Quantidade (Unid.)") == "quantidade"
      normalize("Preço_Unitário")     == "preco unitario"
    """
    return pipe(
        str(name or "").lower().strip(),
        lambda s: _PARENS.sub(" ", s),
        lambda s: _SEPARATORS.sub(" ", s),
        strip_accents,
        lambda s: _SPACES.sub(" ", s).strip(),
    )


def levenshtein(a: str, b: str) -> int:
    if a == b: return 0
    if not a: return len(b)
    if not b: return len(a)
    prev = list(range(len(b) + 1))
    cur = [0] * (len(b) + 1)
    for i, ca in enumerate(a, 1):
        cur[0] = i
        for j, cb in enumerate(b, 1):
            cost = 0 if ca == cb else 1
            cur[j] = min(prev[j] + 1,       # deletion
                         cur[j-1] + 1,       # insertion
                         prev[j-1] + cost)   # substitution
        prev, cur = cur, prev
    return prev[-1]


def similarity(a: str, b: str) -> float:
    a = normalize(a)
    b = normalize(b)
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    return 1.0 - levenshtein(a, b) / float(max(len(a), len(b)))


# ---- Semantic dictionary ----

@dataclass(frozen=True)
class DictionaryEntry:
    canonical_name: str
    entity_type: str = "column"
    synonyms: Tuple[str, ...] = ()
    description: str = ""


@dataclass(frozen=True)
class SemanticDictionary:
    entries: Tuple[DictionaryEntry, ...] = ()
    fuzzy_threshold: float = 0.85
    _index: Dict[str, str] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_entries(cls, entries: Iterable[DictionaryEntry], fuzzy_threshold: float = 0.85) -> "SemanticDictionary":
        entries = tuple(entries)
        index: Dict[str, str] = {}
        for e in entries:
            # first entry wins on clashes
            for key in (e.canonical_name, *e.synonyms):
                index.setdefault(normalize(key), e.canonical_name)
        return cls(entries, fuzzy_threshold, index)

    @classmethod
    def from_json(cls, path: str | Path, fuzzy_threshold: float = 0.85) -> "SemanticDictionary":
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        items = raw.get("entries", []) if isinstance(raw, dict) else raw
        entries = [
            DictionaryEntry(
                canonical_name=str(it["canonical_name"]),
                entity_type=str(it.get("entity_type", "column")),
                synonyms=tuple(str(s) for s in it.get("synonyms", [])),
                description=str(it.get("description", "")),
            )
            for it in items
        ]
        return cls.from_entries(entries, fuzzy_threshold)

    def lookup(self, name: str) -> Optional[str]:
        """Exact match on the normalized form, else best fuzzy match."""
        key = normalize(name)
        if not key:
            return None
        hit = self._index.get(key)
        if hit is not None:
            return hit
        best: Optional[str] = None
        best_score = 0.0
        for k, canonical in self._index.items():
            score = similarity(key, k)
            if score >= self.fuzzy_threshold and score > best_score:
                best, best_score = canonical, score
        return best

    def synonyms_for(self, canonical_name: str) -> List[str]:
        target = normalize(canonical_name)
        for e in self.entries:
            if normalize(e.canonical_name) == target:
                return [e.canonical_name, *e.synonyms]
        return []


_DEFAULT_PATH = Path(__file__).resolve().parents[1] / "playbooks" / "data" / "semantic_dictionary.json"
_cache_lock = threading.Lock()
_dictionary_cache: Optional[SnapshotCache[SemanticDictionary]] = None
_dictionary_key: Optional[Tuple[Path, float, float]] = None


def dictionary_cache(cfg: Any | None = None) -> SnapshotCache[SemanticDictionary]:
    """
    Process-wide dictionary cache built from cfg.semantic. Without a cfg the
    current cache is reused; a cfg with another path, threshold or TTL
    replaces it.
    """
    global _dictionary_cache, _dictionary_key
    sc = getattr(cfg, "semantic", None)
    path = Path(getattr(sc, "dictionary_path", _DEFAULT_PATH))
    threshold = float(getattr(sc, "fuzzy_threshold", 0.85))
    ttl = float(getattr(sc, "cache_ttl_seconds", 300.0))
    key = (path, threshold, ttl)
    with _cache_lock:
        stale_settings = cfg is not None and key != _dictionary_key
        if _dictionary_cache is None or stale_settings:
            if _dictionary_cache is not None:
                log.info("dictionary settings changed", extra={"path": str(path), "fuzzy_threshold": threshold})
            _dictionary_key = key
            _dictionary_cache = SnapshotCache(
                "semantic_dictionary",
                lambda: SemanticDictionary.from_json(path, threshold),
                ttl_seconds=ttl,
            )
        return _dictionary_cache


def reset_dictionary_cache() -> None:
    global _dictionary_cache, _dictionary_key
    with _cache_lock:
        _dictionary_cache = None
        _dictionary_key = None


def canonicalize(name: str, dictionary: SemanticDictionary | None = None) -> str:
    """Dictionary canonical name for `name`, or its normalized form."""
    d = dictionary if dictionary is not None else dictionary_cache().get()
    hit = d.lookup(name)
    if hit is None:
        log.debug("no canonical match", extra={"column": name})
        return normalize(name)
    return hit
