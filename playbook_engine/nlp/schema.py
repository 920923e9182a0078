from __future__ import annotations
from dataclasses import dataclass, field, asdict, replace
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple

InferredType = Literal["date", "numeric", "text", "boolean"]

# declared/SQL-ish type names -> inferred kind
_TYPE_FAMILIES: Dict[str, Tuple[str, ...]] = {
    "numeric": ("numeric", "number", "integer", "float", "decimal", "int", "bigint", "double"),
    "date": ("date", "datetime", "timestamp", "time"),
    "text": ("text", "string", "varchar", "char", "str"),
    "boolean": ("boolean", "bool"),
}


def type_family(type_name: Optional[str]) -> Optional[str]:
    t = (type_name or "").strip().lower()
    for family, names in _TYPE_FAMILIES.items():
        if t in names:
            return family
    return None


def is_type_compatible(actual: Optional[str], expected: str) -> bool:
    """Actual (inferred or declared) type satisfies a playbook's expected type."""
    a = (actual or "").strip().lower()
    e = (expected or "").strip().lower()
    if a == e:
        return True
    if e in ("numeric", "date", "text"):
        return a in _TYPE_FAMILIES[e]
    return False


@dataclass(frozen=True)
class Column:
    name: str
    type: str = "text"
    inferred_type: Optional[InferredType] = None
    confidence: int = 0
    sample_values: Tuple[Any, ...] = ()
    parse_errors_pct: float = 0.0
    normalized_name: str = ""
    canonical_name: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def effective_type(self) -> str:
        return self.inferred_type or self.type

    @property
    def kind(self) -> Optional[str]:
        return type_family(self.effective_type)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["sample_values"] = list(self.sample_values)
        return d

    def with_updates(self, **changes: Any) -> "Column":
        return replace(self, **changes)

    @classmethod
    def from_any(cls, obj: Any) -> "Column":
        """Accept Column, dict with at least `name`, or (name, type) tuples."""
        if isinstance(obj, Column):
            return obj
        if isinstance(obj, dict):
            known = {k: obj[k] for k in cls.__dataclass_fields__ if k in obj}
            if "sample_values" in known:
                known["sample_values"] = tuple(known["sample_values"] or ())
            if "metadata" in known:
                known["metadata"] = dict(known["metadata"] or {})
            known.setdefault("type", "text")
            return cls(**known)
        if isinstance(obj, (tuple, list)) and len(obj) == 2:
            return cls(name=str(obj[0]), type=str(obj[1]))
        raise TypeError(f"Cannot build a Column from {type(obj).__name__}")


def as_columns(schema: Iterable[Any]) -> List[Column]:
    return [Column.from_any(c) for c in schema]


def column_names(schema: Iterable[Column]) -> List[str]:
    return [c.name for c in schema]


def columns_of_kind(schema: Iterable[Column], kind: str) -> List[Column]:
    return [c for c in schema if c.kind == kind]
