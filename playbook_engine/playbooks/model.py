from __future__ import annotations
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
import re

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    field_validator,
    model_validator,
)

from ..formula.dsl import Formula, compile_aggregate, compile_formula
from ..utils.graph import dependency_graph, topological_order

ColumnType = Literal["numeric", "date", "text", "boolean", "numeric_array"]
VALID_COLUMN_TYPES = ("numeric", "date", "text", "boolean", "numeric_array")

_GROUPED_RE = re.compile(r"^\s*([A-Za-z]+)_BY\s*\(\s*([^,()]+?)\s*,\s*([^,()]+?)\s*\)\s*$")
_SIMPLE_RE = re.compile(r"^\s*(.+?)\s+AS\s+([A-Za-z_]\w*)\s*$", re.I)
_OUTER_CALL_RE = re.compile(r"^\s*([A-Za-z]+)\s*\((.*)\)\s*$", re.S)


# ---------- Metric definitions ----------

class MetricDef(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    deps: List[str] = []
    formula: str
    optional: bool = False
    description: str = ""

    _compiled: Optional[Formula] = PrivateAttr(default=None)

    @model_validator(mode="after")
    def _compile_formula(self):
        compiled = compile_formula(self.formula)
        unknown = [n for n in compiled.names if n not in self.deps]
        if unknown:
            raise ValueError(f"formula references undeclared deps: {unknown}")
        self._compiled = compiled
        return self

    @property
    def compiled(self) -> Formula:
        assert self._compiled is not None
        return self._compiled


class GuardrailsDef(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    min_rows: int = 20
    require_numeric: List[str] = []
    temporal_sections_require: List[str] = []
    top_bottom_min_group_n: int = 10


# ---------- Section queries (tagged variants) ----------

class SimpleQuery(BaseModel):
    """`FUNC(expr) AS alias`, e.g. `AVG(divergencia) AS divergencia_media`
    or `SUM(valor)/COUNT(*) AS ticket`."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["simple"] = "simple"
    raw: str
    func: str
    expression: str
    alias: str

    _compiled: Optional[Formula] = PrivateAttr(default=None)

    @model_validator(mode="after")
    def _compile_expression(self):
        self._compiled = compile_aggregate(self.expression)
        return self

    @property
    def compiled(self) -> Formula:
        assert self._compiled is not None
        return self._compiled

    @property
    def referenced(self) -> List[str]:
        return list(self.compiled.names)


class GroupedQuery(BaseModel):
    """`FUNC_BY(dimension, metric)`, e.g. `SUM_BY(categoria, valor)`."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["grouped"] = "grouped"
    raw: str
    func: str
    dimension: str
    metric: str

    @property
    def referenced(self) -> List[str]:
        return [self.dimension, self.metric]


SectionQuery = Annotated[Union[SimpleQuery, GroupedQuery], Field(discriminator="kind")]


def parse_query(text: str) -> Dict[str, Any]:
    """Classify a section query string into its variant's fields."""
    m = _GROUPED_RE.match(text or "")
    if m:
        return {"kind": "grouped", "raw": text, "func": m.group(1).upper(),
                "dimension": m.group(2), "metric": m.group(3)}
    m = _SIMPLE_RE.match(text or "")
    if m:
        expr = m.group(1).strip()
        outer = _OUTER_CALL_RE.match(expr)
        # a lone outer call names the function, compound expressions do not
        func = outer.group(1).upper() if outer and expr.count("(") == 1 else "EXPR"
        return {"kind": "simple", "raw": text, "func": func,
                "expression": expr, "alias": m.group(2)}
    raise ValueError(f"Unrecognized section query: {text!r}")


# ---------- Playbook ----------

class Playbook(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str = Field(pattern=r"^[A-Za-z0-9_.-]{1,80}$")
    domain: str
    description: str = ""
    required_columns: Dict[str, ColumnType]
    optional_columns: Dict[str, ColumnType] = {}
    forbidden_terms: List[str] = []
    metrics_map: Dict[str, MetricDef] = {}
    guardrails: GuardrailsDef = GuardrailsDef()
    sections: Dict[str, List[SectionQuery]] = {}

    @field_validator("optional_columns", mode="before")
    @classmethod
    def _optional_as_map(cls, v: Any) -> Any:
        # a bare list of names means "text, if present"
        if isinstance(v, list):
            return {str(name): "text" for name in v}
        return v

    @field_validator("sections", mode="before")
    @classmethod
    def _parse_sections(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v
        return {
            name: [parse_query(q) if isinstance(q, str) else q for q in (queries or [])]
            for name, queries in v.items()
        }

    @model_validator(mode="after")
    def _metrics_acyclic(self):
        # CircularDependencyError is not a ValueError: it escapes pydantic as-is
        self._metric_order = topological_order(dependency_graph(self.metrics_map))
        return self

    _metric_order: List[str] = PrivateAttr(default_factory=list)

    @property
    def metric_order(self) -> List[str]:
        return list(self._metric_order)

    @property
    def name(self) -> str:
        return self.description or self.id

    def section_tokens(self, section: str) -> List[str]:
        """Column/metric names referenced by a section's queries, first-seen order."""
        out: List[str] = []
        for q in self.sections.get(section, []):
            for name in q.referenced:
                if name not in out:
                    out.append(name)
        return out

    def to_summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "domain": self.domain,
            "description": self.description,
            "required_columns": dict(self.required_columns),
            "sections": list(self.sections),
            "metrics": list(self.metrics_map),
        }
