from __future__ import annotations
from typing import Dict, List, Mapping, Sequence, Set

from ..errors import CircularDependencyError


def topological_order(graph: Mapping[str, Sequence[str]]) -> List[str]:
    """
    Dependencies-first order of the keys of `graph` (node -> deps).
    Deps that are not themselves nodes (raw columns) are ignored.
    Ties keep the mapping's insertion order. A cycle raises
    CircularDependencyError carrying the offending path.
    """
    order: List[str] = []
    done: Set[str] = set()
    path: List[str] = []
    on_path: Set[str] = set()

    def _visit(node: str) -> None:
        if node in done:
            return
        if node in on_path:
            start = path.index(node)
            raise CircularDependencyError(path[start:] + [node])
        on_path.add(node)
        path.append(node)
        for dep in graph.get(node, ()):
            if dep in graph:
                _visit(dep)
        path.pop()
        on_path.discard(node)
        done.add(node)
        order.append(node)

    for node in graph:
        _visit(node)
    return order


def dependency_graph(items: Mapping[str, object], deps_attr: str = "deps") -> Dict[str, List[str]]:
    return {name: list(getattr(item, deps_attr, ()) or ()) for name, item in items.items()}
