"""Loading and canonical dumping of fab.yaml and wiring.yaml.

Dumps are canonical: keys are sorted and documents are emitted in a fixed
order, so two semantically equal inputs (differing only in comments, key
order or document order) dump to identical text. The build fingerprint and
the staged copies both rely on this.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from fab_installer.errors import ConfigurationError
from fab_installer.fab.schema import ControlNode, FabModel, FabNode, Fabricator


class FabConfigError(ConfigurationError):
    """Raised when fab.yaml or wiring.yaml cannot be loaded."""

    def __init__(self, message: str, code: str = "invalid_config") -> None:
        super().__init__(message, code=code)


@dataclass
class FabDocuments:
    """Parsed content of a fab.yaml file."""

    fab: Fabricator
    controls: list[ControlNode] = field(default_factory=list)
    nodes: list[FabNode] = field(default_factory=list)

    def get_control(self, name: str) -> ControlNode:
        """Look up a control node by name.

        Raises:
            FabConfigError: If no control node has that name.
        """
        for control in self.controls:
            if control.name == name:
                return control
        raise FabConfigError(f"control node {name!r} not found", code="not_found")

    def get_node(self, name: str) -> FabNode:
        """Look up a worker node by name.

        Raises:
            FabConfigError: If no node has that name.
        """
        for node in self.nodes:
            if node.name == name:
                return node
        raise FabConfigError(f"node {name!r} not found", code="not_found")


def _load_all(path: Path) -> list[dict[str, Any]]:
    try:
        with open(path, encoding="utf-8") as f:
            docs = [d for d in yaml.safe_load_all(f) if d is not None]
    except FileNotFoundError:
        raise FabConfigError(f"{path} does not exist", code="not_found") from None
    except yaml.YAMLError as e:
        raise FabConfigError(f"{path}: invalid YAML: {e}", code="invalid_yaml") from e

    for i, doc in enumerate(docs):
        if not isinstance(doc, dict):
            raise FabConfigError(
                f"{path}: document {i} is a {type(doc).__name__}, expected a mapping",
                code="invalid_yaml",
            )
    return docs


def parse_fab(docs: Iterable[dict[str, Any]], source: str = "fab.yaml") -> FabDocuments:
    """Validate fab.yaml documents.

    Args:
        docs: Parsed YAML documents.
        source: Name used in error messages.

    Returns:
        FabDocuments with exactly one Fabricator.

    Raises:
        FabConfigError: On unknown kinds, validation errors, duplicate
            names or a missing/duplicated Fabricator document.
    """
    fabs: list[Fabricator] = []
    controls: list[ControlNode] = []
    nodes: list[FabNode] = []
    kinds: dict[str, type[FabModel]] = {
        "Fabricator": Fabricator,
        "ControlNode": ControlNode,
        "FabNode": FabNode,
    }

    for i, doc in enumerate(docs):
        kind = doc.get("kind")
        model = kinds.get(str(kind))
        if model is None:
            raise FabConfigError(f"{source}: document {i} has unsupported kind {kind!r}")
        try:
            obj = model.model_validate(doc)
        except ValidationError as e:
            raise FabConfigError(f"{source}: invalid {kind} (document {i}): {e}") from e

        if isinstance(obj, Fabricator):
            fabs.append(obj)
        elif isinstance(obj, ControlNode):
            controls.append(obj)
        elif isinstance(obj, FabNode):
            nodes.append(obj)

    if len(fabs) != 1:
        raise FabConfigError(
            f"{source}: expected exactly one Fabricator document, found {len(fabs)}"
        )

    names: set[str] = set()
    for obj in [*controls, *nodes]:
        if obj.name in names:
            raise FabConfigError(f"{source}: duplicate node name {obj.name!r}")
        names.add(obj.name)

    return FabDocuments(fab=fabs[0], controls=controls, nodes=nodes)


def load_fab(path: Path) -> FabDocuments:
    """Load and validate a fab.yaml file.

    Args:
        path: Path to fab.yaml.

    Returns:
        Parsed FabDocuments.

    Raises:
        FabConfigError: If the file is missing or invalid.
    """
    return parse_fab(_load_all(path), source=str(path))


def load_wiring(path: Path) -> list[dict[str, Any]]:
    """Load wiring.yaml documents.

    Wiring objects are opaque here; each must be a mapping with a ``kind``.

    Args:
        path: Path to wiring.yaml.

    Returns:
        List of wiring objects.

    Raises:
        FabConfigError: If the file is missing or invalid.
    """
    docs = _load_all(path)
    for i, doc in enumerate(docs):
        if not doc.get("kind"):
            raise FabConfigError(f"{path}: document {i} has no kind")
    return docs


def _dump_docs(docs: list[dict[str, Any]]) -> str:
    result: str = yaml.safe_dump_all(
        docs,
        default_flow_style=False,
        allow_unicode=True,
        sort_keys=True,
        explicit_start=True,
    )
    return result


def _model_doc(model: FabModel) -> dict[str, Any]:
    data: dict[str, Any] = model.model_dump(mode="json", by_alias=True, exclude_none=True)
    return data


def dump_fab(
    fab: Fabricator,
    controls: Iterable[ControlNode] = (),
    nodes: Iterable[FabNode] = (),
) -> str:
    """Render fab.yaml documents canonically.

    The Fabricator comes first, then control nodes and worker nodes, each
    group sorted by name.

    Args:
        fab: The Fabricator document.
        controls: Control nodes to include.
        nodes: Worker nodes to include.

    Returns:
        Multi-document YAML text.
    """
    docs = [_model_doc(fab)]
    docs.extend(_model_doc(c) for c in sorted(controls, key=lambda c: c.name))
    docs.extend(_model_doc(n) for n in sorted(nodes, key=lambda n: n.name))
    return _dump_docs(docs)


def _wiring_sort_key(doc: dict[str, Any]) -> tuple[str, str]:
    meta = doc.get("metadata") or {}
    name = meta.get("name", "") if isinstance(meta, dict) else ""
    return (str(doc.get("kind", "")), str(name))


def dump_wiring(docs: Iterable[dict[str, Any]]) -> str:
    """Render wiring objects canonically, sorted by kind and name."""
    return _dump_docs(sorted(docs, key=_wiring_sort_key))


__all__ = [
    "FabConfigError",
    "FabDocuments",
    "dump_fab",
    "dump_wiring",
    "load_fab",
    "load_wiring",
    "parse_fab",
]
