"""
Policy type taxonomy stored as a forest of nested JSON nodes.

Each node looks like::

    {"current": "marine", "child_exists": True, "child": [...]}

Labels are stored verbatim and matched case-insensitively. All functions here
are pure: they read plain dict/list data and never touch the database.
"""
import copy
import json
from typing import Any, Dict, List, Optional, Sequence, Union

LABEL = "current"
HAS_CHILDREN = "child_exists"
CHILDREN = "child"
PATH_SEPARATOR = ">"

PolicyNode = Dict[str, Any]
Forest = List[PolicyNode]


class PolicyTreeError(Exception):
    """Base error for policy tree operations."""


class PolicyValidationError(PolicyTreeError, ValueError):
    """A node or forest does not have the expected shape."""


class PolicyPathNotFoundError(PolicyTreeError, LookupError):
    """A path did not resolve to a node."""

    def __init__(self, segments: Sequence[str], message: Optional[str] = None) -> None:
        self.segments = list(segments)
        super().__init__(message or f"No policy node at path '{join_path(self.segments)}'")


_DEFAULT_FOREST: Forest = [
    {
        LABEL: "marine",
        HAS_CHILDREN: True,
        CHILDREN: [
            {
                LABEL: "container",
                HAS_CHILDREN: True,
                CHILDREN: [
                    {LABEL: "box_container", HAS_CHILDREN: False},
                    {LABEL: "iso_container", HAS_CHILDREN: False},
                    {LABEL: "reefer_container", HAS_CHILDREN: False},
                ],
            },
            {
                LABEL: "import",
                HAS_CHILDREN: True,
                CHILDREN: [
                    {LABEL: "air", HAS_CHILDREN: False},
                    {LABEL: "sea", HAS_CHILDREN: False},
                ],
            },
            {
                LABEL: "export",
                HAS_CHILDREN: True,
                CHILDREN: [
                    {LABEL: "air", HAS_CHILDREN: False},
                    {LABEL: "sea", HAS_CHILDREN: False},
                ],
            },
            {LABEL: "demurrage", HAS_CHILDREN: False},
            {LABEL: "inland", HAS_CHILDREN: False},
        ],
    },
    {
        LABEL: "engineering",
        HAS_CHILDREN: True,
        CHILDREN: [
            {LABEL: "contractor_all_risk_policy", HAS_CHILDREN: False},
            {LABEL: "electronic_equipment_insurance", HAS_CHILDREN: False},
            {LABEL: "erectors_all_risk", HAS_CHILDREN: False},
            {LABEL: "machine_breakdown", HAS_CHILDREN: False},
        ],
    },
    {LABEL: "fire", HAS_CHILDREN: False},
    {LABEL: "miscellaneous", HAS_CHILDREN: False},
    {LABEL: "value_added_services", HAS_CHILDREN: False},
    {LABEL: "client", HAS_CHILDREN: False},
]


# PUBLIC_INTERFACE
def default_forest() -> Forest:
    """Return a fresh copy of the built-in policy taxonomy."""
    return copy.deepcopy(_DEFAULT_FOREST)


# PUBLIC_INTERFACE
def load_forest(raw: Any) -> Forest:
    """
    Decode the stored value of a policy_types.data column.

    JSONB comes back from psycopg2 already decoded, but some rows were written
    as a JSON string; both are accepted. NULL yields an empty forest.
    """
    if raw is None:
        return []
    if isinstance(raw, (str, bytes)):
        raw = json.loads(raw)
    if not isinstance(raw, list):
        raise PolicyValidationError("Stored policy data is not an array of policy nodes")
    return raw


def _label(node: PolicyNode) -> str:
    return node[LABEL]


def _descendable(node: PolicyNode) -> bool:
    # The flag alone is not enough: older rows may carry child_exists=true with no list.
    return bool(node.get(HAS_CHILDREN)) and isinstance(node.get(CHILDREN), list)


# =========================
# Validation
# =========================

def _addressable(label: Any) -> bool:
    # Labels must survive a round trip through parse_path(join_path(...)).
    if not isinstance(label, str) or not label:
        return False
    return label == label.strip() and PATH_SEPARATOR not in label


# PUBLIC_INTERFACE
def validate_node(node: Any) -> bool:
    """Return True if node (and, when flagged, its whole subtree) is well formed."""
    if not isinstance(node, dict):
        return False
    if not _addressable(node.get(LABEL)):
        return False
    flag = node.get(HAS_CHILDREN)
    if not isinstance(flag, bool):
        return False
    if flag:
        children = node.get(CHILDREN)
        if not isinstance(children, list):
            return False
        return all(validate_node(child) for child in children)
    # Unflagged nodes are valid whatever sits in "child".
    return True


# PUBLIC_INTERFACE
def validate_forest(forest: Any) -> None:
    """Raise PolicyValidationError unless forest is a list of valid nodes."""
    if not isinstance(forest, list):
        raise PolicyValidationError("Policy data must be an array of policy nodes")
    for index, node in enumerate(forest):
        if not validate_node(node):
            raise PolicyValidationError(
                f"Invalid policy structure at root node {index}. Each node must have "
                f"'{LABEL}' (non-empty string, no surrounding spaces, no '{PATH_SEPARATOR}'), "
                f"'{HAS_CHILDREN}' (boolean) and "
                f"'{CHILDREN}' (array, when {HAS_CHILDREN} is true)"
            )


# =========================
# Paths
# =========================

# PUBLIC_INTERFACE
def parse_path(path: str) -> List[str]:
    """Split 'a > b > c' into normalized (trimmed, lowercased) segments."""
    return [segment.strip().lower() for segment in path.split(PATH_SEPARATOR)]


# PUBLIC_INTERFACE
def join_path(segments: Sequence[str]) -> str:
    """Join labels for display: ['a', 'b'] -> 'a > b'."""
    return f" {PATH_SEPARATOR} ".join(segments)


def _normalize_segments(path: Union[str, Sequence[str]]) -> List[str]:
    if isinstance(path, str):
        return parse_path(path)
    return [segment.strip().lower() for segment in path]


def _first_match(nodes: Forest, segment: str) -> Optional[PolicyNode]:
    for node in nodes:
        if _label(node).lower() == segment:
            return node
    return None


# PUBLIC_INTERFACE
def find_by_path(forest: Forest, segments: Union[str, Sequence[str]]) -> PolicyNode:
    """
    Resolve a path to the node it names.

    At each level the first sibling whose label matches wins; its siblings are
    not tried if the walk dead-ends below it. Raises PolicyPathNotFoundError.
    """
    target = _normalize_segments(segments)
    if not target:
        raise PolicyPathNotFoundError(target)

    nodes = forest
    for depth, segment in enumerate(target):
        node = _first_match(nodes, segment)
        if node is None:
            raise PolicyPathNotFoundError(target)
        if depth == len(target) - 1:
            return node
        if not _descendable(node):
            raise PolicyPathNotFoundError(target)
        nodes = node[CHILDREN]
    raise PolicyPathNotFoundError(target)


# =========================
# Traversal
# =========================

def _walk(nodes: Forest, parents: List[str]):
    """Yield (node, full_path) in pre-order."""
    for node in nodes:
        full_path = parents + [_label(node)]
        yield node, full_path
        if _descendable(node):
            yield from _walk(node[CHILDREN], full_path)


# PUBLIC_INTERFACE
def flatten(forest: Forest) -> List[Dict[str, Any]]:
    """Pre-order linearization of the forest for display and reporting."""
    return [
        {
            "name": _label(node),
            "path": join_path(full_path),
            "level": len(full_path),
            "has_children": bool(node.get(HAS_CHILDREN)),
            "full_path": full_path,
        }
        for node, full_path in _walk(forest, [])
    ]


# PUBLIC_INTERFACE
def leaves(forest: Forest) -> List[Dict[str, Any]]:
    """
    Return the nodes whose child_exists flag is false, in pre-order.

    A flagged node with an empty or missing child list is neither a leaf nor
    descended into, so it does not show up here at all.
    """
    return [
        {
            "name": _label(node),
            "path": join_path(full_path),
            "level": len(full_path),
            "full_path": full_path,
        }
        for node, full_path in _walk(forest, [])
        if not node.get(HAS_CHILDREN)
    ]


# PUBLIC_INTERFACE
def matches_term(forest: Forest, term: str) -> bool:
    """True if any label at any depth contains term, ignoring case."""
    needle = term.lower()
    return any(needle in _label(node).lower() for node, _ in _walk(forest, []))


# =========================
# Analytics
# =========================

# PUBLIC_INTERFACE
def node_counts_by_level(forest: Forest, level: int = 1) -> Dict[int, int]:
    """Count nodes per depth; roots are level 1. Empty levels are omitted."""
    counts: Dict[int, int] = {}
    if not forest:
        return counts
    counts[level] = len(forest)
    for node in forest:
        if _descendable(node):
            for child_level, count in node_counts_by_level(node[CHILDREN], level + 1).items():
                counts[child_level] = counts.get(child_level, 0) + count
    return counts


# PUBLIC_INTERFACE
def tree_stats(forest: Forest) -> Dict[str, Any]:
    """Structural summary: total_nodes, nodes_by_level and max_depth."""
    counts = node_counts_by_level(forest)
    return {
        "total_nodes": sum(counts.values()),
        "nodes_by_level": counts,
        "max_depth": max(counts) if counts else 0,
    }


# =========================
# Mutation
# =========================

def _build_node(new_node: Dict[str, Any]) -> PolicyNode:
    label = new_node.get(LABEL) if isinstance(new_node, dict) else None
    if not isinstance(label, str) or not label:
        raise PolicyValidationError(f"New node with '{LABEL}' field is required")
    node = {
        LABEL: label,
        HAS_CHILDREN: new_node.get(HAS_CHILDREN) or False,
        CHILDREN: copy.deepcopy(new_node.get(CHILDREN)) or [],
    }
    if not validate_node(node):
        raise PolicyValidationError(f"Invalid policy node '{label}'")
    return node


# PUBLIC_INTERFACE
def insert_node(
    forest: Forest,
    new_node: Dict[str, Any],
    parent_path: Optional[Union[str, Sequence[str]]] = None,
) -> Forest:
    """
    Return a copy of forest with new_node added.

    Without parent_path the node becomes a new root. Otherwise it is appended
    to the children of the parent found by first-match-wins resolution, and the
    parent's child_exists flag is set. The input forest is never modified.
    """
    node = _build_node(new_node)
    updated = copy.deepcopy(forest)

    if not parent_path:
        updated.append(node)
        return updated

    target = _normalize_segments(parent_path)
    nodes = updated
    for depth, segment in enumerate(target):
        parent = _first_match(nodes, segment)
        if parent is None:
            break
        if depth == len(target) - 1:
            if not isinstance(parent.get(CHILDREN), list):
                parent[CHILDREN] = []
            parent[CHILDREN].append(node)
            parent[HAS_CHILDREN] = True
            return updated
        if not isinstance(parent.get(CHILDREN), list):
            break
        nodes = parent[CHILDREN]

    raise PolicyPathNotFoundError(target, "Parent path not found")
