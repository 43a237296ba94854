"""
Policy type endpoints.

A policy type owns one taxonomy forest in its ``data`` column. Reads decode
the forest and hand it to :mod:`src.claims_api.policy_tree`; writes validate
first and always store the complete forest back in a single UPDATE.
"""
import logging
from collections import defaultdict
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status

from src.claims_api import db, policy_tree
from src.claims_api.auth_utils import get_current_user, require_admin
from src.claims_api.claims import CLAIM_SELECT
from src.claims_api.common import Page, bad_request, not_found, page_params, paginated
from src.claims_api.schemas import (
    APIMessage,
    AddPolicyNodeRequest,
    PolicyAnalytics,
    PolicyAnalyticsEntry,
    PolicyLeafNodes,
    PolicyNodeResponse,
    PolicyStructure,
    PolicyType,
    PolicyTypeBulkCreate,
    PolicyTypeCreate,
    PolicyTypeUpdate,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/policy-types", tags=["Policy Types"], dependencies=[Depends(get_current_user)])

DEFAULT_METADATA = {
    "name": "Default Policy Structure",
    "description": "Initial policy structure with marine, engineering, fire, and other policy types",
    "version": "1.0",
}


def _decode(row: Dict[str, Any]) -> Dict[str, Any]:
    row["data"] = policy_tree.load_forest(row.get("data"))
    row["metadata"] = row.get("metadata") or {}
    return row


def _load_policy(policy_id: int) -> Dict[str, Any]:
    policy = db.fetch_one("SELECT * FROM policy_types WHERE id=%s", [policy_id])
    if not policy:
        raise not_found("Policy")
    return _decode(policy)


def _validated(data: Any) -> policy_tree.Forest:
    try:
        policy_tree.validate_forest(data)
    except policy_tree.PolicyValidationError as exc:
        raise bad_request(str(exc))
    return data


def _analytics_entry(policy: Dict[str, Any], total_claims: int) -> Dict[str, Any]:
    claim_count = int(policy.get("claim_count") or 0)
    percentage = (claim_count / total_claims) * 100 if total_claims > 0 else 0
    return {
        "id": policy["id"],
        "data": policy["data"],
        "claim_count": claim_count,
        "percentage": round(percentage, 2),
        "node_analytics": policy_tree.tree_stats(policy["data"]),
    }


_WITH_CLAIM_COUNT = """
    SELECT p.*, COUNT(c.id) AS claim_count
    FROM policy_types p
    LEFT JOIN claims c ON c.policy_id = p.id
"""


# =========================
# Collection
# =========================

@router.get("", summary="List policy types")
def list_policies(page: Page = Depends(page_params)) -> Dict[str, Any]:
    """List policy types, newest first."""
    rows = db.fetch_all(
        "SELECT * FROM policy_types ORDER BY created_at DESC LIMIT %s OFFSET %s",
        [page.limit, page.offset],
    )
    total = db.fetch_value("SELECT COUNT(*) AS count FROM policy_types")
    return paginated([_decode(r) for r in rows], total or 0, page)


@router.get("/search", summary="Search policy types by node label")
def search_policies(
    query: str = Query(..., description="Substring matched against every node label"),
    page: Page = Depends(page_params),
) -> Dict[str, Any]:
    """Return policy types with any node label containing the query, ignoring case."""
    if not query.strip():
        raise bad_request("Search query is required")
    rows = [_decode(r) for r in db.fetch_all("SELECT * FROM policy_types ORDER BY created_at DESC")]
    matching = [r for r in rows if policy_tree.matches_term(r["data"], query)]
    return paginated(matching[page.offset:page.offset + page.limit], len(matching), page)


@router.get("/analytics", response_model=PolicyAnalytics, summary="Claim share and structure of every policy type")
def policy_analytics() -> Dict[str, Any]:
    """Per policy type: claim count, share of all claims and tree statistics, busiest first."""
    policies = [_decode(r) for r in db.fetch_all(f"{_WITH_CLAIM_COUNT} GROUP BY p.id")]
    total_claims = db.fetch_value("SELECT COUNT(*) AS count FROM claims") or 0

    analytics = [_analytics_entry(p, total_claims) for p in policies]
    analytics.sort(key=lambda entry: entry["claim_count"], reverse=True)
    return {
        "total_policies": len(policies),
        "total_claims": total_claims,
        "policy_analytics": analytics,
    }


@router.post(
    "",
    response_model=PolicyType,
    status_code=status.HTTP_201_CREATED,
    summary="Create policy type",
)
def create_policy(payload: PolicyTypeCreate, _: Dict[str, Any] = Depends(require_admin)) -> Dict[str, Any]:
    """Admin: create a policy type from a validated forest."""
    data = _validated(payload.data)
    policy = db.execute_returning_one(
        "INSERT INTO policy_types (data, metadata) VALUES (%s, %s) RETURNING *",
        [db.as_json(data), db.as_json(payload.metadata or {})],
    )
    logger.info("Created policy type %s", policy["id"])
    return _decode(policy)


@router.post("/bulk-create", status_code=status.HTTP_201_CREATED, summary="Create several policy types")
def bulk_create_policies(payload: PolicyTypeBulkCreate, _: Dict[str, Any] = Depends(require_admin)) -> Dict[str, Any]:
    """Admin: validate every forest, then insert all of them in one transaction."""
    if not payload.policies:
        raise bad_request("Policies must be a non-empty array")
    for index, item in enumerate(payload.policies):
        try:
            policy_tree.validate_forest(item.data)
        except policy_tree.PolicyValidationError as exc:
            raise bad_request(f"Invalid policy structure in policy {index}: {exc}")

    created: List[Dict[str, Any]] = []
    with db.transaction() as cur:
        for item in payload.policies:
            cur.execute(
                "INSERT INTO policy_types (data, metadata) VALUES (%s, %s) RETURNING *",
                [db.as_json(item.data), db.as_json(item.metadata or {})],
            )
            created.append(_decode(dict(cur.fetchone())))

    logger.info("Bulk created %s policy types", len(created))
    return {
        "message": f"Successfully created {len(created)} policies",
        "policies": created,
    }


@router.post("/initialize-defaults", status_code=status.HTTP_201_CREATED, summary="Seed the default taxonomy")
def initialize_default_policies(_: Dict[str, Any] = Depends(require_admin)) -> Dict[str, Any]:
    """Admin: create the built-in policy structure; only allowed while no policy type exists."""
    existing = db.fetch_value("SELECT COUNT(*) AS count FROM policy_types") or 0
    if existing > 0:
        raise bad_request("Policies already exist. Use bulk create or individual create for new policies.")

    policy = db.execute_returning_one(
        "INSERT INTO policy_types (data, metadata) VALUES (%s, %s) RETURNING *",
        [db.as_json(policy_tree.default_forest()), db.as_json(DEFAULT_METADATA)],
    )
    logger.info("Initialized default policy structure as policy type %s", policy["id"])
    return {
        "message": "Default policy structure initialized successfully",
        "policy": _decode(policy),
    }


# =========================
# Single record
# =========================

@router.get("/{policy_id}", summary="Get policy type")
def get_policy(policy_id: int) -> Dict[str, Any]:
    """Get a policy type with its claims (each with customer and employee)."""
    policy = _load_policy(policy_id)
    policy["claims"] = db.fetch_all(
        f"{CLAIM_SELECT} WHERE cl.policy_id=%s ORDER BY cl.created_at DESC",
        [policy_id],
    )
    return policy


@router.get("/{policy_id}/structure", response_model=PolicyStructure, summary="Flattened policy tree")
def get_policy_structure(policy_id: int) -> Dict[str, Any]:
    """Every node in pre-order with its path and level."""
    policy = _load_policy(policy_id)
    structure = policy_tree.flatten(policy["data"])
    return {"policy_id": policy["id"], "structure": structure, "total_nodes": len(structure)}


@router.get("/{policy_id}/node", response_model=PolicyNodeResponse, summary="Policy node by path")
def get_policy_node(
    policy_id: int,
    path: Optional[str] = Query(None, description="Node path, e.g. 'marine > container > box_container'"),
) -> Dict[str, Any]:
    """Resolve a '>'-separated, case-insensitive path to a node."""
    if not path or not path.strip():
        raise bad_request("Path parameter is required")
    policy = _load_policy(policy_id)
    segments = policy_tree.parse_path(path)
    try:
        node = policy_tree.find_by_path(policy["data"], segments)
    except policy_tree.PolicyPathNotFoundError:
        raise not_found("Policy node at specified path")
    return {"policy_id": policy["id"], "path": policy_tree.join_path(segments), "node": node}


@router.get("/{policy_id}/leaf-nodes", response_model=PolicyLeafNodes, summary="Leaf policy nodes")
def get_policy_leaf_nodes(policy_id: int) -> Dict[str, Any]:
    """Nodes without children, in pre-order."""
    policy = _load_policy(policy_id)
    leaf_nodes = policy_tree.leaves(policy["data"])
    return {"policy_id": policy["id"], "leaf_nodes": leaf_nodes, "total_leaf_nodes": len(leaf_nodes)}


@router.get("/{policy_id}/analytics", response_model=PolicyAnalyticsEntry, summary="Analytics of one policy type")
@router.get("/{policy_id}/stats", response_model=PolicyAnalyticsEntry, include_in_schema=False)
def get_policy_analytics(policy_id: int) -> Dict[str, Any]:
    """Claim share and tree statistics of a single policy type."""
    policy = db.fetch_one(f"{_WITH_CLAIM_COUNT} WHERE p.id=%s GROUP BY p.id", [policy_id])
    if not policy:
        raise not_found("Policy")
    total_claims = db.fetch_value("SELECT COUNT(*) AS count FROM claims") or 0
    return _analytics_entry(_decode(policy), total_claims)


@router.get("/{policy_id}/claims/date-range", summary="Policy claims grouped by day")
def get_policy_claims_by_date_range(
    policy_id: int,
    start_date: date = Query(..., description="First day, YYYY-MM-DD"),
    end_date: date = Query(..., description="Last day (inclusive), YYYY-MM-DD"),
) -> Dict[str, Any]:
    """Claims of a policy type created between two dates, grouped by creation day."""
    if start_date > end_date:
        raise bad_request("start_date must not be after end_date")

    claims = db.fetch_all(
        f"""
        {CLAIM_SELECT}
        WHERE cl.policy_id=%s AND cl.created_at >= %s AND cl.created_at < %s
        ORDER BY cl.created_at ASC
        """,
        [policy_id, start_date, end_date + timedelta(days=1)],
    )

    claims_by_date: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for claim in claims:
        claims_by_date[claim["created_at"].date().isoformat()].append(claim)

    return {
        "policy_id": policy_id,
        "date_range": {"start": start_date.isoformat(), "end": end_date.isoformat()},
        "total_claims": len(claims),
        "claims_by_date": dict(claims_by_date),
    }


@router.post("/{policy_id}/add-node", response_model=PolicyType, summary="Insert a node into the policy tree")
def add_policy_node(
    policy_id: int,
    payload: AddPolicyNodeRequest,
    _: Dict[str, Any] = Depends(require_admin),
) -> Dict[str, Any]:
    """
    Admin: add a node at the root or under parent_path.

    The whole updated forest replaces the stored one; a failed insertion
    leaves the record untouched.
    """
    policy = _load_policy(policy_id)
    try:
        forest = policy_tree.insert_node(policy["data"], payload.new_node, payload.parent_path)
    except policy_tree.PolicyValidationError as exc:
        raise bad_request(str(exc))
    except policy_tree.PolicyPathNotFoundError:
        raise not_found("Parent path")

    updated = db.execute_returning_one(
        "UPDATE policy_types SET data=%s, updated_at=NOW() WHERE id=%s RETURNING *",
        [db.as_json(forest), policy_id],
    )
    logger.info(
        "Added node '%s' to policy type %s under '%s'",
        payload.new_node.get(policy_tree.LABEL),
        policy_id,
        payload.parent_path or "<root>",
    )
    return _decode(updated)


@router.put("/{policy_id}", response_model=PolicyType, summary="Update policy type")
def update_policy(
    policy_id: int,
    payload: PolicyTypeUpdate,
    _: Dict[str, Any] = Depends(require_admin),
) -> Dict[str, Any]:
    """Admin: replace the forest and/or metadata."""
    existing = _load_policy(policy_id)

    fields = []
    params: List[Any] = []
    if payload.data is not None:
        fields.append("data=%s")
        params.append(db.as_json(_validated(payload.data)))
    if payload.metadata is not None:
        fields.append("metadata=%s")
        params.append(db.as_json(payload.metadata))

    if not fields:
        return existing

    params.append(policy_id)
    updated = db.execute_returning_one(
        f"UPDATE policy_types SET {', '.join(fields)}, updated_at=NOW() WHERE id=%s RETURNING *",
        params,
    )
    logger.info("Updated policy type %s", policy_id)
    return _decode(updated)


@router.delete("/{policy_id}", response_model=APIMessage, summary="Delete policy type")
def delete_policy(policy_id: int, _: Dict[str, Any] = Depends(require_admin)) -> APIMessage:
    """Admin: delete a policy type that no claim references."""
    _load_policy(policy_id)
    claim_count = db.fetch_value("SELECT COUNT(*) AS count FROM claims WHERE policy_id=%s", [policy_id]) or 0
    if claim_count > 0:
        raise bad_request(
            "Cannot delete policy with associated claims. "
            "Delete the claims first or update them to use a different policy."
        )
    db.execute("DELETE FROM policy_types WHERE id=%s", [policy_id])
    logger.info("Deleted policy type %s", policy_id)
    return APIMessage(message="Policy deleted successfully")
