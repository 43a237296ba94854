import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query, status

from src.claims_api import db
from src.claims_api.auth_utils import get_current_user
from src.claims_api.common import Page, bad_request, not_found, page_params, paginated
from src.claims_api.schemas import (
    APIMessage,
    ClaimCreate,
    ClaimDocumentsUpload,
    ClaimStats,
    ClaimStatusUpdate,
    ClaimUpdate,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/claims", tags=["Claims"], dependencies=[Depends(get_current_user)])

# Claims joined with the records they reference, each nested as a JSON object.
CLAIM_SELECT = """
    SELECT cl.*,
           row_to_json(cu) AS customer,
           row_to_json(e) AS employee,
           row_to_json(p) AS policy_type
    FROM claims cl
    JOIN customers cu ON cu.id = cl.customer_id
    JOIN employees e ON e.id = cl.employee_id
    JOIN policy_types p ON p.id = cl.policy_id
"""

_SEARCH_WHERE = "WHERE cl.details ILIKE %s OR cu.name ILIKE %s OR e.name ILIKE %s"


def _load_claim(claim_id: int) -> Dict[str, Any]:
    claim = db.fetch_one(f"{CLAIM_SELECT} WHERE cl.id=%s", [claim_id])
    if not claim:
        raise not_found("Claim")
    return claim


def _require_exists(table: str, entity: str, record_id: int) -> None:
    if not db.fetch_one(f"SELECT id FROM {table} WHERE id=%s", [record_id]):
        raise not_found(entity)


def _check_references(customer_id: Any, employee_id: Any, policy_id: Any) -> None:
    if customer_id is not None:
        _require_exists("customers", "Customer", customer_id)
    if employee_id is not None:
        _require_exists("employees", "Employee", employee_id)
    if policy_id is not None:
        _require_exists("policy_types", "Policy type", policy_id)


@router.get("", summary="List claims")
def list_claims(page: Page = Depends(page_params)) -> Dict[str, Any]:
    """List claims, newest first, with customer, employee and policy type."""
    claims = db.fetch_all(
        f"{CLAIM_SELECT} ORDER BY cl.created_at DESC LIMIT %s OFFSET %s",
        [page.limit, page.offset],
    )
    total = db.fetch_value("SELECT COUNT(*) AS count FROM claims")
    return paginated(claims, total or 0, page)


@router.get("/search", summary="Search claims")
def search_claims(
    query: str = Query(..., description="Matched against details, customer name and employee name"),
    page: Page = Depends(page_params),
) -> Dict[str, Any]:
    """Case-insensitive search over claim details and related names."""
    if not query.strip():
        raise bad_request("Search query is required")
    pattern = f"%{query.strip()}%"
    params: List[Any] = [pattern, pattern, pattern]
    claims = db.fetch_all(
        f"{CLAIM_SELECT} {_SEARCH_WHERE} ORDER BY cl.created_at DESC LIMIT %s OFFSET %s",
        params + [page.limit, page.offset],
    )
    total = db.fetch_value(
        f"""
        SELECT COUNT(*) AS count
        FROM claims cl
        JOIN customers cu ON cu.id = cl.customer_id
        JOIN employees e ON e.id = cl.employee_id
        {_SEARCH_WHERE}
        """,
        params,
    )
    return paginated(claims, total or 0, page)


@router.get("/stats", response_model=ClaimStats, summary="Claim counts by status")
@router.get("/dashboard/stats", response_model=ClaimStats, include_in_schema=False)
def claim_stats() -> Dict[str, Any]:
    """Dashboard counters; status is read from metadata.status."""
    return db.fetch_one(
        """
        SELECT COUNT(*) AS total,
               COUNT(*) FILTER (WHERE metadata->>'status' = 'PENDING') AS pending,
               COUNT(*) FILTER (WHERE metadata->>'status' = 'APPROVED') AS approved,
               COUNT(*) FILTER (WHERE metadata->>'status' = 'REJECTED') AS rejected
        FROM claims
        """
    ) or {"total": 0, "pending": 0, "approved": 0, "rejected": 0}


@router.get("/status/{claim_status}", summary="List claims by status")
def claims_by_status(claim_status: str, page: Page = Depends(page_params)) -> Dict[str, Any]:
    """List claims whose metadata.status equals the given value."""
    claims = db.fetch_all(
        f"{CLAIM_SELECT} WHERE cl.metadata->>'status' = %s ORDER BY cl.created_at DESC LIMIT %s OFFSET %s",
        [claim_status, page.limit, page.offset],
    )
    total = db.fetch_value(
        "SELECT COUNT(*) AS count FROM claims WHERE metadata->>'status' = %s",
        [claim_status],
    )
    return paginated(claims, total or 0, page)


@router.get("/{claim_id}", summary="Get claim")
def get_claim(claim_id: int) -> Dict[str, Any]:
    """Get a claim with its customer, employee and policy type."""
    return _load_claim(claim_id)


@router.post("", status_code=status.HTTP_201_CREATED, summary="Create claim")
def create_claim(payload: ClaimCreate) -> Dict[str, Any]:
    """Create a claim; every referenced record must exist."""
    _check_references(payload.customer_id, payload.employee_id, payload.policy_id)
    created = db.execute_returning_one(
        """
        INSERT INTO claims (details, customer_id, employee_id, policy_id, docs, metadata)
        VALUES (%s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        [
            payload.details,
            payload.customer_id,
            payload.employee_id,
            payload.policy_id,
            db.as_json(payload.docs or {}),
            db.as_json(payload.metadata or {}),
        ],
    )
    logger.info("Created claim %s for customer %s", created["id"], payload.customer_id)
    return _load_claim(created["id"])


@router.put("/{claim_id}", summary="Update claim")
def update_claim(claim_id: int, payload: ClaimUpdate) -> Dict[str, Any]:
    """Update claim fields; changed references must exist."""
    existing = db.fetch_one("SELECT id FROM claims WHERE id=%s", [claim_id])
    if not existing:
        raise not_found("Claim")
    _check_references(payload.customer_id, payload.employee_id, payload.policy_id)

    fields = []
    params: List[Any] = []
    for col, val in [
        ("details", payload.details),
        ("customer_id", payload.customer_id),
        ("employee_id", payload.employee_id),
        ("policy_id", payload.policy_id),
        ("docs", db.as_json(payload.docs) if payload.docs is not None else None),
        ("metadata", db.as_json(payload.metadata) if payload.metadata is not None else None),
    ]:
        if val is not None:
            fields.append(f"{col}=%s")
            params.append(val)

    if fields:
        params.append(claim_id)
        db.execute(f"UPDATE claims SET {', '.join(fields)}, updated_at=NOW() WHERE id=%s", params)
    return _load_claim(claim_id)


@router.delete("/{claim_id}", response_model=APIMessage, summary="Delete claim")
def delete_claim(claim_id: int) -> APIMessage:
    """Delete a claim."""
    affected = db.execute("DELETE FROM claims WHERE id=%s", [claim_id])
    if affected == 0:
        raise not_found("Claim")
    logger.info("Deleted claim %s", claim_id)
    return APIMessage(message="Claim deleted successfully")


@router.post("/{claim_id}/documents", summary="Attach claim documents")
def upload_claim_documents(claim_id: int, payload: ClaimDocumentsUpload) -> Dict[str, Any]:
    """Merge the given documents into the claim's docs (same keys are replaced)."""
    existing = db.fetch_one("SELECT id FROM claims WHERE id=%s", [claim_id])
    if not existing:
        raise not_found("Claim")
    return db.execute_returning_one(
        """
        UPDATE claims SET docs = COALESCE(docs, '{}'::jsonb) || %s::jsonb, updated_at=NOW()
        WHERE id=%s RETURNING *
        """,
        [db.as_json(payload.documents), claim_id],
    )


@router.get("/{claim_id}/documents", summary="Get claim documents")
def get_claim_documents(claim_id: int) -> Dict[str, Any]:
    """Return the claim's docs object."""
    claim = db.fetch_one("SELECT docs FROM claims WHERE id=%s", [claim_id])
    if not claim:
        raise not_found("Claim")
    return claim.get("docs") or {}


@router.put("/{claim_id}/status", summary="Update claim status")
def update_claim_status(claim_id: int, payload: ClaimStatusUpdate) -> Dict[str, Any]:
    """Set metadata.status and record the change (notes, timestamp) in metadata.status_update."""
    existing = db.fetch_one("SELECT id FROM claims WHERE id=%s", [claim_id])
    if not existing:
        raise not_found("Claim")

    patch = {
        "status": payload.status.value,
        "status_update": {
            "status": payload.status.value,
            "notes": payload.notes,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        },
    }
    updated = db.execute_returning_one(
        """
        UPDATE claims SET metadata = COALESCE(metadata, '{}'::jsonb) || %s::jsonb, updated_at=NOW()
        WHERE id=%s RETURNING *
        """,
        [db.as_json(patch), claim_id],
    )
    logger.info("Claim %s status -> %s", claim_id, payload.status.value)
    return updated
