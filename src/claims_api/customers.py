import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status

from src.claims_api import db
from src.claims_api.auth_utils import get_current_user
from src.claims_api.common import Page, bad_request, conflict, not_found, page_params, paginated
from src.claims_api.schemas import APIMessage, Customer, CustomerCreate, CustomerUpdate, SortOrder

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/customers", tags=["Customers"], dependencies=[Depends(get_current_user)])


class CustomerSort(str, Enum):
    name = "name"
    email = "email"
    city = "city"
    created_at = "created_at"


_SELECT_WITH_COUNT = """
    SELECT cu.*,
           (SELECT COUNT(*) FROM claims c WHERE c.customer_id = cu.id) AS claims_count
    FROM customers cu
"""


def _load_customer(customer_id: int) -> Dict[str, Any]:
    customer = db.fetch_one(f"{_SELECT_WITH_COUNT} WHERE cu.id=%s", [customer_id])
    if not customer:
        raise not_found("Customer")
    return customer


def _email_taken(email: str) -> bool:
    return db.fetch_one("SELECT id FROM customers WHERE lower(email)=%s", [email.lower()]) is not None


@router.get("", summary="List customers")
def list_customers(
    city: Optional[str] = Query(None, description="Exact city"),
    email: Optional[str] = Query(None, description="Email substring"),
    sort_by: CustomerSort = Query(CustomerSort.created_at),
    order: SortOrder = Query(SortOrder.desc),
    page: Page = Depends(page_params),
) -> Dict[str, Any]:
    """List customers with their claim counts."""
    where = []
    params: List[Any] = []
    if city:
        where.append("cu.city=%s")
        params.append(city)
    if email:
        where.append("cu.email ILIKE %s")
        params.append(f"%{email}%")
    where_sql = ("WHERE " + " AND ".join(where)) if where else ""

    customers = db.fetch_all(
        f"{_SELECT_WITH_COUNT} {where_sql} ORDER BY cu.{sort_by.value} {order.value.upper()} LIMIT %s OFFSET %s",
        params + [page.limit, page.offset],
    )
    total = db.fetch_value(f"SELECT COUNT(*) AS count FROM customers cu {where_sql}", params)
    return paginated(customers, total or 0, page)


@router.get("/search", summary="Search customers")
def search_customers(
    query: str = Query(..., description="Matched against name, email, city and number"),
    page: Page = Depends(page_params),
) -> Dict[str, Any]:
    """Case-insensitive search over customer fields, ordered by name."""
    if not query.strip():
        raise bad_request("Search query is required")
    pattern = f"%{query.strip()}%"
    where_sql = "WHERE cu.name ILIKE %s OR cu.email ILIKE %s OR cu.city ILIKE %s OR cu.number LIKE %s"
    params: List[Any] = [pattern, pattern, pattern, pattern]
    customers = db.fetch_all(
        f"{_SELECT_WITH_COUNT} {where_sql} ORDER BY cu.name ASC LIMIT %s OFFSET %s",
        params + [page.limit, page.offset],
    )
    total = db.fetch_value(f"SELECT COUNT(*) AS count FROM customers cu {where_sql}", params)
    return paginated(customers, total or 0, page)


@router.get("/{customer_id}", response_model=Customer, summary="Get customer")
def get_customer(customer_id: int) -> Dict[str, Any]:
    """Get a customer with claims_count."""
    return _load_customer(customer_id)


@router.post("", response_model=Customer, status_code=status.HTTP_201_CREATED, summary="Create customer")
def create_customer(payload: CustomerCreate) -> Dict[str, Any]:
    """Create a customer; emails are unique."""
    if _email_taken(payload.email):
        raise conflict("Email already in use")
    customer = db.execute_returning_one(
        "INSERT INTO customers (name, city, number, email) VALUES (%s, %s, %s, %s) RETURNING *",
        [payload.name, payload.city, payload.number, payload.email.lower()],
    )
    logger.info("Created customer %s", customer["id"])
    customer["claims_count"] = 0
    return customer


@router.put("/{customer_id}", response_model=Customer, summary="Update customer")
def update_customer(customer_id: int, payload: CustomerUpdate) -> Dict[str, Any]:
    """Update customer fields that are present in the body."""
    existing = _load_customer(customer_id)
    if payload.email and payload.email.lower() != existing["email"].lower() and _email_taken(payload.email):
        raise conflict("Email already in use")

    fields = []
    params: List[Any] = []
    for col, val in [
        ("name", payload.name),
        ("city", payload.city),
        ("number", payload.number),
        ("email", payload.email.lower() if payload.email else None),
    ]:
        if val is not None:
            fields.append(f"{col}=%s")
            params.append(val)

    if not fields:
        return existing

    params.append(customer_id)
    db.execute(f"UPDATE customers SET {', '.join(fields)}, updated_at=NOW() WHERE id=%s", params)
    return _load_customer(customer_id)


@router.delete("/{customer_id}", response_model=APIMessage, summary="Delete customer")
def delete_customer(customer_id: int) -> APIMessage:
    """Delete a customer that has no claims."""
    customer = _load_customer(customer_id)
    if customer["claims_count"] > 0:
        raise conflict(
            "Cannot delete customer with existing claims. Please delete or transfer the claims first."
        )
    db.execute("DELETE FROM customers WHERE id=%s", [customer_id])
    logger.info("Deleted customer %s", customer_id)
    return APIMessage(message="Customer deleted successfully")


@router.get("/{customer_id}/claims", summary="Claims of a customer")
def get_customer_claims(
    customer_id: int,
    claim_status: Optional[str] = Query(None, alias="status", description="Filter on metadata.status"),
) -> Dict[str, Any]:
    """Claims filed by a customer, newest first, in a compact form."""
    _load_customer(customer_id)
    where = ["cl.customer_id=%s"]
    params: List[Any] = [customer_id]
    if claim_status:
        where.append("cl.metadata->>'status' = %s")
        params.append(claim_status)
    where_sql = " AND ".join(where)

    claims = db.fetch_all(
        f"""
        SELECT cl.id, cl.details,
               cl.metadata->>'status' AS status,
               cl.metadata->'claim_amount' AS claim_amount,
               cl.metadata->>'incident_date' AS incident_date,
               cl.created_at, cl.updated_at,
               json_build_object('id', e.id, 'name', e.name, 'position', e.position) AS employee,
               json_build_object('id', p.id, 'name', p.metadata->>'name') AS policy_type
        FROM claims cl
        JOIN employees e ON e.id = cl.employee_id
        JOIN policy_types p ON p.id = cl.policy_id
        WHERE {where_sql}
        ORDER BY cl.created_at DESC
        """,
        params,
    )
    return {"claims": claims}
