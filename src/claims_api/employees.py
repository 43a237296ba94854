import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status

from src.claims_api import db
from src.claims_api.auth_utils import get_current_user, require_admin
from src.claims_api.common import Page, bad_request, not_found, page_params, paginated
from src.claims_api.schemas import APIMessage, Employee, EmployeeCreate, EmployeeUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/employees", tags=["Employees"], dependencies=[Depends(get_current_user)])

_SELECT_WITH_COUNT = """
    SELECT e.*,
           (SELECT COUNT(*) FROM claims c WHERE c.employee_id = e.id) AS claims_count
    FROM employees e
"""


def _load_employee(employee_id: int) -> Dict[str, Any]:
    employee = db.fetch_one(f"{_SELECT_WITH_COUNT} WHERE e.id=%s", [employee_id])
    if not employee:
        raise not_found("Employee")
    return employee


def _employee_claims(employee_id: int) -> List[Dict[str, Any]]:
    return db.fetch_all(
        """
        SELECT cl.*,
               json_build_object('id', cu.id, 'name', cu.name, 'email', cu.email) AS customer,
               row_to_json(p) AS policy_type
        FROM claims cl
        JOIN customers cu ON cu.id = cl.customer_id
        JOIN policy_types p ON p.id = cl.policy_id
        WHERE cl.employee_id=%s
        ORDER BY cl.created_at DESC
        """,
        [employee_id],
    )


@router.get("", summary="List employees")
def list_employees(
    search: Optional[str] = Query(None, description="Substring of name or position"),
    page: Page = Depends(page_params),
) -> Dict[str, Any]:
    """List employees with their claim counts, newest first."""
    where_sql = ""
    params: List[Any] = []
    if search:
        where_sql = "WHERE e.name ILIKE %s OR e.position ILIKE %s"
        params.extend([f"%{search}%", f"%{search}%"])

    employees = db.fetch_all(
        f"{_SELECT_WITH_COUNT} {where_sql} ORDER BY e.created_at DESC LIMIT %s OFFSET %s",
        params + [page.limit, page.offset],
    )
    total = db.fetch_value(f"SELECT COUNT(*) AS count FROM employees e {where_sql}", params)
    return paginated(employees, total or 0, page)


@router.get("/statistics", summary="Employee statistics")
def employee_statistics() -> Dict[str, Any]:
    """Headcount, distribution by position, top handlers and recent hires."""
    total = db.fetch_value("SELECT COUNT(*) AS count FROM employees") or 0
    by_position = db.fetch_all(
        """
        SELECT position, COUNT(*) AS count
        FROM employees
        WHERE position IS NOT NULL
        GROUP BY position
        ORDER BY count DESC
        """
    )
    top = db.fetch_all(
        f"""
        SELECT id, name, position, claims_count FROM ({_SELECT_WITH_COUNT}) ranked
        ORDER BY claims_count DESC
        LIMIT 5
        """
    )
    since = datetime.now(timezone.utc) - timedelta(days=30)
    new_hires = db.fetch_value("SELECT COUNT(*) AS count FROM employees WHERE created_at >= %s", [since]) or 0
    return {
        "total_employees": total,
        "new_employees_last_30_days": new_hires,
        "employees_by_position": by_position,
        "top_employees_by_claims": top,
    }


@router.get("/{employee_id}", summary="Get employee")
def get_employee(employee_id: int) -> Dict[str, Any]:
    """Get an employee with the claims they handle."""
    employee = _load_employee(employee_id)
    employee["claims"] = _employee_claims(employee_id)
    return employee


@router.post("", response_model=Employee, status_code=status.HTTP_201_CREATED, summary="Create employee")
def create_employee(payload: EmployeeCreate, _: Dict[str, Any] = Depends(require_admin)) -> Dict[str, Any]:
    """Admin: create an employee."""
    employee = db.execute_returning_one(
        "INSERT INTO employees (name, position, data) VALUES (%s, %s, %s) RETURNING *",
        [payload.name, payload.position, db.as_json(payload.data or {})],
    )
    logger.info("Created employee %s", employee["id"])
    employee["claims_count"] = 0
    return employee


@router.put("/{employee_id}", response_model=Employee, summary="Update employee")
def update_employee(
    employee_id: int,
    payload: EmployeeUpdate,
    _: Dict[str, Any] = Depends(require_admin),
) -> Dict[str, Any]:
    """Admin: update name/position; data keys are merged into the stored data."""
    existing = _load_employee(employee_id)

    fields = []
    params: List[Any] = []
    for col, val in [("name", payload.name), ("position", payload.position)]:
        if val is not None:
            fields.append(f"{col}=%s")
            params.append(val)
    if payload.data is not None:
        merged = {**(existing.get("data") or {}), **payload.data}
        fields.append("data=%s")
        params.append(db.as_json(merged))

    if not fields:
        return existing

    params.append(employee_id)
    db.execute(f"UPDATE employees SET {', '.join(fields)}, updated_at=NOW() WHERE id=%s", params)
    return _load_employee(employee_id)


@router.delete("/{employee_id}", response_model=APIMessage, summary="Delete employee")
def delete_employee(employee_id: int, _: Dict[str, Any] = Depends(require_admin)) -> APIMessage:
    """Admin: delete an employee with no claims."""
    employee = _load_employee(employee_id)
    if employee["claims_count"] > 0:
        raise bad_request(
            "Cannot delete employee with associated claims. Please reassign or delete the claims first."
        )
    db.execute("DELETE FROM employees WHERE id=%s", [employee_id])
    logger.info("Deleted employee %s", employee_id)
    return APIMessage(message="Employee deleted successfully")


@router.get("/{employee_id}/claims", summary="Claims handled by an employee")
def get_employee_claims(employee_id: int) -> Dict[str, Any]:
    """Claims handled by an employee, newest first."""
    _load_employee(employee_id)
    return {"claims": _employee_claims(employee_id)}


@router.get("/{employee_id}/performance", summary="Employee performance")
def get_employee_performance(
    employee_id: int,
    period: int = Query(30, ge=1, le=3650, description="Look-back window in days"),
) -> Dict[str, Any]:
    """Claims handled in the last `period` days, per day and per policy type."""
    employee = _load_employee(employee_id)
    since = datetime.now(timezone.utc) - timedelta(days=period)
    claims = db.fetch_all(
        """
        SELECT cl.id, cl.policy_id, cl.created_at, p.metadata->>'name' AS policy_name
        FROM claims cl
        JOIN policy_types p ON p.id = cl.policy_id
        WHERE cl.employee_id=%s AND cl.created_at >= %s
        ORDER BY cl.created_at ASC
        """,
        [employee_id, since],
    )

    per_day: Counter = Counter()
    per_policy: Counter = Counter()
    for claim in claims:
        per_day[claim["created_at"].date().isoformat()] += 1
        per_policy[claim.get("policy_name") or f"Policy Type {claim['policy_id']}"] += 1

    return {
        "employee_id": employee["id"],
        "employee_name": employee["name"],
        "period": f"Last {period} days",
        "total_claims": len(claims),
        "claims_per_day": [{"date": d, "count": c} for d, c in per_day.items()],
        "claims_by_policy_type": [{"policy_type": p, "count": c} for p, c in per_policy.items()],
    }
