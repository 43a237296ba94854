import math
from typing import Any, Dict, List, NamedTuple

from fastapi import HTTPException, Query, status


class Page(NamedTuple):
    page: int
    limit: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


# PUBLIC_INTERFACE
def page_params(
    page: int = Query(1, ge=1, description="1-based page number"),
    limit: int = Query(10, ge=1, le=100, description="Page size"),
) -> Page:
    """Dependency parsing ?page=&limit= query parameters."""
    return Page(page=page, limit=limit)


# PUBLIC_INTERFACE
def paginated(data: List[Any], total: int, page: Page) -> Dict[str, Any]:
    """Wrap a page of rows in the standard list envelope."""
    return {
        "data": data,
        "pagination": {
            "total": total,
            "page": page.page,
            "limit": page.limit,
            "pages": math.ceil(total / page.limit),
        },
    }


def not_found(entity: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{entity} not found")


def bad_request(msg: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=msg)


def conflict(msg: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=msg)
