"""Query-string pagination shared by every list endpoint"""
import math
from typing import Dict, List, Literal, Optional, Tuple

from fastapi import Query
from sqlalchemy import func
from sqlmodel import Session, select

from errors import BadRequest
from validators.business_rules import get_business_rules

_rules = get_business_rules()


class PaginationParams:
    """``page``, ``limit``, ``sortBy``, ``sortOrder`` and ``search`` query parameters"""

    def __init__(
        self,
        page: int = Query(1, ge=1),
        limit: int = Query(_rules.DEFAULT_PAGE_SIZE, ge=1, le=_rules.MAX_PAGE_SIZE),
        sort_by: Optional[str] = Query(None, alias="sortBy"),
        sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
        search: Optional[str] = Query(None, max_length=100),
    ):
        self.page = page
        self.limit = limit
        self.sort_by = sort_by
        self.sort_order = sort_order
        self.search = search.strip() if search and search.strip() else None

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


def pagination_meta(page: int, limit: int, total: int) -> dict:
    total_pages = math.ceil(total / limit) if total else 0
    has_next = page < total_pages
    has_prev = page > 1
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": total_pages,
        "hasNextPage": has_next,
        "hasPrevPage": has_prev,
        "nextPage": page + 1 if has_next else None,
        "prevPage": page - 1 if has_prev else None,
    }


def paginate(
    session: Session,
    statement,
    params: PaginationParams,
    sortable: Dict[str, object],
    default_sort: str,
) -> Tuple[List, dict]:
    """
    Apply sorting and paging to ``statement``.

    ``sortable`` maps public sort keys (camelCase) to columns; an unknown
    ``sortBy`` is rejected.
    """
    sort_key = params.sort_by or default_sort
    column = sortable.get(sort_key)
    if column is None:
        raise BadRequest(
            f"Invalid sort field: {sort_key}. Allowed: {', '.join(sorted(sortable))}",
            field="sortBy",
        )

    total = session.exec(select(func.count()).select_from(statement.subquery())).one()

    ordering = column.asc() if params.sort_order == "asc" else column.desc()
    items = session.exec(
        statement.order_by(ordering).offset(params.offset).limit(params.limit)
    ).all()

    return list(items), pagination_meta(params.page, params.limit, total)
