"""Page-based listing shared by the meetings and activity endpoints."""

import math
from dataclasses import dataclass
from typing import Any

from fastapi import Query
from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


@dataclass
class PaginationParams:
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


def get_pagination(
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, description="Items per page"),
) -> PaginationParams:
    return PaginationParams(page=page, page_size=page_size)


async def paginate(
    db: AsyncSession,
    query: Select,
    pagination: PaginationParams,
    **execution_options: Any,
) -> tuple[list[Any], int]:
    """Run ``query`` for one page and count every row it would match.

    ``query`` must already carry its ordering.
    """
    total_count = await db.scalar(select(func.count()).select_from(query.order_by(None).subquery())) or 0
    page_query = query.offset(pagination.offset).limit(pagination.page_size)
    if execution_options:
        page_query = page_query.execution_options(**execution_options)
    result = await db.execute(page_query)
    return list(result.scalars().all()), total_count


def build_pagination_meta(total_count: int, pagination: PaginationParams) -> dict:
    total_pages = math.ceil(total_count / pagination.page_size) if total_count > 0 else 0
    return {
        "page": pagination.page,
        "page_size": pagination.page_size,
        "total_count": total_count,
        "total_pages": total_pages,
        "has_more": pagination.page < total_pages,
    }
