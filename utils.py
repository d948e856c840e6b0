import math
from typing import Any, Dict

from sqlalchemy.orm import Query

MAX_PAGE_SIZE = 100


def paginate(query: Query, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    """Return one page of an ordered query along with pagination info."""
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)
    total = query.order_by(None).count()
    items = query.offset((page - 1) * limit).limit(limit).all()
    return {
        "items": items,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit),
    }


def like(term: str) -> str:
    return f"%{term}%"
