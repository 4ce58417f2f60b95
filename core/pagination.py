import math
from typing import Callable, List, Optional

from config import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT


def clamp_limit(limit: Optional[int]) -> int:
    if not limit or limit < 1:
        return DEFAULT_PAGE_LIMIT
    return min(int(limit), MAX_PAGE_LIMIT)


def paginate(query, *, page: int, limit: int, key: str, serialize_page: Callable[[List], List]) -> dict:
    """Apply offset pagination to an ordered query and wrap the page in the list envelope.

    ``serialize_page`` receives the whole page so it can batch its lookups.
    """
    page = max(int(page or 1), 1)
    limit = clamp_limit(limit)
    total = query.order_by(None).count()
    rows = query.offset((page - 1) * limit).limit(limit).all()
    return {
        "page": page,
        "limit": limit,
        "totalPages": math.ceil(total / limit) if total else 0,
        "totalResults": total,
        key: serialize_page(rows),
    }
