"""
Pagination helpers shared by list endpoints
"""

import math
from typing import Any, Dict, List, Optional, Sequence


def clamp_page(page: Optional[int], limit: Optional[int], default_limit: int,
               max_limit: int) -> tuple:
    page = max(int(page or 1), 1)
    limit = int(limit or default_limit)
    limit = min(max(limit, 1), max_limit)
    return page, limit


def paginate(items: Sequence[Any], page: int, limit: int) -> Dict[str, Any]:
    """Slice ``items`` and describe the page"""
    total = len(items)
    total_pages = max(math.ceil(total / limit), 1) if limit else 1
    offset = (page - 1) * limit
    window: List[Any] = list(items[offset:offset + limit])
    return {
        "items": window,
        "meta": {
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }
