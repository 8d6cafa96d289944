"""
Project Pipeline CRM
Blueprint helpers.
"""

from flask import request
from sqlalchemy import func, select

from crm.models import db


def paginate_select(stmt, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to a SQLAlchemy ``Select``.

    Query params:
        limit  — max items (default 200, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = db.session.execute(
        select(func.count()).select_from(stmt.order_by(None).subquery())
    ).scalar_one()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = db.session.execute(stmt.limit(limit).offset(offset)).scalars().all()
    return items, total
