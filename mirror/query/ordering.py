"""Sort resolution, including the seeded random order."""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Optional

from ..errors import QueryError
from ..utils import utcnow
from .entities import EntityConfig

RANDOM = "random"
RANDOM_EXPR = "seeded_rank(:seed, e.id, e.instance_id)"


def default_seed(user_id: str, bucket_minutes: int, now: Optional[datetime] = None) -> int:
    """Seed shared by every query of one user within one time bucket."""
    now = now or utcnow()
    bucket = int(now.timestamp()) // (max(1, bucket_minutes) * 60)
    digest = hashlib.blake2b(f"{user_id}|{bucket}".encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") >> 1


def order_by(config: EntityConfig, sort: str, direction: str) -> tuple[str, bool]:
    """ORDER BY clause for a sort name, and whether it needs the :seed param.

    Ties always fall back to (id, instance_id) so paging is stable.
    """
    if sort == "default":
        sort = config.default_sort
    direction = "DESC" if direction == "desc" else "ASC"
    tiebreak = f"e.id {direction}, e.instance_id {direction}"

    if sort == RANDOM:
        return f"ORDER BY {RANDOM_EXPR} {direction}, {tiebreak}", True

    expr = config.sorts.get(sort)
    if expr is None:
        allowed = ", ".join(sorted([*config.sorts, RANDOM]))
        raise QueryError(f"Unknown sort '{sort}' for {config.entity_type} (allowed: {allowed})")
    # NULLs last regardless of direction
    return f"ORDER BY ({expr}) IS NULL, {expr} {direction}, {tiebreak}", False
