"""Read side of the mirror: filter models, per-entity config, SQL builder."""

from .builder import QueryBuilder, fts_query, parse_ref
from .filters import (
    BooleanCriterion,
    HierarchyCriterion,
    IdSetCriterion,
    QueryOptions,
    QueryResult,
    QuerySpec,
    RangeCriterion,
    TextCriterion,
)
from .ordering import default_seed

__all__ = [
    "BooleanCriterion",
    "HierarchyCriterion",
    "IdSetCriterion",
    "QueryBuilder",
    "QueryOptions",
    "QueryResult",
    "QuerySpec",
    "RangeCriterion",
    "TextCriterion",
    "default_seed",
    "fts_query",
    "parse_ref",
]
