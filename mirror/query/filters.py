"""Query request models.

Filtering is a closed set of criterion kinds, discriminated on `kind`. Each
entity type declares which fields accept which kind (see entities.py); the
builder rejects everything else.
"""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

ENTITY_TYPE = Literal["scene", "performer", "studio", "tag", "group", "gallery", "image"]


class IdSetCriterion(BaseModel):
    """Relation membership. Values are "id" or "id:instance_id"."""

    kind: Literal["ids"] = "ids"
    field: str
    modifier: Literal["includes", "includes_all", "excludes", "is_null", "not_null"] = "includes"
    values: list[str] = []


class RangeCriterion(BaseModel):
    kind: Literal["range"] = "range"
    field: str
    modifier: Literal[
        "equals", "not_equals", "greater_than", "less_than",
        "between", "not_between", "is_null", "not_null",
    ] = "greater_than"
    value: Optional[Union[int, float, str]] = None
    value2: Optional[Union[int, float, str]] = None


class BooleanCriterion(BaseModel):
    kind: Literal["bool"] = "bool"
    field: str
    value: bool = True


class TextCriterion(BaseModel):
    kind: Literal["text"] = "text"
    field: str
    modifier: Literal["equals", "not_equals", "includes", "excludes", "is_null", "not_null"] = "includes"
    value: Optional[str] = None


class HierarchyCriterion(BaseModel):
    """Membership in a tree or DAG, optionally including descendants.

    depth 0 matches the given entities only, -1 any depth below them.
    """

    kind: Literal["hierarchy"] = "hierarchy"
    field: str
    modifier: Literal["includes", "excludes"] = "includes"
    values: list[str] = []
    depth: int = Field(default=0, ge=-1)


Criterion = Annotated[
    Union[IdSetCriterion, RangeCriterion, BooleanCriterion, TextCriterion, HierarchyCriterion],
    Field(discriminator="kind"),
]


class QueryOptions(BaseModel):
    """Everything about a query except the entity type."""

    model_config = {"extra": "forbid"}

    user_id: str
    instance_id: Optional[str] = None
    criteria: list[Criterion] = []
    search: Optional[str] = None
    sort: str = "default"
    direction: Literal["asc", "desc"] = "asc"
    # SQLite binds signed 64-bit integers only
    random_seed: Optional[int] = Field(default=None, ge=-(2**63), le=2**63 - 1)
    page: int = Field(default=1, ge=1)
    per_page: Optional[int] = Field(default=None, ge=1)
    apply_exclusions: bool = True


class QuerySpec(QueryOptions):
    entity_type: ENTITY_TYPE


class QueryResult(BaseModel):
    rows: list[dict]
    total_count: int
    page: int
    per_page: int
