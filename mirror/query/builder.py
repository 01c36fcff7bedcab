"""SQL assembly for library queries.

Every query reads one entity table aliased `e`, LEFT JOINs the caller's
overlay rows, drops soft-deleted rows and (unless asked not to) the caller's
precomputed exclusions, then hydrates relations for the page it returns.
"""

from __future__ import annotations

import json
import re
import sqlite3
from typing import Callable, Optional

from ..config import QueryConfig
from ..database import Store
from ..errors import QueryError
from ..logging_config import get_logger
from ..utils import chunked
from .entities import ENTITY_CONFIGS, JSON_COLUMNS, LABELS, TABLES, EntityConfig, RelationField
from .filters import (
    BooleanCriterion,
    HierarchyCriterion,
    IdSetCriterion,
    QuerySpec,
    QueryResult,
    RangeCriterion,
    TextCriterion,
)
from .ordering import default_seed, order_by

logger = get_logger("query")

# Depth used for "any depth"; deeper trees are not expected upstream
MAX_TREE_DEPTH = 100
BOOL_OUTPUTS = ("organized", "favorite")
_HYDRATE_CHUNK = 400
_TOKEN = re.compile(r"\w+", re.UNICODE)

Ref = tuple[str, Optional[str]]
Matcher = Callable[[str, str], str]


def parse_ref(value: str) -> Ref:
    """Split "12" or "12:main" into (id, instance_id or None)."""
    entity_id, sep, instance_id = str(value).partition(":")
    if not entity_id:
        raise QueryError(f"Invalid entity reference '{value}'")
    return entity_id, (instance_id if sep and instance_id else None)


def fts_query(search: str) -> Optional[str]:
    """Quote every word and make it a prefix match; FTS syntax in input is inert."""
    tokens = _TOKEN.findall(search)
    if not tokens:
        return None
    return " ".join(f'"{token}"*' for token in tokens)


def _like_pattern(value: str) -> str:
    escaped = value.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class _Params:
    """Named parameter collector."""

    def __init__(self, **base):
        self.values: dict = dict(base)
        self._count = 0

    def add(self, value) -> str:
        self._count += 1
        name = f"p{self._count}"
        self.values[name] = value
        return f":{name}"


class QueryBuilder:
    def __init__(self, store: Store, config: Optional[QueryConfig] = None):
        self.store = store
        self.config = config or QueryConfig()

    # --- public ---

    def execute(self, spec: QuerySpec) -> QueryResult:
        cfg = self._entity(spec.entity_type)
        per_page = spec.per_page or self.config.default_per_page
        if per_page > self.config.max_per_page:
            raise QueryError(f"per_page {per_page} exceeds maximum {self.config.max_per_page}")

        params = _Params(user_id=spec.user_id)
        where = self._scope(cfg, params, spec.instance_id, spec.apply_exclusions)
        for criterion in spec.criteria:
            where.append(self._criterion(cfg, params, criterion))
        if spec.search:
            clause = self._search(cfg, params, spec.search)
            if clause:
                where.append(clause)

        order, needs_seed = order_by(cfg, spec.sort, spec.direction)
        if needs_seed:
            params.values["seed"] = (
                spec.random_seed
                if spec.random_seed is not None
                else default_seed(spec.user_id, self.config.random_seed_bucket_minutes)
            )

        joins = self._joins(cfg)
        where_sql = " AND ".join(where)
        count_sql = f"SELECT COUNT(*) FROM {cfg.table} e {joins} WHERE {where_sql}"
        select_sql = (
            f"SELECT {self._select_list(cfg)} FROM {cfg.table} e {joins} "
            f"WHERE {where_sql} {order} LIMIT :limit OFFSET :offset"
        )
        params.values["limit"] = per_page
        params.values["offset"] = (spec.page - 1) * per_page

        # One read transaction, so the count and the page agree under concurrent syncs
        with self.store.snapshot() as conn:
            try:
                total = conn.execute(count_sql, params.values).fetchone()[0]
                rows = [dict(row) for row in conn.execute(select_sql, params.values).fetchall()]
            except (sqlite3.OperationalError, OverflowError) as exc:
                raise QueryError(f"Query failed: {exc}") from exc
            self._hydrate(conn, cfg, rows)

        logger.debug(
            f"{spec.entity_type} user={spec.user_id} page={spec.page} "
            f"-> {len(rows)}/{total}"
        )
        return QueryResult(rows=rows, total_count=total, page=spec.page, per_page=per_page)

    def get_by_ids(
        self,
        entity_type: str,
        ids: list[str],
        user_id: str,
        instance_id: Optional[str] = None,
        apply_exclusions: bool = True,
    ) -> list[dict]:
        """Rows for the given references, in the order they were asked for."""
        cfg = self._entity(entity_type)
        refs = [parse_ref(value) for value in ids]
        if not refs:
            return []

        params = _Params(user_id=user_id)
        where = self._scope(cfg, params, instance_id, apply_exclusions)
        where.append(self._ref_match(params, "e.id", "e.instance_id", refs))
        sql = (
            f"SELECT {self._select_list(cfg)} FROM {cfg.table} e {self._joins(cfg)} "
            f"WHERE {' AND '.join(where)} ORDER BY e.instance_id"
        )
        with self.store.snapshot() as conn:
            rows = [dict(row) for row in conn.execute(sql, params.values).fetchall()]
            self._hydrate(conn, cfg, rows)

        ordered: list[dict] = []
        taken: set[tuple[str, str]] = set()
        for entity_id, ref_instance in refs:
            for row in rows:
                key = (row["id"], row["instance_id"])
                if key in taken or row["id"] != entity_id:
                    continue
                if ref_instance is not None and row["instance_id"] != ref_instance:
                    continue
                taken.add(key)
                ordered.append(row)
        return ordered

    # --- clauses ---

    def _entity(self, entity_type: str) -> EntityConfig:
        cfg = ENTITY_CONFIGS.get(entity_type)
        if cfg is None:
            raise QueryError(f"Unknown entity type '{entity_type}'")
        return cfg

    def _joins(self, cfg: EntityConfig) -> str:
        return " ".join(o.sql.format(etype=cfg.entity_type) for o in cfg.overlays)

    def _select_list(self, cfg: EntityConfig) -> str:
        columns = [f"e.{c}" for c in cfg.columns]
        columns += [f"{expr} AS {name}" for name, expr in cfg.overlay_columns().items()]
        return ", ".join(columns)

    def _scope(
        self, cfg: EntityConfig, params: _Params, instance_id: Optional[str], apply_exclusions: bool
    ) -> list[str]:
        where = ["e.deleted_at IS NULL"]
        if instance_id is not None:
            where.append(f"e.instance_id = {params.add(instance_id)}")
        if apply_exclusions:
            where.append(
                "NOT EXISTS (SELECT 1 FROM user_excluded_entities x "
                f"WHERE x.user_id = :user_id AND x.entity_type = '{cfg.entity_type}' "
                "AND x.entity_id = e.id AND x.instance_id IN (e.instance_id, ''))"
            )
        return where

    def _criterion(self, cfg: EntityConfig, params: _Params, criterion) -> str:
        if isinstance(criterion, IdSetCriterion):
            return self._id_set(cfg, params, criterion)
        if isinstance(criterion, RangeCriterion):
            return self._range(cfg, params, criterion)
        if isinstance(criterion, BooleanCriterion):
            expr = self._field(cfg.bool_fields, cfg, criterion.field, "boolean")
            return f"({expr}) = {1 if criterion.value else 0}"
        if isinstance(criterion, TextCriterion):
            return self._text(cfg, params, criterion)
        if isinstance(criterion, HierarchyCriterion):
            return self._hierarchy(cfg, params, criterion)
        raise QueryError(f"Unsupported criterion {type(criterion).__name__}")

    @staticmethod
    def _field(fields: dict, cfg: EntityConfig, name: str, kind: str):
        try:
            return fields[name]
        except KeyError:
            allowed = ", ".join(sorted(fields)) or "none"
            raise QueryError(
                f"Unknown {kind} field '{name}' for {cfg.entity_type} (allowed: {allowed})"
            ) from None

    def _ref_match(self, params: _Params, id_col: str, inst_col: str, refs: list[Ref]) -> str:
        parts = []
        for entity_id, instance_id in refs:
            clause = f"{id_col} = {params.add(entity_id)}"
            if instance_id is not None:
                clause += f" AND {inst_col} = {params.add(instance_id)}"
            parts.append(f"({clause})")
        return "(" + " OR ".join(parts) + ")"

    def _related(self, relation: RelationField, match: Optional[Matcher]) -> str:
        """Entity has a live related row matching `match` (any live related row when None).

        References to rows the mirror does not hold, or holds as deleted, never match,
        so `is_null` and `not_null` see a dangling reference as no reference at all.
        """
        target = TABLES[relation.target]
        live = "rt.deleted_at IS NULL"
        if relation.link is not None:
            lk = relation.link
            cond = (
                f"j.{lk.owner_col} = e.id AND j.{lk.owner_instance_col} = e.instance_id"
            )
            if match is not None:
                cond += " AND " + match(f"j.{lk.target_col}", f"j.{lk.target_instance_col}")
            clause = (
                f"EXISTS (SELECT 1 FROM {lk.table} j JOIN {target} rt "
                f"ON rt.id = j.{lk.target_col} AND rt.instance_id = j.{lk.target_instance_col} "
                f"AND {live} WHERE {cond})"
            )
        elif relation.column is not None:
            cond = f"rt.id = e.{relation.column} AND rt.instance_id = e.instance_id AND {live}"
            if match is not None:
                cond += " AND " + match(f"e.{relation.column}", "e.instance_id")
            clause = f"EXISTS (SELECT 1 FROM {target} rt WHERE {cond})"
        else:
            clause = "1" if match is None else match("e.id", "e.instance_id")

        if relation.extra_json:
            col = f"e.{relation.extra_json}"
            extra_cond = "" if match is None else " AND " + match("jx.value", "e.instance_id")
            clause = (
                f"({clause} OR ({col} IS NOT NULL AND "
                f"EXISTS (SELECT 1 FROM json_each({col}) jx JOIN {target} rt "
                f"ON rt.id = jx.value AND rt.instance_id = e.instance_id AND {live}"
                f"{extra_cond})))"
            )
        return clause

    def _id_set(self, cfg: EntityConfig, params: _Params, c: IdSetCriterion) -> str:
        relation = self._field(cfg.id_fields, cfg, c.field, "id")
        if c.modifier == "is_null":
            return f"NOT {self._related(relation, None)}"
        if c.modifier == "not_null":
            return self._related(relation, None)
        if not c.values:
            raise QueryError(f"'{c.modifier}' on {c.field} needs at least one value")
        refs = [parse_ref(v) for v in c.values]
        if c.modifier == "includes_all":
            return " AND ".join(
                self._related(relation, lambda i, n, r=ref: self._ref_match(params, i, n, [r]))
                for ref in refs
            )
        clause = self._related(relation, lambda i, n: self._ref_match(params, i, n, refs))
        return clause if c.modifier == "includes" else f"NOT {clause}"

    def _range(self, cfg: EntityConfig, params: _Params, c: RangeCriterion) -> str:
        expr = self._field(cfg.range_fields, cfg, c.field, "range")
        if c.modifier == "is_null":
            return f"{expr} IS NULL"
        if c.modifier == "not_null":
            return f"{expr} IS NOT NULL"
        if c.value is None:
            raise QueryError(f"'{c.modifier}' on {c.field} needs a value")
        if c.modifier in ("between", "not_between"):
            if c.value2 is None:
                raise QueryError(f"'{c.modifier}' on {c.field} needs value2")
            between = f"{expr} BETWEEN {params.add(c.value)} AND {params.add(c.value2)}"
            return between if c.modifier == "between" else f"({expr} IS NULL OR NOT ({between}))"
        value = params.add(c.value)
        if c.modifier == "equals":
            return f"{expr} = {value}"
        if c.modifier == "not_equals":
            return f"({expr} IS NULL OR {expr} <> {value})"
        if c.modifier == "greater_than":
            return f"{expr} > {value}"
        return f"{expr} < {value}"

    def _text(self, cfg: EntityConfig, params: _Params, c: TextCriterion) -> str:
        expr = self._field(cfg.text_fields, cfg, c.field, "text")
        if c.modifier == "is_null":
            return f"({expr} IS NULL OR {expr} = '')"
        if c.modifier == "not_null":
            return f"({expr} IS NOT NULL AND {expr} <> '')"
        if c.value is None:
            raise QueryError(f"'{c.modifier}' on {c.field} needs a value")
        if c.modifier in ("equals", "not_equals"):
            clause = f"LOWER({expr}) = LOWER({params.add(c.value)})"
        else:
            clause = f"LOWER({expr}) LIKE {params.add(_like_pattern(c.value))} ESCAPE '\\'"
        if c.modifier in ("equals", "includes"):
            return clause
        return f"({expr} IS NULL OR NOT ({clause}))"

    def _tree(self, params: _Params, tree: str, refs: list[Ref], depth: int) -> str:
        """Subquery of (id, instance_id) for the roots and their descendants."""
        max_depth = params.add(MAX_TREE_DEPTH if depth < 0 else depth)
        table = TABLES[tree]
        roots = self._ref_match(params, "r.id", "r.instance_id", refs)
        if tree == "tag":
            step = (
                "SELECT tp.child_id, tp.child_instance_id, t.depth + 1 FROM tag_parents tp "
                "JOIN t ON tp.parent_id = t.id AND tp.parent_instance_id = t.instance_id"
            )
        else:
            step = (
                f"SELECT c.id, c.instance_id, t.depth + 1 FROM {table} c "
                "JOIN t ON c.parent_id = t.id AND c.instance_id = t.instance_id"
            )
        # UNION drops repeated (node, depth) rows; the depth bound ends cycles
        return (
            "WITH RECURSIVE t(id, instance_id, depth) AS ("
            f"SELECT r.id, r.instance_id, 0 FROM {table} r WHERE {roots} "
            f"UNION {step} WHERE t.depth < {max_depth}) "
            "SELECT DISTINCT id, instance_id FROM t"
        )

    def _hierarchy(self, cfg: EntityConfig, params: _Params, c: HierarchyCriterion) -> str:
        field = self._field(cfg.hierarchy_fields, cfg, c.field, "hierarchy")
        if not c.values:
            raise QueryError(f"'{c.modifier}' on {c.field} needs at least one value")
        relation = cfg.id_fields[field.relation]
        tree_sql = self._tree(params, field.tree, [parse_ref(v) for v in c.values], c.depth)
        clause = self._related(relation, lambda i, n: f"({i}, {n}) IN ({tree_sql})")
        return clause if c.modifier == "includes" else f"NOT {clause}"

    def _search(self, cfg: EntityConfig, params: _Params, search: str) -> Optional[str]:
        if cfg.fts_table:
            match = fts_query(search)
            if match is None:
                return None
            return (
                f"e.rowid IN (SELECT rowid FROM {cfg.fts_table} "
                f"WHERE {cfg.fts_table} MATCH {params.add(match)})"
            )
        label = LABELS[cfg.entity_type]
        return f"LOWER(e.{label}) LIKE {params.add(_like_pattern(search.strip()))} ESCAPE '\\'"

    # --- hydration ---

    def _hydrate(self, conn: sqlite3.Connection, cfg: EntityConfig, rows: list[dict]) -> None:
        """Decode stored columns and attach related entities, in place."""
        if not rows:
            return
        for row in rows:
            for column in JSON_COLUMNS.intersection(row):
                row[column] = json.loads(row[column]) if row[column] else []
            for column in BOOL_OUTPUTS:
                if column in row:
                    row[column] = bool(row[column])

        keys = [(row["id"], row["instance_id"]) for row in rows]
        for lk in cfg.links:
            related = self._load_links(conn, lk, keys)
            for row in rows:
                row[lk.relation] = related.get((row["id"], row["instance_id"]), [])

        for name, (column, target) in cfg.single_relations.items():
            refs = {(row[column], row["instance_id"]) for row in rows if row.get(column)}
            found = self._load_refs(conn, target, refs)
            for row in rows:
                row[name] = found.get((row.get(column), row["instance_id"]))

        if cfg.entity_type == "scene":
            refs = {
                (tag_id, row["instance_id"]) for row in rows for tag_id in row["inherited_tag_ids"]
            }
            found = self._load_refs(conn, "tag", refs)
            for row in rows:
                row["inherited_tags"] = [
                    found[(tag_id, row["instance_id"])]
                    for tag_id in row["inherited_tag_ids"]
                    if (tag_id, row["instance_id"]) in found
                ]

    def _load_links(self, conn: sqlite3.Connection, lk, keys: list[tuple[str, str]]) -> dict:
        label = LABELS[lk.target]
        extra = ""
        if lk.table == "scene_groups":
            extra = ", j.scene_index"
        elif lk.table in ("image_performers", "image_tags"):
            extra = ", j.inherited"
        related: dict[tuple[str, str], list[dict]] = {}
        for chunk in chunked(keys, _HYDRATE_CHUNK):
            values = ", ".join(["(?, ?)"] * len(chunk))
            cur = conn.execute(
                f"SELECT j.{lk.owner_col} AS owner_id, j.{lk.owner_instance_col} AS owner_instance, "
                f"t.id, t.instance_id, t.{label} AS {label}{extra} "
                f"FROM {lk.table} j JOIN {TABLES[lk.target]} t "
                f"ON t.id = j.{lk.target_col} AND t.instance_id = j.{lk.target_instance_col} "
                "AND t.deleted_at IS NULL "
                f"WHERE (j.{lk.owner_col}, j.{lk.owner_instance_col}) IN (VALUES {values}) "
                f"ORDER BY t.{label}, t.id",
                [v for key in chunk for v in key],
            )
            for row in cur.fetchall():
                item = dict(row)
                owner = (item.pop("owner_id"), item.pop("owner_instance"))
                if "inherited" in item:
                    item["inherited"] = bool(item["inherited"])
                related.setdefault(owner, []).append(item)
        return related

    def _load_refs(self, conn: sqlite3.Connection, entity_type: str, refs: set) -> dict:
        label = LABELS[entity_type]
        found: dict[tuple[str, str], dict] = {}
        for chunk in chunked(sorted(refs), _HYDRATE_CHUNK):
            values = ", ".join(["(?, ?)"] * len(chunk))
            cur = conn.execute(
                f"SELECT id, instance_id, {label} FROM {TABLES[entity_type]} "
                f"WHERE deleted_at IS NULL AND (id, instance_id) IN (VALUES {values})",
                [v for key in chunk for v in key],
            )
            for row in cur.fetchall():
                found[(row["id"], row["instance_id"])] = dict(row)
        return found
