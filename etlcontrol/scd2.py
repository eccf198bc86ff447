from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime
import hashlib
import json
import logging
import re
import threading

from sqlalchemy import Connection, Engine, MetaData, Table, and_, insert, select, update
from sqlalchemy.exc import NoSuchTableError

from etlcontrol.config_store import ConfigSnapshot
from etlcontrol.db_models import utc_now
from etlcontrol.errors import ConfigurationError, MergeConflictError
from etlcontrol.registry import UnitRegistry
from etlcontrol.schemas import MergeResult, Scd2Definition, UnitInput, UnitResult


logger = logging.getLogger(__name__)

# Target housekeeping columns; the two timestamps are filled only when the target has them.
IS_CURRENT = "is_current"
EFFECTIVE_START = "effective_start_date"
EFFECTIVE_END = "effective_end_date"
CREATED_AT = "created_timestamp"
UPDATED_AT = "updated_timestamp"
HOUSEKEEPING_COLUMNS = frozenset({IS_CURRENT, EFFECTIVE_START, EFFECTIVE_END, CREATED_AT, UPDATED_AT})

GENERIC_LOAD_UNIT = "sp_load_scd_type2_generic"

_IDENTIFIER = re.compile(r"^[A-Za-z0-9_]+$")


def validate_definition(definition: Scd2Definition) -> None:
    if not definition.business_key_columns:
        raise ConfigurationError(f"'{definition.table_name}' needs at least one business key column")

    names = [definition.table_name, definition.staging_table, definition.hash_column]
    names.extend(definition.business_key_columns)
    names.extend(definition.exclude_from_insert)
    for optional in (definition.surrogate_key_column, definition.schema_name, definition.staging_schema):
        if optional is not None:
            names.append(optional)
    for name in names:
        if not isinstance(name, str) or not _IDENTIFIER.match(name):
            raise ConfigurationError(f"invalid identifier {name!r} in scd2 config for '{definition.table_name}'")

    if definition.surrogate_key_column in definition.business_key_columns:
        raise ConfigurationError(f"surrogate key of '{definition.table_name}' cannot be a business key")


def business_key(definition: Scd2Definition, row: Mapping[str, object]) -> tuple[object, ...]:
    missing = [column for column in definition.business_key_columns if row.get(column) is None]
    if missing:
        raise ConfigurationError(f"staging row for '{definition.table_name}' has no value for {', '.join(missing)}")
    return tuple(row[column] for column in definition.business_key_columns)


def _skipped_columns(definition: Scd2Definition) -> set[str]:
    skipped = set(HOUSEKEEPING_COLUMNS) | set(definition.exclude_from_insert) | {definition.hash_column}
    if definition.surrogate_key_column:
        skipped.add(definition.surrogate_key_column)
    return skipped


def tracked_columns(definition: Scd2Definition, row: Mapping[str, object]) -> list[str]:
    skipped = _skipped_columns(definition) | set(definition.business_key_columns)
    return sorted(column for column in row if column not in skipped)


def compute_row_hash(definition: Scd2Definition, row: Mapping[str, object]) -> str:
    # Column names are part of the payload and NULL stays distinct from an empty string.
    payload = json.dumps([[column, row[column]] for column in tracked_columns(definition, row)], default=str)
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def deduplicate(definition: Scd2Definition, rows: Iterable[Mapping[str, object]]) -> dict[tuple[object, ...], Mapping[str, object]]:
    # Last row seen for a key wins; key order follows first arrival.
    latest: dict[tuple[object, ...], Mapping[str, object]] = {}
    for row in rows:
        latest[business_key(definition, row)] = row
    return latest


class TableLocks:
    """Process-wide single-writer guard per target table."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: set[str] = set()

    @contextmanager
    def hold(self, table_name: str) -> Iterator[None]:
        with self._guard:
            if table_name in self._held:
                raise MergeConflictError(table_name, "another merge into this table is in progress")
            self._held.add(table_name)
        try:
            yield
        finally:
            with self._guard:
                self._held.discard(table_name)

    def is_held(self, table_name: str) -> bool:
        with self._guard:
            return table_name in self._held


class Scd2MergeEngine:
    def __init__(
        self,
        engine: Engine,
        *,
        locks: TableLocks | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.locks = locks or TableLocks()
        self.clock = clock
        self._tables: dict[tuple[str | None, str], Table] = {}
        self._tables_lock = threading.Lock()

    def merge(self, definition: Scd2Definition, staging_rows: Iterable[Mapping[str, object]]) -> MergeResult:
        validate_definition(definition)
        if not (definition.active and definition.enabled):
            raise ConfigurationError(f"scd2 config for '{definition.table_name}' is not active")

        rows = deduplicate(definition, staging_rows)
        target = self._reflect(definition.schema_name, definition.table_name)
        self._check_target_columns(definition, target, rows.values())

        counts = {"inserted": 0, "updated": 0, "unchanged": 0}
        qualified = f"{definition.schema_name}.{definition.table_name}" if definition.schema_name else definition.table_name
        with self.locks.hold(qualified):
            for key, row in rows.items():
                # One transaction per business key keeps expire+insert atomic.
                with self.engine.begin() as conn:
                    outcome = self._merge_key(conn, target, definition, key, row)
                counts[outcome] += 1

        result = MergeResult(**counts)
        logger.info(
            "scd2 merge finished",
            extra={
                "table": definition.table_name,
                "inserted": result.inserted,
                "updated": result.updated,
                "unchanged": result.unchanged,
            },
        )
        return result

    def read_staging(self, definition: Scd2Definition, batch_id: str | None = None) -> list[dict[str, object]]:
        validate_definition(definition)
        staging = self._reflect(definition.staging_schema, definition.staging_table)
        stmt = select(staging)
        if batch_id is not None and "batch_id" in staging.c:
            stmt = stmt.where(staging.c.batch_id == batch_id)
        with self.engine.connect() as conn:
            return [dict(row._mapping) for row in conn.execute(stmt)]

    def _merge_key(
        self,
        conn: Connection,
        target: Table,
        definition: Scd2Definition,
        key: tuple[object, ...],
        row: Mapping[str, object],
    ) -> str:
        key_match = and_(*(target.c[column] == value for column, value in zip(definition.business_key_columns, key)))
        stmt = select(target).where(key_match, target.c[IS_CURRENT].is_(True)).with_for_update()
        current_rows = conn.execute(stmt).mappings().all()
        if len(current_rows) > 1:
            raise MergeConflictError(definition.table_name, f"{len(current_rows)} current rows for key {key!r}")

        row_hash = compute_row_hash(definition, row)
        now = self.clock()

        if current_rows:
            current = current_rows[0]
            if current[definition.hash_column] == row_hash:
                return "unchanged"

            expire_values: dict[str, object] = {IS_CURRENT: False, EFFECTIVE_END: now}
            if UPDATED_AT in target.c:
                expire_values[UPDATED_AT] = now
            expired = conn.execute(
                update(target)
                .where(key_match, target.c[IS_CURRENT].is_(True), target.c[definition.hash_column] == current[definition.hash_column])
                .values(**expire_values)
            )
            if expired.rowcount != 1:
                raise MergeConflictError(definition.table_name, f"current row for key {key!r} changed during merge")

        conn.execute(insert(target).values(**self._insert_values(definition, target, row, row_hash, now)))
        return "updated" if current_rows else "inserted"

    def _insert_values(
        self,
        definition: Scd2Definition,
        target: Table,
        row: Mapping[str, object],
        row_hash: str,
        now: datetime,
    ) -> dict[str, object]:
        skipped = _skipped_columns(definition)
        values = {column: value for column, value in row.items() if column not in skipped}
        values[definition.hash_column] = row_hash
        values[IS_CURRENT] = True
        values[EFFECTIVE_START] = now
        values[EFFECTIVE_END] = None
        for column in (CREATED_AT, UPDATED_AT):
            if column in target.c:
                values[column] = now
        return values

    def _check_target_columns(
        self,
        definition: Scd2Definition,
        target: Table,
        rows: Iterable[Mapping[str, object]],
    ) -> None:
        required = {definition.hash_column, IS_CURRENT, EFFECTIVE_START, EFFECTIVE_END, *definition.business_key_columns}
        missing = sorted(column for column in required if column not in target.c)
        if missing:
            raise ConfigurationError(f"target '{definition.table_name}' lacks columns: {', '.join(missing)}")

        skipped = _skipped_columns(definition)
        unknown = sorted({column for row in rows for column in row if column not in skipped and column not in target.c})
        if unknown:
            raise ConfigurationError(
                f"staging columns not present in '{definition.table_name}' and not excluded: {', '.join(unknown)}"
            )

    def _reflect(self, schema: str | None, name: str) -> Table:
        with self._tables_lock:
            table = self._tables.get((schema, name))
            if table is None:
                try:
                    table = Table(name, MetaData(), schema=schema, autoload_with=self.engine)
                except NoSuchTableError as exc:
                    raise ConfigurationError(f"table '{name}' does not exist") from exc
                self._tables[(schema, name)] = table
            return table


class Scd2LoadUnit:
    """Load unit that merges transform output, or the staging table, into an SCD2 target."""

    def __init__(self, merge_engine: Scd2MergeEngine, definitions: Mapping[str, Scd2Definition]) -> None:
        self.merge_engine = merge_engine
        self.definitions = definitions

    def execute(self, unit_input: UnitInput) -> UnitResult:
        table_name = unit_input.pipeline.target_table
        definition = self.definitions.get(table_name)
        if definition is None:
            raise ConfigurationError(f"no active scd2 config for target table '{table_name}'")

        rows = unit_input.records
        if rows is None:
            rows = self.merge_engine.read_staging(definition, unit_input.batch_id)

        result = self.merge_engine.merge(definition, rows)
        return UnitResult(rows_read=len(rows), rows_loaded=result.rows_loaded)


def register_scd2_loaders(registry: UnitRegistry, merge_engine: Scd2MergeEngine, snapshot: ConfigSnapshot) -> None:
    """Register the generic loader and alias it for SCD2-backed pipelines without their own load unit."""
    loader = Scd2LoadUnit(merge_engine, snapshot.scd2_definitions)
    if GENERIC_LOAD_UNIT not in registry:
        registry.register(GENERIC_LOAD_UNIT, loader)
    for pipeline in snapshot.pipelines:
        if pipeline.target_table in snapshot.scd2_definitions and pipeline.load_unit not in registry:
            registry.register(pipeline.load_unit, loader)
