"""
Discover how the external employee stores lay out the entities we read.

The master employee store and the card store belong to other teams, and their table and
column names differ between environments. Every lookup first inspects the catalog, then
builds its query from the discovered names. Results are never cached: a single request
performs one discovery per entity.

Functions taking a `Connection` are synchronous and should be called through
`AsyncConnection.run_sync`.
"""

import logging
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.engine import Connection
from sqlalchemy.sql.expression import ColumnElement, TableClause

from gymbooking.core.utils.config import Settings
from gymbooking.modules.directory.types_directory import (
    DIRECTORY_ENTITIES,
    AliasColumnAdapter,
    ColumnAdapter,
    LogicalEntity,
    LogicalField,
    MappedColumnAdapter,
    ResolvedTable,
)
from gymbooking.types.exceptions import SchemaResolutionError
from gymbooking.types.identifiers import SafeIdentifier, is_safe_identifier

gymbooking_error_logger = logging.getLogger("gymbooking.error")

# Catalog schemas never containing business tables
SYSTEM_SCHEMAS = {"information_schema", "sys", "pg_catalog", "pg_toast"}


def order_schemas(
    schemas: Sequence[str],
    canonical_schema: str,
    default_schema: str | None,
) -> list[str]:
    """
    Order schemas by preference: the canonical schema, then the connection default schema,
    then every other schema alphabetically. Names are compared case-insensitively.
    """

    def rank(schema: str) -> tuple[int, str]:
        if schema.lower() == canonical_schema.lower():
            return (0, "")
        if default_schema is not None and schema.lower() == default_schema.lower():
            return (1, "")
        return (2, schema.lower())

    return sorted(schemas, key=rank)


def resolve_table(
    connection: Connection,
    entity: LogicalEntity,
    canonical_schema: str,
) -> ResolvedTable:
    """
    Find the base table backing `entity`.

    Among the schemas containing one of the entity table candidates, the preferred one is chosen
    (see `order_schemas`). Inside a schema, candidates are tried by priority.
    Views are not considered.

    Raise `SchemaResolutionError` if no candidate exists.
    """
    canonical_schema = SafeIdentifier(canonical_schema)
    inspector = sa.inspect(connection)

    schemas = [
        schema
        for schema in inspector.get_schema_names()
        if schema.lower() not in SYSTEM_SCHEMAS and is_safe_identifier(schema)
    ]

    for schema in order_schemas(
        schemas,
        canonical_schema=canonical_schema,
        default_schema=inspector.default_schema_name,
    ):
        tables_by_lower_name = {
            table_name.lower(): table_name
            for table_name in inspector.get_table_names(schema=schema)
        }
        for candidate in entity.table_candidates:
            table_name = tables_by_lower_name.get(candidate.lower())
            if table_name is None:
                continue
            columns = [
                column["name"]
                for column in inspector.get_columns(table_name, schema=schema)
            ]
            return ResolvedTable(
                schema_name=schema,
                table_name=SafeIdentifier(table_name),
                columns=columns,
            )

    raise SchemaResolutionError(entity.name)


def resolve_column(
    columns: Sequence[str],
    field: LogicalField,
    adapter: ColumnAdapter | None = None,
) -> str | None:
    return (adapter or AliasColumnAdapter()).resolve(columns, field)


def resolve_columns(
    resolved_table: ResolvedTable,
    entity: LogicalEntity,
    adapter: ColumnAdapter | None = None,
) -> dict[str, str | None]:
    """
    Map every field of `entity` to a physical column of `resolved_table`.

    Optional fields without a column are mapped to None.
    Raise `SchemaResolutionError` listing the mandatory fields without a column.
    """
    adapter = adapter or AliasColumnAdapter()
    columns = {
        field.name: adapter.resolve(resolved_table.columns, field)
        for field in entity.fields
    }
    missing_fields = [
        field.display_name
        for field in entity.fields
        if field.mandatory and columns[field.name] is None
    ]
    if missing_fields:
        raise SchemaResolutionError(entity.name, missing_fields=missing_fields)
    return columns


def build_column_adapter(settings: Settings, entity_name: str) -> ColumnAdapter:
    """
    Return the adapter to use for `entity_name`: the mapping configured in
    `DIRECTORY_COLUMN_OVERRIDES` if there is one, aliases otherwise.
    """
    overrides = settings.DIRECTORY_COLUMN_OVERRIDES.get(entity_name)
    if not overrides:
        return AliasColumnAdapter()

    entity = DIRECTORY_ENTITIES.get(entity_name)
    if entity is not None:
        known_fields = {field.name for field in entity.fields}
        for field_name in overrides:
            if field_name not in known_fields:
                gymbooking_error_logger.warning(
                    f"DIRECTORY_COLUMN_OVERRIDES: {entity_name} has no field {field_name}, it will be ignored",
                )
    return MappedColumnAdapter(overrides)


def physical_table(
    resolved_table: ResolvedTable,
    columns: dict[str, str | None],
) -> TableClause:
    """
    Build a lightweight table construct over the resolved columns.

    Column names are quoted by SQLAlchemy, they may contain spaces.
    """
    return sa.table(
        resolved_table.table_name,
        *[sa.column(name) for name in dict.fromkeys(columns.values()) if name],
        schema=resolved_table.schema_name,
    )


def field_expression(
    table: TableClause,
    columns: dict[str, str | None],
    field: LogicalField,
) -> ColumnElement:
    """
    Select `field` under its logical name, as a typed NULL if the table has no column for it.
    """
    physical_name = columns[field.name]
    if physical_name is None:
        return sa.cast(sa.null(), sa.String(field.null_length)).label(field.name)
    return table.c[physical_name].label(field.name)
