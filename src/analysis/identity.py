"""Bridging between user-id and anonymous-id spaces.

Tables track people by either a logged-in user id or an anonymous visitor
id. When a query asks for one space but the table records the other, the
identifies table maps between them. The identifies table is always aliased
`i`; downstream fragments rely on that.
"""

from dataclasses import dataclass

from src.analysis.schemas import IdType
from src.warehouse.dialects import Dialect
from src.warehouse.settings import SourceSettings

IDENTIFIES_ALIAS = "i"


@dataclass(frozen=True)
class IdentityJoin:
    """Column to select as the identifier, plus the JOIN needed to reach it."""

    column: str
    join: str = ""


def identifies_join(
    native_column: str,
    native: IdType,
    settings: SourceSettings,
    dialect: Dialect,
) -> str:
    """JOIN clause matching `native_column` against the identifies table."""
    bridge_column = settings.id_column(IdType(native).value, "identifies")
    table = dialect.full_table_name(settings.identifies.table)
    return (
        f"JOIN {table} {IDENTIFIES_ALIAS} ON (\n"
        f"  {IDENTIFIES_ALIAS}.{bridge_column} = {native_column}\n"
        f")"
    )


def reconcile(
    requested: IdType,
    native: IdType,
    alias: str,
    native_column: str,
    requested_column: str,
    settings: SourceSettings,
    dialect: Dialect,
) -> IdentityJoin:
    """Resolve the identifier column for a table aliased `alias`.

    `native_column` is the table's column in its own id space and
    `requested_column` the one it would use for the requested space.
    """
    requested = IdType(requested)
    native = IdType(native)
    if requested == native:
        return IdentityJoin(column=f"{alias}.{requested_column}")

    column = settings.id_column(requested.value, "identifies")
    return IdentityJoin(
        column=f"{IDENTIFIES_ALIAS}.{column}",
        join=identifies_join(f"{alias}.{native_column}", native, settings, dialect),
    )
