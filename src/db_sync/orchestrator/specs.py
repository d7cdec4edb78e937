"""Parser for database and table unit specifications.

Table entries::

    source:dest:table1,table2     explicit destination
    source:table1,table2          destination derived from source by prefix rule
    source:dest:*                 every table discovered in source

Database entries are a bare ``source`` name.
"""

from __future__ import annotations

from collections.abc import Callable

from db_sync.orchestrator.errors import ResolutionError
from db_sync.orchestrator.models import UnitSpec

WILDCARD = "*"

NamingRule = Callable[[str], str]


def parse_table_spec(raw: str, *, naming_rule: NamingRule) -> UnitSpec:
    """Parse one table-scoped entry or raise ``ResolutionError``."""

    text = raw.strip()
    fields = [part.strip() for part in text.split(":")]
    if len(fields) == 3:  # noqa: PLR2004
        source, destination, table_spec = fields
    elif len(fields) == 2:  # noqa: PLR2004
        source, table_spec = fields
        destination = naming_rule(source) if source else ""
    else:
        raise ResolutionError(
            f"Invalid unit specification {raw!r}: expected "
            "'source:dest:tables' or 'source:tables'.",
            spec=raw,
        )

    if not source:
        raise ResolutionError(f"Invalid unit specification {raw!r}: empty source.", spec=raw)
    if not destination:
        raise ResolutionError(
            f"Invalid unit specification {raw!r}: empty destination.",
            spec=raw,
        )

    if table_spec == WILDCARD:
        return UnitSpec(raw=raw, source=source, destination=destination, wildcard=True)

    tables = _split_tables(table_spec)
    if WILDCARD in tables:
        raise ResolutionError(
            f"Invalid unit specification {raw!r}: '*' cannot be mixed with table names.",
            spec=raw,
        )
    if not tables:
        raise ResolutionError(f"Invalid unit specification {raw!r}: no tables listed.", spec=raw)
    return UnitSpec(raw=raw, source=source, destination=destination, tables=tables)


def parse_database_spec(raw: str, *, naming_rule: NamingRule) -> UnitSpec:
    """Parse one whole-database entry or raise ``ResolutionError``."""

    source = raw.strip()
    if not source:
        raise ResolutionError("Invalid database entry: empty name.", spec=raw)
    if ":" in source or "," in source:
        raise ResolutionError(
            f"Invalid database entry {raw!r}: expected a bare database name.",
            spec=raw,
        )
    return UnitSpec(raw=raw, source=source, destination=naming_rule(source))


def _split_tables(table_spec: str) -> tuple[str, ...]:
    seen: set[str] = set()
    tables: list[str] = []
    for part in table_spec.split(","):
        name = part.strip()
        if not name or name in seen:
            continue
        seen.add(name)
        tables.append(name)
    return tuple(tables)
