"""Whole-store JSON export, import and reset.

Import and reset are destructive: every table is emptied first. They run at
the Core level, so the append-only guards on the ORM classes do not apply.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Table, delete, insert, select

from .clock import ensure_utc
from .domain import SYSTEM_SERVICE_ID, AuditEventType, Role
from .errors import ValidationFailed
from .models import Base
from .unit_of_work import UnitOfWork

_LOGGER = logging.getLogger(__name__)

FORMAT_VERSION = 1


def _tables() -> list[Table]:
    return list(Base.metadata.sorted_tables)


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    return value


def _decode_row(table: Table, row: dict[str, Any]) -> dict[str, Any]:
    unknown = set(row) - set(table.columns.keys())
    if unknown:
        raise ValidationFailed(f"Unknown columns for {table.name}: {', '.join(sorted(unknown))}.")
    decoded = {}
    for key, value in row.items():
        column = table.columns[key]
        if value is not None and isinstance(column.type, DateTime):
            try:
                value = ensure_utc(datetime.fromisoformat(value))
            except (TypeError, ValueError):
                raise ValidationFailed(f"Bad timestamp in {table.name}.{key}: {value!r}.") from None
        decoded[key] = value
    return decoded


def _self_references(table: Table) -> list[str]:
    return [fk.parent.name for fk in table.foreign_keys if fk.column.table is table]


def _parents_first(table: Table, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Order rows so a self-referenced row is inserted before its referrers."""

    columns = _self_references(table)
    if not columns:
        return rows
    by_id = {row["id"]: row for row in rows}
    ordered: list[dict[str, Any]] = []
    placed: set[Any] = set()

    def place(row: dict[str, Any], trail: set[Any]) -> None:
        key = row["id"]
        if key in placed:
            return
        if key in trail:
            raise ValidationFailed(f"Circular references in {table.name}.")
        trail.add(key)
        for column in columns:
            target = row.get(column)
            if target is not None and target != key and target in by_id:
                place(by_id[target], trail)
        placed.add(key)
        ordered.append(row)

    for row in rows:
        place(row, set())
    return ordered


async def _clear(uow: UnitOfWork) -> None:
    for table in reversed(_tables()):
        await uow.session.execute(delete(table))


async def export_data(uow: UnitOfWork) -> dict[str, Any]:
    uow.actor.require(Role.SUPERVISOR)
    tables: dict[str, list[dict[str, Any]]] = {}
    for table in _tables():
        result = await uow.session.execute(select(table).order_by(*table.primary_key.columns))
        tables[table.name] = [
            {key: _encode(value) for key, value in row.items()} for row in result.mappings()
        ]
    payload = {"version": FORMAT_VERSION, "exportedAt": _encode(uow.now), "tables": tables}
    rows = sum(len(entries) for entries in tables.values())
    await uow.audit(AuditEventType.DATA_EXPORTED, "System", 0, {"tables": len(tables), "rows": rows})
    _LOGGER.info("Exported %d rows from %d tables", rows, len(tables))
    return payload


async def import_data(uow: UnitOfWork, payload: dict[str, Any]) -> dict[str, int]:
    """Replace the whole store with ``payload``; returns rows inserted per table."""

    uow.actor.require(Role.SUPERVISOR)
    if not isinstance(payload, dict) or not isinstance(payload.get("tables"), dict):
        raise ValidationFailed("Import payload must contain a 'tables' object.", field="tables")
    if payload.get("version", FORMAT_VERSION) != FORMAT_VERSION:
        raise ValidationFailed(f"Unsupported export version {payload.get('version')!r}.", field="version")
    by_name = {table.name: table for table in _tables()}
    unknown = set(payload["tables"]) - set(by_name)
    if unknown:
        raise ValidationFailed(f"Unknown tables: {', '.join(sorted(unknown))}.", field="tables")

    decoded = {
        name: [_decode_row(by_name[name], row) for row in rows]
        for name, rows in payload["tables"].items()
    }
    await _clear(uow)
    counts: dict[str, int] = {}
    for table in _tables():
        rows = _parents_first(table, decoded.get(table.name, []))
        if rows:
            await uow.session.execute(insert(table), rows)
        counts[table.name] = len(rows)

    await uow.audit(
        AuditEventType.DATA_IMPORTED,
        "System",
        0,
        {"tables": len(decoded), "rows": sum(counts.values())},
    )
    _LOGGER.warning("Store replaced by import (%d rows)", sum(counts.values()))
    return counts


async def reset_data(uow: UnitOfWork) -> None:
    uow.actor.require(Role.SYSTEM_ADMIN)
    await _clear(uow)
    await uow.audit(AuditEventType.DATA_RESET, "System", 0, "Store reset", service_id=SYSTEM_SERVICE_ID)
    _LOGGER.warning("Store reset by %s", uow.actor.log_label)
