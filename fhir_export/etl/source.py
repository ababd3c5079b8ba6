from __future__ import annotations

import re
from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from fhir_export.core.errors import ConfigurationError, MissingEntityIdError, UnknownChangeTypeError
from fhir_export.core.logging import log
from fhir_export.scheduling.interval import TimeInterval


class ChangeKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


CHANGE_KIND_MARKERS = {"I": ChangeKind.CREATED, "U": ChangeKind.UPDATED, "D": ChangeKind.DELETED}


@dataclass(frozen=True)
class ChangeRow:
    entity_id: str
    parent_id: str | None
    link_id: str | None
    change_kind: ChangeKind


def _text_or_none(value) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def decode_row(raw: Mapping) -> ChangeRow:
    entity_id = _text_or_none(raw.get("entity_id"))
    if entity_id is None:
        raise MissingEntityIdError(f"Change row has no entity id [row={dict(raw)}]")
    marker = _text_or_none(raw.get("change_kind"))
    kind = CHANGE_KIND_MARKERS.get(marker)
    if kind is None:
        raise UnknownChangeTypeError(marker, tuple(CHANGE_KIND_MARKERS))
    return ChangeRow(
        entity_id=entity_id,
        parent_id=_text_or_none(raw.get("parent_id")),
        link_id=_text_or_none(raw.get("link_id")),
        change_kind=kind,
    )


_PARAM_RE = {name: re.compile(rf"(?<![:\w]):{name}\b") for name in ("start", "end")}


def load_query_template(path: str | Path) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Failed to read source query @ {path}: {exc}") from exc


class IntervalQuerySource:
    """Runs the change query for one interval and returns its raw rows."""

    def __init__(self, engine: Engine, query_template: str):
        missing = [name for name, pattern in _PARAM_RE.items() if not pattern.search(query_template)]
        if missing:
            raise ConfigurationError(f"Source query is missing bind parameters {[':' + name for name in missing]}")
        self.engine = engine
        self.statement = text(query_template).bindparams(
            bindparam("start", type_=DateTime()),
            bindparam("end", type_=DateTime()),
        )

    def fetch(self, interval: TimeInterval) -> list[dict]:
        log.info("source_query_started", start=interval.start.isoformat(), end=interval.end.isoformat())
        try:
            with self.engine.connect() as conn:
                rows = [dict(row) for row in conn.execute(self.statement, {"start": interval.start, "end": interval.end}).mappings()]
        except SQLAlchemyError as exc:
            log.error("source_query_failed", error=str(exc))
            raise
        stats = Counter(str(row.get("change_kind")) for row in rows)
        log.info("source_query_completed", rows=len(rows), change_kinds=dict(stats))
        return rows
