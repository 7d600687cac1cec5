from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "farms": {"id", "owner_user_id", "timezone_name"},
    "animals": {"id", "farm_id", "tag_number", "is_active"},
    "return_records": {"id", "farm_id", "animal_id", "local_day", "returned", "updated_at"},
    "notifications": {"id", "farm_id", "alert_type", "alert_day", "idempotency_key"},
    "farm_settings": {"id", "farm_id", "key", "value"},
    "alembic_version": {"version_num"},
}

# Upserts and alert dedupe resolve conflicts on these keys.
REQUIRED_UNIQUE_KEYS: dict[str, set[tuple[str, ...]]] = {
    "return_records": {("animal_id", "farm_id", "local_day")},
    "notifications": {("idempotency_key",)},
    "farm_settings": {("farm_id", "key")},
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "return_record_source": {"SCAN", "MANUAL", "CORRECTION"},
}


def _sorted_columns(names: Any) -> tuple[str, ...]:
    return tuple(sorted(str(name) for name in names or [] if name))


def _unique_keys(inspector: Any, table_name: str) -> set[tuple[str, ...]]:
    keys = {_sorted_columns(item.get("column_names")) for item in inspector.get_unique_constraints(table_name) or []}
    keys.update(
        _sorted_columns(item.get("column_names"))
        for item in inspector.get_indexes(table_name) or []
        if item.get("unique")
    )
    return keys


def _check_columns(inspector: Any, issues: list[str]) -> None:
    for table_name, required in REQUIRED_TABLE_COLUMNS.items():
        try:
            present = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        except Exception as exc:  # pragma: no cover - table missing or unreadable
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue
        missing = sorted(required - present)
        if missing:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing)}")


def _check_unique_keys(inspector: Any, issues: list[str], warnings: list[str]) -> None:
    for table_name, required in REQUIRED_UNIQUE_KEYS.items():
        try:
            present = _unique_keys(inspector, table_name)
        except Exception as exc:  # pragma: no cover - table missing or unreadable
            warnings.append(f"UNIQUE_INSPECTION_FAILED:{table_name}:{exc.__class__.__name__}")
            continue
        issues.extend(
            f"MISSING_UNIQUE_KEY:{table_name}:{','.join(key)}" for key in sorted(required - present)
        )


def _check_enums(inspector: Any, issues: list[str], warnings: list[str]) -> None:
    try:
        enums = inspector.get_enums() or []
    except Exception as exc:  # pragma: no cover - dialect without enum support
        warnings.append(f"ENUM_INSPECTION_FAILED:{exc.__class__.__name__}")
        return

    labels_by_name = {
        str(item.get("name")).strip(): {str(label) for label in item.get("labels") or []}
        for item in enums
        if str(item.get("name") or "").strip()
    }
    for enum_name, required in REQUIRED_ENUM_VALUES.items():
        if enum_name not in labels_by_name:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing = sorted(required - labels_by_name[enum_name])
        if missing:
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing)}")


def _check_alembic_version(engine: Engine, issues: list[str]) -> None:
    try:
        with engine.connect() as connection:
            row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
    except Exception as exc:  # pragma: no cover - database unreachable
        issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")
        return
    if not (str(row).strip() if row is not None else ""):
        issues.append("ALEMBIC_VERSION_EMPTY")


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    """Compare the live database with what the night-check code writes to."""
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)

    _check_columns(inspector, issues)
    _check_unique_keys(inspector, issues, warnings)
    _check_enums(inspector, issues, warnings)
    _check_alembic_version(engine, issues)

    return SchemaGuardResult(
        ok=not issues,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
