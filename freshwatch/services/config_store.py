"""Typed key/value store for freshness configuration"""

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any

import jsonschema
from pydantic import ValidationError

from freshwatch.models.freshness_settings import ConfigEntry, FreshnessSettings
from freshwatch.services.db_manager import Database, dump_json, load_json
from freshwatch.services.errors import ConfigValidationError
from freshwatch.utils.settings_loader import load_settings_overrides
from freshwatch.utils.timestamps import from_db_time, to_db_time, utcnow

logger = logging.getLogger(__name__)


def _config_type(value: Any) -> str:
    """Map a Python value onto the stored config_type label"""
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int | float):
        return "number"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, list):
        return "array"
    return "string"


class ConfigStore:
    """
    Freshness configuration persisted in the freshness_config table

    Loaded once at startup (seeding defaults for missing keys), served from an
    in-memory FreshnessSettings snapshot, and refreshed on demand with reload().
    """

    def __init__(self, database: Database, settings_path: str | Path | None = None):
        """
        Initialize configuration store

        Args:
            database: Initialized database
            settings_path: Optional YAML file whose values seed keys not stored yet
        """
        self.database = database
        self.settings_path = settings_path
        self._settings = FreshnessSettings()
        self._lock = threading.Lock()

    @property
    def settings(self) -> FreshnessSettings:
        """Current typed settings snapshot"""
        return self._settings

    def load(self) -> FreshnessSettings:
        """
        Seed defaults for missing keys and load all stored values

        Returns:
            FreshnessSettings: The loaded settings
        """
        overrides = load_settings_overrides(self.settings_path) if self.settings_path else {}
        seeded = FreshnessSettings.model_validate({**FreshnessSettings().model_dump(), **overrides})
        now = to_db_time(utcnow())

        with self.database.transaction() as conn:
            for key, field in FreshnessSettings.model_fields.items():
                value = getattr(seeded, key)
                extra = field.json_schema_extra if isinstance(field.json_schema_extra, dict) else {}
                conn.execute(
                    """
                    INSERT OR IGNORE INTO freshness_config (
                        config_key, config_value, config_type, description, category,
                        is_system, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, 1, ?, ?)
                    """,
                    (
                        key,
                        dump_json(value),
                        _config_type(value),
                        field.description,
                        extra.get("category", "general"),
                        now,
                        now,
                    ),
                )

        return self.reload()

    def reload(self) -> FreshnessSettings:
        """
        Re-read all stored values into a fresh settings snapshot

        Raises:
            ConfigValidationError: If stored values no longer validate
        """
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT config_key, config_value FROM freshness_config"
            ).fetchall()

        data = {
            row["config_key"]: load_json(row["config_value"])
            for row in rows
            if row["config_key"] in FreshnessSettings.model_fields
        }

        try:
            settings = FreshnessSettings.model_validate(data)
        except ValidationError as e:
            raise ConfigValidationError("freshness_config", str(e)) from e

        with self._lock:
            self._settings = settings

        logger.info(f"Loaded {len(data)} freshness configuration value(s)")
        return settings

    def get(self, key: str) -> Any:
        """Get the current value of one option"""
        if key not in FreshnessSettings.model_fields:
            raise ConfigValidationError(key, "unknown configuration key")
        return getattr(self._settings, key)

    def set(self, key: str, value: Any) -> FreshnessSettings:
        """
        Validate and persist a new value for one option

        Args:
            key: Option name
            value: New value

        Returns:
            FreshnessSettings: Updated settings snapshot

        Raises:
            ConfigValidationError: If the key is unknown or the value is rejected
        """
        if key not in FreshnessSettings.model_fields:
            raise ConfigValidationError(key, "unknown configuration key")

        try:
            candidate = FreshnessSettings.model_validate(
                {**self._settings.model_dump(), key: value}
            )
        except ValidationError as e:
            raise ConfigValidationError(key, str(e)) from e

        validated = getattr(candidate, key)

        with self.database.transaction() as conn:
            schema = self._load_schema(conn, key)
            if schema is not None:
                try:
                    jsonschema.validate(validated, schema)
                except jsonschema.ValidationError as e:
                    raise ConfigValidationError(key, e.message) from e

            now = to_db_time(utcnow())
            field = FreshnessSettings.model_fields[key]
            extra = field.json_schema_extra if isinstance(field.json_schema_extra, dict) else {}
            conn.execute(
                """
                INSERT INTO freshness_config (
                    config_key, config_value, config_type, description, category,
                    is_system, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT(config_key) DO UPDATE SET
                    config_value = excluded.config_value,
                    config_type = excluded.config_type,
                    updated_at = excluded.updated_at
                """,
                (
                    key,
                    dump_json(validated),
                    _config_type(validated),
                    field.description,
                    extra.get("category", "general"),
                    now,
                    now,
                ),
            )

        with self._lock:
            self._settings = candidate

        logger.info(f"Configuration updated: {key}={validated!r}")
        return candidate

    def set_schema(self, key: str, schema: dict[str, Any] | None) -> None:
        """
        Attach (or remove) a JSON schema that future values of a key must satisfy

        Raises:
            ConfigValidationError: If the schema is invalid or the current value violates it
        """
        if key not in FreshnessSettings.model_fields:
            raise ConfigValidationError(key, "unknown configuration key")

        if schema is not None:
            try:
                jsonschema.Draft202012Validator.check_schema(schema)
                jsonschema.validate(self.get(key), schema)
            except jsonschema.SchemaError as e:
                raise ConfigValidationError(key, f"invalid schema: {e.message}") from e
            except jsonschema.ValidationError as e:
                raise ConfigValidationError(key, f"current value violates schema: {e.message}") from e

        with self.database.transaction() as conn:
            conn.execute(
                "UPDATE freshness_config SET validation_schema = ?, updated_at = ? "
                "WHERE config_key = ?",
                (dump_json(schema), to_db_time(utcnow()), key),
            )

    def entries(self) -> list[ConfigEntry]:
        """List all stored configuration rows"""
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM freshness_config ORDER BY category, config_key"
            ).fetchall()

        return [
            ConfigEntry(
                config_key=row["config_key"],
                config_value=load_json(row["config_value"]),
                config_type=row["config_type"],
                description=row["description"],
                category=row["category"],
                is_system=bool(row["is_system"]),
                validation_schema=load_json(row["validation_schema"]),
                updated_at=from_db_time(row["updated_at"]),
            )
            for row in rows
        ]

    def _load_schema(self, conn: sqlite3.Connection, key: str) -> dict[str, Any] | None:
        row = conn.execute(
            "SELECT validation_schema FROM freshness_config WHERE config_key = ?", (key,)
        ).fetchone()
        if row is None:
            return None
        return load_json(row["validation_schema"])
