"""
Settings repository - string key/value pairs for delivery configuration.
"""

from typing import Dict, Mapping, Optional

from ..models import log, utcnow_iso
from ..errors import ValidationError
from .connection import Database

RECOGNIZED_KEYS = (
    "KINDLE_EMAIL",
    "SMTP_HOST",
    "SMTP_PORT",
    "SMTP_SECURE",
    "SMTP_USER",
    "SMTP_PASSWORD",
    "FROM_EMAIL",
)
REQUIRED_SMTP_KEYS = ("KINDLE_EMAIL", "SMTP_HOST", "SMTP_USER", "SMTP_PASSWORD")
SECRET_KEYS = ("SMTP_PASSWORD",)
MASK = "********"


class SettingsRepository:
    """Repository for delivery settings. Values are always strings."""

    def __init__(self, db: Database):
        self._db = db

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._db.conn() as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else default

    def set(self, key: str, value):
        if key not in RECOGNIZED_KEYS:
            raise ValidationError(f"Unknown setting: {key}")
        if value is None:
            raise ValidationError(f"Setting {key} needs a value")
        if isinstance(value, bool):
            value = "true" if value else "false"
        with self._db.conn() as conn:
            conn.execute(
                """INSERT INTO settings (key, value, updated_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                   value = excluded.value, updated_at = excluded.updated_at""",
                (key, str(value), utcnow_iso())
            )

    def delete(self, key: str) -> bool:
        with self._db.conn() as conn:
            cursor = conn.execute("DELETE FROM settings WHERE key = ?", (key,))
        return cursor.rowcount > 0

    def list_all(self, mask: bool = True) -> Dict[str, str]:
        with self._db.conn() as conn:
            rows = conn.execute("SELECT key, value FROM settings ORDER BY key").fetchall()
        settings = {row["key"]: row["value"] for row in rows}
        if mask:
            for key in SECRET_KEYS:
                if settings.get(key):
                    settings[key] = MASK
        return settings

    def smtp_settings(self) -> Dict[str, Optional[str]]:
        stored = self.list_all(mask=False)
        return {
            "KINDLE_EMAIL": stored.get("KINDLE_EMAIL"),
            "SMTP_HOST": stored.get("SMTP_HOST"),
            "SMTP_PORT": stored.get("SMTP_PORT") or "587",
            "SMTP_SECURE": stored.get("SMTP_SECURE") or "false",
            "SMTP_USER": stored.get("SMTP_USER"),
            "SMTP_PASSWORD": stored.get("SMTP_PASSWORD"),
            "FROM_EMAIL": stored.get("FROM_EMAIL") or stored.get("SMTP_USER"),
        }

    def set_smtp_settings(self, values: Mapping[str, object]):
        missing = [k for k in REQUIRED_SMTP_KEYS if not values.get(k)]
        if missing:
            raise ValidationError(f"Missing required settings: {', '.join(missing)}")
        for key in RECOGNIZED_KEYS:
            if values.get(key) is not None:
                self.set(key, values[key])
        log.info("SMTP settings updated")

    def is_smtp_configured(self) -> bool:
        settings = self.smtp_settings()
        return all(settings.get(k) for k in REQUIRED_SMTP_KEYS)
