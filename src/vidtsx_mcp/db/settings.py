from __future__ import annotations

import json
from dataclasses import asdict
from typing import Any

from vidtsx_mcp.db.database import Database
from vidtsx_mcp.services.models import MODEL_CATALOG
from vidtsx_mcp.types import TranscriberSettings

TRANSCRIBER_KEY = "transcriber"
METHODS = ("local",)


class SettingsRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    def get(self, key: str) -> Any | None:
        row = self.db.conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return json.loads(row["value"]) if row is not None else None

    def set(self, key: str, value: Any) -> None:
        with self.db.lock:
            self.db.conn.execute(
                """
                INSERT INTO settings(key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = datetime('now')
                """,
                (key, json.dumps(value, sort_keys=True)),
            )
            self.db.conn.commit()

    def get_transcriber_settings(self) -> TranscriberSettings:
        defaults = TranscriberSettings()
        stored = self.get(TRANSCRIBER_KEY)
        if not isinstance(stored, dict):
            return defaults
        return TranscriberSettings(
            method=stored.get("method") or defaults.method,
            selected_model=stored.get("selected_model") or defaults.selected_model,
        )

    def save_transcriber_settings(
        self,
        *,
        method: str | None = None,
        selected_model: str | None = None,
    ) -> TranscriberSettings:
        current = self.get_transcriber_settings()
        if method is not None:
            if method not in METHODS:
                raise ValueError(f"Unsupported transcription method: {method}")
            current.method = method  # type: ignore[assignment]
        if selected_model is not None:
            if selected_model not in MODEL_CATALOG:
                raise ValueError(f"Unknown model: {selected_model}")
            current.selected_model = selected_model
        self.set(TRANSCRIBER_KEY, asdict(current))
        return current
