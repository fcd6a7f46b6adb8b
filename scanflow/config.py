from __future__ import annotations

from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .orchestrator import ConfigurationError, SpreadsheetTarget


class Settings(BaseSettings):
    """Runtime settings, read from SCANFLOW_* environment variables and .env."""

    model_config = SettingsConfigDict(
        env_prefix="SCANFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    extraction_model: str = "openai:gpt-4o"
    detection_model: Optional[str] = None
    render_dpi: int = 150

    firestore_project: Optional[str] = None
    firestore_database: str = "(default)"
    firestore_collection: str = "extractions"
    firestore_access_token: Optional[str] = None

    sheets_spreadsheet_id: Optional[str] = None
    sheets_access_token: Optional[str] = None
    sheets_range: str = "A1"

    http_timeout: float = 30.0
    log_level: str = "INFO"

    @model_validator(mode="after")
    def validate_consistency(self) -> "Settings":
        if self.render_dpi <= 0:
            raise ConfigurationError("render_dpi must be positive")
        if self.http_timeout <= 0:
            raise ConfigurationError("http_timeout must be positive")
        if bool(self.sheets_spreadsheet_id) != bool(self.sheets_access_token):
            raise ConfigurationError("Spreadsheet sync needs both a spreadsheet id and an access token")
        return self

    @property
    def persistence_enabled(self) -> bool:
        return bool(self.firestore_project)

    @property
    def spreadsheet_target(self) -> Optional[SpreadsheetTarget]:
        if not (self.sheets_spreadsheet_id and self.sheets_access_token):
            return None
        return SpreadsheetTarget(self.sheets_spreadsheet_id, self.sheets_access_token)
