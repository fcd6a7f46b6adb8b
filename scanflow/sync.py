"""
Downstream sync targets for completed extractions.

FirestoreStore writes one document per file into a Firestore collection over
the REST API; GoogleSheetsAppender appends one row per file to a spreadsheet.
Credentials are supplied by the caller; acquiring them is out of scope here.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

import httpx

from .schema import Region

logger = logging.getLogger(__name__)

FIRESTORE_URL = "https://firestore.googleapis.com/v1"
SHEETS_URL = "https://sheets.googleapis.com/v4/spreadsheets"


class SyncError(RuntimeError):
    """A sync target could not be reached or was misconfigured."""


def firestore_document(
    batch_id: str,
    file_name: str,
    data: dict[str, str],
    regions: Sequence[Region],
    *,
    extracted_at: Optional[datetime] = None,
) -> dict[str, Any]:
    """Encode one extraction as a Firestore REST document body."""
    extracted_at = extracted_at or datetime.now(timezone.utc)
    return {
        "fields": {
            "batchId": {"stringValue": batch_id},
            "fileName": {"stringValue": file_name},
            "extractedAt": {"timestampValue": extracted_at.isoformat().replace("+00:00", "Z")},
            "data": {
                "mapValue": {
                    "fields": {key: {"stringValue": value} for key, value in data.items()}
                }
            },
            "config": {"stringValue": json.dumps([r.as_prompt_dict() | {"id": r.id} for r in regions])},
        }
    }


class FirestoreStore:
    """Persistence collaborator: returns False instead of raising on transport or HTTP errors."""

    def __init__(
        self,
        project_id: str,
        *,
        database: str = "(default)",
        collection: str = "extractions",
        access_token: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not project_id:
            raise SyncError("Firestore project id is required")
        self.url = f"{FIRESTORE_URL}/projects/{project_id}/databases/{database}/documents/{collection}"
        self.access_token = access_token
        self.timeout = timeout
        self._client = client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def persist(
        self,
        batch_id: str,
        file_name: str,
        data: dict[str, str],
        regions: Sequence[Region],
    ) -> bool:
        body = firestore_document(batch_id, file_name, data, regions)
        try:
            response = await self._post(body)
        except httpx.HTTPError as exc:
            logger.error("Firestore sync error for %s: %s", file_name, exc)
            return False
        if response.is_error:
            logger.error("Firestore rejected %s: HTTP %s %s", file_name, response.status_code, response.text)
            return False
        return True

    async def _post(self, body: dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.url, json=body, headers=self._headers())
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.url, json=body, headers=self._headers())


class GoogleSheetsAppender:
    """Spreadsheet collaborator: appends one row to the first sheet of a spreadsheet."""

    def __init__(
        self,
        *,
        range_: str = "A1",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.range = range_
        self.timeout = timeout
        self._client = client

    def append_url(self, spreadsheet_id: str) -> str:
        return f"{SHEETS_URL}/{spreadsheet_id}/values/{self.range}:append"

    async def append_row(self, spreadsheet_id: str, access_token: str, row: Sequence[str]) -> bool:
        if not spreadsheet_id or not access_token:
            raise SyncError("Missing Spreadsheet ID or Access Token")

        url = self.append_url(spreadsheet_id)
        # USER_ENTERED lets Sheets parse dates and numbers from the strings.
        params = {"valueInputOption": "USER_ENTERED"}
        headers = {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}
        body = {"values": [list(row)]}

        if self._client is not None:
            response = await self._client.post(url, params=params, json=body, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, params=params, json=body, headers=headers)

        if response.is_error:
            logger.error("Google Sheets API error: HTTP %s %s", response.status_code, response.text)
            return False
        return True
