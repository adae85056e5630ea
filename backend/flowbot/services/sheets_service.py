# /flowbot/services/sheets_service.py

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from flowbot.services.store import matches_filter
from flowbot.utils.errors import ConfigError, ProviderError, UpstreamTimeoutError

# Structured-data collaborator for `google_sheets` / `update_columns` nodes.
# Rows are exposed as dicts keyed by the header row so node filters use the
# same predicate language as the store.

logger = logging.getLogger(__name__)

SHEETS_API = "https://sheets.googleapis.com/v4/spreadsheets"


def _column_letter(index: int) -> str:
    """0 -> A, 25 -> Z, 26 -> AA."""
    letters = ""
    index += 1
    while index:
        index, rem = divmod(index - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


class SheetsService:
    def __init__(self, api_key: Optional[str], timeout: float = 15.0):
        self.api_key = api_key
        self.http_client = httpx.AsyncClient(timeout=timeout)

    async def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        if not self.api_key:
            raise ConfigError("Google Sheets API key not configured")
        params = {**kwargs.pop("params", {}), "key": self.api_key}
        try:
            response = await self.http_client.request(method, url, params=params, **kwargs)
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError("Google Sheets request timed out") from e
        except httpx.RequestError as e:
            raise ProviderError(f"Google Sheets request failed: {e}") from e
        if response.status_code >= 400:
            logger.error(f"Google Sheets API error {response.status_code}: {response.text[:300]}")
            raise ProviderError(f"Google Sheets API error {response.status_code}")
        return response.json() if response.content else {}

    async def append(self, spreadsheet_id: str, sheet_name: str, values: List[List[Any]]) -> int:
        url = f"{SHEETS_API}/{spreadsheet_id}/values/{quote(f'{sheet_name}!A1')}:append"
        data = await self._request("POST", url, params={"valueInputOption": "RAW"}, json={"values": values})
        updated = (data.get("updates") or {}).get("updatedRows", len(values))
        logger.info(f"Google Sheets: appended {updated} row(s) to {sheet_name}")
        return updated

    async def update(self, spreadsheet_id: str, cell_range: str, values: List[List[Any]]) -> int:
        url = f"{SHEETS_API}/{spreadsheet_id}/values/{quote(cell_range)}"
        data = await self._request("PUT", url, params={"valueInputOption": "RAW"}, json={"values": values})
        return data.get("updatedRows", len(values))

    async def read_rows(self, spreadsheet_id: str, sheet_name: str) -> List[Dict[str, Any]]:
        """All data rows as dicts keyed by header; `_row` holds the 1-based sheet row number."""
        url = f"{SHEETS_API}/{spreadsheet_id}/values/{quote(sheet_name)}"
        values = (await self._request("GET", url)).get("values") or []
        if not values:
            return []
        header = [str(h) for h in values[0]]
        rows = []
        for offset, raw in enumerate(values[1:], start=2):
            row = {name: (raw[i] if i < len(raw) else "") for i, name in enumerate(header)}
            row["_row"] = offset
            rows.append(row)
        return rows

    async def lookup(self, spreadsheet_id: str, sheet_name: str, predicate: Dict[str, Any]) -> List[Dict[str, Any]]:
        rows = await self.read_rows(spreadsheet_id, sheet_name)
        return [row for row in rows if matches_filter(row, predicate)]

    async def update_columns(self, spreadsheet_id: str, sheet_name: str, predicate: Dict[str, Any], columns: Dict[str, Any]) -> int:
        """
        Writes `columns` into every row matching `predicate`.

        Returns:
            Number of rows updated; 0 when nothing matched.
        """
        url = f"{SHEETS_API}/{spreadsheet_id}/values/{quote(sheet_name)}"
        values = (await self._request("GET", url)).get("values") or []
        if not values:
            return 0
        header = [str(h) for h in values[0]]
        missing = [name for name in columns if name not in header]
        if missing:
            raise ConfigError(f"Unknown sheet columns: {', '.join(missing)}")

        updated = 0
        for offset, raw in enumerate(values[1:], start=2):
            row = {name: (raw[i] if i < len(raw) else "") for i, name in enumerate(header)}
            if not matches_filter(row, predicate):
                continue
            new_values = [columns.get(name, row[name]) for name in header]
            cell_range = f"{sheet_name}!A{offset}:{_column_letter(len(header) - 1)}{offset}"
            await self.update(spreadsheet_id, cell_range, [new_values])
            updated += 1
        return updated

    async def close(self):
        await self.http_client.aclose()
