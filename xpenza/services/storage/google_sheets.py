"""
Google Sheets Document Store

DESIGN DECISION: Google Sheets can back the remote document store because:
1. Users can inspect their books directly in a spreadsheet
2. No database setup required
3. Built-in backup (Google's infrastructure)

TRADEOFFS:
- One worksheet per collection, one document per row ([id, data_json])
- Limited query capabilities (we filter in Python)
- No push notifications: live watches poll, and are woken immediately
  after writes made through this store
- Batches are committed as a single values.batchUpdate call, which the
  Sheets API applies as one request

The implementation follows the abstract interface, so the sync store is
unaware of which backend it talks to.
"""

import asyncio
import json
from itertools import count
from typing import Any, Optional
from uuid import uuid4

import gspread
import structlog
from google.oauth2.service_account import Credentials
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from xpenza.config import GoogleSheetsSettings, get_settings
from xpenza.services.storage.interface import (
    BatchCommitError,
    BatchOperation,
    BatchOperationType,
    ConnectionError,
    Document,
    DocumentStoreInterface,
    NotFoundError,
    SnapshotCallback,
    StorageError,
    Subscription,
)


# Column layout of every collection worksheet
DOCUMENT_COLUMNS = ["id", "data_json"]

logger = structlog.get_logger("xpenza.storage.google_sheets")

api_retry = retry(
    retry=retry_if_exception_type(gspread.exceptions.APIError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and hands out one worksheet per collection.
    """

    def __init__(self, settings: Optional[GoogleSheetsSettings] = None):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._worksheets: dict[str, gspread.Worksheet] = {}
        self._settings = settings or get_settings().google_sheets

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise ConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise ConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def get_collection_sheet(self, collection: str) -> gspread.Worksheet:
        """Get or create the worksheet holding a collection."""
        if collection not in self._worksheets:
            spreadsheet = self.get_spreadsheet()
            try:
                sheet = spreadsheet.worksheet(collection)
            except gspread.WorksheetNotFound:
                # Create the sheet with headers
                sheet = spreadsheet.add_worksheet(
                    title=collection,
                    rows=1000,
                    cols=len(DOCUMENT_COLUMNS),
                )
                sheet.append_row(DOCUMENT_COLUMNS)
            self._worksheets[collection] = sheet
        return self._worksheets[collection]


class _SheetWatch:
    """State of one polling watch."""

    def __init__(self, collection: str, filters: dict[str, Any], on_snapshot: SnapshotCallback):
        self.collection = collection
        self.filters = dict(filters)
        self.on_snapshot = on_snapshot
        self.wake = asyncio.Event()
        self.fingerprint: Optional[str] = None


class GoogleSheetsDocumentStore(DocumentStoreInterface):
    """
    Google Sheets implementation of the remote document store.

    gspread is blocking, so every API call runs in a worker thread.
    """

    def __init__(
        self,
        client: Optional[GoogleSheetsClient] = None,
        poll_interval: Optional[float] = None,
    ):
        self._client = client or GoogleSheetsClient()
        if poll_interval is None:
            poll_interval = get_settings().google_sheets.poll_interval_seconds
        self._poll_interval = poll_interval
        self._watches: dict[int, _SheetWatch] = {}
        self._watch_ids = count(1)

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _document_to_row(doc_id: str, data: dict[str, Any]) -> list[str]:
        return [doc_id, json.dumps(data, sort_keys=True)]

    @staticmethod
    def _row_to_document(row: list[str]) -> Optional[Document]:
        if not row or not row[0]:
            return None
        try:
            data = json.loads(row[1]) if len(row) > 1 and row[1] else {}
        except json.JSONDecodeError:
            logger.warning("malformed_document_row", doc_id=row[0])
            return None
        return Document(id=row[0], data=data)

    # ------------------------------------------------------------------
    # Blocking helpers (run in worker threads)
    # ------------------------------------------------------------------

    @api_retry
    def _read_rows(self, collection: str) -> list[list[str]]:
        sheet = self._client.get_collection_sheet(collection)
        return sheet.get_all_values()[1:]  # Skip header

    @api_retry
    def _append_row(self, collection: str, row: list[str]) -> None:
        sheet = self._client.get_collection_sheet(collection)
        sheet.append_row(row, value_input_option="RAW")

    @api_retry
    def _write_row(self, collection: str, sheet_row: int, row: list[str]) -> None:
        sheet = self._client.get_collection_sheet(collection)
        sheet.update(values=[row], range_name=f"A{sheet_row}:B{sheet_row}")

    @api_retry
    def _delete_row(self, collection: str, sheet_row: int) -> None:
        sheet = self._client.get_collection_sheet(collection)
        sheet.delete_rows(sheet_row)

    @api_retry
    def _batch_write(self, tables: dict[str, list[list[str]]]) -> None:
        spreadsheet = self._client.get_spreadsheet()
        spreadsheet.values_batch_update({
            "valueInputOption": "RAW",
            "data": [
                {
                    "range": f"'{collection}'!A2:B{len(rows) + 1}",
                    "values": rows,
                }
                for collection, rows in tables.items()
                if rows
            ],
        })

    def _find_row(self, rows: list[list[str]], doc_id: str) -> Optional[int]:
        """Sheet row number (1-based, header is row 1) of a document."""
        for idx, row in enumerate(rows, start=2):
            if row and row[0] == doc_id:
                return idx
        return None

    # ------------------------------------------------------------------
    # DocumentStoreInterface
    # ------------------------------------------------------------------

    async def create(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = uuid4().hex
        try:
            await asyncio.to_thread(
                self._append_row, collection, self._document_to_row(doc_id, data)
            )
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to create {collection} document: {e}")
        self._wake(collection)
        return doc_id

    async def list_documents(
        self,
        collection: str,
        filters: Optional[dict[str, Any]] = None,
    ) -> list[Document]:
        try:
            rows = await asyncio.to_thread(self._read_rows, collection)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to list {collection}: {e}")

        documents = []
        for row in rows:
            document = self._row_to_document(row)
            if document is not None and document.matches(filters or {}):
                documents.append(document)
        return documents

    def watch(
        self,
        collection: str,
        filters: dict[str, Any],
        on_snapshot: SnapshotCallback,
    ) -> Subscription:
        watch_id = next(self._watch_ids)
        watcher = _SheetWatch(collection, filters, on_snapshot)
        self._watches[watch_id] = watcher
        task = asyncio.get_running_loop().create_task(self._poll(watcher))

        def unsubscribe() -> None:
            self._watches.pop(watch_id, None)
            task.cancel()

        return Subscription(unsubscribe)

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        try:
            rows = await asyncio.to_thread(self._read_rows, collection)
            sheet_row = self._find_row(rows, doc_id)
            if sheet_row is None:
                raise NotFoundError(f"{collection}/{doc_id} does not exist")

            document = self._row_to_document(rows[sheet_row - 2])
            data = {**(document.data if document else {}), **fields}
            await asyncio.to_thread(
                self._write_row, collection, sheet_row, self._document_to_row(doc_id, data)
            )
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to update {collection}/{doc_id}: {e}")
        self._wake(collection)

    async def delete(self, collection: str, doc_id: str) -> None:
        try:
            rows = await asyncio.to_thread(self._read_rows, collection)
            sheet_row = self._find_row(rows, doc_id)
            if sheet_row is None:
                return
            await asyncio.to_thread(self._delete_row, collection, sheet_row)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to delete {collection}/{doc_id}: {e}")
        self._wake(collection)

    async def commit_batch(self, operations: list[BatchOperation]) -> None:
        """
        Rewrite every touched collection in one values.batchUpdate call.

        Deleted rows are blanked rather than removed so the written range
        still covers the previous table; blank rows are skipped on read.
        """
        collections = sorted({operation.collection for operation in operations})
        try:
            tables: dict[str, list[list[str]]] = {}
            for collection in collections:
                tables[collection] = await asyncio.to_thread(self._read_rows, collection)

            for operation in operations:
                rows = tables[operation.collection]
                sheet_row = self._find_row(rows, operation.doc_id)
                if operation.op == BatchOperationType.DELETE:
                    if sheet_row is not None:
                        rows[sheet_row - 2] = ["", ""]
                    continue
                if sheet_row is None:
                    raise BatchCommitError(
                        f"{operation.collection}/{operation.doc_id} does not exist"
                    )
                document = self._row_to_document(rows[sheet_row - 2])
                data = {**(document.data if document else {}), **operation.fields}
                rows[sheet_row - 2] = self._document_to_row(operation.doc_id, data)

            await asyncio.to_thread(self._batch_write, tables)
        except StorageError:
            raise
        except Exception as e:
            raise BatchCommitError(f"Failed to commit batch: {e}")

        for collection in collections:
            self._wake(collection)

    # ------------------------------------------------------------------
    # Watches
    # ------------------------------------------------------------------

    def _wake(self, collection: str) -> None:
        for watcher in self._watches.values():
            if watcher.collection == collection:
                watcher.wake.set()

    async def _poll(self, watcher: _SheetWatch) -> None:
        while True:
            watcher.wake.clear()
            try:
                documents = await self.list_documents(watcher.collection, watcher.filters)
            except StorageError as e:
                logger.warning(
                    "watch_poll_failed",
                    collection=watcher.collection,
                    error=str(e),
                )
            else:
                fingerprint = json.dumps(
                    [[d.id, d.data] for d in sorted(documents, key=lambda d: d.id)],
                    sort_keys=True,
                )
                if fingerprint != watcher.fingerprint:
                    watcher.fingerprint = fingerprint
                    try:
                        watcher.on_snapshot(documents)
                    except Exception:
                        # The watch keeps polling
                        logger.exception(
                            "watch_callback_failed",
                            collection=watcher.collection,
                        )

            try:
                await asyncio.wait_for(watcher.wake.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
