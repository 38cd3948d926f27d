"""Relational store interface for the Indexing Control Center.

Supports in-memory and Supabase (PostgREST) backends. Every operation
returns a :class:`StoreResult` carrying either ``data`` or ``error``; store
methods never raise, callers decide whether an error is fatal.
"""

import copy
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx

logger = logging.getLogger(__name__)

Filters = Dict[str, Any]
Row = Dict[str, Any]


@dataclass
class StoreError:
    """Error reported by the store."""

    message: str
    code: Optional[str] = None
    details: Optional[str] = None
    status: Optional[int] = None


@dataclass
class StoreResult:
    """Explicit ``{data, error}`` pair returned by every store call."""

    data: Any = None
    error: Optional[StoreError] = None
    count: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_message(self) -> str:
        return self.error.message if self.error else ""


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StoreClient:
    """Query/filter/upsert interface over the relational store."""

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Filters] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        count: bool = False,
        head: bool = False,
    ) -> StoreResult:
        raise NotImplementedError

    async def insert(self, table: str, row: Row) -> StoreResult:
        raise NotImplementedError

    async def update(self, table: str, patch: Row, filters: Filters) -> StoreResult:
        raise NotImplementedError

    async def upsert(
        self,
        table: str,
        rows: Union[Row, List[Row]],
        on_conflict: str,
    ) -> StoreResult:
        raise NotImplementedError

    async def delete(self, table: str, filters: Filters) -> StoreResult:
        raise NotImplementedError

    async def select_one(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Filters] = None,
    ) -> StoreResult:
        """Select at most one row; ``data`` is the row or None."""
        result = await self.select(table, columns=columns, filters=filters, limit=1)
        if result.error:
            return result
        rows = result.data or []
        return StoreResult(data=rows[0] if rows else None)

    async def close(self) -> None:
        return None


class InMemoryStore(StoreClient):
    """In-memory store.

    Fast, ephemeral storage used by tests and by local runs without Supabase.
    Data is lost on restart. Errors can be injected per operation and table.
    """

    def __init__(self, tables: Optional[Dict[str, List[Row]]] = None):
        self._tables: Dict[str, List[Row]] = {
            name: [dict(row) for row in rows] for name, rows in (tables or {}).items()
        }
        self._injected_errors: Dict[Tuple[str, str], str] = {}
        self.calls: List[Tuple[str, str]] = []

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def rows(self, table: str) -> List[Row]:
        return copy.deepcopy(self._tables.get(table, []))

    def patch_rows(self, table: str, patch: Row, filters: Optional[Filters] = None) -> None:
        """Mutate rows directly, outside of the recorded call log."""
        for row in self._tables.get(table, []):
            if self._matches(row, filters):
                row.update(copy.deepcopy(patch))

    def inject_error(self, operation: str, table: str, message: str) -> None:
        """Make every ``operation`` on ``table`` fail with ``message``."""
        self._injected_errors[(operation, table)] = message

    def clear_errors(self) -> None:
        self._injected_errors.clear()

    @property
    def write_count(self) -> int:
        return sum(1 for op, _ in self.calls if op != "select")

    # ------------------------------------------------------------------
    # StoreClient
    # ------------------------------------------------------------------

    def _record(self, operation: str, table: str) -> Optional[StoreError]:
        self.calls.append((operation, table))
        message = self._injected_errors.get((operation, table))
        if message:
            return StoreError(message=message)
        return None

    @staticmethod
    def _matches(row: Row, filters: Optional[Filters]) -> bool:
        return all(row.get(column) == value for column, value in (filters or {}).items())

    @staticmethod
    def _project(row: Row, columns: str) -> Row:
        if columns.strip() == "*":
            return copy.deepcopy(row)
        wanted = [column.strip() for column in columns.split(",") if column.strip()]
        return {column: copy.deepcopy(row.get(column)) for column in wanted}

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Filters] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        count: bool = False,
        head: bool = False,
    ) -> StoreResult:
        error = self._record("select", table)
        if error:
            return StoreResult(error=error)

        matched = [row for row in self._tables.get(table, []) if self._matches(row, filters)]
        if order_by:
            matched.sort(
                key=lambda row: (
                    row.get(order_by) is None,
                    row.get(order_by) if row.get(order_by) is not None else "",
                ),
                reverse=descending,
            )
        total = len(matched)
        if limit is not None:
            matched = matched[: max(0, limit)]

        data = None if head else [self._project(row, columns) for row in matched]
        return StoreResult(data=data, count=total if count else None)

    async def insert(self, table: str, row: Row) -> StoreResult:
        error = self._record("insert", table)
        if error:
            return StoreResult(error=error)

        stored = copy.deepcopy(row)
        stored.setdefault("id", str(uuid.uuid4()))
        stored.setdefault("created_at", _utc_now())
        self._tables.setdefault(table, []).append(stored)
        return StoreResult(data=copy.deepcopy(stored))

    async def update(self, table: str, patch: Row, filters: Filters) -> StoreResult:
        error = self._record("update", table)
        if error:
            return StoreResult(error=error)

        updated = None
        for row in self._tables.get(table, []):
            if self._matches(row, filters):
                row.update(copy.deepcopy(patch))
                if updated is None:
                    updated = copy.deepcopy(row)
        return StoreResult(data=updated)

    async def upsert(
        self,
        table: str,
        rows: Union[Row, List[Row]],
        on_conflict: str,
    ) -> StoreResult:
        error = self._record("upsert", table)
        if error:
            return StoreResult(error=error)

        incoming = rows if isinstance(rows, list) else [rows]
        existing_rows = self._tables.setdefault(table, [])
        written: List[Row] = []
        for row in incoming:
            existing = next(
                (r for r in existing_rows if r.get(on_conflict) == row.get(on_conflict)),
                None,
            )
            if existing is not None:
                existing.update(copy.deepcopy(row))
                written.append(copy.deepcopy(existing))
            else:
                stored = copy.deepcopy(row)
                stored.setdefault("created_at", _utc_now())
                existing_rows.append(stored)
                written.append(copy.deepcopy(stored))
        return StoreResult(data=written)

    async def delete(self, table: str, filters: Filters) -> StoreResult:
        error = self._record("delete", table)
        if error:
            return StoreResult(error=error)

        kept: List[Row] = []
        removed: List[Row] = []
        for row in self._tables.get(table, []):
            (removed if self._matches(row, filters) else kept).append(row)
        self._tables[table] = kept
        return StoreResult(data=removed)


class SupabaseStore(StoreClient):
    """Supabase store over the PostgREST HTTP API.

    Uses the service role key, so row level security does not apply.
    """

    def __init__(
        self,
        supabase_url: str,
        supabase_key: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the PostgREST store.

        Args:
            supabase_url: Supabase project URL
            supabase_key: Supabase service role key
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.supabase_url = supabase_url.rstrip("/")
        self.supabase_key = supabase_key
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._headers = {
            "apikey": supabase_key,
            "Authorization": f"Bearer {supabase_key}",
            "Content-Type": "application/json",
        }

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _table_url(self, table: str) -> str:
        return f"{self.supabase_url}/rest/v1/{table}"

    @staticmethod
    def _filter_params(filters: Optional[Filters]) -> Dict[str, str]:
        params: Dict[str, str] = {}
        for column, value in (filters or {}).items():
            if value is None:
                params[column] = "is.null"
            elif isinstance(value, bool):
                params[column] = f"eq.{str(value).lower()}"
            else:
                params[column] = f"eq.{value}"
        return params

    @staticmethod
    def _parse_count(content_range: Optional[str]) -> Optional[int]:
        # Content-Range: 0-24/3573 or */0
        if not content_range or "/" not in content_range:
            return None
        total = content_range.rsplit("/", 1)[1]
        return int(total) if total.isdigit() else None

    @staticmethod
    def _error_from_response(resp: httpx.Response) -> StoreError:
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            return StoreError(
                message=str(body.get("message") or body.get("error") or resp.text),
                code=body.get("code"),
                details=body.get("details"),
                status=resp.status_code,
            )
        return StoreError(
            message=resp.text or f"PostgREST returned {resp.status_code}",
            status=resp.status_code,
        )

    async def _request(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        prefer: Optional[List[str]] = None,
    ) -> Tuple[Optional[httpx.Response], Optional[StoreError]]:
        client = await self._get_client()
        headers = dict(self._headers)
        if prefer:
            headers["Prefer"] = ",".join(prefer)
        try:
            resp = await client.request(
                method,
                self._table_url(table),
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as e:
            logger.error(f"PostgREST {method} {table} failed: {e}")
            return None, StoreError(message=str(e) or e.__class__.__name__, code="NETWORK_ERROR")

        if resp.status_code >= 400:
            error = self._error_from_response(resp)
            logger.warning(f"PostgREST {method} {table} returned {resp.status_code}: {error.message}")
            return resp, error
        return resp, None

    @staticmethod
    def _rows(resp: httpx.Response) -> Tuple[List[Row], Optional[StoreError]]:
        if not resp.content:
            return [], None
        try:
            body = resp.json()
        except ValueError:
            return [], StoreError(
                message=f"PostgREST returned a non-JSON body with status {resp.status_code}",
                code="INVALID_RESPONSE",
                details=resp.text[:200] or None,
                status=resp.status_code,
            )
        if isinstance(body, list):
            return body, None
        return ([body] if isinstance(body, dict) else []), None

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Filters] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        count: bool = False,
        head: bool = False,
    ) -> StoreResult:
        params = {"select": columns.replace(" ", ""), **self._filter_params(filters)}
        if order_by:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = str(limit)

        resp, error = await self._request(
            "HEAD" if head else "GET",
            table,
            params=params,
            prefer=["count=exact"] if count else None,
        )
        if error:
            return StoreResult(error=error)

        total = self._parse_count(resp.headers.get("content-range")) if count else None
        if head:
            return StoreResult(data=None, count=total)
        rows, error = self._rows(resp)
        if error:
            return StoreResult(error=error)
        return StoreResult(data=rows, count=total)

    async def insert(self, table: str, row: Row) -> StoreResult:
        resp, error = await self._request(
            "POST", table, json_body=row, prefer=["return=representation"]
        )
        if error:
            return StoreResult(error=error)
        rows, error = self._rows(resp)
        if error:
            return StoreResult(error=error)
        return StoreResult(data=rows[0] if rows else None)

    async def update(self, table: str, patch: Row, filters: Filters) -> StoreResult:
        resp, error = await self._request(
            "PATCH",
            table,
            params=self._filter_params(filters),
            json_body=patch,
            prefer=["return=representation"],
        )
        if error:
            return StoreResult(error=error)
        rows, error = self._rows(resp)
        if error:
            return StoreResult(error=error)
        return StoreResult(data=rows[0] if rows else None)

    async def upsert(
        self,
        table: str,
        rows: Union[Row, List[Row]],
        on_conflict: str,
    ) -> StoreResult:
        resp, error = await self._request(
            "POST",
            table,
            params={"on_conflict": on_conflict},
            json_body=rows,
            prefer=["resolution=merge-duplicates", "return=representation"],
        )
        if error:
            return StoreResult(error=error)
        rows, error = self._rows(resp)
        if error:
            return StoreResult(error=error)
        return StoreResult(data=rows)

    async def delete(self, table: str, filters: Filters) -> StoreResult:
        resp, error = await self._request(
            "DELETE",
            table,
            params=self._filter_params(filters),
            prefer=["return=representation"],
        )
        if error:
            return StoreResult(error=error)
        rows, error = self._rows(resp)
        if error:
            return StoreResult(error=error)
        return StoreResult(data=rows)
