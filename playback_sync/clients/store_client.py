import logging
import httpx
from typing import Any, Dict, List, Optional, Sequence
from ..config import settings

logger = logging.getLogger(__name__)

Filters = Dict[str, Any]

class StoreError(Exception):
    def __init__(self, message: str, code: Optional[str] = None, details: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details
        self.status = status

    def __str__(self):
        parts = [self.message]
        if self.code:
            parts.append(f"code={self.code}")
        if self.details:
            parts.append(f"details={self.details}")
        return " ".join(parts)

    def mentions(self, text: str) -> bool:
        text = text.lower()
        return text in (self.message or "").lower() or text in (self.details or "").lower()


def is_missing_column_error(error: Exception, column: str) -> bool:
    if not isinstance(error, StoreError):
        return False
    # 42703 undefined_column (Postgres) and PGRST204 (schema cache) both name the column
    return error.mentions(column)


def is_unique_violation(error: Exception) -> bool:
    if not isinstance(error, StoreError):
        return False
    return error.code == "23505" or error.mentions("duplicate key") or error.mentions("unique")


def _encode_filters(filters: Filters) -> Dict[str, str]:
    params = {}
    for column, value in filters.items():
        params[column] = "is.null" if value is None else f"eq.{value}"
    return params


class SupabaseStore:
    """
    Record store over the Supabase REST surface (PostgREST + GoTrue).
    Filters are plain {column: value} maps; a None value means IS NULL.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, access_token: Optional[str] = None):
        self.access_token = access_token if access_token is not None else settings.SUPABASE_ACCESS_TOKEN
        headers = {"apikey": settings.SUPABASE_ANON_KEY}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        self.client = client or httpx.AsyncClient(
            base_url=settings.SUPABASE_URL.rstrip('/'),
            headers=headers,
            timeout=settings.REQUEST_TIMEOUT_SECONDS
        )
        if client is not None:
            self.client.headers.update(headers)

    async def close(self):
        await self.client.aclose()

    @staticmethod
    def _raise_for_error(resp: httpx.Response):
        if resp.status_code < 400:
            return
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        raise StoreError(
            data.get("message") or data.get("msg") or f"HTTP {resp.status_code}",
            code=str(data["code"]) if data.get("code") is not None else None,
            details=data.get("details") or data.get("hint"),
            status=resp.status_code
        )

    async def current_principal(self) -> Optional[str]:
        if not self.access_token:
            return None
        try:
            resp = await self.client.get("/auth/v1/user")
            if resp.status_code in (401, 403):
                logger.warning(f"Access token rejected by auth service ({resp.status_code})")
                return None
            resp.raise_for_status()
            data = resp.json()
            return data.get("id") or data.get("user", {}).get("id")
        except Exception as e:
            logger.warning(f"Failed to resolve current user: {e}")
            return None

    async def query(self, table: str, filters: Filters, columns: Sequence[str] = ("*",), order: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        params = _encode_filters(filters)
        params["select"] = ",".join(columns)
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = str(limit)
        resp = await self.client.get(f"/rest/v1/{table}", params=params)
        self._raise_for_error(resp)
        return resp.json()

    async def upsert(self, table: str, row: Dict[str, Any], on_conflict: Sequence[str]):
        resp = await self.client.post(
            f"/rest/v1/{table}",
            params={"on_conflict": ",".join(on_conflict)},
            json=row,
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"}
        )
        self._raise_for_error(resp)

    async def update(self, table: str, row: Dict[str, Any], filters: Filters) -> int:
        params = _encode_filters(filters)
        params["select"] = "id"
        resp = await self.client.patch(
            f"/rest/v1/{table}",
            params=params,
            json=row,
            headers={"Prefer": "return=representation"}
        )
        self._raise_for_error(resp)
        data = resp.json()
        return len(data) if isinstance(data, list) else 0

    async def insert(self, table: str, row: Dict[str, Any]):
        resp = await self.client.post(
            f"/rest/v1/{table}",
            json=row,
            headers={"Prefer": "return=minimal"}
        )
        self._raise_for_error(resp)

    async def delete(self, table: str, filters: Filters):
        resp = await self.client.delete(f"/rest/v1/{table}", params=_encode_filters(filters))
        self._raise_for_error(resp)
