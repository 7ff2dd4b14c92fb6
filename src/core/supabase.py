from __future__ import annotations

from threading import Lock
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx

from src.core.config import get_settings
from src.core.errors import ConcurrentWriteConflict

UNIQUE_VIOLATION_STATUS = 409


class SupabaseClient:
    _shared_client: httpx.Client | None = None
    _client_lock: Lock = Lock()

    def __init__(self) -> None:
        settings = get_settings()
        self.base_url = settings.supabase_url.rstrip("/") + "/rest/v1"
        self.api_key = settings.supabase_service_role_key or settings.supabase_anon_key
        if not self.api_key:
            raise ValueError("Supabase API key is required")
        self._client = self._get_shared_client()

    @classmethod
    def _get_shared_client(cls) -> httpx.Client:
        if cls._shared_client is not None:
            return cls._shared_client
        with cls._client_lock:
            if cls._shared_client is None:
                cls._shared_client = httpx.Client(
                    timeout=30.0,
                    limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
                )
        return cls._shared_client

    def _headers(self, prefer: Optional[str] = None, json_body: bool = False) -> Dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
        }
        if json_body:
            headers["Content-Type"] = "application/json"
        if prefer:
            headers["Prefer"] = prefer
        return headers

    @staticmethod
    def _rows(response: httpx.Response) -> List[Dict[str, Any]]:
        if not response.content:
            return []
        data = response.json()
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            return [data]
        return []

    def select(
        self,
        table: str,
        select: str,
        filters: Optional[List[Tuple[str, str]]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        order: Optional[str] = None,
        count: bool | str = False,
    ) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        params: List[Tuple[str, str]] = [("select", select)]
        if filters:
            params.extend(filters)
        if limit is not None:
            params.append(("limit", str(limit)))
        if offset is not None:
            params.append(("offset", str(offset)))
        if order:
            params.append(("order", order))

        prefer = None
        if count:
            if count is True:
                prefer = "count=exact"
            elif isinstance(count, str):
                prefer = f"count={count}"

        url = f"{self.base_url}/{table}?{urlencode(params, doseq=True)}"
        response = self._client.get(url, headers=self._headers(prefer=prefer))
        response.raise_for_status()
        total_count = None
        if count and "content-range" in response.headers:
            content_range = response.headers["content-range"]
            if "/" in content_range:
                total_count = int(content_range.split("/")[-1])
        return response.json(), total_count

    def insert(
        self,
        table: str,
        payload: Dict[str, Any] | List[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        """Insert rows; a unique violation surfaces as ``ConcurrentWriteConflict``."""
        response = self._client.post(
            f"{self.base_url}/{table}",
            headers=self._headers(prefer="return=representation", json_body=True),
            json=payload,
        )
        if response.status_code == UNIQUE_VIOLATION_STATUS:
            raise ConcurrentWriteConflict(f"Unique violation inserting into {table}")
        response.raise_for_status()
        return self._rows(response)

    def update(
        self,
        table: str,
        payload: Dict[str, Any],
        filters: List[Tuple[str, str]],
    ) -> List[Dict[str, Any]]:
        params: List[Tuple[str, str]] = []
        if filters:
            params.extend(filters)
        url = f"{self.base_url}/{table}?{urlencode(params, doseq=True)}"
        response = self._client.patch(
            url,
            headers=self._headers(prefer="return=representation", json_body=True),
            json=payload,
        )
        response.raise_for_status()
        return self._rows(response)

    def delete(self, table: str, filters: List[Tuple[str, str]]) -> List[Dict[str, Any]]:
        if not filters:
            raise ValueError("Refusing to delete without filters")
        url = f"{self.base_url}/{table}?{urlencode(filters, doseq=True)}"
        response = self._client.delete(url, headers=self._headers(prefer="return=representation"))
        response.raise_for_status()
        return self._rows(response)
