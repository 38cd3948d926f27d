"""Pytest configuration and shared fixtures for indexing-control tests."""

import json
import os
import sys
from typing import Any, List, Optional

import httpx
import pytest

# Add repository root to path for imports
_root_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _root_dir not in sys.path:
    sys.path.insert(0, _root_dir)

# Environment defaults for tests
os.environ.setdefault("LOG_LEVEL", "WARNING")

from indexing_control.models import AdminUser  # noqa: E402
from indexing_control.services import IndexerClient, InMemoryStore, TestRunLedger  # noqa: E402

SUPABASE_URL = "http://supabase.test"
ADMIN_ID = "6f1c2b9e-3d4a-4f5b-8c7d-1e2f3a4b5c6d"
OTHER_USER_ID = "0a1b2c3d-4e5f-4a6b-9c8d-7e6f5a4b3c2d"


class IndexerStub:
    """Scripted Edge Function endpoint for ``httpx.MockTransport``.

    Each entry in ``responses`` is ``(status, body)`` or an exception to raise.
    The last entry repeats once the script runs out.
    """

    def __init__(self, responses: List[Any], on_call=None):
        self.responses = list(responses)
        self.requests: List[httpx.Request] = []
        self.on_call = on_call

    @property
    def calls(self) -> int:
        return len(self.requests)

    def payloads(self) -> List[dict]:
        return [json.loads(request.content) for request in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        index = min(len(self.requests), len(self.responses) - 1)
        self.requests.append(request)
        if self.on_call:
            self.on_call(request)

        scripted = self.responses[index]
        if isinstance(scripted, Exception):
            raise scripted
        status, body = scripted
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)

    def client(self, supabase_url: str = SUPABASE_URL, service_key: str = "service-key") -> IndexerClient:
        return IndexerClient(supabase_url, service_key, transport=httpx.MockTransport(self))


@pytest.fixture
def admin() -> AdminUser:
    return AdminUser(id=ADMIN_ID, access_token="admin-token", email="admin@example.com")


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def ledger(store) -> TestRunLedger:
    return TestRunLedger(store)


@pytest.fixture
def unconfigured_indexer() -> IndexerClient:
    return IndexerClient("", "")


def only_row(store: InMemoryStore, table: str) -> Optional[dict]:
    rows = store.rows(table)
    assert len(rows) == 1, f"expected one row in {table}, found {len(rows)}"
    return rows[0]
