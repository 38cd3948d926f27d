"""Edge Function client for the remote indexer.

The indexer's accepted request shape is versioned (camelCase vs snake_case
field names), so a call is made with an ordered list of candidate payloads
and stops at the first 2xx response. Candidates are sent one at a time.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from ..metrics import record_indexer_attempt

logger = logging.getLogger(__name__)


@dataclass
class InvocationAttempt:
    """One POST made to the indexer."""

    payload_keys: List[str]
    status: int
    body: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payloadKeys": self.payload_keys,
            "status": self.status,
            "body": self.body,
        }


@dataclass
class InvocationResult:
    """Outcome of a multi-shape invocation.

    On failure ``status`` and ``body`` come from the last attempt; every
    attempt is kept for diagnostics.
    """

    ok: bool
    status: int
    body: Any = None
    attempts: List[InvocationAttempt] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "status": self.status,
            "body": self.body,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
        }


def parse_body(raw: str) -> Any:
    """Parse a response body as JSON, keeping the raw text when it is not JSON."""
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


class IndexerClient:
    """Client for invoking indexer Edge Functions with service role credentials."""

    def __init__(
        self,
        supabase_url: str,
        service_key: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.supabase_url = supabase_url.rstrip("/")
        self.service_key = service_key
        self.timeout = httpx.Timeout(timeout)
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.supabase_url and self.service_key)

    def function_url(self, function_name: str) -> str:
        return f"{self.supabase_url}/functions/v1/{function_name}"

    async def invoke(
        self,
        function_name: str,
        payloads: List[Dict[str, Any]],
        idempotency_key: Optional[str] = None,
    ) -> InvocationResult:
        """POST each candidate payload in order until one is accepted.

        When every candidate gets an HTTP response, one attempt is recorded
        per candidate. A transport error (connect failure, timeout) is
        different: the request may already have reached the indexer, so the
        remaining candidates are not sent. That attempt is recorded with
        status 0, ``attempts`` is shorter than ``payloads``, and the result
        is an ordinary failure (status 500) rather than a raised exception.
        Callers therefore report it as a failed indexer call.

        Args:
            function_name: Edge Function to call (e.g. ``index_video``)
            payloads: Candidate request bodies, most preferred first
            idempotency_key: Sent unchanged with every attempt so the indexer
                can dedupe retries of the same logical request

        Returns:
            InvocationResult with every attempt recorded
        """
        url = self.function_url(function_name)
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        attempts: List[InvocationAttempt] = []
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for payload in payloads:
                payload_keys = list(payload.keys())
                try:
                    response = await client.post(url, headers=headers, json=payload)
                except httpx.HTTPError as e:
                    # The request may have reached the indexer; no further shapes.
                    logger.error(f"Indexer {function_name} unreachable: {e}")
                    attempts.append(
                        InvocationAttempt(
                            payload_keys=payload_keys,
                            status=0,
                            body={"error": str(e) or e.__class__.__name__},
                        )
                    )
                    record_indexer_attempt(function_name, "transport_error")
                    break

                body = parse_body(response.text)
                attempts.append(
                    InvocationAttempt(payload_keys=payload_keys, status=response.status_code, body=body)
                )

                if response.is_success:
                    record_indexer_attempt(function_name, "accepted")
                    return InvocationResult(
                        ok=True,
                        status=response.status_code,
                        body=body,
                        attempts=attempts,
                    )

                record_indexer_attempt(function_name, "rejected")
                logger.info(
                    f"Indexer {function_name} rejected payload shape "
                    f"{payload_keys} with {response.status_code}"
                )

        last = attempts[-1] if attempts else None
        return InvocationResult(
            ok=False,
            status=last.status if last and last.status else 500,
            body=last.body if last else None,
            attempts=attempts,
        )
