"""RemoteStore talking to the authoritative usage backend over HTTP (httpx).

Endpoints:
    POST {base_url}/usage/batch            body: {"actions": [{id, actionType, payload}, ...]}
                                           reply: {"acked": [id, ...], "rejected": {id: reason}}
    GET  {base_url}/usage/{user_id}?tier=  reply: {"counters": [...], "tierLimits": {...}}

Status mapping:
    401/403     -> AuthError
    400/409/422 -> ValidationError (optionally naming `actionIds`)
    429         -> RateLimited (Retry-After seconds)
    5xx, transport errors -> NetworkError
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

import httpx

from quotasync.domain.interfaces.remote_store import RemoteStore
from quotasync.domain.models.common import ActionId, BatchItem, MembershipTier, UserId
from quotasync.domain.models.errors import (
    AuthError, NetworkError, RateLimited, ValidationError,
)
from quotasync.domain.models.usage import RemoteSnapshot, SubmitResult, TierLimits

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0

# Wire names (camelCase) -> UsageCounter field names
_COUNTER_FIELDS = {
    "actionType": "action_type",
    "currentCount": "current_count",
    "windowStart": "window_start",
    "resetTimestamp": "reset_timestamp",
    "lastActionTimestamp": "last_action_timestamp",
}

def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parses a Retry-After header given in seconds. HTTP dates are ignored."""
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        logger.debug(f"Ignoring non-numeric Retry-After header: {value!r}")
        return None

def counter_from_wire(raw: Any) -> Any:
    """Normalizes a counter mapping from wire format. Non-mappings pass through."""
    if not isinstance(raw, Mapping):
        return raw
    return {_COUNTER_FIELDS.get(k, k): v for k, v in raw.items()}

class HttpRemoteStore(RemoteStore):
    """httpx-based client for the remote usage store."""

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initializes the client.

        Args:
            base_url: Backend root, e.g. `https://api.example.com/v1`.
            api_token: Optional bearer token.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (tests pass `httpx.MockTransport`).
        """
        headers = {"Accept": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        logger.info(f"HttpRemoteStore initialized for {self.base_url}")

    @staticmethod
    def _body(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        body = self._body(response)
        message = str(body.get("error") or body.get("message") or f"HTTP {status}")
        if status in (401, 403):
            raise AuthError(message, status_code=status)
        if status == 429:
            raise RateLimited(message, retry_after=parse_retry_after(response.headers.get("Retry-After")))
        if status in (400, 409, 422):
            raise ValidationError(message, action_ids=body.get("actionIds") or body.get("action_ids") or ())
        if status >= 500:
            raise NetworkError(message, status_code=status)
        # Other 4xx are not expected from this API; treat as invalid requests
        raise ValidationError(message)

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {url} failed: {e}") from e
        self._raise_for_status(response)
        return response

    async def submit_batch(self, items: List[BatchItem]) -> SubmitResult:
        response = await self._request("POST", "/usage/batch", json={"actions": list(items)})
        body = self._body(response)
        acked = [ActionId(str(i)) for i in body.get("acked") or []]
        rejected = {ActionId(str(k)): str(v) for k, v in (body.get("rejected") or {}).items()}
        logger.debug(f"submit_batch: {len(acked)} acked, {len(rejected)} rejected")
        return SubmitResult(acked=acked, rejected=rejected)

    async def pull(self, user_id: UserId, tier: MembershipTier) -> RemoteSnapshot:
        params = {"tier": tier} if tier else None
        response = await self._request("GET", f"/usage/{user_id}", params=params)
        body = self._body(response)
        raw_limits = body.get("tierLimits") or body.get("tier_limits") or {}
        if "limits" not in raw_limits:
            # Bare {tier: {action_type: limit}} table
            raw_limits = {"limits": raw_limits}
        try:
            tier_limits = TierLimits.from_dict(raw_limits)
        except (AttributeError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed tier limits from remote: {e}") from e
        counters = [counter_from_wire(c) for c in body.get("counters") or []]
        return RemoteSnapshot(counters=counters, tier_limits=tier_limits)

    async def close(self) -> None:
        await self._client.aclose()
