from __future__ import annotations

import json
import time
from typing import Any, Callable, Dict, Optional, Tuple

import httpx
from eth_account import Account
from eth_account.messages import encode_defunct

from greenagent.logging import get_logger
from greenagent.service.errors import CollaboratorError
from greenagent.service.ports import (
    GardenInfo,
    SubmitApprovalParams,
    SubmitWorkParams,
    VerificationResult,
)

logger = get_logger(__name__)

OPERATOR_ROLE = "operator"
GARDENER_ROLE = "gardener"

_DENIAL_REASONS = {
    OPERATOR_ROLE: "Address is not an operator for this garden",
    GARDENER_ROLE: "Address is not a gardener for this garden",
}


class HttpLedgerClient:
    """Ledger port backed by an attestation gateway over HTTP.

    Reads (garden info, role membership) are cached for ``cache_ttl_seconds``.
    Writes are signed locally with the custodial key so the key itself never
    leaves the process; the gateway verifies the signature and records the
    attestation, returning its transaction hash.
    """

    def __init__(
        self,
        base_url: str,
        *,
        chain_id: int,
        api_key: Optional[str] = None,
        timeout_seconds: float = 30.0,
        cache_ttl_seconds: float = 60.0,
        supports_approval_attestation: bool = True,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.chain_id = chain_id
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.cache_ttl_seconds = cache_ttl_seconds
        self.supports_approval_attestation = supports_approval_attestation
        self._client = client
        self._clock = clock
        self._role_cache: Dict[Tuple[str, str, str], Tuple[bool, float]] = {}
        self._garden_cache: Dict[str, Tuple[GardenInfo, float]] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                headers=headers,
            )
        return self._client

    def _fresh(self, stored_at: float) -> bool:
        return self._clock() - stored_at < self.cache_ttl_seconds

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            return await client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.TimeoutException as exc:
            logger.error("ledger_timeout", method=method, path=path)
            raise CollaboratorError("Ledger request timed out, please try again") from exc
        except httpx.HTTPError as exc:
            logger.error("ledger_connect_error", method=method, path=path, error=str(exc))
            raise CollaboratorError(f"Ledger unreachable: {exc}") from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.is_success:
            return
        message = None
        try:
            body = response.json()
            if isinstance(body, dict):
                message = body.get("error") or body.get("message")
        except ValueError:
            pass
        raise CollaboratorError(
            f"{action} failed ({response.status_code}): {message or response.reason_phrase}",
            retryable=response.status_code >= 500,
            detail={"status_code": response.status_code},
        )

    def _sign(self, private_key: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        account = Account.from_key(private_key)
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        signed = Account.sign_message(encode_defunct(text=canonical), private_key=private_key)
        return {
            "payload": payload,
            "attester": account.address,
            "signature": signed.signature.hex(),
        }

    # -- writes ------------------------------------------------------------

    async def submit_work(self, params: SubmitWorkParams) -> str:
        payload = {
            "chain_id": self.chain_id,
            "garden": params.garden_address,
            "action_uid": params.action_uid,
            "action_title": params.action_title,
            "work": params.work.to_dict(),
            "media": list(params.media),
        }
        response = await self._request(
            "POST", "/attestations/work", json=self._sign(params.private_key, payload)
        )
        self._raise_for_status(response, "Work attestation")
        tx_hash = response.json().get("tx_hash")
        logger.info("ledger_work_submitted", garden=params.garden_address, tx_hash=tx_hash)
        return tx_hash

    async def submit_approval(self, params: SubmitApprovalParams) -> str:
        payload = {
            "chain_id": self.chain_id,
            "garden": params.garden_address,
            "work_uid": params.work_uid,
            "action_uid": params.action_uid,
            "gardener": params.gardener_address,
            "approved": params.approved,
            "feedback": params.feedback,
        }
        response = await self._request(
            "POST", "/attestations/approval", json=self._sign(params.private_key, payload)
        )
        self._raise_for_status(response, "Approval attestation")
        tx_hash = response.json().get("tx_hash")
        logger.info("ledger_approval_submitted", garden=params.garden_address, tx_hash=tx_hash)
        return tx_hash

    # -- reads -------------------------------------------------------------

    async def _has_role(self, garden_address: str, address: str, role: str) -> VerificationResult:
        key = (garden_address.lower(), address.lower(), role)
        cached = self._role_cache.get(key)
        if cached and self._fresh(cached[1]):
            verified, stored_at = cached
        else:
            try:
                response = await self._request(
                    "GET", f"/gardens/{garden_address}/roles/{role}/{address}"
                )
                self._raise_for_status(response, "Role lookup")
                verified = bool(response.json().get("has_role"))
            except CollaboratorError as exc:
                logger.warning(
                    "ledger_role_check_failed", garden=garden_address, role=role, error=exc.message
                )
                return VerificationResult(verified=False, reason=f"Verification failed: {exc.message}")
            stored_at = self._clock()
            self._role_cache[key] = (verified, stored_at)
        reason = None if verified else _DENIAL_REASONS[role]
        return VerificationResult(verified=verified, reason=reason, cached_at=stored_at)

    async def is_operator(self, garden_address: str, address: str) -> VerificationResult:
        return await self._has_role(garden_address, address, OPERATOR_ROLE)

    async def is_gardener(self, garden_address: str, address: str) -> VerificationResult:
        return await self._has_role(garden_address, address, GARDENER_ROLE)

    async def get_garden_info(self, garden_address: str) -> Optional[GardenInfo]:
        key = garden_address.lower()
        cached = self._garden_cache.get(key)
        if cached and self._fresh(cached[1]):
            return cached[0]
        response = await self._request("GET", f"/gardens/{garden_address}")
        if response.status_code == 404:
            info = GardenInfo(exists=False, address=garden_address)
        else:
            self._raise_for_status(response, "Garden lookup")
            info = GardenInfo(
                exists=True, address=garden_address, name=response.json().get("name")
            )
        self._garden_cache[key] = (info, self._clock())
        return info

    def get_chain_id(self) -> int:
        return self.chain_id

    def clear_cache(self) -> None:
        self._role_cache.clear()
        self._garden_cache.clear()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


async def verify_operator(ledger, garden_address: str, address: str) -> VerificationResult:
    """Fail-closed operator check: any error is reported as a denial."""
    try:
        result = await ledger.is_operator(garden_address, address)
    except Exception as exc:
        logger.warning(
            "operator_verification_error",
            garden=garden_address,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return VerificationResult(verified=False, reason=f"Verification failed: {exc}")
    if result is None or result.verified is not True:
        reason = getattr(result, "reason", None) or _DENIAL_REASONS[OPERATOR_ROLE]
        return VerificationResult(verified=False, reason=reason)
    return result
