"""Ledger collaborators: what the harness needs from a ledger, and an XRPL JSON-RPC binding."""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

import httpx
from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.models import SubmitOnly
from xrpl.models.requests import AccountInfo, ServerState, Tx

import ptx_workload.constants as C

log = logging.getLogger("ptx_workload.ledger")


@dataclass(frozen=True, slots=True)
class SubmitResult:
    accepted: bool
    error: str | None = None
    engine_result: str | None = None


@dataclass(frozen=True, slots=True)
class InclusionStatus:
    included: bool
    permanently_rejected: bool = False
    detail: str | None = None


class Ledger(Protocol):
    async def submit(self, blob: str) -> SubmitResult: ...
    async def get_nonce(self, address: str) -> int: ...
    async def get_balance(self, address: str) -> Decimal: ...
    async def is_included(self, tx_hash: str) -> InclusionStatus: ...
    async def get_reserve(self) -> Decimal: ...


# Engine results a node returns for a transaction it has taken in (applied or queued)
ACCEPTED_RESULTS = {"tesSUCCESS", "terQUEUED"}


def classify_engine_result(er: str | None) -> SubmitResult:
    if er in ACCEPTED_RESULTS:
        return SubmitResult(accepted=True, engine_result=er)
    if isinstance(er, str) and er.startswith("tel"):
        # Local node holds the txn and may still apply it; let confirmation decide.
        return SubmitResult(accepted=True, engine_result=er)
    return SubmitResult(accepted=False, error=er or "no engine_result", engine_result=er)


class XrplLedger:
    """JSON-RPC binding. One instance wraps one client, i.e. one submission channel."""

    def __init__(self, url: str, *, rpc_timeout: float = C.RPC_TIMEOUT, submit_timeout: float = C.SUBMIT_TIMEOUT):
        self.url = url
        self.client = AsyncJsonRpcClient(url)
        self.rpc_timeout = rpc_timeout
        self.submit_timeout = submit_timeout

    @classmethod
    def from_config(cls, config: dict, url: str | None = None) -> "XrplLedger":
        from ptx_workload.config import rpc_url

        r = config["rippled"]
        return cls(url or rpc_url(config), rpc_timeout=r["rpc_timeout"], submit_timeout=r["submit_timeout"])

    def channel_pool(self, k: int, urls: list[str] | None = None) -> list["XrplLedger"]:
        """k independent clients spread round-robin over the endpoint urls."""
        urls = urls or [self.url]
        return [
            XrplLedger(urls[i % len(urls)], rpc_timeout=self.rpc_timeout, submit_timeout=self.submit_timeout)
            for i in range(k)
        ]

    async def _rpc(self, req, *, t: float | None = None):
        return await asyncio.wait_for(self.client.request(req), timeout=t or self.rpc_timeout)

    async def submit(self, blob: str) -> SubmitResult:
        resp = await self._rpc(SubmitOnly(tx_blob=blob), t=self.submit_timeout)
        if not resp.is_successful():
            return SubmitResult(accepted=False, error=str(resp.result.get("error", resp.result)))
        return classify_engine_result(resp.result.get("engine_result"))

    async def _account_data(self, address: str, ledger_index: str) -> dict:
        resp = await self._rpc(AccountInfo(account=address, ledger_index=ledger_index, strict=True))
        if not resp.is_successful():
            raise LookupError(f"account_info {address}: {resp.result.get('error', resp.result)}")
        return resp.result["account_data"]

    async def get_nonce(self, address: str) -> int:
        # "current" includes queued txns, so the next sequence never collides with them
        return int((await self._account_data(address, "current"))["Sequence"])

    async def get_balance(self, address: str) -> Decimal:
        return Decimal((await self._account_data(address, "validated"))["Balance"])

    async def get_reserve(self) -> Decimal:
        """Base reserve in drops: the least an account may hold, and the least that creates one."""
        resp = await self._rpc(ServerState())
        if not resp.is_successful():
            raise LookupError(f"server_state: {resp.result.get('error', resp.result)}")
        ledger = resp.result["state"].get("validated_ledger") or resp.result["state"].get("closed_ledger") or {}
        if "reserve_base" not in ledger:
            raise LookupError("server_state: no validated ledger yet")
        return Decimal(ledger["reserve_base"])

    async def is_included(self, tx_hash: str) -> InclusionStatus:
        resp = await self._rpc(Tx(transaction=tx_hash))
        result = resp.result
        if not resp.is_successful():
            # txnNotFound while the txn is still in flight is not a failure
            return InclusionStatus(included=False, detail=result.get("error"))
        if not result.get("validated"):
            return InclusionStatus(included=False)
        meta_result = (result.get("meta") or {}).get("TransactionResult")
        if meta_result == "tesSUCCESS":
            return InclusionStatus(included=True, detail=meta_result)
        return InclusionStatus(included=False, permanently_rejected=True, detail=meta_result)


async def probe(url: str, max_retries: int = 30, retry_delay: float = 2.0, timeout: float = 3.0) -> None:
    """Probe the RPC endpoint with retries until it responds."""
    payload = {"method": "server_info", "params": [{}]}

    for attempt in range(1, max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=timeout) as http:
                r = await http.post(url, json=payload)
                r.raise_for_status()
                log.info(f"RPC endpoint responding (attempt {attempt}/{max_retries})")
                return
        except httpx.HTTPError as e:
            if attempt < max_retries:
                log.info(f"RPC not ready yet (attempt {attempt}/{max_retries}): {e.__class__.__name__} - retrying in {retry_delay}s...")
                await asyncio.sleep(retry_delay)
            else:
                log.error(f"RPC failed after {max_retries} attempts")
                raise
