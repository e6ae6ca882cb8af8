"""Horizon HTTP access.

``LedgerClient`` is the seam the dispatch engine talks to; ``HorizonClient``
is the real implementation over ``httpx``. Submission returns the raw
response so the executor owns the classification policy.
"""

import logging
from decimal import Decimal
from typing import Protocol

import httpx

import claimer.constants as C
from claimer.models import AccountSnapshot, Claimant, ClaimGrant
from claimer.predicates import parse_or_none

log = logging.getLogger("claimer.horizon")


class HorizonError(Exception):
    def __init__(self, message: str, status: int | None = None, body: dict | None = None):
        super().__init__(message)
        self.status = status
        self.body = body or {}


class AccountNotFound(HorizonError):
    pass


class LedgerClient(Protocol):
    async def load_account(self, public_key: str) -> AccountSnapshot: ...
    async def list_claim_grants(self, claimant_key: str) -> list[ClaimGrant]: ...
    async def current_reference_fee(self) -> int: ...
    async def submit_transaction(self, envelope_xdr: str) -> httpx.Response: ...


def parse_account(data: dict) -> AccountSnapshot:
    native = next((b for b in data.get("balances", []) if b.get("asset_type") == "native"), None)
    return AccountSnapshot(
        public_key=data["account_id"] if "account_id" in data else data["id"],
        sequence=int(data["sequence"]),
        native_balance=Decimal(native["balance"]) if native else Decimal(0),
        selling_liabilities=Decimal(native.get("selling_liabilities", "0")) if native else Decimal(0),
    )


def parse_claim_grant(record: dict) -> ClaimGrant:
    return ClaimGrant(
        id=record["id"],
        amount=Decimal(record["amount"]),
        asset=record.get("asset", ""),
        claimants=tuple(
            Claimant(destination=c["destination"], predicate=parse_or_none(c.get("predicate")))
            for c in record.get("claimants", [])
        ),
    )


class HorizonClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = C.RPC_TIMEOUT,
        client: httpx.AsyncClient | None = None,
        page_size: int = C.GRANT_PAGE_SIZE,
        max_pages: int = C.MAX_GRANT_PAGES,
    ):
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size
        self.max_pages = max_pages
        self._http = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def __aenter__(self) -> "HorizonClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _get_json(self, path: str, params: dict | None = None) -> dict:
        r = await self._http.get(path, params=params)
        if r.is_error:
            raise HorizonError(f"GET {path} failed: HTTP {r.status_code}", status=r.status_code, body=_json_or_empty(r))
        return r.json()

    async def load_account(self, public_key: str) -> AccountSnapshot:
        try:
            data = await self._get_json(f"/accounts/{public_key}")
        except HorizonError as e:
            if e.status == 404:
                raise AccountNotFound(f"account {public_key} not found", status=404, body=e.body) from e
            raise
        return parse_account(data)

    async def list_claim_grants(self, claimant_key: str) -> list[ClaimGrant]:
        """Every claimable balance naming ``claimant_key``, following ``_links.next``.

        Reads at most ``max_pages`` pages; a short page is the last one.
        """
        path = "/claimable_balances"
        params: dict | None = {"claimant": claimant_key, "order": "desc", "limit": self.page_size}
        seen = set()
        grants = []
        for _ in range(self.max_pages):
            data = await self._get_json(path, params=params)
            records = data.get("_embedded", {}).get("records", [])
            for record in records:
                try:
                    grants.append(parse_claim_grant(record))
                except (KeyError, ArithmeticError) as e:
                    log.warning("Skipping malformed claimable balance %s: %s", record.get("id"), e)
            next_href = data.get("_links", {}).get("next", {}).get("href")
            if len(records) < self.page_size or not next_href or next_href in seen:
                break
            seen.add(next_href)
            path, params = next_href, None
        else:
            log.warning("Stopped listing claimable balances after %s pages", self.max_pages)
        return grants

    async def current_reference_fee(self) -> int:
        """Base fee per operation in stroops from the latest ledger."""
        try:
            data = await self._get_json("/ledgers", params={"order": "desc", "limit": 1})
            fee = int(data["_embedded"]["records"][0]["base_fee_in_stroops"])
            log.debug("Fetched network base fee: %s stroops", fee)
            return fee
        except (HorizonError, httpx.HTTPError, KeyError, IndexError, ValueError) as e:
            log.warning("Failed to fetch network fee, using fallback %s stroops: %s", C.FALLBACK_BASE_FEE, e)
            return C.FALLBACK_BASE_FEE

    async def submit_transaction(self, envelope_xdr: str) -> httpx.Response:
        return await self._http.post("/transactions", data={"tx": envelope_xdr})


def _json_or_empty(r: httpx.Response) -> dict:
    try:
        body = r.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
