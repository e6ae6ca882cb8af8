# tests/test_horizon.py
import asyncio
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest

import claimer.constants as C
from claimer.horizon import AccountNotFound, HorizonClient, HorizonError
from claimer.predicates import NotBefore
from conftest import GRANT_ID

BASE = "https://horizon.test"
KEY = "GBZXN7PIRZGNMHGA7MUUUF4GWPY5AYPV6LY4UV2GL6VJGIQRXFDNMADI"

ACCOUNT = {
    "id": KEY,
    "account_id": KEY,
    "sequence": "4611686018427387904",
    "balances": [
        {"asset_type": "credit_alphanum4", "asset_code": "USD", "balance": "12.0000000"},
        {"asset_type": "native", "balance": "3.5000000", "selling_liabilities": "0.5000000"},
    ],
}

GRANTS = {
    "_embedded": {
        "records": [
            {
                "id": GRANT_ID,
                "asset": "native",
                "amount": "100.0000000",
                "claimants": [
                    {"destination": KEY, "predicate": {"not": {"abs_before": "2026-03-14T12:00:00Z"}}},
                    {"destination": "GOTHER", "predicate": {"unconditional": True}},
                ],
            },
            {"id": "broken", "asset": "native", "claimants": []},
        ]
    }
}


def _client(handler, **kwargs) -> HorizonClient:
    http = httpx.AsyncClient(base_url=BASE, transport=httpx.MockTransport(handler))
    return HorizonClient(BASE, client=http, **kwargs)


def _run(handler, call, **kwargs):
    async def go():
        async with _client(handler, **kwargs) as h:
            return await call(h)

    return asyncio.run(go())


def test_load_account():
    def handler(request: httpx.Request):
        assert request.url.path == f"/accounts/{KEY}"
        return httpx.Response(200, json=ACCOUNT)

    acct = _run(handler, lambda h: h.load_account(KEY))
    assert acct.public_key == KEY
    assert acct.sequence == 4611686018427387904
    assert acct.native_balance == Decimal("3.5")
    assert acct.spendable_balance == Decimal("3")


def test_missing_account():
    handler = lambda request: httpx.Response(404, json={"title": "Resource Missing", "status": 404})
    with pytest.raises(AccountNotFound) as exc:
        _run(handler, lambda h: h.load_account(KEY))
    assert exc.value.status == 404


def test_server_error_is_horizon_error():
    handler = lambda request: httpx.Response(500, text="oops")
    with pytest.raises(HorizonError) as exc:
        _run(handler, lambda h: h.load_account(KEY))
    assert not isinstance(exc.value, AccountNotFound)
    assert exc.value.status == 500


def test_list_claim_grants():
    seen = {}

    def handler(request: httpx.Request):
        seen.update(request.url.params)
        return httpx.Response(200, json=GRANTS)

    grants = _run(handler, lambda h: h.list_claim_grants(KEY))
    assert seen["claimant"] == KEY
    assert len(grants) == 1  # malformed record skipped
    g = grants[0]
    assert g.id == GRANT_ID
    assert g.amount == Decimal("100")
    assert g.is_native
    assert isinstance(g.claimant_for(KEY).predicate, NotBefore)


def _grant_page(grant_ids, cursor):
    return {
        "_links": {"next": {"href": f"{BASE}/claimable_balances?claimant={KEY}&cursor={cursor}&limit=2&order=desc"}},
        "_embedded": {
            "records": [
                {"id": gid, "asset": "native", "amount": "1.0000000",
                 "claimants": [{"destination": KEY, "predicate": {"unconditional": True}}]}
                for gid in grant_ids
            ]
        },
    }


def test_list_claim_grants_follows_next_link():
    pages = {None: _grant_page(["a", "b"], "p2"), "p2": _grant_page(["c", "d"], "p3"), "p3": _grant_page(["e"], "p4")}
    requested = []

    def handler(request: httpx.Request):
        cursor = request.url.params.get("cursor")
        requested.append(cursor)
        assert request.url.params["claimant"] == KEY
        return httpx.Response(200, json=pages[cursor])

    grants = _run(handler, lambda h: h.list_claim_grants(KEY), page_size=2)
    assert [g.id for g in grants] == ["a", "b", "c", "d", "e"]
    # the short third page ends the listing
    assert requested == [None, "p2", "p3"]


def test_list_claim_grants_page_cap(caplog):
    requested = []

    def handler(request: httpx.Request):
        n = len(requested)
        requested.append(n)
        return httpx.Response(200, json=_grant_page([f"g{2 * n}", f"g{2 * n + 1}"], f"p{n + 1}"))

    grants = _run(handler, lambda h: h.list_claim_grants(KEY), page_size=2, max_pages=3)
    assert len(requested) == 3
    assert len(grants) == 6
    assert "after 3 pages" in caplog.text


def test_list_claim_grants_stops_on_repeated_link():
    requested = []

    def handler(request: httpx.Request):
        requested.append(request.url.params.get("cursor"))
        return httpx.Response(200, json=_grant_page(["a", "b"], "same"))

    grants = _run(handler, lambda h: h.list_claim_grants(KEY), page_size=2)
    assert requested == [None, "same"]
    assert len(grants) == 4


def test_reference_fee():
    handler = lambda request: httpx.Response(200, json={"_embedded": {"records": [{"base_fee_in_stroops": 100}]}})
    assert _run(handler, lambda h: h.current_reference_fee()) == 100


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, text="unavailable"),
        httpx.Response(200, json={"_embedded": {"records": []}}),
    ],
)
def test_reference_fee_fallback(response):
    assert _run(lambda request: response, lambda h: h.current_reference_fee()) == C.FALLBACK_BASE_FEE


def test_reference_fee_fallback_on_network_error():
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    assert _run(handler, lambda h: h.current_reference_fee()) == C.FALLBACK_BASE_FEE


def test_submit_posts_form():
    seen = {}

    def handler(request: httpx.Request):
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(400, json={"extras": {"result_codes": {"transaction": "tx_bad_seq"}}})

    r = _run(handler, lambda h: h.submit_transaction("AAAA+/=="))
    assert r.status_code == 400
    assert seen["method"] == "POST"
    assert seen["path"] == "/transactions"
    assert seen["form"] == {"tx": ["AAAA+/=="]}
