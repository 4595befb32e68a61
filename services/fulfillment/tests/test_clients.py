"""
Tests for the catalog and customers HTTP clients against a mock transport.
"""
from types import SimpleNamespace

import httpx
import pytest

from app.clients import catalog_client, customers_client

from conftest import run

# Captured before the autouse fakes replace the module functions
get_live_menu_item = catalog_client.get_live_menu_item
get_live_addons = catalog_client.get_live_addons
get_customer = customers_client.get_customer
get_customer_by_external_identity = customers_client.get_customer_by_external_identity

RealAsyncClient = httpx.AsyncClient


@pytest.fixture
def transport(monkeypatch):
    """Route every outgoing request to ``transport.handler``; records requests."""
    recorder = SimpleNamespace(requests=[], handler=None)

    def dispatch(request):
        recorder.requests.append(request)
        return recorder.handler(request)

    def client_factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(dispatch)
        return RealAsyncClient(*args, **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", client_factory)
    return recorder


class TestCatalogClient:

    def test_live_menu_item(self, transport):
        transport.handler = lambda request: httpx.Response(
            200, json={"id": "veg-thali", "price": 180, "meal_type": "lunch", "is_live": True}
        )

        item = run(get_live_menu_item("veg-thali", "LUNCH", token="tok"))

        assert item["price"] == 180
        request = transport.requests[0]
        assert request.url.path == "/menu-items/veg-thali"
        assert request.headers["Authorization"] == "Bearer tok"

    def test_missing_item(self, transport):
        transport.handler = lambda request: httpx.Response(404, json={"detail": "Not found"})
        assert run(get_live_menu_item("nope", "LUNCH")) is None

    @pytest.mark.parametrize("payload", [
        {"id": "x", "price": 1, "meal_type": "LUNCH", "is_live": False},
        {"id": "x", "price": 1, "meal_type": "LUNCH", "is_deleted": True},
        {"id": "x", "price": 1, "meal_type": "DINNER", "is_live": True},
    ])
    def test_unorderable_item(self, transport, payload):
        transport.handler = lambda request: httpx.Response(200, json=payload)
        assert run(get_live_menu_item("x", "LUNCH")) is None

    def test_server_error_propagates(self, transport):
        transport.handler = lambda request: httpx.Response(500)
        with pytest.raises(httpx.HTTPStatusError):
            run(get_live_menu_item("veg-thali", "LUNCH"))

    def test_addons_filtered(self, transport):
        transport.handler = lambda request: httpx.Response(200, json=[
            {"id": "raita", "price": 40, "is_live": True},
            {"id": "papad", "price": 15, "is_live": False},
            {"id": "pickle", "price": 10, "is_live": True},
        ])

        addons = run(get_live_addons(["raita", "papad"]))

        assert [a["id"] for a in addons] == ["raita"]
        assert transport.requests[0].url.params["ids"] == "raita,papad"

    def test_no_addons_requested(self, transport):
        assert run(get_live_addons([])) == []
        assert transport.requests == []


class TestCustomersClient:

    def test_lookup_by_identity(self, transport):
        transport.handler = lambda request: httpx.Response(200, json={"id": "cust-1"})
        assert run(get_customer_by_external_identity("uid-asha"))["id"] == "cust-1"
        assert transport.requests[0].url.path == "/customers/by-uid/uid-asha"

    def test_unknown_customer(self, transport):
        transport.handler = lambda request: httpx.Response(404)
        assert run(get_customer("cust-404")) is None

    def test_network_error_propagates(self, transport):
        def fail(request):
            raise httpx.ConnectError("connection refused", request=request)

        transport.handler = fail
        with pytest.raises(httpx.ConnectError):
            run(get_customer("cust-1"))
