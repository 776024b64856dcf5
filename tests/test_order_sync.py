"""
Order sync engine tests - incremental listing, change detection, enrichment, failure isolation
"""
from datetime import datetime

import httpx
import pytest

from app.models import MarketplaceOrder
from app.services import order_sync
from app.services.credential_vault import CredentialVault
from app.services.errors import IntegrationNotFound, RefreshFailure
from app.services.order_sync import (
    OrderSyncEngine,
    compute_watermark,
    normalize_order_ids,
    summarize_payment_fees,
)


def _summary(order_id, last_updated):
    return {"id": order_id, "last_updated": last_updated, "date_created": "2024-05-01T09:00:00.000-00:00"}


def _detail(order_id, last_updated, **extra):
    body = {
        "id": order_id,
        "status": "paid",
        "status_detail": None,
        "date_created": "2024-05-01T09:00:00.000-00:00",
        "date_closed": "2024-05-01T09:01:00.000-00:00",
        "last_updated": last_updated,
        "order_items": [{"item": {"id": "MLB1"}, "quantity": 1, "unit_price": 100}],
        "buyer": {"id": 42},
        "seller": {"id": 555},
        "payments": [],
        "tags": ["paid"],
    }
    body.update(extra)
    return body


@pytest.fixture
def engine_for(db_session, key, fake):
    def _make(**kwargs) -> OrderSyncEngine:
        http = fake.client()
        vault = CredentialVault(db_session, key=key, http=http)
        return OrderSyncEngine(db_session, vault, http, **kwargs)

    return _make


def _listing(fake, orders, total=None):
    fake.add("GET", "/orders/search", json={"results": orders, "paging": {"total": len(orders) if total is None else total}})


def _three_orders(fake, order_2_extra=None):
    stamps = {1: "2024-05-01T12:00:00.000-00:00", 2: "2024-05-01T11:00:00.000-00:00", 3: "2024-05-01T10:00:00.000-00:00"}
    _listing(fake, [_summary(oid, ts) for oid, ts in stamps.items()])
    for oid, ts in stamps.items():
        extra = order_2_extra if oid == 2 and order_2_extra else {}
        fake.add("GET", f"/orders/{oid}", json=_detail(oid, ts, **extra))


def _stored(db_session, order_id) -> MarketplaceOrder:
    return db_session.query(MarketplaceOrder).filter(MarketplaceOrder.marketplace_order_id == order_id).one()


def _stored_ids(db_session) -> set:
    return {r.marketplace_order_id for r in db_session.query(MarketplaceOrder).all()}


class TestIncrementalSync:
    """Listing, watermark and change detection"""

    @pytest.mark.asyncio
    async def test_first_run_creates_orders(self, db_session, fake, make_integration, engine_for):
        make_integration()
        _listing(fake, [_summary(1, "2024-05-01T12:00:00.000-00:00"), _summary(2, "2024-05-01T11:00:00.000-00:00")])
        fake.add("GET", "/orders/1", json=_detail(1, "2024-05-01T12:00:00.000-00:00"))
        fake.add("GET", "/orders/2", json=_detail(2, "2024-05-01T11:00:00.000-00:00"))

        result = await engine_for().sync(organization_id="org-1")

        assert (result.orders_found, result.created, result.updated) == (2, 2, 0)
        row = db_session.query(MarketplaceOrder).filter(MarketplaceOrder.marketplace_order_id == "1").one()
        assert row.organization_id == "org-1"
        assert row.company_id == "company-1"
        assert row.marketplace_name == "Mercado Livre"
        assert row.status == "paid"
        assert row.last_updated == datetime(2024, 5, 1, 12, 0)
        assert row.data["id"] == 1
        assert row.tags == ["paid"]
        assert row.last_synced_at is not None
        # first run has no watermark
        assert "order.last_updated.from" not in fake.calls_to("/orders/search")[0].url.params

    @pytest.mark.asyncio
    async def test_second_run_is_idempotent(self, db_session, fake, make_integration, engine_for):
        make_integration()
        _listing(fake, [_summary(1, "2024-05-01T12:00:00.000-00:00")])
        fake.add("GET", "/orders/1", json=_detail(1, "2024-05-01T12:00:00.000-00:00"))

        await engine_for().sync(organization_id="org-1")
        second = await engine_for().sync(organization_id="org-1")

        assert (second.created, second.updated, second.skipped) == (0, 0, 1)
        assert len(fake.calls_to("/orders/1")) == 1
        assert db_session.query(MarketplaceOrder).count() == 1

    @pytest.mark.asyncio
    async def test_watermark_sent_with_overlap(self, db_session, fake, make_integration, engine_for):
        make_integration()
        _listing(fake, [_summary(1, "2024-05-01T12:00:00.000-00:00")])
        fake.add("GET", "/orders/1", json=_detail(1, "2024-05-01T12:00:00.000-00:00"))
        await engine_for().sync(organization_id="org-1")

        await engine_for().sync(organization_id="org-1")

        params = fake.calls_to("/orders/search")[-1].url.params
        assert params["order.last_updated.from"] == "2024-05-01T11:50:00.000Z"

    @pytest.mark.asyncio
    async def test_changed_order_is_updated(self, db_session, fake, make_integration, engine_for):
        make_integration()
        _listing(fake, [_summary(1, "2024-05-01T12:00:00.000-00:00")])
        fake.add("GET", "/orders/1", json=_detail(1, "2024-05-01T12:00:00.000-00:00"))
        await engine_for().sync(organization_id="org-1")

        _listing(fake, [_summary(1, "2024-05-02T08:00:00.000-00:00")])
        fake.add("GET", "/orders/1", json=_detail(1, "2024-05-02T08:00:00.000-00:00", status="cancelled"))
        result = await engine_for().sync(organization_id="org-1")

        assert (result.created, result.updated) == (0, 1)
        row = db_session.query(MarketplaceOrder).one()
        assert row.status == "cancelled"
        assert row.last_updated == datetime(2024, 5, 2, 8, 0)

    @pytest.mark.asyncio
    async def test_full_sync_ignores_watermark(self, db_session, fake, make_integration, engine_for):
        make_integration()
        _listing(fake, [_summary(1, "2024-05-01T12:00:00.000-00:00")])
        fake.add("GET", "/orders/1", json=_detail(1, "2024-05-01T12:00:00.000-00:00"))
        await engine_for().sync(organization_id="org-1")

        await engine_for().sync(organization_id="org-1", full=True)

        assert "order.last_updated.from" not in fake.calls_to("/orders/search")[-1].url.params

    @pytest.mark.asyncio
    async def test_pagination_stops_at_total(self, db_session, fake, make_integration, engine_for):
        make_integration()

        def paged(request):
            offset = int(request.url.params["offset"])
            results = [_summary(offset + 1, "2024-05-01T12:00:00.000-00:00"), _summary(offset + 2, "2024-05-01T12:00:00.000-00:00")]
            return httpx.Response(200, json={"results": results, "paging": {"total": 4}})

        fake.add("GET", "/orders/search", handler=paged)
        for oid in (1, 2, 3, 4):
            fake.add("GET", f"/orders/{oid}", json=_detail(oid, "2024-05-01T12:00:00.000-00:00"))

        result = await engine_for(page_size=2).sync(organization_id="org-1")

        assert len(fake.calls_to("/orders/search")) == 2
        assert result.orders_found == 4
        assert result.created == 4

    @pytest.mark.asyncio
    async def test_page_cap(self, db_session, fake, make_integration, engine_for):
        make_integration()
        fake.add("GET", "/orders/search", json={"results": [_summary(1, "2024-05-01T12:00:00.000-00:00")], "paging": {"total": 10_000}})
        fake.add("GET", "/orders/1", json=_detail(1, "2024-05-01T12:00:00.000-00:00"))

        await engine_for(page_size=1, max_pages=3).sync(organization_id="org-1")

        assert len(fake.calls_to("/orders/search")) == 3

    @pytest.mark.asyncio
    async def test_listing_stops_when_page_older_than_watermark(self, db_session, fake, make_integration, engine_for):
        make_integration()
        _listing(fake, [_summary(1, "2024-05-01T12:00:00.000-00:00")])
        fake.add("GET", "/orders/1", json=_detail(1, "2024-05-01T12:00:00.000-00:00"))
        await engine_for().sync(organization_id="org-1")

        old_page = [_summary(1, "2024-05-01T12:00:00.000-00:00"), _summary(9, "2024-04-01T00:00:00.000-00:00")]
        fake.add("GET", "/orders/search", json={"results": old_page, "paging": {"total": 500}})
        fake.add("GET", "/orders/9", json=_detail(9, "2024-04-01T00:00:00.000-00:00"))
        before = len(fake.calls_to("/orders/search"))
        await engine_for(page_size=2).sync(organization_id="org-1")

        assert len(fake.calls_to("/orders/search")) - before == 1


class TestForcedSync:
    """Explicit order ids bypass listing and the skip rule"""

    @pytest.mark.asyncio
    async def test_forced_ids_refetch_unchanged_orders(self, db_session, fake, make_integration, engine_for):
        make_integration()
        _listing(fake, [_summary(1, "2024-05-01T12:00:00.000-00:00")])
        fake.add("GET", "/orders/1", json=_detail(1, "2024-05-01T12:00:00.000-00:00"))
        await engine_for().sync(organization_id="org-1")
        listings = len(fake.calls_to("/orders/search"))

        result = await engine_for().sync(organization_id="org-1", order_ids=["1", 1, "abc", "2000010000000000"])

        assert result.orders_forced == 1
        assert result.orders_found == 1
        assert result.updated == 1
        assert len(fake.calls_to("/orders/1")) == 2
        assert len(fake.calls_to("/orders/search")) == listings
        assert result.to_response() == {"ok": True, "orders_found": 1, "created": 0, "updated": 1, "orders_forced": 1}

    def test_normalize_order_ids(self):
        assert normalize_order_ids(["3", 2, "3", " 4 ", "x1", "2000010000000000", None]) == ["3", "2", "4"]
        assert normalize_order_ids(None) == []


class TestFailureIsolation:
    """One broken order does not stop the run"""

    @pytest.mark.asyncio
    async def test_failed_order_is_counted_and_others_persist(self, db_session, fake, make_integration, engine_for):
        make_integration()
        _listing(fake, [
            _summary(1, "2024-05-01T12:00:00.000-00:00"),
            _summary(2, "2024-05-01T11:00:00.000-00:00"),
            _summary(3, "2024-05-01T10:00:00.000-00:00"),
        ])
        fake.add("GET", "/orders/1", json=_detail(1, "2024-05-01T12:00:00.000-00:00"))
        fake.add("GET", "/orders/2", status=500, json={"message": "internal_error"})
        fake.add("GET", "/orders/3", json=_detail(3, "2024-05-01T10:00:00.000-00:00"))

        result = await engine_for().sync(organization_id="org-1")

        assert (result.created, result.failed) == (2, 1)
        ids = {r.marketplace_order_id for r in db_session.query(MarketplaceOrder).all()}
        assert ids == {"1", "3"}

    @pytest.mark.asyncio
    async def test_forbidden_payment_leaves_fees_null_and_batch_continues(
        self, db_session, fake, make_integration, engine_for
    ):
        make_integration()
        _three_orders(fake, order_2_extra={"payments": [{"id": 77}]})
        fake.add("GET", "/v1/payments/77", status=403, json={"message": "forbidden"})

        result = await engine_for().sync(organization_id="org-1")

        assert (result.created, result.failed, result.degraded) == (3, 0, False)
        assert _stored_ids(db_session) == {"1", "2", "3"}
        assert fake.refresh_calls == 1
        payment = _stored(db_session, "2").payments[0]
        assert payment["fee_details"] is None and payment["fees_total"] is None

    @pytest.mark.asyncio
    async def test_forbidden_shipment_detail_is_skipped(self, db_session, fake, make_integration, engine_for):
        make_integration()
        _three_orders(fake, order_2_extra={"shipping": {"id": 900}})
        fake.add("GET", "/shipments/900", status=403, json={"message": "forbidden"})

        result = await engine_for().sync(organization_id="org-1")

        assert result.failed == 0
        assert _stored_ids(db_session) == {"1", "2", "3"}
        assert _stored(db_session, "2").shipments[0]["detail_fetched_at"] is None

    @pytest.mark.asyncio
    async def test_rejected_refresh_grant_stops_the_batch(self, db_session, fake, make_integration, engine_for):
        make_integration()
        _three_orders(fake, order_2_extra={"payments": [{"id": 77}]})
        fake.add("GET", "/v1/payments/77", status=403, json={"message": "forbidden"})
        fake.refresh_status = 400

        result = await engine_for().sync(organization_id="org-1")

        assert result.degraded is True
        assert result.failed == 1
        assert _stored_ids(db_session) == {"1"}
        assert fake.calls_to("/orders/3") == []

    @pytest.mark.asyncio
    async def test_malformed_payment_charge_does_not_abort(self, db_session, fake, make_integration, engine_for):
        make_integration()
        _three_orders(fake, order_2_extra={"payments": [{"id": 77}]})
        fake.add("GET", "/v1/payments/77", json={"charges_details": [{"type": "fee", "amounts": 5}]})

        result = await engine_for().sync(organization_id="org-1")

        assert (result.created, result.failed) == (3, 0)
        assert _stored(db_session, "2").payments[0]["fees_total"] == 0

    @pytest.mark.asyncio
    async def test_non_object_order_body_fails_only_that_order(self, db_session, fake, make_integration, engine_for):
        make_integration()
        _three_orders(fake)
        fake.add("GET", "/orders/2", json=[{"id": 2}])

        result = await engine_for().sync(organization_id="org-1")

        assert (result.created, result.failed) == (2, 1)
        assert _stored_ids(db_session) == {"1", "3"}

    @pytest.mark.asyncio
    async def test_unexpected_error_is_counted_and_run_continues(
        self, db_session, fake, make_integration, engine_for, monkeypatch
    ):
        make_integration()
        _three_orders(fake)
        original = order_sync.build_order_values

        def explode_on_order_2(order, *args, **kwargs):
            if order.get("id") == 2:
                raise KeyError("seller")
            return original(order, *args, **kwargs)

        monkeypatch.setattr(order_sync, "build_order_values", explode_on_order_2)

        result = await engine_for().sync(organization_id="org-1")

        assert (result.created, result.failed, result.degraded) == (2, 1, False)
        assert result.errors == ["2: KeyError: 'seller'"]
        assert _stored_ids(db_session) == {"1", "3"}

    @pytest.mark.asyncio
    async def test_unknown_organization(self, db_session, fake, engine_for):
        with pytest.raises(IntegrationNotFound):
            await engine_for().sync(organization_id="nope")

    @pytest.mark.asyncio
    async def test_refresh_failure_before_listing_propagates(self, db_session, fake, make_integration, engine_for):
        make_integration(access_token="revoked")
        fake.refresh_status = 400
        _listing(fake, [])

        with pytest.raises(RefreshFailure):
            await engine_for().sync(organization_id="org-1")


class TestEnrichment:
    """Payments fees and shipment detail"""

    @pytest.mark.asyncio
    async def test_payments_and_shipments_enriched(self, db_session, fake, make_integration, engine_for):
        make_integration()
        detail = _detail(
            1,
            "2024-05-01T12:00:00.000-00:00",
            payments=[{"id": 7001, "marketplace_fee": 10.0}, {"id": 7002}],
            shipping={"id": 900},
        )
        _listing(fake, [_summary(1, "2024-05-01T12:00:00.000-00:00")])
        fake.add("GET", "/orders/1", json=detail)
        fake.add("GET", "/v1/payments/7001", json={"charges_details": [
            {"type": "fee", "name": "meli_fee", "amounts": {"original": 12.5}},
            {"type": "fee", "name": "financing_fee", "amounts": {"original": 2.5}},
            {"type": "tax", "name": "iva", "amounts": {"original": 99}},
        ]})
        fake.add("GET", "/v1/payments/7002", json={"fee_details": [{"type": "mercadopago_fee", "amount": 3.2}]})
        fake.add("GET", "/shipments/900", json={"id": 900, "status": "shipped", "order_id": 1})
        fake.add("GET", "/shipments/900/costs", json={"senders": [{"cost": 20}]})
        # /shipments/900/tracking is not registered -> 404

        await engine_for().sync(organization_id="org-1")

        row = db_session.query(MarketplaceOrder).one()
        first, second = row.payments
        assert first["fees_total"] == 15.0
        assert [f["name"] for f in first["fee_details"]] == ["meli_fee", "financing_fee"]
        assert first["marketplace_fee"] == 10.0
        assert second["fees_total"] == 3.2
        assert second["marketplace_fee"] == 3.2

        (shipment,) = row.shipments
        assert shipment["status"] == "shipped"
        assert shipment["costs"] == {"senders": [{"cost": 20}]}
        assert shipment["costs_fetched_at"] is not None
        assert shipment["tracking"] is None
        assert shipment["tracking_fetched_at"] is None
        assert shipment["detail_fetched_at"] is not None

    @pytest.mark.asyncio
    async def test_payment_detail_failure_leaves_fees_null(self, db_session, fake, make_integration, engine_for):
        make_integration()
        _listing(fake, [_summary(1, "2024-05-01T12:00:00.000-00:00")])
        fake.add("GET", "/orders/1", json=_detail(1, "2024-05-01T12:00:00.000-00:00", payments=[{"id": 7001}]))

        result = await engine_for().sync(organization_id="org-1")

        assert result.created == 1
        (payment,) = db_session.query(MarketplaceOrder).one().payments
        assert payment["fee_details"] is None
        assert payment["fees_total"] is None

    @pytest.mark.asyncio
    async def test_embedded_shipments_used_when_detail_missing(self, db_session, fake, make_integration, engine_for):
        make_integration()
        _listing(fake, [_summary(1, "2024-05-01T12:00:00.000-00:00")])
        fake.add("GET", "/orders/1", json=_detail(1, "2024-05-01T12:00:00.000-00:00", shipments=[{"id": 901, "status": "ready"}]))

        await engine_for().sync(organization_id="org-1")

        (shipment,) = db_session.query(MarketplaceOrder).one().shipments
        assert shipment["id"] == 901
        assert shipment["detail_fetched_at"] is None
        assert shipment["tracking"] is None and shipment["costs"] is None

    def test_summarize_without_fee_data(self):
        assert summarize_payment_fees({"id": 1}) == (None, None)

    def test_summarize_skips_malformed_amounts(self):
        payment = {"charges_details": [
            {"type": "fee", "amounts": 5},
            {"type": "fee", "amounts": {"original": "n/a"}},
            {"type": "fee", "name": "meli_fee", "amounts": {"original": "4.5"}},
        ]}
        lines, total = summarize_payment_fees(payment)
        assert [line["name"] for line in lines] == ["meli_fee"]
        assert total == 4.5
        assert summarize_payment_fees({"fee_details": ["x", {"amount": None}]}) == ([], 0)


class TestWatermark:
    def test_no_orders_no_watermark(self, db_session):
        assert compute_watermark(db_session, "org-1", "Mercado Livre", 10) is None

    def test_floor_at_epoch(self, db_session):
        db_session.add(MarketplaceOrder(
            organization_id="org-1",
            marketplace_name="Mercado Livre",
            marketplace_order_id="1",
            last_updated=datetime(1970, 1, 1, 0, 5),
        ))
        db_session.commit()
        assert compute_watermark(db_session, "org-1", "Mercado Livre", 10) == datetime(1970, 1, 1)
