"""
Tests para los endpoints de ordenes, reembolsos y reportes.
"""
import pytest
from httpx import AsyncClient
from unittest.mock import patch, AsyncMock

from ticket_commerce.models.order import Order
from ticket_commerce.models.refund import RefundResponse
from ticket_commerce.models.report import SalesSummaryPage, SalesSummaryRow
from ticket_commerce.core.exceptions import (
    OverRefundError, CodeExpired, NoFeeScheduleConfigured, InvalidRange
)
from tests.utils.factories import OrderFactory, ORGANIZATION_ID


class TestOrderEndpoints:
    """Tests para /orders"""

    @pytest.mark.asyncio
    async def test_create_order(self, client: AsyncClient):
        order = Order(**OrderFactory.create(status="Pending"))

        with patch(
            'ticket_commerce.services.order_builder_service.build_order',
            new_callable=AsyncMock, return_value=order
        ) as mock_build:
            response = await client.post("/orders", json={
                "organization_id": ORGANIZATION_ID,
                "items": [{"ticket_type_id": "tt-1", "quantity": 2, "redemption_code": ""}]
            })

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "Pending"
        assert data["total_in_cents"] == order.total_in_cents
        selections, context = mock_build.await_args.args
        assert selections[0].redemption_code is None
        assert context.box_office_pricing is False

    @pytest.mark.asyncio
    async def test_create_order_requires_items(self, client: AsyncClient):
        response = await client.post("/orders", json={"organization_id": ORGANIZATION_ID, "items": []})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_quantity_as_string_is_rejected(self, client: AsyncClient):
        response = await client.post("/orders", json={
            "organization_id": ORGANIZATION_ID,
            "items": [{"ticket_type_id": "tt-1", "quantity": "2"}]
        })

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_payment_amount_as_string_is_rejected(self, client: AsyncClient):
        response = await client.post("/orders/order-1/payment", json={"amount_in_cents": "20600"})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_code_error_includes_reason(self, client: AsyncClient):
        with patch(
            'ticket_commerce.services.order_builder_service.build_order',
            new_callable=AsyncMock, side_effect=CodeExpired(details={"code": "OLD"})
        ):
            response = await client.post("/orders", json={
                "organization_id": ORGANIZATION_ID,
                "items": [{"ticket_type_id": "tt-1", "quantity": 1, "redemption_code": "OLD"}]
            })

        assert response.status_code == 400
        data = response.json()
        assert data["error"] is True
        assert data["details"]["reason"] == "expired"

    @pytest.mark.asyncio
    async def test_fee_misconfiguration_is_server_error(self, client: AsyncClient):
        with patch(
            'ticket_commerce.services.order_builder_service.build_order',
            new_callable=AsyncMock, side_effect=NoFeeScheduleConfigured("No fee schedule")
        ):
            with patch('ticket_commerce.services.error_notifier.notify_error', new_callable=AsyncMock) as notify:
                response = await client.post("/orders", json={
                    "organization_id": ORGANIZATION_ID,
                    "items": [{"ticket_type_id": "tt-1", "quantity": 1}]
                })

        assert response.status_code == 500
        notify.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_get_order(self, client: AsyncClient):
        order = Order(**OrderFactory.create())

        with patch(
            'ticket_commerce.services.orders_service.get_order',
            new_callable=AsyncMock, return_value=order
        ):
            response = await client.get(f"/orders/{order.id}")

        assert response.status_code == 200
        assert response.json()["refund_status"] == "None"

    @pytest.mark.asyncio
    async def test_get_missing_order(self, client: AsyncClient):
        response = await client.get("/orders/missing")

        assert response.status_code == 404


class TestRefundEndpoints:
    """Tests para /orders/{id}/refunds"""

    @pytest.mark.asyncio
    async def test_create_refund(self, client: AsyncClient):
        refund = RefundResponse(
            id="refund-1", order_id="order-1", request_id="req-1",
            items=[], amount_in_cents=0
        )

        with patch(
            'ticket_commerce.services.refund_service.refund_order',
            new_callable=AsyncMock, return_value=refund
        ):
            response = await client.post("/orders/order-1/refunds", json={
                "request_id": "req-1",
                "items": [{"order_item_id": "item-1", "quantity": 1}]
            })

        assert response.status_code == 201
        assert response.json()["replayed"] is False

    @pytest.mark.asyncio
    async def test_over_refund_conflict(self, client: AsyncClient):
        with patch(
            'ticket_commerce.services.refund_service.refund_order',
            new_callable=AsyncMock, side_effect=OverRefundError(details={"refundable": 0})
        ):
            response = await client.post("/orders/order-1/refunds", json={
                "request_id": "req-1",
                "items": [{"order_item_id": "item-1", "quantity": 5}]
            })

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_refund_quantity_must_be_positive(self, client: AsyncClient):
        response = await client.post("/orders/order-1/refunds", json={
            "request_id": "req-1",
            "items": [{"order_item_id": "item-1", "quantity": 0}]
        })

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_refund_quantity_as_string_is_rejected(self, client: AsyncClient):
        response = await client.post("/orders/order-1/refunds", json={
            "request_id": "req-1",
            "items": [{"order_item_id": "item-1", "quantity": "1"}]
        })

        assert response.status_code == 422


class TestReportEndpoints:
    """Tests para /reports"""

    @pytest.mark.asyncio
    async def test_sales_summary(self, client: AsyncClient):
        page = SalesSummaryPage(
            rows=[SalesSummaryRow(event_name="Festival", ticket_name="General",
                                  face_value_in_cents=10000, online_sale_count=1)],
            total=1, page=0, page_size=100
        )

        with patch(
            'ticket_commerce.services.sales_report_service.aggregate_sales',
            new_callable=AsyncMock, return_value=page
        ) as mock_aggregate:
            response = await client.get(
                f"/reports/organizations/{ORGANIZATION_ID}/sales-summary",
                params={"transaction_start": "2025-01-01T00:00:00Z"}
            )

        assert response.status_code == 200
        assert response.json()["total"] == 1
        filters = mock_aggregate.await_args.args[0]
        assert filters.organization_id == ORGANIZATION_ID
        assert filters.page_size == 100

    @pytest.mark.asyncio
    async def test_invalid_range(self, client: AsyncClient):
        with patch(
            'ticket_commerce.services.sales_report_service.aggregate_sales',
            new_callable=AsyncMock, side_effect=InvalidRange()
        ):
            response = await client.get(f"/reports/organizations/{ORGANIZATION_ID}/sales-summary")

        assert response.status_code == 400
