"""
Tests para reembolsos: plan, idempotencia y reintentos.
"""
import pytest
from datetime import datetime, timezone
from unittest.mock import patch, AsyncMock

from ticket_commerce.models.order import Order, ItemType
from ticket_commerce.models.refund import (
    RefundRequest, RefundItemRequest, RefundChildPolicy, RefundResponse
)
from ticket_commerce.services import refund_service
from ticket_commerce.core.exceptions import (
    ValidationError, OverRefundError, ConcurrencyConflict
)
from tests.utils.factories import OrderFactory
from tests.utils.mocks import MockDBConnection, MockDBContextManager


NOW = datetime.now(timezone.utc)


def _order(**kwargs) -> Order:
    return Order(**OrderFactory.create(**kwargs))


def _request(*items, request_id="req-1") -> RefundRequest:
    return RefundRequest(
        request_id=request_id,
        items=[RefundItemRequest(order_item_id=item_id, quantity=qty) for item_id, qty in items]
    )


def _amounts(refund_items):
    return {ri.order_item_id: (ri.quantity, ri.amount_in_cents) for ri in refund_items}


class TestPlanRefund:
    """Tests para plan_refund"""

    def test_partial_refund_is_proportional(self):
        order = _order(lines=[(4, 10000, 300, 200, 1000)], event_fee=500)
        tickets = order.items_of_type(ItemType.TICKETS)[0]
        discount = order.items_of_type(ItemType.DISCOUNT)[0]
        fees = order.items_of_type(ItemType.PER_UNIT_FEES)[0]

        planned = _amounts(refund_service.plan_refund(order, {}, _request((tickets.id, 2))))

        assert planned[tickets.id] == (2, 20000)
        assert planned[discount.id] == (2, -2000)
        assert planned[fees.id] == (2, 600)
        # Quedan boletas: el cargo por orden no se devuelve
        assert order.items_of_type(ItemType.EVENT_FEES)[0].id not in planned

    def test_explicit_policy_only_refunds_listed_items(self):
        order = _order(lines=[(4, 10000, 300, 200, 0)])
        tickets = order.items_of_type(ItemType.TICKETS)[0]

        planned = _amounts(refund_service.plan_refund(
            order, {}, _request((tickets.id, 1)), policy=RefundChildPolicy.EXPLICIT
        ))

        assert planned == {tickets.id: (1, 10000)}

    def test_explicit_policy_still_takes_children_on_full_refund(self):
        order = _order(lines=[(2, 10000, 300, 200, 0)])
        tickets = order.items_of_type(ItemType.TICKETS)[0]
        fees = order.items_of_type(ItemType.PER_UNIT_FEES)[0]

        planned = _amounts(refund_service.plan_refund(
            order, {tickets.id: 1}, _request((tickets.id, 1)), policy=RefundChildPolicy.EXPLICIT
        ))

        assert planned[fees.id] == (2, 600)

    def test_full_refund_includes_event_fee(self):
        order = _order(lines=[(2, 10000, 300, 200, 0)], event_fee=500, client_event_fee=300)
        tickets = order.items_of_type(ItemType.TICKETS)[0]
        event_fee = order.items_of_type(ItemType.EVENT_FEES)[0]

        refund_items = refund_service.plan_refund(order, {}, _request((tickets.id, 2)))

        assert _amounts(refund_items)[event_fee.id] == (1, 500)
        assert sum(ri.amount_in_cents for ri in refund_items) == order.total_in_cents

    def test_event_fee_kept_when_disabled(self):
        order = _order(lines=[(2, 10000, 300, 200, 0)], event_fee=500)
        tickets = order.items_of_type(ItemType.TICKETS)[0]
        event_fee = order.items_of_type(ItemType.EVENT_FEES)[0]

        planned = _amounts(refund_service.plan_refund(
            order, {}, _request((tickets.id, 2)), refund_event_fee_on_full_refund=False
        ))

        assert event_fee.id not in planned

    def test_over_refund(self):
        order = _order(lines=[(2, 10000, 300, 200, 0)])
        tickets = order.items_of_type(ItemType.TICKETS)[0]

        with pytest.raises(OverRefundError) as exc_info:
            refund_service.plan_refund(order, {tickets.id: 2}, _request((tickets.id, 1)))

        assert exc_info.value.status_code == 409
        assert exc_info.value.details["refundable"] == 0

    def test_duplicate_lines_are_merged_before_checking(self):
        order = _order(lines=[(2, 10000, 300, 200, 0)])
        tickets = order.items_of_type(ItemType.TICKETS)[0]

        with pytest.raises(OverRefundError):
            refund_service.plan_refund(order, {}, _request((tickets.id, 2), (tickets.id, 1)))

    def test_unpaid_order(self):
        order = _order(status="Pending")
        tickets = order.items_of_type(ItemType.TICKETS)[0]

        with pytest.raises(ValidationError):
            refund_service.plan_refund(order, {}, _request((tickets.id, 1)))

    def test_foreign_item(self):
        order = _order()

        with pytest.raises(ValidationError):
            refund_service.plan_refund(order, {}, _request(("not-in-order", 1)))

    def test_discount_alone_would_be_negative(self):
        order = _order(lines=[(2, 10000, 300, 200, 1000)])
        discount = order.items_of_type(ItemType.DISCOUNT)[0]

        with pytest.raises(ValidationError):
            refund_service.plan_refund(order, {}, _request((discount.id, 1)))

    def test_fingerprint_ignores_line_order(self):
        a = _request(("x", 1), ("y", 2))
        b = _request(("y", 2), ("x", 1))

        assert refund_service.request_fingerprint(a) == refund_service.request_fingerprint(b)
        assert refund_service.request_fingerprint(a) != refund_service.request_fingerprint(_request(("x", 2)))


def _conn_for(order_dict, refunded=None, existing=None) -> MockDBConnection:
    conn = MockDBConnection()
    conn.set_fetchrow_return("FROM orders o", OrderFactory.row(order_dict))
    conn.set_fetch_return("FROM order_items oi", order_dict["items"])
    conn.set_fetch_return("GROUP BY ri.order_item_id", [
        {"order_item_id": item_id, "refunded_quantity": qty}
        for item_id, qty in (refunded or {}).items()
    ])
    conn.set_fetchrow_return("WHERE r.order_id = $1 AND r.request_id = $2", existing)
    conn.set_fetchrow_return("INSERT INTO refunds", {"created_at": NOW})
    return conn


class TestRefundOrder:
    """Tests para refund_order"""

    @pytest.mark.asyncio
    async def test_refund_is_persisted(self):
        order_dict = OrderFactory.create(lines=[(2, 10000, 300, 200, 0)])
        tickets_id = order_dict["items"][0]["id"]
        conn = _conn_for(order_dict)

        with patch(
            'ticket_commerce.services.refund_service.get_db_connection',
            return_value=MockDBContextManager(conn)
        ):
            response = await refund_service.refund_order(
                order_dict["id"], _request((tickets_id, 1)), policy=RefundChildPolicy.PROPORTIONAL
            )

        assert response.replayed is False
        assert response.amount_in_cents == 10300
        insert = conn.calls_for("fetchrow", "INSERT INTO refunds")[0]
        assert insert[2][2] == "req-1"
        assert insert[2][5] == 10300
        rows = conn.calls_for("executemany", "INSERT INTO refund_items")[0][2]
        assert {row[2] for row in rows} == {item["id"] for item in order_dict["items"][:2]}

    @pytest.mark.asyncio
    async def test_replay_returns_original_refund(self):
        order_dict = OrderFactory.create(lines=[(2, 10000, 300, 200, 0)])
        tickets_id = order_dict["items"][0]["id"]
        request = _request((tickets_id, 1))
        existing = {
            "id": "refund-1",
            "order_id": order_dict["id"],
            "request_id": "req-1",
            "request_fingerprint": refund_service.request_fingerprint(request),
            "reason": None,
            "created_at": NOW,
        }
        conn = _conn_for(order_dict, existing=existing)
        conn.set_fetch_return("WHERE ri.refund_id = $1", [
            {
                "id": "refund-item-1",
                "refund_id": "refund-1",
                "order_item_id": tickets_id,
                "quantity": 1,
                "amount_in_cents": 10000
            }
        ])

        with patch(
            'ticket_commerce.services.refund_service.get_db_connection',
            return_value=MockDBContextManager(conn)
        ):
            response = await refund_service.refund_order(order_dict["id"], request)

        assert response.replayed is True
        assert response.id == "refund-1"
        assert not conn.was_called_with("fetchrow", "INSERT INTO refunds")

    @pytest.mark.asyncio
    async def test_reused_request_id_with_other_items(self):
        order_dict = OrderFactory.create(lines=[(2, 10000, 300, 200, 0)])
        tickets_id = order_dict["items"][0]["id"]
        existing = {
            "id": "refund-1",
            "order_id": order_dict["id"],
            "request_id": "req-1",
            "request_fingerprint": "something-else",
            "reason": None,
            "created_at": NOW,
        }
        conn = _conn_for(order_dict, existing=existing)

        with patch(
            'ticket_commerce.services.refund_service.get_db_connection',
            return_value=MockDBContextManager(conn)
        ):
            with pytest.raises(ValidationError):
                await refund_service.refund_order(order_dict["id"], _request((tickets_id, 1)))

    @pytest.mark.asyncio
    async def test_conflict_is_retried_once(self):
        response = RefundResponse(
            id="refund-1", order_id="order-1", request_id="req-1", items=[], amount_in_cents=0
        )
        apply = AsyncMock(side_effect=[ConcurrencyConflict(), response])

        with patch('ticket_commerce.services.refund_service._apply_refund', apply):
            result = await refund_service.refund_order("order-1", _request(("x", 1)))

        assert result is response
        assert apply.await_count == 2

    @pytest.mark.asyncio
    async def test_persistent_conflict_surfaces(self):
        apply = AsyncMock(side_effect=ConcurrencyConflict())

        with patch('ticket_commerce.services.refund_service._apply_refund', apply):
            with pytest.raises(ConcurrencyConflict):
                await refund_service.refund_order("order-1", _request(("x", 1)))

        assert apply.await_count == 2
