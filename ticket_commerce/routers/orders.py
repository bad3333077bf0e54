from fastapi import APIRouter
from typing import List
from ticket_commerce.models.order import Order, OrderCreate, PaymentConfirmation
from ticket_commerce.models.refund import Refund, RefundRequest, RefundResponse
from ticket_commerce.services import order_builder_service, orders_service, refund_service

router = APIRouter()


@router.post("", response_model=Order, status_code=201)
async def create_order(data: OrderCreate):
    """
    Price a cart into a Pending order.

    **Request Body:**
    - `organization_id`: Selling organization
    - `box_office_pricing`: Use box office prices (in-person sale)
    - `items`: Ticket type, quantity and optional redemption code per line

    **Errors:**
    - 400 for an invalid ticket type, quantity or redemption code
    - 409 when a concurrent order changed code or hold availability
    - 500 when the organization has no usable fee schedule
    """
    return await order_builder_service.build_order(data.items, data.context())


@router.get("/{order_id}", response_model=Order)
async def get_order(order_id: str):
    """Order with its item tree and derived refund status"""
    return await orders_service.get_order(order_id)


@router.post("/{order_id}/payment", response_model=Order)
async def confirm_payment(order_id: str, data: PaymentConfirmation):
    """Mark a Pending order as Paid; the amount must equal the order total"""
    return await orders_service.confirm_payment(order_id, data)


@router.post("/{order_id}/cancel", response_model=Order)
async def cancel_order(order_id: str):
    return await orders_service.cancel_order(order_id)


@router.post("/{order_id}/refunds", response_model=RefundResponse, status_code=201)
async def create_refund(order_id: str, data: RefundRequest):
    """
    Refund items of a paid order.

    `request_id` makes the call idempotent: repeating it with the same items
    returns the original refund with `replayed` set.

    **Errors:**
    - 400 when the order is not paid or an item is foreign to it
    - 409 when a quantity exceeds what is still refundable
    """
    return await refund_service.refund_order(order_id, data)


@router.get("/{order_id}/refunds", response_model=List[Refund])
async def list_refunds(order_id: str):
    return await orders_service.list_refunds(order_id)
