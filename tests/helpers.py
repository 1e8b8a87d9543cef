"""Shared helpers for reading rows back and building signed notifications."""

from __future__ import annotations

from sqlalchemy import func, select

from storefront.schema import order_lines, orders
from storefront.signature import compute_signature

SERVER_KEY = "SB-Mid-server-test-key"

PROVIDER_STATUS_CODES = {
    "settlement": "200",
    "capture": "200",
    "pending": "201",
    "expire": "202",
    "cancel": "202",
    "deny": "202",
}


def notification_body(
    order_code: str,
    transaction_status: str = "settlement",
    gross_amount: str = "200000.00",
    transaction_time: str = "2026-10-19 10:15:00",
    payment_type: str = "bank_transfer",
    transaction_id: str = "9aed5972-5b6a-401e-894b-a32c91ed1a3a",
    server_key: str = SERVER_KEY,
    signature_key: str | None = None,
) -> dict:
    """A Midtrans-shaped notification, signed with ``server_key`` unless overridden."""
    status_code = PROVIDER_STATUS_CODES.get(transaction_status, "201")
    if signature_key is None:
        signature_key = compute_signature(order_code, status_code, gross_amount, server_key)
    return {
        "order_id": order_code,
        "status_code": status_code,
        "gross_amount": gross_amount,
        "signature_key": signature_key,
        "transaction_status": transaction_status,
        "payment_type": payment_type,
        "transaction_id": transaction_id,
        "transaction_time": transaction_time,
        "fraud_status": "accept",
        "currency": "IDR",
    }


async def fetch_order(session_factory, code: str):
    async with session_factory() as session:
        result = await session.execute(select(orders).where(orders.c.code == code))
        return result.first()


async def fetch_lines(session_factory, code: str):
    async with session_factory() as session:
        result = await session.execute(
            select(order_lines)
            .where(order_lines.c.order_code == code)
            .order_by(order_lines.c.line_index)
        )
        return result.fetchall()


async def count_rows(session_factory, table) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(table))
        return result.scalar_one()
