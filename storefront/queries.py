"""
クエリハンドラ (読み取り側)

注文の現在状態はコミット済みの行から読む。閲覧者ごとの状態は持たない。
所有者以外からの参照は「存在しない」と同じ扱いにして、注文の存在を漏らさない。
"""

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import OrderStatus
from .schema import order_lines, orders


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


async def get_order(
    session: AsyncSession,
    order_code: str,
    account_id: str,
) -> dict | None:
    """注文と明細を取得する。見つからない・所有者でない場合は None。"""
    result = await session.execute(
        select(orders).where(orders.c.code == order_code)
    )
    row = result.first()
    if not row or row.account_id != account_id:
        return None

    lines = await session.execute(
        select(order_lines)
        .where(order_lines.c.order_code == order_code)
        .order_by(order_lines.c.line_index)
    )
    return {
        "order_code": row.code,
        "status": row.status,
        "payment_method": row.payment_method,
        "paid_at": _iso(row.paid_at),
        "total_amount": row.total_amount,
        "created_at": _iso(row.created_at),
        "lines": [
            {
                "line_index": line.line_index,
                "product_id": line.product_id,
                "product_name": line.product_name,
                "quantity": line.quantity,
                "price_at_purchase": line.price_at_purchase,
                "subtotal": line.price_at_purchase * line.quantity,
            }
            for line in lines.fetchall()
        ],
    }


async def list_orders(
    session: AsyncSession,
    account_id: str,
    status: OrderStatus | None = None,
) -> list[dict]:
    """アカウントの注文履歴を新しい順に返す。"""
    stmt = select(orders).where(orders.c.account_id == account_id)
    if status is not None:
        stmt = stmt.where(orders.c.status == status.value)
    result = await session.execute(
        stmt.order_by(orders.c.created_at.desc(), orders.c.id.desc())
    )
    return [
        {
            "order_code": row.code,
            "status": row.status,
            "payment_method": row.payment_method,
            "paid_at": _iso(row.paid_at),
            "total_amount": row.total_amount,
            "created_at": _iso(row.created_at),
        }
        for row in result.fetchall()
    ]
