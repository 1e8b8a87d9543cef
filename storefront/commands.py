"""
コマンドハンドラ (書き込み側)

- create_order:         注文と全明細を1トランザクションで挿入する
- apply_payment_result: status = 'pending' を条件にした UPDATE で終端状態へ遷移させる
- clear_cart_items:     購入済み商品をカートから削除する(ベストエフォート)

どの関数もネットワーク呼び出しを挟まない。
トランザクションを開いたまま外部 API を待つことはない。
"""

import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import OrderLine, OrderStatus, PaymentResult
from .gateway import BuyerDetails
from .schema import cart_items, carts, order_lines, orders

logger = logging.getLogger(__name__)


class OrderCodeExhausted(Exception):
    """注文コードの再生成を規定回数試しても衝突した。"""


def generate_order_code() -> str:
    """TRX-<エポックミリ秒>-<ランダム16進>。一意性は UNIQUE 制約で担保する。"""
    return f"TRX-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


async def _code_exists(session: AsyncSession, code: str) -> bool:
    result = await session.execute(select(orders.c.id).where(orders.c.code == code))
    return result.first() is not None


async def create_order(
    session: AsyncSession,
    account_id: str,
    total_amount: int,
    lines: Sequence[OrderLine],
    buyer: BuyerDetails,
    attempts: int = 3,
) -> tuple[str, datetime]:
    """
    注文作成コマンド

    1. 注文コードを生成
    2. orders と order_lines を同じトランザクションで挿入
    3. コードが衝突したら作り直して再試行

    途中で失敗すればロールバックされ、注文も明細も残らない。
    """
    for attempt in range(1, attempts + 1):
        code = generate_order_code()
        now = datetime.now(timezone.utc)
        try:
            async with session.begin():
                await session.execute(
                    insert(orders).values(
                        code=code,
                        account_id=account_id,
                        total_amount=total_amount,
                        status=OrderStatus.PENDING.value,
                        buyer_name=buyer.name,
                        buyer_email=buyer.email,
                        buyer_phone=buyer.phone,
                        created_at=now,
                        updated_at=now,
                    )
                )
                await session.execute(
                    insert(order_lines),
                    [
                        {
                            "order_code": code,
                            "line_index": line.line_index,
                            "product_id": line.product_id,
                            "product_name": line.product_name,
                            "quantity": line.quantity,
                            "price_at_purchase": line.price_at_purchase,
                        }
                        for line in lines
                    ],
                )
        except IntegrityError:
            # 衝突以外の制約違反はそのまま上に投げる
            if not await _code_exists(session, code):
                raise
            await session.rollback()
            logger.warning("Order code collision on %s (attempt %d/%d)", code, attempt, attempts)
            continue
        return code, now

    raise OrderCodeExhausted(f"could not allocate a unique order code after {attempts} attempts")


async def apply_payment_result(
    session: AsyncSession,
    order_code: str,
    result: PaymentResult,
) -> bool:
    """
    決済結果の適用コマンド(Webhook から呼ばれる)

    WHERE status = 'pending' の条件付き UPDATE なので、
    同じ注文への同時配送があっても遷移できるのは1件だけ。
    遷移した場合 True、何も変わらなかった場合 False を返す。
    """
    if not result.status.is_terminal:
        raise ValueError(f"cannot apply non-terminal status {result.status.value!r}")
    now = datetime.now(timezone.utc)
    values = {
        "status": result.status.value,
        "payment_method": result.payment_method,
        "gateway_reference": result.gateway_reference,
        "updated_at": now,
    }
    if result.status is OrderStatus.SUCCESS:
        values["paid_at"] = result.paid_at or now

    async with session.begin():
        cursor = await session.execute(
            update(orders)
            .where(orders.c.code == order_code)
            .where(orders.c.status == OrderStatus.PENDING.value)
            .values(**values)
        )
    return cursor.rowcount == 1


async def get_order_status(session: AsyncSession, order_code: str) -> OrderStatus | None:
    result = await session.execute(
        select(orders.c.status).where(orders.c.code == order_code)
    )
    row = result.first()
    if row is None:
        return None
    return OrderStatus(row.status)


async def clear_cart_items(
    session: AsyncSession,
    account_id: str,
    product_ids: Sequence[str],
) -> int | None:
    """
    購入した商品をカートから削除する。

    カートが無ければ None。削除した行数を返す。
    呼び出し側は失敗をログに残すだけで、チェックアウト結果には影響させない。
    """
    async with session.begin():
        result = await session.execute(
            select(carts.c.id).where(carts.c.account_id == account_id)
        )
        cart = result.first()
        if cart is None:
            return None
        cursor = await session.execute(
            delete(cart_items)
            .where(cart_items.c.cart_id == cart.id)
            .where(cart_items.c.product_id.in_(list(product_ids)))
        )
    return cursor.rowcount
