"""
注文受付 — チェックアウト オーケストレーター

クライアントのカート内容はあくまで「提案」。価格も合計もサーバー側で決める。

  フロー:
  ┌─────────────────────────────────────────────────────────────┐
  │  1. 入力検証 (空の明細 / 未認証 → InvalidRequest)            │
  │  2. カタログから価格と購入可否を一括取得                     │
  │     └─ 1件でも不可 → ProductUnavailable (全体を拒否)         │
  │  3. 合計金額 = Σ カタログ価格 × 数量                         │
  │  4. 注文 + 明細を1トランザクションで保存 (pending)           │
  │  5. ゲートウェイに決済セッションを依頼                       │
  │     └─ 失敗 → GatewayUnavailable (注文は pending のまま)     │
  │  6. カートから購入済み商品を削除 (失敗してもログのみ)        │
  └─────────────────────────────────────────────────────────────┘
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import catalog, commands
from .aggregate import OrderLine
from .errors import (
    CatalogUnavailable,
    GatewayUnavailable,
    InvalidRequest,
    ProductUnavailable,
)
from .events import OrderCreated
from .gateway import BuyerDetails, PaymentGatewayClient
from .notifier import OrderStatusNotifier

logger = logging.getLogger(__name__)

# 1明細あたりの数量上限
MAX_QUANTITY = 1_000


@dataclass(frozen=True)
class ItemProposal:
    """クライアントが送ってきた明細。価格は含めない(送られてきても使わない)。"""
    product_id: str
    quantity: int


@dataclass(frozen=True)
class CheckoutResult:
    order_code: str
    payment_token: str
    redirect_url: str | None
    total_amount: int


class CheckoutOrchestrator:
    """注文受付のオーケストレーター"""

    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: PaymentGatewayClient,
        notifier: OrderStatusNotifier | None = None,
        catalog_timeout: float = 5.0,
        gateway_timeout: float = 10.0,
        order_code_attempts: int = 3,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.catalog_timeout = catalog_timeout
        self.gateway_timeout = gateway_timeout
        self.order_code_attempts = order_code_attempts

    async def execute(
        self,
        account_id: str | None,
        items: Sequence[ItemProposal],
        buyer: BuyerDetails,
    ) -> CheckoutResult:
        # ── Step 1: 入力検証 ──────────────────────────
        self._validate(account_id, items, buyer)

        # ── Step 2: カタログで価格を解決 ──────────────
        entries = await self._lookup(item.product_id for item in items)

        # ── Step 3: 明細と合計金額を確定 ──────────────
        lines: list[OrderLine] = []
        for index, item in enumerate(items):
            entry = entries.get(item.product_id)
            if entry is None or not entry.purchasable:
                logger.info(
                    "Checkout rejected for account %s: product %s unavailable",
                    account_id, item.product_id,
                )
                raise ProductUnavailable(
                    item.product_id, entry.name if entry else None
                )
            lines.append(
                OrderLine(
                    line_index=index,
                    product_id=entry.id,
                    product_name=entry.name,
                    quantity=item.quantity,
                    price_at_purchase=entry.price,
                )
            )
        total_amount = sum(line.subtotal for line in lines)

        # ── Step 4: 注文を保存 ────────────────────────
        async with self.session_factory() as session:
            order_code, created_at = await commands.create_order(
                session,
                account_id,
                total_amount,
                lines,
                buyer,
                attempts=self.order_code_attempts,
            )
        logger.info(
            "Order %s created for account %s: total=%d lines=%d",
            order_code, account_id, total_amount, len(lines),
        )
        if self.notifier is not None:
            await self.notifier.publish_created(
                OrderCreated(
                    order_code=order_code,
                    account_id=account_id,
                    total_amount=total_amount,
                    timestamp=created_at,
                )
            )

        # ── Step 5: 決済セッションを作成 ──────────────
        try:
            payment = await asyncio.wait_for(
                self.gateway.create_session(order_code, total_amount, lines, buyer),
                timeout=self.gateway_timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error("Gateway timed out for order %s; order left pending", order_code)
            raise GatewayUnavailable("Payment gateway timed out, please retry.") from e
        except GatewayUnavailable:
            logger.error("No payment session for order %s; order left pending", order_code)
            raise

        # ── Step 6: カートの後片付け (ベストエフォート) ─
        await self._clear_cart(account_id, [line.product_id for line in lines])

        return CheckoutResult(
            order_code=order_code,
            payment_token=payment.token,
            redirect_url=payment.redirect_url,
            total_amount=total_amount,
        )

    def _validate(
        self,
        account_id: str | None,
        items: Sequence[ItemProposal],
        buyer: BuyerDetails,
    ) -> None:
        if not account_id or not account_id.strip():
            raise InvalidRequest("Login is required to checkout.")
        if not items:
            raise InvalidRequest("Order must contain at least one item.")
        for item in items:
            if not item.product_id:
                raise InvalidRequest("Every item must reference a product.")
            if item.quantity <= 0:
                raise InvalidRequest(
                    f"Quantity for product {item.product_id} must be positive."
                )
            if item.quantity > MAX_QUANTITY:
                raise InvalidRequest(
                    f"Quantity for product {item.product_id} must not exceed {MAX_QUANTITY}."
                )
        if not buyer.name or not buyer.email:
            raise InvalidRequest("Buyer name and email are required.")

    async def _lookup(self, product_ids) -> dict[str, catalog.CatalogEntry]:
        ids = list(product_ids)
        try:
            async with self.session_factory() as session:
                return await asyncio.wait_for(
                    catalog.lookup_prices(session, ids),
                    timeout=self.catalog_timeout,
                )
        except asyncio.TimeoutError as e:
            logger.error("Catalog lookup timed out for %d products", len(ids))
            raise CatalogUnavailable("Product catalog timed out, please retry.") from e
        except SQLAlchemyError as e:
            logger.exception("Catalog lookup failed")
            raise CatalogUnavailable("Could not validate products, please retry.") from e

    async def _clear_cart(self, account_id: str, product_ids: list[str]) -> None:
        """失敗してもチェックアウトは成功扱い。ログに残すだけ。"""
        try:
            async with self.session_factory() as session:
                removed = await commands.clear_cart_items(session, account_id, product_ids)
        except Exception:
            logger.exception("Failed to remove purchased items from cart of %s", account_id)
            return
        if removed is None:
            logger.warning("No cart found for account %s", account_id)
        else:
            logger.debug("Removed %d cart items for account %s", removed, account_id)
