"""
Webhook リコンサイラー

決済ゲートウェイからの非同期通知を検証し、注文へ冪等に反映する。
通知は重複・順序入れ替え・欠落がありうる(at-least-once)。

  1. 署名検証 — 不一致なら InvalidSignature、状態は一切変えない
  2. プロバイダーのステータスを内部ステータスへ変換(境界で一度だけ)
  3. status = 'pending' を条件にした UPDATE で終端状態へ遷移
     ├─ 1行更新       → 適用。ステータス変更イベントを発行
     ├─ 0行 & 注文なし → UnknownOrder (注文はここでは作らない)
     └─ 0行 & 終端済み → 何もしない (StaleTransition は成功扱い)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.orm import sessionmaker

from . import commands
from .aggregate import (
    OrderStatus,
    PaymentResult,
    ProviderStatus,
    resolve_target_status,
)
from .errors import InvalidSignature, UnknownOrder
from .events import OrderStatusChanged
from .notifier import OrderStatusNotifier
from .signature import verify_signature

logger = logging.getLogger(__name__)


class PaymentNotification(BaseModel):
    """Midtrans の HTTP 通知。中立的なフィールド名でも受け付ける。"""
    model_config = ConfigDict(extra="ignore")

    order_code: str = Field(validation_alias=AliasChoices("order_id", "order_code"))
    status_code: str = Field(
        default="", validation_alias=AliasChoices("status_code", "provider_status_code")
    )
    gross_amount: str = Field(validation_alias=AliasChoices("gross_amount", "amount"))
    signature_key: str | None = Field(
        default=None, validation_alias=AliasChoices("signature_key", "integrity_token")
    )
    transaction_status: str = Field(
        validation_alias=AliasChoices("transaction_status", "provider_status")
    )
    payment_type: str | None = Field(
        default=None, validation_alias=AliasChoices("payment_type", "payment_method")
    )
    transaction_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("transaction_id", "provider_transaction_id"),
    )
    transaction_time: str | None = Field(
        default=None, validation_alias=AliasChoices("transaction_time", "settled_at")
    )
    va_numbers: list[dict] | None = None

    @field_validator("gross_amount", "status_code", mode="before")
    @classmethod
    def _keep_wire_text(cls, value):
        # 署名は通知に載っていた文字列で計算されるので、数値でも文字列に戻す
        if isinstance(value, bool):
            raise ValueError("must be a string or number")
        if isinstance(value, int):
            return str(value)
        if isinstance(value, float):
            return f"{value:.2f}"
        return value

    @property
    def provider_status(self) -> ProviderStatus:
        return ProviderStatus.parse(self.transaction_status)

    @property
    def gateway_reference(self) -> str | None:
        if self.transaction_id:
            return self.transaction_id
        if self.va_numbers:
            return self.va_numbers[0].get("va_number")
        return None


@dataclass(frozen=True)
class ReconcileOutcome:
    order_code: str
    status: OrderStatus
    applied: bool
    reason: str


class WebhookReconciler:

    def __init__(
        self,
        session_factory: sessionmaker,
        server_key: str,
        notifier: OrderStatusNotifier | None = None,
        gateway_timezone: str = "Asia/Jakarta",
    ) -> None:
        self.session_factory = session_factory
        self._server_key = server_key
        self.notifier = notifier
        self.gateway_tz = ZoneInfo(gateway_timezone)

    async def reconcile(self, notification: PaymentNotification) -> ReconcileOutcome:
        code = notification.order_code

        # ── 署名検証 ──────────────────────────────────
        if not verify_signature(
            code,
            notification.status_code,
            notification.gross_amount,
            self._server_key,
            notification.signature_key,
        ):
            logger.warning(
                "Rejected webhook with invalid signature for order %s "
                "(status=%s amount=%s): possible forgery",
                code, notification.transaction_status, notification.gross_amount,
            )
            raise InvalidSignature("Invalid signature")

        target = resolve_target_status(notification.provider_status)

        async with self.session_factory() as session:
            # ── 非終端ステータス: 注文の存在だけ確認して何もしない ─
            if not target.is_terminal:
                current = await commands.get_order_status(session, code)
                if current is None:
                    logger.warning("Webhook for unknown order %s", code)
                    raise UnknownOrder(code)
                logger.info(
                    "Webhook for order %s with non-terminal status %r: no-op",
                    code, notification.transaction_status,
                )
                return ReconcileOutcome(code, current, applied=False, reason="non-terminal")

            result = PaymentResult(
                status=target,
                payment_method=notification.payment_type,
                gateway_reference=notification.gateway_reference,
                paid_at=self._settled_at(notification) if target is OrderStatus.SUCCESS else None,
            )

            # ── 条件付き UPDATE ───────────────────────────
            applied = await commands.apply_payment_result(session, code, result)
            if not applied:
                current = await commands.get_order_status(session, code)
                if current is None:
                    logger.warning("Webhook for unknown order %s", code)
                    raise UnknownOrder(code)
                logger.info(
                    "Stale webhook for order %s: already %s, ignoring %r",
                    code, current.value, notification.transaction_status,
                )
                return ReconcileOutcome(code, current, applied=False, reason="stale")

        logger.info(
            "Order %s reconciled to %s via %s (ref=%s)",
            code, target.value, notification.payment_type, result.gateway_reference,
        )
        if self.notifier is not None:
            await self.notifier.publish_status(
                OrderStatusChanged(
                    order_code=code,
                    status=target.value,
                    payment_method=result.payment_method,
                    paid_at=result.paid_at,
                    timestamp=datetime.now(timezone.utc),
                )
            )
        return ReconcileOutcome(code, target, applied=True, reason="applied")

    def _settled_at(self, notification: PaymentNotification) -> datetime:
        """
        transaction_time はゲートウェイのローカル時刻("YYYY-MM-DD HH:MM:SS")。
        タイムゾーンを補って UTC に直す。無い・読めない場合は現在時刻。
        """
        raw = notification.transaction_time
        if raw:
            try:
                parsed = datetime.fromisoformat(raw)
            except ValueError:
                logger.warning(
                    "Unparseable transaction_time %r for order %s",
                    raw, notification.order_code,
                )
            else:
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=self.gateway_tz)
                return parsed.astimezone(timezone.utc)
        return datetime.now(timezone.utc)
