"""
注文集約 — 状態と状態遷移

ゲートウェイ固有のステータス文字列はここで一度だけ内部の3状態に変換する。
以降のコードはプロバイダーの語彙を見ない。

状態遷移:
    pending → success  (settlement / capture)
    pending → failed   (expire / cancel / deny)
    pending → pending  (その他 = 何もしない)
    success / failed は終端。どの通知でも変化しない。
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


class ProviderStatus(str, Enum):
    """Midtrans の transaction_status"""
    SETTLEMENT = "settlement"
    CAPTURE = "capture"
    EXPIRE = "expire"
    CANCEL = "cancel"
    DENY = "deny"
    PENDING = "pending"
    OTHER = "other"

    @classmethod
    def parse(cls, raw: str | None) -> "ProviderStatus":
        """未知の文字列は OTHER として扱う(例外にしない)。"""
        try:
            return cls((raw or "").strip().lower())
        except ValueError:
            return cls.OTHER


_TARGET_STATUS: dict[ProviderStatus, OrderStatus] = {
    ProviderStatus.SETTLEMENT: OrderStatus.SUCCESS,
    ProviderStatus.CAPTURE: OrderStatus.SUCCESS,
    ProviderStatus.EXPIRE: OrderStatus.FAILED,
    ProviderStatus.CANCEL: OrderStatus.FAILED,
    ProviderStatus.DENY: OrderStatus.FAILED,
}


def resolve_target_status(provider_status: ProviderStatus) -> OrderStatus:
    """プロバイダーのステータスを内部ステータスへ。終端でなければ PENDING。"""
    return _TARGET_STATUS.get(provider_status, OrderStatus.PENDING)


@dataclass(frozen=True)
class OrderLine:
    line_index: int
    product_id: str
    product_name: str
    quantity: int
    price_at_purchase: int

    @property
    def subtotal(self) -> int:
        return self.price_at_purchase * self.quantity


@dataclass(frozen=True)
class PaymentResult:
    """Webhook から得た、注文に適用する決済結果"""
    status: OrderStatus
    payment_method: str | None
    gateway_reference: str | None
    paid_at: datetime | None
