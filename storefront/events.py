"""
イベント定義

注文の状態が変わったときに Redis Pub/Sub へ発行する事実。
過去形で命名し、不変として扱う。
"""

from datetime import datetime

from pydantic import BaseModel

ORDER_EVENTS_CHANNEL = "order_events"


def order_status_channel(order_code: str) -> str:
    """注文ごとのチャネル名。閲覧中のクライアントはここだけを購読する。"""
    return f"order_status:{order_code}"


class OrderCreated(BaseModel):
    """注文が作成された(pending)"""
    event_type: str = "OrderCreated"
    order_code: str
    account_id: str
    total_amount: int
    status: str = "pending"
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """Webhook により注文が終端状態へ遷移した"""
    event_type: str = "OrderStatusChanged"
    order_code: str
    status: str
    payment_method: str | None = None
    paid_at: datetime | None = None
    timestamp: datetime
