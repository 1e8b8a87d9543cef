"""
注文ステータス通知 — Redis Pub/Sub

Webhook による状態変化がコミットされた直後に、その注文専用のチャネル
(order_status:<code>) へイベントを発行する。注文ステータス画面は
このチャネルだけを購読し、手動リロードなしに最新状態へ追従する。

注意: Redis Pub/Sub は fire-and-forget 方式。
購読前に発行されたイベントは届かないので、購読を開始してから DB の
コミット済み状態を読み、それを最初のイベントとして返す(listen の load_current)。
"""

import asyncio
import json
import logging
from typing import AsyncIterator, Awaitable, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .aggregate import OrderStatus
from .events import (
    ORDER_EVENTS_CHANNEL,
    OrderCreated,
    OrderStatusChanged,
    order_status_channel,
)

logger = logging.getLogger(__name__)

_TERMINAL = {s.value for s in OrderStatus if s.is_terminal}


class OrderStatusNotifier:

    def __init__(self, redis: aioredis.Redis, poll_interval: float = 1.0) -> None:
        self.redis = redis
        self.poll_interval = poll_interval

    async def _publish(self, channel: str, payload: str) -> bool:
        try:
            await self.redis.publish(channel, payload)
        except (RedisError, OSError):
            # 状態はすでに DB にコミット済み。クライアントはポーリングで追いつける。
            logger.exception("Failed to publish to %s", channel)
            return False
        return True

    async def publish_created(self, event: OrderCreated) -> bool:
        return await self._publish(ORDER_EVENTS_CHANNEL, event.model_dump_json())

    async def publish_status(self, event: OrderStatusChanged) -> bool:
        """注文専用チャネルと全体チャネルの両方へ発行する。"""
        payload = event.model_dump_json()
        scoped = await self._publish(order_status_channel(event.order_code), payload)
        await self._publish(ORDER_EVENTS_CHANNEL, payload)
        return scoped

    async def listen(
        self,
        order_code: str,
        load_current: Callable[[], Awaitable[dict | None]] | None = None,
        shutdown_event: asyncio.Event | None = None,
    ) -> AsyncIterator[dict]:
        """
        指定注文のステータス変化を順に返す。

        load_current を渡すと、購読を開始した後にコミット済みの状態を読んで
        最初に返す。購読前に起きた変化を取りこぼさないための順序。
        変化の通知を受けた後も load_current で読み直すので、
        返すイベントはすべて同じ形になる。
        終端状態を返したら、または shutdown_event がセットされたら終了する。
        """
        channel = order_status_channel(order_code)
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(channel)
        logger.debug("Subscribed to %s", channel)

        try:
            if load_current is not None:
                current = await load_current()
                if current is not None:
                    yield current
                    if current.get("status") in _TERMINAL:
                        return
            while shutdown_event is None or not shutdown_event.is_set():
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self.poll_interval
                )
                if not message or message["type"] != "message":
                    await asyncio.sleep(0.1)
                    continue
                try:
                    event = json.loads(message["data"])
                except (TypeError, ValueError):
                    logger.warning("Discarding malformed event on %s", channel)
                    continue
                if event.get("order_code") != order_code:
                    continue
                if load_current is not None:
                    event = await load_current() or event
                yield event
                if event.get("status") in _TERMINAL:
                    break
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
