"""
決済セッション ゲートウェイクライアント (Midtrans Snap)

注文コード・合計金額・明細・購入者情報を送り、
クライアント向けの決済トークンを受け取るだけの薄いアダプター。

  POST {base_url}/snap/v1/transactions
  Basic 認証 (server_key, "")
  → 201 {"token": "...", "redirect_url": "..."}
"""

import logging
from dataclasses import dataclass
from typing import Sequence

import httpx

from .aggregate import OrderLine
from .errors import GatewayUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuyerDetails:
    name: str
    email: str
    phone: str | None = None


@dataclass(frozen=True)
class PaymentSession:
    token: str
    redirect_url: str | None


class PaymentGatewayClient:
    """Midtrans Snap の create-session 契約だけを扱う。"""

    def __init__(
        self,
        base_url: str,
        server_key: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._server_key = server_key
        self.timeout = timeout
        self._transport = transport

    def build_payload(
        self,
        order_code: str,
        total_amount: int,
        lines: Sequence[OrderLine],
        buyer: BuyerDetails,
    ) -> dict:
        customer = {"first_name": buyer.name, "email": buyer.email}
        if buyer.phone:
            customer["phone"] = buyer.phone
        return {
            "transaction_details": {
                "order_id": order_code,
                "gross_amount": total_amount,
            },
            "item_details": [
                {
                    "id": line.product_id,
                    "price": line.price_at_purchase,
                    "quantity": line.quantity,
                    # Snap は name を50文字までしか受け付けない
                    "name": line.product_name[:50],
                }
                for line in lines
            ],
            "customer_details": customer,
        }

    async def create_session(
        self,
        order_code: str,
        total_amount: int,
        lines: Sequence[OrderLine],
        buyer: BuyerDetails,
    ) -> PaymentSession:
        """
        決済セッションを作成する。

        ネットワークエラー・タイムアウト・4xx/5xx はすべて GatewayUnavailable。
        """
        payload = self.build_payload(order_code, total_amount, lines, buyer)

        async with httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            try:
                resp = await client.post(
                    f"{self.base_url}/snap/v1/transactions",
                    json=payload,
                    auth=(self._server_key, ""),
                    headers={"Accept": "application/json"},
                )
                resp.raise_for_status()
                body = resp.json()
            except httpx.HTTPStatusError as e:
                logger.error(
                    "Gateway rejected session for order %s: status=%s body=%s",
                    order_code, e.response.status_code, e.response.text,
                )
                raise GatewayUnavailable(
                    "Payment gateway rejected the payment session request."
                ) from e
            except httpx.HTTPError as e:
                logger.error("Gateway unreachable for order %s: %r", order_code, e)
                raise GatewayUnavailable(
                    "Payment gateway is unreachable, please retry."
                ) from e
            except ValueError as e:
                logger.error("Gateway returned non-JSON body for order %s", order_code)
                raise GatewayUnavailable("Payment gateway returned an invalid response.") from e

        token = body.get("token")
        if not token:
            logger.error("Gateway response without token for order %s: %s", order_code, body)
            raise GatewayUnavailable("Payment gateway returned no payment token.")
        return PaymentSession(token=token, redirect_url=body.get("redirect_url"))
