"""
エラー分類

クライアント(ブラウザ / 決済ゲートウェイ)へ返す構造化エラー。
kind はレスポンスの "error" フィールドにそのまま入る。
retryable なエラーは 5xx で返し、呼び出し側の再試行に任せる。
"""


class StorefrontError(Exception):
    kind = "InternalError"
    status_code = 500
    retryable = True

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": self.kind,
            "message": self.message,
            "retryable": self.retryable,
        }


class InvalidRequest(StorefrontError):
    """入力不正・未認証。何も永続化されない。"""
    kind = "InvalidRequest"
    status_code = 400
    retryable = False


class ProductUnavailable(StorefrontError):
    """存在しない / 販売停止中の商品を含む。チェックアウト全体を拒否する。"""
    kind = "ProductUnavailable"
    status_code = 409
    retryable = False

    def __init__(self, product_id: str, name: str | None = None) -> None:
        label = f'"{name}" (ID: {product_id})' if name else f"ID: {product_id}"
        super().__init__(f"Product {label} is not found or no longer available.")
        self.product_id = product_id

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["product_id"] = self.product_id
        return body


class CatalogUnavailable(StorefrontError):
    """カタログ参照がタイムアウト・失敗した。"""
    kind = "CatalogUnavailable"
    status_code = 503


class GatewayUnavailable(StorefrontError):
    """決済セッションを作成できなかった。注文は pending のまま残る。"""
    kind = "GatewayUnavailable"
    status_code = 503


class InvalidSignature(StorefrontError):
    """Webhook の署名が一致しない。偽造の可能性がある。"""
    kind = "InvalidSignature"
    status_code = 400
    retryable = False


class UnknownOrder(StorefrontError):
    """Webhook が存在しない注文コードを参照している。"""
    kind = "UnknownOrder"
    status_code = 404
    retryable = False

    def __init__(self, order_code: str) -> None:
        super().__init__(f"Order {order_code} not found")
        self.order_code = order_code
