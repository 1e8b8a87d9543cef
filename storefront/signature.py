"""
Webhook 署名検証

Midtrans の仕様どおり SHA-512(order_id + status_code + gross_amount + server_key)
の16進文字列を signature_key と比較する。
鍵付き MAC ではないが、ゲートウェイとのワイヤー互換を優先してこの方式を保つ。
"""

import hashlib
import hmac


def compute_signature(
    order_code: str,
    status_code: str,
    gross_amount: str,
    server_key: str,
) -> str:
    payload = f"{order_code}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(payload.encode("utf-8")).hexdigest()


def verify_signature(
    order_code: str,
    status_code: str,
    gross_amount: str,
    server_key: str,
    signature: str | None,
) -> bool:
    """gross_amount は通知に入っていた文字列をそのまま使う("200000.00" など)。"""
    if not signature:
        return False
    expected = compute_signature(order_code, status_code, gross_amount, server_key)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))
