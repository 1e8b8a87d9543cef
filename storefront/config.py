"""
設定 — 環境変数から読み込む

サービス全体の接続先・タイムアウト・ゲートウェイ鍵をここに集約する。
MIDTRANS_SERVER_KEY は署名検証に使う秘密情報なので repr / ログに出さない。
"""

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Settings:
    database_url: str = ""
    redis_url: str = "redis://localhost:6379"
    midtrans_server_key: str = field(default="", repr=False)
    midtrans_base_url: str = "https://app.sandbox.midtrans.com"
    gateway_timeout_seconds: float = 10.0
    catalog_timeout_seconds: float = 5.0
    order_code_attempts: int = 3
    gateway_timezone: str = "Asia/Jakarta"
    log_level: str = "INFO"
    cors_origins: tuple[str, ...] = ("*",)

    @classmethod
    def from_env(cls) -> "Settings":
        """環境変数から設定を組み立てる。DB 接続先かサーバーキーが無ければ起動しない。"""
        database_url = os.environ.get("DATABASE_URL", "")
        if not database_url:
            raise RuntimeError("DATABASE_URL is not set")
        server_key = os.environ.get("MIDTRANS_SERVER_KEY", "")
        if not server_key:
            raise RuntimeError("MIDTRANS_SERVER_KEY is not set")
        return cls(
            database_url=database_url,
            redis_url=os.environ.get("REDIS_URL", cls.redis_url),
            midtrans_server_key=server_key,
            midtrans_base_url=os.environ.get("MIDTRANS_BASE_URL", cls.midtrans_base_url),
            gateway_timeout_seconds=float(
                os.environ.get("GATEWAY_TIMEOUT_SECONDS", cls.gateway_timeout_seconds)
            ),
            catalog_timeout_seconds=float(
                os.environ.get("CATALOG_TIMEOUT_SECONDS", cls.catalog_timeout_seconds)
            ),
            order_code_attempts=int(
                os.environ.get("ORDER_CODE_ATTEMPTS", cls.order_code_attempts)
            ),
            gateway_timezone=os.environ.get("GATEWAY_TIMEZONE", cls.gateway_timezone),
            log_level=os.environ.get("LOG_LEVEL", cls.log_level),
            cors_origins=tuple(
                o.strip()
                for o in os.environ.get("CORS_ORIGINS", "*").split(",")
                if o.strip()
            ),
        )
