"""
Storefront — 設定

各サービスと同じく環境変数から設定を読む。
テストでは Settings を直接組み立てて create_app() に渡す。
"""

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite+aiosqlite:///./storefront.db"
    redis_url: str = "redis://localhost:6379"
    client_url: str = "http://localhost:3000"
    default_currency: str = "USD"

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_api_base: str = "https://api.stripe.com"

    paystack_secret_key: str = ""
    paystack_api_base: str = "https://api.paystack.co"

    # 決済プロバイダ呼び出しは必ずタイムアウト付き
    provider_timeout_seconds: float = 10.0

    log_level: str = "INFO"
    log_file: str | None = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ.get("DATABASE_URL", cls.database_url),
            redis_url=os.environ.get("REDIS_URL", cls.redis_url),
            client_url=os.environ.get("CLIENT_URL", cls.client_url),
            default_currency=os.environ.get("DEFAULT_CURRENCY", cls.default_currency),
            stripe_secret_key=os.environ.get("STRIPE_SECRET_KEY", ""),
            stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET", ""),
            stripe_api_base=os.environ.get("STRIPE_API_BASE", cls.stripe_api_base),
            paystack_secret_key=os.environ.get("PAYSTACK_SECRET_KEY", ""),
            paystack_api_base=os.environ.get("PAYSTACK_API_BASE", cls.paystack_api_base),
            provider_timeout_seconds=float(
                os.environ.get("PROVIDER_TIMEOUT_SECONDS", cls.provider_timeout_seconds)
            ),
            log_level=os.environ.get("LOG_LEVEL", cls.log_level),
            log_file=os.environ.get("LOG_FILE") or None,
        )
