"""
Payments — プロバイダ登録

Provider の値 → PaymentGateway の対応表を作る。
文字列比較での分岐はここ以外に置かない。
"""

import httpx

from ..config import Settings
from ..errors import UnknownProviderError
from ..orders.models import Provider
from .base import PaymentGateway
from .paystack_gateway import PaystackGateway
from .stripe_gateway import StripeGateway


def _timeout(settings: Settings) -> httpx.Timeout:
    return httpx.Timeout(settings.provider_timeout_seconds)


def build_gateways(settings: Settings) -> dict[Provider, PaymentGateway]:
    stripe_client = httpx.AsyncClient(
        base_url=settings.stripe_api_base,
        timeout=_timeout(settings),
        auth=(settings.stripe_secret_key, ""),
    )
    paystack_client = httpx.AsyncClient(
        base_url=settings.paystack_api_base,
        timeout=_timeout(settings),
        headers={"Authorization": f"Bearer {settings.paystack_secret_key}"},
    )
    return {
        Provider.STRIPE: StripeGateway(
            stripe_client,
            webhook_secret=settings.stripe_webhook_secret,
            success_url=f"{settings.client_url}/order/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{settings.client_url}/cart",
        ),
        Provider.PAYSTACK: PaystackGateway(
            paystack_client,
            secret_key=settings.paystack_secret_key,
            callback_url=f"{settings.client_url}/order/success",
        ),
    }


def resolve_provider(value: str) -> Provider:
    try:
        return Provider(value)
    except ValueError:
        raise UnknownProviderError(f"Unknown payment provider: {value}") from None


def get_gateway(
    gateways: dict[Provider, PaymentGateway],
    provider: Provider,
) -> PaymentGateway:
    gateway = gateways.get(provider)
    if gateway is None:
        raise UnknownProviderError(f"Payment provider not configured: {provider.value}")
    return gateway
