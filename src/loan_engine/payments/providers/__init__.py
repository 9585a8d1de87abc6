"""Payment channel provider adapters."""

from __future__ import annotations

import httpx

from loan_engine.models.base import utcnow
from loan_engine.payments.config import PaymentsConfig
from loan_engine.payments.model import Provider
from loan_engine.payments.providers.airtel import AirtelPullProvider
from loan_engine.payments.providers.bank import BankTransferProvider
from loan_engine.payments.providers.base import (
    Clock,
    PaymentChannelProvider,
    SubmitResult,
)
from loan_engine.payments.providers.mpesa import MpesaPushProvider


def build_providers(
    config: PaymentsConfig,
    http_client: httpx.Client | None = None,
    clock: Clock = utcnow,
) -> dict[Provider, PaymentChannelProvider]:
    """Instantiate one adapter per configured provider."""
    providers: dict[Provider, PaymentChannelProvider] = {}
    if config.mpesa is not None:
        providers[Provider.MPESA] = MpesaPushProvider(config.mpesa, http_client, clock)
    if config.airtel is not None:
        providers[Provider.AIRTEL] = AirtelPullProvider(config.airtel, http_client, clock)
    if config.bank is not None:
        providers[Provider.BANK] = BankTransferProvider(config.bank)
    return providers


__all__ = [
    "AirtelPullProvider",
    "BankTransferProvider",
    "MpesaPushProvider",
    "PaymentChannelProvider",
    "SubmitResult",
    "build_providers",
]
