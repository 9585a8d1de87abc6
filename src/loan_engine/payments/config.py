"""Payments configuration objects.

Explicit configuration for provider adapters and the reconciliation engine.
Each adapter receives its own config value in its constructor.

Pattern:
    payments = LoanPayments(
        session=session,
        config=PaymentsConfig(
            mpesa=MpesaConfig(...),
            airtel=AirtelConfig(...),
            bank=BankTransferConfig(...),
            reconciliation=ReconciliationConfig(...),
        ),
    )

Rules:
    1. Adapters never read environment variables; only build_payments_config does.
    2. Immutable after creation (frozen dataclasses).
    3. Values are validated when the object is built.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from loan_engine.payments.model import Provider

if TYPE_CHECKING:
    from loan_engine.config import Settings

ENVIRONMENTS = {"sandbox", "production"}

# Airtel Money operating countries and their collection currency
AIRTEL_COUNTRIES: dict[str, tuple[str, str]] = {
    # country: (dialing code, currency)
    "KE": ("254", "KES"),
    "UG": ("256", "UGX"),
    "TZ": ("255", "TZS"),
    "RW": ("250", "RWF"),
    "ZM": ("260", "ZMW"),
    "MW": ("265", "MWK"),
    "NG": ("234", "NGN"),
    "GH": ("233", "GHS"),
    "CD": ("243", "CDF"),
}


@dataclass(frozen=True)
class MpesaConfig:
    """
    M-Pesa (Daraja) STK push configuration.

    Attributes:
        consumer_key: Daraja app consumer key.
        consumer_secret: Daraja app consumer secret.
        short_code: Paybill or till number receiving the money.
        pass_key: Lipa Na M-Pesa online pass key.
        callback_url: Public URL of the /webhooks/mpesa endpoint.
        environment: "sandbox" or "production". Default "sandbox".
        transaction_type: Daraja transaction type. Default paybill.
        timeout_seconds: HTTP timeout per request. Default 30.
        pending_timeout_minutes: Minutes a PENDING intent waits for a
            callback before the sweep expires it. Default 5.
    """

    consumer_key: str
    consumer_secret: str
    short_code: str
    pass_key: str
    callback_url: str
    environment: str = "sandbox"
    transaction_type: str = "CustomerPayBillOnline"
    timeout_seconds: float = 30.0
    pending_timeout_minutes: int = 5

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.environment not in ENVIRONMENTS:
            raise ValueError(f"environment must be one of {ENVIRONMENTS}")
        for name in ("consumer_key", "consumer_secret", "short_code", "pass_key", "callback_url"):
            if not getattr(self, name):
                raise ValueError(f"{name} is required")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.pending_timeout_minutes < 1:
            raise ValueError("pending_timeout_minutes must be at least 1")

    @property
    def base_url(self) -> str:
        if self.environment == "production":
            return "https://api.safaricom.co.ke"
        return "https://sandbox.safaricom.co.ke"

    @property
    def pending_timeout(self) -> timedelta:
        return timedelta(minutes=self.pending_timeout_minutes)


@dataclass(frozen=True)
class AirtelConfig:
    """
    Airtel Money collection (USSD push) configuration.

    Attributes:
        client_id: Airtel Open API client id.
        client_secret: Airtel Open API client secret.
        country: ISO country the merchant collects in. Default "KE".
        environment: "sandbox" or "production". Default "sandbox".
        timeout_seconds: HTTP timeout per request. Default 30.
        pending_timeout_minutes: Minutes before the sweep expires a
            PENDING intent. Default 10.
    """

    client_id: str
    client_secret: str
    country: str = "KE"
    environment: str = "sandbox"
    timeout_seconds: float = 30.0
    pending_timeout_minutes: int = 10

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.environment not in ENVIRONMENTS:
            raise ValueError(f"environment must be one of {ENVIRONMENTS}")
        if not self.client_id or not self.client_secret:
            raise ValueError("client_id and client_secret are required")
        if self.country not in AIRTEL_COUNTRIES:
            raise ValueError(f"country must be one of {sorted(AIRTEL_COUNTRIES)}")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.pending_timeout_minutes < 1:
            raise ValueError("pending_timeout_minutes must be at least 1")

    @property
    def base_url(self) -> str:
        if self.environment == "production":
            return "https://openapi.airtel.africa"
        return "https://openapiuat.airtel.africa"

    @property
    def currency(self) -> str:
        return AIRTEL_COUNTRIES[self.country][1]

    @property
    def dialing_code(self) -> str:
        return AIRTEL_COUNTRIES[self.country][0]

    @property
    def pending_timeout(self) -> timedelta:
        return timedelta(minutes=self.pending_timeout_minutes)


@dataclass(frozen=True)
class BankTransferConfig:
    """
    Manual bank transfer configuration.

    Attributes:
        bank_name: Bank shown to the borrower.
        account_number: Collection account number.
        account_name: Collection account name.
        branch_code: Optional branch code.
        swift_code: Optional SWIFT/BIC.
        currencies: Currencies the collection account accepts.
    """

    bank_name: str
    account_number: str
    account_name: str
    branch_code: str | None = None
    swift_code: str | None = None
    currencies: tuple[str, ...] = ("KES",)

    def __post_init__(self) -> None:
        """Validate configuration."""
        if not self.bank_name or not self.account_number or not self.account_name:
            raise ValueError("bank_name, account_number and account_name are required")
        if not self.currencies:
            raise ValueError("At least one currency is required")


@dataclass(frozen=True)
class ReconciliationConfig:
    """
    Reconciliation configuration.

    Attributes:
        heuristic_matching: If True, unregistered inbound payments whose
            account reference exactly equals a loan number are linked to
            that loan. If False, they are always parked. Default True.
        heuristic_window_hours: Inbound payments older than this are
            parked instead of auto-linked. Default 72.
        overpayment_tolerance: How far an inbound amount may exceed the
            loan's outstanding balance and still auto-link. Default 0.
    """

    heuristic_matching: bool = True
    heuristic_window_hours: int = 72
    overpayment_tolerance: Decimal = Decimal("0.00")

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.heuristic_window_hours < 1:
            raise ValueError("heuristic_window_hours must be at least 1")
        if self.overpayment_tolerance < 0:
            raise ValueError("overpayment_tolerance cannot be negative")

    @property
    def heuristic_window(self) -> timedelta:
        return timedelta(hours=self.heuristic_window_hours)


@dataclass(frozen=True)
class SweepConfig:
    """
    Periodic sweep configuration.

    Attributes:
        poll_after_seconds: Age at which a PENDING push/pull intent is
            polled for status. Default 60.
        batch_size: Maximum intents polled or expired per run. Default 100.
        manual_review_after_hours: Age at which a PENDING bank transfer is
            reported as aged. Default 48.
        interval_seconds: Pause between runs of the sweep loop. Default 60.
    """

    poll_after_seconds: int = 60
    batch_size: int = 100
    manual_review_after_hours: int = 48
    interval_seconds: int = 60

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.poll_after_seconds < 0:
            raise ValueError("poll_after_seconds cannot be negative")
        if self.batch_size < 1 or self.batch_size > 10000:
            raise ValueError("batch_size must be between 1 and 10000")
        if self.manual_review_after_hours < 1:
            raise ValueError("manual_review_after_hours must be at least 1")
        if self.interval_seconds < 1:
            raise ValueError("interval_seconds must be at least 1")


@dataclass(frozen=True)
class PaymentsConfig:
    """
    Complete payments configuration.

    Attributes:
        mpesa: M-Pesa adapter config, or None if disabled.
        airtel: Airtel adapter config, or None if disabled.
        bank: Bank transfer config, or None if disabled.
        reconciliation: Reconciliation configuration.
        sweep: Sweep configuration.
        emit_events: If False, domain events are not emitted.
    """

    mpesa: MpesaConfig | None = None
    airtel: AirtelConfig | None = None
    bank: BankTransferConfig | None = None
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    sweep: SweepConfig = field(default_factory=SweepConfig)
    emit_events: bool = True

    def __post_init__(self) -> None:
        """Validate configuration."""
        if not self.enabled_providers():
            raise ValueError("At least one provider is required")

    def enabled_providers(self) -> list[Provider]:
        """Providers that have a configuration."""
        enabled = []
        if self.mpesa is not None:
            enabled.append(Provider.MPESA)
        if self.airtel is not None:
            enabled.append(Provider.AIRTEL)
        if self.bank is not None:
            enabled.append(Provider.BANK)
        return enabled


# =============================================================================
# Configuration Builders
# =============================================================================


def create_sandbox_config() -> PaymentsConfig:
    """
    Create a sandbox configuration for development and tests.

    Uses Safaricom's public sandbox short code and pass key.
    """
    return PaymentsConfig(
        mpesa=MpesaConfig(
            consumer_key="sandbox-key",
            consumer_secret="sandbox-secret",
            short_code="174379",
            pass_key="bfb279f9aa9bdbcf158e97dd71a467cd2e0c893059b10f78e6b72ada1ed2c919",
            callback_url="https://example.invalid/webhooks/mpesa",
        ),
        airtel=AirtelConfig(
            client_id="sandbox-client",
            client_secret="sandbox-secret",
            country="KE",
        ),
        bank=BankTransferConfig(
            bank_name="Sandbox Bank",
            account_number="0000000000",
            account_name="Loan Collections",
        ),
    )


def build_payments_config(settings: Settings) -> PaymentsConfig:
    """Translate process settings into a PaymentsConfig.

    A provider is enabled only when all of its credentials are present.
    """
    env = settings.payments_environment

    mpesa = None
    if all([
        settings.mpesa_consumer_key,
        settings.mpesa_consumer_secret,
        settings.mpesa_short_code,
        settings.mpesa_pass_key,
        settings.mpesa_callback_url,
    ]):
        mpesa = MpesaConfig(
            consumer_key=settings.mpesa_consumer_key or "",
            consumer_secret=settings.mpesa_consumer_secret or "",
            short_code=settings.mpesa_short_code or "",
            pass_key=settings.mpesa_pass_key or "",
            callback_url=settings.mpesa_callback_url or "",
            environment=env,
        )

    airtel = None
    if settings.airtel_client_id and settings.airtel_client_secret:
        airtel = AirtelConfig(
            client_id=settings.airtel_client_id,
            client_secret=settings.airtel_client_secret,
            country=settings.airtel_country,
            environment=env,
        )

    bank = None
    if settings.bank_name and settings.bank_account_number and settings.bank_account_name:
        bank = BankTransferConfig(
            bank_name=settings.bank_name,
            account_number=settings.bank_account_number,
            account_name=settings.bank_account_name,
            branch_code=settings.bank_branch_code,
            swift_code=settings.bank_swift_code,
            currencies=(settings.default_currency,),
        )

    return PaymentsConfig(
        mpesa=mpesa,
        airtel=airtel,
        bank=bank,
        sweep=SweepConfig(interval_seconds=settings.sweep_interval_seconds),
    )


def validate_production_config(config: PaymentsConfig) -> list[str]:
    """
    Validate that a configuration is safe for production.

    Returns a list of warnings/errors. Empty list = safe.
    """
    issues: list[str] = []

    if config.mpesa is not None:
        if config.mpesa.environment != "production":
            issues.append("WARNING: M-Pesa is using the sandbox environment")
        if not config.mpesa.callback_url.startswith("https://"):
            issues.append("CRITICAL: M-Pesa callback_url must use https")

    if config.airtel is not None and config.airtel.environment != "production":
        issues.append("WARNING: Airtel Money is using the sandbox environment")

    if not config.reconciliation.heuristic_matching:
        issues.append("INFO: heuristic matching disabled; all unregistered payments will be parked")

    if config.reconciliation.overpayment_tolerance > 0:
        issues.append(
            "WARNING: overpayment_tolerance is "
            f"{config.reconciliation.overpayment_tolerance}; "
            "heuristic matches may create overpayment credits"
        )

    if not config.emit_events:
        issues.append("WARNING: emit_events is False; confirmations will not notify borrowers")

    return issues
