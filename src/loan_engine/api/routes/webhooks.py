"""Provider webhook endpoints.

Every delivery is answered 200 with the provider's own acknowledgement
body: duplicates, conflicts, unparseable bodies and processing failures are
logged and recorded, never reported back to the provider.
"""

import json
import logging
from typing import Any

from fastapi import APIRouter, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from loan_engine.api.dependencies import Payments
from loan_engine.payments.facade import CallbackStatus, LoanPayments
from loan_engine.payments.model import Provider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def _read_json(request: Request) -> Any:
    body = await request.body()
    try:
        return json.loads(body)
    except ValueError:
        logger.warning("Webhook %s body is not JSON (%d bytes)", request.url.path, len(body))
        return None


def _acknowledge(payments: LoanPayments, provider: Provider, payload: Any) -> JSONResponse:
    result = payments.handle_callback(provider, payload)
    if result.status is CallbackStatus.ERROR:
        logger.warning(
            "Acknowledged %s callback despite processing error (correlation %s)",
            provider.value,
            result.correlation_id,
            extra={"provider": provider.value},
        )
    return JSONResponse(status_code=status.HTTP_200_OK, content=result.acknowledgement)


@router.post("/mpesa", status_code=status.HTTP_200_OK)
async def mpesa_callback(request: Request, payments: Payments) -> JSONResponse:
    """STK push results and paybill (C2B) confirmations."""
    payload = await _read_json(request)
    return await run_in_threadpool(_acknowledge, payments, Provider.MPESA, payload)


@router.post("/airtel", status_code=status.HTTP_200_OK)
async def airtel_callback(request: Request, payments: Payments) -> JSONResponse:
    """Airtel Money collection callbacks."""
    payload = await _read_json(request)
    return await run_in_threadpool(_acknowledge, payments, Provider.AIRTEL, payload)
