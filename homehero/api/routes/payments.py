import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from homehero.api.deps import get_reconciler
from homehero.core.auth import Principal
from homehero.core.security import get_provider_principal
from homehero.schemas.payments import AddonPurchaseOut, AddonPurchaseRequest, ConfirmationOut, WebhookAck
from homehero.services.attestation.gate import require_attestation
from homehero.services.payments import PaymentGatewayError, PaymentGatewayUnavailableError, WebhookSignatureError
from homehero.services.purchases import PurchaseReconciler, PurchaseValidationError
from homehero.services.rate_limit import rate_limit
from homehero.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/addons",
    response_model=AddonPurchaseOut,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("payments_addons")), Depends(require_attestation)],
)
async def create_addon_purchase(
    payload: AddonPurchaseRequest,
    principal: Principal = Depends(get_provider_principal),
    reconciler: PurchaseReconciler = Depends(get_reconciler),
) -> AddonPurchaseOut:
    try:
        pending = await reconciler.create_addon_purchase(principal.user_id, payload.model_dump(exclude_none=True))
    except PurchaseValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except PaymentGatewayUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="payment processor unavailable") from exc
    except PaymentGatewayError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="payment processor rejected the request") from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return AddonPurchaseOut(
        purchase_id=pending.purchase_id,
        payment_intent_id=pending.external_payment_intent_id,
        client_secret=pending.client_secret,
        addon_type=pending.addon_type.value,
        amount_cents=pending.amount_cents,
        currency=pending.currency,
    )


@router.post("/addons/{intent_id}/confirm", response_model=ConfirmationOut, status_code=status.HTTP_202_ACCEPTED)
async def confirm_addon_purchase(
    intent_id: str,
    principal: Principal = Depends(get_provider_principal),
    reconciler: PurchaseReconciler = Depends(get_reconciler),
) -> ConfirmationOut:
    try:
        result = await reconciler.request_confirmation(principal.user_id, intent_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="purchase not found") from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return ConfirmationOut(
        payment_intent_id=result.external_payment_intent_id,
        status=result.status.value,
        reconcile_job_id=result.job_id,
    )


@router.post("/webhook", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    reconciler: PurchaseReconciler = Depends(get_reconciler),
    signature: str | None = Header(default=None, alias="Stripe-Signature"),
) -> WebhookAck:
    raw_body = await request.body()
    try:
        result = await reconciler.handle_webhook(raw_body, signature)
    except WebhookSignatureError as exc:
        logger.warning("webhook rejected reason=%s", exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid webhook signature") from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return WebhookAck(
        event_id=result.event_id,
        status=result.status,
        result=result.reconcile.value if result.reconcile is not None else None,
    )
