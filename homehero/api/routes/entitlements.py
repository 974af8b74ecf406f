from fastapi import APIRouter, Depends, HTTPException, status

from homehero.api.deps import get_reconciler
from homehero.core.auth import Principal
from homehero.core.security import get_provider_principal
from homehero.schemas.entitlements import EntitlementsOut
from homehero.services.purchases import PurchaseReconciler
from homehero.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.get("/me/entitlements", response_model=EntitlementsOut)
async def get_my_entitlements(
    principal: Principal = Depends(get_provider_principal),
    reconciler: PurchaseReconciler = Depends(get_reconciler),
) -> EntitlementsOut:
    try:
        record = await reconciler.get_entitlements(principal.user_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return EntitlementsOut(
        provider_id=record.provider_id,
        verification_badge=record.verification_badge,
        featured_zip_codes=list(record.featured_zip_codes),
        lead_credits=record.lead_credits,
        updated_at=record.updated_at,
    )
