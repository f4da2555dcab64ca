from fastapi import APIRouter, Depends

from eventlens.api.deps import get_services, require_api_key
from eventlens.core.container import Services
from eventlens.schemas.privacy import ErasureResult, PrincipalExport, PrincipalSummary

router = APIRouter(prefix="/api/privacy", tags=["privacy"], dependencies=[Depends(require_api_key)])


@router.get("/principals/{principal_id}/summary", response_model=PrincipalSummary)
def principal_summary(principal_id: str, services: Services = Depends(get_services)):
    """What is stored about a principal"""
    return services.privacy.principal_summary(principal_id)


@router.get("/principals/{principal_id}/export", response_model=PrincipalExport)
def export_principal(principal_id: str, services: Services = Depends(get_services)):
    """
    Every event of a principal.

    The `events` array can be posted back to `/api/events/batch` unchanged.
    """
    return services.privacy.export_principal(principal_id)


@router.delete("/principals/{principal_id}/data", response_model=ErasureResult)
def erase_principal(principal_id: str, services: Services = Depends(get_services)):
    """Delete every event of a principal and rebuild the rollups without them"""
    return services.privacy.erase_principal(principal_id)
