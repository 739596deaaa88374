from __future__ import annotations

from fastapi import APIRouter, Depends

from ratewall.core.rate_limit import enforce_rate_limit
from ratewall.schemas.admission import AdmissionResponse
from ratewall.services.limiter_gate import AdmissionResult

router = APIRouter(tags=["Rate limit"])


@router.get("/probe", response_model=AdmissionResponse)
async def probe(
    admission: AdmissionResult | None = Depends(enforce_rate_limit()),
) -> AdmissionResponse:
    """Rate-limited endpoint reporting the caller's budget for this minute.

    Each call is charged like any other request, so the endpoint is also a
    convenient way to verify limiter configuration against a live store.
    """

    if admission is None:
        return AdmissionResponse(enforced=False)
    return AdmissionResponse(
        enforced=not admission.degraded,
        limit=admission.limit,
        count=admission.count,
        remaining=admission.remaining,
        reset_at=admission.reset_at,
    )
