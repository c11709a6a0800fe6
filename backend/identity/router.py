"""
Identity Engine - API Router

Internal REST endpoints for the booking, address and login services:
- GET  /api/identity/status - Module status
- POST /api/identity/resolve - Token -> canonical identity (creates on miss)
- POST /api/identity/authorize - Requester vs record owner
- POST /api/identity/register - OTP-verified registration
- GET  /api/identity/customer-ids - Identity ids for booking queries
- POST /api/identity/consolidate - Run the consolidation job
- GET  /api/identity/duplicates - Phones with more than one identity
- GET  /api/identity/identity/{id} - Get identity by ID

Permissions:
- status: public
- everything else: internal API key (X-Internal-Api-Key)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status, Query
from pydantic import BaseModel, Field, EmailStr

from middleware.internal_auth import InternalService, require_internal_service

from .errors import IdentityError, IdentityNotResolvable
from .resolver import ResolutionContext
from .service import IdentityService
from .throttle import RequestThrottle

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/identity", tags=["Identity"])


# ==================== DEPENDENCIES ====================

def get_identity_service(request: Request) -> IdentityService:
    return request.app.state.identity_service


def get_registration_throttle(request: Request) -> RequestThrottle:
    return request.app.state.registration_throttle


def identity_http_error(error: IdentityError) -> HTTPException:
    """Map an engine error to its HTTP status."""
    if isinstance(error, IdentityNotResolvable):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif error.retryable:
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if status_code >= 500:
        logger.error(f"Identity request failed: {error.code}: {error.message}")
    return HTTPException(status_code=status_code, detail=error.to_dict())


# ==================== REQUEST/RESPONSE MODELS ====================

class ResolveRequest(BaseModel):
    """Request model for identity resolution"""
    token: Optional[str] = Field(None, max_length=100, description="Phone, prefixed phone or record id")
    name: Optional[str] = Field(None, max_length=100, description="Seed name if the identity is created")
    email: Optional[EmailStr] = Field(None, description="Seed email if the identity is created")
    phone: Optional[str] = Field(None, max_length=20, description="Fallback phone when the token is unusable")
    verified: Optional[bool] = None
    source: str = Field("booking", max_length=50, description="Calling flow: booking, address, login")


class AuthorizeRequest(BaseModel):
    """Request model for ownership checks"""
    requester_token: Optional[str] = Field(None, max_length=100)
    owner_id: str = Field(..., max_length=64, description="Identity id owning the record")


class RegisterRequest(BaseModel):
    """Request model for OTP-verified registration"""
    phone: str = Field(..., max_length=20)
    name: str = Field(..., min_length=1, max_length=100)
    email: Optional[EmailStr] = None


class ConsolidateRequest(BaseModel):
    """Request model for a consolidation run"""
    backfill_legacy: bool = Field(False, description="Bridge legacy customers before merging")


# ==================== ENDPOINTS ====================

@router.get("/status")
async def get_identity_status():
    """
    Get identity module status.
    No authentication required.
    """
    return {
        "status": "ok",
        "module": "identity",
        "version": "1.0.0",
        "features": {
            "resolve": True,
            "authorize": True,
            "register": True,
            "legacy_bridge": True,
            "consolidation": True
        }
    }


@router.post("/resolve")
async def resolve_identity(
    request: ResolveRequest,
    caller: InternalService = Depends(require_internal_service),
    service: IdentityService = Depends(get_identity_service)
):
    """
    Resolve a customer token to its canonical identity.

    **Rules:**
    - Same phone always yields the same identity id
    - Unknown phones are created (seeded from the legacy store when present)
    - Concurrent first requests converge on one identity
    """
    context = ResolutionContext(
        name=request.name,
        email=request.email,
        phone=request.phone,
        verified=request.verified,
        source_type=request.source,
        performed_by=caller.name,
    )
    try:
        identity = await service.resolve(request.token, context)
    except IdentityError as e:
        raise identity_http_error(e)

    return {"customer_id": identity.id, "identity": identity.to_dict()}


@router.post("/authorize")
async def authorize_requester(
    request: AuthorizeRequest,
    caller: InternalService = Depends(require_internal_service),
    service: IdentityService = Depends(get_identity_service)
):
    """
    Decide whether a requester may act on a record owned by ``owner_id``.
    """
    try:
        decision = await service.authorize(request.requester_token, request.owner_id)
    except IdentityError as e:
        raise identity_http_error(e)

    return decision.to_dict()


@router.post("/register")
async def register_identity(
    request: RegisterRequest,
    caller: InternalService = Depends(require_internal_service),
    service: IdentityService = Depends(get_identity_service),
    throttle: RequestThrottle = Depends(get_registration_throttle)
):
    """
    Create or update the identity for an OTP-verified phone.

    **Rules:**
    - One registration attempt per phone per throttle window (429 otherwise)
    - Existing identity: name/email overwritten, marked verified
    """
    identifier = service.resolver.normalize(request.phone)
    if not identifier.has_phone:
        raise identity_http_error(IdentityNotResolvable("Registration requires a valid phone number"))

    if not throttle.hit(identifier.phone):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "registration_throttled",
                "message": "Please wait before registering this phone again",
                "retryable": True,
            },
            headers={"Retry-After": str(throttle.retry_after(identifier.phone))}
        )

    try:
        identity = await service.register(request.phone, request.name, email=request.email)
    except IdentityError as e:
        if e.retryable:
            # a retryable failure does not use up the window
            throttle.reset(identifier.phone)
        raise identity_http_error(e)

    return {"customer_id": identity.id, "identity": identity.to_dict()}


@router.get("/customer-ids")
async def get_customer_ids(
    token: str = Query(..., max_length=100, description="Customer token to match bookings for"),
    caller: InternalService = Depends(require_internal_service),
    service: IdentityService = Depends(get_identity_service)
):
    """
    Identity ids whose bookings belong to this token's customer.
    Never creates an identity.
    """
    try:
        customer_ids = await service.customer_ids_for(token)
    except IdentityError as e:
        raise identity_http_error(e)

    return {"customer_ids": customer_ids, "count": len(customer_ids)}


@router.post("/consolidate")
async def run_consolidation(
    request: ConsolidateRequest,
    caller: InternalService = Depends(require_internal_service),
    service: IdentityService = Depends(get_identity_service)
):
    """
    Merge duplicate identities per phone.

    Failed groups are reported, not raised; the run is safe to repeat.
    """
    logger.info(f"Consolidation requested by {caller.name}")
    try:
        report = await service.run_consolidation(backfill_legacy=request.backfill_legacy)
    except IdentityError as e:
        raise identity_http_error(e)

    return report.to_dict()


@router.get("/duplicates")
async def find_duplicate_phones(
    caller: InternalService = Depends(require_internal_service),
    service: IdentityService = Depends(get_identity_service)
):
    """
    Find phones owned by more than one identity.
    """
    try:
        duplicates = await service.find_duplicates()
    except IdentityError as e:
        raise identity_http_error(e)

    return {"duplicates": duplicates, "count": len(duplicates)}


@router.get("/identity/{identity_id}")
async def get_identity_by_id(
    identity_id: str,
    caller: InternalService = Depends(require_internal_service),
    service: IdentityService = Depends(get_identity_service)
):
    """
    Get identity by ID.
    """
    try:
        identity = await service.get_identity(identity_id)
    except IdentityError as e:
        raise identity_http_error(e)

    if not identity:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Identity not found"
        )

    return identity.to_dict()
