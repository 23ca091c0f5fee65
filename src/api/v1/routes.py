"""
API v1 routes.

Thin HTTP framing over the verification, attendance and identity services.
Caller authentication is handled upstream; identities arrive explicitly in
the request. Domain errors are translated by src.api.errors.
"""

from fastapi import APIRouter, Depends, Path, Response, status

from src.api.dependencies import (
    get_attendance_service,
    get_identity_service,
    get_verification_service,
)
from src.api.models import (
    INSTITUTIONAL_ID_PATTERN,
    AttemptRequest,
    AttemptResponse,
    AttendanceRequest,
    AttendanceResponse,
    ChallengeRequest,
    ChallengeResponse,
    CleanupRequest,
    EndEventResponse,
    ErrorResponse,
    GenerateCodeRequest,
    GenerateCodeResponse,
    InstitutionalIdResponse,
    LinkingTokenRequest,
    LinkingTokenResponse,
    LinkResponse,
    ResolveEmailRequest,
    ResolveEmailResponse,
    ToggleCodeRequest,
)
from src.domain.attendance import AttendanceService
from src.domain.identity import IdentityService
from src.domain.ports import VerifyResult
from src.domain.verification import VerificationService

router = APIRouter()

_ATTEMPT_STATUS = {
    VerifyResult.VERIFIED: status.HTTP_200_OK,
    VerifyResult.INVALID_CODE: status.HTTP_400_BAD_REQUEST,
    VerifyResult.EXPIRED: status.HTTP_400_BAD_REQUEST,
    VerifyResult.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    VerifyResult.ACCOUNT_PURGED: status.HTTP_410_GONE,
    VerifyResult.NO_PENDING_VERIFICATION: status.HTTP_404_NOT_FOUND,
}

_ERRORS = {
    400: {"model": ErrorResponse, "description": "Validation failure"},
    404: {"model": ErrorResponse, "description": "Not found"},
    409: {"model": ErrorResponse, "description": "Conflict"},
}


# Verification


@router.post(
    "/verification/challenge",
    response_model=ChallengeResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={**_ERRORS, 429: {"model": ErrorResponse, "description": "Cooldown running"}},
    tags=["verification"],
    summary="Send an institutional email verification code",
)
async def request_challenge(
    request_data: ChallengeRequest,
    service: VerificationService = Depends(get_verification_service),
) -> ChallengeResponse:
    service.request_challenge(request_data.identity_id, request_data.institutional_email)
    return ChallengeResponse(
        message="Verification code sent",
        expires_in_seconds=int(service.code_ttl.total_seconds()),
    )


@router.post(
    "/verification/attempt",
    response_model=AttemptResponse,
    responses={
        400: {"model": AttemptResponse, "description": "Wrong or expired code"},
        404: {"model": AttemptResponse, "description": "No pending verification"},
        410: {"model": AttemptResponse, "description": "Account purged"},
        429: {"model": AttemptResponse, "description": "Rate limited"},
    },
    tags=["verification"],
    summary="Submit a verification code",
)
async def submit_attempt(
    request_data: AttemptRequest,
    response: Response,
    service: VerificationService = Depends(get_verification_service),
) -> AttemptResponse:
    """
    Submit the 6-digit code received by email.

    The HTTP status mirrors the outcome; the body always carries the result
    and the remaining attempts.
    """
    outcome = service.submit_attempt(request_data.identity_id, request_data.code)
    response.status_code = _ATTEMPT_STATUS[outcome.result]
    return AttemptResponse(
        result=outcome.result.value,
        remaining_attempts=outcome.remaining_attempts,
        retry_after=outcome.retry_after,
    )


@router.post(
    "/verification/cleanup",
    status_code=status.HTTP_202_ACCEPTED,
    tags=["verification"],
    summary="Discard an abandoned, unverified account",
)
async def cleanup_abandoned(
    request_data: CleanupRequest,
    service: VerificationService = Depends(get_verification_service),
) -> dict[str, str]:
    """Best effort: always accepted, failures are only logged."""
    service.cleanup_abandoned(request_data.identity_id)
    return {"message": "Cleanup attempted"}


# Attendance


@router.post(
    "/events/{event_id}/code",
    response_model=GenerateCodeResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERRORS,
    tags=["attendance"],
    summary="Generate an attendance code for a started event",
)
async def generate_code(
    request_data: GenerateCodeRequest,
    event_id: str = Path(..., min_length=1),
    service: AttendanceService = Depends(get_attendance_service),
) -> GenerateCodeResponse:
    code = service.generate_code(event_id, request_data.admin_id)
    return GenerateCodeResponse(event_id=event_id, code=code)


@router.put(
    "/events/{event_id}/code",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=_ERRORS,
    tags=["attendance"],
    summary="Activate or deactivate an event's attendance code",
)
async def toggle_code(
    request_data: ToggleCodeRequest,
    event_id: str = Path(..., min_length=1),
    service: AttendanceService = Depends(get_attendance_service),
) -> Response:
    service.toggle_code(event_id, request_data.active)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/events/{event_id}/end",
    response_model=EndEventResponse,
    responses=_ERRORS,
    tags=["attendance"],
    summary="End an event and retire its attendance code",
)
async def end_event(
    event_id: str = Path(..., min_length=1),
    service: AttendanceService = Depends(get_attendance_service),
) -> EndEventResponse:
    event = service.end_event(event_id)
    return EndEventResponse(event_id=event.id, status=event.status.value, end_time=event.end_time)


@router.post(
    "/attendance",
    response_model=AttendanceResponse,
    responses=_ERRORS,
    tags=["attendance"],
    summary="Redeem an attendance code",
)
async def submit_attendance(
    request_data: AttendanceRequest,
    service: AttendanceService = Depends(get_attendance_service),
) -> AttendanceResponse:
    result = service.submit_attendance(request_data.user_id, request_data.code)
    return AttendanceResponse(
        message="Attendance recorded successfully",
        event_name=result.event_name,
        points_earned=result.points_earned,
    )


# Identity


@router.post(
    "/identities/resolve",
    response_model=ResolveEmailResponse,
    responses=_ERRORS,
    tags=["identity"],
    summary="Decide whether a sign-in email creates or links an account",
)
async def resolve_email(
    request_data: ResolveEmailRequest,
    service: IdentityService = Depends(get_identity_service),
) -> ResolveEmailResponse:
    outcome = service.register_or_link_email(
        request_data.email, request_data.provider, request_data.requesting_identity_id
    )
    return ResolveEmailResponse(
        decision=outcome.decision.value,
        existing_identity_id=outcome.existing_identity_id,
    )


@router.get(
    "/identities/institutional-id/{institutional_id}",
    response_model=InstitutionalIdResponse,
    tags=["identity"],
    summary="Check whether an institutional ID is already registered",
)
async def check_institutional_id(
    institutional_id: str = Path(..., pattern=INSTITUTIONAL_ID_PATTERN),
    service: IdentityService = Depends(get_identity_service),
) -> InstitutionalIdResponse:
    existing = service.check_institutional_id_exists(institutional_id)
    return InstitutionalIdResponse(
        exists=existing is not None,
        identity_id=existing.id if existing else None,
    )


@router.post(
    "/linking-tokens",
    response_model=LinkingTokenResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERRORS,
    tags=["identity"],
    summary="Issue an account linking token",
)
async def issue_linking_token(
    request_data: LinkingTokenRequest,
    service: IdentityService = Depends(get_identity_service),
) -> LinkingTokenResponse:
    token = service.issue_linking_token(
        request_data.existing_identity_id,
        request_data.incoming_email,
        request_data.incoming_provider,
    )
    return LinkingTokenResponse(
        token=token, expires_in_seconds=int(service.token_ttl.total_seconds())
    )


@router.post(
    "/linking-tokens/{token}/consume",
    response_model=LinkResponse,
    responses=_ERRORS,
    tags=["identity"],
    summary="Link accounts with a linking token",
)
async def process_linking(
    token: str = Path(..., min_length=1),
    service: IdentityService = Depends(get_identity_service),
) -> LinkResponse:
    result = service.process_linking(token)
    return LinkResponse(
        identity_id=result.identity.id,
        email=result.identity.email,
        provider=result.identity.provider,
    )
