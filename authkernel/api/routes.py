from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from authkernel.api.schemas import (
    AppleSignInRequest,
    Envelope,
    ForgotPasswordRequest,
    ForgotPasswordVerifyRequest,
    GoogleSignInRequest,
    InitRequest,
    LoginRequest,
    LoginVerifyRequest,
    LogoutRequest,
    PasswordResetRequest,
    SignupRequest,
    SignupVerifyRequest,
    TokenRefreshRequest,
)
from authkernel.logging import get_logger
from authkernel.service.errors import RateLimitedError
from authkernel.service.runtime import get_runtime
from authkernel.service.sessions import DeviceInfo
from authkernel.service.tokens import Principal

logger = get_logger(__name__)

router = APIRouter(prefix="/auth")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }

    def apply_headers(self, response: Response) -> None:
        """Apply rate limit headers per IETF draft-polli-ratelimit-headers."""
        for name, value in self.headers().items():
            response.headers[name] = value


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _device_info(request: Request) -> DeviceInfo:
    headers = request.headers
    return DeviceInfo(
        user_agent=headers.get("user-agent"),
        ip_addr=_client_ip(request),
        browser=headers.get("sec-ch-ua"),
        os=headers.get("sec-ch-ua-platform"),
        device=headers.get("x-client"),
    )


async def _enforce_rate_limit(
    runtime, route: str, request: Request, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Count the request against the route's window.

    Raises:
        RateLimitedError: when the window is exhausted, carrying the limit headers
        StoreUnavailableError: if the counter could not be updated
    """
    decision = await runtime.limiter.allow(_client_ip(request), route)
    info = RateLimitInfo(decision.limit, decision.remaining, decision.reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not decision.allowed:
        raise RateLimitedError(
            retry_after=max(1, decision.reset_seconds), headers=info.headers()
        )
    return info


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


@router.post("/init", response_model=Envelope, tags=["auth"])
async def init_session(
    body: InitRequest,
    request: Request,
    response: Response,
    x_client: Optional[str] = Header(None),
):
    """Start an anonymous session.

    Clients that can attest their device send an attestation bundle whose
    challenge is accepted once. Swagger and fallback clients receive a plain
    anonymous session; Android clients are acknowledged without tokens.

    Raises:
        400: If attestation fields are missing, malformed or replayed
        429: If rate limit exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "init", request, response=response)
    result = await runtime.auth.init_session(
        _device_info(request),
        client=body.client_hint(x_client),
        unsupported=body.unsupported is True,
        key_id=body.key_id,
        attestation_object=body.attestation_object,
        client_data_hash=body.client_data_hash,
        challenge=body.challenge,
        bundle_id=body.bundle_id,
        team_id=body.team_id,
        app_version=body.app_version,
    )
    return Envelope(status="ok", data=result.as_dict())


@router.post("/signup", response_model=Envelope, tags=["auth"])
async def signup(body: SignupRequest, request: Request, response: Response):
    """Start registration and send a confirmation code.

    Raises:
        400: If the payload is invalid or the email domain is restricted
        409: If an account already uses the email or phone
        429: If rate limit exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "signup", request, response=response)
    result = await runtime.auth.start_signup(
        name=body.name,
        email=body.email,
        phone=body.phone,
        country_code=body.country_code,
    )
    return Envelope(status="ok", data=result.as_dict())


@router.post("/signup/verify", response_model=Envelope, status_code=201, tags=["auth"])
async def signup_verify(
    body: SignupVerifyRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
):
    """Complete registration with the emailed or messaged code.

    The caller's anonymous sessions are revoked once the account exists.

    Raises:
        401: If the bearer token is missing or invalid, or the code is wrong
        409: If the account was created concurrently
    """
    runtime = get_runtime()
    result = await runtime.auth.complete_signup(
        principal, body.identifier, body.otp, _device_info(request)
    )
    return Envelope(status="ok", data=result.as_dict())


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with a password, or request a sign-in code.

    Raises:
        400: If is_otp_login is not a boolean or identifiers are malformed
        401: If credentials are invalid
        403: If the account is deleted or pending
        429: If rate limit exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "login", request, response=response)
    result = await runtime.auth.login(
        _device_info(request),
        is_otp_login=body.is_otp_login,
        username_email=body.username_email,
        phone=body.phone,
        country_code=body.country_code,
        password=body.password,
    )
    return Envelope(status="ok", data=result.as_dict())


@router.post("/login/verify", response_model=Envelope, tags=["auth"])
async def login_verify(body: LoginVerifyRequest, request: Request, response: Response):
    """Exchange a sign-in or second-factor code for tokens.

    Raises:
        401: If the code or account is invalid
        403: If the account is deleted or pending
        429: If rate limit exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "login/verify", request, response=response)
    result = await runtime.auth.login_verify(
        _device_info(request),
        code=body.otp,
        username_email=body.username_email,
        phone=body.phone,
        country_code=body.country_code,
    )
    return Envelope(status="ok", data=result.as_dict())


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request, response: Response):
    """Rotate a refresh token; the presented token stops working.

    Raises:
        401: If the token is invalid, expired or already used
        403: If the account was deleted or set pending since issuance
        429: If rate limit exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "refresh", request, response=response)
    result = await runtime.auth.refresh(body.refresh_token, _device_info(request))
    return Envelope(status="ok", data=result.as_dict())


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: Principal = Depends(get_principal),
):
    """Revoke one session when a refresh token is given, otherwise all of them."""
    runtime = get_runtime()
    refresh_token = body.refresh_token if body else None
    result = await runtime.auth.logout(principal, refresh_token)
    return Envelope(status="ok", data=result.as_dict())


@router.get("/validate", response_model=Envelope, tags=["auth"])
async def validate(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    result = await runtime.auth.validate(principal)
    return Envelope(status="ok", data=result.as_dict())


@router.post("/forgot-password/otp", response_model=Envelope, tags=["auth"])
async def forgot_password_otp(
    body: ForgotPasswordRequest, request: Request, response: Response
):
    """Send a password reset code.

    The response is identical whether or not the account exists.

    Raises:
        429: If rate limit exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "forgot-password/otp", request, response=response)
    result = await runtime.auth.forgot_password_request(body.email)
    return Envelope(status="ok", data=result.as_dict())


@router.post("/forgot-password/verify", response_model=Envelope, tags=["auth"])
async def forgot_password_verify(
    body: ForgotPasswordVerifyRequest, request: Request, response: Response
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "forgot-password/verify", request, response=response)
    result = await runtime.auth.forgot_password_verify(body.email, body.otp)
    return Envelope(status="ok", data=result.as_dict())


@router.post("/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetRequest, request: Request, response: Response):
    """Set a new password using a reset token or code; signs out every device.

    Raises:
        400: If neither reset_token nor otp is supplied, or the password is weak
        401: If the reset token or code is invalid
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "reset-password", request, response=response)
    result = await runtime.auth.reset_password(
        body.email,
        body.new_password,
        reset_token=body.reset_token,
        code=body.otp,
    )
    return Envelope(status="ok", data=result.as_dict())


@router.post("/google", response_model=Envelope, tags=["auth"])
async def google_sign_in(body: GoogleSignInRequest, request: Request, response: Response):
    """Sign in with a Google id token.

    Raises:
        400: If the identity carries no email
        401: If the token does not verify
        403: If the account is deleted or pending
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "google", request, response=response)
    result = await runtime.auth.external_sign_in(
        "google", _device_info(request), id_token=body.id_token
    )
    return Envelope(status="ok", data=result.as_dict())


@router.post("/apple", response_model=Envelope, tags=["auth"])
async def apple_sign_in(body: AppleSignInRequest, request: Request, response: Response):
    """Sign in with an Apple id token or authorization code.

    Raises:
        400: If no email is available from the token or the body
        401: If the token or code exchange fails
        403: If the account is deleted or pending
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "apple", request, response=response)
    result = await runtime.auth.external_sign_in(
        "apple",
        _device_info(request),
        id_token=body.id_token,
        code=body.code,
        client_id=body.client_id,
        redirect_uri=body.redirect_uri,
        email=body.email,
        name=body.name,
    )
    return Envelope(status="ok", data=result.as_dict())


@router.get("/suspended", response_model=Envelope, tags=["auth"])
async def suspended():
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.auth.suspended_info().as_dict())
