from __future__ import annotations

import base64
import binascii
import hashlib
import json
import re
import secrets
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.errors import (
    AccountDeletedError,
    AccountPendingError,
    AuthRequiredError,
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    ValidationError,
)
from authkernel.service.identity import IdentityVerifier
from authkernel.service.messaging import CHANNEL_EMAIL, CHANNEL_WHATSAPP, OtpDelivery
from authkernel.service.otp import OtpManager
from authkernel.service.replay import ChallengeReplayGuard
from authkernel.service.sessions import DeviceInfo, SessionStore
from authkernel.service.tokens import ANONYMOUS_ROLE, Principal, TokenIssuer, TokenPair
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import User

logger = get_logger(__name__)

SUSPENDED_REDIRECT = "/auth/suspended"
CHALLENGE_BYTES = 32

_COUNTRY_CODE = re.compile(r"^\+\d{1,4}$")
_EMAIL_SHAPE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _strip_spaces(value: str) -> str:
    return re.sub(r"\s", "", value)


def is_valid_phone(phone: Optional[str], country_code: Optional[str]) -> bool:
    """Check a national number against its dialing code (+91 numbers have 10 digits)."""
    if not phone or not country_code:
        return False
    if not _COUNTRY_CODE.match(country_code):
        return False
    digits = _strip_spaces(phone)
    if country_code == "+91":
        return re.fullmatch(r"\d{10}", digits) is not None
    return re.fullmatch(r"\d{6,15}", digits) is not None


def looks_like_email(value: Optional[str]) -> bool:
    return bool(value) and _EMAIL_SHAPE.match(value.strip()) is not None


def decode_base64(value: Any) -> Optional[bytes]:
    """Decode standard or URL-safe base64, tolerating missing padding."""
    if not value or not isinstance(value, str):
        return None
    normalized = value.strip().replace("-", "+").replace("_", "/")
    normalized += "=" * ((4 - len(normalized) % 4) % 4)
    try:
        return base64.b64decode(normalized, validate=True)
    except (binascii.Error, ValueError):
        return None


def effective_role(user: User) -> str:
    if user.role == "admin":
        return "admin"
    if user.role == "creator" or user.verified:
        return "creator"
    return "normal"


class ProfileStore(Protocol):
    def create_user(self, **fields: Any) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def find_by_identifier(self, identifier: str) -> Optional[User]: ...

    def find_duplicate(
        self, email: Optional[str], mobile: Optional[str], country_code: Optional[str] = None
    ) -> Optional[User]: ...

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]: ...

    def link_user_auth_provider(self, user_id: int, provider: str, provider_uid: str) -> None: ...

    def get_user_by_provider(self, provider: str, provider_uid: str) -> Optional[User]: ...


@dataclass
class AuthResult:
    """Outcome of one orchestrated auth step, rendered by the HTTP layer."""

    message: str
    principal: Optional[Principal] = None
    tokens: Optional[TokenPair] = None
    user: Optional[User] = None
    action_required: Optional[str] = None
    redirect_to: Optional[str] = None
    extra: dict = field(default_factory=dict)

    def as_dict(self) -> dict:
        data: dict[str, Any] = {"message": self.message}
        if self.tokens:
            data.update(self.tokens.as_dict())
        if self.principal and self.principal.is_anonymous:
            data["anonymous_user_id"] = self.principal.id
        if self.user:
            data["user"] = user_payload(self.user)
        if self.action_required:
            data["action_required"] = self.action_required
        if self.redirect_to:
            data["redirect_to"] = self.redirect_to
        data.update(self.extra)
        return data


def user_payload(user: User) -> dict:
    return {
        "id": str(user.id),
        "username": user.username,
        "name": user.name,
        "email": user.email,
        "phone": user.phone_identifier,
        "avatar": user.avatar,
        "status": user.status,
        "role": effective_role(user),
    }


class AuthService:
    """Auth flows tying codes, challenges, tokens and sessions together.

    Role claims are always rebuilt from the stored profile at issuance,
    at login and at refresh alike; nothing role-related is read from the
    request.
    """

    def __init__(
        self,
        store: ProfileStore,
        cache,
        settings: Settings,
        *,
        otp: OtpManager,
        replay: ChallengeReplayGuard,
        tokens: TokenIssuer,
        sessions: SessionStore,
        delivery: OtpDelivery,
        identity: IdentityVerifier,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.otp = otp
        self.replay = replay
        self.tokens = tokens
        self.sessions = sessions
        self.delivery = delivery
        self.identity = identity
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    # passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: int, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: int, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # principals and gating
    @staticmethod
    def compute_principal(user: User) -> Principal:
        return Principal(id=str(user.id), role=effective_role(user))

    @staticmethod
    def _gate(user: User) -> None:
        if user.status == "deleted":
            raise AccountDeletedError()
        if user.status == "pending":
            raise AccountPendingError()

    async def _issue_for_user(self, user: User, device: DeviceInfo, message: str) -> AuthResult:
        self._gate(user)
        principal = self.compute_principal(user)
        pair = await self.tokens.issue_pair(principal, device)
        result = AuthResult(message=message, principal=principal, tokens=pair, user=user)
        if user.status == "suspended":
            self.logger.info("login_suspended_account", user_id=user.id)
            result.message = "login successful but account is suspended"
            result.action_required = "suspended"
            result.redirect_to = SUSPENDED_REDIRECT
        return result

    def _user_for_subject(self, subject: str) -> User:
        try:
            user = self.store.get_user(int(subject))
        except (TypeError, ValueError):
            user = None
        if not user:
            raise InvalidTokenError("account not found")
        return user

    def _send_code(self, identifier: str, code: str, purpose: str) -> None:
        channel = CHANNEL_EMAIL if "@" in identifier else CHANNEL_WHATSAPP
        self.delivery.dispatch(channel, identifier, code, purpose)

    async def _check_code(self, identifier: str, code: Optional[str], purpose: str) -> None:
        status = await self.otp.verify(identifier, code or "", purpose)
        if not status.ok:
            raise InvalidCredentialsError(
                "invalid or expired code", detail={"otp_status": status.value}
            )

    # bearer
    def authenticate(self, authorization: Optional[str]) -> Principal:
        """Resolve the bearer header to a principal without any store access.

        Raises:
            AuthRequiredError: no credential presented
            InvalidTokenError: wrong scheme or a bad token
            TokenExpiredError: expired access token
        """
        if not authorization or not authorization.strip():
            raise AuthRequiredError("authentication required")
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise InvalidTokenError("bearer token required")
        return self.tokens.verify_access_token(token.strip())

    # init
    async def init_session(
        self,
        device: DeviceInfo,
        *,
        client: Optional[str] = None,
        unsupported: bool = False,
        key_id: Optional[str] = None,
        attestation_object: Optional[str] = None,
        client_data_hash: Optional[str] = None,
        challenge: Optional[str] = None,
        bundle_id: Optional[str] = None,
        team_id: Optional[str] = None,
        app_version: Optional[str] = None,
    ) -> AuthResult:
        """Start an anonymous session, attested when the client can attest.

        Raises:
            ValidationError: attestation fields missing, undecodable, the
                challenge is not 32 bytes or was already consumed
            StoreUnavailableError: the session could not be recorded
        """
        client_hint = (client or "").strip().lower()
        if client_hint == "android":
            return AuthResult(
                message="Android init acknowledged",
                extra={"client": "android", "action": "noop"},
            )
        if client_hint == "swagger":
            return await self._anonymous(device, "anonymous session initialized", client="swagger")
        if unsupported is True:
            return await self._anonymous(
                device, "anonymous session initialized (fallback)", fallback=True
            )

        if not (key_id and attestation_object and client_data_hash and challenge):
            raise ValidationError("missing required fields")
        decoded = [decode_base64(value) for value in (attestation_object, client_data_hash, challenge)]
        if any(not part for part in decoded):
            raise ValidationError("invalid base64 encoding")
        challenge_bytes = decoded[2]
        if len(challenge_bytes) != CHALLENGE_BYTES:
            raise ValidationError("invalid challenge length")
        # Keyed on the decoded bytes so URL-safe and padded spellings collide
        canonical = base64.b64encode(challenge_bytes).decode()
        if not await self.replay.consume(canonical):
            raise ValidationError("challenge already used or invalid")

        result = await self._anonymous(device, "anonymous session initialized")
        result.extra.update(
            {
                "app_attest_verified": True,
                "bundle_id": bundle_id or self.settings.app_bundle_id,
                "team_id": team_id or self.settings.app_team_id,
                "app_version": app_version or self.settings.app_version,
            }
        )
        self.logger.info("app_attest_session_started", key_id=key_id, principal_id=result.principal.id)
        return result

    async def _anonymous(self, device: DeviceInfo, message: str, **extra: Any) -> AuthResult:
        principal = Principal.anonymous()
        pair = await self.tokens.issue_pair(principal, device)
        self.logger.info("anonymous_session_started", principal_id=principal.id)
        return AuthResult(message=message, principal=principal, tokens=pair, extra=extra)

    # signup
    @staticmethod
    def _pending_key(identifier: str) -> str:
        return f"signup:pending:{identifier.strip().lower()}"

    async def start_signup(
        self,
        *,
        name: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        country_code: Optional[str] = None,
    ) -> AuthResult:
        """Hold a pending registration and send its confirmation code.

        Input shape is validated by the request model; rate limiting is
        applied by the route before this is called.

        Raises:
            ValidationError: no contact channel, or the email domain is restricted
            ConflictError: an account already uses the email or phone
        """
        email = email.strip().lower() if email else None
        phone = _strip_spaces(phone) if phone else None
        if not email and not (phone and country_code):
            raise ValidationError("email or phone number is required")
        if self.store.find_duplicate(email, phone, country_code):
            raise ConflictError("account already exists with this email or phone number")
        if email and email.rsplit("@", 1)[-1] in self.settings.restricted_domains:
            raise ValidationError("email domain is not allowed")

        phone_identifier = f"{country_code}{phone}" if phone and country_code else None
        identifier = email or phone_identifier
        pending = {
            "name": name.strip(),
            "email": email,
            "mobile": phone,
            "country_code": country_code if phone else None,
        }
        await self.cache.put(
            self._pending_key(identifier),
            json.dumps(pending),
            self.settings.otp_ttl_seconds + 60,
        )
        code = await self.otp.generate(identifier, "signup")
        if email:
            self.delivery.dispatch(CHANNEL_EMAIL, email, code, "signup")
        if phone_identifier:
            self.delivery.dispatch(CHANNEL_WHATSAPP, phone_identifier, code, "signup")
        self.logger.info("signup_started", identifier=identifier)
        return AuthResult(
            message="code sent, verify to complete registration",
            action_required="verify_otp",
            extra={"identifier": identifier},
        )

    async def complete_signup(
        self,
        caller: Principal,
        identifier: str,
        code: str,
        device: DeviceInfo,
    ) -> AuthResult:
        """Create the account for a verified pending registration.

        Raises:
            InvalidCredentialsError: the code did not verify
            ValidationError: the pending registration has lapsed
            ConflictError: the account was created concurrently
        """
        identifier = identifier.strip().lower()
        await self._check_code(identifier, code, "signup")
        raw = await self.cache.take(self._pending_key(identifier))
        if not raw:
            raise ValidationError("registration expired, please sign up again")
        pending = json.loads(raw)
        try:
            user = self.store.create_user(
                email=pending.get("email"),
                username=f"u{secrets.token_hex(5)}",
                name=pending.get("name") or "User",
                mobile=pending.get("mobile"),
                country_code=pending.get("country_code"),
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "account already exists with this email or phone number", detail=exc.detail
            ) from exc
        result = await self._issue_for_user(user, device, "registration successful")
        if caller.is_anonymous:
            await self.sessions.revoke_all(caller.id)
        self.logger.info("signup_completed", user_id=user.id, upgraded_from=caller.id)
        return result

    # login
    def _resolve_login_identifier(
        self,
        username_email: Optional[str],
        phone: Optional[str],
        country_code: Optional[str],
    ) -> Optional[str]:
        if phone and country_code and is_valid_phone(phone, country_code):
            return f"{country_code}{_strip_spaces(phone)}"
        if looks_like_email(username_email):
            return username_email.strip().lower()
        return None

    async def login(
        self,
        device: DeviceInfo,
        *,
        is_otp_login: Any,
        username_email: Optional[str] = None,
        phone: Optional[str] = None,
        country_code: Optional[str] = None,
        password: Optional[str] = None,
    ) -> AuthResult:
        """Password login, or the first half of a code login.

        Raises:
            ValidationError: missing or malformed input
            InvalidCredentialsError: unknown account or wrong password
            AccountDeletedError, AccountPendingError: blocked account status
        """
        if not isinstance(is_otp_login, bool):
            raise ValidationError("is_otp_login is required and must be a boolean")

        if is_otp_login:
            identifier = self._resolve_login_identifier(username_email, phone, country_code)
            if not identifier:
                raise ValidationError("invalid phone number or email format")
            user = self.store.find_by_identifier(identifier)
            if user:
                code = await self.otp.generate(identifier, "login")
                self._send_code(identifier, code, "login")
            else:
                # Same response either way so the endpoint cannot be used to probe accounts
                self.logger.info("login_code_unknown_identifier", identifier=identifier)
            return AuthResult(message="code sent, verify to continue", action_required="2fa_verify")

        if not username_email or not password:
            raise ValidationError("username/email and password are required")
        if looks_like_email(username_email):
            user = self.store.get_user_by_email(username_email.strip().lower())
        else:
            user = self.store.get_user_by_username(username_email.strip())
        if not user:
            self.logger.warning("login_unknown_account")
            raise InvalidCredentialsError("invalid credentials")
        self._gate(user)
        if not self.verify_password(user.id, password):
            raise InvalidCredentialsError("invalid credentials")

        if user.two_factor_enabled:
            identifier = user.email or user.phone_identifier
            if not identifier:
                raise ValidationError("account has no channel for a second factor")
            code = await self.otp.generate(identifier, "login")
            self._send_code(identifier, code, "login")
            self.logger.info("login_second_factor_sent", user_id=user.id)
            return AuthResult(
                message="second factor code sent, verify to continue",
                action_required="2fa_verify",
            )

        self.logger.info("login_success", user_id=user.id)
        return await self._issue_for_user(user, device, "login successful")

    async def login_verify(
        self,
        device: DeviceInfo,
        *,
        code: str,
        username_email: Optional[str] = None,
        phone: Optional[str] = None,
        country_code: Optional[str] = None,
    ) -> AuthResult:
        if not code:
            raise ValidationError("code is required")
        if phone and country_code:
            identifier = f"{country_code}{_strip_spaces(phone)}"
        elif looks_like_email(username_email):
            identifier = username_email.strip().lower()
        else:
            raise ValidationError("invalid phone number or email format")
        user = self.store.find_by_identifier(identifier)
        if not user:
            raise InvalidCredentialsError("invalid or expired code")
        await self._check_code(identifier, code, "login")
        self.logger.info("login_verified", user_id=user.id)
        return await self._issue_for_user(user, device, "login successful")

    # refresh / logout / validate
    async def refresh(self, refresh_token: str, device: DeviceInfo) -> AuthResult:
        """Rotate a refresh token, re-reading the account before reissuing.

        Raises:
            InvalidTokenError, TokenExpiredError: token or session rejected
            AccountDeletedError, AccountPendingError: account blocked since issuance
        """
        if not refresh_token:
            raise ValidationError("refresh token is required")
        resolved: dict[str, User] = {}

        async def _resolve(subject: str) -> Principal:
            if subject.startswith("anon_"):
                return Principal(id=subject, role=ANONYMOUS_ROLE, is_anonymous=True)
            user = self._user_for_subject(subject)
            self._gate(user)
            resolved["user"] = user
            return self.compute_principal(user)

        principal, pair = await self.tokens.rotate(refresh_token, device, _resolve)
        user = resolved.get("user")
        result = AuthResult(
            message="tokens refreshed", principal=principal, tokens=pair, user=user
        )
        if user and user.status == "suspended":
            result.action_required = "suspended"
            result.redirect_to = SUSPENDED_REDIRECT
        return result

    async def logout(self, principal: Principal, refresh_token: Optional[str] = None) -> AuthResult:
        if refresh_token:
            revoked = 1 if await self.sessions.revoke_one(principal.id, refresh_token) else 0
        else:
            revoked = await self.sessions.revoke_all(principal.id)
        return AuthResult(message="logout successful", extra={"revoked": revoked})

    async def validate(self, principal: Principal) -> AuthResult:
        if principal.is_anonymous:
            return AuthResult(
                message="token is valid",
                extra={
                    "user": {"id": principal.id, "role": ANONYMOUS_ROLE, "is_anonymous": True}
                },
            )
        user = self._user_for_subject(principal.id)
        self._gate(user)
        return AuthResult(message="token is valid", user=user)

    # forgot password
    @staticmethod
    def _grant_key(grant: str) -> str:
        return f"reset:grant:{hashlib.sha256(grant.encode()).hexdigest()}"

    async def forgot_password_request(self, email: str) -> AuthResult:
        email = email.strip().lower()
        user = self.store.get_user_by_email(email)
        if user and user.status not in ("deleted", "pending"):
            code = await self.otp.generate(email, "forgot_password")
            self.delivery.dispatch(CHANNEL_EMAIL, email, code, "forgot_password")
            self.logger.info("password_reset_code_sent", user_id=user.id)
        else:
            self.logger.info("password_reset_request_ignored", found=bool(user))
        return AuthResult(
            message="if the account exists a code has been sent",
            action_required="verify_otp",
        )

    async def forgot_password_verify(self, email: str, code: str) -> AuthResult:
        """Exchange a reset code for a short-lived single-use reset grant."""
        email = email.strip().lower()
        await self._check_code(email, code, "forgot_password")
        user = self.store.get_user_by_email(email)
        if not user:
            raise InvalidCredentialsError("invalid or expired code")
        grant = secrets.token_urlsafe(32)
        ttl = self.settings.password_reset_grant_ttl_seconds
        await self.cache.put(self._grant_key(grant), str(user.id), ttl)
        return AuthResult(
            message="code verified, you can now reset your password",
            action_required="reset_password",
            extra={"reset_token": grant, "expires_in": ttl},
        )

    async def reset_password(
        self,
        email: str,
        new_password: str,
        *,
        reset_token: Optional[str] = None,
        code: Optional[str] = None,
    ) -> AuthResult:
        """Set a new password and sign the account out everywhere.

        Raises:
            ValidationError: neither a reset token nor a code was supplied
            InvalidCredentialsError: the grant or code is invalid for this email
        """
        email = email.strip().lower()
        if reset_token:
            user_id = await self.cache.take(self._grant_key(reset_token))
            user = self.store.get_user_by_email(email)
            if not user_id or not user or str(user.id) != str(user_id):
                raise InvalidCredentialsError("invalid or expired reset token")
        elif code:
            await self._check_code(email, code, "forgot_password")
            user = self.store.get_user_by_email(email)
            if not user:
                raise InvalidCredentialsError("invalid or expired code")
        else:
            raise ValidationError("reset token or code is required")
        self._gate(user)
        self.save_password(user.id, new_password)
        revoked = await self.sessions.revoke_all(str(user.id))
        self.logger.info("password_reset", user_id=user.id, sessions_revoked=revoked)
        return AuthResult(message="password reset successfully", extra={"sessions_revoked": revoked})

    # social sign-in
    async def external_sign_in(
        self,
        provider: str,
        device: DeviceInfo,
        *,
        id_token: Optional[str] = None,
        code: Optional[str] = None,
        client_id: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> AuthResult:
        """Sign in with a Google or Apple identity, creating or linking the account.

        Apple may omit the email after the first sign-in, so the request body
        email is accepted for that provider only, and only to create a new
        account; it never links to an existing profile.
        """
        if provider == "apple" and code:
            id_token = await self.identity.exchange_apple_code(
                code, client_id=client_id, redirect_uri=redirect_uri
            )
        if not id_token:
            raise ValidationError(
                "id token or code is required" if provider == "apple" else "id token is required"
            )
        identity = await self.identity.verify(provider, id_token, client_id=client_id)
        user = self.store.get_user_by_provider(provider, identity.subject)
        if user:
            return await self._issue_for_user(user, device, f"{provider} sign in successful")

        if identity.email:
            # Provider-asserted email: an existing account may be linked to this subject
            resolved_email = identity.email.strip().lower()
            user = self.store.get_user_by_email(resolved_email)
        elif provider == "apple" and email:
            # Client-supplied email is only good for a brand new account
            resolved_email = email.strip().lower()
            if self.store.get_user_by_email(resolved_email):
                self.logger.warning("external_email_claim_rejected", provider=provider)
                raise ConflictError("account already exists, sign in with your password or code")
        else:
            raise ValidationError(f"email is required from the {provider} identity")

        if not user:
            try:
                user = self.store.create_user(
                    email=resolved_email,
                    username=f"u{secrets.token_hex(5)}",
                    name=identity.name or name or "User",
                )
            except ConstraintViolation as exc:
                raise ConflictError("account already exists", detail=exc.detail) from exc
            self.logger.info("external_account_created", provider=provider, user_id=user.id)
        self.store.link_user_auth_provider(user.id, provider, identity.subject)
        return await self._issue_for_user(user, device, f"{provider} sign in successful")

    def suspended_info(self) -> AuthResult:
        return AuthResult(
            message="account is suspended",
            action_required="contact_support",
            extra={"support_email": self.settings.support_email},
        )


__all__ = [
    "AuthResult",
    "AuthService",
    "decode_base64",
    "effective_role",
    "is_valid_phone",
    "looks_like_email",
    "user_payload",
]
