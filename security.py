"""
Passwords, bearer tokens and request identity.

Tokens are HS256 JWTs carrying the user id, email, role and a CSRF secret that
the client must echo back in ``X-CSRF-Token`` on state-changing requests.
Routes declare who may call them through the ``optional_identity``,
``require_user`` and ``require_admin`` dependencies; public catalog reads use
``optional_user`` to learn whether the caller is an admin.
"""
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from config import Settings
from errors import ForbiddenError, UnauthorizedError
from schemas import Role

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
SESSION_HEADER = "X-Session-ID"
CSRF_HEADER = "X-CSRF-Token"
SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}
CSRF_EXEMPT_PATHS = {
    "/api/v1/auth/register",
    "/api/v1/auth/login",
    "/api/v1/auth/recovery",
    "/api/v1/auth/recovery/verify",
    "/api/v1/orders/webhook/payment",
}

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)


def build_password_context(rounds: int = 12) -> CryptContext:
    return CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)


def generate_csrf_token() -> str:
    return secrets.token_hex(32)


def generate_recovery_code() -> str:
    return secrets.token_hex(16)


class TokenService:
    def __init__(self, settings: Settings):
        self.secret = settings.jwt_secret
        self.issuer = settings.jwt_issuer
        self.audience = list(settings.jwt_audience)
        self.expiry = timedelta(hours=settings.jwt_expiry_hours)

    def create_access_token(self, user) -> Tuple[str, str, datetime]:
        """Mint a token for ``user``; returns (token, csrf_token, expires_at)."""
        now = datetime.now(timezone.utc)
        expires_at = now + self.expiry
        csrf_token = generate_csrf_token()
        claims = {
            "user_id": user.id,
            "email": user.email,
            "role": int(user.role),
            "csrf_token": csrf_token,
            "iss": self.issuer,
            "sub": str(user.id),
            "iat": now,
            "nbf": now,
            "exp": expires_at,
            "jti": str(uuid.uuid4()),
            "aud": self.audience,
        }
        token = jwt.encode(claims, self.secret, algorithm=ALGORITHM)
        return token, csrf_token, expires_at.replace(tzinfo=None)

    def decode(self, token: str) -> Dict[str, Any]:
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[ALGORITHM],
                audience=self.audience[0],
                issuer=self.issuer,
            )
        except JWTError as exc:
            raise UnauthorizedError("Invalid or expired token", str(exc))
        if "user_id" not in claims or "csrf_token" not in claims:
            raise UnauthorizedError("Invalid token claims")
        return claims


@dataclass(frozen=True)
class RequestIdentity:
    """Who is calling: a signed-in user, or a guest keyed by session id."""

    user_id: Optional[int] = None
    email: str = ""
    role: int = Role.user
    csrf_token: str = ""
    session_id: str = ""

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    @property
    def is_admin(self) -> bool:
        return not self.is_guest and self.role == Role.admin

    @classmethod
    def from_claims(cls, claims: Dict[str, Any], session_id: str = "") -> "RequestIdentity":
        return cls(
            user_id=int(claims["user_id"]),
            email=claims.get("email", ""),
            role=int(claims.get("role", Role.user)),
            csrf_token=claims["csrf_token"],
            session_id=session_id,
        )


def _tokens(request: Request) -> TokenService:
    return request.app.state.tokens


def _check_csrf(request: Request, identity: "RequestIdentity") -> None:
    if request.method in SAFE_METHODS or request.url.path in CSRF_EXEMPT_PATHS:
        return
    sent = request.headers.get(CSRF_HEADER, "")
    if not sent or not secrets.compare_digest(sent, identity.csrf_token):
        raise ForbiddenError("Invalid CSRF token")


def optional_identity(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
) -> RequestIdentity:
    """Signed-in user when a valid bearer token is sent, otherwise a guest session.

    A guest's session id is left on ``request.state`` for ``echo_session_id`` to
    return in ``X-Session-ID``, on error responses as well.
    """
    session_id = request.headers.get(SESSION_HEADER, "").strip()
    if token:
        try:
            claims = _tokens(request).decode(token)
        except UnauthorizedError:
            logger.debug("Ignoring invalid bearer token on %s", request.url.path)
        else:
            identity = RequestIdentity.from_claims(claims, session_id=session_id)
            _check_csrf(request, identity)
            return identity
    if not session_id:
        session_id = str(uuid.uuid4())
    request.state.session_id = session_id
    return RequestIdentity(session_id=session_id)


def require_user(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
) -> RequestIdentity:
    if not token:
        raise UnauthorizedError("Authorization header required")
    claims = _tokens(request).decode(token)
    identity = RequestIdentity.from_claims(
        claims, session_id=request.headers.get(SESSION_HEADER, "").strip()
    )
    _check_csrf(request, identity)
    return identity


def require_admin(identity: RequestIdentity = Depends(require_user)) -> RequestIdentity:
    if not identity.is_admin:
        raise ForbiddenError("Admin access required")
    return identity


def optional_user(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
) -> Optional[RequestIdentity]:
    """Caller's identity on public routes, or None; never rejects the request."""
    if not token:
        return None
    try:
        return RequestIdentity.from_claims(_tokens(request).decode(token))
    except UnauthorizedError:
        return None


async def echo_session_id(request: Request, call_next):
    """HTTP middleware returning the guest session id on every response."""
    response = await call_next(request)
    session_id = getattr(request.state, "session_id", "")
    if session_id and SESSION_HEADER not in response.headers:
        response.headers[SESSION_HEADER] = session_id
    return response
