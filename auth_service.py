import logging
from datetime import datetime, timedelta
from typing import Optional

from passlib.context import CryptContext
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

import notifier as notifications
from config import Settings
from database import paginate, transaction, utc_now
from errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from models import LoginAttempt, RecoveryCode, User
from schemas import (
    LoginInfo,
    LoginRequest,
    LoginResponse,
    RegisterRequest,
    Role,
    user_response,
)
from security import TokenService, generate_recovery_code
from text_utils import LIKE_ESCAPE, like_pattern, sanitize

logger = logging.getLogger(__name__)

MAX_FAILED_LOGINS = 5
RECOVERY_CODE_TTL = timedelta(minutes=30)

INVALID_CREDENTIALS = "Invalid email or password"
RECOVERY_SENT = "Nếu email tồn tại, mã khôi phục đã được gửi đến email của bạn."
RECOVERY_INVALID = "Mã khôi phục không hợp lệ hoặc đã hết hạn (invalid or expired)."


def locked_message(just_locked: bool = False) -> str:
    tail = (
        "Mã khôi phục đã được gửi đến email của bạn."
        if just_locked
        else "Vui lòng kiểm tra email để nhận mã khôi phục."
    )
    return f"Tài khoản đã bị khóa do nhập sai mật khẩu quá {MAX_FAILED_LOGINS} lần. {tail}"


class AuthService:
    def __init__(self, settings: Settings, tokens: TokenService, pwd_context: CryptContext, notifier):
        self.settings = settings
        self.tokens = tokens
        self.pwd_context = pwd_context
        self.notifier = notifier

    # -- passwords ---------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self.pwd_context.hash(password)

    def verify_password(self, plain_password: str, hashed_password: str) -> bool:
        try:
            return self.pwd_context.verify(plain_password, hashed_password)
        except ValueError:
            return False

    # -- use-cases ---------------------------------------------------------

    def register(self, session: Session, req: RegisterRequest) -> User:
        birthday = None
        if req.birthday:
            try:
                birthday = datetime.strptime(req.birthday, "%Y-%m-%d").date()
            except ValueError:
                raise ValidationError("Invalid birthday format. Use YYYY-MM-DD")

        email = req.email.lower()
        if session.scalar(select(User.id).where(User.email == email)) is not None:
            raise ConflictError("Email already exists")

        user = User(
            fullname=sanitize(req.fullname),
            email=email,
            password_hash=self.hash_password(req.password),
            address=sanitize(req.address or ""),
            phone=req.phone or "",
            birthday=birthday,
            role=int(Role.user),
            is_active=True,
            failed_login_count=0,
        )
        with transaction(session):
            session.add(user)
        logger.info("Registered user %s", user.id)
        return user

    def _record_attempt(self, session: Session, email: str, ip: str, user_agent: str, success: bool, reason: str):
        session.add(
            LoginAttempt(
                email=email,
                ip_address=ip or "",
                user_agent=(user_agent or "")[:500],
                is_success=success,
                fail_reason=reason,
                attempted_at=utc_now(),
            )
        )

    def login(self, session: Session, req: LoginRequest, ip: str = "", user_agent: str = "") -> LoginResponse:
        email = req.email.lower()
        user = session.scalar(select(User).where(User.email == email))

        if user is None:
            with transaction(session):
                self._record_attempt(session, email, ip, user_agent, False, "Email not found")
            raise UnauthorizedError(INVALID_CREDENTIALS)

        if not user.is_active:
            with transaction(session):
                self._record_attempt(session, email, ip, user_agent, False, "Account is locked")
            raise UnauthorizedError(locked_message())

        if not self.verify_password(req.password, user.password_hash):
            with transaction(session):
                user.failed_login_count += 1
                just_locked = user.failed_login_count >= MAX_FAILED_LOGINS
                if just_locked:
                    user.is_active = False
                reason = f"Invalid password (attempt {user.failed_login_count}/{MAX_FAILED_LOGINS})"
                self._record_attempt(session, email, ip, user_agent, False, reason)

            if just_locked:
                logger.warning("Locked account %s after %d failed logins", user.id, MAX_FAILED_LOGINS)
                self.notifier.notify(
                    user.email,
                    notifications.ACCOUNT_LOCKED,
                    {"fullname": user.fullname, "max_attempts": MAX_FAILED_LOGINS},
                )
                raise UnauthorizedError(locked_message(just_locked=True))
            logger.warning("Failed login for user %s (%s)", user.id, reason)
            remaining = MAX_FAILED_LOGINS - user.failed_login_count
            raise UnauthorizedError(f"Mật khẩu không đúng. Còn {remaining} lần thử.")

        previous_login = user.last_login_at
        now = utc_now()
        login_count = session.scalar(
            select(func.count(LoginAttempt.id)).where(
                LoginAttempt.email == email, LoginAttempt.is_success.is_(True)
            )
        ) or 0
        token, csrf_token, expires_at = self.tokens.create_access_token(user)

        with transaction(session):
            user.failed_login_count = 0
            user.last_login_at = now
            self._record_attempt(session, email, ip, user_agent, True, "Login successful")

        return LoginResponse(
            user=user_response(user),
            token=token,
            token_type="Bearer",
            expires_at=expires_at,
            expires_in=int(self.tokens.expiry.total_seconds()),
            csrf_token=csrf_token,
            login_info=LoginInfo(login_time=now, last_login_at=previous_login, login_count=login_count + 1),
        )

    def request_recovery(self, session: Session, email: str) -> None:
        """Issue a recovery code if ``email`` belongs to a user; silent otherwise."""
        user = session.scalar(select(User).where(User.email == email.lower()))
        if user is None:
            logger.info("Recovery requested for unknown email")
            return

        code = generate_recovery_code()
        with transaction(session):
            session.add(RecoveryCode(user_id=user.id, code=code, is_used=False, expires_at=utc_now() + RECOVERY_CODE_TTL))
        self.notifier.notify(
            user.email,
            notifications.RECOVERY_CODE,
            {
                "fullname": user.fullname,
                "code": code,
                "expires_in_minutes": int(RECOVERY_CODE_TTL.total_seconds() // 60),
            },
        )

    def verify_recovery(self, session: Session, code: str) -> User:
        now = utc_now()
        recovery = session.scalar(
            select(RecoveryCode).where(
                RecoveryCode.code == code,
                RecoveryCode.is_used.is_(False),
                RecoveryCode.expires_at > now,
            )
        )
        if recovery is None:
            raise ValidationError(RECOVERY_INVALID)

        with transaction(session):
            # Conditional update so two concurrent verifications cannot both consume the code.
            consumed = session.execute(
                update(RecoveryCode)
                .where(RecoveryCode.id == recovery.id, RecoveryCode.is_used.is_(False))
                .values(is_used=True, updated_at=now)
            ).rowcount
            if consumed != 1:
                raise ValidationError(RECOVERY_INVALID)
            user = session.get(User, recovery.user_id)
            user.is_active = True
            user.failed_login_count = 0
        logger.info("Account %s recovered", user.id)
        return user

    # -- users -------------------------------------------------------------

    def get_user(self, session: Session, user_id: int) -> User:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def list_users(self, session: Session, page: int = 1, limit: int = 20, search: Optional[str] = None):
        stmt = select(User).order_by(User.id)
        if search:
            pattern = like_pattern(search)
            stmt = stmt.where(
                User.fullname.ilike(pattern, escape=LIKE_ESCAPE) | User.email.ilike(pattern, escape=LIKE_ESCAPE)
            )
        return paginate(session, stmt, page, limit)
