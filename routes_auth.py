from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from database import get_db, page_window
from errors import ForbiddenError
from schemas import LoginRequest, RecoveryRequest, RecoveryVerifyRequest, RegisterRequest, ok, user_response
from security import RequestIdentity, require_admin, require_user

router = APIRouter(prefix="/api/v1")


def _service(request: Request):
    return request.app.state.auth_service


@router.post("/auth/register", status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, request: Request, db: Session = Depends(get_db)):
    user = _service(request).register(db, payload)
    return ok("User registered successfully", user_response(user).model_dump())


@router.post("/auth/login")
def login(payload: LoginRequest, request: Request, db: Session = Depends(get_db)):
    ip = request.client.host if request.client else ""
    result = _service(request).login(db, payload, ip=ip, user_agent=request.headers.get("user-agent", ""))
    return ok("Login successful", result.model_dump())


@router.post("/auth/recovery")
def request_recovery(payload: RecoveryRequest, request: Request, db: Session = Depends(get_db)):
    _service(request).request_recovery(db, payload.email)
    return ok("Nếu email tồn tại, mã khôi phục đã được gửi đến email của bạn. Mã có hiệu lực trong 30 phút.")


@router.post("/auth/recovery/verify")
def verify_recovery(payload: RecoveryVerifyRequest, request: Request, db: Session = Depends(get_db)):
    user = _service(request).verify_recovery(db, payload.code)
    return ok(
        "Tài khoản đã được khôi phục thành công. Bạn có thể đăng nhập lại.",
        {"user": user_response(user).model_dump()},
    )


@router.get("/users/profile")
def profile(request: Request, identity: RequestIdentity = Depends(require_user), db: Session = Depends(get_db)):
    user = _service(request).get_user(db, identity.user_id)
    return ok("Profile retrieved successfully", user_response(user).model_dump())


@router.get("/users/")
def list_users(
    request: Request,
    page: int = 1,
    limit: int = 20,
    search: str = "",
    identity: RequestIdentity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    page, limit = page_window(page, limit)
    users, pagination = _service(request).list_users(db, page, limit, search or None)
    return ok(
        "Users retrieved successfully",
        {"users": [user_response(u).model_dump() for u in users], "pagination": pagination},
    )


@router.get("/users/{user_id}")
def get_user(
    user_id: int,
    request: Request,
    identity: RequestIdentity = Depends(require_user),
    db: Session = Depends(get_db),
):
    if user_id != identity.user_id and not identity.is_admin:
        raise ForbiddenError("You can only view your own account")
    user = _service(request).get_user(db, user_id)
    return ok("User retrieved successfully", user_response(user).model_dump())
