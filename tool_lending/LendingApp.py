import logging
from contextlib import asynccontextmanager

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from tool_lending.config import configure_logging, load_settings
from tool_lending.db.deps import get_db
from tool_lending.db.session import Storage
from tool_lending.models.lending_models import ROLE_ADMIN, ROLE_TEACHER, User
from tool_lending.schemas.lending import (
    ApproveReturnRequest,
    CreateLoanDto,
    CreateRequestDto,
    DirectReturnRequest,
    ReviewDecision,
    SubmitReturnDto,
)
from tool_lending.schemas.tools import CategoryCreate, ToolCreate, ToolUpdate
from tool_lending.schemas.users import (
    AdminUserCreate,
    AdminUserUpdate,
    LoginRequest,
    PasswordChange,
    PasswordReset,
    ProfileUpdate,
    RegisterRequest,
    ResetCodeRequest,
    RoleChange,
)
from tool_lending.services import (
    audit_service,
    loan_service,
    request_service,
    return_service,
    stats_service,
    tool_service,
    user_service,
)
from tool_lending.services.errors import AccessDenied, AuthenticationFailed, LendingError
from tool_lending.services.notification_service import Notifier, build_notifier, deliver_reset_code
from tool_lending.services.token_service import issue_token, read_token


SETTINGS = load_settings()
configure_logging(SETTINGS.log_level)

API_LOGGER = logging.getLogger("tool_lending.api")
AUTH_LOGGER = logging.getLogger("tool_lending.auth")

STAFF_ROLES = {ROLE_ADMIN, ROLE_TEACHER}


@asynccontextmanager
async def lifespan(app: FastAPI):
    storage = Storage(SETTINGS.database_url, create_schema=SETTINGS.create_schema).init()
    app.state.storage = storage
    app.state.notifier = build_notifier(SETTINGS)
    API_LOGGER.info("Tool lending API started (notifications: %s)", SETTINGS.notification_backend)
    try:
        yield
    finally:
        storage.dispose()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=SETTINGS.cors_allow_origins,
    allow_credentials=SETTINGS.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _failure(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


@app.exception_handler(LendingError)
async def lending_error_handler(request: Request, exc: LendingError):
    return _failure(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _failure(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    else:
        message = "Invalid request"
    return _failure(400, message)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    API_LOGGER.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _failure(500, "Server error")


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def _ok(message: str | None = None, **data) -> dict:
    body = {"success": True}
    if message:
        body["message"] = message
    body.update(data)
    return body


def _bearer_token(authorization: str | None) -> str | None:
    raw = (authorization or "").strip()
    if raw[:7].lower() == "bearer ":
        return raw[7:].strip() or None
    return None


def _require_session_or_401(authorization: str | None) -> dict:
    token = _bearer_token(authorization)
    if not token:
        raise AuthenticationFailed("Missing bearer token")
    session = read_token(SETTINGS.token_secret, token)
    if not session or not session.get("userID"):
        raise AuthenticationFailed("Invalid or expired token")
    return session


def _require_current_role(db: Session, authorization: str | None) -> dict:
    """Re-read the role from storage so demotions and deletions apply before the token expires."""
    session = _require_session_or_401(authorization)
    user = db.get(User, int(session["userID"]))
    if not user:
        raise AuthenticationFailed("Invalid or expired token")
    if user.Role != session.get("role"):
        AUTH_LOGGER.warning(
            "Token role %s for user %s no longer matches stored role %s",
            session.get("role"),
            user.UserID,
            user.Role,
        )
    return dict(session, role=user.Role)


def _require_admin_session_or_403(db: Session, authorization: str | None) -> dict:
    session = _require_current_role(db, authorization)
    if session["role"] != ROLE_ADMIN:
        raise AccessDenied("Admin role required")
    return session


def _require_staff_session_or_403(db: Session, authorization: str | None) -> dict:
    session = _require_current_role(db, authorization)
    if session["role"] not in STAFF_ROLES:
        raise AccessDenied("Admin or teacher role required")
    return session


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


# --- auth -----------------------------------------------------------------


@app.post("/api/auth/register", status_code=201)
def auth_register(payload: RegisterRequest, db: Session = Depends(get_db)):
    user = user_service.register(db, payload)
    return _ok("User registered", user=user_service.serialize_user(user))


@app.post("/api/auth/login")
def auth_login(payload: LoginRequest, db: Session = Depends(get_db)):
    user = user_service.authenticate(db, payload.email, payload.password)
    token = issue_token(
        SETTINGS.token_secret,
        {"userID": user.UserID, "role": user.Role},
        SETTINGS.token_ttl_seconds,
    )
    AUTH_LOGGER.info("User %s logged in", user.UserID)
    return _ok("Login successful", token=token, user=user_service.serialize_user(user))


@app.get("/api/auth/me")
def auth_me(db: Session = Depends(get_db), authorization: str | None = Header(None)):
    session = _require_session_or_401(authorization)
    user = user_service.get_user_or_404(db, int(session["userID"]))
    return _ok(user=user_service.serialize_user(user))


@app.put("/api/auth/profile")
def auth_update_profile(
    payload: ProfileUpdate,
    db: Session = Depends(get_db),
    authorization: str | None = Header(None),
):
    session = _require_session_or_401(authorization)
    user = user_service.update_profile(db, int(session["userID"]), payload)
    return _ok("Profile updated", user=user_service.serialize_user(user))


@app.put("/api/auth/password")
def auth_change_password(
    payload: PasswordChange,
    db: Session = Depends(get_db),
    authorization: str | None = Header(None),
):
    session = _require_session_or_401(authorization)
    user_service.change_password(db, int(session["userID"]), payload.currentPassword, payload.newPassword)
    return _ok("Password updated")


@app.post("/api/auth/forgot-password")
def auth_forgot_password(
    payload: ResetCodeRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    user, code = user_service.request_password_reset(db, payload.email, SETTINGS.reset_code_ttl_minutes)
    background_tasks.add_task(deliver_reset_code, notifier, user.Email, user.FullName, code)
    return _ok(f"A reset code was sent to {user.Email}", email=user.Email)


@app.post("/api/auth/reset-password")
def auth_reset_password(payload: PasswordReset, db: Session = Depends(get_db)):
    user_service.reset_password(db, payload.email, payload.code, payload.newPassword)
    return _ok("Password updated")


# --- tools and categories -------------------------------------------------


@app.get("/api/tools")
def get_tools(db: Session = Depends(get_db), authorization: str | None = Header(None)):
    _require_session_or_401(authorization)
    return _ok(tools=[tool_service.serialize_tool(tool) for tool in tool_service.list_tools(db)])


@app.get("/api/tools/qr/{scan_code}")
def get_tool_by_scan_code(scan_code: str, db: Session = Depends(get_db), authorization: str | None = Header(None)):
    _require_session_or_401(authorization)
    return _ok(tool=tool_service.serialize_tool(tool_service.get_tool_by_scan_code(db, scan_code)))


@app.get("/api/tools/{tool_id}")
def get_tool(tool_id: int, db: Session = Depends(get_db), authorization: str | None = Header(None)):
    _require_session_or_401(authorization)
    return _ok(tool=tool_service.serialize_tool(tool_service.get_tool_or_404(db, tool_id)))


@app.post("/api/tools", status_code=201)
def create_tool(payload: ToolCreate, db: Session = Depends(get_db), authorization: str | None = Header(None)):
    session = _require_admin_session_or_403(db, authorization)
    tool = tool_service.create_tool(db, payload, int(session["userID"]))
    return _ok("Tool created", tool=tool_service.serialize_tool(tool))


@app.put("/api/tools/{tool_id}")
def update_tool(
    tool_id: int,
    payload: ToolUpdate,
    db: Session = Depends(get_db),
    authorization: str | None = Header(None),
):
    session = _require_admin_session_or_403(db, authorization)
    tool = tool_service.update_tool(db, tool_id, payload, int(session["userID"]))
    return _ok("Tool updated", tool=tool_service.serialize_tool(tool))


@app.delete("/api/tools/{tool_id}")
def delete_tool(tool_id: int, db: Session = Depends(get_db), authorization: str | None = Header(None)):
    session = _require_admin_session_or_403(db, authorization)
    tool_service.delete_tool(db, tool_id, int(session["userID"]))
    return _ok("Tool deleted")


@app.get("/api/categories")
def get_categories(db: Session = Depends(get_db), authorization: str | None = Header(None)):
    _require_session_or_401(authorization)
    return _ok(categories=[tool_service.serialize_category(item) for item in tool_service.list_categories(db)])


@app.post("/api/categories", status_code=201)
def create_category(payload: CategoryCreate, db: Session = Depends(get_db), authorization: str | None = Header(None)):
    session = _require_admin_session_or_403(db, authorization)
    category = tool_service.create_category(db, payload, int(session["userID"]))
    return _ok("Category created", category=tool_service.serialize_category(category))


# --- requests ---------------------------------------------------------------


@app.post("/api/requests", status_code=201)
def create_request(payload: CreateRequestDto, db: Session = Depends(get_db), authorization: str | None = Header(None)):
    session = _require_session_or_401(authorization)
    created = request_service.create_request(db, int(session["userID"]), payload)
    return _ok("Request created", request=request_service.serialize_request(created))


@app.get("/api/requests/mine")
def get_my_requests(db: Session = Depends(get_db), authorization: str | None = Header(None)):
    session = _require_session_or_401(authorization)
    rows = request_service.list_user_requests(db, int(session["userID"]))
    return _ok(requests=[request_service.serialize_request(row) for row in rows])


@app.get("/api/requests")
def get_requests(
    status: str | None = Query(None),
    db: Session = Depends(get_db),
    authorization: str | None = Header(None),
):
    _require_admin_session_or_403(db, authorization)
    rows = request_service.list_requests(db, status)
    return _ok(requests=[request_service.serialize_request(row) for row in rows])


@app.put("/api/requests/{request_id}/approve")
def approve_request(
    request_id: int,
    payload: ReviewDecision | None = None,
    db: Session = Depends(get_db),
    authorization: str | None = Header(None),
):
    session = _require_admin_session_or_403(db, authorization)
    comment = payload.comment if payload else None
    loan = request_service.approve_request(db, request_id, int(session["userID"]), comment)
    return _ok("Request approved and loan created", loan=loan_service.serialize_loan(loan))


@app.put("/api/requests/{request_id}/reject")
def reject_request(
    request_id: int,
    payload: ReviewDecision | None = None,
    db: Session = Depends(get_db),
    authorization: str | None = Header(None),
):
    session = _require_admin_session_or_403(db, authorization)
    comment = payload.comment if payload else None
    rejected = request_service.reject_request(db, request_id, int(session["userID"]), comment)
    return _ok("Request rejected", request=request_service.serialize_request(rejected))


@app.put("/api/requests/{request_id}/cancel")
def cancel_request(request_id: int, db: Session = Depends(get_db), authorization: str | None = Header(None)):
    session = _require_session_or_401(authorization)
    cancelled = request_service.cancel_request(db, request_id, int(session["userID"]))
    return _ok("Request cancelled", request=request_service.serialize_request(cancelled))


# --- loans ------------------------------------------------------------------


@app.post("/api/loans", status_code=201)
def create_loan(payload: CreateLoanDto, db: Session = Depends(get_db), authorization: str | None = Header(None)):
    session = _require_session_or_401(authorization)
    loan = loan_service.create_direct_loan(db, int(session["userID"]), payload)
    return _ok("Loan created", loan=loan_service.serialize_loan(loan))


@app.get("/api/loans/mine")
def get_my_loans(db: Session = Depends(get_db), authorization: str | None = Header(None)):
    session = _require_session_or_401(authorization)
    rows = loan_service.list_user_loans(db, int(session["userID"]))
    return _ok(loans=[loan_service.serialize_loan(row) for row in rows])


@app.get("/api/loans/mine/active")
def get_my_active_loans(db: Session = Depends(get_db), authorization: str | None = Header(None)):
    session = _require_session_or_401(authorization)
    rows = loan_service.list_user_loans(db, int(session["userID"]), active_only=True)
    return _ok(loans=[loan_service.serialize_loan(row) for row in rows])


@app.get("/api/loans/active")
def get_active_loans(db: Session = Depends(get_db), authorization: str | None = Header(None)):
    _require_staff_session_or_403(db, authorization)
    return _ok(loans=[loan_service.serialize_loan(row) for row in loan_service.list_active_loans(db)])


@app.get("/api/loans")
def get_loans(
    status: str | None = Query(None),
    db: Session = Depends(get_db),
    authorization: str | None = Header(None),
):
    _require_admin_session_or_403(db, authorization)
    return _ok(loans=[loan_service.serialize_loan(row) for row in loan_service.list_loans(db, status)])


@app.get("/api/loans/{loan_id}")
def get_loan(loan_id: int, db: Session = Depends(get_db), authorization: str | None = Header(None)):
    session = _require_current_role(db, authorization)
    loan = loan_service.get_loan_or_404(db, loan_id)
    if session.get("role") != ROLE_ADMIN and loan.UserID != int(session["userID"]):
        raise AccessDenied("You are not allowed to view this loan")
    return _ok(loan=loan_service.serialize_loan(loan))


@app.put("/api/loans/{loan_id}/return")
def return_loan(
    loan_id: int,
    payload: DirectReturnRequest | None = None,
    db: Session = Depends(get_db),
    authorization: str | None = Header(None),
):
    session = _require_current_role(db, authorization)
    notes = payload.notes if payload else None
    loan = loan_service.return_loan_direct(db, loan_id, int(session["userID"]), session.get("role"), notes)
    return _ok("Tool returned", loan=loan_service.serialize_loan(loan))


# --- returns ----------------------------------------------------------------


@app.post("/api/returns", status_code=201)
def submit_return(payload: SubmitReturnDto, db: Session = Depends(get_db), authorization: str | None = Header(None)):
    session = _require_session_or_401(authorization)
    entry = return_service.submit_return(db, int(session["userID"]), payload)
    return _ok(
        "Return submitted. Wait for an administrator to review it",
        returnItem=return_service.serialize_return(entry),
    )


@app.get("/api/returns/mine")
def get_my_returns(db: Session = Depends(get_db), authorization: str | None = Header(None)):
    session = _require_session_or_401(authorization)
    rows = return_service.list_user_returns(db, int(session["userID"]))
    return _ok(returns=[return_service.serialize_return(row) for row in rows])


@app.get("/api/returns/loan-by-code/{scan_code}")
def get_active_loan_by_scan_code(
    scan_code: str,
    db: Session = Depends(get_db),
    authorization: str | None = Header(None),
):
    session = _require_session_or_401(authorization)
    loan = loan_service.find_active_loan_by_scan_code(db, scan_code, int(session["userID"]))
    return _ok(loan=loan_service.serialize_loan(loan))


@app.get("/api/returns")
def get_returns(
    status: str | None = Query(None),
    db: Session = Depends(get_db),
    authorization: str | None = Header(None),
):
    _require_admin_session_or_403(db, authorization)
    return _ok(returns=[return_service.serialize_return(row) for row in return_service.list_returns(db, status)])


@app.put("/api/returns/{return_id}/approve")
def approve_return(
    return_id: int,
    payload: ApproveReturnRequest,
    db: Session = Depends(get_db),
    authorization: str | None = Header(None),
):
    session = _require_admin_session_or_403(db, authorization)
    entry = return_service.approve_return(
        db, return_id, int(session["userID"]), payload.newToolStatus, payload.comment
    )
    return _ok("Return approved and tool updated", returnItem=return_service.serialize_return(entry))


@app.put("/api/returns/{return_id}/reject")
def reject_return(
    return_id: int,
    payload: ReviewDecision | None = None,
    db: Session = Depends(get_db),
    authorization: str | None = Header(None),
):
    session = _require_admin_session_or_403(db, authorization)
    comment = payload.comment if payload else None
    entry = return_service.reject_return(db, return_id, int(session["userID"]), comment)
    return _ok("Return rejected", returnItem=return_service.serialize_return(entry))


# --- administration ---------------------------------------------------------


@app.get("/api/users")
def get_users(db: Session = Depends(get_db), authorization: str | None = Header(None)):
    _require_admin_session_or_403(db, authorization)
    return _ok(users=[user_service.serialize_user(user) for user in user_service.list_users(db)])


@app.get("/api/users/{user_id}")
def get_user(user_id: int, db: Session = Depends(get_db), authorization: str | None = Header(None)):
    _require_admin_session_or_403(db, authorization)
    return _ok(user=user_service.serialize_user(user_service.get_user_or_404(db, user_id)))


@app.post("/api/users", status_code=201)
def create_user(payload: AdminUserCreate, db: Session = Depends(get_db), authorization: str | None = Header(None)):
    session = _require_admin_session_or_403(db, authorization)
    user = user_service.create_user(db, payload, int(session["userID"]))
    return _ok("User created", user=user_service.serialize_user(user))


@app.put("/api/users/{user_id}")
def update_user(
    user_id: int,
    payload: AdminUserUpdate,
    db: Session = Depends(get_db),
    authorization: str | None = Header(None),
):
    session = _require_admin_session_or_403(db, authorization)
    user = user_service.update_user(db, user_id, payload, int(session["userID"]))
    return _ok("User updated", user=user_service.serialize_user(user))


@app.delete("/api/users/{user_id}")
def delete_user(user_id: int, db: Session = Depends(get_db), authorization: str | None = Header(None)):
    session = _require_admin_session_or_403(db, authorization)
    user_service.delete_user(db, user_id, int(session["userID"]))
    return _ok("User deleted")


@app.put("/api/users/{user_id}/role")
def change_user_role(
    user_id: int,
    payload: RoleChange,
    db: Session = Depends(get_db),
    authorization: str | None = Header(None),
):
    session = _require_admin_session_or_403(db, authorization)
    user = user_service.change_role(db, user_id, payload.role, int(session["userID"]))
    return _ok(f"Role updated to {user.Role}", user=user_service.serialize_user(user))


@app.get("/api/history")
def get_history(
    entity_type: str | None = Query(None, alias="entityType"),
    limit: int = Query(200, ge=1, le=1000),
    db: Session = Depends(get_db),
    authorization: str | None = Header(None),
):
    _require_admin_session_or_403(db, authorization)
    rows = audit_service.list_audit(db, entity_type, limit)
    return _ok(history=[audit_service.serialize_audit(row) for row in rows])


@app.get("/api/stats")
def get_stats(db: Session = Depends(get_db), authorization: str | None = Header(None)):
    _require_admin_session_or_403(db, authorization)
    return _ok(stats=stats_service.collect_stats(db))
