import logging
import os
from datetime import datetime

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

load_dotenv()

from db.base import Base
from db.deps import get_lending_db
from db.session import engine_lending
from models.lending_models import Borrower, Item, Loan, LoanHistory
from schemas.borrowers import BorrowerUpsert
from schemas.items import ItemUpsert
from schemas.loans import IssueLoanRequest, ReturnLoanRequest
from schemas.operators import AuthLoginRequest, CreateOperatorRequest, RegisterRequest, UpdateOperatorRequest
from schemas.settings import SettingsUpdate
from services.audit_service import log_audit
from services.borrower_service import (
    apply_borrower_fields,
    create_borrower,
    ensure_borrower_deletable,
    list_careers,
    serialize_borrower,
)
from services.item_service import (
    create_item,
    ensure_item_deletable,
    list_categories,
    parse_qr_payload,
    serialize_item,
    update_item,
)
from services.listing_service import (
    filter_borrowers,
    filter_history,
    filter_items,
    filter_loans,
    filter_operators,
    filter_overdue,
    paginate,
)
from services.loan_service import (
    LoanConflictError,
    RecordNotFoundError,
    issue_loan,
    load_active_loans,
    load_loan_history,
    return_loan,
    serialize_history_rows,
    serialize_loan_rows,
)
from services.login_guard_service import check_login_guard, record_login_failure, record_login_success
from services.operator_account_service import (
    FALLBACK_OPERATOR_ID,
    FALLBACK_OPERATOR_NAME,
    ROLE_OPERATOR,
    ProtectedAccountError,
    create_operator,
    delete_operator,
    list_operators,
    load_operator_record,
    normalize_email,
    serialize_operator,
    update_operator,
    verify_credentials,
)
from services.report_service import build_dashboard, build_report, render_report_text, report_filename
from services.session_service import OperatorSession, create_session, get_session, remove_session
from services.settings_service import get_settings, update_settings


app = FastAPI(title="Tool Lending Desk")

if engine_lending.url.get_backend_name() == "sqlite":
    # Local and in-memory databases start empty; server databases are provisioned separately.
    Base.metadata.create_all(engine_lending)


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _env_flag(name: str, default: str = "false") -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = _env_flag("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(
    SessionMiddleware,
    secret_key=os.environ["SESSION_SIGNING_SECRET"].strip(),
    session_cookie="tool_lending_session",
    same_site="lax",
    https_only=False,
)

ALLOW_SELF_REGISTRATION = _env_flag("ALLOW_SELF_REGISTRATION")
ACCESS_RESTRICTED_DETAIL = "Access restricted: super-operator role required."
FALLBACK_OPERATOR_NAMES = {FALLBACK_OPERATOR_ID: FALLBACK_OPERATOR_NAME}

AUTH_LOGGER = logging.getLogger("tool_lending.auth")
API_LOGGER = logging.getLogger("tool_lending.api")


@app.exception_handler(SQLAlchemyError)
def handle_storage_error(request: Request, exc: SQLAlchemyError):
    API_LOGGER.error("Storage failure path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Storage backend unavailable. Please try again."})


def _get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",")[0].strip()
        if candidate:
            return candidate
    return request.client.host if request.client and request.client.host else "unknown"


def _audit_auth_event(db: Session, *, action: str, details: str, user_id: str | None = None) -> None:
    try:
        log_audit(db, "Auth", user_id or "-", action, details, user_id=user_id)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        AUTH_LOGGER.warning("Audit write failed action=%s", action)


def _invalid_login_error() -> HTTPException:
    return HTTPException(status_code=401, detail="Invalid credentials.")


SESSION_COOKIE_KEY = "sessionToken"


def _session_token(request: Request, header_token: str | None) -> str | None:
    return header_token or request.session.get(SESSION_COOKIE_KEY)


def _get_active_session(request: Request, db: Session, session_token: str | None) -> OperatorSession | None:
    signed = get_session(_session_token(request, session_token))
    if not signed:
        return None
    # Role and existence come from the account row, not from the login-time token.
    record = load_operator_record(db, signed.operatorID)
    if not record:
        AUTH_LOGGER.warning("Session rejected user_id=%s reason=account_missing", signed.operatorID)
        return None
    return OperatorSession.from_payload(record)


def require_operator(
    request: Request,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_lending_db),
) -> OperatorSession:
    session = _get_active_session(request, db, x_session_token)
    if not session:
        request.session.pop(SESSION_COOKIE_KEY, None)
        raise HTTPException(status_code=401, detail="Not logged in.")
    return session


def require_super_operator(session: OperatorSession = Depends(require_operator)) -> OperatorSession:
    if not session.is_super_operator:
        raise HTTPException(status_code=403, detail=ACCESS_RESTRICTED_DETAIL)
    return session


def _start_session(request: Request, operator: dict) -> dict:
    session = OperatorSession.from_payload(operator)
    token = create_session(session)
    request.session[SESSION_COOKIE_KEY] = token
    return {"sessionToken": token, "user": session.to_payload()}


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_lending_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/auth/login")
def auth_login(payload: dict, request: Request, db: Session = Depends(get_lending_db)):
    client_ip = _get_client_ip(request)
    try:
        parsed = AuthLoginRequest.model_validate(payload)
    except ValidationError:
        _audit_auth_event(db, action="LoginRejected", details=f"ip={client_ip} reason=invalid_payload")
        raise HTTPException(status_code=400, detail="Invalid login request.")

    email = normalize_email(parsed.email)
    password = str(parsed.password or "")
    if not email or not password:
        _audit_auth_event(db, action="LoginRejected", details=f"ip={client_ip} reason=missing_credentials")
        raise HTTPException(status_code=400, detail="Invalid login request.")

    account_key = f"operator:{email}"
    retry_after = check_login_guard(client_ip, account_key)
    if retry_after is not None:
        _audit_auth_event(db, action="LoginThrottled", details=f"ip={client_ip} key={account_key} retry_after={retry_after}")
        AUTH_LOGGER.warning("Login throttled ip=%s key=%s retry_after=%s", client_ip, account_key, retry_after)
        raise HTTPException(
            status_code=429,
            detail="Too many login attempts. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )

    operator = verify_credentials(db, email, password)
    if not operator:
        record_login_failure(client_ip, account_key)
        _audit_auth_event(db, action="LoginFailed", details=f"ip={client_ip} key={account_key} reason=invalid_credentials")
        AUTH_LOGGER.warning("Login failed ip=%s key=%s reason=invalid_credentials", client_ip, account_key)
        raise _invalid_login_error()

    record_login_success(account_key)
    _audit_auth_event(db, action="LoginSuccess", details=f"ip={client_ip} key={account_key}", user_id=operator["operatorID"])
    AUTH_LOGGER.info("Login success ip=%s key=%s user_id=%s", client_ip, account_key, operator["operatorID"])
    return _start_session(request, operator)


@app.post("/api/auth/register")
def auth_register(payload: RegisterRequest, request: Request, db: Session = Depends(get_lending_db)):
    if not ALLOW_SELF_REGISTRATION:
        raise HTTPException(status_code=403, detail="Self registration is disabled.")
    try:
        account = create_operator(db, email=payload.email, name=payload.name, password=payload.password, role=ROLE_OPERATOR)
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_audit(db, "Operator", account.OperatorID, "Register", f"email={account.Email}", user_id=account.OperatorID)
    db.commit()
    AUTH_LOGGER.info("Operator registered user_id=%s", account.OperatorID)
    return _start_session(request, serialize_operator(account))


@app.post("/api/auth/logout")
def auth_logout(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    cookie_token = request.session.get(SESSION_COOKIE_KEY)
    request.session.clear()
    for token in {x_session_token, cookie_token}:
        remove_session(token)
    return {"ok": True}


@app.get("/api/auth/me")
def auth_me(session: OperatorSession = Depends(require_operator)):
    return {"user": session.to_payload()}


@app.get("/api/dashboard")
def get_dashboard(
    session: OperatorSession = Depends(require_operator),
    db: Session = Depends(get_lending_db),
):
    return build_dashboard(db, datetime.now(), FALLBACK_OPERATOR_NAMES)


@app.get("/api/items")
def get_items(
    search: str | None = Query(None),
    category: str | None = Query(None),
    limit: int | None = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    session: OperatorSession = Depends(require_operator),
    db: Session = Depends(get_lending_db),
):
    items = db.execute(select(Item).order_by(Item.Name)).scalars().all()
    records = filter_items([serialize_item(item) for item in items], search, category)
    return paginate(records, limit, offset)


@app.get("/api/items/categories")
def get_item_categories(
    session: OperatorSession = Depends(require_operator),
    db: Session = Depends(get_lending_db),
):
    return list_categories(db)


@app.get("/api/items/{item_id}")
def get_item(
    item_id: str,
    session: OperatorSession = Depends(require_operator),
    db: Session = Depends(get_lending_db),
):
    item = db.get(Item, item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Item not found")
    return serialize_item(item)


@app.get("/api/items/{item_id}/qr")
def get_item_qr(
    item_id: str,
    session: OperatorSession = Depends(require_operator),
    db: Session = Depends(get_lending_db),
):
    item = db.get(Item, item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Item not found")
    return {"itemID": item.ItemID, "name": item.Name, "qrPayload": item.QrPayload, "payload": parse_qr_payload(item.QrPayload)}


@app.post("/api/items")
def post_item(
    payload: ItemUpsert,
    session: OperatorSession = Depends(require_operator),
    db: Session = Depends(get_lending_db),
):
    try:
        item = create_item(db, payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_audit(db, "Item", item.ItemID, "CreateItem", item.Name, user_id=session.operatorID)
    db.commit()
    return serialize_item(item)


@app.put("/api/items/{item_id}")
def put_item(
    item_id: str,
    payload: ItemUpsert,
    session: OperatorSession = Depends(require_operator),
    db: Session = Depends(get_lending_db),
):
    item = db.get(Item, item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Item not found")
    values = payload.model_dump(exclude_unset=True)
    values.pop("itemID", None)
    try:
        update_item(item, values)
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_audit(db, "Item", item.ItemID, "UpdateItem", item.Name, user_id=session.operatorID)
    db.commit()
    return serialize_item(item)


@app.delete("/api/items/{item_id}")
def delete_item(
    item_id: str,
    session: OperatorSession = Depends(require_operator),
    db: Session = Depends(get_lending_db),
):
    item = db.get(Item, item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Item not found")
    try:
        ensure_item_deletable(db, item)
    except LoanConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    db.delete(item)
    log_audit(db, "Item", item_id, "DeleteItem", item.Name, user_id=session.operatorID)
    db.commit()
    return {"message": "Deleted"}


@app.get("/api/borrowers")
def get_borrowers(
    search: str | None = Query(None),
    career: str | None = Query(None),
    limit: int | None = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    session: OperatorSession = Depends(require_operator),
    db: Session = Depends(get_lending_db),
):
    borrowers = db.execute(select(Borrower).order_by(Borrower.Name)).scalars().all()
    records = filter_borrowers([serialize_borrower(borrower) for borrower in borrowers], search, career)
    return paginate(records, limit, offset)


@app.get("/api/borrowers/careers")
def get_borrower_careers(
    session: OperatorSession = Depends(require_operator),
    db: Session = Depends(get_lending_db),
):
    return list_careers(db)


@app.get("/api/borrowers/{borrower_id}")
def get_borrower(
    borrower_id: str,
    session: OperatorSession = Depends(require_operator),
    db: Session = Depends(get_lending_db),
):
    borrower = db.get(Borrower, borrower_id)
    if not borrower:
        raise HTTPException(status_code=404, detail="Borrower not found")
    return serialize_borrower(borrower)


@app.post("/api/borrowers")
def post_borrower(
    payload: BorrowerUpsert,
    session: OperatorSession = Depends(require_operator),
    db: Session = Depends(get_lending_db),
):
    try:
        borrower = create_borrower(db, payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_audit(db, "Borrower", borrower.BorrowerID, "CreateBorrower", borrower.Name, user_id=session.operatorID)
    db.commit()
    return serialize_borrower(borrower)


@app.put("/api/borrowers/{borrower_id}")
def put_borrower(
    borrower_id: str,
    payload: BorrowerUpsert,
    session: OperatorSession = Depends(require_operator),
    db: Session = Depends(get_lending_db),
):
    borrower = db.get(Borrower, borrower_id)
    if not borrower:
        raise HTTPException(status_code=404, detail="Borrower not found")
    values = payload.model_dump(exclude_unset=True)
    values.pop("borrowerID", None)
    try:
        apply_borrower_fields(borrower, values)
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_audit(db, "Borrower", borrower.BorrowerID, "UpdateBorrower", borrower.Name, user_id=session.operatorID)
    db.commit()
    return serialize_borrower(borrower)


@app.delete("/api/borrowers/{borrower_id}")
def delete_borrower(
    borrower_id: str,
    session: OperatorSession = Depends(require_operator),
    db: Session = Depends(get_lending_db),
):
    borrower = db.get(Borrower, borrower_id)
    if not borrower:
        raise HTTPException(status_code=404, detail="Borrower not found")
    try:
        ensure_borrower_deletable(db, borrower)
    except LoanConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    db.delete(borrower)
    log_audit(db, "Borrower", borrower_id, "DeleteBorrower", borrower.Name, user_id=session.operatorID)
    db.commit()
    return {"message": "Deleted"}


@app.get("/api/loans")
def get_loans(
    search: str | None = Query(None),
    status: str | None = Query(None),
    limit: int | None = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    session: OperatorSession = Depends(require_operator),
    db: Session = Depends(get_lending_db),
):
    records = serialize_loan_rows(db, load_active_loans(db), datetime.now(), FALLBACK_OPERATOR_NAMES)
    return paginate(filter_loans(records, search, status), limit, offset)


@app.get("/api/loans/overdue")
def get_overdue_loans(
    search: str | None = Query(None),
    severity: str | None = Query(None),
    limit: int | None = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    session: OperatorSession = Depends(require_operator),
    db: Session = Depends(get_lending_db),
):
    loans = load_active_loans(db, oldest_first=True)
    records = serialize_loan_rows(db, loans, datetime.now(), FALLBACK_OPERATOR_NAMES)
    return paginate(filter_overdue(records, search, severity), limit, offset)


@app.get("/api/loans/history")
def get_loan_history(
    search: str | None = Query(None),
    limit: int | None = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    session: OperatorSession = Depends(require_operator),
    db: Session = Depends(get_lending_db),
):
    records = serialize_history_rows(db, load_loan_history(db), FALLBACK_OPERATOR_NAMES)
    return paginate(filter_history(records, search), limit, offset)


@app.get("/api/loans/{loan_id}")
def get_loan(
    loan_id: str,
    session: OperatorSession = Depends(require_operator),
    db: Session = Depends(get_lending_db),
):
    loan = db.get(Loan, loan_id)
    if loan:
        return serialize_loan_rows(db, [loan], datetime.now(), FALLBACK_OPERATOR_NAMES)[0]
    archived = db.get(LoanHistory, loan_id)
    if archived:
        return serialize_history_rows(db, [archived], FALLBACK_OPERATOR_NAMES)[0]
    raise HTTPException(status_code=404, detail="Loan not found")


@app.post("/api/loans")
def post_loan(
    payload: IssueLoanRequest,
    session: OperatorSession = Depends(require_operator),
    db: Session = Depends(get_lending_db),
):
    try:
        loan = issue_loan(
            db,
            item_id=payload.itemID,
            borrower_id=payload.borrowerID,
            operator_id=session.operatorID,
            notes=payload.notes,
        )
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except LoanConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return serialize_loan_rows(db, [loan], datetime.now(), FALLBACK_OPERATOR_NAMES)[0]


@app.post("/api/loans/{loan_id}/return")
def post_loan_return(
    loan_id: str,
    payload: ReturnLoanRequest | None = None,
    session: OperatorSession = Depends(require_operator),
    db: Session = Depends(get_lending_db),
):
    try:
        archived = return_loan(
            db,
            loan_id=loan_id,
            operator_id=session.operatorID,
            return_notes=payload.notes if payload else None,
        )
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return serialize_history_rows(db, [archived], FALLBACK_OPERATOR_NAMES)[0]


@app.get("/api/reports")
def get_report(
    days: int = Query(30),
    session: OperatorSession = Depends(require_operator),
    db: Session = Depends(get_lending_db),
):
    try:
        return build_report(db, days)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/reports/export")
def export_report(
    days: int = Query(30),
    session: OperatorSession = Depends(require_operator),
    db: Session = Depends(get_lending_db),
):
    now = datetime.now()
    try:
        report = build_report(db, days, now)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return PlainTextResponse(
        render_report_text(report),
        headers={"Content-Disposition": f'attachment; filename="{report_filename(now)}"'},
    )


@app.get("/api/admin/operators")
def get_operators(
    search: str | None = Query(None),
    role: str | None = Query(None),
    session: OperatorSession = Depends(require_super_operator),
    db: Session = Depends(get_lending_db),
):
    return filter_operators(list_operators(db), search, role)


@app.post("/api/admin/operators")
def post_operator(
    payload: CreateOperatorRequest,
    session: OperatorSession = Depends(require_super_operator),
    db: Session = Depends(get_lending_db),
):
    try:
        account = create_operator(db, email=payload.email, name=payload.name, password=payload.password, role=payload.role)
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_audit(db, "Operator", account.OperatorID, "CreateOperator", f"email={account.Email} role={account.Role}", user_id=session.operatorID)
    db.commit()
    return serialize_operator(account)


@app.put("/api/admin/operators/{operator_id}")
def put_operator(
    operator_id: str,
    payload: UpdateOperatorRequest,
    session: OperatorSession = Depends(require_super_operator),
    db: Session = Depends(get_lending_db),
):
    try:
        account = update_operator(db, operator_id, name=payload.name, role=payload.role)
    except ProtectedAccountError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not account:
        raise HTTPException(status_code=404, detail="Operator not found.")
    log_audit(db, "Operator", operator_id, "UpdateOperator", f"role={account.Role}", user_id=session.operatorID)
    db.commit()
    return serialize_operator(account)


@app.delete("/api/admin/operators/{operator_id}")
def remove_operator(
    operator_id: str,
    session: OperatorSession = Depends(require_super_operator),
    db: Session = Depends(get_lending_db),
):
    try:
        deleted = delete_operator(db, operator_id, actor_id=session.operatorID)
    except ProtectedAccountError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    if not deleted:
        raise HTTPException(status_code=404, detail="Operator not found.")
    log_audit(db, "Operator", operator_id, "DeleteOperator", None, user_id=session.operatorID)
    db.commit()
    return {"ok": True}


@app.get("/api/admin/settings")
def get_system_settings(
    session: OperatorSession = Depends(require_super_operator),
    db: Session = Depends(get_lending_db),
):
    return get_settings(db)


@app.put("/api/admin/settings")
def put_system_settings(
    payload: SettingsUpdate,
    session: OperatorSession = Depends(require_super_operator),
    db: Session = Depends(get_lending_db),
):
    try:
        settings = update_settings(db, payload.model_dump(exclude_unset=True), actor_id=session.operatorID)
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_audit(db, "Settings", "system", "UpdateSettings", None, user_id=session.operatorID)
    db.commit()
    return settings
