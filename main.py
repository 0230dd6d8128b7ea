import logging
from datetime import datetime

from fastapi import Depends, FastAPI, File, HTTPException, Request, Response, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from sqlalchemy.orm import sessionmaker

from access import can_access_admin_page, can_modify
from aggregation import (
    all_time_profit,
    monthly_net,
    month_over_month,
    recent_transactions,
    total_by_type,
    weekly_series,
)
from config import get_settings
from csv_utils import export_transactions
from database import SessionLocal
from errors import AuthError, AuthErrorReason, DataError, DataErrorKind
from ledger import Actor, SqlLedger, TransactionFilters
from models import TransactionType
from periods import local_today, resolve_period
from reports import ReportService, format_currency
from scheduler import SchedulerManager
from schemas import (
    CategoryIn,
    PasswordChangeIn,
    ProfileUpdateIn,
    ReportOptions,
    SignInIn,
    SignUpIn,
    TransactionIn,
    UserCreateIn,
    UserUpdateIn,
)
from security import (
    generate_csrf_token,
    sign_session_id,
    unsign_session_id,
    validate_csrf_token,
)
from session_store import SessionState
from storage import LocalBlobStorage, latest_avatar_url, upload_avatar
from web_sessions import BrowserSession, SessionRegistry


SESSION_COOKIE = "finance_sid"
CSRF_HEADER = "X-CSRF-Token"

REPORT_CSS = """
@page {
    size: A4;
    margin: 18mm 16mm 20mm 16mm;
    @bottom-center {
        content: "Page " counter(page) " of " counter(pages);
        color: #64748b;
        font-size: 9pt;
    }
}
body { font-family: sans-serif; color: #0f172a; font-size: 10pt; }
h1 { font-size: 18pt; margin: 0 0 4pt; }
h2 { font-size: 12pt; margin: 16pt 0 6pt; }
h3 { font-size: 10.5pt; margin: 10pt 0 4pt; }
.muted { color: #64748b; }
.summary { display: flex; gap: 8pt; }
.card { flex: 1; border: 1px solid #e2e8f0; background: #f8fafc; padding: 6pt 8pt; }
.card .label { display: block; color: #64748b; font-size: 8.5pt; }
.card .value { display: block; font-size: 12pt; font-weight: 600; }
.positive { color: #047857; }
.negative { color: #b91c1c; }
table { width: 100%; border-collapse: collapse; }
th, td { border-bottom: 1px solid #e2e8f0; padding: 3pt 4pt; text-align: left; }
td.num, th.num { text-align: right; }
"""

settings = get_settings()
settings.avatar_dir.mkdir(parents=True, exist_ok=True)

app = FastAPI(title="Finance Tracker")
app.mount(
    settings.avatar_url_prefix,
    StaticFiles(directory=str(settings.avatar_dir)),
    name="avatars",
)
templates = Jinja2Templates(directory="templates")
templates.env.filters["currency"] = format_currency

registry = SessionRegistry(SessionLocal)
blob_storage = LocalBlobStorage(settings.avatar_dir, settings.avatar_url_prefix)
scheduler_manager = SchedulerManager(registry)


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


_AUTH_STATUS = {
    AuthErrorReason.rate_limited: 429,
    AuthErrorReason.account_disabled: 403,
    AuthErrorReason.email_taken: 409,
    AuthErrorReason.invalid_token: 400,
    AuthErrorReason.network: 503,
}

_DATA_STATUS = {
    DataErrorKind.not_found: 404,
    DataErrorKind.constraint: 409,
    DataErrorKind.permission_denied: 403,
}


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    return JSONResponse(
        status_code=_AUTH_STATUS.get(exc.reason, 401),
        content={"detail": exc.message, "reason": exc.reason.value},
    )


@app.exception_handler(DataError)
async def data_error_handler(request: Request, exc: DataError) -> JSONResponse:
    return JSONResponse(
        status_code=_DATA_STATUS[exc.kind],
        content={"detail": exc.message, "reason": exc.kind.value},
    )


def get_session_factory() -> sessionmaker:
    return SessionLocal


def get_registry() -> SessionRegistry:
    return registry


def get_blob_storage() -> LocalBlobStorage:
    return blob_storage


async def current_browser(
    request: Request,
    response: Response,
    sessions: SessionRegistry = Depends(get_registry),
) -> BrowserSession:
    raw = request.cookies.get(SESSION_COOKIE)
    browser = sessions.get(unsign_session_id(raw) if raw else None)
    if browser is None:
        browser = await sessions.create()
        response.set_cookie(
            SESSION_COOKIE, sign_session_id(browser.id), httponly=True, samesite="lax"
        )
    return browser


async def require_session(
    browser: BrowserSession = Depends(current_browser),
) -> BrowserSession:
    state = await browser.store.settled()
    if not state.authenticated or state.profile is None:
        raise HTTPException(status_code=401, detail="Sign in required")
    return browser


def require_csrf(
    request: Request, browser: BrowserSession = Depends(require_session)
) -> BrowserSession:
    token = request.headers.get(CSRF_HEADER, "")
    if not token or not validate_csrf_token(token, browser.id):
        raise HTTPException(status_code=403, detail="Invalid CSRF token")
    return browser


async def require_csrf_when_signed_in(
    request: Request, browser: BrowserSession = Depends(current_browser)
) -> BrowserSession:
    state = await browser.store.settled()
    if state.authenticated:
        require_csrf(request, browser)
    return browser


def require_admin(browser: BrowserSession = Depends(require_csrf)) -> BrowserSession:
    if not can_access_admin_page(browser.store.state.role):
        raise HTTPException(status_code=403, detail="Administrator access required")
    return browser


def require_admin_view(
    browser: BrowserSession = Depends(require_session),
) -> BrowserSession:
    if not can_access_admin_page(browser.store.state.role):
        raise HTTPException(status_code=403, detail="Administrator access required")
    return browser


def ledger_for(browser: BrowserSession, factory: sessionmaker) -> SqlLedger:
    profile = browser.store.state.profile
    return SqlLedger(factory, Actor(id=profile.id, role=profile.role))


def filters_from_request(request: Request) -> TransactionFilters:
    type_param = request.query_params.get("type")
    txn_type = None
    if type_param:
        try:
            txn_type = TransactionType(type_param)
        except ValueError:
            txn_type = None
    return TransactionFilters(
        type=txn_type,
        category_id=request.query_params.get("category") or None,
        query=request.query_params.get("q") or None,
        user_id=request.query_params.get("user") or None,
    )


def session_payload(browser: BrowserSession, state: SessionState) -> dict[str, object]:
    return {
        "authenticated": state.authenticated,
        "loading": state.loading,
        "user": state.user,
        "profile": state.profile,
        "is_admin": can_access_admin_page(state.role) if state.role else False,
        "csrf_token": generate_csrf_token(browser.id) if state.authenticated else None,
    }


# auth


@app.get("/auth/session")
async def session_view(browser: BrowserSession = Depends(current_browser)):
    state = await browser.store.settled()
    return session_payload(browser, state)


@app.post("/auth/sign-in")
async def sign_in(payload: SignInIn, browser: BrowserSession = Depends(current_browser)):
    state = await browser.store.sign_in(payload.email, payload.password)
    return {"message": "Signed in", **session_payload(browser, state)}


@app.post("/auth/sign-up")
async def sign_up(
    payload: SignUpIn,
    request: Request,
    browser: BrowserSession = Depends(current_browser),
):
    result = await browser.store.sign_up(payload.email, payload.password, payload.name)
    if result.confirmation_token:
        # Delivery stub until mail is wired up.
        link = request.url_for("confirm_email").include_query_params(
            token=result.confirmation_token
        )
        logging.info(f"sign_up_confirmation: email={payload.email} link={link}")
    return {
        "message": "Account created, confirm your email address before signing in",
        "requires_confirmation": result.requires_confirmation,
    }


@app.get("/auth/confirm", name="confirm_email")
async def confirm_email(token: str, browser: BrowserSession = Depends(current_browser)):
    await browser.store.confirm_email(token)
    return {"message": "Email confirmed, you can sign in now"}


@app.post("/auth/sign-out")
async def sign_out(browser: BrowserSession = Depends(require_csrf_when_signed_in)):
    await browser.store.sign_out()
    return {"message": "Signed out", **session_payload(browser, browser.store.state)}


# dashboard and reports


@app.get("/dashboard")
async def dashboard(
    browser: BrowserSession = Depends(require_session),
    factory: sessionmaker = Depends(get_session_factory),
):
    transactions = await ledger_for(browser, factory).list_transactions()
    today = local_today()
    profile = browser.store.state.profile
    return {
        "greeting_name": profile.name,
        "today": today,
        "total_income": total_by_type(transactions, TransactionType.income),
        "total_expense": total_by_type(transactions, TransactionType.expense),
        "income_change_percent": month_over_month(
            transactions, TransactionType.income, today=today
        ),
        "expense_change_percent": month_over_month(
            transactions, TransactionType.expense, today=today
        ),
        "monthly_net": monthly_net(transactions, today.year, today.month),
        "all_time_profit": all_time_profit(transactions),
        "weekly_series": weekly_series(transactions, today=today),
        "recent_transactions": recent_transactions(transactions, limit=5),
    }


def report_options_from_request(request: Request) -> ReportOptions:
    params = request.query_params
    try:
        return ReportOptions(
            period=params.get("period", "monthly"),
            include_cents=params.get("include_cents", "1") not in {"0", "false", "off"},
            months=int(params.get("months", 6)),
            notes=params.get("notes") or None,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


async def _report_data(
    browser: BrowserSession, factory: sessionmaker, options: ReportOptions
) -> dict[str, object]:
    ledger = ledger_for(browser, factory)
    transactions = await ledger.list_transactions()
    categories = await ledger.list_categories()
    return ReportService(transactions, categories).gather_data(options)


@app.get("/reports")
async def reports(
    request: Request,
    browser: BrowserSession = Depends(require_session),
    factory: sessionmaker = Depends(get_session_factory),
):
    options = report_options_from_request(request)
    data = await _report_data(browser, factory, options)
    return {
        "period": data["period_label"],
        "summary": data["summary"],
        "income_breakdown": data["income_breakdown"],
        "expense_breakdown": data["expense_breakdown"],
        "monthly_series": data["monthly_series"],
    }


@app.get("/reports/export.pdf")
async def export_pdf(
    request: Request,
    browser: BrowserSession = Depends(require_session),
    factory: sessionmaker = Depends(get_session_factory),
):
    options = report_options_from_request(request)
    try:
        from weasyprint import CSS, HTML
        from weasyprint.text.fonts import FontConfiguration
    except Exception as exc:
        raise HTTPException(
            status_code=500,
            detail="PDF export requires WeasyPrint system dependencies; install them for your OS and retry.",
        ) from exc

    try:
        start_time = datetime.now()
        data = await _report_data(browser, factory, options)
        font_config = FontConfiguration()
        html = templates.env.get_template("report.html").render(**data)
        css = CSS(string=REPORT_CSS, font_config=font_config)
        pdf_bytes = HTML(string=html, base_url=str(request.base_url)).write_pdf(
            stylesheets=[css], font_config=font_config
        )
        pdf_duration = (datetime.now() - start_time).total_seconds()
        logging.info(
            f"report_generated: period={options.period} "
            f"pdf_size_bytes={len(pdf_bytes)} "
            f"pdf_duration={pdf_duration:.2f}s"
        )
    except Exception as exc:
        logging.exception("Error generating PDF report")
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    filename = f"financial_report_{options.period}_{local_today().isoformat()}.pdf"
    return StreamingResponse(
        iter([pdf_bytes]),
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Content-Length": str(len(pdf_bytes)),
        },
    )


@app.get("/reports/export.csv")
async def export_csv(
    request: Request,
    browser: BrowserSession = Depends(require_session),
    factory: sessionmaker = Depends(get_session_factory),
):
    options = report_options_from_request(request)
    ledger = ledger_for(browser, factory)
    transactions = await ledger.list_transactions()
    categories = await ledger.list_categories()
    period = resolve_period(options.period)
    rows = [t for t in transactions if period.contains(t.date)]
    content = export_transactions(rows, {c.id: c.name for c in categories})
    filename = f"transactions_{options.period}_{local_today().isoformat()}.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# transactions


@app.get("/transactions")
async def list_transactions(
    request: Request,
    browser: BrowserSession = Depends(require_session),
    factory: sessionmaker = Depends(get_session_factory),
):
    filters = filters_from_request(request)
    profile = browser.store.state.profile
    transactions = await ledger_for(browser, factory).list_transactions()
    return [
        {
            **txn.model_dump(),
            "can_modify": can_modify(profile.role, profile.id, txn.user_id),
        }
        for txn in transactions
        if filters.matches(txn)
    ]


@app.post("/transactions", status_code=201)
async def create_transaction(
    payload: TransactionIn,
    browser: BrowserSession = Depends(require_csrf),
    factory: sessionmaker = Depends(get_session_factory),
):
    txn = await ledger_for(browser, factory).upsert_transaction(payload)
    return {"message": "Transaction saved", "transaction": txn}


@app.put("/transactions/{transaction_id}")
async def update_transaction(
    transaction_id: str,
    payload: TransactionIn,
    browser: BrowserSession = Depends(require_csrf),
    factory: sessionmaker = Depends(get_session_factory),
):
    txn = await ledger_for(browser, factory).upsert_transaction(payload, transaction_id)
    return {"message": "Transaction updated", "transaction": txn}


@app.delete("/transactions/{transaction_id}")
async def delete_transaction(
    transaction_id: str,
    browser: BrowserSession = Depends(require_csrf),
    factory: sessionmaker = Depends(get_session_factory),
):
    await ledger_for(browser, factory).delete_transaction(transaction_id)
    return {"message": "Transaction deleted"}


# categories


@app.get("/categories")
async def list_categories(
    browser: BrowserSession = Depends(require_session),
    factory: sessionmaker = Depends(get_session_factory),
):
    return await ledger_for(browser, factory).list_categories()


@app.post("/categories", status_code=201)
async def create_category(
    payload: CategoryIn,
    browser: BrowserSession = Depends(require_admin),
    factory: sessionmaker = Depends(get_session_factory),
):
    try:
        category = await ledger_for(browser, factory).upsert_category(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"message": "Category added", "category": category}


@app.put("/categories/{category_id}")
async def update_category(
    category_id: str,
    payload: CategoryIn,
    browser: BrowserSession = Depends(require_admin),
    factory: sessionmaker = Depends(get_session_factory),
):
    try:
        category = await ledger_for(browser, factory).upsert_category(
            payload, category_id
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"message": "Category updated", "category": category}


@app.delete("/categories/{category_id}")
async def delete_category(
    category_id: str,
    browser: BrowserSession = Depends(require_admin),
    factory: sessionmaker = Depends(get_session_factory),
):
    await ledger_for(browser, factory).delete_category(category_id)
    return {"message": "Category deleted"}


# users


@app.get("/users")
async def list_users(
    include_inactive: bool = False,
    browser: BrowserSession = Depends(require_admin_view),
):
    return await browser.store.list_users(include_inactive=include_inactive)


@app.post("/users", status_code=201)
async def create_user(
    payload: UserCreateIn, browser: BrowserSession = Depends(require_admin)
):
    profile = await browser.store.create_user(
        payload.email, payload.password, payload.name, payload.role
    )
    return {"message": "User added", "user": profile}


@app.put("/users/{user_id}")
async def update_user(
    user_id: str,
    payload: UserUpdateIn,
    browser: BrowserSession = Depends(require_admin),
):
    try:
        profile = await browser.store.update_user(user_id, payload.name, payload.role)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"message": "User updated", "user": profile}


@app.delete("/users/{user_id}")
async def deactivate_user(user_id: str, browser: BrowserSession = Depends(require_admin)):
    if user_id == browser.store.state.profile.id:
        raise HTTPException(status_code=400, detail="You cannot deactivate your own account")
    await browser.store.deactivate_user(user_id)
    return {"message": "User deactivated"}


# profile


@app.get("/profile")
async def profile_view(
    browser: BrowserSession = Depends(require_session),
    storage: LocalBlobStorage = Depends(get_blob_storage),
):
    profile = browser.store.state.profile
    return {"profile": profile, "avatar_url": await latest_avatar_url(storage, profile.id)}


@app.put("/profile")
async def update_profile(
    payload: ProfileUpdateIn, browser: BrowserSession = Depends(require_csrf)
):
    profile = await browser.store.update_own_profile(payload.name)
    return {"message": "Profile updated", "profile": profile}


@app.post("/profile/password")
async def change_password(
    payload: PasswordChangeIn, browser: BrowserSession = Depends(require_csrf)
):
    await browser.store.change_password(payload.current_password, payload.new_password)
    return {"message": "Password changed"}


@app.post("/profile/avatar")
async def change_avatar(
    file: UploadFile = File(...),
    browser: BrowserSession = Depends(require_csrf),
    storage: LocalBlobStorage = Depends(get_blob_storage),
):
    data = await file.read()
    try:
        url = await upload_avatar(
            storage, browser.store.state.profile.id, file.filename or "", data
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"message": "Avatar updated", "avatar_url": url}
