import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from fastapi import Depends, FastAPI, File, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import get_current_user
from cache import get_cache
from categorizer import CategoryMatcher, ensure_rule_categories, seed_default_categories
from config import get_settings
from database import get_db, session_scope
from errors import (
    AuthenticationError,
    ConflictError,
    FatalConfigurationError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from models import BudgetPeriod, PaymentMethod, ReportType, User
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    BudgetUpdate,
    BulkImportIn,
    BulkRecategorizeIn,
    CategorizeIn,
    ExpenseIn,
    ExpenseUpdate,
    ForgotPasswordIn,
    LoginIn,
    ReceiptBulkDeleteIn,
    RegisterIn,
    ReportIn,
    ReportParameters,
    ResetPasswordIn,
)
from services import (
    AnalyticsService,
    AuthService,
    BudgetService,
    CategoryService,
    ExpenseFilters,
    ExpenseService,
    ReportService,
    budget_payload,
    expense_payload,
    local_now,
    report_payload,
    user_payload,
)
from storage import ReceiptStorage, read_capped

logger = logging.getLogger(__name__)

settings = get_settings()

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["100/15minutes"],
    enabled=settings.rate_limit_enabled,
)

app = FastAPI(title="Expense Tracker API")
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _load_app_version() -> str:
    try:
        import tomllib
    except ImportError:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except (OSError, ValueError):
        return "unknown"


APP_VERSION = _load_app_version()

ERROR_STATUS = (
    (NotFoundError, 404),
    (ConflictError, 409),
    (AuthenticationError, 401),
    (ForbiddenError, 403),
    (ValidationError, 400),
)


def _error(status_code: int, message: str, **extra: object) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, **extra},
    )


@app.exception_handler(ValueError)
async def service_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    for error_cls, status_code in ERROR_STATUS:
        if isinstance(exc, error_cls):
            return _error(status_code, str(exc))
    return _error(400, str(exc))


@app.exception_handler(FatalConfigurationError)
async def fatal_error_handler(
    request: Request, exc: FatalConfigurationError
) -> JSONResponse:
    logger.error(f"fatal_configuration: path={request.url.path} error={exc}")
    return _error(500, str(exc))


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.warning(f"integrity_error: path={request.url.path}")
    return _error(409, "Resource already exists")


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    response = _error(exc.status_code, str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(part) for part in err["loc"][1:]) or str(err["loc"][0]),
            "message": err["msg"],
        }
        for err in exc.errors()
    ]
    return _error(400, "Validation failed", errors=errors)


def ok(data: object = None, message: Optional[str] = None) -> dict:
    body: dict = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    with session_scope() as session:
        seed_default_categories(session)
        ensure_rule_categories(session)
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.get("/api/health")
def health():
    return {
        "status": "ok",
        "version": APP_VERSION,
        "timestamp": local_now().isoformat(),
        "cache": get_cache().enabled,
    }


# auth


@app.post("/api/auth/register", status_code=201)
@limiter.limit("5/15minutes")
def register(request: Request, payload: RegisterIn, db: Session = Depends(get_db)):
    user, token = AuthService(db).register(payload)
    return ok({"user": user_payload(user), "token": token}, "User registered successfully")


@app.post("/api/auth/login")
@limiter.limit("5/15minutes")
def login(request: Request, payload: LoginIn, db: Session = Depends(get_db)):
    user, token = AuthService(db).login(payload)
    return ok({"user": user_payload(user), "token": token}, "Login successful")


@app.get("/api/auth/me")
def me(user: User = Depends(get_current_user)):
    return ok({"user": user_payload(user)})


@app.post("/api/auth/forgot-password")
@limiter.limit("5/hour")
def forgot_password(
    request: Request, payload: ForgotPasswordIn, db: Session = Depends(get_db)
):
    AuthService(db).forgot_password(payload.email)
    return ok(
        message="If an account with that email exists, a password reset link has been sent."
    )


@app.get("/api/auth/validate-reset-token")
def validate_reset_token(token: str = Query(..., min_length=1), db: Session = Depends(get_db)):
    return ok(AuthService(db).validate_reset_token(token), "Token is valid")


@app.post("/api/auth/reset-password")
@limiter.limit("5/hour")
def reset_password(request: Request, payload: ResetPasswordIn, db: Session = Depends(get_db)):
    AuthService(db).reset_password(payload.token, payload.password)
    return ok(message="Password has been reset successfully")


# expenses


@app.get("/api/expenses")
def list_expenses(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    category_id: Optional[int] = Query(None, alias="categoryId"),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    search: Optional[str] = None,
    payment_method: Optional[PaymentMethod] = Query(None, alias="paymentMethod"),
    min_amount: Optional[Decimal] = Query(None, alias="minAmount", ge=0),
    max_amount: Optional[Decimal] = Query(None, alias="maxAmount", ge=0),
    is_recurring: Optional[bool] = Query(None, alias="isRecurring"),
    tags: Optional[str] = None,
    sort_by: str = Query("transactionDate", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder", pattern="^(asc|desc)$"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    filters = ExpenseFilters(
        category_id=category_id,
        start_date=start_date,
        end_date=end_date,
        search=search,
        payment_method=payment_method,
        min_amount=min_amount,
        max_amount=max_amount,
        is_recurring=is_recurring,
        tags=[tag for tag in (tags or "").split(",") if tag.strip()],
    )
    return ok(ExpenseService(db, user.id).list(filters, page, limit, sort_by, sort_order))


@app.get("/api/expenses/stats")
def expense_stats(
    period: str = Query("month", pattern="^(week|month|year)$"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ok(ExpenseService(db, user.id).stats(period))


@app.get("/api/expenses/recurring")
def recurring_expenses(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return ok(ExpenseService(db, user.id).recurring())


@app.get("/api/expenses/tags")
def expense_tags(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return ok(ExpenseService(db, user.id).tags())


@app.get("/api/expenses/categories")
def expense_categories(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    since = local_now().date() - timedelta(days=90)
    return ok({"categories": CategoryService(db).list_with_usage(user.id, since)})


@app.get("/api/expenses/insights")
def expense_insights(
    timeframe: int = Query(30, ge=1, le=365),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ok(ExpenseService(db, user.id).insights(timeframe))


@app.get("/api/expenses/search")
def search_expenses(
    q: str = "",
    limit: int = Query(20, ge=1, le=50),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ok(ExpenseService(db, user.id).search(q, limit))


@app.get("/api/expenses/ai/status")
def ai_status(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return ok(ExpenseService(db, user.id).ai_status())


@app.post("/api/expenses/ai/suggest")
def suggest_category(
    payload: CategorizeIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    suggestion = CategoryMatcher.from_session(db).categorize(
        payload.description,
        payload.merchant,
        float(payload.amount) if payload.amount is not None else None,
        payload.payment_method.value if payload.payment_method else None,
    )
    return ok(suggestion.to_dict())


@app.post("/api/expenses/bulk-recategorize")
def bulk_recategorize(
    payload: BulkRecategorizeIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    result = ExpenseService(db, user.id).bulk_recategorize(payload.limit, payload.category_id)
    message = result.pop("message", None) or "Bulk recategorization queued"
    return ok(result, message)


@app.post("/api/expenses/bulk", status_code=201)
@limiter.limit("5/hour")
def bulk_import(
    request: Request,
    payload: BulkImportIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    result = ExpenseService(db, user.id).bulk_import(payload.expenses)
    return ok(
        result,
        f"Bulk import completed: {result['success']} successful, {result['failed']} failed",
    )


@app.post("/api/expenses/import", status_code=201)
@limiter.limit("5/hour")
def import_expenses_csv(
    request: Request,
    file: UploadFile = File(...),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    raw = read_capped(file.file, get_settings().max_upload_bytes, declared_size=file.size)
    content = raw.decode("utf-8-sig", errors="replace")
    result = ExpenseService(db, user.id).import_csv(content)
    return ok(
        result,
        f"CSV import completed: {result['success']} successful, {result['failed']} failed",
    )


@app.get("/api/expenses/{expense_id}")
def get_expense(
    expense_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ok({"expense": expense_payload(ExpenseService(db, user.id).get(expense_id))})


@app.post("/api/expenses", status_code=201)
def create_expense(
    payload: ExpenseIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    expense, queued = ExpenseService(db, user.id).create(payload)
    data: dict = {"expense": expense_payload(expense)}
    if queued:
        data["processing"] = {
            "aiCategorization": "queued for background processing",
            "note": "Category will be updated automatically",
        }
    return ok(data, "Expense created successfully")


@app.put("/api/expenses/{expense_id}")
def update_expense(
    expense_id: int,
    payload: ExpenseUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    expense = ExpenseService(db, user.id).update(expense_id, payload)
    return ok({"expense": expense_payload(expense)}, "Expense updated successfully")


@app.delete("/api/expenses/{expense_id}")
def delete_expense(
    expense_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ExpenseService(db, user.id).delete(expense_id)
    return ok(message="Expense deleted successfully")


@app.post("/api/expenses/{expense_id}/categorize")
def categorize_expense(
    expense_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ok(ExpenseService(db, user.id).categorize(expense_id), "Categorization processed")


# budgets


@app.get("/api/budgets")
@limiter.limit("50/15minutes")
def list_budgets(
    request: Request,
    period: Optional[BudgetPeriod] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ok({"budgets": BudgetService(db, user.id).list(period)})


@app.get("/api/budgets/alerts")
@limiter.limit("50/15minutes")
def budget_alerts(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ok({"alerts": BudgetService(db, user.id).alerts()})


@app.get("/api/budgets/stats")
@limiter.limit("50/15minutes")
def budget_stats(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ok(BudgetService(db, user.id).stats())


@app.get("/api/budgets/{budget_id}")
@limiter.limit("50/15minutes")
def get_budget(
    request: Request,
    budget_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    budget, summary = BudgetService(db, user.id).get(budget_id)
    return ok({"budget": budget_payload(budget, summary)})


@app.post("/api/budgets", status_code=201)
@limiter.limit("50/15minutes")
def create_budget(
    request: Request,
    payload: BudgetIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    budget, summary = BudgetService(db, user.id).create(payload)
    return ok({"budget": budget_payload(budget, summary)}, "Budget created successfully")


@app.put("/api/budgets/{budget_id}")
@limiter.limit("50/15minutes")
def update_budget(
    request: Request,
    budget_id: int,
    payload: BudgetUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    budget, summary = BudgetService(db, user.id).update(budget_id, payload)
    return ok({"budget": budget_payload(budget, summary)}, "Budget updated successfully")


@app.delete("/api/budgets/{budget_id}")
@limiter.limit("50/15minutes")
def delete_budget(
    request: Request,
    budget_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    BudgetService(db, user.id).delete(budget_id)
    return ok(message="Budget deleted successfully")


# analytics


@app.get("/api/analytics/overview")
@limiter.limit("50/15minutes")
def analytics_overview(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ok(AnalyticsService(db, user.id).overview())


@app.get("/api/analytics/trends")
@limiter.limit("50/15minutes")
def analytics_trends(
    request: Request,
    period: str = Query("month", pattern="^(week|month|quarter|year)$"),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    group_by: str = Query(
        "month", alias="groupBy", pattern="^(day|week|month|category|paymentMethod)$"
    ),
    categories: Optional[str] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        category_ids = [int(c) for c in (categories or "").split(",") if c.strip()]
    except ValueError as exc:
        raise ValidationError("categories must be a comma separated list of ids") from exc
    return ok(
        AnalyticsService(db, user.id).trends(
            period, start_date, end_date, group_by, category_ids
        )
    )


@app.get("/api/analytics/categories")
@limiter.limit("50/15minutes")
def analytics_categories(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ok(AnalyticsService(db, user.id).category_analysis())


@app.get("/api/analytics/budgets")
@limiter.limit("50/15minutes")
def analytics_budgets(
    request: Request,
    period: Optional[BudgetPeriod] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ok(AnalyticsService(db, user.id).budget_performance(period))


@app.get("/api/analytics/insights")
@limiter.limit("50/15minutes")
def analytics_insights(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ok(AnalyticsService(db, user.id).spending_insights())


# reports


@app.get("/api/reports")
def list_reports(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    type: Optional[ReportType] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ok(ReportService(db, user.id).list(page, limit, type))


@app.post("/api/reports", status_code=201)
def create_report(
    payload: ReportIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    report = ReportService(db, user.id).create(payload)
    return ok({"report": report_payload(report)}, "Report created successfully")


@app.post("/api/reports/preview")
def preview_report(
    payload: ReportParameters,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ok(ReportService(db, user.id).preview(payload))


@app.get("/api/reports/{report_id}")
def get_report(
    report_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ok({"report": report_payload(ReportService(db, user.id).get(report_id))})


@app.post("/api/reports/{report_id}/generate")
def generate_report(
    report_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ok(ReportService(db, user.id).generate(report_id), "Report generated successfully")


@app.get("/api/reports/{report_id}/download")
@limiter.limit("10/hour")
def download_report(
    request: Request,
    report_id: int,
    format: str = "pdf",
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    content, media_type, filename = ReportService(db, user.id).download(report_id, format)
    return StreamingResponse(
        iter([content]),
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/reports/{report_id}/duplicate", status_code=201)
def duplicate_report(
    report_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    report = ReportService(db, user.id).duplicate(report_id)
    return ok({"report": report_payload(report)}, "Report duplicated successfully")


@app.delete("/api/reports/{report_id}")
def delete_report(
    report_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ReportService(db, user.id).delete(report_id)
    return ok(message="Report deleted successfully")


# receipts


@app.post("/api/upload/receipt", status_code=201)
@limiter.limit("30/hour")
def upload_receipt(
    request: Request,
    file: UploadFile = File(...),
    user: User = Depends(get_current_user),
):
    info = ReceiptStorage(user.id).save_upload(
        file.filename or "receipt", file.content_type or "", file.file, declared_size=file.size
    )
    return ok(info, "Receipt uploaded successfully")


@app.get("/api/upload/stats")
def receipt_stats(user: User = Depends(get_current_user)):
    return ok(ReceiptStorage(user.id).stats())


@app.post("/api/upload/receipts/bulk-delete")
def bulk_delete_receipts(
    payload: ReceiptBulkDeleteIn, user: User = Depends(get_current_user)
):
    result = ReceiptStorage(user.id).bulk_delete(payload.public_ids)
    return ok(result, f"Deleted {len(result['deleted'])} receipts")


@app.get("/api/upload/receipt/{public_id:path}/file")
def download_receipt(public_id: str, user: User = Depends(get_current_user)):
    chunks, media_type = ReceiptStorage(user.id).open(public_id)
    return StreamingResponse(chunks, media_type=media_type)


@app.get("/api/upload/receipt/{public_id:path}")
def receipt_info(public_id: str, user: User = Depends(get_current_user)):
    return ok(ReceiptStorage(user.id).info(public_id))


@app.delete("/api/upload/receipt/{public_id:path}")
def delete_receipt(public_id: str, user: User = Depends(get_current_user)):
    ReceiptStorage(user.id).delete(public_id)
    return ok(message="Receipt deleted successfully")


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
