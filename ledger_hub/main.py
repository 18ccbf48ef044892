from typing import Any, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ledger_hub.config import GENERIC_SIGNATURE_HEADER, Provider, provider_signature_headers, settings
from ledger_hub.database import get_db, init_db
from ledger_hub.engine import ProcessingResult, ReconciliationEngine
from ledger_hub.helpers import from_minor, serialize_webhook_log
from ledger_hub.ledger import WalletNotFoundError, reconcile_wallet_balance, validate_wallet_balance
from ledger_hub.logging_config import get_logger
from ledger_hub.models import WebhookLog
from ledger_hub.notifications import NotificationDispatcher, notification_dispatcher
from ledger_hub.reconciliation import generate_reconciliation_csv
from ledger_hub.schemas.app_schemas import (
    BalanceCheckReport,
    ReconcileResponse,
    WalletLookupResponse,
    WebhookResponse,
)
from ledger_hub.security import require_bearer_token
from ledger_hub.wallets import find_wallet_by_account_number


logger = get_logger(__name__)

app = FastAPI(title="Ledger Hub")

reconciliation_engine = ReconciliationEngine()


def get_reconciliation_engine() -> ReconciliationEngine:
    return reconciliation_engine


def get_notification_dispatcher() -> NotificationDispatcher:
    return notification_dispatcher


@app.on_event("startup")
async def startup_event():
    logger.info("Starting Ledger Hub environment=%s", settings.environment)
    init_db()


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


def _provider_signature(request: Request, provider: Provider) -> Optional[str]:
    for header in provider_signature_headers[provider]:
        value = request.headers.get(header)
        if value:
            return value
    return None


def _respond(result: ProcessingResult):
    if result.is_transport_level:
        return JSONResponse(
            status_code=400,
            content=result.to_response().model_dump(mode="json", exclude_none=True),
        )
    return result.to_response()


async def _receive(
    provider: str,
    request: Request,
    signature: Optional[str],
    background_tasks: BackgroundTasks,
    db: Session,
    engine: ReconciliationEngine,
    dispatcher: NotificationDispatcher,
):
    payload = await _json_body(request)
    result = engine.process(
        db,
        provider,
        payload,
        signature,
        notifier=lambda body: background_tasks.add_task(dispatcher.send, body),
    )
    logger.info(
        "Webhook handled provider=%s reference=%s success=%s walletUpdated=%s",
        provider,
        result.reference,
        result.success,
        result.wallet_updated,
    )
    return _respond(result)


def _provider_route(provider: Provider):
    async def receive_provider_webhook(
        request: Request,
        background_tasks: BackgroundTasks,
        db: Session = Depends(get_db),
        engine: ReconciliationEngine = Depends(get_reconciliation_engine),
        dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
    ):
        signature = _provider_signature(request, provider)
        return await _receive(provider.value, request, signature, background_tasks, db, engine, dispatcher)

    receive_provider_webhook.__name__ = f"receive_{provider.value.lower()}_webhook"
    return receive_provider_webhook


@app.get("/webhooks/logs")
async def list_webhook_logs(
    provider: str | None = None,
    outcome: str | None = None,
    limit: int = Query(100, ge=1, le=500),
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    query = db.query(WebhookLog)
    if provider:
        query = query.filter(WebhookLog.provider == provider.upper())
    if outcome:
        query = query.filter(WebhookLog.outcome == outcome)
    records = query.order_by(WebhookLog.received_at.desc(), WebhookLog.id.desc()).limit(limit).all()
    return [serialize_webhook_log(r) for r in records]


for _provider in Provider:
    app.add_api_route(
        f"/webhooks/{_provider.value.lower()}",
        _provider_route(_provider),
        methods=["POST"],
        response_model=WebhookResponse,
        response_model_exclude_none=True,
    )


@app.post("/webhooks/generic/{provider}", response_model=WebhookResponse, response_model_exclude_none=True)
async def receive_generic_webhook(
    provider: str,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    signature = request.headers.get(GENERIC_SIGNATURE_HEADER)
    return await _receive(provider, request, signature, background_tasks, db, engine, dispatcher)


@app.post("/webhooks/{provider}/simulate", response_model=WebhookResponse, response_model_exclude_none=True)
async def simulate_webhook(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    """
    Dry-run a provider payload: no signature check and no writes. Disabled in production.
    """
    if settings.is_production:
        raise HTTPException(status_code=404, detail="Not Found")
    payload = await _json_body(request)
    return _respond(engine.simulate(db, provider, payload))


@app.get("/admin/wallets/lookup/{account_number}", response_model=WalletLookupResponse)
async def lookup_wallet(
    account_number: str,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    wallet = find_wallet_by_account_number(db, account_number)
    if wallet is None:
        return WalletLookupResponse(accountNumber=account_number, walletFound=False)
    return WalletLookupResponse(
        accountNumber=account_number,
        walletFound=True,
        walletId=wallet.id,
        virtualAccountNumber=wallet.virtual_account_number,
        ownerId=wallet.owner_id,
        balance=from_minor(wallet.balance_minor),
        isActive=wallet.is_active,
    )


@app.get("/admin/wallets/{wallet_id}/balance-validation", response_model=BalanceCheckReport)
async def wallet_balance_validation(
    wallet_id: str,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    try:
        check = validate_wallet_balance(db, wallet_id)
    except WalletNotFoundError:
        raise HTTPException(status_code=404, detail="wallet not found")
    return check.to_report()


@app.post("/admin/wallets/{wallet_id}/reconcile", response_model=ReconcileResponse)
async def reconcile_wallet(
    wallet_id: str,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    """
    Reset a wallet's stored balance to the sum of its completed transactions.
    """
    try:
        outcome = reconcile_wallet_balance(db, wallet_id)
    except WalletNotFoundError:
        raise HTTPException(status_code=404, detail="wallet not found")
    message = "Wallet balance reconciled" if outcome.changed else "Wallet balance already consistent"
    return ReconcileResponse(
        success=True,
        walletId=outcome.wallet_id,
        oldBalance=outcome.old_balance,
        newBalance=outcome.new_balance,
        discrepancy=outcome.discrepancy,
        message=message,
    )


@app.get("/reconciliation_data")
async def download_reconciliation_csv(_auth=Depends(require_bearer_token), db: Session = Depends(get_db)):
    csv_text, mismatch_count = generate_reconciliation_csv(db)
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={
            "Content-Disposition": 'attachment; filename="reconciliation.csv"',
            "X-Mismatch-Count": str(mismatch_count),
        },
    )


@app.get("/swagger", include_in_schema=False)
async def swagger_ui():
    return get_swagger_ui_html(openapi_url=str(app.openapi_url), title="Ledger Hub - Swagger UI")

@app.get("/health")
async def health():
    return {"status": "ok"}
