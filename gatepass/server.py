from __future__ import annotations
import sys

import httpx
import json
import logging
import os
from typing import Optional

from .infra.logging import setup_logging
from .infra.sql import Database
from .infra.timings import aggregates, timeit

from .errors import GatePassError, InvalidInput
from .model.orm import Base
from .model.ledger import PurchaseLedger
from .model import redemption
from .model.redemption import RedemptionStore, BACKEND as REDEMPTION_BACKEND
from .gateway import PaymentAdapter, PaystackGateway, MockPay, is_settled
from .mailer import Mailer
from .reconcile import ReconciliationPipeline, ReconcileRequest
from .checkin import CheckInService

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse, ORJSONResponse
from fastapi import Form
from fastapi.templating import Jinja2Templates

from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .helpers import is_valid_email, ct_equal, to_iso

import redis.asyncio as redis

logger = logging.getLogger(__name__)

templates = Jinja2Templates(
    directory=os.path.join(os.path.dirname(__file__), "templates")
)

# ----------------------------
# Config & Constants
# ----------------------------
APP_ENV = os.environ.get("APP_ENV", "development")
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    print("NEED DATABASE_URL! e.g. sqlite:///./gatepass.db")
    sys.exit(1)

PAYMENT_GATEWAY = os.environ.get("PAYMENT_GATEWAY", "mock").lower()
PAYSTACK_SECRET_KEY = os.environ.get("PAYSTACK_SECRET_KEY", "")
MOCK_WEBHOOK_URL = os.environ.get("MOCK_WEBHOOK_URL", "")

RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
FROM_EMAIL = os.environ.get("FROM_EMAIL", "")
APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:8000")

EVENT = {
    "name": os.environ.get("EVENT_NAME", "GatePass Live"),
    "venue": os.environ.get("EVENT_VENUE", "Main Venue"),
    "time": os.environ.get("EVENT_TIME", "7:00 PM"),
}
CURRENCY = os.environ.get("CURRENCY", "NGN")
CURRENCY_SYMBOL = os.environ.get("CURRENCY_SYMBOL", "₦")
MINOR_UNITS = 100  # kobo per naira

# prices in major units
TICKET_BUNDLES = {
    1: {"name": "General Admission", "price": 7000, "seats": 1},
    2: {"name": "Couple Pass", "price": 13000, "seats": 2},
    3: {"name": "Squad of 4", "price": 25000, "seats": 4},
}
DEFAULT_TICKET_NAME = os.environ.get("DEFAULT_TICKET_NAME",
                                     f"{EVENT['name']} Ticket")

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")


db = Database(DATABASE_URL)

# dev gateway lives for the whole process so its sessions survive requests
mockpay = MockPay()

app = FastAPI(
    title="GatePass",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)


@app.exception_handler(GatePassError)
async def _gatepass_error(request: Request, exc: GatePassError):
    return ORJSONResponse(exc.to_dict(), status_code=exc.status_code)


# ----------------------------
# Dependencies
# ----------------------------
def get_gateway() -> PaymentAdapter:
    gateway = getattr(app.state, "gateway", None)
    if gateway is None:
        raise RuntimeError("payment gateway not initialized")
    return gateway


def get_ledger() -> PurchaseLedger:
    return PurchaseLedger(db)


def get_redemptions() -> RedemptionStore:
    if REDEMPTION_BACKEND == "redis":
        return redemption.new_store(r=app.state.redis)
    return redemption.new_store(db=db)


def get_pipeline(
    ledger: PurchaseLedger = Depends(get_ledger),
    gateway: PaymentAdapter = Depends(get_gateway),
) -> ReconciliationPipeline:
    return ReconciliationPipeline(
        ledger=ledger,
        gateway=gateway,
        mailer=app.state.mailer,
        catalog=TICKET_BUNDLES,
        receipt_base_url=APP_BASE_URL,
        event=EVENT,
        currency=CURRENCY,
        currency_symbol=CURRENCY_SYMBOL,
        minor_units=MINOR_UNITS,
        default_ticket_name=DEFAULT_TICKET_NAME,
    )


def get_checkin(
    ledger: PurchaseLedger = Depends(get_ledger),
    redemptions: RedemptionStore = Depends(get_redemptions),
) -> CheckInService:
    return CheckInService(
        ledger=ledger,
        redemptions=redemptions,
        default_venue=EVENT["venue"],
        receipt_base_url=APP_BASE_URL,
        event=EVENT,
    )


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    if APP_ENV != "testing":
        setup_logging(
            level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
        )
    R = "Redis" if REDEMPTION_BACKEND == "redis" else "SQL"
    logger.info("GatePass is starting up (env=%s)", APP_ENV)
    logger.info("   - Payment gateway:    %s", PAYMENT_GATEWAY)
    logger.info("   - Redemption backend: %s", R)


@app.on_event("startup")
async def _db_init():
    await db.start()
    await db.create_all(Base.metadata)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(
            max_connections=100, max_keepalive_connections=20
        ),
    )
    if PAYMENT_GATEWAY == "paystack":
        app.state.gateway = PaystackGateway(
            PAYSTACK_SECRET_KEY, app.state.http, currency=CURRENCY
        )
    else:
        app.state.gateway = mockpay
    app.state.mailer = Mailer(
        RESEND_API_KEY, FROM_EMAIL, app.state.http,
        sender_name=f"{EVENT['name']} Tickets",
    )


@app.on_event("startup")
async def _redis_start():
    if REDEMPTION_BACKEND == "redis":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    await db.stop()


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="admin login required")


def client_ip(request: Request) -> str:
    fwd = request.headers.get("x-forwarded-for", "")
    if fwd:
        return fwd.split(",")[0].strip()
    return request.client.host if request.client else ""


# ----------------------------
# Catalog
# ----------------------------
@app.get("/api/tickets")
async def list_tickets():
    return {
        "currency": CURRENCY,
        "items": [{"id": k, **v} for k, v in TICKET_BUNDLES.items()],
    }


# ----------------------------
# Gateway passthrough: initialize + verify
# ----------------------------
@app.post("/api/paystack/init")
async def init_payment(
    payload: dict,
    gateway: PaymentAdapter = Depends(get_gateway),
):
    email = (payload.get("email") or "").strip()
    reference = (payload.get("reference") or "").strip()
    callback_url = (payload.get("callbackUrl") or "").strip()
    amount = payload.get("amount")
    if not email or not amount or not reference or not callback_url:
        raise InvalidInput("Missing required fields")
    if not is_valid_email(email):
        raise InvalidInput("email must be a valid email address")
    try:
        amount_minor = round(float(amount) * MINOR_UNITS)
    except (TypeError, ValueError):
        raise InvalidInput("amount must be a number")

    async with timeit("gateway.initialize"):
        res = await gateway.initialize_transaction(
            email=email,
            amount_minor=amount_minor,
            reference=reference,
            callback_url=callback_url,
            metadata=payload.get("metadata") or {},
        )
    return {
        "success": True,
        "authorizationUrl": res["authorization_url"],
        "accessCode": res["access_code"],
        "reference": res["reference"],
    }


@app.get("/api/paystack/verify")
async def verify_payment_status(
    reference: Optional[str] = None,
    gateway: PaymentAdapter = Depends(get_gateway),
):
    if not reference:
        raise InvalidInput("Missing reference")
    async with timeit("gateway.verify"):
        v = await gateway.verify_transaction(reference)
    return {
        "success": is_settled(v),
        "reference": v["reference"],
        "transactionReference": v["transaction_id"] or v["reference"],
        "amountPaid": v["amount_minor"] / MINOR_UNITS,
        "currency": v["currency"],
        "paidOn": to_iso(v["paid_on"]),
        "raw": v["raw"],
    }


# ----------------------------
# Reconciliation
# ----------------------------
@app.post("/api/verify-payment")
async def verify_payment(
    payload: dict,
    pipeline: ReconciliationPipeline = Depends(get_pipeline),
):
    req = ReconcileRequest.from_payload(payload)
    result = await pipeline.reconcile(req)
    return result.to_dict()


# ----------------------------
# Webhook endpoint (shared for Mock/Paystack)
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    gateway: PaymentAdapter = Depends(get_gateway),
    pipeline: ReconciliationPipeline = Depends(get_pipeline),
):
    payload = await request.body()
    headers = dict(request.headers)

    event = gateway.verify_webhook(payload, headers)
    kind, data = gateway.parse_event(event)
    if kind != "success":
        logger.info("webhook %s for %s ignored", kind, data.get("reference"))
        return {"ok": True, "ignored": kind}

    req = ReconcileRequest.from_gateway(data, minor_units=MINOR_UNITS)
    result = await pipeline.reconcile(req)
    return {
        "ok": True,
        "id": result.purchase["id"],
        "duplicate": result.duplicate,
        "emailStatus": result.email_status,
    }


# ----------------------------
# Receipt + serial lookup
# ----------------------------
@app.get("/api/receipt")
async def get_receipt(
    ref: str,
    txref: Optional[str] = None,
    ledger: PurchaseLedger = Depends(get_ledger),
):
    async with timeit("ledger.receipt"):
        purchase = await ledger.find_by_references(ref, txref)
    if purchase is None:
        raise HTTPException(404, detail="purchase not found")
    return {"success": True, "purchase": purchase, "event": EVENT}


@app.post("/api/verify-serial")
async def verify_serial(
    payload: dict,
    checkin: CheckInService = Depends(get_checkin),
):
    return await checkin.lookup(payload.get("serial"))


# ----------------------------
# Gate check-in
# ----------------------------
@app.post("/api/checkin")
async def check_in(
    payload: dict,
    request: Request,
    checkin: CheckInService = Depends(get_checkin),
):
    result = await checkin.check_in(
        payload.get("serial"),
        gate=str(payload.get("gate") or ""),
        staff_id=str(payload.get("usedBy") or payload.get("staffId") or ""),
        venue=payload.get("venue"),
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent", ""),
    )
    if result.already_used:
        return ORJSONResponse(result.to_dict(), status_code=409)
    return result.to_dict()


# ----------------------------
# MockPay UI (simple page with 3 buttons)
# ----------------------------
@app.get("/mockpay/{reference}", response_class=HTMLResponse)
async def mockpay_screen(request: Request, reference: str):
    ps = mockpay.session(reference)
    if not ps:
        raise HTTPException(404, "payment session not found")
    return templates.TemplateResponse(request, "mockpay.html", {
        "reference": reference,
        "email": ps["customer"]["email"],
        "amount": f"{ps['amount'] / MINOR_UNITS:,.2f}",
        "currency_symbol": CURRENCY_SYMBOL,
    })


@app.post("/mockpay/{reference}/emit")
async def mockpay_emit(reference: str, request: Request):
    form = await request.form()
    kind = form.get("t")  # succeeded|failed|canceled
    if kind not in {"succeeded", "failed", "canceled"}:
        raise HTTPException(400, detail="invalid kind")

    ps = mockpay.session(reference)
    if not ps:
        raise HTTPException(404, "payment session not found")

    event = mockpay.settle(reference, kind)
    if MOCK_WEBHOOK_URL:
        payload = json.dumps(event).encode()
        client_http: httpx.AsyncClient = app.state.http
        try:
            await client_http.post(
                MOCK_WEBHOOK_URL,
                content=payload,
                headers={
                    "x-mockpay-signature": mockpay.sign(payload),
                    "content-type": "application/json",
                },
            )
        except httpx.HTTPError as e:
            # the client-side verify-payment call still reconciles
            logger.warning("mock webhook delivery failed: %s", e)

    callback = ps.get("callback_url") or "/"
    sep = "&" if "?" in callback else "?"
    status = "success" if kind == "succeeded" else kind
    return RedirectResponse(
        url=f"{callback}{sep}reference={reference}&status={status}",
        status_code=HTTP_303_SEE_OTHER,
    )


# ----------------------------
# Admin
# ----------------------------
@app.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        return {"ok": True}
    raise HTTPException(401, detail="Invalid credentials.")


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/", status_code=HTTP_303_SEE_OTHER)


@app.get("/api/admin/purchases", dependencies=[Depends(require_admin)])
async def api_admin_purchases(
    limit: int = 100,
    ledger: PurchaseLedger = Depends(get_ledger),
):
    items = await ledger.list_recent(limit=limit)
    return {"items": items, "limit": limit}


@app.get("/api/admin/redemptions", dependencies=[Depends(require_admin)])
async def api_admin_redemptions(
    gate: Optional[str] = None,
    limit: int = 100,
    redemptions: RedemptionStore = Depends(get_redemptions),
):
    records = await redemptions.list_recent(gate=gate, limit=limit)
    return {
        "items": [r.to_dict() for r in records],
        "gate": gate,
        "limit": limit,
    }


@app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
async def api_admin_timings():
    return {"items": aggregates()}
