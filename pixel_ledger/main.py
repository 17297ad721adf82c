from contextlib import asynccontextmanager
from typing import Optional
import hmac
import logging
import os

from fastapi import FastAPI, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
import stripe

from .config import INTERNAL_TOKEN_HEADER, Settings
from .errors import AccountNotFound, AuthRequired, Forbidden, InvalidInput, LedgerError
from .ledger import Ledger
from .models import DEFAULT_COLOR, DEFAULT_INTENSITY
from .window import encode_window

logger = logging.getLogger(__name__)

HISTORY_MAX_LIMIT = 100


# Request / response models
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BuyPixelRequest(CamelModel):
    cell_index: int
    color: str
    intensity: Optional[int] = None


class BuyPixelResponse(CamelModel):
    price_cents_charged: int
    purchase_count_after: int
    balance_cents_after: int


class CellResponse(CamelModel):
    index: int
    color: str
    intensity: int
    purchase_count: int
    next_price_cents: Optional[int]
    updated_at: Optional[str] = None


class PurchaseRecordResponse(CamelModel):
    id: int
    account_id: str
    cell_index: int
    color: str
    intensity: int
    price_charged_cents: int
    purchase_count_after: int
    timestamp: str


class CreateAccountRequest(CamelModel):
    account_id: str = Field(..., min_length=1)


class WalletResponse(CamelModel):
    account_id: str
    balance_cents: int


class CreditRequest(CamelModel):
    account_id: str
    amount_cents: int
    payment_ref: str


class CreditResponse(CamelModel):
    account_id: str
    amount_cents: int
    payment_ref: str
    balance_cents: int
    duplicate: bool


# Dependencies
def get_ledger(request: Request) -> Ledger:
    return request.app.state.ledger


def get_account_id(request: Request) -> str:
    """Caller identity, already verified by the auth collaborator."""
    header = request.app.state.settings.auth_header
    account_id = request.headers.get(header, "").strip()
    if not account_id:
        raise AuthRequired("Auth required")
    return account_id


def require_internal_token(request: Request) -> None:
    """Only trusted backends holding the shared token may credit wallets."""
    expected = request.app.state.settings.internal_token
    if not expected:
        raise Forbidden("Internal credits are disabled")
    supplied = request.headers.get(INTERNAL_TOKEN_HEADER, "")
    if not supplied:
        raise AuthRequired("Internal token required")
    if not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise Forbidden("Invalid internal token")


def _stripe_field(obj, key):
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.ledger = Ledger.open(settings)
        try:
            yield
        finally:
            app.state.ledger.close()

    app = FastAPI(title="Pixel Ledger API", lifespan=lifespan)
    app.state.settings = settings
    stripe.api_key = settings.stripe_secret_key

    # CORS for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        fields = ", ".join(
            ".".join(str(part) for part in err["loc"] if part not in ("body", "query"))
            for err in exc.errors()
        )
        return JSONResponse(status_code=400, content={"error": f"Invalid input: {fields}"})

    # Pixels
    @app.get("/pixels/get")
    def get_window(start: int = 0, end: int = 10000, ledger: Ledger = Depends(get_ledger)):
        """Purchased cells with start <= index < end"""
        return encode_window(ledger.window(start, end))

    @app.post("/pixels/buy", response_model=BuyPixelResponse)
    def buy_pixel(
        body: BuyPixelRequest,
        account_id: str = Depends(get_account_id),
        ledger: Ledger = Depends(get_ledger),
    ):
        """Buy a cell at its current price"""
        receipt = ledger.buy(account_id, body.cell_index, body.color, body.intensity)
        return BuyPixelResponse(
            price_cents_charged=receipt.price_cents_charged,
            purchase_count_after=receipt.purchase_count_after,
            balance_cents_after=receipt.balance_cents_after,
        )

    @app.get("/pixels/history")
    def get_history(
        limit: int = 10,
        cell_index: Optional[int] = None,
        ledger: Ledger = Depends(get_ledger),
    ):
        """Most recent purchases, newest first"""
        if not 1 <= limit <= HISTORY_MAX_LIMIT:
            raise InvalidInput(f"limit must be between 1 and {HISTORY_MAX_LIMIT}")
        if cell_index is not None and not 0 <= cell_index < settings.grid_size:
            raise InvalidInput("Invalid pixel index")
        records = ledger.audit.recent(limit=limit, cell_index=cell_index)
        history = [
            PurchaseRecordResponse(
                id=record.id,
                account_id=record.account_id,
                cell_index=record.cell_index,
                color=record.color,
                intensity=record.intensity,
                price_charged_cents=record.price_charged_cents,
                purchase_count_after=record.purchase_count_after,
                timestamp=record.timestamp.isoformat(),
            ).model_dump(by_alias=True)
            for record in records
        ]
        return {"history": history}

    @app.get("/pixels/{index}", response_model=CellResponse)
    def get_pixel(index: int, ledger: Ledger = Depends(get_ledger)):
        """Single cell with the price of its next purchase"""
        if not 0 <= index < settings.grid_size:
            raise InvalidInput("Invalid pixel index")
        cell = ledger.store.get(index)
        if cell is None:
            return CellResponse(
                index=index,
                color=DEFAULT_COLOR,
                intensity=DEFAULT_INTENSITY,
                purchase_count=0,
                next_price_cents=ledger.price_engine.next_price(0),
            )
        return CellResponse(
            index=index,
            color=cell.color,
            intensity=cell.intensity,
            purchase_count=cell.purchase_count,
            next_price_cents=ledger.price_engine.next_price(cell.purchase_count),
            updated_at=cell.updated_at,
        )

    # Accounts and wallet
    @app.post("/accounts", response_model=WalletResponse, status_code=201)
    def create_account(body: CreateAccountRequest, ledger: Ledger = Depends(get_ledger)):
        """Create an empty wallet for a newly registered account"""
        account = ledger.wallet.create_account(body.account_id)
        return WalletResponse(account_id=account.account_id, balance_cents=account.balance_cents)

    @app.get("/wallet", response_model=WalletResponse)
    def get_wallet(account_id: str = Depends(get_account_id), ledger: Ledger = Depends(get_ledger)):
        return WalletResponse(account_id=account_id, balance_cents=ledger.wallet.balance(account_id))

    @app.post("/wallet/credit", response_model=CreditResponse,
              dependencies=[Depends(require_internal_token)])
    def credit_wallet(body: CreditRequest, ledger: Ledger = Depends(get_ledger)):
        """Top-up entry point for the payment collaborator (idempotent per paymentRef)"""
        result = ledger.wallet.credit(body.account_id, body.amount_cents, body.payment_ref)
        return CreditResponse(
            account_id=result.account_id,
            amount_cents=result.amount_cents,
            payment_ref=result.payment_ref,
            balance_cents=result.balance_cents,
            duplicate=result.duplicate,
        )

    @app.post("/webhook/stripe")
    async def stripe_webhook(request: Request):
        """Credit wallets from completed Stripe checkout sessions"""
        if not settings.stripe_webhook_secret:
            return JSONResponse(status_code=500, content={"error": "Webhook secret not configured"})

        payload = await request.body()
        sig_header = request.headers.get("stripe-signature")

        try:
            event = stripe.Webhook.construct_event(
                payload, sig_header, settings.stripe_webhook_secret
            )
        except ValueError:
            return JSONResponse(status_code=400, content={"error": "Invalid payload"})
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature verification failed: %s", e)
            return JSONResponse(status_code=400, content={"error": "Invalid signature"})

        if event["type"] != "checkout.session.completed":
            return {"received": True}

        session = event["data"]["object"]
        metadata = _stripe_field(session, "metadata") or {}
        account_id = _stripe_field(metadata, "accountId") or _stripe_field(metadata, "userId")
        amount_cents = _stripe_field(session, "amount_total") or _stripe_field(metadata, "amountCents")

        try:
            amount_cents = int(amount_cents or 0)
        except (TypeError, ValueError):
            amount_cents = 0

        if not account_id or amount_cents <= 0:
            logger.warning("Ignoring checkout session %s without account or amount",
                           _stripe_field(session, "id"))
            return {"received": True}

        ledger: Ledger = request.app.state.ledger
        try:
            result = await run_in_threadpool(ledger.wallet.credit, account_id, amount_cents, session["id"])
        except AccountNotFound:
            # Acknowledge anyway, otherwise Stripe keeps redelivering the event
            logger.warning("Checkout session %s names unknown account %s",
                           session["id"], account_id)
            return {"received": True}
        return {"received": True, "duplicate": result.duplicate}

    @app.get("/stats")
    def get_stats(ledger: Ledger = Depends(get_ledger)):
        """Global statistics"""
        stats = ledger.audit.stats()
        return {
            "grid_width": settings.grid_width,
            "grid_height": settings.grid_height,
            "grid_size": settings.grid_size,
            "purchased_cells": ledger.store.count_cells(),
            "total_purchases": stats["total_purchases"],
            "total_revenue_cents": stats["total_revenue_cents"],
            "unique_buyers": stats["unique_buyers"],
            "base_price_cents": settings.base_price_cents,
            "max_purchases_per_cell": ledger.price_engine.max_purchases(),
        }

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(
        level=app.state.settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        app,
        host=os.environ.get("PIXEL_HOST", "0.0.0.0"),
        port=int(os.environ.get("PIXEL_PORT", "5000")),
    )
