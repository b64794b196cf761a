from __future__ import annotations
from typing import AsyncIterator, Optional

import httpx
import redis.asyncio as redis
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse

from .config import Config
from .errors import ExternalTransientError, OrderflowError, ValidationError
from .gateway import MockGateway, new_gateway
from .helpers import ct_equal, reseller_key
from .infra import timings
from .infra.logging import configure_logging
from .infra.sql import GatedAsyncSession, open_database
from .infra.timings import timeit
from .model import fulfillment, orders, payments, stock, wallet
from .model.orm import create_schema
from .notify import Notifier
from .notify.email import HttpEmailSender, LogEmailSender
from .notify.webhook import delivery_view
from .pipeline import Pipeline
from .providers import default_registry
from .settings import SettingsCache
from .worker import FulfillmentWorker

logger = structlog.get_logger(__name__)


def create_app(cfg: Optional[Config] = None) -> FastAPI:
    cfg = cfg or Config.from_env()

    app = FastAPI(
        title="orderflow",
        default_response_class=ORJSONResponse,
    )
    app.state.cfg = cfg

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _logging_init():
        configure_logging(cfg.log_level, cfg.log_json)
        logger.info("orderflow is starting up", gateway=cfg.gateway,
                    gate_backend=cfg.gate_backend, worker=cfg.run_worker)

    @app.on_event("startup")
    async def _db_init():
        app.state.database = open_database(
            cfg.database_url,
            pool_size=cfg.db_pool_size,
            max_overflow=cfg.db_max_overflow,
            pool_timeout=cfg.db_pool_timeout,
            gate_limit=cfg.db_gate_limit,
        )
        async with app.state.database.engine.begin() as conn:
            await create_schema(conn)

    @app.on_event("startup")
    async def _http_client_start():
        app.state.http = httpx.AsyncClient(
            timeout=cfg.http_timeout,
            limits=httpx.Limits(
                max_connections=100, max_keepalive_connections=20
            ),
        )

    @app.on_event("startup")
    async def _redis_start():
        app.state.redis = None
        if cfg.gate_backend == "redis":
            app.state.redis = redis.from_url(
                cfg.redis_url,
                decode_responses=True,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )

    @app.on_event("startup")
    async def _pipeline_start():
        http = app.state.http
        if cfg.email_api_url:
            sender = HttpEmailSender(http, cfg.email_api_url,
                                     cfg.email_api_key, cfg.email_from)
        else:
            sender = LogEmailSender()
        app.state.gateway = new_gateway(cfg, http)
        app.state.pipeline = Pipeline(
            cfg=cfg,
            database=app.state.database,
            gateway=app.state.gateway,
            providers=default_registry(http),
            settings=SettingsCache(app.state.database,
                                   cfg.settings_refresh_seconds),
            notifier=Notifier(http, sender, cfg.track_base_url),
            r=app.state.redis,
        )
        app.state.worker = FulfillmentWorker(
            app.state.pipeline, cfg.fulfillment_poll_seconds
        )
        if cfg.run_worker:
            app.state.worker.start()

    @app.on_event("shutdown")
    async def _worker_stop():
        worker = getattr(app.state, "worker", None)
        if worker is not None:
            await worker.stop()

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
            await r.close()
            app.state.redis = None

    @app.on_event("shutdown")
    async def _db_stop():
        database = getattr(app.state, "database", None)
        if database is not None:
            await database.dispose()

    @app.exception_handler(OrderflowError)
    async def _orderflow_error(request: Request, exc: OrderflowError):
        return ORJSONResponse(status_code=exc.status_code,
                              content={"detail": exc.message})

    # ----------------------------
    # Dependencies
    # ----------------------------
    async def get_db() -> AsyncIterator[GatedAsyncSession]:
        async with app.state.database.session() as db:
            yield db

    def get_pipeline() -> Pipeline:
        return app.state.pipeline

    def require_admin(request: Request) -> None:
        token = request.headers.get("x-admin-token") or ""
        if not token or not ct_equal(token, cfg.admin_token):
            raise HTTPException(401, detail="admin token required")

    def reseller_identity(request: Request) -> Optional[str]:
        # resellers are known only by a key the operator issued them;
        # anonymous buyers send neither header
        reseller_id = request.headers.get("x-reseller-id") or ""
        key = request.headers.get("x-reseller-key") or ""
        if not reseller_id and not key:
            return None
        if not cfg.reseller_key_secret or not reseller_id or not key \
                or not ct_equal(key, reseller_key(cfg.reseller_key_secret,
                                                  reseller_id)):
            raise HTTPException(401, detail="invalid reseller key")
        return reseller_id

    def require_reseller(
            reseller_id: Optional[str] = Depends(reseller_identity)) -> str:
        if reseller_id is None:
            raise HTTPException(401, detail="reseller key required")
        return reseller_id

    # ----------------------------
    # Checkout & payment
    # ----------------------------
    @app.post("/api/orders")
    async def create_order(payload: dict,
                           db: GatedAsyncSession = Depends(get_db),
                           reseller_id: Optional[str] = Depends(
                               reseller_identity)):
        items = payload.get("items")
        if not isinstance(items, list):
            raise ValidationError("items must be a list")
        if "reseller_id" in payload:
            raise ValidationError(
                "reseller_id is taken from the x-reseller-id header"
            )
        async with timeit("api.create_order"):
            order = await orders.create_order(
                db,
                customer_email=payload.get("customer_email") or "",
                customer_name=payload.get("customer_name") or "",
                items=items,
                user_id=payload.get("user_id"),
                reseller_id=reseller_id,
                discount_amount=int(payload.get("discount_amount") or 0),
                points_discount=int(payload.get("points_discount") or 0),
            )
        return orders.order_view(order)

    @app.post("/api/orders/{order_id}/payment")
    async def open_payment(order_id: str,
                           db: GatedAsyncSession = Depends(get_db),
                           pipeline: Pipeline = Depends(get_pipeline)):
        payment = await pipeline.open_payment(db, order_id)
        return payments.payment_view(payment)

    @app.get("/api/orders/{order_id}/status")
    async def order_status(order_id: str,
                           db: GatedAsyncSession = Depends(get_db),
                           pipeline: Pipeline = Depends(get_pipeline)):
        try:
            res = await pipeline.reconcile(db, order_id)
            status, payment = res["order_status"], res["payment"]
        except ExternalTransientError as e:
            # the buyer keeps polling; answer from what we already know
            logger.warning("Gateway unavailable during status poll",
                           order_id=order_id, error=e.message)
            order = await orders.get_order(db, order_id, with_items=False)
            if order is None:
                raise HTTPException(404, detail="order not found")
            status = order["status"]
            payment = await payments.get_latest_payment(db, order_id)
        return {
            "order_id": order_id,
            "status": orders.coarse_status(status),
            "payment": payments.payment_view(payment),
        }

    @app.post("/api/orders/{order_id}/wallet")
    async def pay_with_wallet(order_id: str,
                              db: GatedAsyncSession = Depends(get_db),
                              pipeline: Pipeline = Depends(get_pipeline),
                              reseller_id: str = Depends(require_reseller)):
        res = await pipeline.pay_with_wallet(db, order_id, reseller_id)
        return {
            "order_id": order_id,
            "applied": res["applied"],
            "balance": res["balance"],
            "status": orders.coarse_status(res["order_status"])
            if res["order_status"] else None,
        }

    @app.post("/payments/callback")
    async def payments_callback(request: Request,
                                db: GatedAsyncSession = Depends(get_db),
                                pipeline: Pipeline = Depends(get_pipeline)):
        payload = await request.body()
        headers = dict(request.headers)
        async with timeit("api.payments_callback"):
            res = await pipeline.apply_callback(db, payload, headers)
        if res["outcome"] == "invalid":
            raise HTTPException(400, detail="invalid callback")
        return {"ok": res["ok"], "outcome": res["outcome"]}

    @app.get("/api/inventory/{product_id}")
    async def get_inventory(product_id: str,
                            db: GatedAsyncSession = Depends(get_db)):
        return await stock.compute_inventory(db, product_id)

    # ----------------------------
    # Admin
    # ----------------------------
    @app.post("/api/admin/fulfillment/run",
              dependencies=[Depends(require_admin)])
    async def run_fulfillment(limit: Optional[int] = None,
                              pipeline: Pipeline = Depends(get_pipeline)):
        results = await pipeline.run_batch(limit)
        return {"processed": len(results), "results": results}

    @app.get("/api/admin/fulfillment/failed",
             dependencies=[Depends(require_admin)])
    async def failed_jobs(limit: int = 100,
                          db: GatedAsyncSession = Depends(get_db)):
        items = await fulfillment.list_failed(db, limit)
        return {"items": items, "limit": limit}

    @app.post("/api/admin/orders/{order_id}/cancel",
              dependencies=[Depends(require_admin)])
    async def cancel_order(order_id: str, payload: Optional[dict] = None,
                           db: GatedAsyncSession = Depends(get_db),
                           pipeline: Pipeline = Depends(get_pipeline)):
        reason = (payload or {}).get("reason") or "cancelled by operator"
        cancelled = await pipeline.cancel(db, order_id, reason)
        return {"order_id": order_id, "cancelled": cancelled}

    @app.post("/api/admin/webhooks/{delivery_id}/retry",
              dependencies=[Depends(require_admin)])
    async def retry_webhook(delivery_id: str,
                            db: GatedAsyncSession = Depends(get_db),
                            pipeline: Pipeline = Depends(get_pipeline)):
        row = await pipeline.notifier.retry(db, delivery_id)
        return delivery_view(row)

    @app.post("/api/admin/wallets/{user_id}/topup",
              dependencies=[Depends(require_admin)])
    async def topup_wallet(user_id: str, payload: dict,
                           db: GatedAsyncSession = Depends(get_db),
                           pipeline: Pipeline = Depends(get_pipeline)):
        try:
            amount = int(payload.get("amount"))
        except (TypeError, ValueError):
            raise ValidationError("amount must be an integer")
        snapshot = await pipeline.settings.get()
        res = await wallet.topup(db, user_id, amount,
                                 str(payload.get("reference") or ""),
                                 snapshot, payload.get("description"))
        return {"user_id": user_id, **res}

    @app.post("/api/admin/resellers/{reseller_id}/key",
              dependencies=[Depends(require_admin)])
    async def issue_reseller_key(reseller_id: str):
        if not cfg.reseller_key_secret:
            raise ValidationError("reseller access is not configured")
        return {"reseller_id": reseller_id,
                "key": reseller_key(cfg.reseller_key_secret, reseller_id)}

    @app.post("/api/admin/products", dependencies=[Depends(require_admin)])
    async def create_product(payload: dict,
                             db: GatedAsyncSession = Depends(get_db)):
        try:
            retail_price = int(payload.get("retail_price"))
            reseller_price = payload.get("reseller_price")
            if reseller_price is not None:
                reseller_price = int(reseller_price)
        except (TypeError, ValueError):
            raise ValidationError("prices must be integers")
        product_id = await stock.create_product(
            db,
            name=str(payload.get("name") or "").strip(),
            retail_price=retail_price,
            product_type=payload.get("product_type") or "STOCK",
            reseller_price=reseller_price,
            provider_slug=payload.get("provider_slug"),
        )
        return {"product_id": product_id}

    @app.post("/api/admin/products/{product_id}/stock",
              dependencies=[Depends(require_admin)])
    async def load_stock(product_id: str, payload: dict,
                         db: GatedAsyncSession = Depends(get_db)):
        secrets = payload.get("items")
        if not isinstance(secrets, list):
            raise ValidationError("items must be a list of strings")
        ids = await stock.add_stock(db, product_id,
                                    [str(s) for s in secrets])
        return {"product_id": product_id, "added": len(ids)}

    @app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
    async def get_timings():
        return {"items": timings.aggregates()}

    # ----------------------------
    # MockPay (dev only)
    # ----------------------------
    @app.post("/mockpay/{ref_id}/emit")
    async def mockpay_emit(ref_id: str, payload: dict,
                           db: GatedAsyncSession = Depends(get_db),
                           pipeline: Pipeline = Depends(get_pipeline)):
        gateway = pipeline.gateway
        if not isinstance(gateway, MockGateway):
            raise HTTPException(404, detail="mock gateway not enabled")
        kind = payload.get("t")  # paid | failed | expired
        statuses = {"paid": "Success", "failed": "Failed",
                    "expired": "Expired"}
        if kind not in statuses:
            raise HTTPException(400, detail="invalid kind")
        gateway.resolve(ref_id, statuses[kind])
        body, headers = gateway.build_callback(ref_id)
        res = await pipeline.apply_callback(db, body, headers)
        return {"ok": res["ok"], "outcome": res["outcome"],
                "order_id": res["order_id"]}

    return app
