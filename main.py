import logging
import time
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

import auth
import deals
from ai import GeminiClient
from billing import StripeBilling
from database import build_engine, build_sessionmaker, create_tables, get_db
from errors import NotFound, RequiresPayment, register_error_handlers
from mailer import BrevoMailer
from models import AuthSession, Profile
from report_pdf import render_report_pdf
from schemas import AdminLoginIn, ConfirmIn, DealRefIn, OtpSendIn, OtpVerifyIn, ParseDealIn, PresignIn, RefreshIn
from settings import Settings
from storage import ObjectStorage, ensure_owned_key, new_upload_key

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="Deal Shield API", version="1.0.0")
    app.state.settings = settings

    engine = build_engine(settings.database_url)
    app.state.engine = engine
    app.state.sessionmaker = build_sessionmaker(engine)

    app.state.storage = ObjectStorage(
        bucket=settings.storage_bucket,
        endpoint_url=settings.storage_endpoint_url,
        access_key=settings.storage_access_key,
        secret_key=settings.storage_secret_key,
        region=settings.storage_region,
        upload_ttl=settings.upload_url_ttl_seconds,
        read_ttl=settings.read_url_ttl_seconds,
        timeout=settings.upstream_timeout_seconds,
    )
    app.state.gemini = GeminiClient(
        api_key=settings.gemini_api_key,
        model=settings.gemini_model,
        base_url=settings.gemini_base_url,
        timeout=settings.upstream_timeout_seconds,
    )
    app.state.billing = StripeBilling(
        secret_key=settings.stripe_secret_key,
        price_id=settings.stripe_price_id,
        webhook_secret=settings.stripe_webhook_secret,
        frontend_url=settings.frontend_url,
        timeout=settings.upstream_timeout_seconds,
    )
    app.state.mailer = BrevoMailer(
        api_key=settings.brevo_api_key,
        sender_email=settings.brevo_sender_email,
        sender_name=settings.brevo_sender_name,
        timeout=settings.upstream_timeout_seconds,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        expose_headers=["Content-Length"],
        max_age=600,
    )
    register_error_handlers(app)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed = (time.perf_counter() - started) * 1000
        logger.info("%s %s -> %s (%.0fms)", request.method, request.url.path, response.status_code, elapsed)
        return response

    @app.on_event("startup")
    async def startup():
        await create_tables(engine)

    @app.on_event("shutdown")
    async def shutdown():
        await engine.dispose()

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:
    settings = app.state.settings

    @app.get("/")
    def root():
        return {"ok": True, "service": "dealshield-api"}

    @app.get("/health")
    async def health(db: AsyncSession = Depends(get_db)):
        try:
            await db.execute(text("SELECT 1"))
            database = "ok"
        except SQLAlchemyError as e:
            logger.error("Health check database error: %s", e)
            database = "unavailable"
        return {"ok": database == "ok", "database": database}

    # ---------------------------
    # AUTH
    # ---------------------------

    @app.post("/auth/otp/send")
    async def otp_send(payload: OtpSendIn, request: Request, db: AsyncSession = Depends(get_db)):
        return await auth.request_code(db, request.app.state.mailer, payload.email, settings.otp_ttl_minutes)

    @app.post("/auth/otp/verify")
    async def otp_verify(payload: OtpVerifyIn, db: AsyncSession = Depends(get_db)):
        return await auth.verify_code(db, payload.email, payload.code, settings)

    @app.post("/auth/admin/login")
    async def admin_login(payload: AdminLoginIn, db: AsyncSession = Depends(get_db)):
        return await auth.admin_login(db, payload.password, settings)

    @app.post("/auth/refresh")
    async def refresh(payload: RefreshIn, db: AsyncSession = Depends(get_db)):
        return await auth.refresh_session(db, payload.refreshToken, settings)

    @app.post("/auth/logout")
    async def logout(sess: AuthSession = Depends(auth.get_current_session), db: AsyncSession = Depends(get_db)):
        await auth.logout(db, sess.access_token)
        return {"success": True}

    @app.get("/me")
    async def me(user: Profile = Depends(auth.get_current_user), db: AsyncSession = Depends(get_db)):
        paid = await deals.count_paid_deals(db, user)
        return {"user": auth.user_payload(user), "entitlements": {"credits": user.credits, "paidDeals": paid}}

    # ---------------------------
    # FILES
    # ---------------------------

    @app.post("/files/presign")
    async def presign(
        request: Request,
        payload: Optional[PresignIn] = None,
        user: Profile = Depends(auth.get_current_user),
    ):
        content_type = (payload.contentType if payload else None) or "application/pdf"
        key = new_upload_key(user.id, content_type)
        upload_url = request.app.state.storage.presign_upload(key, content_type.lower().strip())
        return {"uploadUrl": upload_url, "fileUrl": key, "fileKey": key}

    @app.post("/files/confirm")
    async def confirm(payload: ConfirmIn, user: Profile = Depends(auth.get_current_user)):
        # storage owns existence/consistency; this only acknowledges the key
        key = ensure_owned_key(user.id, payload.fileUrl)
        return {"fileId": key}

    # ---------------------------
    # DEALS
    # ---------------------------

    @app.post("/deals/parse")
    async def parse_deal(
        payload: ParseDealIn,
        request: Request,
        user: Profile = Depends(auth.get_current_user),
        db: AsyncSession = Depends(get_db),
    ):
        state = request.app.state
        return await deals.parse_deal(db, user, payload.fileId, payload.zip, state.storage, state.gemini, settings)

    @app.get("/deals")
    async def list_deals(
        limit: int = 50,
        user: Profile = Depends(auth.get_current_user),
        db: AsyncSession = Depends(get_db),
    ):
        return {"deals": await deals.list_deals(db, user, limit)}

    @app.get("/deals/{deal_id}")
    async def get_deal(deal_id: str, user: Profile = Depends(auth.get_current_user), db: AsyncSession = Depends(get_db)):
        d = await deals.load_deal(db, deal_id, user)
        return {"deal": deals.deal_dict(d)}

    @app.get("/deals/{deal_id}/report.pdf")
    async def report_pdf(deal_id: str, user: Profile = Depends(auth.get_current_user), db: AsyncSession = Depends(get_db)):
        d = await deals.load_deal(db, deal_id, user)
        report = await deals.load_report(db, d.id)
        if not report:
            raise NotFound("No report yet")
        pdf = render_report_pdf(deals.report_dict(report), deals.deal_dict(d))
        return Response(
            content=pdf,
            media_type="application/pdf",
            headers={"Content-Disposition": f'attachment; filename="deal-report-{d.id}.pdf"'},
        )

    @app.post("/deals/analyze")
    async def analyze(
        payload: DealRefIn,
        request: Request,
        user: Profile = Depends(auth.get_current_user),
        db: AsyncSession = Depends(get_db),
    ):
        try:
            report = await deals.analyze_deal(db, user, payload.dealId, request.app.state.gemini)
        except RequiresPayment:
            return {"requiresPayment": True}
        return {"report": report}

    # ---------------------------
    # BILLING
    # ---------------------------

    @app.post("/billing/checkout")
    async def checkout(
        payload: DealRefIn,
        request: Request,
        user: Profile = Depends(auth.get_current_user),
        db: AsyncSession = Depends(get_db),
    ):
        return await deals.create_checkout(db, user, payload.dealId, request.app.state.billing)

    @app.get("/billing/status")
    async def billing_status(dealId: Optional[str] = Query(None), db: AsyncSession = Depends(get_db)):
        return await deals.payment_status(db, dealId)

    @app.post("/stripe/webhook")
    async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
        body = await request.body()
        event = request.app.state.billing.parse_event(body, request.headers.get("stripe-signature"))
        await deals.apply_webhook_event(db, event)
        return JSONResponse({"received": True})


app = create_app()


if __name__ == "__main__":
    import os

    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
