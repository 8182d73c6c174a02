import logging
import re

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import desc, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ai import category_for_score, to_number
from billing import CHECKOUT_COMPLETED
from errors import AlreadyPaid, NotFound, RequiresPayment, ValidationError
from models import Deal, Profile, Report, utcnow
from storage import ensure_owned_key

logger = logging.getLogger(__name__)

ZIP_RE = re.compile(r"^\d{5}$")


# ---------------------------
# HELPERS
# ---------------------------

def format_money(value) -> str:
    n = to_number(value)
    if not n:
        return "N/A"
    return f"${n:,.0f}" if n == int(n) else f"${n:,.2f}"


def format_mileage(value) -> str:
    n = to_number(value)
    if not n:
        return "N/A"
    return f"{n:,.0f}"


def fee_lines(extracted: dict) -> dict:
    fees = extracted.get("fees")
    if not isinstance(fees, dict):
        return {}
    lines = {}
    for key, value in fees.items():
        amount = to_number(value)
        if amount and amount > 0:
            lines[key] = amount
    return lines


def build_preview(extracted: dict, unlock_price: str) -> tuple[dict, dict]:
    """Locked preview shown before payment. Returns (preview, risk_hint)."""
    price = extracted.get("otd_price") if to_number(extracted.get("otd_price")) else extracted.get("price")
    count = len(fee_lines(extracted))

    if count:
        noun = "issue" if count == 1 else "issues"
        message = f"We found {count} potential {noun}. Unlock the {unlock_price} full report to see exactly what to negotiate."
    else:
        message = f"No obvious add-ons on the sheet. Unlock the {unlock_price} full report for a line-by-line review."

    preview = {
        "vehicle_name": str(extracted.get("vehicle") or extracted.get("vehicle_name") or "Unknown Vehicle"),
        "price": format_money(price),
        "mileage": format_mileage(extracted.get("mileage")),
        "risk_count": count,
        "risk_message": message,
    }
    return preview, {"count": count, "message": message}


def deal_dict(d: Deal) -> dict:
    return {
        "id": d.id,
        "user_id": d.user_id,
        "file_path": d.file_path,
        "zip_code": d.zip_code,
        "status": d.status,
        "paid": bool(d.paid),
        "paid_at": d.paid_at.isoformat() if d.paid_at else None,
        "extracted_fields": d.extracted_fields or {},
        "preview": d.preview_data,
        "created_at": d.created_at.isoformat() if d.created_at else None,
    }


def report_dict(r: Report) -> dict:
    return {
        "id": r.id,
        "deal_id": r.deal_id,
        "score": r.score,
        "category": r.category,
        "red_flags": r.red_flags or [],
        "target_otd_range": r.target_otd_range,
        "negotiation_script": r.negotiation_script or {"email_text": "", "in_person_text": ""},
        "summary": r.summary,
        "degraded": bool(r.degraded),
    }


async def load_deal(db: AsyncSession, deal_id: str | None, user: Profile | None = None) -> Deal:
    """Fetch a deal; when a user is given, only its owner (or an admin) may see it."""
    if not deal_id:
        raise ValidationError("dealId is required")
    res = await db.execute(select(Deal).where(Deal.id == deal_id).limit(1))
    d = res.scalar_one_or_none()
    if not d or (user is not None and d.user_id != user.id and not user.is_admin):
        raise NotFound("Deal not found")
    return d


async def load_report(db: AsyncSession, deal_id: str) -> Report | None:
    res = await db.execute(select(Report).where(Report.deal_id == deal_id).limit(1))
    return res.scalar_one_or_none()


# ---------------------------
# PARSE
# ---------------------------

async def parse_deal(db: AsyncSession, user: Profile, file_id: str, zip_code: str, storage, gemini, settings) -> dict:
    zip_code = (zip_code or "").strip()
    if not ZIP_RE.match(zip_code):
        raise ValidationError("Please enter a valid ZIP code.")
    key = ensure_owned_key(user.id, file_id)

    content, mime_type = await storage.fetch(key)
    extracted = await gemini.extract_deal(content, mime_type)
    preview, risk_hint = build_preview(extracted, settings.unlock_price_label)

    d = Deal(
        user_id=user.id,
        file_path=key,
        zip_code=zip_code,
        status="parsed",
        preview_data=preview,
        extracted_fields=extracted,
        updated_at=utcnow(),
    )
    db.add(d)
    await db.commit()
    await db.refresh(d)
    logger.info("Parsed deal %s for user %s", d.id, user.id)

    return {"dealId": d.id, "preview": preview, "riskHint": risk_hint}


async def list_deals(db: AsyncSession, user: Profile, limit: int = 50) -> list[dict]:
    limit = min(max(limit, 1), 200)
    res = await db.execute(
        select(Deal).where(Deal.user_id == user.id).order_by(desc(Deal.created_at)).limit(limit)
    )
    return [deal_dict(d) for d in res.scalars().all()]


async def count_paid_deals(db: AsyncSession, user: Profile) -> int:
    res = await db.execute(select(func.count(Deal.id)).where(Deal.user_id == user.id).where(Deal.paid.is_(True)))
    return int(res.scalar_one())


# ---------------------------
# BILLING
# ---------------------------

async def create_checkout(db: AsyncSession, user: Profile, deal_id: str, billing) -> dict:
    d = await load_deal(db, deal_id, user)
    if d.paid:
        raise AlreadyPaid()

    session_id, url = await run_in_threadpool(billing.create_checkout, deal_id=d.id, user_id=user.id)
    d.stripe_session_id = session_id
    d.updated_at = utcnow()
    await db.commit()
    logger.info("Checkout session %s created for deal %s", session_id, d.id)
    return {"checkoutUrl": url}


async def payment_status(db: AsyncSession, deal_id: str | None) -> dict:
    if not deal_id:
        raise ValidationError("Missing dealId")
    res = await db.execute(select(Deal.paid).where(Deal.id == deal_id).limit(1))
    return {"paid": bool(res.scalar_one_or_none())}


async def apply_webhook_event(db: AsyncSession, event: dict) -> bool:
    """Mark the deal named in a completed checkout as paid. Returns True when state changed."""
    event_type = event.get("type")
    if event_type != CHECKOUT_COMPLETED:
        logger.debug("Ignoring Stripe event %s", event_type)
        return False

    session = (event.get("data") or {}).get("object") or {}
    deal_id = (session.get("metadata") or {}).get("dealId")
    if not deal_id:
        logger.warning("Checkout %s completed without a dealId in metadata", session.get("id"))
        return False

    res = await db.execute(select(Deal).where(Deal.id == deal_id).limit(1))
    d = res.scalar_one_or_none()
    if not d:
        logger.warning("Checkout %s completed for unknown deal %s", session.get("id"), deal_id)
        return False
    if d.paid:
        logger.info("Deal %s already paid; replayed event ignored", deal_id)
        return False

    d.paid = True
    d.paid_at = utcnow()
    d.amount_cents = session.get("amount_total")
    d.stripe_session_id = session.get("id") or d.stripe_session_id
    d.updated_at = utcnow()
    await db.commit()
    logger.info("Deal %s marked paid (%s cents)", deal_id, d.amount_cents)
    return True


# ---------------------------
# ANALYZE
# ---------------------------

async def save_report(db: AsyncSession, deal: Deal, result) -> Report:
    """Upsert by deal_id; concurrent writers converge on one row, last write wins."""
    payload = result.payload
    values = {
        "score": payload["score"],
        "category": category_for_score(payload["score"]),
        "red_flags": payload["red_flags"],
        "target_otd_range": payload["target_otd_range"],
        "negotiation_script": payload["negotiation_script"],
        "summary": payload["summary"],
        "degraded": result.degraded,
        "degraded_reason": result.reason,
    }

    deal_id = deal.id
    for attempt in range(2):
        if attempt:
            # rollback expired the instance
            deal = await load_deal(db, deal_id)
        report = await load_report(db, deal_id)
        if report:
            for k, v in values.items():
                setattr(report, k, v)
        else:
            report = Report(deal_id=deal_id, **values)
            db.add(report)
        deal.status = "analyzed"
        deal.updated_at = utcnow()
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            if attempt:
                raise
            logger.info("Report for deal %s written concurrently; retrying as update", deal_id)
            continue
        await db.refresh(report)
        return report


async def analyze_deal(db: AsyncSession, user: Profile, deal_id: str, gemini) -> dict:
    d = await load_deal(db, deal_id, user)
    if not d.paid and not user.is_admin:
        raise RequiresPayment()

    cached = await load_report(db, d.id)
    if cached and not cached.degraded:
        return report_dict(cached)

    result = await gemini.analyze_deal(d.extracted_fields or {}, d.zip_code)
    if result.degraded:
        logger.warning("Deal %s got a degraded analysis: %s", d.id, result.reason)
    report = await save_report(db, d, result)
    logger.info("Report stored for deal %s (score %s)", report.deal_id, report.score)
    return report_dict(report)
