"""One-time-code login, admin login and bearer sessions.

Identities are proven by the emailed code (or the admin password) and then
carried by opaque access/refresh tokens issued here; there is no per-user
password anywhere.
"""
import logging
import re
import secrets
from datetime import datetime, timedelta

from fastapi import Depends, Header
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from errors import AuthError, CodeExpired, InvalidCode, InvalidCredentials, ValidationError
from models import AuthSession, Profile, VerificationCode, as_utc, utcnow

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: str | None) -> str:
    email = (email or "").strip().lower()
    if not email:
        raise ValidationError("Email required")
    if not EMAIL_RE.match(email):
        raise ValidationError("Invalid email")
    return email


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


def new_token() -> str:
    return secrets.token_urlsafe(32)


def user_payload(profile: Profile) -> dict:
    return {"id": profile.id, "email": profile.email, "name": profile.display_name, "role": profile.role}


# ---------------------------
# CODES
# ---------------------------

async def find_code(db: AsyncSession, email: str) -> VerificationCode | None:
    res = await db.execute(select(VerificationCode).where(VerificationCode.email == email).limit(1))
    return res.scalar_one_or_none()


async def store_code(db: AsyncSession, email: str, code: str, ttl_minutes: int) -> VerificationCode:
    """Upsert by email: a new code always replaces the pending one.

    Expired codes left behind by other addresses are purged on the way.
    """
    now = utcnow()
    expires_at = now + timedelta(minutes=ttl_minutes)

    for attempt in range(2):
        await db.execute(
            delete(VerificationCode)
            .where(VerificationCode.email != email)
            .where(VerificationCode.expires_at < now)
            .execution_options(synchronize_session=False)
        )
        record = await find_code(db, email)
        if record:
            record.code = code
            record.created_at = now
            record.expires_at = expires_at
        else:
            record = VerificationCode(email=email, code=code, created_at=now, expires_at=expires_at)
            db.add(record)
        try:
            await db.commit()
            return record
        except IntegrityError:
            # concurrent insert for the same email; re-read and overwrite it
            await db.rollback()
            if attempt:
                raise
    return record


async def request_code(db: AsyncSession, mailer, email: str, ttl_minutes: int) -> dict:
    email = normalize_email(email)
    code = generate_code()
    await store_code(db, email, code, ttl_minutes)
    logger.info("Login code issued for %s", email)
    await mailer.send_login_code(email, code, ttl_minutes)
    return {"success": True, "message": "Code sent"}


async def consume_code(db: AsyncSession, email: str, code: str | None, now: datetime | None = None) -> None:
    record = await find_code(db, email)
    if not record:
        raise InvalidCode("No verification code found. Please request a new one.")
    if str(record.code).strip() != str(code or "").strip():
        raise InvalidCode()
    if (now or utcnow()) > as_utc(record.expires_at):
        raise CodeExpired()
    await db.delete(record)
    await db.commit()


# ---------------------------
# PROFILES + SESSIONS
# ---------------------------

async def find_or_create_profile(
    db: AsyncSession, email: str, role: str | None = None, full_name: str | None = None
) -> Profile:
    for attempt in range(2):
        res = await db.execute(select(Profile).where(Profile.email == email).limit(1))
        profile = res.scalar_one_or_none()
        if profile:
            if role and profile.role != role:
                profile.role = role
            if full_name and not profile.full_name:
                profile.full_name = full_name
            await db.commit()
            return profile

        profile = Profile(email=email, role=role or "user", full_name=full_name)
        db.add(profile)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            if attempt:
                raise
            continue
        await db.refresh(profile)
        logger.info("Created profile %s for %s", profile.id, email)
        return profile
    return profile


async def issue_session(db: AsyncSession, profile: Profile, settings) -> dict:
    now = utcnow()
    await db.execute(
        delete(AuthSession)
        .where(AuthSession.profile_id == profile.id)
        .where(AuthSession.refresh_expires_at < now)
        .execution_options(synchronize_session=False)
    )
    sess = AuthSession(
        profile_id=profile.id,
        access_token=new_token(),
        refresh_token=new_token(),
        expires_at=now + timedelta(minutes=settings.access_token_minutes),
        refresh_expires_at=now + timedelta(days=settings.refresh_token_days),
    )
    db.add(sess)
    await db.commit()
    return {"token": sess.access_token, "refreshToken": sess.refresh_token, "user": user_payload(profile)}


async def verify_code(db: AsyncSession, email: str, code: str, settings) -> dict:
    email = normalize_email(email)
    if not str(code or "").strip():
        raise ValidationError("Email and code required")
    try:
        await consume_code(db, email, code)
    except AuthError as e:
        logger.info("Code verification for %s rejected: %s", email, e.message)
        raise
    profile = await find_or_create_profile(db, email)
    logger.info("Login successful for %s", email)
    return await issue_session(db, profile, settings)


async def admin_login(db: AsyncSession, password: str, settings) -> dict:
    if not password:
        raise ValidationError("Password required")
    expected = settings.admin_password
    if not expected or not secrets.compare_digest(password.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Rejected admin login attempt")
        raise InvalidCredentials()
    profile = await find_or_create_profile(db, settings.admin_email.lower(), role="admin", full_name="Admin Pro")
    logger.info("Admin login for %s", profile.email)
    return await issue_session(db, profile, settings)


async def refresh_session(db: AsyncSession, refresh_token: str, settings) -> dict:
    if not refresh_token:
        raise ValidationError("refreshToken required")
    res = await db.execute(select(AuthSession).where(AuthSession.refresh_token == refresh_token).limit(1))
    sess = res.scalar_one_or_none()
    if not sess or utcnow() > as_utc(sess.refresh_expires_at):
        raise AuthError("Invalid or expired refresh token")
    profile = sess.profile
    await db.delete(sess)
    await db.commit()
    return await issue_session(db, profile, settings)


async def logout(db: AsyncSession, access_token: str) -> None:
    await db.execute(delete(AuthSession).where(AuthSession.access_token == access_token))
    await db.commit()


# ---------------------------
# DEPENDENCIES
# ---------------------------

def bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise AuthError("Missing Authorization header")
    if not authorization.lower().startswith("bearer "):
        raise AuthError("Invalid auth scheme")
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise AuthError("Missing bearer token")
    return token


async def get_current_session(
    authorization: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
) -> AuthSession:
    token = bearer_token(authorization)
    res = await db.execute(select(AuthSession).where(AuthSession.access_token == token).limit(1))
    sess = res.scalar_one_or_none()
    if not sess or utcnow() > as_utc(sess.expires_at):
        raise AuthError("Invalid or expired token")
    return sess


async def get_current_user(sess: AuthSession = Depends(get_current_session)) -> Profile:
    return sess.profile
