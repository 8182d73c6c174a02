import logging

import httpx

logger = logging.getLogger(__name__)

BREVO_URL = "https://api.brevo.com/v3/smtp/email"


class BrevoMailer:
    def __init__(self, api_key: str, sender_email: str, sender_name: str, timeout: float = 30, transport=None):
        self.api_key = api_key
        self.sender_email = sender_email
        self.sender_name = sender_name
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.sender_email)

    async def send(self, to_email: str, subject: str, html: str) -> dict:
        # If not configured, we skip but keep system working
        if not self.configured:
            return {"ok": False, "skipped": True, "reason": "Brevo not configured"}

        headers = {"api-key": self.api_key, "Content-Type": "application/json", "accept": "application/json"}
        payload = {
            "sender": {"name": self.sender_name, "email": self.sender_email},
            "to": [{"email": to_email}],
            "subject": subject,
            "htmlContent": html,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.post(BREVO_URL, headers=headers, json=payload)
        except httpx.HTTPError as e:
            return {"ok": False, "error": str(e)}
        if r.status_code >= 400:
            return {"ok": False, "error": r.text, "status": r.status_code}
        return {"ok": True, "data": r.json()}

    async def send_login_code(self, to_email: str, code: str, ttl_minutes: int) -> bool:
        """Best effort: failures are logged, never raised."""
        if not self.configured:
            logger.info("No mail provider configured. Code for %s is %s", to_email, code)
            return False

        html = (
            f"<p>Your verification code is: <strong>{code}</strong></p>"
            f"<p>This code is valid for {ttl_minutes} minutes.</p>"
        )
        resp = await self.send(to_email, "Your Deal Shield Verification Code", html)
        if not resp.get("ok"):
            logger.error("Login code email to %s failed: %s", to_email, resp.get("error"))
            return False
        logger.info("Login code email sent to %s", to_email)
        return True
