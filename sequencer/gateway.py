"""
Messaging gateways: the only code that talks to external platforms.

    RestGateway  - LinkedIn / WhatsApp / Messenger / Telegram through a
                   unified REST messaging API (aiohttp). Native idempotency
                   via the Idempotency-Key header.
    SmtpGateway  - email via aiosmtplib. SMTP has no idempotency, so every
                   accepted message is written to the delivery log and
                   delivery_status() answers from there.
    GatewayRouter - picks one of the above by platform.

Every failure is raised as TransientGatewayError (retry later) or
PermanentGatewayError (give up); nothing else leaves a gateway.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Dict, List, Mapping, Optional, Tuple

import aiohttp
import aiosmtplib

import config
from database import DeliveryLog
from sequencer.errors import ConfigurationError, PermanentGatewayError, TransientGatewayError
from sequencer.rate_limits import CONNECTION_REQUEST, MESSAGE
from sequencer.sequences import RenderedContent

logger = logging.getLogger("sequencer.gateway")

# Contact field holding the recipient reference for each platform
RECIPIENT_FIELDS = {
    "email": "email",
    "linkedin": "linkedin_url",
    "whatsapp": "phone",
    "messenger": "messenger_id",
    "telegram": "telegram_id",
}


def recipient_for(contact: Mapping, platform: str) -> Optional[str]:
    """Platform-specific recipient reference, preferring explicit platform_ids."""
    explicit = (contact.get("platform_ids") or {}).get(platform)
    if explicit:
        return explicit
    field_name = RECIPIENT_FIELDS.get(platform)
    return contact.get(field_name) if field_name else None


@dataclass(frozen=True)
class SendResult:
    id: Optional[str]
    status: str  # "sent" or "duplicate"


@dataclass(frozen=True)
class Signal:
    accepted: bool = False
    replied: bool = False
    opened: bool = False
    clicked: bool = False

    @classmethod
    def from_dict(cls, data: Mapping) -> "Signal":
        data = data or {}
        return cls(
            accepted=bool(data.get("accepted")),
            replied=bool(data.get("replied")),
            opened=bool(data.get("opened")),
            clicked=bool(data.get("clicked")),
        )


class MessagingGateway:
    """Interface every gateway implements."""

    async def send(self, platform: str, account_ref: str, recipient_ref: str,
                   content: RenderedContent, idempotency_key: str = None,
                   action: str = MESSAGE) -> SendResult:
        raise NotImplementedError

    async def get_signal(self, platform: str, account_ref: str, recipient_ref: str) -> Signal:
        raise NotImplementedError

    async def delivery_status(self, platform: str, account_ref: str,
                              idempotency_key: str) -> Optional[SendResult]:
        """The earlier send for `idempotency_key`, or None if it never happened."""
        return None

    def supports_idempotency(self, platform: str) -> bool:
        return False

    async def close(self):
        pass


def classify_http_error(status: int, body: str) -> Exception:
    """Map an HTTP error status to the gateway error taxonomy."""
    message = f"HTTP {status}: {body[:200]}"
    if status in (408, 425, 429) or status >= 500:
        return TransientGatewayError(message, status_code=status)
    restricted = status == 403 and "restrict" in body.lower()
    return PermanentGatewayError(message, status_code=status, restricted=restricted)


# ==============================================================================
# REST messaging API
# ==============================================================================

class RestGateway(MessagingGateway):
    """
    Unified messaging API client. One aiohttp session is shared by every
    tenant; the sending account is selected per request with X-Account-ID.
    """

    def __init__(self, base_url: str = None, api_key: str = None, timeout: float = None):
        self.base_url = (base_url or config.GATEWAY_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else config.GATEWAY_API_KEY
        self.timeout = timeout or config.GATEWAY_TIMEOUT_SECONDS
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    def supports_idempotency(self, platform: str) -> bool:
        return True

    async def _request(self, method: str, endpoint: str, account_ref: str,
                       data: Dict = None, params: Dict = None,
                       idempotency_key: str = None) -> Tuple[int, Dict]:
        headers = {"X-Account-ID": account_ref}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        session = await self._get_session()
        url = f"{self.base_url}/{endpoint}"
        try:
            async with session.request(method, url, json=data, params=params, headers=headers) as response:
                status = response.status
                text = await response.text()
                payload = {}
                if text and "json" in response.headers.get("Content-Type", ""):
                    payload = await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise TransientGatewayError(f"{method} {endpoint} timed out") from e
        except aiohttp.ClientError as e:
            raise TransientGatewayError(f"{method} {endpoint} failed: {e}") from e

        logger.debug(f"gateway {method} {endpoint} -> {status}")
        if status == 409 or status == 404 or status < 400:
            return status, payload
        raise classify_http_error(status, text)

    async def send(self, platform: str, account_ref: str, recipient_ref: str,
                   content: RenderedContent, idempotency_key: str = None,
                   action: str = MESSAGE) -> SendResult:
        if platform == "linkedin" and action == CONNECTION_REQUEST:
            endpoint = "linkedin/invitations"
            data = {"profile_url": recipient_ref, "message": content.body}
        else:
            endpoint = "messages/send"
            data = {"platform": platform, "recipient_id": recipient_ref, "message": content.body}
            if content.subject:
                data["subject"] = content.subject

        status, payload = await self._request(
            "POST", endpoint, account_ref, data=data, idempotency_key=idempotency_key
        )
        message_id = payload.get("id") or payload.get("message_id")
        if status == 409:
            # Same Idempotency-Key already delivered
            logger.info("gateway_duplicate_send", extra={"platform": platform, "key": idempotency_key})
            return SendResult(id=message_id, status="duplicate")
        if status == 404:
            raise PermanentGatewayError(f"Recipient {recipient_ref} not found on {platform}", status_code=404)
        return SendResult(id=message_id, status="sent")

    async def get_signal(self, platform: str, account_ref: str, recipient_ref: str) -> Signal:
        status, payload = await self._request(
            "GET", "messages/status", account_ref,
            params={"platform": platform, "recipient_id": recipient_ref},
        )
        if status == 404:
            return Signal()
        return Signal.from_dict(payload)

    async def delivery_status(self, platform: str, account_ref: str,
                              idempotency_key: str) -> Optional[SendResult]:
        status, payload = await self._request(
            "GET", "messages", account_ref, params={"idempotency_key": idempotency_key},
        )
        if status == 404 or not payload:
            return None
        return SendResult(id=payload.get("id") or payload.get("message_id"), status="duplicate")


# ==============================================================================
# SMTP (email channel)
# ==============================================================================

def text_to_html(text: str) -> str:
    """Convert plain text email to basic HTML."""
    html = text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    html = html.replace("\n\n", "</p><p>").replace("\n", "<br>")
    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Arial, sans-serif; font-size: 14px; line-height: 1.6; color: #333; }}
        p {{ margin: 0 0 1em 0; }}
    </style>
</head>
<body>
    <p>{html}</p>
</body>
</html>"""


def message_id_for(idempotency_key: Optional[str], from_email: str) -> str:
    """Stable Message-ID per idempotency key so a resend is recognisable."""
    domain = from_email.split("@")[1] if "@" in from_email else "localhost"
    if not idempotency_key:
        return make_msgid(domain=domain)
    digest = hashlib.sha1(idempotency_key.encode("utf-8")).hexdigest()[:32]
    return f"<{digest}@{domain}>"


class SmtpGateway(MessagingGateway):
    """
    Email sends via aiosmtplib, one fresh connection per message.
    `account_ref` is the sending mailbox address.
    """

    def __init__(self, accounts: List[Dict[str, str]] = None, host: str = None, port: int = None,
                 delivery_log: DeliveryLog = None, timeout: float = None):
        self.accounts = {a["email"]: a for a in (accounts if accounts is not None else config.SMTP_ACCOUNTS)}
        self.smtp_host = host or config.SMTP_HOST
        self.smtp_port = port or config.SMTP_PORT
        self.timeout = timeout or config.GATEWAY_TIMEOUT_SECONDS
        self.delivery_log = delivery_log if delivery_log is not None else DeliveryLog()

    def _build_message(self, account: Dict[str, str], to_email: str, content: RenderedContent,
                       message_id: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg.attach(MIMEText(content.body, "plain"))
        msg.attach(MIMEText(text_to_html(content.body), "html"))
        msg["Message-ID"] = message_id
        msg["Subject"] = content.subject
        msg["From"] = formataddr((account.get("sender_name", ""), account["email"]))
        msg["To"] = to_email
        msg["Reply-To"] = config.REPLY_TO or account["email"]
        return msg

    async def send(self, platform: str, account_ref: str, recipient_ref: str,
                   content: RenderedContent, idempotency_key: str = None,
                   action: str = MESSAGE) -> SendResult:
        account = self.accounts.get(account_ref)
        if not account:
            raise ConfigurationError(f"No SMTP credentials for {account_ref}")

        if idempotency_key:
            earlier = self.delivery_log.find(idempotency_key)
            if earlier:
                return SendResult(id=earlier.get("message_id"), status="duplicate")

        message_id = message_id_for(idempotency_key, account_ref)
        msg = self._build_message(account, recipient_ref, content, message_id)

        try:
            smtp = aiosmtplib.SMTP(
                hostname=self.smtp_host,
                port=self.smtp_port,
                timeout=self.timeout,
                start_tls=True,
            )
            await smtp.connect()
            await smtp.login(account_ref, account["password"])
            await smtp.sendmail(account_ref, [recipient_ref], msg.as_string())
            await smtp.quit()
        except (aiosmtplib.SMTPTimeoutError, aiosmtplib.SMTPConnectError,
                aiosmtplib.SMTPServerDisconnected) as e:
            raise TransientGatewayError(f"SMTP connection problem sending to {recipient_ref}: {e}") from e
        except aiosmtplib.SMTPResponseException as e:
            logger.error(
                "smtp_error",
                extra={"to": recipient_ref, "from": account_ref, "error_code": e.code, "error": str(e)[:200]},
            )
            if 400 <= e.code < 500:
                raise TransientGatewayError(f"SMTP {e.code}: {e.message}", status_code=e.code) from e
            # 554 means the provider blocked the mailbox itself
            raise PermanentGatewayError(
                f"SMTP {e.code}: {e.message}", status_code=e.code, restricted=e.code == 554
            ) from e
        except aiosmtplib.SMTPException as e:
            raise PermanentGatewayError(f"SMTP error sending to {recipient_ref}: {e}") from e
        except (asyncio.TimeoutError, OSError) as e:
            raise TransientGatewayError(f"Connection timeout to {recipient_ref}: {e}") from e

        if idempotency_key:
            self.delivery_log.record(idempotency_key, platform, account_ref, recipient_ref, message_id)
        logger.info(
            "smtp_transmitted",
            extra={"to": recipient_ref, "from": account_ref, "message_id": message_id[:40]},
        )
        return SendResult(id=message_id, status="sent")

    async def get_signal(self, platform: str, account_ref: str, recipient_ref: str) -> Signal:
        return Signal.from_dict(self.delivery_log.get_signal(platform, account_ref, recipient_ref))

    async def delivery_status(self, platform: str, account_ref: str,
                              idempotency_key: str) -> Optional[SendResult]:
        earlier = self.delivery_log.find(idempotency_key)
        if not earlier:
            return None
        return SendResult(id=earlier.get("message_id"), status="duplicate")


class GatewayRouter(MessagingGateway):
    """Email goes over SMTP, every other platform over the REST API."""

    def __init__(self, rest: MessagingGateway = None, smtp: MessagingGateway = None):
        self.rest = rest or RestGateway()
        self.smtp = smtp or SmtpGateway()

    def _for(self, platform: str) -> MessagingGateway:
        return self.smtp if platform == "email" else self.rest

    async def send(self, platform, account_ref, recipient_ref, content, idempotency_key=None, action=MESSAGE):
        return await self._for(platform).send(
            platform, account_ref, recipient_ref, content, idempotency_key=idempotency_key, action=action
        )

    async def get_signal(self, platform, account_ref, recipient_ref):
        return await self._for(platform).get_signal(platform, account_ref, recipient_ref)

    async def delivery_status(self, platform, account_ref, idempotency_key):
        return await self._for(platform).delivery_status(platform, account_ref, idempotency_key)

    def supports_idempotency(self, platform: str) -> bool:
        return self._for(platform).supports_idempotency(platform)

    async def close(self):
        await self.rest.close()
        await self.smtp.close()
