from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Optional, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from models import PushToken
from schemas import PushPayload

logger = logging.getLogger(__name__)

FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"

# Provider codes meaning the device token will never work again.
INVALID_TOKEN_CODES = frozenset(
    {
        "messaging/invalid-registration-token",
        "messaging/registration-token-not-registered",
        "UNREGISTERED",
    }
)


class PushDeliveryError(RuntimeError):
    def __init__(self, message: str, code: str = "unknown") -> None:
        super().__init__(message)
        self.code = code

    @property
    def is_invalid_token(self) -> bool:
        return self.code in INVALID_TOKEN_CODES


class PushClient(Protocol):
    def send(self, token: str, payload: PushPayload) -> str: ...


def build_message(token: str, payload: PushPayload) -> dict[str, object]:
    return {
        "message": {
            "token": token,
            "data": {
                "title": payload.title,
                "body": payload.body,
                "url": payload.url or "/dashboard",
                "tag": payload.tag or "default",
                "type": payload.type or "default",
            },
            "webpush": {"fcm_options": {"link": payload.url or "/dashboard"}},
        }
    }


def _error_code(body: bytes) -> str:
    try:
        error = json.loads(body.decode("utf-8")).get("error", {})
    except (ValueError, AttributeError):
        return "unknown"
    for detail in error.get("details", []) or []:
        code = detail.get("errorCode")
        if code:
            return str(code)
    return str(error.get("status") or "unknown")


class FcmClient:
    """Firebase Cloud Messaging HTTP v1 client."""

    def __init__(
        self,
        project_id: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.project_id = project_id or settings.fcm_project_id
        self.access_token = access_token or settings.fcm_access_token
        self.timeout = timeout or settings.fcm_timeout_secs

    @property
    def configured(self) -> bool:
        return bool(self.project_id and self.access_token)

    def send(self, token: str, payload: PushPayload) -> str:
        if not self.configured:
            raise PushDeliveryError("FCM credentials are not configured", "unconfigured")

        body = json.dumps(build_message(token, payload)).encode("utf-8")
        req = Request(
            FCM_SEND_URL.format(project_id=self.project_id),
            data=body,
            method="POST",
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json; charset=utf-8",
            },
        )
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                result = json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            code = _error_code(exc.read())
            raise PushDeliveryError(
                f"FCM rejected message with HTTP {exc.code}", code
            ) from exc
        except (URLError, TimeoutError) as exc:
            raise PushDeliveryError("Failed to reach FCM", "unavailable") from exc
        except json.JSONDecodeError as exc:
            raise PushDeliveryError("Unexpected FCM response", "unknown") from exc
        return str(result.get("name", ""))


class PushSender:
    def __init__(self, session: Session, client: Optional[PushClient] = None) -> None:
        self.session = session
        self.client = client or FcmClient()

    def send_to_user(self, user_id: int, payload: PushPayload) -> dict[str, int]:
        tokens = self.session.scalars(
            select(PushToken).where(PushToken.user_id == user_id).order_by(PushToken.id)
        ).all()

        sent = 0
        failed = 0
        for record in tokens:
            try:
                self.client.send(record.token, payload)
            except PushDeliveryError as exc:
                failed += 1
                if exc.is_invalid_token:
                    logger.info(
                        f"push_token_pruned: user_id={user_id} token_id={record.id} code={exc.code}"
                    )
                    self.session.delete(record)
                else:
                    logger.warning(
                        f"push_failed: user_id={user_id} token_id={record.id} code={exc.code}"
                    )
                continue
            sent += 1
            record.last_used_at = datetime.now(timezone.utc).replace(tzinfo=None)

        self.session.flush()
        return {"sent": sent, "failed": failed}
