import time
from typing import Optional

from itsdangerous import BadData, URLSafeSerializer

from config import get_settings

CSRF_HEADER = "X-CSRF-Token"


def _serializer() -> URLSafeSerializer:
    settings = get_settings()
    return URLSafeSerializer(settings.csrf_secret, salt="ledger-csrf")


def generate_csrf_token(user_id: int = 1, max_age_hours: int = 2) -> str:
    timestamp = int(time.time())
    token_data = {"u": user_id, "ts": timestamp, "exp": timestamp + max_age_hours * 3600}
    return _serializer().dumps(token_data)


def validate_csrf_token(token: Optional[str], user_id: int = 1) -> bool:
    if not token:
        return False
    try:
        data = _serializer().loads(token)
    except BadData:
        return False
    if not isinstance(data, dict) or data.get("u") != user_id:
        return False
    return int(time.time()) <= int(data.get("exp", 0))
