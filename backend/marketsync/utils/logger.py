import hashlib
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("marketsync")

SENSITIVE_KEYS = (
    "client_secret", "access_token", "refresh_token", "code",
    "password", "authorization", "partner_key", "sign",
)


def sanitize_credentials(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not data:
        return {}

    sanitized = dict(data)
    for key in list(sanitized.keys()):
        if key.lower() not in SENSITIVE_KEYS or sanitized[key] is None:
            continue
        value = str(sanitized[key])
        if len(value) > 8:
            sanitized[key] = f"{value[:4]}...{value[-4:]}"
        else:
            sanitized[key] = "***"
    return sanitized


def token_fingerprint(token: Optional[str]) -> str:
    """Short SHA256 fingerprint so logs can tell tokens apart without leaking them."""
    if not token:
        return "empty"
    return hashlib.sha256(token.encode()).hexdigest()[:16]


class MarketplaceCallLogger:
    """Keeps the most recent marketplace HTTP exchanges for debugging."""

    def __init__(self, max_logs: int = 1000):
        self.logs = []
        self.max_logs = max_logs

    def log_call(
        self,
        marketplace: str,
        event_type: str,
        description: str,
        request_data: Optional[Dict[str, Any]] = None,
        response_data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "marketplace": marketplace,
            "event_type": event_type,
            "description": description,
            "request_data": sanitize_credentials(request_data) if request_data else None,
            "response_data": sanitize_credentials(response_data) if response_data else None,
            "status": "error" if error else "info",
            "error": error,
        }

        self.logs.append(log_entry)
        if len(self.logs) > self.max_logs:
            self.logs.pop(0)

        log_msg = f"[{marketplace}:{event_type}] {description}"
        if error:
            logger.error(f"{log_msg} - Error: {error}")
        else:
            logger.info(log_msg)

        return log_entry

    def get_logs(self, limit: Optional[int] = None) -> list:
        if limit:
            return self.logs[-limit:]
        return self.logs

    def clear_logs(self):
        self.logs = []


marketplace_logger = MarketplaceCallLogger()
