import time
import re
import secrets
import string
import uuid
from datetime import datetime, timezone
import hashlib
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def reseller_key(secret: str, reseller_id: str) -> str:
    """Access key a reseller presents as ``x-reseller-key``."""
    return hmac.new(secret.encode(), reseller_id.encode(),
                    hashlib.sha256).hexdigest()


_REF_ALPHABET = string.ascii_uppercase + string.digits


def new_ref_id(prefix: str = "RP") -> str:
    # RP-<epoch millis>-<6 chars>, unique enough to be the gateway ref
    suffix = "".join(secrets.choice(_REF_ALPHABET) for _ in range(6))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def new_guest_token() -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(8)}"
