import hashlib
from collections.abc import Mapping
from typing import Optional

from .models import FingerprintData


def generate_fingerprint(data: FingerprintData) -> str:
    fingerprint_string = "|".join([
        data.user_agent,
        data.language,
        data.timezone,
        data.screen_resolution,
        data.platform,
        str(data.cookie_enabled).lower(),
        data.canvas_fingerprint or "",
        data.webgl_fingerprint or "",
        data.ip_address or "",
    ])
    return hashlib.sha256(fingerprint_string.encode("utf-8")).hexdigest()


def extract_from_request(headers: Mapping[str, str], client_host: Optional[str] = None) -> FingerprintData:
    forwarded = headers.get("x-forwarded-for", "")
    ip_address = forwarded.split(",")[0].strip() if forwarded else client_host
    return FingerprintData(
        user_agent=headers.get("user-agent", ""),
        language=headers.get("accept-language", ""),
        timezone=headers.get("x-timezone", ""),
        ip_address=ip_address,
    )


def validate_fingerprint(stored_fingerprint: str, current_fingerprint: str) -> bool:
    return stored_fingerprint == current_fingerprint
