from dataclasses import dataclass, field
from typing import Optional

RISK_THRESHOLD = 70
MAX_RISK_SCORE = 100


@dataclass
class FraudCheckResult:
    is_fraudulent: bool = False
    risk_score: int = 0
    reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"is_fraudulent": self.is_fraudulent, "risk_score": self.risk_score, "reasons": list(self.reasons)}

    @classmethod
    def from_score(cls, risk_score: int, reasons: list[str]) -> "FraudCheckResult":
        return cls(is_fraudulent=risk_score >= RISK_THRESHOLD, risk_score=risk_score, reasons=reasons)

    @classmethod
    def combine(cls, checks: list["FraudCheckResult"]) -> "FraudCheckResult":
        total = sum(c.risk_score for c in checks)
        return cls(
            is_fraudulent=any(c.is_fraudulent for c in checks) or total >= RISK_THRESHOLD,
            risk_score=min(total, MAX_RISK_SCORE),
            reasons=[reason for c in checks for reason in c.reasons],
        )


@dataclass
class FingerprintData:
    user_agent: str = ""
    language: str = ""
    timezone: str = ""
    screen_resolution: str = ""
    platform: str = ""
    cookie_enabled: bool = True
    canvas_fingerprint: Optional[str] = None
    webgl_fingerprint: Optional[str] = None
    ip_address: Optional[str] = None
