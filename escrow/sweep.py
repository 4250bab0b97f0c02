"""
Scheduled escrow release.

Call `run_escrow_sweep` periodically (e.g. hourly from a cron trigger hitting
`POST /cron/process-escrow`, or `python -m escrow.sweep`) to release referral
payouts whose escrow period has ended. The sweep only fails as a whole if
selecting due referrals fails.
"""
import time

import structlog

from .models import EscrowSweepResponse
from .service import ReferralEscrowService

logger = structlog.get_logger(__name__)


def run_escrow_sweep(service: ReferralEscrowService) -> EscrowSweepResponse:
    logger.info("escrow_sweep_started")
    started = time.monotonic()

    try:
        processed = service.process_escrow_releases()
    except Exception as e:
        logger.error("escrow_sweep_failed", error=str(e))
        raise

    logger.info(
        "escrow_sweep_finished",
        processed=processed,
        duration_ms=round((time.monotonic() - started) * 1000, 2),
    )
    return EscrowSweepResponse(processed=processed, message=f"Processed {processed} escrow releases")


if __name__ == "__main__":
    from api.container import build_services
    from core.logging_config import setup_logging

    setup_logging()
    result = run_escrow_sweep(build_services().escrow)
    print(result.message)
