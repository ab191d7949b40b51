"""Binding a palm code to the signed-in profile (``POST /users/verify-palm``)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .ledger import LedgerClient, NetworkFailure, PalmBound, User

logger = logging.getLogger(__name__)

MSG_SCAN_FIRST = "Please scan your palm first"
MSG_BIND_FAILED = "Palm verification failed"


@dataclass(frozen=True)
class EnrollmentResult:
    ok: bool
    message: str
    user: Optional[User] = None


def enroll_palm(ledger: LedgerClient, palm_code: Optional[str]) -> EnrollmentResult:
    """Bind *palm_code* (scanned or typed) to the profile, replacing any previous one."""
    code = (palm_code or "").strip()
    if not code:
        return EnrollmentResult(False, MSG_SCAN_FIRST)
    try:
        result = ledger.verify_palm(code)
    except NetworkFailure as exc:
        logger.error("Palm enrollment failed: %s", exc)
        return EnrollmentResult(False, MSG_BIND_FAILED)
    if isinstance(result, PalmBound):
        logger.info("Palm code bound to profile.")
        return EnrollmentResult(True, result.message, result.user)
    # Server wording when it gave one
    message = getattr(result, "message", None) or MSG_BIND_FAILED
    return EnrollmentResult(False, message)
