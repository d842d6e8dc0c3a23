"""Second-factor verification for approvers."""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Protocol

from halonet.models import utcnow

logger = logging.getLogger(__name__)


class TwoFactorVerifier(Protocol):
    """Issues and checks one-time codes for approvers."""

    def issue(self, approver: str) -> str:
        ...

    def verify(self, approver: str, code: str) -> bool:
        ...


@dataclass
class _IssuedCode:
    code_hash: str
    expires_at: datetime


class OneTimeCodeVerifier:
    """Issues short-lived numeric codes and verifies them once.

    Only an HMAC of each code is kept, keyed by approver, so a leaked
    store does not reveal usable codes.
    """

    def __init__(
        self,
        secret: str,
        ttl_seconds: int = 300,
        digits: int = 6,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._key = secret.encode()
        self.ttl = timedelta(seconds=ttl_seconds)
        self.digits = digits
        self.clock = clock
        self._issued: dict[str, _IssuedCode] = {}
        self._lock = threading.Lock()

    def _hmac_code(self, approver: str, code: str) -> str:
        return hmac.new(self._key, f"{approver}:{code}".encode(), hashlib.sha256).hexdigest()

    def issue(self, approver: str) -> str:
        """Create a code for an approver, replacing any outstanding one.

        The caller delivers the code out of band.
        """
        code = f"{secrets.randbelow(10**self.digits):0{self.digits}d}"
        issued = _IssuedCode(
            code_hash=self._hmac_code(approver, code),
            expires_at=self.clock() + self.ttl,
        )
        with self._lock:
            self._issued[approver] = issued
        logger.info("Issued two-factor code for %s", approver)
        return code

    def verify(self, approver: str, code: str) -> bool:
        if not code:
            return False
        with self._lock:
            issued = self._issued.get(approver)
            if issued is None:
                return False
            if self.clock() >= issued.expires_at:
                del self._issued[approver]
                logger.info("Two-factor code for %s expired", approver)
                return False
            if not hmac.compare_digest(issued.code_hash, self._hmac_code(approver, code)):
                return False
            # Single use
            del self._issued[approver]
        return True
