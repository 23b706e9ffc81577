"""One-time passcodes for password recovery.

Each email has at most one live record. A record goes away when it is used
successfully, when someone tries it after it expired, or when too many wrong
codes were tried against it (if an attempt limit is configured). Records are
kept in memory only.
"""
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict

from errors import Expired, InvalidCode, InvalidRequest, NotFound
from identity import IdentityStore

logger = logging.getLogger(__name__)


@dataclass
class OTPRecord:
    code: str
    expires_at: datetime
    attempts: int = 0


def generate_code() -> str:
    return str(secrets.randbelow(900000) + 100000)


class OTPRegistry:
    def __init__(
        self,
        identity: IdentityStore,
        ttl: timedelta = timedelta(minutes=5),
        max_attempts: int = 0,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.identity = identity
        self.ttl = ttl
        self.max_attempts = max_attempts
        self._clock = clock
        self._records: Dict[str, OTPRecord] = {}

    def issue(self, email: str) -> str:
        email = email.lower()
        if not self.identity.find_by_email(email):
            raise NotFound("User not found")
        code = generate_code()
        self._records[email] = OTPRecord(code=code, expires_at=self._clock() + self.ttl)
        logger.info("OTP issued for %s", email)
        return code

    def _consume(self, email: str, code: str) -> OTPRecord:
        record = self._records.get(email)
        if record is None:
            raise InvalidRequest("OTP not found")
        if self._clock() > record.expires_at:
            del self._records[email]
            raise Expired()
        if not hmac.compare_digest(record.code, str(code).strip()):
            record.attempts += 1
            if self.max_attempts and record.attempts >= self.max_attempts:
                del self._records[email]
                logger.warning("OTP for %s discarded after %d wrong attempts", email, record.attempts)
                raise InvalidRequest("Too many invalid attempts, request a new OTP")
            raise InvalidCode()
        return self._records.pop(email)

    def verify(self, email: str, code: str) -> None:
        self._consume(email.lower(), code)

    async def reset_password(self, email: str, code: str, new_password: str) -> None:
        email = email.lower()
        record = self._consume(email, code)
        try:
            await self.identity.update_credential(email, new_password)
        except NotFound:
            raise
        except BaseException:
            # credential not replaced, give the code back for another try
            self._records.setdefault(email, record)
            raise
        logger.info("Password reset for %s", email)

    def pending(self, email: str) -> bool:
        return email.lower() in self._records
