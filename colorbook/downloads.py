import logging
import secrets
import threading
import time
from typing import Callable, Dict, Iterator, Optional, Protocol, Tuple

from .errors import ExpiredTokenError, TokenNotFound, ValidationError
from .models import DownloadToken

logger = logging.getLogger(__name__)


class TokenStore(Protocol):
    def put(self, record: DownloadToken) -> None: ...

    def get(self, token: str) -> Optional[DownloadToken]: ...

    def delete(self, token: str) -> None: ...

    def items(self) -> Iterator[Tuple[str, DownloadToken]]: ...

    def clear(self) -> None: ...


class MemoryTokenStore:
    def __init__(self):
        self._tokens: Dict[str, DownloadToken] = {}
        self._lock = threading.Lock()

    def put(self, record: DownloadToken) -> None:
        with self._lock:
            self._tokens[record.token] = record

    def get(self, token: str) -> Optional[DownloadToken]:
        with self._lock:
            return self._tokens.get(token)

    def delete(self, token: str) -> None:
        with self._lock:
            self._tokens.pop(token, None)

    def items(self) -> Iterator[Tuple[str, DownloadToken]]:
        with self._lock:
            snapshot = list(self._tokens.items())
        return iter(snapshot)

    def clear(self) -> None:
        with self._lock:
            self._tokens.clear()


class DownloadGateway:
    """Mints reusable-until-expiry tokens that redirect to a deliverable.

    An expired token is tombstoned rather than deleted, so it keeps answering
    "expired" instead of turning into "unknown". Tombstones are purged once
    ``tombstone_sec`` (the artifact retention) has passed, by which time the
    artifact behind them is gone too.
    """

    def __init__(
        self,
        store: TokenStore,
        ttl_sec: float,
        public_base_url: str,
        tombstone_sec: float,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ttl_sec = ttl_sec
        self.public_base_url = public_base_url.rstrip("/")
        self.tombstone_sec = tombstone_sec
        self.clock = clock

    def issue(self, target_url: str) -> str:
        if not target_url:
            raise ValidationError("Missing download URL")
        token = secrets.token_urlsafe(24)
        self.store.put(DownloadToken(token=token, target_url=target_url, created_at=self.clock()))
        logger.info("Issued download token expiring in %ss", self.ttl_sec)
        return token

    def link_for(self, token: str) -> str:
        return f"{self.public_base_url}/download/{token}"

    def redeem(self, token: str) -> str:
        record = self.store.get(token)
        if record is None:
            raise TokenNotFound()
        if record.expired:
            raise ExpiredTokenError()
        if self.clock() - record.created_at > self.ttl_sec:
            self.store.put(record.model_copy(update={"expired": True}))
            logger.info("Download token expired on access")
            raise ExpiredTokenError()
        return record.target_url

    def purge_expired(self, now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now
        purged = 0
        for token, record in self.store.items():
            if now - record.created_at > self.ttl_sec + self.tombstone_sec:
                self.store.delete(token)
                purged += 1
            elif not record.expired and now - record.created_at > self.ttl_sec:
                self.store.put(record.model_copy(update={"expired": True}))
        if purged:
            logger.info("Purged %d stale download tokens", purged)
        return purged
