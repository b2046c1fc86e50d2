from __future__ import annotations

import logging
from typing import Optional, Protocol

from ..infrastructure.error_handling import NeedsReconnect, NotFoundError, TokenExpired
from ..infrastructure.storage import Store
from ..models import AccountStatus
from ..utils import Clock, RealClock

logger = logging.getLogger(__name__)


class TokenProvider(Protocol):
    def get_valid_access_token(self, account_id: str) -> str:
        ...

    def mark_needs_reconnect(self, account_id: str) -> None:
        ...


class StoreTokenProvider:
    """Hands out the stored long-lived token for an account.

    Token exchange and refresh happen elsewhere; this only decides whether
    the stored token is still usable.
    """

    def __init__(self, store: Store, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or RealClock()

    def get_valid_access_token(self, account_id: str) -> str:
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found", account_id=account_id)
        if account.status is not AccountStatus.CONNECTED or not account.access_token:
            raise NeedsReconnect(f"Account {account_id} is {account.status.value}", account_id=account_id)
        if account.is_expired(self.clock.now_utc()):
            raise TokenExpired(f"Access token for account {account_id} expired at {account.expires_at}",
                               account_id=account_id)
        return account.access_token

    def mark_needs_reconnect(self, account_id: str) -> None:
        logger.warning(f"Account {account_id} flagged as needs_reconnect")
        self.store.set_account_status(account_id, AccountStatus.NEEDS_RECONNECT)
