from __future__ import annotations

import logging
from typing import Optional

from ..infrastructure.storage import Store
from ..models import Suggestion, SuggestionStatus
from ..utils import Clock, RealClock

logger = logging.getLogger(__name__)


class SuggestionLifecycle:
    """Moves pending suggestions to applied or rejected.

    Both operations raise ``NotFoundError`` for an unknown id and
    ``InvalidStateError`` when the suggestion is no longer pending. The live
    budget change on Meta is made by a person in Ads Manager, not here.
    """

    def __init__(self, store: Store, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or RealClock()

    def approve(self, suggestion_id: str) -> Suggestion:
        now = self.clock.now_utc()
        s = self.store.transition_suggestion(suggestion_id, SuggestionStatus.APPLIED, now, mark_scaled=True)
        logger.info(f"Suggestion {suggestion_id} applied: {s.ad_account_id}/{s.target_id} "
                    f"{s.budget} -> {s.budget_after_scale}")
        return s

    def reject(self, suggestion_id: str) -> Suggestion:
        s = self.store.transition_suggestion(suggestion_id, SuggestionStatus.REJECTED, self.clock.now_utc())
        logger.info(f"Suggestion {suggestion_id} rejected: {s.ad_account_id}/{s.target_id}")
        return s
