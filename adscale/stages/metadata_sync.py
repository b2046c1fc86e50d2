from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..config import MAX_ERRORS_REPORTED
from ..infrastructure.error_handling import ExternalServiceError, OperationCancelled, TokenError, ValidationError
from ..infrastructure.storage import Store
from ..integrations.meta_client import MetaMetadataClient
from ..models import AdAccount, AdSetMetadata, CampaignMetadata
from ..utils import Clock, RealClock, from_minor_units, parse_optional_datetime

logger = logging.getLogger(__name__)


@dataclass
class MetadataSyncResult:
    ad_account_id: str
    success: bool
    adsets_synced: int = 0
    campaigns_synced: int = 0
    errors: List[str] = field(default_factory=list)
    error_code: Optional[str] = None


def _budget(raw: Dict[str, Any], key: str, currency: Optional[str]):
    amount = from_minor_units(raw.get(key), currency)
    # Graph reports an unset budget as "0"
    return amount if amount else None


def _campaign_ref(raw: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    camp = raw.get("campaign")
    if isinstance(camp, dict):
        return camp.get("id") or raw.get("campaign_id"), camp.get("name")
    return raw.get("campaign_id"), None


def map_adset(raw: Dict[str, Any], ad_account: AdAccount, synced_at: datetime) -> AdSetMetadata:
    adset_id = str(raw.get("id") or "").strip()
    if not adset_id:
        raise ValidationError("Ad set without id", field="id")
    campaign_id, campaign_name = _campaign_ref(raw)
    currency = ad_account.currency
    try:
        return AdSetMetadata(
            account_id=ad_account.account_id,
            ad_account_id=ad_account.ad_account_id,
            adset_id=adset_id,
            adset_name=raw.get("name"),
            campaign_id=str(campaign_id) if campaign_id else None,
            campaign_name=campaign_name,
            status=raw.get("status") or raw.get("effective_status"),
            currency=currency,
            daily_budget=_budget(raw, "daily_budget", currency),
            lifetime_budget=_budget(raw, "lifetime_budget", currency),
            start_time=parse_optional_datetime(raw.get("start_time")),
            end_time=parse_optional_datetime(raw.get("end_time")),
            updated_time=parse_optional_datetime(raw.get("updated_time")),
            synced_at=synced_at,
        )
    except ValueError as e:
        raise ValidationError(f"Ad set {adset_id}: {e}", field="adset", value=adset_id) from e


def map_campaign(raw: Dict[str, Any], ad_account: AdAccount, synced_at: datetime) -> CampaignMetadata:
    campaign_id = str(raw.get("id") or "").strip()
    if not campaign_id:
        raise ValidationError("Campaign without id", field="id")
    currency = ad_account.currency
    try:
        return CampaignMetadata(
            account_id=ad_account.account_id,
            ad_account_id=ad_account.ad_account_id,
            campaign_id=campaign_id,
            name=raw.get("name"),
            status=raw.get("status"),
            objective=raw.get("objective"),
            daily_budget=_budget(raw, "daily_budget", currency),
            lifetime_budget=_budget(raw, "lifetime_budget", currency),
            start_time=parse_optional_datetime(raw.get("start_time")),
            stop_time=parse_optional_datetime(raw.get("stop_time")),
            updated_time=parse_optional_datetime(raw.get("updated_time")),
            synced_at=synced_at,
        )
    except ValueError as e:
        raise ValidationError(f"Campaign {campaign_id}: {e}", field="campaign", value=campaign_id) from e


class MetadataSyncer:
    """Pulls ad-set and campaign configuration and merges it into the store.

    Incremental by default: only objects updated after the ad account's last
    ad-set sync are fetched.
    """

    def __init__(self, store: Store, client: MetaMetadataClient, clock: Optional[Clock] = None):
        self.store = store
        self.client = client
        self.clock = clock or RealClock()

    def _ensure_account_details(self, access_token: str, ad_account: AdAccount) -> AdAccount:
        if ad_account.currency and ad_account.timezone:
            return ad_account
        info = self.client.fetch_ad_account(access_token, ad_account.ad_account_id)
        updated = replace(
            ad_account,
            name=ad_account.name or info.get("name"),
            currency=ad_account.currency or info.get("currency"),
            timezone=ad_account.timezone or info.get("timezone_name"),
            status=int(info.get("account_status") or ad_account.status),
        )
        self.store.upsert_ad_account(updated)
        return updated

    def sync(self, access_token: str, ad_account: AdAccount, cancel: Optional[threading.Event] = None,
             full: bool = False) -> MetadataSyncResult:
        aid = ad_account.ad_account_id
        result = MetadataSyncResult(ad_account_id=aid, success=False)
        since = None if full else ad_account.last_sync_adset
        started = self.clock.now_utc()
        run_id = self.store.start_sync_run(aid, "metadata")
        fetched = 0
        try:
            ad_account = self._ensure_account_details(access_token, ad_account)
            raw_campaigns = self.client.fetch_campaigns(access_token, aid, updated_since=since, cancel=cancel)
            raw_adsets = self.client.fetch_adsets(access_token, aid, updated_since=since, cancel=cancel)
            fetched = len(raw_campaigns) + len(raw_adsets)

            campaigns: List[CampaignMetadata] = []
            for raw in raw_campaigns:
                try:
                    campaigns.append(map_campaign(raw, ad_account, started))
                except ValidationError as e:
                    result.errors.append(e.message)
            adsets: List[AdSetMetadata] = []
            for raw in raw_adsets:
                try:
                    adsets.append(map_adset(raw, ad_account, started))
                except ValidationError as e:
                    result.errors.append(e.message)

            result.campaigns_synced = self.store.upsert_campaigns(campaigns)
            result.adsets_synced = self.store.upsert_adsets(adsets)
            self.store.mark_ad_account_synced(aid, adset_at=started)
            result.success = True
            logger.info(f"{aid}: synced {result.adsets_synced} ad set(s), {result.campaigns_synced} campaign(s)"
                        + (" (incremental)" if since else ""))
            return result
        except TokenError as e:
            result.errors.append(e.message)
            result.error_code = e.code
            raise
        except (ExternalServiceError, OperationCancelled) as e:
            logger.error(f"{aid}: metadata sync failed: {e.message}")
            result.errors.append(e.message)
            result.error_code = e.code
            return result
        finally:
            self.store.finish_sync_run(
                run_id,
                status="succeeded" if result.success else "failed",
                records_fetched=fetched,
                records_stored=result.adsets_synced + result.campaigns_synced,
                error_count=len(result.errors),
                error="; ".join(result.errors[:MAX_ERRORS_REPORTED]) or None,
            )
