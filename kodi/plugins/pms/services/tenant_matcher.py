from dataclasses import dataclass
from typing import Optional

import structlog

from kodi.plugins.pms.models.models import Tenant
from kodi.plugins.pms.models.payment import MatchStrategy
from kodi.plugins.pms.services.store import Store
from kodi.plugins.pms.utils.phone import normalize_phone, phone_variants

logger = structlog.get_logger(__name__)


@dataclass
class TenantMatch:
    tenant: Tenant
    strategy: MatchStrategy


class TenantMatcher:
    """
    Finds the tenant an M-Pesa payment belongs to.

    Tenants are told to use their phone number as the paybill account number,
    but some type it in another format and some pay from a relative's phone,
    so the lookup widens step by step:

    1. stored phone == account reference (local form)
    2. stored phone == sender phone (local form)
    3. any spelling of a stored phone == any spelling of either identifier
    """

    def __init__(self, store: Store):
        self.store = store

    async def match(self, account_reference: Optional[str], sender_phone: Optional[str]) -> Optional[TenantMatch]:
        for strategy, identifier in (
            (MatchStrategy.ACCOUNT_REFERENCE, account_reference),
            (MatchStrategy.SENDER_PHONE, sender_phone),
        ):
            local = normalize_phone(identifier)
            if not local:
                continue
            tenant = await self.store.find_tenant_by_phone(local)
            if tenant is not None:
                logger.info("tenant_matched", strategy=strategy.value, tenant_id=tenant.id)
                return TenantMatch(tenant=tenant, strategy=strategy)

        wanted = phone_variants(account_reference) | phone_variants(sender_phone)
        if not wanted:
            return None

        for tenant in await self.store.list_tenants():
            if phone_variants(tenant.phone) & wanted:
                logger.info("tenant_matched", strategy=MatchStrategy.FULL_SCAN.value, tenant_id=tenant.id)
                return TenantMatch(tenant=tenant, strategy=MatchStrategy.FULL_SCAN)

        logger.warning("tenant_not_matched", account_reference=account_reference, sender_phone=sender_phone)
        return None
