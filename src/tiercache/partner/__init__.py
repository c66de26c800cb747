"""Partner API origin: SIM usage counters and package inventory."""

from tiercache.partner.client import PartnerClient
from tiercache.partner.usage import SimUsage, UsageService, usage_key

__all__ = ["PartnerClient", "SimUsage", "UsageService", "usage_key"]
