"""
Exhausted bucket tracking shared by all gateway instances.
"""

from typing import Optional, Set

from shared.logging import get_logger
from ..store.base import CounterStore


EXHAUSTED_KEY_TYPE = "ULP_EXHAUSTED"
ORGANISATION_KEY_TYPE = "ORG"
WORKSPACE_KEY_TYPE = "WS"


def generate_exhausted_values_key(organisation_id: Optional[str], workspace_id: Optional[str],
                                  policy_id: str) -> str:
    key = f"{EXHAUSTED_KEY_TYPE}_{policy_id}_"
    if organisation_id:
        key += f"{ORGANISATION_KEY_TYPE}_{organisation_id}"
    if workspace_id:
        key += f"{WORKSPACE_KEY_TYPE}_{workspace_id}"
    return key


class ExhaustionTracker:
    """Set of exhausted value keys per policy.

    Membership is sticky: nothing here removes a value key; the control
    plane resets buckets out of band. Reads are memoized locally for
    ``local_ttl_seconds``, so other instances may keep admitting requests
    to a freshly exhausted bucket for up to that long.
    """

    def __init__(self, store: CounterStore, local_ttl_seconds: float = 30):
        self.store = store
        self.local_ttl_seconds = local_ttl_seconds
        self.logger = get_logger("limits.exhaustion")

    async def exhausted_values(self, organisation_id: Optional[str], workspace_id: Optional[str],
                               policy_id: str) -> Set[str]:
        key = generate_exhausted_values_key(organisation_id, workspace_id, policy_id)
        return await self.store.get_set_members(
            key,
            use_local_cache=True,
            local_ttl_seconds=self.local_ttl_seconds
        )

    async def is_exhausted(self, organisation_id: Optional[str], workspace_id: Optional[str],
                           policy_id: str, value_key: str) -> bool:
        values = await self.exhausted_values(organisation_id, workspace_id, policy_id)
        return value_key in values

    async def mark_exhausted(self, organisation_id: Optional[str], workspace_id: Optional[str],
                             policy_id: str, value_key: str) -> None:
        key = generate_exhausted_values_key(organisation_id, workspace_id, policy_id)
        await self.store.add_to_set(key, value_key)
        self.logger.info("Marked bucket exhausted", policy_id=policy_id, value_key=value_key)
