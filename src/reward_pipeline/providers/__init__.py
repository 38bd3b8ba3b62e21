"""External collaborators of the reward pipeline, at their interface boundary."""

from reward_pipeline.providers.base import (
    NotificationProvider,
    ProviderSet,
    RewardProvider,
    TenantResolver,
)

__all__ = ["NotificationProvider", "ProviderSet", "RewardProvider", "TenantResolver"]
