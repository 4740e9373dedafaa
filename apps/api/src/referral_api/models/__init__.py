"""SQLAlchemy models package."""

from .referral_event import (  # noqa: F401
    RecordedReferralEvent,
    ReferralEvent,
    fetch_referral_event,
    record_referral_event,
)
from .reward_job import (  # noqa: F401
    RewardJob,
    RewardJobStatusEnum,
    RewardStageEnum,
    RewardTriggerEnum,
)
from .reward_ledger import (  # noqa: F401
    DeliveryChannelEnum,
    ReferralReward,
    ReferralRewardTypeEnum,
    RewardProfile,
)
from .reward_run import RewardRun  # noqa: F401
