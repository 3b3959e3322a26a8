from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class TierLimits:
    name: str
    history_days: int | None           # None = full history from deployment
    continuous_sync: bool
    max_blocks_per_month: int | None   # None = unlimited
    batch_size: int                    # parallel tx-detail fetches per batch

    def history_blocks(self, blocks_per_day: int) -> int | None:
        if self.history_days is None:
            return None
        return self.history_days * blocks_per_day


TIERS: dict[str, TierLimits] = {
    "free":       TierLimits("free",       7,    False, 1_000_000,  5),
    "starter":    TierLimits("starter",    30,   True,  10_000_000, 5),
    "pro":        TierLimits("pro",        90,   True,  50_000_000, 8),
    "enterprise": TierLimits("enterprise", None, True,  None,       10),
}


def get_tier(tier: str | TierLimits) -> TierLimits:
    if isinstance(tier, TierLimits):
        return tier
    try:
        return TIERS[tier.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown subscription tier: {tier!r} (expected one of {sorted(TIERS)})") from None
