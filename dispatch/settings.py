from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from dispatch.routing_types import Modality, Tier

DEFAULT_SETTINGS_PATH = Path(__file__).resolve().parent.parent / "config" / "dispatch.yaml"

DEFAULT_TIMEOUTS = {
    Modality.TEXT: 60.0,
    Modality.IMAGE: 90.0,
    Modality.VIDEO: 180.0,
    Modality.AUDIO: 60.0,
}

DEFAULT_TIER_DELAYS = {
    Tier.TRIAL: 30.0,
    Tier.CREATOR: 5.0,
    Tier.STUDIO: 0.0,
    Tier.ENTERPRISE: 0.0,
}


@dataclass(frozen=True)
class DispatchSettings:
    """
    Dispatch policy: invoke timeouts, tier pacing and fallback switches.
    """

    timeouts: dict[Modality, float] = field(default_factory=lambda: dict(DEFAULT_TIMEOUTS))
    provider_timeouts: dict[str, float] = field(default_factory=dict)
    tier_delays: dict[Tier, float] = field(default_factory=lambda: dict(DEFAULT_TIER_DELAYS))
    rate_limit_backoff_seconds: float = 5.0
    skip_unaffordable: bool = True
    allow_own_provider_tiers: frozenset[Tier] = frozenset({Tier.ENTERPRISE})

    @classmethod
    def from_yaml(cls, path: str | None = None) -> "DispatchSettings":
        settings_path = Path(path) if path else Path(os.getenv("DISPATCH_SETTINGS_PATH") or DEFAULT_SETTINGS_PATH)
        if not settings_path.exists():
            raise ValueError(f"Dispatch settings not found at {settings_path}")

        data = yaml.safe_load(settings_path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError("Invalid dispatch settings: expected a mapping")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DispatchSettings":
        try:
            timeouts = dict(DEFAULT_TIMEOUTS)
            timeout_block = data.get("timeouts") or {}
            for name, value in (timeout_block.get("modality") or {}).items():
                timeouts[Modality(name)] = _positive(value, f"timeouts.modality.{name}")
            provider_timeouts = {
                str(name): _positive(value, f"timeouts.provider.{name}")
                for name, value in (timeout_block.get("provider") or {}).items()
            }

            tier_delays = dict(DEFAULT_TIER_DELAYS)
            for name, value in (data.get("tier_delays") or {}).items():
                tier_delays[Tier(name)] = _non_negative(value, f"tier_delays.{name}")

            own_tiers = data.get("allow_own_provider_tiers", [Tier.ENTERPRISE.value])
            if not isinstance(own_tiers, list):
                raise ValueError("allow_own_provider_tiers must be a list")

            return cls(
                timeouts=timeouts,
                provider_timeouts=provider_timeouts,
                tier_delays=tier_delays,
                rate_limit_backoff_seconds=_non_negative(
                    data.get("rate_limit_backoff_seconds", 5), "rate_limit_backoff_seconds"
                ),
                skip_unaffordable=bool(data.get("skip_unaffordable", True)),
                allow_own_provider_tiers=frozenset(Tier(t) for t in own_tiers),
            )
        except (TypeError, AttributeError) as e:
            raise ValueError(f"Invalid dispatch settings: {e}") from e

    def timeout_for(self, provider_id: str, modality: Modality) -> float:
        if provider_id in self.provider_timeouts:
            return self.provider_timeouts[provider_id]
        return self.timeouts.get(Modality(modality), DEFAULT_TIMEOUTS[Modality(modality)])

    def delay_for(self, tier: Tier) -> float:
        return self.tier_delays.get(Tier(tier), 0.0)


def _positive(value: Any, name: str) -> float:
    number = float(value)
    if number <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return number


def _non_negative(value: Any, name: str) -> float:
    number = float(value)
    if number < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")
    return number
