from typing import Dict, Tuple, Type
import logging

from greensched.models.placement import (
    PlacementPolicy,
    LeastLoadedPolicy,
    EnergyAwareBinPackPolicy,
    HighPerformanceFirstPolicy,
    AdaptiveIdleConsolidationPolicy,
)
from greensched.models.power_policy import PowerPolicy, FixedGracePowerPolicy, AdaptiveIdlePowerPolicy

logger = logging.getLogger(__name__)

# strategy name -> (placement policy, power policy)
STRATEGIES: Dict[str, Tuple[Type[PlacementPolicy], Type[PowerPolicy]]] = {
    LeastLoadedPolicy.name: (LeastLoadedPolicy, FixedGracePowerPolicy),
    EnergyAwareBinPackPolicy.name: (EnergyAwareBinPackPolicy, FixedGracePowerPolicy),
    HighPerformanceFirstPolicy.name: (HighPerformanceFirstPolicy, FixedGracePowerPolicy),
    AdaptiveIdleConsolidationPolicy.name: (AdaptiveIdleConsolidationPolicy, AdaptiveIdlePowerPolicy),
}


def build_strategy(config) -> Tuple[PlacementPolicy, PowerPolicy]:
    """
    Instantiate the policy pair named by a scheduler configuration.

    Args:
        config: SchedulerConfig

    Returns:
        Tuple of (placement policy, power policy)
    """
    if config.strategy not in STRATEGIES:
        raise ValueError(
            f"Unknown strategy: {config.strategy} (expected one of {', '.join(sorted(STRATEGIES))})"
        )
    placement_cls, power_cls = STRATEGIES[config.strategy]

    placement = placement_cls(high_priority_provisioning=config.high_priority_provisioning)
    if power_cls is AdaptiveIdlePowerPolicy:
        power = AdaptiveIdlePowerPolicy(
            grace_period=config.idle_grace_period,
            min_warm_machines=config.min_warm_machines,
            consolidation_threshold=config.consolidation_threshold
        )
    else:
        power = power_cls(grace_period=config.idle_grace_period)

    logger.info(f"Using strategy {config.strategy}: {placement_cls.__name__} + {power_cls.__name__}")
    return placement, power
