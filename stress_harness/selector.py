"""Weighted scenario selection."""

import bisect
import random
from itertools import accumulate
from typing import List, Optional, Sequence

from .config import ScenarioDefinition
from .exceptions import ConfigurationError


class ScenarioSelector:
    """
    Picks a scenario with probability weight / total_weight using one random
    draw in [0, total_weight) and a binary search over cumulative weights.

    Holds only immutable state after construction, so one instance can be
    shared by every worker. Each worker may pass its own ``rng``; the default
    module-level generator is safe to call from multiple threads.
    """

    def __init__(self, scenarios: Sequence[ScenarioDefinition]):
        if not scenarios:
            raise ConfigurationError("Cannot select from an empty scenario list")
        for scenario in scenarios:
            if not scenario.weight > 0:
                raise ConfigurationError(
                    f"Scenario {scenario.name!r} has non-positive weight {scenario.weight!r}"
                )
        self._scenarios = tuple(scenarios)
        self._cumulative: List[float] = list(accumulate(s.weight for s in self._scenarios))
        self.total_weight = self._cumulative[-1]

    @property
    def scenarios(self) -> Sequence[ScenarioDefinition]:
        return self._scenarios

    def select(self, rng: Optional[random.Random] = None) -> ScenarioDefinition:
        draw = (rng or random).random() * self.total_weight
        return self.pick(draw)

    def pick(self, draw: float) -> ScenarioDefinition:
        """Scenario for a given draw in [0, total_weight]; total_weight maps to the last one."""
        idx = bisect.bisect_right(self._cumulative, draw)
        if idx >= len(self._scenarios):
            return self._scenarios[-1]
        return self._scenarios[idx]

    def probabilities(self):
        return {s.name: s.weight / self.total_weight for s in self._scenarios}
