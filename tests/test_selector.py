import random

import pytest

from stress_harness.config import ScenarioDefinition
from stress_harness.exceptions import ConfigurationError
from stress_harness.selector import ScenarioSelector


def scenarios(*weights):
    return [ScenarioDefinition(name=f"s{i}", path=f"/s{i}", weight=w) for i, w in enumerate(weights)]


def test_distribution_converges_to_weights():
    selector = ScenarioSelector(scenarios(50, 30, 20))
    rng = random.Random(42)
    draws = 20000

    counts = {"s0": 0, "s1": 0, "s2": 0}
    for _ in range(draws):
        counts[selector.select(rng).name] += 1

    assert counts["s0"] / draws == pytest.approx(0.5, abs=0.02)
    assert counts["s1"] / draws == pytest.approx(0.3, abs=0.02)
    assert counts["s2"] / draws == pytest.approx(0.2, abs=0.02)


def test_single_scenario_always_selected():
    selector = ScenarioSelector(scenarios(3))
    rng = random.Random(1)
    assert {selector.select(rng).name for _ in range(100)} == {"s0"}


def test_pick_edges():
    selector = ScenarioSelector(scenarios(50, 30, 20))
    assert selector.total_weight == 100
    assert selector.pick(0).name == "s0"
    assert selector.pick(49.999).name == "s0"
    # a draw landing exactly on a cumulative boundary belongs to the next scenario
    assert selector.pick(50).name == "s1"
    assert selector.pick(99.999).name == "s2"
    assert selector.pick(100).name == "s2"


def test_probabilities():
    selector = ScenarioSelector(scenarios(1, 3))
    probs = selector.probabilities()
    assert probs == {"s0": pytest.approx(0.25), "s1": pytest.approx(0.75)}
    assert sum(probs.values()) == pytest.approx(1.0)


def test_fractional_weights():
    selector = ScenarioSelector(scenarios(0.5, 0.25))
    assert selector.total_weight == pytest.approx(0.75)
    assert selector.pick(0.6).name == "s1"


def test_empty_list_rejected():
    with pytest.raises(ConfigurationError):
        ScenarioSelector([])


@pytest.mark.parametrize("weight", [0, -1])
def test_non_positive_weight_rejected(weight):
    with pytest.raises(ConfigurationError, match="non-positive weight"):
        ScenarioSelector(scenarios(10, weight))
