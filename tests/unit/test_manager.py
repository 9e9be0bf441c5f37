# tests/unit/test_manager.py

from __future__ import annotations
import random
import sys
from pathlib import Path

import pytest

# Make "src" importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from relay.config_schema import ProviderConfig
from relay.core.errors import (
    NetworkError,
    ProviderAuthError,
    ProviderNotFoundError,
    ProviderUnavailableError,
    ValidationError,
)
from relay.core.result import Err, Ok
from relay.core.types import ModelCapabilities, ModelInfo, ModelPricing, ProviderHealth, utcnow
from relay.manager import ManagerState, ProviderManager
from relay.providers.registry import ProviderRegistry


class FakeProvider:
    def __init__(self, config, plan):
        self.config = config
        self.name = config.name
        self.type = config.type
        self.plan = plan
        self.initialized = False
        self.disposed = 0
        self.model_calls = 0
        self.health_calls = 0

    @property
    def is_available(self):
        return self.initialized

    async def initialize(self):
        if self.plan.get("init_error"):
            return Err(NetworkError(self.plan["init_error"]))
        self.initialized = True
        return Ok(None)

    async def get_models(self):
        self.model_calls += 1
        if self.plan.get("models_error"):
            return Err(ProviderAuthError(self.name))
        return Ok(self.plan.get("models", []))

    async def check_health(self):
        self.health_calls += 1
        if self.plan.get("health_raises"):
            raise RuntimeError("probe exploded")
        healthy = self.plan.get("healthy", True)
        return ProviderHealth(
            is_healthy=healthy,
            last_checked=utcnow(),
            latency_ms=self.plan.get("latency") if healthy else None,
            error=None if healthy else "down",
            provider=self.name,
        )

    async def chat_completion(self, request, token=None):
        raise NotImplementedError

    async def chat_completion_stream(self, request, token=None):
        raise NotImplementedError
        yield  # pragma: no cover

    async def dispose(self):
        self.disposed += 1
        self.initialized = False
        if self.plan.get("dispose_raises"):
            raise RuntimeError("dispose failed")


class FakeFactory:
    """One per config name; all share the same plans and built maps."""

    def __init__(self, name, plans, built):
        self.name = name
        self.plans = plans
        self.built = built

    def validate_config(self, raw):
        return Ok(raw)

    def create(self, config):
        plan = self.plans.get(config.name, {})
        if plan.get("create_error"):
            return Err(ValidationError(plan["create_error"]))
        provider = FakeProvider(config, plan)
        self.built[config.name] = provider
        return Ok(provider)


def model(mid, provider="p", *, context=4096, max_tokens=4096, tools=False, images=False, code=False,
          price=None):
    return ModelInfo(
        id=mid,
        name=mid,
        provider=provider,
        capabilities=ModelCapabilities(supports_tools=tools, supports_images=images,
                                       supports_code_generation=code, max_tokens=max_tokens,
                                       context_window=context),
        pricing=ModelPricing(price[0], price[1]) if price else None,
    )


def cfg(name, priority=0, enabled=True):
    return ProviderConfig(name=f"fake-{name}", type="local", priority=priority, enabled=enabled)


class Built:
    def __init__(self, plans):
        self.plans = plans
        self.built = {}


def build(plans, configs, rng=None):
    state = Built({f"fake-{k}": v for k, v in plans.items()})
    registry = ProviderRegistry()
    for c in configs:
        registry.register(FakeFactory(c.name, state.plans, state.built))
    return ProviderManager(registry, configs, rng=rng), state


async def ready(plans, configs, rng=None):
    manager, factory = build(plans, configs, rng)
    assert (await manager.initialize()).ok
    return manager, factory


# ----- lifecycle -----

@pytest.mark.asyncio
async def test_one_failing_probe_still_initializes():
    manager, factory = build({"a": {}, "b": {"init_error": "connection refused"}}, [cfg("a"), cfg("b")])
    result = await manager.initialize()

    assert result.ok
    assert manager.state is ManagerState.READY
    assert [p.name for p in manager.get_available_providers()] == ["fake-a"]
    assert factory.built["fake-b"].disposed == 1


@pytest.mark.asyncio
async def test_all_failing_gives_failed_state_and_joined_errors():
    manager, _ = build(
        {"a": {"init_error": "refused"}, "b": {"create_error": "bad config"}},
        [cfg("a"), cfg("b")],
    )
    result = await manager.initialize()

    assert not result.ok
    assert isinstance(result.error, ProviderUnavailableError)
    assert result.error.message.endswith("Errors: refused, bad config")
    assert manager.state is ManagerState.FAILED
    assert manager.get_available_providers() == []


@pytest.mark.asyncio
async def test_failed_manager_can_retry_initialize():
    plans = {"a": {"init_error": "refused"}}
    manager, factory = build(plans, [cfg("a")])
    assert not (await manager.initialize()).ok

    factory.plans["fake-a"] = {}
    assert (await manager.initialize()).ok
    assert manager.state is ManagerState.READY


@pytest.mark.asyncio
async def test_disabled_configs_are_skipped_and_listed_order_kept():
    manager, factory = await ready({}, [cfg("c", priority=0), cfg("a", enabled=False), cfg("b", priority=5)])
    assert list(factory.built) == ["fake-c", "fake-b"]


@pytest.mark.asyncio
async def test_initialize_twice_is_a_noop():
    manager, factory = await ready({}, [cfg("a")])
    first = factory.built["fake-a"]
    assert (await manager.initialize()).ok
    assert factory.built["fake-a"] is first


@pytest.mark.asyncio
async def test_dispose_is_terminal_and_tolerates_failures():
    manager, factory = await ready({"a": {"dispose_raises": True}, "b": {}}, [cfg("a"), cfg("b")])
    await manager.dispose()

    assert manager.state is ManagerState.DISPOSED
    assert factory.built["fake-a"].disposed == 1
    assert factory.built["fake-b"].disposed == 1
    assert manager.get_available_providers() == []
    assert not (await manager.initialize()).ok
    assert isinstance((await manager.get_best_provider()).error, ProviderUnavailableError)
    await manager.dispose()


@pytest.mark.asyncio
async def test_best_provider_before_initialize_fails():
    manager, _ = build({}, [cfg("a")])
    result = await manager.get_best_provider()
    assert isinstance(result.error, ProviderUnavailableError)


@pytest.mark.asyncio
async def test_get_provider_by_name():
    manager, _ = await ready({}, [cfg("a")])
    assert manager.get_provider("fake-a").unwrap().name == "fake-a"
    assert isinstance(manager.get_provider("nope").error, ProviderNotFoundError)


@pytest.mark.asyncio
async def test_health_check_covers_every_live_provider():
    manager, _ = await ready(
        {"a": {"latency": 10}, "b": {"healthy": False}, "c": {"health_raises": True}},
        [cfg("a"), cfg("b"), cfg("c")],
    )
    report = await manager.health_check()

    assert [h.provider for h in report] == ["fake-a", "fake-b", "fake-c"]
    assert [h.is_healthy for h in report] == [True, False, False]
    assert "probe exploded" in report[2].error


# ----- strategies -----

@pytest.mark.asyncio
async def test_first_available_sorts_by_priority_stably():
    manager, _ = await ready({}, [cfg("a", priority=2), cfg("b", priority=1), cfg("c", priority=1)])
    assert (await manager.get_best_provider("first-available")).unwrap().name == "fake-b"


@pytest.mark.asyncio
async def test_fastest_never_picks_unhealthy():
    manager, _ = await ready(
        {"a": {"healthy": False, "latency": 1, "models": [model("m")]}, "b": {"latency": 80, "models": [model("m")]}},
        [cfg("a"), cfg("b")],
    )
    assert (await manager.get_best_provider("fastest", {})).unwrap().name == "fake-b"


@pytest.mark.asyncio
async def test_fastest_picks_lowest_latency_and_falls_back_to_first():
    manager, _ = await ready({"a": {"latency": 50}, "b": {"latency": 5}}, [cfg("a"), cfg("b")])
    assert (await manager.get_best_provider("fastest")).unwrap().name == "fake-b"

    down, _ = await ready({"a": {"healthy": False}, "b": {"health_raises": True}}, [cfg("a"), cfg("b")])
    assert (await down.get_best_provider("fastest")).unwrap().name == "fake-a"


@pytest.mark.asyncio
async def test_most_capable_prefers_big_coder_model():
    plans = {
        "small": {"models": [model("generic-8k", context=8192, max_tokens=2048, tools=True)]},
        "big": {"models": [model("qwen3-coder-30b", context=131072, max_tokens=16384, tools=True, code=True)]},
    }
    manager, _ = await ready(plans, [cfg("small"), cfg("big")])
    assert (await manager.get_best_provider("most-capable", {})).unwrap().name == "fake-big"


@pytest.mark.asyncio
async def test_most_capable_skips_listing_failures():
    plans = {"a": {"models_error": True}, "b": {"models": [model("m")]}}
    manager, _ = await ready(plans, [cfg("a"), cfg("b")])
    assert (await manager.get_best_provider("most-capable")).unwrap().name == "fake-b"


@pytest.mark.asyncio
async def test_cheapest_picks_lowest_average_price():
    plans = {
        "pricey": {"models": [model("x", price=(3.0, 15.0))]},
        "cheap": {"models": [model("y", price=(0.2, 0.2)), model("z")]},
    }
    manager, _ = await ready(plans, [cfg("pricey"), cfg("cheap")])
    assert (await manager.get_best_provider("cheapest")).unwrap().name == "fake-cheap"


@pytest.mark.asyncio
async def test_cheapest_unpriced_candidate_ties_with_first_and_loses_the_tie():
    plans = {
        "first": {"models": [model("x", price=(1.0, 1.0))]},
        "free": {"models": [model("q")]},
    }
    manager, _ = await ready(plans, [cfg("first"), cfg("free")])
    assert (await manager.get_best_provider("cheapest")).unwrap().name == "fake-first"


@pytest.mark.asyncio
async def test_cheapest_with_unpriced_first_candidate():
    plans = {
        "local": {"models": [model("q")]},
        "remote": {"models": [model("x", price=(1.0, 1.0))]},
    }
    manager, _ = await ready(plans, [cfg("local"), cfg("remote")])
    assert (await manager.get_best_provider("cheapest")).unwrap().name == "fake-remote"

    unpriced, _ = await ready({"a": {"models": [model("q")]}, "b": {"models_error": True}}, [cfg("a"), cfg("b")])
    assert (await unpriced.get_best_provider("cheapest")).unwrap().name == "fake-a"


@pytest.mark.asyncio
async def test_random_uses_injected_rng():
    names = ["a", "b", "c"]
    picks = []
    for seed in range(3):
        manager, _ = await ready({}, [cfg(n) for n in names], rng=random.Random(seed))
        picks.append((await manager.get_best_provider("random")).unwrap().name)

    expected = [f"fake-{random.Random(seed).choice(names)}" for seed in range(3)]
    assert picks == expected


@pytest.mark.asyncio
async def test_requirements_filter_candidates():
    plans = {
        "plain": {"models": [model("m", context=8192)]},
        "tools": {"models": [model("t", context=32768, tools=True)]},
        "broken": {"models_error": True},
    }
    manager, _ = await ready(plans, [cfg("plain"), cfg("broken"), cfg("tools")])

    chosen = await manager.get_best_provider("first-available", {"supports_tools": True, "context_window": 16000})
    assert chosen.unwrap().name == "fake-tools"

    none_left = await manager.get_best_provider("first-available", {"context_window": 10 ** 7})
    assert isinstance(none_left.error, ProviderNotFoundError)

    # a false boolean requirement is always satisfied
    relaxed = await manager.get_best_provider("first-available", {"supports_images": False})
    assert relaxed.unwrap().name == "fake-plain"


@pytest.mark.asyncio
async def test_empty_requirements_drop_providers_that_cannot_list():
    manager, _ = await ready({"broken": {"models_error": True}, "ok": {"models": [model("m")]}},
                             [cfg("broken"), cfg("ok")])
    assert (await manager.get_best_provider("first-available", {})).unwrap().name == "fake-ok"
    assert (await manager.get_best_provider("first-available")).unwrap().name == "fake-broken"


@pytest.mark.asyncio
async def test_listings_are_fetched_once_per_selection():
    manager, factory = await ready({"a": {"models": [model("m", price=(1, 1))]}}, [cfg("a")])
    await manager.get_best_provider("cheapest", {"supports_streaming": True})
    assert factory.built["fake-a"].model_calls == 1
    await manager.get_best_provider("cheapest", {"supports_streaming": True})
    assert factory.built["fake-a"].model_calls == 2


@pytest.mark.asyncio
async def test_bad_strategy_and_requirements_are_validation_errors():
    manager, _ = await ready({}, [cfg("a")])
    assert isinstance((await manager.get_best_provider("slowest")).error, ValidationError)
    assert isinstance((await manager.get_best_provider("fastest", {"gpu": True})).error, ValidationError)
    assert isinstance((await manager.get_best_provider("fastest", {"max_tokens": "lots"})).error, ValidationError)
