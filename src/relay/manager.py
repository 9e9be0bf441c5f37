# src/relay/manager.py
"""
ProviderManager: owns the live providers built from configuration.

UNINITIALIZED -> INITIALIZING -> READY | FAILED, any of those -> DISPOSED.
FAILED may be initialized again; DISPOSED is terminal.

The provider map is written only inside initialize(); every other method
only reads it, so no locking is needed afterwards.
"""
from __future__ import annotations
import asyncio
import logging
import math
import random
from dataclasses import fields
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from relay.config_schema import ProviderConfig
from relay.core.errors import (
    ProviderError,
    ProviderNotFoundError,
    ProviderUnavailableError,
    ValidationError,
)
from relay.core.ports import ModelProvider
from relay.core.result import Err, Ok, Result
from relay.core.types import ModelCapabilities, ModelInfo, ProviderHealth, SelectionStrategy, utcnow
from relay.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

_BOOL_CAPS = {f.name for f in fields(ModelCapabilities) if f.type in ("bool", bool)}
_NUMERIC_CAPS = {f.name for f in fields(ModelCapabilities) if f.type in ("int", int)}

Requirements = Mapping[str, Any]


class ManagerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"
    DISPOSED = "disposed"


def validate_requirements(requirements: Requirements) -> Optional[str]:
    """Return a problem description, or None when every key and value is usable."""
    for key, value in requirements.items():
        if key in _BOOL_CAPS:
            if not isinstance(value, bool):
                return f"requirement '{key}' must be a boolean"
        elif key in _NUMERIC_CAPS:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return f"requirement '{key}' must be a number"
        else:
            return f"unknown capability requirement '{key}'"
    return None


def meets_requirements(caps: ModelCapabilities, requirements: Requirements) -> bool:
    for key, wanted in requirements.items():
        have = getattr(caps, key)
        if isinstance(wanted, bool):
            if wanted and not have:
                return False
        elif have < wanted:
            return False
    return True


def capability_score(models: Sequence[ModelInfo]) -> float:
    score = 0.0
    for m in models:
        caps = m.capabilities
        score += sum(1 for flag in (caps.supports_streaming, caps.supports_tools,
                                    caps.supports_images, caps.supports_code_generation) if flag)
        score += math.log10(max(caps.context_window, 1)) + math.log10(max(caps.max_tokens, 1))
    return score


def average_cost(models: Sequence[ModelInfo]) -> Optional[float]:
    """Mean of (input + output) per-1k price over priced models; None when nothing is priced."""
    priced = [m.pricing for m in models if m.pricing is not None]
    if not priced:
        return None
    return sum(p.input_token_price + p.output_token_price for p in priced) / len(priced)


class ProviderManager:
    def __init__(
        self,
        registry: ProviderRegistry,
        configs: Sequence[ProviderConfig],
        *,
        rng: Optional[random.Random] = None,
    ):
        self._registry = registry
        self._configs = list(configs)
        self._rng = rng or random.Random()
        self._providers: Dict[str, ModelProvider] = {}
        self._priorities: Dict[str, int] = {}
        self._state = ManagerState.UNINITIALIZED

    @property
    def state(self) -> ManagerState:
        return self._state

    # ----- lifecycle -----

    async def initialize(self) -> Result[None]:
        if self._state is ManagerState.READY:
            return Ok(None)
        if self._state is ManagerState.DISPOSED:
            return Err(ProviderUnavailableError("all", "Provider manager has been disposed"))
        if self._state is ManagerState.INITIALIZING:
            return Err(ProviderUnavailableError("all", "Provider manager is already initializing"))

        self._state = ManagerState.INITIALIZING
        self._providers.clear()
        self._priorities.clear()
        errors: List[str] = []

        for cfg in self._configs:
            if not cfg.enabled:
                continue
            if cfg.name in self._providers:
                errors.append(f"Duplicate provider name '{cfg.name}'")
                continue
            message = await self._start_provider(cfg)
            if message is not None:
                logger.warning("Provider %s failed to initialize: %s", cfg.name, message)
                errors.append(message)

        if self._providers:
            self._state = ManagerState.READY
            logger.info("Initialized providers: %s", ", ".join(self._providers))
            return Ok(None)

        self._state = ManagerState.FAILED
        return Err(ProviderUnavailableError(
            "all", f"Failed to initialize any providers. Errors: {', '.join(errors)}",
        ))

    async def _start_provider(self, cfg: ProviderConfig) -> Optional[str]:
        created = self._registry.create(cfg)
        if not created.ok:
            return created.error.message
        provider = created.value
        try:
            started = await provider.initialize()
        except Exception as e:
            logger.exception("Provider %s raised during initialize", cfg.name)
            started = Err(ProviderError(str(e), cfg.name, cause=e))
        if started.ok:
            self._providers[cfg.name] = provider
            self._priorities[cfg.name] = cfg.priority
            return None
        await self._dispose_one(cfg.name, provider)
        return started.error.message

    async def _dispose_one(self, name: str, provider: ModelProvider) -> None:
        try:
            await provider.dispose()
        except Exception:
            logger.exception("Failed to dispose provider %s", name)

    async def dispose(self) -> None:
        if self._state is ManagerState.DISPOSED:
            return
        names = list(self._providers)
        results = await asyncio.gather(
            *(self._providers[n].dispose() for n in names), return_exceptions=True,
        )
        for name, outcome in zip(names, results):
            if isinstance(outcome, BaseException):
                logger.error("Failed to dispose provider %s: %s", name, outcome)
        self._providers.clear()
        self._priorities.clear()
        self._state = ManagerState.DISPOSED

    # ----- queries -----

    def get_available_providers(self) -> List[ModelProvider]:
        return [p for p in self._providers.values() if p.is_available]

    def get_provider(self, name: str) -> Result[ModelProvider]:
        if self._state is not ManagerState.READY:
            return Err(ProviderUnavailableError(name, "Provider manager not initialized"))
        provider = self._providers.get(name)
        if provider is None:
            return Err(ProviderNotFoundError(name))
        if not provider.is_available:
            return Err(ProviderUnavailableError(name))
        return Ok(provider)

    async def health_check(self) -> List[ProviderHealth]:
        providers = list(self._providers.values())
        outcomes = await asyncio.gather(*(p.check_health() for p in providers), return_exceptions=True)
        report: List[ProviderHealth] = []
        for provider, outcome in zip(providers, outcomes):
            if isinstance(outcome, BaseException):
                report.append(ProviderHealth(is_healthy=False, last_checked=utcnow(),
                                             error=str(outcome), provider=provider.name))
            else:
                report.append(outcome)
        return report

    # ----- selection -----

    async def get_best_provider(
        self,
        strategy: Union[SelectionStrategy, str] = SelectionStrategy.FIRST_AVAILABLE,
        requirements: Optional[Requirements] = None,
    ) -> Result[ModelProvider]:
        if self._state is not ManagerState.READY:
            return Err(ProviderUnavailableError("all", "Provider manager not initialized"))
        try:
            chosen = SelectionStrategy(strategy)
        except ValueError:
            return Err(ValidationError(f"Unknown selection strategy '{strategy}'", {"strategy": str(strategy)}))
        if requirements is not None:
            problem = validate_requirements(requirements)
            if problem:
                return Err(ValidationError(problem, {"requirements": dict(requirements)}))

        candidates = self.get_available_providers()
        if not candidates:
            return Err(ProviderNotFoundError("all", "No available providers"))

        # listings fetched during this pass, by provider name
        listings: Dict[str, Result[List[ModelInfo]]] = {}

        if requirements is not None:
            candidates = await self._filter(candidates, requirements, listings)
            if not candidates:
                return Err(ProviderNotFoundError("all", "No providers meet the specified requirements"))

        if chosen is SelectionStrategy.FIRST_AVAILABLE:
            selected = self._first_available(candidates)
        elif chosen is SelectionStrategy.FASTEST:
            selected = await self._fastest(candidates)
        elif chosen is SelectionStrategy.CHEAPEST:
            selected = await self._cheapest(candidates, listings)
        elif chosen is SelectionStrategy.MOST_CAPABLE:
            selected = await self._most_capable(candidates, listings)
        else:
            selected = self._rng.choice(candidates)

        logger.debug("Selected provider %s (strategy=%s)", selected.name, chosen.value)
        return Ok(selected)

    async def _models(
        self, provider: ModelProvider, listings: Dict[str, Result[List[ModelInfo]]],
    ) -> Result[List[ModelInfo]]:
        if provider.name not in listings:
            try:
                listings[provider.name] = await provider.get_models()
            except Exception as e:
                logger.exception("Model listing for %s raised", provider.name)
                listings[provider.name] = Err(ProviderError(str(e), provider.name, cause=e))
        return listings[provider.name]

    async def _filter(
        self,
        candidates: List[ModelProvider],
        requirements: Requirements,
        listings: Dict[str, Result[List[ModelInfo]]],
    ) -> List[ModelProvider]:
        kept = []
        for provider in candidates:
            models = await self._models(provider, listings)
            if not models.ok:
                logger.info("Dropping %s from selection: %s", provider.name, models.error.message)
                continue
            if any(meets_requirements(m.capabilities, requirements) for m in models.value):
                kept.append(provider)
        return kept

    def _first_available(self, candidates: List[ModelProvider]) -> ModelProvider:
        # sorted() is stable, so equal priorities keep candidate order
        return sorted(candidates, key=lambda p: self._priorities.get(p.name, 0))[0]

    async def _fastest(self, candidates: List[ModelProvider]) -> ModelProvider:
        outcomes = await asyncio.gather(*(p.check_health() for p in candidates), return_exceptions=True)
        timed = [
            (outcome.latency_ms, provider)
            for provider, outcome in zip(candidates, outcomes)
            if isinstance(outcome, ProviderHealth) and outcome.is_healthy and outcome.latency_ms is not None
        ]
        if not timed:
            logger.info("No healthy candidate reported a latency; falling back to %s", candidates[0].name)
            return candidates[0]
        return min(timed, key=lambda pair: pair[0])[1]

    async def _cheapest(
        self, candidates: List[ModelProvider], listings: Dict[str, Result[List[ModelInfo]]],
    ) -> ModelProvider:
        costs: List[Optional[float]] = []
        for provider in candidates:
            models = await self._models(provider, listings)
            costs.append(average_cost(models.value) if models.ok else None)

        fallback = costs[0] if costs[0] is not None else math.inf
        best, best_cost = candidates[0], math.inf
        for provider, cost in zip(candidates, costs):
            effective = fallback if cost is None else cost
            if effective < best_cost:
                best, best_cost = provider, effective
        return best

    async def _most_capable(
        self, candidates: List[ModelProvider], listings: Dict[str, Result[List[ModelInfo]]],
    ) -> ModelProvider:
        best, best_score = candidates[0], -math.inf
        for provider in candidates:
            models = await self._models(provider, listings)
            if not models.ok:
                continue
            score = capability_score(models.value)
            if score > best_score:
                best, best_score = provider, score
        return best
