"""
Turn token counts into a priced UsageCalculation.

Two entry points: provider-reported counts (authoritative) and heuristic
estimates from the prompt and output text. Both tag has_provider_usage so
billing can tell exact from approximate cost.
"""

from decimal import Decimal

from loguru import logger

from app.core.registry import ModelRegistry
from app.core.tokens import estimate_tokens
from app.models.usage import PricingRecord, ProviderUsage, UsageCalculation

PER_MILLION = Decimal(1_000_000)

# Pattern-matched rates (USD per million tokens) for models missing from the registry.
# Order matters: the first substring match wins.
DEFAULT_RATES: list[tuple[str, Decimal, Decimal]] = [
    ("gpt-4o-mini", Decimal("0.15"), Decimal("0.60")),
    ("gpt-4o", Decimal("5.00"), Decimal("15.00")),
    ("gpt-4", Decimal("30.00"), Decimal("60.00")),
    ("gpt-3.5", Decimal("0.50"), Decimal("1.50")),
]
FALLBACK_RATE = (Decimal("0.50"), Decimal("1.50"))


def default_pricing(model: str) -> PricingRecord:
    input_rate, output_rate = FALLBACK_RATE
    for pattern, in_rate, out_rate in DEFAULT_RATES:
        if pattern in model:
            input_rate, output_rate = in_rate, out_rate
            break
    return PricingRecord(model=model, input_per_mtok=input_rate, output_per_mtok=output_rate)


def price(
    pricing: PricingRecord,
    tokens_in: int,
    tokens_out: int,
    cached_tokens: int = 0,
) -> tuple[Decimal, Decimal]:
    """Return (input_cost, output_cost) at full Decimal precision."""
    cached = min(max(cached_tokens, 0), tokens_in)
    regular_in = tokens_in - cached
    cached_rate = pricing.cached_input_per_mtok if pricing.cached_input_per_mtok is not None else pricing.input_per_mtok

    input_cost = (Decimal(regular_in) * pricing.input_per_mtok + Decimal(cached) * cached_rate) / PER_MILLION
    output_cost = Decimal(tokens_out) * pricing.output_per_mtok / PER_MILLION
    return input_cost, output_cost


class UsageCalculator:
    def __init__(self, registry: ModelRegistry) -> None:
        self.registry = registry

    async def _pricing(self, model: str) -> tuple[PricingRecord, str]:
        pricing = await self.registry.pricing_for(model)
        if pricing is not None:
            return pricing, "registry"
        logger.warning("[usage] no pricing for {!r}, using default rates", model)
        return default_pricing(model), "default"

    async def _calculate(
        self,
        model: str,
        tokens_in: int,
        tokens_out: int,
        cached_tokens: int,
        has_provider_usage: bool,
    ) -> UsageCalculation:
        pricing, source = await self._pricing(model)
        input_cost, output_cost = price(pricing, tokens_in, tokens_out, cached_tokens)
        return UsageCalculation(
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cached_tokens=cached_tokens,
            cost_usd=input_cost + output_cost,
            input_cost_usd=input_cost,
            output_cost_usd=output_cost,
            model=model,
            has_provider_usage=has_provider_usage,
            pricing_source=source,
        )

    async def from_provider(self, usage: ProviderUsage, model: str) -> UsageCalculation:
        return await self._calculate(
            model,
            usage.prompt_tokens,
            usage.completion_tokens,
            usage.cached_tokens,
            has_provider_usage=True,
        )

    async def estimate(self, input_text: str, output_text: str, model: str) -> UsageCalculation:
        return await self._calculate(
            model,
            estimate_tokens(input_text),
            estimate_tokens(output_text),
            0,
            has_provider_usage=False,
        )
