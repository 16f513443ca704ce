from pydantic import BaseModel
from typing import Literal
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

STORAGE_PLACES = Decimal("0.000001")


class PricingRecord(BaseModel):
    model: str
    input_per_mtok: Decimal
    output_per_mtok: Decimal
    cached_input_per_mtok: Decimal | None = None
    updated_at: datetime | None = None


class ProviderUsage(BaseModel):
    """Token counts exactly as the provider reported them."""

    prompt_tokens: int
    completion_tokens: int
    cached_tokens: int = 0


class UsageCalculation(BaseModel):
    tokens_in: int
    tokens_out: int
    cached_tokens: int = 0
    cost_usd: Decimal
    input_cost_usd: Decimal
    output_cost_usd: Decimal
    model: str
    has_provider_usage: bool
    pricing_source: Literal["registry", "default"]

    def cost_for_storage(self) -> Decimal:
        return self.cost_usd.quantize(STORAGE_PLACES, rounding=ROUND_HALF_UP)

    def cost_display(self, places: int = 6) -> float:
        return float(self.cost_usd.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP))


class ModelResolution(BaseModel):
    model: str
    requested: str | None
    valid: bool
    is_fallback: bool
    pricing: PricingRecord | None = None
