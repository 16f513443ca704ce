from pydantic import BaseModel
from decimal import Decimal


class HealthResponse(BaseModel):
    status: str
    version: str
    dependencies: dict[str, str]


class ModelOut(BaseModel):
    model: str
    input_per_mtok: Decimal
    output_per_mtok: Decimal
    cached_input_per_mtok: Decimal | None
    is_default: bool
