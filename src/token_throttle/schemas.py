from __future__ import annotations

from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, Strict

# Strict floats take ints but refuse bools and numeric-looking strings.
NonNegative = Annotated[float, Strict(), Field(ge=0)]
Positive = Annotated[float, Strict(), Field(gt=0)]


class RateOverride(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    rate: NonNegative | None = Field(default=None, description="Tokens added per window.")
    burst: NonNegative | None = Field(default=None, description="Bucket capacity.")
    window: Positive | None = Field(default=None, description="Window length in milliseconds.")


class ThrottleOptions(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    rate: NonNegative = Field(..., description="Steady-state tokens per window.")
    burst: NonNegative | None = Field(default=None, description="Bucket capacity; defaults to rate.")
    window: NonNegative | None = Field(default=None, description="Window in milliseconds; defaults to 1000.")
    max_keys: Annotated[int, Strict(), Field(ge=1)] | None = Field(
        default=None, description="Capacity of the default LRU table."
    )
    overrides: dict[str, RateOverride] | None = Field(default=None, description="Per-key limit replacement.")
    tokens_table: Any | None = Field(default=None, description="Backing token table; LRU table when omitted.")
    lock_keys: bool = Field(default=False, description="Serialize get/consume/put per key.")
    clock: Any | None = Field(default=None, description="Callable returning epoch milliseconds.")
