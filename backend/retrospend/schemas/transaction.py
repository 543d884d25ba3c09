from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ParsedTransaction(BaseModel):
    """A normalized transaction candidate produced by a parser."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    title: str
    amount: Decimal
    currency: str
    exchange_rate: Decimal
    amount_in_usd: Decimal = Field(alias="amountInUSD")
    date: date
    location: str = ""
    description: str = ""
    category: str = ""
    pricing_source: str = "IMPORT"


class SelectedTransaction(BaseModel):
    """A reviewed row the user chose to import."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    title: str = Field(min_length=1)
    amount: Decimal
    currency: str = Field(min_length=3, max_length=3)
    exchange_rate: Decimal | None = None
    amount_in_usd: Decimal | None = Field(default=None, alias="amountInUSD")
    date: date
    location: str | None = None
    description: str | None = None
    category_id: uuid.UUID | None = None
    pricing_source: str | None = None
    amortize_over: int | None = Field(default=None, ge=1)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class FinalizeRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    selected_transactions: list[SelectedTransaction]


class FinalizeResult(BaseModel):
    imported_count: int
    skipped_duplicates: int
