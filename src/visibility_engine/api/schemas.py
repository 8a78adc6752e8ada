"""Shared request/response model configuration."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys (snake_case accepted on input)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreditBalanceResponse(CamelModel):
    """Current credit balance."""

    available: int
    reserved: int
