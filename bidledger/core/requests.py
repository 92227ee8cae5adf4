"""
Inbound request models.

Payloads from the routing layer are validated here before they reach the
core. Field names are accepted in snake_case or camelCase.
"""

from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from bidledger.core.errors import ErrorKind, ValidationError

RequestT = TypeVar("RequestT", bound=BaseModel)


class BroadcastRequest(BaseModel):
    """Open an order's bidding window."""

    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId", min_length=1, description="Order to broadcast")
    seller_ids: Optional[List[str]] = Field(None, alias="sellerIds", description="Restrict to these sellers")
    radius: Optional[float] = Field(None, gt=0, description="Search radius in km")


class OfferSubmission(BaseModel):
    """A seller's offer. Price and ETA are checked separately for MISSING_FIELDS."""

    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId", min_length=1)
    seller_id: str = Field(..., alias="sellerId", min_length=1)
    price_quote: Optional[float] = Field(None, alias="priceQuote", gt=0)
    delivery_eta: Optional[str] = Field(None, alias="deliveryEta")
    stock_confirmed: bool = Field(default=False, alias="stockConfirmed")

    @field_validator("delivery_eta")
    @classmethod
    def _blank_eta_is_missing(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None

    def missing_fields(self) -> List[str]:
        missing = []
        if self.price_quote is None:
            missing.append("price_quote")
        if self.delivery_eta is None:
            missing.append("delivery_eta")
        return missing


def parse_request(model: Type[RequestT], payload: Dict[str, Any]) -> RequestT:
    """
    Validate a payload against a request model.

    Raises:
        ValidationError: INVALID_INPUT with the pydantic error list
    """
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise ValidationError(
            ErrorKind.INVALID_INPUT,
            f"Invalid {model.__name__}: " + "; ".join(f"{x['field']}: {x['message']}" for x in errors),
            errors=errors,
        ) from e
