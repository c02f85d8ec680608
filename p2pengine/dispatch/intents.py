"""Buy intent schema — the tagged variants the dispatch queue accepts.

Payloads arrive from the operator API or from automation as plain dicts.
They are validated here, at the queue boundary, before a Dispatch is
persisted.  The ``kind`` field selects the variant.
"""

from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_serializer,
    field_validator,
)

from p2pengine.errors import IntentValidationError
from p2pengine.positioning.models import Side
from p2pengine.venue.models import OrderPlacementRequest


class _IntentBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    asset: str = Field(min_length=1)
    fiat: str = Field(min_length=1)
    ad_no: Optional[str] = None

    @field_validator("asset", "fiat")
    @classmethod
    def upper(cls, v: str) -> str:
        return v.strip().upper()


class QuantityIntent(_IntentBase):
    """Buy a fixed quantity of the asset, optionally against a given ad."""

    kind: Literal["quantity"]
    quantity: Decimal = Field(gt=0)
    price: Optional[Decimal] = Field(default=None, gt=0)

    @field_serializer("quantity", "price")
    def serialize_decimal(self, value: Optional[Decimal]) -> Optional[str]:
        return None if value is None else str(value)


class FiatAmountIntent(_IntentBase):
    """Spend a fiat amount at a limit price."""

    kind: Literal["fiat_amount"]
    fiat_amount: Decimal = Field(gt=0)
    price: Decimal = Field(gt=0)

    @field_serializer("fiat_amount", "price")
    def serialize_decimal(self, value: Decimal) -> str:
        return str(value)


BuyIntent = Annotated[
    Union[QuantityIntent, FiatAmountIntent],
    Field(discriminator="kind"),
]

_adapter: TypeAdapter = TypeAdapter(BuyIntent)


def parse_intent(payload: dict) -> Union[QuantityIntent, FiatAmountIntent]:
    """Validate *payload* against the intent variants.

    Raises:
        IntentValidationError: unknown ``kind``, missing or extra fields,
            or non-positive amounts.
    """
    if not isinstance(payload, dict):
        raise IntentValidationError("Intent payload must be an object")
    try:
        return _adapter.validate_python(payload)
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in exc.errors()
        )
        raise IntentValidationError(f"Invalid buy intent: {details}") from exc


def to_placement(
    intent: Union[QuantityIntent, FiatAmountIntent],
    client_token: str,
) -> OrderPlacementRequest:
    """Build the venue placement request for *intent*."""
    if isinstance(intent, QuantityIntent):
        return OrderPlacementRequest(
            asset=intent.asset,
            fiat=intent.fiat,
            side=Side.BUY,
            client_token=client_token,
            quantity=intent.quantity,
            price=intent.price,
            ad_no=intent.ad_no,
        )
    return OrderPlacementRequest(
        asset=intent.asset,
        fiat=intent.fiat,
        side=Side.BUY,
        client_token=client_token,
        fiat_amount=intent.fiat_amount,
        price=intent.price,
        ad_no=intent.ad_no,
    )
