from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .money import to_cents


class CartItem(BaseModel):
    """One cart line as assembled by the client."""
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(validation_alias=AliasChoices("productId", "id", "product_id"), min_length=1)
    price: float = Field(ge=0)
    quantity: int = Field(gt=0)

    @property
    def price_cents(self) -> int:
        return to_cents(self.price)


class AddressIn(BaseModel):
    """A new shipping address submitted with the order."""
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    street: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    postal_code: str = Field(validation_alias=AliasChoices("postalCode", "postal_code"), min_length=1)
    country: str = Field(min_length=1)
    save_address: bool = Field(default=False, validation_alias=AliasChoices("saveAddress", "save_address"))


class CreateIntentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: List[CartItem] = Field(default_factory=list)
    address_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("addressId", "address_id"))
    address: Optional[AddressIn] = None


class OrderCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: List[CartItem] = Field(default_factory=list)
    address_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("addressId", "address_id"))
    address: Optional[AddressIn] = None
    payment_intent_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("paymentIntentId", "payment_intent_id")
    )

