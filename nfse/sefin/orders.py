"""Order contract consumed by the emission pipeline.

The store itself lives outside this app (e-commerce backend); only the
read snapshot and the audit-note hook are required.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Protocol, runtime_checkable

from .documents import CNPJ_LENGTH, only_digits

CUSTOMER_INDIVIDUAL = "individual"
CUSTOMER_BUSINESS = "business"


@dataclass(frozen=True)
class Address:
    street: str = ""
    number: str = ""
    complement: str = ""
    district: str = ""
    city: str = ""
    city_code: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = "BR"

    @property
    def is_complete(self) -> bool:
        return all(
            (
                self.street.strip(),
                len(only_digits(self.city_code)) == 7,
                len(only_digits(self.postal_code)) == 8,
            )
        )


@dataclass(frozen=True)
class LineItem:
    description: str
    quantity: Decimal
    unit_price: Decimal
    total: Decimal
    service_code: str = ""
    nbs_code: str = ""


@dataclass(frozen=True)
class OrderSnapshot:
    """Point-in-time read of an order. Never mutated by the pipeline."""

    order_id: str
    status: str
    total: Decimal
    document: str
    customer_name: str
    items: tuple[LineItem, ...] = ()
    company_name: str = ""
    email: str = ""
    phone: str = ""
    billing_address: Optional[Address] = None
    payment_method: str = ""
    payment_status: str = ""
    discount_total: Decimal = Decimal("0.00")
    conditional_discount: Decimal = Decimal("0.00")
    deductions: Decimal = Decimal("0.00")
    withheld: dict[str, Decimal] = field(default_factory=dict)
    declared_iss: Optional[Decimal] = None
    created_at: Optional[dt.datetime] = None

    @property
    def document_digits(self) -> str:
        return only_digits(self.document)

    @property
    def gross(self) -> Decimal:
        """Service value before order-level discounts and deductions."""

        if self.items:
            return sum((item.total for item in self.items), Decimal("0"))
        return self.total + self.discount_total + self.conditional_discount

    @property
    def customer_type(self) -> str:
        if self.company_name.strip() or len(self.document_digits) == CNPJ_LENGTH:
            return CUSTOMER_BUSINESS
        return CUSTOMER_INDIVIDUAL


@runtime_checkable
class OrderStore(Protocol):
    def get_order(self, order_id: str) -> Optional[OrderSnapshot]:
        ...

    def add_note(self, order_id: str, note: str) -> None:
        ...


__all__ = [
    "Address",
    "CUSTOMER_BUSINESS",
    "CUSTOMER_INDIVIDUAL",
    "LineItem",
    "OrderSnapshot",
    "OrderStore",
]
