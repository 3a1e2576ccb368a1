"""Pricing policies applied when an order is summarised."""
from decimal import Decimal
from typing import Iterable, Optional

FREE_SHIPPING_THRESHOLD = Decimal("500000")
STANDARD_SHIPPING_FEE = Decimal("30000")
REMOTE_AREA_SURCHARGE = Decimal("20000")
REMOTE_CITIES = ("Cà Mau", "An Giang", "Kiên Giang", "Hà Giang")

BULK_DISCOUNT_THRESHOLD = Decimal("1000000")
BULK_DISCOUNT_RATE = Decimal("0.05")


class ShippingFeePolicy:
    def __init__(
        self,
        free_threshold: Decimal = FREE_SHIPPING_THRESHOLD,
        base_fee: Decimal = STANDARD_SHIPPING_FEE,
        remote_surcharge: Decimal = REMOTE_AREA_SURCHARGE,
        remote_cities: Optional[Iterable[str]] = None,
    ):
        self.free_threshold = free_threshold
        self.base_fee = base_fee
        self.remote_surcharge = remote_surcharge
        self.remote_cities = set(REMOTE_CITIES if remote_cities is None else remote_cities)

    def fee(self, subtotal: Decimal, city: str) -> Decimal:
        if subtotal >= self.free_threshold:
            return Decimal("0")
        fee = self.base_fee
        if city in self.remote_cities:
            fee += self.remote_surcharge
        return fee


class DiscountPolicy:
    def __init__(self, threshold: Decimal = BULK_DISCOUNT_THRESHOLD, rate: Decimal = BULK_DISCOUNT_RATE):
        self.threshold = threshold
        self.rate = rate

    def discount(self, subtotal: Decimal) -> Decimal:
        if subtotal >= self.threshold:
            return (subtotal * self.rate).quantize(Decimal("0.01"))
        return Decimal("0")
