"""Built-in wizard flows.

Each flow is a fixed, ordered tuple of steps known at build time.  Step
numbers are 1-based; `order` mirrors the position in the tuple.
"""

from dataclasses import dataclass
from decimal import Decimal

from fleetwizard.middleware.exceptions import InvalidStep, ResourceNotFoundError
from fleetwizard.services.validation import (
    WARNING,
    DateOrder,
    LinesAssigned,
    MinLines,
    MustBeTrue,
    Pattern,
    Percentage,
    Range,
    Required,
    RequiredUnless,
    RequiredWhen,
    RequiresTrue,
    StepDefinition,
)


@dataclass(frozen=True)
class Flow:
    name: str
    steps: tuple[StepDefinition, ...]

    @property
    def step_count(self) -> int:
        return len(self.steps)

    def step(self, number: int) -> StepDefinition:
        if not 1 <= number <= self.step_count:
            raise InvalidStep(number)
        return self.steps[number - 1]

    def number_of(self, step_id: str) -> int:
        for index, step in enumerate(self.steps, start=1):
            if step.id == step_id:
                return index
        raise InvalidStep(step_id)


# ── Reservation (header → rates → lines → review) ───────────

RESERVATION_FLOW = Flow(
    name="reservation",
    steps=(
        StepDefinition(
            id="header",
            order=1,
            title="Reservation details",
            rules=(
                Required("reservation_method_id", "Reservation method is required"),
                Required("reservation_type_id", "Reservation type is required"),
                Required("customer_id", "Customer is required"),
                Required("price_list_id", "Price list is required"),
                DateOrder("entry_date", "validity_date_to", "Validity date must be after entry date"),
                RequiredWhen("billing_customer_name", "billing_type", ("OTHER",),
                             "Customer name is required for billing"),
                RequiredWhen("billing_email", "billing_type", ("OTHER",),
                             "Email is required for billing"),
                Pattern("billing_email"),
            ),
        ),
        StepDefinition(
            id="rates",
            order=2,
            title="Rates & taxes",
            rules=(
                Percentage("discount_value", message="Discount percentage must be between 0 and 100"),
                Range("advance_payment", minimum=Decimal("0"), message="Advance payment cannot be negative"),
            ),
        ),
        StepDefinition(
            id="lines",
            order=3,
            title="Reservation lines",
            rules=(
                MinLines(1),
                LinesAssigned(),
            ),
        ),
        StepDefinition(
            id="review",
            order=4,
            title="Review & confirm",
            rules=(
                MustBeTrue("terms_accepted", "Terms and conditions must be accepted"),
                RequiresTrue("signature", "terms_accepted", "Accept the terms before signing"),
            ),
        ),
    ),
)


# ── Agreement (source → … → review) ─────────────────────────

AGREEMENT_FLOW = Flow(
    name="agreement",
    steps=(
        StepDefinition(
            id="source",
            order=1,
            title="Source",
            rules=(
                Required("source", "Please select an agreement source"),
                RequiredUnless("source_id", "source", ("direct", None, ""),
                               "Please select a reservation or booking to convert"),
            ),
        ),
        StepDefinition(
            id="details",
            order=2,
            title="Agreement details",
            rules=(
                Required("customer_id", "Please select a customer"),
                Required("agreement_type", "Please select an agreement type"),
                Required("pickup_location_id", "Please select pickup location"),
                Required("dropoff_location_id", "Please select drop-off location"),
                Required("pickup_at", "Please select pickup date and time"),
                Required("dropoff_at", "Please select drop-off date and time"),
                DateOrder("pickup_at", "dropoff_at", "Drop-off must be after pickup"),
                Required("mileage_package", "Please select a mileage package"),
                RequiredWhen("included_km", "mileage_package", ("limited",),
                             "Please specify included kilometers"),
                RequiredWhen("excess_km_rate", "mileage_package", ("limited",),
                             "Please specify excess km rate"),
            ),
        ),
        StepDefinition(
            id="inspection",
            order=3,
            title="Vehicle inspection",
            rules=(
                Required("fuel_level", "Please set fuel level (0-100%)"),
                Percentage("fuel_level", message="Please set fuel level (0-100%)"),
                Required("odometer_reading", "Please enter a valid odometer reading"),
                Range("odometer_reading", minimum=Decimal("0"), exclusive_minimum=True,
                      message="Please enter a valid odometer reading"),
                Required("odometer_photo", "Odometer photo not captured", severity=WARNING),
                Required("fuel_gauge_photo", "Fuel gauge photo not captured", severity=WARNING),
            ),
        ),
        StepDefinition(
            id="pricing",
            order=4,
            title="Pricing",
            rules=(
                Required("insurance_package", "Please select an insurance package"),
                Range("excess_amount", minimum=Decimal("0"), message="Please set insurance excess amount"),
                Percentage("discount_percent", message="Discount percentage must be between 0 and 100"),
                RequiredWhen("discount_reason", "has_discount", (True,),
                             "Discount applied without reason", severity=WARNING),
            ),
        ),
        StepDefinition(id="addons", order=5, title="Add-ons"),
        StepDefinition(
            id="billing",
            order=6,
            title="Billing",
            rules=(
                Required("payment_method", "Please select a payment method"),
                Range("deposit_amount", minimum=Decimal("0"), message="Deposit cannot be negative"),
            ),
        ),
        StepDefinition(id="documents", order=7, title="Documents"),
        StepDefinition(
            id="signature",
            order=8,
            title="Terms & signature",
            rules=(
                MustBeTrue("terms_accepted", "Terms and conditions must be accepted"),
                RequiresTrue("signature", "terms_accepted", "Accept the terms before signing"),
            ),
        ),
        StepDefinition(id="review", order=9, title="Final review"),
    ),
)


FLOWS: dict[str, Flow] = {
    RESERVATION_FLOW.name: RESERVATION_FLOW,
    AGREEMENT_FLOW.name: AGREEMENT_FLOW,
}


def get_flow(name: str) -> Flow:
    try:
        return FLOWS[name]
    except KeyError:
        raise ResourceNotFoundError("Flow", name) from None
