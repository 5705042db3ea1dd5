"""
Category Payloads - Per-category required fields for a service request.

Every category validates its opaque payload into one of these models before
any money moves. The validated model also names the priced service code and,
for PIN orders, the inventory pool the request draws from.
"""

from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from fulfillment.exceptions import InvalidPayloadError
from fulfillment.models.api import ServiceCategory

ELEVEN_DIGITS = r"^[0-9]{11}$"
PHONE_DIGITS = r"^\+?[0-9]{10,15}$"

ExamType = Literal["waec", "neco", "nabteb", "nbais"]


class CategoryPayload(BaseModel, ABC):
    """Base for all category payloads."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    customer_notes: str | None = Field(None, max_length=2000)

    @property
    @abstractmethod
    def service_code(self) -> str:
        """Priced service code, e.g. bvn_retrieval or waec_pin."""

    @property
    def inventory_pool(self) -> str | None:
        """Inventory pool the request consumes from, None for agent work."""
        return None

    def processed_amount_minor(self, fee_minor: int) -> int:
        """Amount credited to the fulfilling agent's processed total."""
        return fee_minor


class IdentityPayload(CategoryPayload):
    """NIN validation, IPE clearance and NIN personalization."""

    service_type: Literal["nin_validation", "ipe_clearance", "nin_personalization"]
    nin: str | None = Field(None, pattern=ELEVEN_DIGITS)
    tracking_id: str | None = Field(None, min_length=5, max_length=50)

    @model_validator(mode="after")
    def require_identifiers(self) -> "IdentityPayload":
        if self.service_type in ("nin_validation", "nin_personalization") and not self.nin:
            raise ValueError(f"nin is required for {self.service_type}")
        if self.service_type in ("ipe_clearance", "nin_personalization") and not self.tracking_id:
            raise ValueError(f"tracking_id is required for {self.service_type}")
        return self

    @property
    def service_code(self) -> str:
        return self.service_type


class BVNPayload(CategoryPayload):
    """BVN retrieval, digital card and modification."""

    service_type: Literal["retrieval", "digital_card", "modification"] = "retrieval"
    bvn: str = Field(..., pattern=ELEVEN_DIGITS)
    phone: str | None = Field(None, pattern=PHONE_DIGITS)

    @property
    def service_code(self) -> str:
        return f"bvn_{self.service_type}"


class EducationPayload(CategoryPayload):
    """Exam result check performed by an education agent."""

    exam_body: Literal["jamb", "waec", "neco", "nabteb", "nbais"]
    registration_number: str = Field(..., min_length=5, max_length=50)
    exam_year: int = Field(..., ge=2000)

    @field_validator("exam_year")
    @classmethod
    def validate_exam_year(cls, v: int) -> int:
        """Exam year cannot be in the future."""
        current_year = datetime.now(UTC).year
        if v > current_year:
            raise ValueError(f"exam_year cannot be after {current_year}")
        return v

    @property
    def service_code(self) -> str:
        return f"{self.exam_body}_result"


class CACPayload(CategoryPayload):
    """Business registration filed by a CAC agent."""

    service_type: Literal["business_name", "limited_company", "incorporated_trustees"]
    proposed_names: list[str] = Field(..., min_length=1, max_length=3)
    business_nature: str = Field(..., min_length=3, max_length=500)

    @field_validator("proposed_names")
    @classmethod
    def validate_proposed_names(cls, v: list[str]) -> list[str]:
        names = [name.strip() for name in v]
        if any(not name for name in names):
            raise ValueError("proposed_names cannot contain empty names")
        return names

    @property
    def service_code(self) -> str:
        return f"cac_{self.service_type}"


class AirtimeToCashPayload(CategoryPayload):
    """Airtime conversion settled to a bank account by an agent."""

    network: Literal["mtn", "airtel", "glo", "9mobile"]
    phone_number: str = Field(..., pattern=PHONE_DIGITS)
    airtime_amount_minor: int = Field(..., gt=0)
    bank_name: str = Field(..., min_length=2, max_length=100)
    account_number: str = Field(..., pattern=r"^[0-9]{10}$")
    account_name: str = Field(..., min_length=2, max_length=255)

    @property
    def service_code(self) -> str:
        return "airtime_to_cash"

    def processed_amount_minor(self, fee_minor: int) -> int:
        return self.airtime_amount_minor


class PinOrderPayload(CategoryPayload):
    """Scratch-card PIN delivered from inventory."""

    exam_type: ExamType

    @property
    def service_code(self) -> str:
        return f"{self.exam_type}_pin"

    @property
    def inventory_pool(self) -> str:
        return self.exam_type


PAYLOAD_MODELS: dict[ServiceCategory, type[CategoryPayload]] = {
    ServiceCategory.IDENTITY: IdentityPayload,
    ServiceCategory.BVN: BVNPayload,
    ServiceCategory.EDUCATION: EducationPayload,
    ServiceCategory.CAC: CACPayload,
    ServiceCategory.AIRTIME_TO_CASH: AirtimeToCashPayload,
    ServiceCategory.PIN_ORDER: PinOrderPayload,
}

INVENTORY_POOLS: tuple[str, ...] = ("waec", "neco", "nabteb", "nbais")


def _format_errors(exc: ValidationError) -> list[str]:
    errors = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        message = error.get("msg", "invalid")
        errors.append(f"{location}: {message}" if location else message)
    return errors


def validate_payload(category: ServiceCategory, payload: dict[str, Any]) -> CategoryPayload:
    """
    Validate a raw payload against its category schema.

    Raises:
        InvalidPayloadError: payload is missing required fields or malformed
    """
    model = PAYLOAD_MODELS[category]
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise InvalidPayloadError(category.value, _format_errors(e)) from e


def load_payload(category: ServiceCategory, payload: dict[str, Any]) -> CategoryPayload:
    """Rebuild the model for an already stored payload (skips date-relative checks)."""
    return PAYLOAD_MODELS[category].model_construct(**payload)
