"""
tracker_schemas.py - Validated input schemas for the payment tracker

Request payloads (imports, edits, manual entry, settings) arrive as loosely
shaped dicts, from the UI or from a parsed spreadsheet. Each one is validated
here into a typed record, with blank optional fields substituted, before any
store access. Field names are snake_case; the camelCase names used by the
spreadsheet/JSON payloads are accepted as aliases.
"""
import re
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

USERNAME_RE = re.compile(r"^[a-zA-Z0-9_]{3,20}$")


class TrackingStatus(str, Enum):
    """Workflow stage of an insurance payment."""

    PENDING = "PENDING"
    RECORDED = "RECORDED"
    NOTIFIED = "NOTIFIED"
    COLLECTED = "COLLECTED"


def _blank(value):
    if value is None:
        return ""
    return str(value).strip()


def _to_cents(v):
    """Parse a money value (number or "$1,234.50" text) to a Decimal rounded to cents."""
    if isinstance(v, float):
        v = round(v, 2)
    if isinstance(v, str):
        v = v.replace(",", "").replace("$", "").strip()
    try:
        return Decimal(str(v)).quantize(Decimal("0.01"))
    except InvalidOperation:
        raise ValueError(f"'{v}' is not a valid amount")


class _Schema(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class InsurancePaymentIn(_Schema):
    """One insurance remittance line as imported."""

    claim_status: str = Field("", alias="claimStatus")
    dates_of_service: str = Field("", alias="datesOfService")
    member_subscriber_id: str = Field("", alias="memberSubscriberID")
    provider_name: str = Field("", alias="providerName")
    payment_date: str = Field("", alias="paymentDate")
    claim_number: str = Field("", alias="claimNumber")
    check_number: str = Field("", alias="checkNumber")
    check_eft_amount: Decimal = Field(Decimal("0"), alias="checkEFTAmount", ge=0, decimal_places=2)
    payee_name: str = Field("Unknown", alias="payeeName")
    payee_address: str = Field("", alias="payeeAddress")
    tracking_status: TrackingStatus = Field(TrackingStatus.PENDING, alias="trackingStatus")

    @field_validator("claim_status", "dates_of_service", "member_subscriber_id", "provider_name",
                     "payment_date", "claim_number", "check_number", "payee_address", mode="before")
    @classmethod
    def blank_to_empty(cls, v):
        return _blank(v)

    @field_validator("payee_name", mode="before")
    @classmethod
    def default_payee(cls, v):
        return _blank(v) or "Unknown"

    @field_validator("check_eft_amount", mode="before")
    @classmethod
    def parse_amount(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return Decimal("0")
        return _to_cents(v)


class InsurancePaymentUpdate(_Schema):
    """Field edit of an insurance payment; only the fields given are changed."""

    claim_status: Optional[str] = Field(None, alias="claimStatus")
    dates_of_service: Optional[str] = Field(None, alias="datesOfService")
    member_subscriber_id: Optional[str] = Field(None, alias="memberSubscriberID")
    provider_name: Optional[str] = Field(None, alias="providerName")
    payment_date: Optional[str] = Field(None, alias="paymentDate")
    claim_number: Optional[str] = Field(None, alias="claimNumber")
    check_number: Optional[str] = Field(None, alias="checkNumber")
    check_eft_amount: Optional[Decimal] = Field(None, alias="checkEFTAmount", ge=0)
    payee_name: Optional[str] = Field(None, alias="payeeName", min_length=1)
    payee_address: Optional[str] = Field(None, alias="payeeAddress")
    tracking_status: Optional[TrackingStatus] = Field(None, alias="trackingStatus")

    @field_validator("check_eft_amount", mode="before")
    @classmethod
    def parse_amount(cls, v):
        if v is None:
            return None
        return _to_cents(v)


class VenmoPaymentIn(_Schema):
    """A patient-paid amount, entered by hand or mapped from a statement."""

    patient_name: str = Field(..., alias="patientName", min_length=1)
    member_subscriber_id: str = Field("", alias="memberSubscriberID")
    amount: Decimal = Field(..., alias="amount", ge=0)
    date: str = Field(..., alias="date", min_length=1)
    notes: str = Field("", alias="notes")

    @field_validator("member_subscriber_id", "notes", mode="before")
    @classmethod
    def blank_to_empty(cls, v):
        return _blank(v)

    @field_validator("amount", mode="before")
    @classmethod
    def parse_amount(cls, v):
        if isinstance(v, float):
            v = round(v, 2)
        if isinstance(v, str):
            v = v.replace(",", "").replace("$", "").strip()
        return v


class SettingsIn(_Schema):
    ignored_addresses: List[str] = Field(..., alias="ignoredAddresses")

    @field_validator("ignored_addresses")
    @classmethod
    def clean(cls, v):
        seen = {}
        for address in v:
            address = address.strip()
            if address and address.lower() not in seen:
                seen[address.lower()] = address
        return list(seen.values())


class RegisterIn(_Schema):
    username: str
    password: str = Field(..., min_length=1)
    name: str = ""

    @field_validator("username")
    @classmethod
    def check_username(cls, v):
        if not USERNAME_RE.match(v):
            raise ValueError("Username must be 3-20 characters: letters, numbers and underscores only")
        return v
