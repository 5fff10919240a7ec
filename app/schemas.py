"""Request bodies for the referral endpoints."""
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, field_validator


class _ContactDetails(BaseModel):
    email: Optional[EmailStr] = None

    @field_validator("email", mode="before")
    @classmethod
    def blank_email_is_none(cls, v):
        # Cleared form fields arrive as empty strings
        if isinstance(v, str) and not v.strip():
            return None
        return v.strip() if isinstance(v, str) else v


class ApplyPatientInput(_ContactDetails):
    """Name emptiness is checked by the apply engine so whitespace-only names fail the same way."""
    full_name: str = ""
    date_of_birth: Optional[str] = None
    sex: Optional[str] = None
    medicare: Optional[str] = None
    mrn: Optional[str] = None
    urn: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None


class ApplyGpInput(_ContactDetails):
    full_name: str = ""
    practice_name: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    fax: Optional[str] = None
    provider_number: Optional[str] = None


class ApplyReferrerInput(_ContactDetails):
    full_name: str = ""
    specialty: Optional[str] = None
    organisation: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    fax: Optional[str] = None


class ApplyReferralContextInput(BaseModel):
    reason_for_referral: Optional[str] = None
    key_problems: List[str] = []
    investigations_mentioned: List[str] = []
    medications_mentioned: List[str] = []
    urgency: Optional[str] = None
    referral_date: Optional[str] = None


class ApplyReferralInput(BaseModel):
    """Reviewed (possibly edited) extraction result to commit. Omitted sections are not committed."""
    patient: ApplyPatientInput
    gp: Optional[ApplyGpInput] = None
    referrer: Optional[ApplyReferrerInput] = None
    referral_context: Optional[ApplyReferralContextInput] = None
    consultation_id: Optional[UUID] = None
