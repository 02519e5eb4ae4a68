"""Request bodies accepted by the HTTP boundary."""

from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, Field, field_validator

from certmail.delivery import DEFAULT_CERTIFICATE_SUBJECT, DeliveryJob, is_valid_email
from certmail.payload import EncodedDocument
from certmail.templating import EmailType

PDF_DATA_URL_PREFIX = "data:application/pdf;base64,"


def _require_email(v: str) -> str:
    v = v.strip()
    if not is_valid_email(v):
        raise ValueError("Invalid email format")
    return v


def _require_text(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError("must not be empty")
    return v


EmailAddress = Annotated[str, AfterValidator(_require_email)]

RequiredText = Annotated[str, AfterValidator(_require_text)]


class CertificateEmailRequest(BaseModel):
    """Body of POST /send-certificate-email.

    Attributes:
        to: Recipient address
        subject: Email subject
        message: Optional personal note shown in the body
        participant_name: Name printed in the greeting and the filename
        certificate_number: Identifier shown in the body and used for status tracking
        certificate_url: PDF as a data URL
    """

    to: EmailAddress
    subject: str = DEFAULT_CERTIFICATE_SUBJECT
    message: Optional[str] = None
    participant_name: RequiredText
    certificate_number: Optional[str] = None
    certificate_url: str

    @field_validator("certificate_url")
    @classmethod
    def validate_certificate_url(cls, v: str) -> str:
        """Only the shape is checked here; payload integrity is checked when the job runs."""
        if not v.startswith(PDF_DATA_URL_PREFIX):
            raise ValueError(f"Invalid certificate URL format, must start with {PDF_DATA_URL_PREFIX}")
        return v

    def to_job(self) -> DeliveryJob:
        return DeliveryJob(
            recipient=self.to,
            participant_name=self.participant_name,
            subject=self.subject or DEFAULT_CERTIFICATE_SUBJECT,
            note=self.message,
            document=EncodedDocument.from_data_url(self.certificate_url),
            certificate_number=self.certificate_number,
        )


class ParticipantEmailRequest(BaseModel):
    """Body of POST /send-participant-email."""

    to: EmailAddress
    subject: RequiredText
    content: RequiredText
    participant_name: RequiredText
    email_type: EmailType = EmailType.CUSTOM

    def to_job(self) -> DeliveryJob:
        return DeliveryJob(
            recipient=self.to,
            participant_name=self.participant_name,
            subject=self.subject,
            note=self.content,
            email_type=self.email_type.value,
        )


class BulkRecipient(BaseModel):
    """One addressee of a bulk message."""

    to: EmailAddress
    participant_name: RequiredText


class BulkEmailRequest(BaseModel):
    """Body of POST /send-bulk-email."""

    recipients: list[BulkRecipient] = Field(min_length=1)
    subject: RequiredText
    content: RequiredText
    email_type: EmailType = EmailType.CUSTOM

    def to_jobs(self) -> list[DeliveryJob]:
        return [
            DeliveryJob(
                recipient=recipient.to,
                participant_name=recipient.participant_name,
                subject=self.subject,
                note=self.content,
                email_type=self.email_type.value,
            )
            for recipient in self.recipients
        ]


class CertificateValidationRequest(BaseModel):
    """Body of POST /test-certificate-validation."""

    certificate_url: str
    participant_name: str = ""
