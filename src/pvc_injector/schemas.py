from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from .models import ObjectStoreSource, ProvisioningRequest, VolumeTarget

# Leaves room for the "-injector" suffix within the 63 character label limit.
_NAME_MAX_LENGTH = 54
_DNS_LABEL_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"


class SizeRequestBody(BaseModel):
    s3_endpoint: str = Field(min_length=1)
    s3_ssl: bool = False
    s3_bucket: str = Field(min_length=1)
    s3_prefix: str = ""
    s3_key: str = ""
    s3_secret: str = ""

    @field_validator("s3_endpoint")
    @classmethod
    def validate_endpoint(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("endpoint is required")
        if "://" in value:
            raise ValueError("endpoint must be host[:port] without a scheme")
        if any(char.isspace() for char in value):
            raise ValueError("endpoint must not contain whitespace")
        return value

    def to_source(self) -> ObjectStoreSource:
        return ObjectStoreSource(
            endpoint=self.s3_endpoint.strip(),
            use_tls=self.s3_ssl,
            bucket=self.s3_bucket.strip(),
            prefix=self.s3_prefix,
            access_key=self.s3_key,
            secret_key=self.s3_secret,
        )


class TargetBody(BaseModel):
    namespace: str = Field(min_length=1, max_length=63, pattern=_DNS_LABEL_PATTERN)
    name: str = Field(min_length=1, max_length=_NAME_MAX_LENGTH, pattern=_DNS_LABEL_PATTERN)


class CreateRequestBody(SizeRequestBody, TargetBody):
    storage_class: str = ""

    def to_request(self) -> ProvisioningRequest:
        return ProvisioningRequest(
            source=self.to_source(),
            target=VolumeTarget(
                namespace=self.namespace,
                name=self.name,
                storage_class=self.storage_class.strip(),
            ),
        )


class SizeResponse(BaseModel):
    objects: int
    bytes: int


class StatusResponse(BaseModel):
    job_has_error: bool
    job_error: str
    job_phase: str
    claim_has_error: bool
    claim_error: str
    claim_name: str
    claim_phase: str
    claim_capacity: str
    workflow_state: str
    workflow_step: str
    workflow_error: str
