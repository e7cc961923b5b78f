"""
Input validation utilities for the ingestion pipeline.

Provides reusable validation functions for tenant ids, batch ids and
clinical resource identifiers so malformed identifiers never reach storage
keys, queue topics or SQL parameters.
"""

import re

from fhir_rag_ingestion.core.errors import ValidationError

_TENANT_ID_RE = re.compile(r"[a-zA-Z0-9][a-zA-Z0-9_\-\.]*")
# FHIR logical ids: [A-Za-z0-9\-\.]{1,64}
_RESOURCE_ID_RE = re.compile(r"[A-Za-z0-9\-\.]{1,64}")
# FHIR resource type names are PascalCase identifiers
_RESOURCE_TYPE_RE = re.compile(r"[A-Z][A-Za-z]{0,63}")


def validate_tenant_id(tenant_id: str, field_name: str = "tenant_id") -> str:
    """
    Validate a tenant ID.

    Tenant IDs must be non-empty strings of alphanumerics, hyphens,
    underscores and dots, starting with an alphanumeric.

    Args:
        tenant_id: The tenant ID to validate
        field_name: Name of the field (for error messages)

    Returns:
        The validated tenant ID (stripped of whitespace)

    Raises:
        ValidationError: If validation fails

    Examples:
        >>> validate_tenant_id("org-acme")
        'org-acme'
    """
    if not tenant_id or not isinstance(tenant_id, str):
        raise ValidationError(f"{field_name} must be a non-empty string")

    tenant_id = tenant_id.strip()

    if not tenant_id:
        raise ValidationError(f"{field_name} cannot be empty or whitespace-only")

    if not _TENANT_ID_RE.fullmatch(tenant_id):
        raise ValidationError(
            f"{field_name} contains invalid characters. "
            "Only alphanumeric, hyphens, underscores, and dots are allowed."
        )

    if len(tenant_id) > 128:
        raise ValidationError(f"{field_name} exceeds maximum length of 128 characters")

    return tenant_id


def validate_batch_id(batch_id: str, field_name: str = "batch_id") -> str:
    """Validate a batch ID. Same character rules as tenant IDs."""
    return validate_tenant_id(batch_id, field_name=field_name)


def validate_resource_type(resource_type: object) -> str:
    if not isinstance(resource_type, str) or not resource_type:
        raise ValidationError("resourceType must be a non-empty string")
    if not _RESOURCE_TYPE_RE.fullmatch(resource_type):
        raise ValidationError(f"resourceType '{resource_type}' is not a valid resource type name")
    return resource_type


def validate_resource_id(resource_id: object) -> str:
    if not isinstance(resource_id, str) or not resource_id:
        raise ValidationError("id must be a non-empty string")
    if not _RESOURCE_ID_RE.fullmatch(resource_id):
        raise ValidationError(
            f"id '{resource_id[:80]}' is invalid. "
            "Only alphanumeric, hyphens, and dots are allowed (max 64 characters)."
        )
    return resource_id


def validate_limit(limit: int, max_limit: int = 10000) -> int:
    """
    Validate a query limit.

    Raises:
        ValidationError: If limit is not a positive integer or exceeds max_limit
    """
    if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1:
        raise ValidationError("limit must be a positive integer")
    if limit > max_limit:
        raise ValidationError(f"limit exceeds maximum of {max_limit}")
    return limit
