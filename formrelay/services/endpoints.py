"""
Endpoint Registry
==================

Static mapping from endpoint name to ``EndpointConfig``.

Design:
- Configs are frozen; the registry is built once and never mutated
- Every field an endpoint names is checked against the rule tables at
  construction, so a typo fails at startup rather than skipping silently
- Transformations here are deterministic; nothing reads the clock
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from formrelay.core.exceptions import ConfigurationError, EndpointNotFound
from formrelay.core.types import EndpointConfig
from formrelay.services import field_rules as fr


class EndpointRegistry:
    """Read-only lookup of endpoint descriptors by name."""

    def __init__(self, configs: Iterable[EndpointConfig]):
        self._configs: dict[str, EndpointConfig] = {}
        for config in configs:
            if config.name in self._configs:
                raise ConfigurationError(f"Duplicate endpoint {config.name}")
            validate_endpoint_config(config)
            self._configs[config.name] = config

    def get(self, name: str) -> EndpointConfig:
        try:
            return self._configs[name]
        except KeyError:
            raise EndpointNotFound(name) from None

    def names(self) -> list[str]:
        return list(self._configs)

    def __contains__(self, name: object) -> bool:
        return name in self._configs

    def __iter__(self) -> Iterator[EndpointConfig]:
        return iter(self._configs.values())

    def __len__(self) -> int:
        return len(self._configs)


def validate_endpoint_config(config: EndpointConfig) -> None:
    """Raise ``ConfigurationError`` for malformed paths or unknown field names."""
    if not config.path.startswith("/"):
        raise ConfigurationError(f"Endpoint {config.name} path must start with '/'")
    where = f"Endpoint {config.name}"
    fr.require_known_fields(config.required_fields, where)
    fr.require_known_fields(config.field_transformations, where)
    fr.require_known_fields(config.validation_rules, where)


# ── Default endpoints ──────────────────────────────────────────────

DEFAULT_ENDPOINTS: tuple[EndpointConfig, ...] = (
    EndpointConfig(
        name="CustomerProfileAPI",
        path="/customer/profile",
        required_fields=("personalName", "customerID", "emailAddress", "phoneNumber", "dateOfBirth"),
        field_transformations={
            "personalName": fr.split_name,
            "dateOfBirth": fr.us_date,
        },
    ),
    EndpointConfig(
        name="AddressVerificationService",
        path="/verify/address",
        required_fields=("customerID", "currentAddress", "mailingAddress"),
        field_transformations={
            "currentAddress": fr.parse_address,
            "mailingAddress": fr.parse_address,
        },
    ),
    EndpointConfig(
        name="CreditCheckSystem",
        path="/credit/check",
        required_fields=("customerID", "incomeRange", "creditScore"),
        field_transformations={"incomeRange": fr.lookup(fr.INCOME_FLOORS)},
    ),
    EndpointConfig(
        name="ProductCatalogService",
        path="/product/catalog",
        required_fields=("productCategory", "customerID"),
        field_transformations={"productCategory": fr.lookup(fr.PRODUCT_CODES)},
    ),
    EndpointConfig(
        name="RequestProcessingQueue",
        path="/request/queue",
        required_fields=("customerID", "requestDate", "priorityLevel", "documentType"),
        field_transformations={
            "priorityLevel": fr.lookup(fr.PRIORITY_CODES),
            "requestDate": fr.iso_date,
        },
    ),
    EndpointConfig(
        name="CommunicationPreferencesAPI",
        path="/communication/preferences",
        required_fields=(
            "customerID",
            "preferredContactMethod",
            "emailAddress",
            "phoneNumber",
            "marketingOptIn",
        ),
        field_transformations={
            "preferredContactMethod": fr.lookup(fr.CONTACT_CODES),
            "marketingOptIn": fr.yes_no,
        },
    ),
    EndpointConfig(
        name="AccountManagementSystem",
        path="/account/manage",
        required_fields=("customerID", "accountType", "lastUpdated"),
        field_transformations={
            "accountType": fr.lookup(fr.ACCOUNT_CODES),
            "lastUpdated": fr.unix_timestamp,
        },
    ),
    EndpointConfig(
        name="DocumentStorageService",
        path="/document/storage",
        required_fields=("customerID", "documentType", "documentID"),
        field_transformations={"documentType": fr.lookup(fr.DOCUMENT_CODES)},
    ),
    EndpointConfig(
        name="ApprovalWorkflowEngine",
        path="/approval/workflow",
        required_fields=("customerID", "approvalStatus", "processingNotes", "agentID"),
        field_transformations={
            "approvalStatus": fr.lookup(fr.APPROVAL_CODES),
            "processingNotes": fr.truncate(200),
        },
    ),
    EndpointConfig(
        name="ConsentManagementService",
        path="/consent/manage",
        required_fields=("customerID", "consentGiven", "lastUpdated"),
        field_transformations={
            "consentGiven": fr.bool_string,
            "lastUpdated": fr.iso_timestamp,
        },
    ),
    EndpointConfig(
        name="AuditLogService",
        path="/audit/log",
        required_fields=("customerID", "lastUpdated", "agentID", "ipAddress"),
        field_transformations={"lastUpdated": fr.iso_timestamp},
    ),
    EndpointConfig(
        name="DeviceTrackingSystem",
        path="/device/track",
        required_fields=("customerID", "deviceType", "ipAddress"),
        field_transformations={"deviceType": fr.lookup(fr.DEVICE_CODES)},
    ),
    EndpointConfig(
        name="EmploymentVerificationAPI",
        path="/employment/verify",
        required_fields=("customerID", "employmentStatus", "incomeRange"),
        field_transformations={
            "employmentStatus": fr.lookup(fr.EMPLOYMENT_CODES),
            "incomeRange": fr.lookup(fr.INCOME_BANDS),
        },
    ),
    EndpointConfig(
        name="MarketingAutomationPlatform",
        path="/marketing/automate",
        required_fields=(
            "customerID",
            "personalName",
            "emailAddress",
            "marketingOptIn",
            "productCategory",
        ),
    ),
    EndpointConfig(
        name="FraudDetectionService",
        path="/fraud/detect",
        required_fields=("customerID", "ipAddress", "deviceType", "requestDate", "creditScore"),
        field_transformations={
            "requestDate": fr.unix_timestamp,
            "creditScore": fr.credit_band,
        },
    ),
    EndpointConfig(
        name="WebhookEndpoint",
        path="/webhook",
        required_fields=("customerID",),
    ),
)


def default_registry() -> EndpointRegistry:
    return EndpointRegistry(DEFAULT_ENDPOINTS)
