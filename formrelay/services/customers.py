"""
Customer Configuration Store
=============================

Read-only lookup from customer id to ``CustomerConfig``.

Design:
- Lookups never create configs; an unknown id raises ``CustomerNotFound``
- ``validate_customer_config`` cross-checks a config against the endpoint
  registry and the rule tables; the orchestrator runs it for every customer
  at construction
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from formrelay.core.exceptions import ConfigurationError, CustomerNotFound
from formrelay.core.types import CustomerConfig, EndpointOverride, FieldCondition, FieldOverride
from formrelay.services import field_rules as fr
from formrelay.services.endpoints import EndpointRegistry


class CustomerConfigStore:
    """Static customer id → config mapping."""

    def __init__(self, configs: Iterable[CustomerConfig]):
        self._configs: dict[str, CustomerConfig] = {c.customer_id: c for c in configs}

    def lookup(self, customer_id: str) -> CustomerConfig:
        try:
            return self._configs[customer_id]
        except KeyError:
            raise CustomerNotFound(customer_id) from None

    def customer_ids(self) -> list[str]:
        return list(self._configs)

    def __contains__(self, customer_id: object) -> bool:
        return customer_id in self._configs

    def __iter__(self) -> Iterator[CustomerConfig]:
        return iter(self._configs.values())

    def __len__(self) -> int:
        return len(self._configs)


def _check_overrides(overrides: Mapping[str, FieldOverride], where: str) -> None:
    fr.require_known_fields(overrides, where)
    for name, override in overrides.items():
        if override.depends_on is not None:
            fr.require_known_fields([override.depends_on.field], f"{where} dependency of {name}")


def validate_customer_config(customer: CustomerConfig, registry: EndpointRegistry) -> None:
    """Raise ``ConfigurationError`` if the config names an unknown endpoint or field."""
    where = f"Customer {customer.customer_id}"
    for name in customer.enabled_endpoints:
        if name not in registry:
            raise ConfigurationError(f"{where} enables unknown endpoint {name}")
    for name, override in customer.endpoint_overrides.items():
        if name not in registry:
            raise ConfigurationError(f"{where} overrides unknown endpoint {name}")
        scope = f"{where} / {name}"
        fr.require_known_fields(override.field_mappings, scope)
        fr.require_known_fields(override.validation_rules, scope)
        _check_overrides(override.field_overrides, scope)
        if override.enabled_when is not None:
            fr.require_known_fields([override.enabled_when.field], f"{scope} enable condition")
    _check_overrides(customer.default_field_overrides, where)


# ── Default customers ──────────────────────────────────────────────
# Webhook URLs and secrets below are placeholders.


_adult = fr.minimum_age(fr.MIN_AGE_YEARS, "Customer must be at least 18 years old")


def _credit_in_range(value: Any) -> str | None:
    if isinstance(value, (int, float)) and 300 <= value <= 850:
        return None
    return "Credit score must be between 300 and 850"


def _consent_given(value: Any) -> str | None:
    return None if value is True else "Consent must be given"


DEFAULT_CUSTOMERS: tuple[CustomerConfig, ...] = (
    CustomerConfig(
        customer_id="CUST001",
        enabled_endpoints=(
            "CustomerProfileAPI",
            "AddressVerificationService",
            "CreditCheckSystem",
            "ProductCatalogService",
            "DocumentStorageService",
            "WebhookEndpoint",
        ),
        endpoint_overrides={
            "CustomerProfileAPI": EndpointOverride(
                field_mappings={"personalName": ("firstName", "lastName")},
                field_overrides={"dateOfBirth": FieldOverride(validation=_adult)},
            ),
            "CreditCheckSystem": EndpointOverride(
                field_overrides={"creditScore": FieldOverride(validation=_credit_in_range)},
            ),
            "ProductCatalogService": EndpointOverride(
                additional_fields={"market": "US", "channel": "DIRECT"},
            ),
            "DocumentStorageService": EndpointOverride(
                additional_fields={"storageType": "SECURE", "retention": "STANDARD"},
            ),
            "WebhookEndpoint": EndpointOverride(
                additional_fields={
                    "webhookUrl": "https://webhook.example.com/hooks/cust001",
                    "secret": "your-webhook-secret",
                },
            ),
        },
        default_field_overrides={
            "consentGiven": FieldOverride(required=True, validation=_consent_given),
        },
    ),
    CustomerConfig(
        customer_id="CUST002",
        enabled_endpoints=(
            "ProductCatalogService",
            "RequestProcessingQueue",
            "CommunicationPreferencesAPI",
            "DocumentStorageService",
            "WebhookEndpoint",
        ),
        endpoint_overrides={
            "ProductCatalogService": EndpointOverride(
                field_overrides={
                    "productCategory": FieldOverride(
                        depends_on=FieldCondition("incomeRange", lambda v: v != "$0-$25k"),
                    ),
                },
                additional_fields={"market": "EU", "channel": "PARTNER"},
            ),
            "CommunicationPreferencesAPI": EndpointOverride(
                additional_fields={"language": "en", "timezone": "UTC"},
            ),
            "DocumentStorageService": EndpointOverride(
                additional_fields={"storageType": "STANDARD", "retention": "EXTENDED"},
            ),
            "WebhookEndpoint": EndpointOverride(
                additional_fields={
                    "webhookUrl": "https://webhook.example.com/hooks/cust002",
                    "secret": "your-webhook-secret",
                },
            ),
        },
    ),
)


def default_store() -> CustomerConfigStore:
    return CustomerConfigStore(DEFAULT_CUSTOMERS)
