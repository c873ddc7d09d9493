"""Shared fixtures: an in-process transport fake and small dispatch configs."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Mapping
from typing import Any

import pytest
from prometheus_client import CollectorRegistry

from formrelay.core.config import DispatchConfig
from formrelay.core.types import (
    CustomerConfig,
    EndpointConfig,
    Submission,
    WorkItem,
)
from formrelay.infra.runtime.orchestrator import DispatchOrchestrator
from formrelay.infra.telemetry.metrics import MetricsCollector
from formrelay.services.customers import CustomerConfigStore
from formrelay.services.endpoints import EndpointRegistry
from formrelay.services.transport import DeliveryResponse

EXAMPLE_FORM: dict[str, Any] = {
    "personalName": "John Doe",
    "customerID": "CUST12345",
    "emailAddress": "john.doe@example.com",
    "phoneNumber": "555-123-4567",
    "dateOfBirth": "1980-01-15",
    "currentAddress": "123 Main St, City, State 12345",
    "mailingAddress": "123 Main St, City, State 12345",
    "employmentStatus": "Employed",
    "incomeRange": "$50k-$75k",
    "creditScore": 720,
    "productCategory": "Loans",
    "requestDate": "2023-04-15",
    "priorityLevel": "Medium",
    "preferredContactMethod": "Email",
    "accountType": "Personal",
    "documentType": "Application",
    "documentID": "DOC78901",
    "approvalStatus": "Pending",
    "processingNotes": "Standard processing",
    "consentGiven": True,
    "marketingOptIn": True,
    "lastUpdated": "2023-04-15T14:30:00Z",
    "agentID": "AGT456",
    "deviceType": "Desktop",
    "ipAddress": "192.168.1.1",
}

ECHO = EndpointConfig(
    name="EchoService",
    path="/echo",
    required_fields=("customerID", "emailAddress"),
)


class FakeTransport:
    """Records every post; answers from a scripted status list, then ``default_status``.

    Set ``gate`` to an unset ``asyncio.Event`` to hold deliveries in flight.
    """

    def __init__(self, statuses: list[int] | None = None, default_status: int = 200):
        self.calls: list[dict[str, Any]] = []
        self.statuses = list(statuses or [])
        self.default_status = default_status
        self.gate: asyncio.Event | None = None
        self.active = 0
        self.max_active = 0
        self.raise_with: Exception | None = None

    async def post(
        self,
        url: str,
        payload: Mapping[str, Any],
        headers: Mapping[str, str],
        timeout_s: float,
    ) -> DeliveryResponse:
        self.calls.append({"url": url, "payload": dict(payload), "headers": dict(headers)})
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.raise_with is not None:
                raise self.raise_with
            status = self.statuses.pop(0) if self.statuses else self.default_status
        finally:
            self.active -= 1
        return DeliveryResponse(status_code=status, body={"status": "success" if status < 400 else "error"})


async def wait_until(predicate: Callable[[], bool], timeout_s: float = 2.0) -> None:
    deadline = time.monotonic() + timeout_s
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def example_form() -> dict[str, Any]:
    return dict(EXAMPLE_FORM)


@pytest.fixture
def echo_customer() -> CustomerConfig:
    return CustomerConfig(customer_id="CUSTTEST", enabled_endpoints=("EchoService",))


@pytest.fixture
def make_item(echo_customer: CustomerConfig) -> Callable[..., WorkItem]:
    def factory(
        priority: int = 1,
        form: Mapping[str, Any] | None = None,
        customer: CustomerConfig | None = None,
        endpoint: EndpointConfig = ECHO,
    ) -> WorkItem:
        submission = Submission.from_form(
            form if form is not None else {"customerID": "CUST0001", "emailAddress": "jane@example.com"},
            customer_id="CUSTTEST",
        )
        return WorkItem(
            submission=submission,
            customer=customer or echo_customer,
            endpoint=endpoint,
            priority=priority,
        )

    return factory


@pytest.fixture
def make_orchestrator(
    transport: FakeTransport,
    metrics: MetricsCollector,
    echo_customer: CustomerConfig,
) -> Callable[..., DispatchOrchestrator]:
    def factory(
        customers: list[CustomerConfig] | None = None,
        endpoints: list[EndpointConfig] | None = None,
        **config: Any,
    ) -> DispatchOrchestrator:
        defaults: dict[str, Any] = {
            "max_concurrent": 5,
            "max_workers": 5,
            "max_retries": 2,
            "base_delay_s": 0.01,
            "base_url": "http://downstream.test/api",
        }
        defaults.update(config)
        return DispatchOrchestrator(
            CustomerConfigStore(customers or [echo_customer]),
            EndpointRegistry(endpoints or [ECHO]),
            transport,
            config=DispatchConfig(**defaults),
            metrics=metrics,
        )

    return factory
