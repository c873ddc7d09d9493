"""
formrelay command line.

    formrelay demo [--customer CUST001] [--base-url URL] [--fail-with 500]
    formrelay serve [--host H] [--port P]
    formrelay mock-server [--port P]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

import httpx
import uvicorn

from formrelay.api.deps import build_runtime
from formrelay.api.mock_server import create_mock_app
from formrelay.core.config import settings
from formrelay.core.exceptions import FormRelayException
from formrelay.core.types import Submission
from formrelay.infra.telemetry import get_logger, setup_logging

logger = get_logger(__name__)

MOCK_BASE_URL = "http://mock.local/api"

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


async def run_demo(args: argparse.Namespace) -> int:
    update: dict[str, Any] = {
        "MAX_RETRIES": args.retries,
        "RETRY_BASE_DELAY_S": args.base_delay,
        "RATE_LIMIT_PER_MINUTE": None,
    }
    client: httpx.AsyncClient | None = None
    if args.base_url:
        update["API_BASE_URL"] = args.base_url
    else:
        mock = create_mock_app()
        if args.fail_with:
            mock.state.fail_with = args.fail_with
        client = httpx.AsyncClient(transport=httpx.ASGITransport(app=mock))
        update["API_BASE_URL"] = MOCK_BASE_URL

    runtime = build_runtime(settings.model_copy(update=update), client=client)
    orchestrator = runtime.orchestrator
    try:
        submission = Submission.from_form(EXAMPLE_FORM, customer_id=args.customer)
        item_ids = await orchestrator.submit(submission, args.customer)
        idle = await orchestrator.wait_idle(timeout_s=args.timeout)
        report = {
            "idle": idle,
            "status": orchestrator.status().to_dict(),
            "records": [r.to_dict() for i in item_ids if (r := orchestrator.record(i)) is not None],
        }
        print(json.dumps(report, indent=2, default=str))
        failed = [r for r in report["records"] if r["state"] != "succeeded"]
        return 1 if failed or not idle else 0
    except FormRelayException as e:
        logger.error("demo_failed", error_code=e.error_code, detail=e.detail)
        return 2
    finally:
        await runtime.aclose()
        if client is not None:
            await client.aclose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="formrelay", description="Form submission dispatch engine")
    parser.add_argument("--log-level", default=settings.LOG_LEVEL, help="Root log level")
    sub = parser.add_subparsers(dest="command", required=True)

    demo = sub.add_parser("demo", help="Submit the example form and print the outcome")
    demo.add_argument("--customer", default="CUST001", help="Customer configuration to use")
    demo.add_argument("--base-url", default=None, help="Downstream base URL (default: in-process mock)")
    demo.add_argument("--fail-with", type=int, default=None, help="Make the in-process mock answer with this status")
    demo.add_argument("--retries", type=int, default=2, help="Retries per endpoint")
    demo.add_argument("--base-delay", type=float, default=0.1, help="Backoff base delay in seconds")
    demo.add_argument("--timeout", type=float, default=30.0, help="Seconds to wait for the engine to go idle")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=settings.HOST)
    serve.add_argument("--port", type=int, default=settings.PORT)

    mock = sub.add_parser("mock-server", help="Run the mock downstream endpoints")
    mock.add_argument("--host", default="127.0.0.1")
    mock.add_argument("--port", type=int, default=3000)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=args.log_level, json_output=settings.ENVIRONMENT != "development", log_dir=settings.LOG_DIR)

    if args.command == "demo":
        return asyncio.run(run_demo(args))
    if args.command == "serve":
        uvicorn.run("formrelay.api.main:app", host=args.host, port=args.port, log_level=args.log_level.lower())
        return 0
    if args.command == "mock-server":
        uvicorn.run(create_mock_app(), host=args.host, port=args.port, log_level=args.log_level.lower())
        return 0
    return 2


if __name__ == "__main__":
    sys.exit(main())
