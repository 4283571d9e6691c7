"""
AWS inventory, billing and pricing adapter (aioboto3).

Thin boundary over the provider APIs: pagination, bounded timeouts and
translation of botocore failures into ProviderAuthError (never retried) or
ProviderTransientError (retried by the job queue).
"""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, AsyncIterator, Optional

import aioboto3
import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)

from app.shared.core.config import get_settings
from app.shared.core.exceptions import (
    CostwatchException,
    ProviderAuthError,
    ProviderTransientError,
)

logger = structlog.get_logger()

# Botocore handles throttling locally first; the queue retries whatever is left.
BOTO_CONFIG = BotoConfig(
    read_timeout=30,
    connect_timeout=10,
    retries={"max_attempts": 3, "mode": "adaptive"},
)

# Safety limit against unbounded pagination in very large accounts.
MAX_PAGES = 200

AUTH_ERROR_CODES = {
    "AuthFailure",
    "AccessDenied",
    "AccessDeniedException",
    "ExpiredToken",
    "ExpiredTokenException",
    "InvalidAccessKeyId",
    "InvalidClientTokenId",
    "OptInRequired",
    "SignatureDoesNotMatch",
    "UnauthorizedOperation",
    "UnrecognizedClientException",
}

TRANSIENT_ERROR_CODES = {
    "InternalError",
    "InternalFailure",
    "LimitExceededException",
    "RequestLimitExceeded",
    "RequestTimeout",
    "ServiceUnavailable",
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
}

TRANSIENT_BOTO_ERRORS = (
    ConnectTimeoutError,
    ReadTimeoutError,
    EndpointConnectionError,
    ConnectionClosedError,
)


def classify_aws_error(exc: BaseException, operation: str) -> CostwatchException:
    """Map a botocore/timeout failure onto the provider error taxonomy."""
    details = {"operation": operation}
    if isinstance(exc, CostwatchException):
        return exc
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return ProviderTransientError(
            f"AWS {operation} timed out", code="provider_timeout", details=details
        )
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return ProviderAuthError(f"AWS credentials missing for {operation}", details=details)
    if isinstance(exc, TRANSIENT_BOTO_ERRORS):
        return ProviderTransientError(f"AWS {operation} connection failed: {exc}", details=details)
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = str(error.get("Code", "Unknown"))
        status = int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0)
        details.update({"aws_error_code": code, "http_status": status})
        message = f"AWS {operation} failed ({code}): {error.get('Message', '')}".strip()
        if code in AUTH_ERROR_CODES or status in (401, 403):
            return ProviderAuthError(message, details=details)
        if code in TRANSIENT_ERROR_CODES or status == 429 or status >= 500:
            return ProviderTransientError(message, details=details)
        return CostwatchException(message, code="provider_error", retryable=False, details=details)
    if isinstance(exc, BotoCoreError):
        return ProviderTransientError(f"AWS {operation} failed: {exc}", details=details)
    return CostwatchException(
        f"AWS {operation} failed: {exc}", code="provider_error", retryable=True, details=details
    )


def _decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return Decimal("0")


class AWSInventoryAdapter:
    """Provider client for one access-key/secret-key/region triple."""

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        region: str,
        *,
        session: Optional[aioboto3.Session] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.region = region
        self._credentials = {
            "aws_access_key_id": access_key,
            "aws_secret_access_key": secret_key,
        }
        self._session = session or aioboto3.Session()
        self._timeout = float(timeout_seconds or get_settings().PROVIDER_TIMEOUT_SECONDS)

    def _client(self, service_name: str, region: Optional[str] = None) -> Any:
        return self._session.client(
            service_name=service_name,
            region_name=region or self.region,
            config=BOTO_CONFIG,
            **self._credentials,
        )

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        """Bound the call with a timeout and translate provider failures."""
        try:
            async with asyncio.timeout(self._timeout):
                yield
        except Exception as exc:
            translated = classify_aws_error(exc, operation)
            logger.warning(
                "aws_call_failed",
                operation=operation,
                region=self.region,
                error_code=translated.code,
                retryable=translated.retryable,
                error=str(exc),
            )
            if translated is exc:
                raise
            raise translated from exc

    async def _paginate(
        self, client: Any, operation: str, **kwargs: Any
    ) -> AsyncIterator[dict[str, Any]]:
        paginator = client.get_paginator(operation)
        pages = 0
        async for page in paginator.paginate(**kwargs):
            pages += 1
            yield page
            if pages >= MAX_PAGES:
                logger.warning("aws_paginator_page_cap_reached", operation=operation, max_pages=MAX_PAGES)
                break

    async def list_instances(self, states: tuple[str, ...] = ("running", "stopped")) -> list[dict[str, Any]]:
        """EC2 instances filtered by instance-state-name."""
        instances: list[dict[str, Any]] = []
        async with self._guard("ec2:DescribeInstances"):
            async with self._client("ec2") as ec2:
                async for page in self._paginate(
                    ec2,
                    "describe_instances",
                    Filters=[{"Name": "instance-state-name", "Values": list(states)}],
                ):
                    for reservation in page.get("Reservations", []):
                        instances.extend(reservation.get("Instances", []))
        return instances

    async def list_databases(self) -> list[dict[str, Any]]:
        databases: list[dict[str, Any]] = []
        async with self._guard("rds:DescribeDBInstances"):
            async with self._client("rds") as rds:
                async for page in self._paginate(rds, "describe_db_instances"):
                    databases.extend(page.get("DBInstances", []))
        return databases

    async def get_cost_and_usage(
        self,
        start: date,
        end: date,
        granularity: str = "MONTHLY",
        group_by: str = "SERVICE",
    ) -> dict[str, Decimal]:
        """Unblended cost per group key over [start, end)."""
        totals: dict[str, Decimal] = {}
        async with self._guard("ce:GetCostAndUsage"):
            # Cost Explorer is a global endpoint served from us-east-1.
            async with self._client("ce", region="us-east-1") as ce:
                kwargs: dict[str, Any] = {
                    "TimePeriod": {"Start": start.isoformat(), "End": end.isoformat()},
                    "Granularity": granularity,
                    "Metrics": ["UnblendedCost"],
                    "GroupBy": [{"Type": "DIMENSION", "Key": group_by}],
                }
                while True:
                    response = await ce.get_cost_and_usage(**kwargs)
                    for period in response.get("ResultsByTime", []):
                        for group in period.get("Groups", []):
                            key = (group.get("Keys") or ["Unknown"])[0]
                            amount = _decimal(
                                group.get("Metrics", {}).get("UnblendedCost", {}).get("Amount")
                            )
                            totals[key] = totals.get(key, Decimal("0")) + amount
                    token = response.get("NextPageToken")
                    if not token:
                        break
                    kwargs["NextPageToken"] = token
        return totals

    async def get_ec2_hourly_price(self, instance_type: str) -> Optional[Decimal]:
        """On-demand Linux hourly price from the Pricing API, or None if unlisted."""
        settings = get_settings()
        async with self._guard("pricing:GetProducts"):
            async with self._client("pricing", region=settings.PRICING_API_REGION) as pricing:
                response = await pricing.get_products(
                    ServiceCode="AmazonEC2",
                    Filters=[
                        {"Type": "TERM_MATCH", "Field": "instanceType", "Value": instance_type},
                        {"Type": "TERM_MATCH", "Field": "regionCode", "Value": self.region},
                        {"Type": "TERM_MATCH", "Field": "operatingSystem", "Value": "Linux"},
                        {"Type": "TERM_MATCH", "Field": "tenancy", "Value": "Shared"},
                        {"Type": "TERM_MATCH", "Field": "preInstalledSw", "Value": "NA"},
                        {"Type": "TERM_MATCH", "Field": "capacitystatus", "Value": "Used"},
                    ],
                    MaxResults=1,
                )
        return parse_on_demand_price(response.get("PriceList", []))


def parse_on_demand_price(price_list: list[Any]) -> Optional[Decimal]:
    for raw in price_list:
        product = json.loads(raw) if isinstance(raw, str) else raw
        for term in product.get("terms", {}).get("OnDemand", {}).values():
            for dimension in term.get("priceDimensions", {}).values():
                usd = dimension.get("pricePerUnit", {}).get("USD")
                if usd is not None:
                    price = _decimal(usd)
                    if price > 0:
                        return price
    return None
