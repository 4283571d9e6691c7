"""
Resource Inventory Collector

Lists EC2 instances and RDS databases for one account, estimates their
monthly cost and upserts them into ``resources``. Repeated scans converge on
the same rows: the upsert key is (owner_id, provider_id, resource_type).
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.account import Account
from app.models.resource import Resource
from app.modules.inventory.domain.pricing import ec2_monthly_cost, rds_monthly_cost
from app.shared.adapters.aws import AWSInventoryAdapter
from app.shared.core.config import get_settings
from app.shared.core.constants import ResourceType
from app.shared.core.exceptions import (
    CostwatchException,
    CredentialError,
    ProviderAuthError,
    StoreError,
)
from app.shared.core.ops_metrics import RESOURCES_DISCOVERED
from app.shared.core.security import CredentialVault
from app.shared.db.base import utcnow
from app.shared.db.session import upsert_insert

logger = structlog.get_logger()

INSTANCE_STATES = ("running", "stopped")


@dataclass(frozen=True, slots=True)
class ProviderCredentials:
    access_key: str
    secret_key: str

    def __repr__(self) -> str:
        return "ProviderCredentials(access_key='***', secret_key='***')"


def open_account_credentials(vault: CredentialVault, account: Account) -> ProviderCredentials:
    """Decrypt the account's sealed key pair; tampered values raise DecryptionError."""
    if not account.access_key_sealed or not account.secret_key_sealed:
        raise CredentialError(
            "Account has no stored credentials", details={"account_id": str(account.id)}
        )
    return ProviderCredentials(
        access_key=vault.open(account.access_key_sealed),
        secret_key=vault.open(account.secret_key_sealed),
    )


AdapterFactory = Callable[[str, str, str], AWSInventoryAdapter]


def _default_adapter_factory(access_key: str, secret_key: str, region: str) -> AWSInventoryAdapter:
    return AWSInventoryAdapter(access_key, secret_key, region)


def _tags(items: Optional[list[dict[str, Any]]]) -> dict[str, str]:
    return {t.get("Key", ""): t.get("Value", "") for t in items or [] if t.get("Key")}


def _iso(value: Any) -> Optional[str]:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value) if value is not None else None


class ResourceInventoryCollector:
    def __init__(
        self,
        db: AsyncSession,
        credentials: ProviderCredentials,
        adapter_factory: AdapterFactory = _default_adapter_factory,
        live_pricing: Optional[bool] = None,
    ):
        self.db = db
        self._credentials = credentials
        self._adapter_factory = adapter_factory
        self._live_pricing = (
            get_settings().LIVE_PRICING_ENABLED if live_pricing is None else live_pricing
        )
        self._price_cache: dict[str, Optional[Decimal]] = {}

    def _adapter(self, region: str) -> AWSInventoryAdapter:
        return self._adapter_factory(
            self._credentials.access_key, self._credentials.secret_key, region
        )

    async def scan(self, account: Account, region: Optional[str] = None) -> list[Resource]:
        """Inventory one region and upsert every resource found."""
        region = region or account.region
        adapter = self._adapter(region)
        seen_at = utcnow()

        instances = await adapter.list_instances(INSTANCE_STATES)
        databases = await adapter.list_databases()

        rows: list[dict[str, Any]] = []
        for instance in instances:
            rows.append(await self._normalize_instance(adapter, account, region, instance, seen_at))
        for database in databases:
            rows.append(self._normalize_database(account, region, database, seen_at))

        try:
            for row in rows:
                await self._upsert(row)
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            raise StoreError(
                f"Failed to upsert resources: {exc}",
                retryable=True,
                details={"owner_id": str(account.owner_id)},
            ) from exc

        for row in rows:
            RESOURCES_DISCOVERED.labels(resource_type=row["resource_type"]).inc()

        logger.info(
            "inventory_scan_complete",
            owner_id=str(account.owner_id),
            account_id=str(account.id),
            region=region,
            instances=len(instances),
            databases=len(databases),
        )
        if not rows:
            return []
        result = await self.db.execute(
            select(Resource)
            .where(
                Resource.owner_id == account.owner_id,
                Resource.provider_id.in_([r["provider_id"] for r in rows]),
            )
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def fetch_costs(
        self, account: Account, start: date, end: date
    ) -> Optional[dict[str, Decimal]]:
        """Per-service billed cost from Cost Explorer, or None when unavailable.

        Auth failures still propagate; anything else degrades to the
        resource-sum estimate.
        """
        adapter = self._adapter(account.region)
        try:
            return await adapter.get_cost_and_usage(start, end, "MONTHLY", "SERVICE")
        except CostwatchException as exc:
            if isinstance(exc, ProviderAuthError):
                raise
            logger.warning(
                "cost_explorer_unavailable",
                owner_id=str(account.owner_id),
                error=str(exc),
                fallback="resource_estimate",
            )
            return None

    async def _hourly_price(self, adapter: AWSInventoryAdapter, instance_type: str) -> Optional[Decimal]:
        if not self._live_pricing or not instance_type:
            return None
        if instance_type not in self._price_cache:
            try:
                self._price_cache[instance_type] = await adapter.get_ec2_hourly_price(instance_type)
            except CostwatchException as exc:
                logger.warning(
                    "live_pricing_lookup_failed",
                    instance_type=instance_type,
                    error=str(exc),
                    fallback="rate_table",
                )
                self._price_cache[instance_type] = None
        return self._price_cache[instance_type]

    async def _normalize_instance(
        self,
        adapter: AWSInventoryAdapter,
        account: Account,
        region: str,
        instance: dict[str, Any],
        seen_at: datetime,
    ) -> dict[str, Any]:
        instance_type = instance.get("InstanceType", "")
        state = instance.get("State", {}).get("Name", "unknown")
        tags = _tags(instance.get("Tags"))
        hourly = await self._hourly_price(adapter, instance_type) if state == "running" else None
        return {
            "owner_id": account.owner_id,
            "account_id": account.id,
            "resource_type": ResourceType.COMPUTE.value,
            "provider_id": instance["InstanceId"],
            "name": tags.get("Name") or "Unnamed",
            "region": region,
            "instance_class": instance_type,
            "state": state,
            "monthly_cost": ec2_monthly_cost(instance_type, state, hourly),
            "metadata": {
                "launch_time": _iso(instance.get("LaunchTime")),
                "availability_zone": instance.get("Placement", {}).get("AvailabilityZone"),
                "platform": instance.get("Platform") or "Linux",
                "private_ip": instance.get("PrivateIpAddress"),
                "public_ip": instance.get("PublicIpAddress"),
                "vpc_id": instance.get("VpcId"),
                "subnet_id": instance.get("SubnetId"),
            },
            "first_seen_at": seen_at,
            "last_seen_at": seen_at,
        }

    def _normalize_database(
        self, account: Account, region: str, database: dict[str, Any], seen_at: datetime
    ) -> dict[str, Any]:
        instance_class = database.get("DBInstanceClass", "")
        state = database.get("DBInstanceStatus", "unknown")
        multi_az = bool(database.get("MultiAZ", False))
        storage_gb = database.get("AllocatedStorage")
        identifier = database["DBInstanceIdentifier"]
        tags = _tags(database.get("TagList"))
        return {
            "owner_id": account.owner_id,
            "account_id": account.id,
            "resource_type": ResourceType.DATABASE.value,
            "provider_id": identifier,
            "name": tags.get("Name") or identifier,
            "region": region,
            "instance_class": instance_class,
            "state": state,
            "monthly_cost": rds_monthly_cost(instance_class, state, multi_az, storage_gb),
            "metadata": {
                "engine": database.get("Engine"),
                "engine_version": database.get("EngineVersion"),
                "multi_az": multi_az,
                "storage_type": database.get("StorageType"),
                "allocated_storage": storage_gb,
                "availability_zone": database.get("AvailabilityZone"),
                "endpoint": (database.get("Endpoint") or {}).get("Address"),
            },
            "first_seen_at": seen_at,
            "last_seen_at": seen_at,
        }

    async def _upsert(self, row: dict[str, Any]) -> None:
        table = Resource.__table__
        stmt = upsert_insert(self.db, table).values(**row)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.owner_id, table.c.provider_id, table.c.resource_type],
            set_={
                # Resizes and renames must reach the right-sizing heuristics.
                "name": stmt.excluded.name,
                "instance_class": stmt.excluded.instance_class,
                "state": stmt.excluded.state,
                "monthly_cost": stmt.excluded.monthly_cost,
                "metadata": stmt.excluded["metadata"],
                "last_seen_at": stmt.excluded.last_seen_at,
            },
        )
        await self.db.execute(stmt)
