"""
Static on-demand rate tables used when live pricing is disabled or silent.

Monthly cost = hourly rate x 730 hours. Multi-AZ databases bill twice the
instance hours; database storage is billed per GB-month on top.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from app.shared.core.constants import HOURS_PER_MONTH

TWO_PLACES = Decimal("0.01")

DEFAULT_HOURLY_RATE = Decimal("0.05")

EC2_HOURLY_RATES: dict[str, Decimal] = {
    "t3.nano": Decimal("0.0052"),
    "t3.micro": Decimal("0.0104"),
    "t3.small": Decimal("0.0208"),
    "t3.medium": Decimal("0.0416"),
    "t3.large": Decimal("0.0832"),
    "t3.xlarge": Decimal("0.1664"),
    "t3.2xlarge": Decimal("0.3328"),
    "m5.large": Decimal("0.096"),
    "m5.xlarge": Decimal("0.192"),
    "m5.2xlarge": Decimal("0.384"),
    "m5.4xlarge": Decimal("0.768"),
    "c5.large": Decimal("0.085"),
    "c5.xlarge": Decimal("0.17"),
    "c5.2xlarge": Decimal("0.34"),
    "r5.large": Decimal("0.126"),
    "r5.xlarge": Decimal("0.252"),
}

RDS_HOURLY_RATES: dict[str, Decimal] = {
    "db.t3.micro": Decimal("0.017"),
    "db.t3.small": Decimal("0.034"),
    "db.t3.medium": Decimal("0.068"),
    "db.t3.large": Decimal("0.136"),
    "db.m5.large": Decimal("0.171"),
    "db.m5.xlarge": Decimal("0.342"),
    "db.r5.large": Decimal("0.24"),
}

# A stopped instance still pays for its attached EBS volumes.
STOPPED_INSTANCE_MONTHLY_COST = Decimal("5.00")
RDS_STORAGE_PER_GB_MONTH = Decimal("0.115")
DEFAULT_RDS_STORAGE_GB = 20


def round_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def ec2_hourly_rate(instance_type: Optional[str]) -> Decimal:
    return EC2_HOURLY_RATES.get(instance_type or "", DEFAULT_HOURLY_RATE)


def rds_hourly_rate(instance_class: Optional[str]) -> Decimal:
    return RDS_HOURLY_RATES.get(instance_class or "", DEFAULT_HOURLY_RATE)


def ec2_monthly_cost(
    instance_type: Optional[str], state: str, hourly_rate: Optional[Decimal] = None
) -> Decimal:
    if state == "stopped":
        return STOPPED_INSTANCE_MONTHLY_COST
    rate = hourly_rate if hourly_rate is not None else ec2_hourly_rate(instance_type)
    return round_money(rate * HOURS_PER_MONTH)


def rds_monthly_cost(
    instance_class: Optional[str],
    state: str,
    multi_az: bool = False,
    storage_gb: Optional[int] = None,
) -> Decimal:
    storage = Decimal(storage_gb or DEFAULT_RDS_STORAGE_GB) * RDS_STORAGE_PER_GB_MONTH
    if state == "stopped":
        # Stopped databases keep billing for provisioned storage only.
        return round_money(storage)
    compute = rds_hourly_rate(instance_class) * HOURS_PER_MONTH
    if multi_az:
        compute *= 2
    return round_money(compute + storage)
