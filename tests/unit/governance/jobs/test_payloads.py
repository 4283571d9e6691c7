from uuid import uuid4

import pytest

from app.modules.governance.domain.jobs.payloads import (
    AlertTaskPayload,
    ScanTaskPayload,
    dump_task_payload,
    parse_task_payload,
)
from app.shared.core.constants import Channel, Severity
from app.shared.core.exceptions import ValidationError


def test_scan_payload_dispatches_on_kind():
    owner_id, account_id = uuid4(), uuid4()
    payload = parse_task_payload(
        {"kind": "scan", "owner_id": str(owner_id), "account_id": str(account_id)}
    )

    assert isinstance(payload, ScanTaskPayload)
    assert payload.account_id == account_id
    assert payload.scan_job_id is None
    assert payload.region is None


def test_alert_payload_dispatches_on_kind():
    payload = parse_task_payload(
        {
            "kind": "alert_delivery",
            "owner_id": str(uuid4()),
            "alert_id": str(uuid4()),
            "channel": "sms",
            "severity": "critical",
            "title": "🚨 CRITICAL: Budget Exceeded by 30%+",
            "message": "Your AWS spending is $135.00",
        }
    )

    assert isinstance(payload, AlertTaskPayload)
    assert payload.channel is Channel.SMS
    assert payload.severity is Severity.CRITICAL
    assert payload.data == {}


def test_dump_is_json_safe():
    payload = ScanTaskPayload(owner_id=uuid4(), account_id=uuid4(), region="eu-west-1")
    dumped = dump_task_payload(payload)

    assert dumped["kind"] == "scan"
    assert isinstance(dumped["owner_id"], str)
    assert parse_task_payload(dumped) == payload


@pytest.mark.parametrize(
    "raw",
    [
        None,
        {},
        {"kind": "cleanup", "owner_id": str(uuid4())},
        {"kind": "scan", "owner_id": str(uuid4())},
        {"kind": "scan", "owner_id": str(uuid4()), "account_id": str(uuid4()), "extra": 1},
        {
            "kind": "alert_delivery",
            "owner_id": str(uuid4()),
            "alert_id": str(uuid4()),
            "channel": "pager",
            "severity": "critical",
            "title": "x",
            "message": "y",
        },
    ],
)
def test_malformed_payloads_raise_validation_error(raw):
    with pytest.raises(ValidationError) as exc_info:
        parse_task_payload(raw)
    assert exc_info.value.retryable is False
