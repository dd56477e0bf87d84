"""
Test retention policies, data subject requests and the compliance jobs
"""

from datetime import timedelta
from types import SimpleNamespace
from uuid import UUID, uuid4

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crm.app.core.clock import utcnow
from crm.app.core.config import settings
from crm.app.models import (
    Activity,
    Contact,
    Message,
    ActivityLog,
    AnonymizationRecord,
    DataSubjectRequest,
    Notification,
    RetentionLog,
)
from crm.app.services.retention_service import RetentionService, evaluate_condition, run_status
from crm.app.services.scheduler import JobScheduler


async def add_contacts(db: AsyncSession, count: int, age_days: int, **fields):
    now = utcnow()
    contacts = []
    for index in range(count):
        contact = Contact(
            first_name=fields.get("first_name", f"Person{index}"),
            last_name="Smith",
            email=f"person{index}-{age_days}@example.com",
            phone="+15550100",
            tags=list(fields.get("tags", [])),
            created_at=now - timedelta(days=age_days, minutes=index),
        )
        db.add(contact)
        contacts.append(contact)
    await db.commit()
    return contacts


@pytest.mark.parametrize("condition,expected", [
    ({"field": "status", "operator": "equals", "value": "lost"}, True),
    ({"field": "status", "operator": "notEquals", "value": "lost"}, False),
    ({"field": "amount", "operator": "greaterThan", "value": 500}, True),
    ({"field": "amount", "operator": "lessThan", "value": 500}, False),
    ({"field": "name", "operator": "contains", "value": "ACME"}, True),
    ({"field": "tags", "operator": "isEmpty"}, True),
    ({"field": "name", "operator": "isNotEmpty"}, True),
    ({"field": "lost_reason", "operator": "greaterThan", "value": 3}, False),
    ({"field": "created_at", "operator": "daysSinceGreaterThan", "value": 30}, True),
    ({"field": "created_at", "operator": "daysSinceLessThan", "value": 30}, False),
    ({"field": "name", "operator": "daysSinceGreaterThan", "value": 30}, False),
])
def test_evaluate_condition(condition, expected):
    now = utcnow()
    record = SimpleNamespace(
        status="lost",
        amount=1000,
        name="Acme expansion",
        tags=[],
        lost_reason=None,
        created_at=now - timedelta(days=45),
    )

    assert evaluate_condition(record, condition, now) is expected


def test_run_status():
    assert run_status(0, 10) == "completed"
    assert run_status(3, 10) == "partial"
    assert run_status(10, 10) == "failed"


async def test_archive_policy_respects_cutoff_and_conditions(db_session: AsyncSession):
    old_vip = await add_contacts(db_session, 2, age_days=400, tags=["vip"])
    old_plain = await add_contacts(db_session, 1, age_days=400)
    recent = await add_contacts(db_session, 1, age_days=10)

    service = RetentionService(db_session)
    policy = await service.create_policy(
        name="Archive stale contacts",
        entity_type="contact",
        retention_days=365,
        action="archive",
        conditions=[{"field": "tags", "operator": "isEmpty"}],
    )

    result = await service.execute_policy(UUID(policy["id"]))

    assert result == {"records_processed": 1, "records_affected": 1, "errors": []}
    assert old_plain[0].tags == ["_archived"]
    assert all(contact.tags == ["vip"] for contact in old_vip)
    assert recent[0].tags == []

    logs = await service.get_retention_logs(policy_id=UUID(policy["id"]))
    assert logs[0]["status"] == "completed"
    assert logs[0]["affected_record_ids"] == [str(old_plain[0].id)]


async def test_delete_policy_caps_records_per_run(db_session: AsyncSession, monkeypatch):
    monkeypatch.setattr(settings, "retention_batch_limit", 3)
    contacts = await add_contacts(db_session, 5, age_days=100)

    service = RetentionService(db_session)
    policy = await service.create_policy(
        name="Purge", entity_type="contact", retention_days=30, action="delete"
    )

    result = await service.execute_policy(UUID(policy["id"]))
    assert result["records_affected"] == 3

    remaining = (await db_session.execute(select(Contact.id))).scalars().all()
    # Oldest first; the two newest wait for the next run
    assert sorted(remaining) == sorted(contact.id for contact in contacts[:2])


async def test_failing_record_does_not_abort_batch(db_session: AsyncSession):
    referenced, free = await add_contacts(db_session, 2, age_days=100)
    referenced_id, free_id = referenced.id, free.id
    db_session.add(Activity(type="call", subject="Intro call", contact_id=referenced_id))
    await db_session.commit()

    service = RetentionService(db_session)
    policy = await service.create_policy(
        name="Purge", entity_type="contact", retention_days=30, action="delete"
    )

    result = await service.execute_policy(UUID(policy["id"]))

    assert result["records_processed"] == 2
    assert result["records_affected"] == 1
    assert len(result["errors"]) == 1
    assert result["errors"][0].startswith(str(referenced_id))

    remaining = (await db_session.execute(select(Contact.id))).scalars().all()
    assert remaining == [referenced_id]
    assert free_id not in remaining

    log = (await db_session.execute(select(RetentionLog))).scalar_one()
    assert log.status == "partial"
    assert log.affected_record_ids == [str(free_id)]

    refreshed = await service.get_policy(UUID(policy["id"]))
    assert refreshed.last_run_result["records_affected"] == 1


async def test_anonymize_policy_scrubs_messages(db_session: AsyncSession):
    message = Message(direction="inbound", channel="sms", content="Call me at 555-0100",
                      media_url="https://cdn.example.com/a.png", timestamp=utcnow() - timedelta(days=120))
    db_session.add(message)
    await db_session.commit()

    service = RetentionService(db_session)
    policy = await service.create_policy(
        name="Scrub old messages", entity_type="message", retention_days=90, action="anonymize"
    )
    await service.execute_policy(UUID(policy["id"]))

    assert message.content == "[MESSAGE CONTENT REDACTED]"
    assert message.media_url is None

    record = (await db_session.execute(select(AnonymizationRecord))).scalar_one()
    assert record.entity_id == message.id
    assert record.triggered_by == "retention_policy"
    assert record.anonymized_fields == ["content", "media_url"]


async def test_run_all_active_policies(db_session: AsyncSession):
    await add_contacts(db_session, 2, age_days=100)

    service = RetentionService(db_session)
    active = await service.create_policy(name="Archive", entity_type="contact", retention_days=30, action="archive")
    await service.create_policy(
        name="Dormant", entity_type="contact", retention_days=30, action="delete", is_active=False
    )

    results = await service.run_all_active_retention_policies()

    assert [(r["policy_id"], r["success"], r["records_affected"]) for r in results] == [(active["id"], True, 2)]

    summary = (await db_session.execute(
        select(ActivityLog).where(ActivityLog.action == "retention_cron_completed")
    )).scalar_one()
    assert summary.system is True
    assert summary.extra == {"policies_run": 1, "total_records_affected": 2, "successful_policies": 1}


async def test_delete_dsr_anonymizes_matching_contacts(db_session: AsyncSession):
    contact = Contact(first_name="Ada", last_name="Lovelace", email="ada@example.com", phone="+15550199")
    db_session.add(contact)
    await db_session.commit()

    service = RetentionService(db_session)
    created = await service.create_dsr(type="delete", email="ada@example.com")

    with pytest.raises(ValueError, match="Invalid verification token"):
        await service.verify_dsr(UUID(created["request_id"]), "wrong")

    await service.verify_dsr(UUID(created["request_id"]), created["verification_token"])
    with pytest.raises(ValueError):
        await service.verify_dsr(UUID(created["request_id"]), created["verification_token"])

    result = await service.process_dsr(UUID(created["request_id"]), user_id=uuid4())

    assert result == {"records_found": 1, "records_processed": 1}
    assert contact.first_name == "[REDACTED]"
    assert contact.email.endswith("@privacy.local")
    assert contact.phone is None

    request = await service.get_dsr(UUID(created["request_id"]))
    assert request.status == "completed"
    assert request.result_summary == "Found 1 records, processed 1"


async def test_rectification_dsr_is_manual(db_session: AsyncSession):
    db_session.add(Contact(first_name="Grace", email="grace@example.com"))
    await db_session.commit()

    service = RetentionService(db_session)
    created = await service.create_dsr(type="rectification", email="grace@example.com")

    result = await service.process_dsr(UUID(created["request_id"]), user_id=None)
    assert result == {"records_found": 1, "records_processed": 0}

    with pytest.raises(ValueError):
        await service.reject_dsr(UUID(created["request_id"]), user_id=None, reason="Too late")


async def test_check_overdue_dsrs(db_session: AsyncSession):
    now = utcnow()
    db_session.add_all([
        DataSubjectRequest(type="access", email="late@example.com", status="pending", due_date=now - timedelta(days=1)),
        DataSubjectRequest(type="delete", email="soon@example.com", status="verified", due_date=now + timedelta(days=3)),
        DataSubjectRequest(type="access", email="fine@example.com", status="in_progress", due_date=now + timedelta(days=20)),
        DataSubjectRequest(type="access", email="done@example.com", status="completed", due_date=now - timedelta(days=5)),
    ])
    await db_session.commit()

    counts = await RetentionService(db_session).check_overdue_dsrs(now=now)

    assert counts == {"overdue_count": 1, "near_due_count": 1}

    titles = (await db_session.execute(select(Notification.title))).scalars().all()
    assert sorted(titles) == ["Data Subject Request Due Soon", "Overdue Data Subject Request"]


async def test_scheduled_jobs_use_their_own_sessions(session_factory):
    scheduler = JobScheduler(session_factory=session_factory)

    assert await scheduler.run_retention_policies() == {"policies_run": 0}
    assert await scheduler.check_overdue_dsrs() == {"overdue_count": 0, "near_due_count": 0}
    assert await scheduler.process_webhook_deliveries() == {"processed": 0, "success": 0, "retrying": 0, "failed": 0}


async def test_compliance_api(client: AsyncClient):
    response = await client.post("/api/v1/compliance/retention/policies", json={
        "name": "Bad operator",
        "entity_type": "contact",
        "retention_days": 30,
        "action": "delete",
        "conditions": [{"field": "email", "operator": "like", "value": "%"}],
    })
    assert response.status_code == 422

    response = await client.post("/api/v1/compliance/retention/policies", json={
        "name": "Archive old deals",
        "entity_type": "deal",
        "retention_days": 730,
        "action": "archive",
        "conditions": [{"field": "status", "operator": "equals", "value": "lost"}],
    })
    assert response.status_code == 201
    policy_id = response.json()["data"]["id"]

    response = await client.post("/api/v1/compliance/retention/run")
    assert response.status_code == 200
    assert response.json()["data"]["results"][0]["policy_id"] == policy_id

    response = await client.get(f"/api/v1/compliance/retention/logs?policy_id={policy_id}")
    assert response.json()["data"]["logs"][0]["status"] == "completed"

    response = await client.post("/api/v1/compliance/dsr", json={"type": "access", "email": "someone@example.com"})
    assert response.status_code == 201
    request_id = response.json()["data"]["request_id"]

    response = await client.post(f"/api/v1/compliance/dsr/{request_id}/verify", json={"token": "nope"})
    assert response.status_code == 400

    response = await client.get("/api/v1/compliance/retention/policies/00000000-0000-0000-0000-000000000000")
    assert response.status_code == 404
