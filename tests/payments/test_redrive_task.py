import asyncio
import json

import pytest

from domain.payment.entity import WebhookEvent, new_id, owner_metadata, utcnow
from domain.payment.repository import TransactionFilter
from infrastructure.database import build_engine, build_session_factory, create_tables
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


def _run_with_uow(database_url, work):
    async def _main():
        engine = build_engine(database_url)
        try:
            await create_tables(engine)
            async with SQLAlchemyUnitOfWork(build_session_factory(engine)) as uow:
                return await work(uow)
        finally:
            await engine.dispose()

    return asyncio.run(_main())


@pytest.fixture
def redrive_env(monkeypatch, database_url, gateway):
    from infrastructure.tasks.tasks import payments as payment_tasks

    monkeypatch.setattr(payment_tasks, "build_engine", lambda: build_engine(database_url))
    monkeypatch.setattr(payment_tasks, "build_payment_gateways", lambda: {"stripe": gateway})
    return payment_tasks


def test_redrive_task_processes_stored_events(redrive_env, database_url, gateway, events):
    import infrastructure.tasks  # noqa: F401 configure the eager Celery app

    payload = json.loads(
        events.build(
            "evt_stored",
            "payment_intent.succeeded",
            events.intent("pi_remote", "succeeded", metadata=owner_metadata("user-1", "orders", "order-77")),
        )
    )

    async def _seed(uow):
        await uow.webhook_events.claim(
            WebhookEvent(
                id=new_id(),
                provider="stripe",
                provider_event_id="evt_stored",
                event_type="paymentIntent.succeeded",
                payload=payload,
                created_at=utcnow(),
            )
        )

    _run_with_uow(database_url, _seed)

    summary = redrive_env.redrive_webhooks.apply(kwargs={"limit": 10}).get()

    assert summary == {"total": 1, "processed": 1, "failed": 0}
    assert gateway.closed

    async def _read(uow):
        items, total = await uow.transactions.list_by_user("user-1", TransactionFilter())
        pending = await uow.webhook_events.list_unprocessed()
        return items, total, pending

    items, total, pending = _run_with_uow(database_url, _read)
    assert total == 1
    assert items[0].owner_key == ("orders", "order-77")
    assert pending == []


def test_redrive_task_without_processor_is_a_noop(monkeypatch, database_url):
    from infrastructure.tasks.tasks import payments as payment_tasks

    _run_with_uow(database_url, _noop)
    monkeypatch.setattr(payment_tasks, "build_engine", lambda: build_engine(database_url))
    monkeypatch.setattr(payment_tasks, "build_payment_gateways", dict)

    summary = payment_tasks.redrive_webhooks.apply(kwargs={"limit": 10}).get()
    assert summary == {"total": 0, "processed": 0, "failed": 0}


async def _noop(uow):
    return None
