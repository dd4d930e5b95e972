"""Worker loop: receive → process → delete, and the process entry point.

A message is deleted only after processing succeeded; malformed or failing
messages stay on the queue for redelivery / the dead-letter queue.
"""

import json
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError
from sqlalchemy import func, select, update

import hfe_worker.main as worker_main
from hfe_api.billing.webhook_dedup import DedupClaim, try_acquire_dedup
from hfe_api.db.models import UserEntitlement, WebhookDedupEvent
from hfe_api.errors import ConfigurationError
from hfe_worker.loops.sqs_loop import WorkerLoop

QUEUE_URL = "https://sqs.us-east-1.amazonaws.com/123/hfe-webhook-events"


def _rc_message(message_id="m-1", event_id="rc-1", receipt="rh-1"):
    body = {
        "provider": "revenuecat",
        "payload": {
            "event": {
                "id": event_id,
                "type": "INITIAL_PURCHASE",
                "app_user_id": "user-w",
                "event_timestamp_ms": 1_700_000_000_000,
                "expiration_at_ms": 1_702_592_000_000,
                "original_transaction_id": "otid-w",
            }
        },
        "payload_hash": "a" * 64,
        "request_id": "req-w",
    }
    return {"MessageId": message_id, "ReceiptHandle": receipt, "Body": json.dumps(body)}


def _loop(session_factory, sqs=None, **kwargs):
    return WorkerLoop(
        sqs_client=sqs or MagicMock(),
        session_factory=session_factory,
        queue_url=QUEUE_URL,
        error_backoff_seconds=0,
        **kwargs,
    )


# ── handle_message ───────────────────────────────────────────────────────────


def test_handled_message_updates_entitlement(session_factory):
    assert _loop(session_factory).handle_message(_rc_message()) is True

    with session_factory() as db:
        row = db.get(UserEntitlement, "user-w")
        assert row.subscription_status == "premium"
        assert row.payment_method == "platform_iap"


def test_redelivered_message_is_acknowledged_without_side_effects(session_factory):
    loop = _loop(session_factory)

    assert loop.handle_message(_rc_message()) is True
    assert loop.handle_message(_rc_message(message_id="m-2")) is True

    with session_factory() as db:
        ledger = db.execute(select(WebhookDedupEvent)).scalars().all()
    assert [(e.dedup_key, e.status) for e in ledger] == [("ev_rc-1", "done")]


@pytest.mark.parametrize(
    "message",
    [
        {"MessageId": "m-x", "ReceiptHandle": "rh", "Body": "{not json"},
        {"MessageId": "m-x", "ReceiptHandle": "rh", "Body": "[1, 2]"},
        {"MessageId": "m-x", "ReceiptHandle": "rh"},
    ],
)
def test_malformed_message_is_kept(session_factory, message):
    assert _loop(session_factory).handle_message(message) is False


def test_processing_failure_is_kept(session_factory):
    message = {"MessageId": "m-y", "ReceiptHandle": "rh", "Body": json.dumps({"provider": "paypal"})}

    assert _loop(session_factory).handle_message(message) is False


def test_message_claimed_elsewhere_is_kept_until_the_lease_expires(session_factory):
    with session_factory() as db:
        assert try_acquire_dedup(db, "revenuecat", "ev_rc-1") is DedupClaim.ACQUIRED
    loop = _loop(session_factory)

    assert loop.handle_message(_rc_message()) is False
    with session_factory() as db:
        assert db.get(UserEntitlement, "user-w") is None

    with session_factory() as db:
        expired = datetime.now(timezone.utc) - timedelta(minutes=10)
        db.execute(update(WebhookDedupEvent).values(first_seen_at=expired, last_seen_at=expired))
        db.commit()

    assert loop.handle_message(_rc_message(message_id="m-2")) is True
    with session_factory() as db:
        count = db.execute(select(func.count()).select_from(UserEntitlement)).scalar_one()
    assert count == 1


# ── poll_once / run_forever ──────────────────────────────────────────────────


def test_poll_deletes_only_processed_messages(session_factory):
    sqs = MagicMock()
    sqs.receive_message.return_value = {
        "Messages": [
            _rc_message(receipt="rh-good"),
            {"MessageId": "m-bad", "ReceiptHandle": "rh-bad", "Body": "not json"},
        ]
    }

    deleted = _loop(session_factory, sqs, max_messages=5, wait_time_seconds=1).poll_once()

    assert deleted == 1
    sqs.delete_message.assert_called_once_with(QueueUrl=QUEUE_URL, ReceiptHandle="rh-good")
    kwargs = sqs.receive_message.call_args.kwargs
    assert (kwargs["MaxNumberOfMessages"], kwargs["WaitTimeSeconds"]) == (5, 1)


def test_empty_receive_deletes_nothing(session_factory):
    sqs = MagicMock()
    sqs.receive_message.return_value = {}

    assert _loop(session_factory, sqs).poll_once() == 0
    sqs.delete_message.assert_not_called()


def test_run_forever_survives_receive_errors_until_shutdown(session_factory):
    shutdown = threading.Event()
    sqs = MagicMock()
    calls = {"n": 0}

    def receive(**kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise ClientError({"Error": {"Code": "ServiceUnavailable", "Message": "x"}}, "ReceiveMessage")
        shutdown.set()
        return {}

    sqs.receive_message.side_effect = receive

    _loop(session_factory, sqs, shutdown_event=shutdown).run_forever()

    assert calls["n"] == 2


# ── main() ───────────────────────────────────────────────────────────────────


def test_main_wires_loop_and_manages_ready_file(monkeypatch, tmp_path):
    ready_file = tmp_path / "worker-ready"
    ready_file.write_text("stale\n")
    monkeypatch.setattr(worker_main, "READY_FILE", ready_file)
    monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db:5432/hfe")
    monkeypatch.setenv("SQS_QUEUE_URL", QUEUE_URL)
    monkeypatch.setenv("SQS_MAX_MESSAGES", "4")
    monkeypatch.delenv("HFE_ENV", raising=False)
    monkeypatch.delenv("APP_ENV", raising=False)
    monkeypatch.setattr(worker_main.signal, "signal", MagicMock())

    boto_client = MagicMock()
    engine = MagicMock()
    loop_cls = MagicMock()
    seen_ready = []
    loop_cls.return_value.run_forever.side_effect = lambda: seen_ready.append(ready_file.read_text())

    monkeypatch.setattr(worker_main, "build_sqs_boto_client", lambda: boto_client)
    monkeypatch.setattr(worker_main, "build_engine", MagicMock(return_value=engine))
    monkeypatch.setattr(worker_main, "build_sessionmaker", MagicMock(return_value="factory"))
    monkeypatch.setattr(worker_main, "WorkerLoop", loop_cls)

    worker_main.main()

    kwargs = loop_cls.call_args.kwargs
    assert kwargs["sqs_client"] is boto_client
    assert kwargs["session_factory"] == "factory"
    assert kwargs["queue_url"] == QUEUE_URL
    assert kwargs["max_messages"] == 4
    worker_main.build_engine.assert_called_once_with("postgresql://u:p@db:5432/hfe")

    assert seen_ready == ["ready\n"]
    assert not ready_file.exists()
    engine.dispose.assert_called_once()


def test_main_fails_fast_without_queue_url(monkeypatch, tmp_path):
    monkeypatch.setattr(worker_main, "READY_FILE", tmp_path / "worker-ready")
    monkeypatch.delenv("SQS_QUEUE_URL", raising=False)
    monkeypatch.delenv("HFE_ENV", raising=False)
    monkeypatch.delenv("APP_ENV", raising=False)
    monkeypatch.setattr(worker_main.signal, "signal", MagicMock())

    with pytest.raises(ConfigurationError):
        worker_main.main()
    assert not (tmp_path / "worker-ready").exists()
