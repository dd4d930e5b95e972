"""SQS long-poll loop for deferred webhook processing.

Receive → process (behind the dedup gate) → delete.

A message is deleted ONLY after process_webhook_message() returns. On any
failure it stays on the queue: SQS redelivers it after the visibility timeout
and the redrive policy moves it to the dead-letter queue after maxReceiveCount.
A message whose event is still claimed by another attempt is likewise kept.
"""

import json
import logging
import threading
import time
from typing import Any, Callable, Optional

from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy.orm import Session

from hfe_api.billing.processor import process_webhook_message
from hfe_api.billing.webhook_dedup import WebhookInProgress
from hfe_api.context import provider_var, request_id_var, user_id_var

logger = logging.getLogger(__name__)


class WorkerLoop:
    """Long-polling consumer of the webhook queue.

    Args:
        sqs_client: boto3 SQS client
        session_factory: sessionmaker; one session per message
        queue_url: webhook queue URL
        shutdown_event: set by the SIGTERM/SIGINT handler
        wait_time_seconds: long-poll wait (max 20)
        max_messages: batch size per receive (max 10)
    """

    def __init__(
        self,
        sqs_client: Any,
        session_factory: Callable[[], Session],
        queue_url: str,
        shutdown_event: Optional[threading.Event] = None,
        wait_time_seconds: int = 20,
        max_messages: int = 10,
        error_backoff_seconds: float = 5.0,
    ):
        self.sqs = sqs_client
        self.session_factory = session_factory
        self.queue_url = queue_url
        self.shutdown_event = shutdown_event or threading.Event()
        self.wait_time_seconds = wait_time_seconds
        self.max_messages = max_messages
        self.error_backoff_seconds = error_backoff_seconds

    def run_forever(self) -> None:
        logger.info(
            "WORKER_LOOP_STARTED",
            extra={"wait_time_seconds": self.wait_time_seconds, "max_messages": self.max_messages},
        )
        while not self.shutdown_event.is_set():
            try:
                self.poll_once()
            except (BotoCoreError, ClientError) as e:
                logger.error(
                    "SQS_RECEIVE_FAILED",
                    extra={"error_type": type(e).__name__, "error_msg": str(e)[:200]},
                )
                # Interruptible backoff
                self.shutdown_event.wait(self.error_backoff_seconds)
        logger.info("WORKER_LOOP_STOPPED")

    def poll_once(self) -> int:
        """Receive one batch and handle it. Returns the number of messages deleted."""
        response = self.sqs.receive_message(
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=self.max_messages,
            WaitTimeSeconds=self.wait_time_seconds,
            MessageAttributeNames=["All"],
            AttributeNames=["ApproximateReceiveCount"],
        )

        deleted = 0
        for message in response.get("Messages", []):
            if self.handle_message(message):
                self.sqs.delete_message(
                    QueueUrl=self.queue_url,
                    ReceiptHandle=message["ReceiptHandle"],
                )
                deleted += 1
        return deleted

    def handle_message(self, message: dict) -> bool:
        """Process one SQS message; True means it may be deleted."""
        message_id = message.get("MessageId")
        receive_count = (message.get("Attributes") or {}).get("ApproximateReceiveCount")

        try:
            body = json.loads(message["Body"])
            if not isinstance(body, dict):
                raise ValueError("message body is not an object")
        except (KeyError, ValueError):
            # Poison message: leave it for the dead-letter queue
            logger.error(
                "WEBHOOK_MESSAGE_MALFORMED",
                extra={"message_id": message_id, "receive_count": receive_count},
            )
            return False

        request_id_var.set(body.get("request_id") or "")
        provider_var.set(body.get("provider") or "")
        start = time.perf_counter()

        try:
            with self.session_factory() as db:
                outcome = process_webhook_message(db, body)
        except WebhookInProgress:
            # Another worker holds the claim; redelivery after the visibility
            # timeout either finds it done or its lease expired
            logger.info(
                "WEBHOOK_MESSAGE_DEFERRED",
                extra={
                    "message_id": message_id,
                    "provider": body.get("provider"),
                    "receive_count": receive_count,
                },
            )
            return False
        except Exception as e:
            # The processor already logged details and marked the ledger failed
            logger.error(
                "WEBHOOK_MESSAGE_FAILED",
                exc_info=True,
                extra={
                    "message_id": message_id,
                    "provider": body.get("provider"),
                    "receive_count": receive_count,
                    "error_type": type(e).__name__,
                },
            )
            return False
        finally:
            user_id_var.set("")

        logger.info(
            "WEBHOOK_MESSAGE_DONE",
            extra={
                "message_id": message_id,
                "provider": body.get("provider"),
                "outcome": outcome,
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            },
        )
        return True
