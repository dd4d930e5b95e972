"""SQS client for handing accepted webhooks to the worker.

The ingestors acknowledge the provider only after the message is on the queue;
the worker deletes it only after successful processing, and the queue's redrive
policy moves repeatedly failing messages to the dead-letter queue.
"""

import json
import os
from datetime import datetime, timezone
from typing import Any, Optional

import boto3
from botocore.config import Config

from hfe_api.config import env

MESSAGE_SCHEMA_VERSION = "1"


def build_sqs_boto_client():
    """boto3 SQS client with the AWS guardrails applied.

    - SQS_ENDPOINT_URL: Only used if explicitly set (no default)
    - Credentials: "test" injected only for LocalStack AND NOT in IRSA

    Raises:
        ConfigurationError: If production guardrails fail
    """
    sqs_endpoint = os.getenv("SQS_ENDPOINT_URL")
    env.assert_no_custom_endpoint_in_prod(sqs_endpoint, "sqs")
    env.assert_no_static_aws_creds("sqs")

    region_name = env.get_aws_region(require_in_prod=True)

    config = Config(
        region_name=region_name,
        retries={"max_attempts": 3, "mode": "standard"},
        connect_timeout=10,
        read_timeout=30,
    )

    sqs_kwargs: dict[str, Any] = {"config": config}

    if sqs_endpoint:
        sqs_kwargs["endpoint_url"] = sqs_endpoint

        # IRSA environments (EKS) use web identity tokens, NEVER static credentials
        if (
            env.is_localstack_endpoint(sqs_endpoint)
            and not os.getenv("AWS_ACCESS_KEY_ID")
            and not env.is_irsa_environment()
        ):
            sqs_kwargs["aws_access_key_id"] = "test"
            sqs_kwargs["aws_secret_access_key"] = "test"

    return boto3.client("sqs", **sqs_kwargs)


class SQSClient:
    """SQS client wrapper for the webhook queue."""

    def __init__(self):
        """
        Raises:
            ConfigurationError: If SQS_QUEUE_URL is missing or guardrails fail
        """
        self.queue_url = env.get_sqs_queue_url()
        self.client = build_sqs_boto_client()

    def enqueue_webhook_event(
        self,
        provider: str,
        payload: dict,
        payload_hash: str,
        request_id: Optional[str] = None,
    ) -> str:
        """
        Enqueue a verified webhook for deferred processing.

        Returns:
            SQS Message ID

        Raises:
            botocore.exceptions.BotoCoreError / ClientError: If enqueue fails
        """
        message_body = {
            "provider": provider,
            "payload": payload,
            "payload_hash": payload_hash,
            "received_at": datetime.now(timezone.utc).isoformat(),
            "schema_version": MESSAGE_SCHEMA_VERSION,
            "request_id": request_id,
        }

        response = self.client.send_message(
            QueueUrl=self.queue_url,
            MessageBody=json.dumps(message_body),
            MessageAttributes={
                "provider": {"DataType": "String", "StringValue": provider},
            },
        )

        return response["MessageId"]


# Singleton instance
_sqs_client: SQSClient | None = None


def get_sqs_client() -> SQSClient:
    """Get SQS client singleton."""
    global _sqs_client
    if _sqs_client is None:
        _sqs_client = SQSClient()
    return _sqs_client
