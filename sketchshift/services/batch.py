# sketchshift/services/batch.py

import json
import logging
from datetime import datetime, timezone
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from sketchshift import config
from sketchshift.errors import TransportError
from sketchshift.schemas.conversion import BatchMessage
from sketchshift.schemas.upload import DispatchResult

log = logging.getLogger(__name__)


# --------------------------------------------------
# Queue publisher (SQS)
# --------------------------------------------------
class SqsPublisher:
    def __init__(self, queue_url: str = config.BATCH_QUEUE_URL, region: str = config.AWS_REGION, client=None):
        if not queue_url:
            raise RuntimeError("BATCH_QUEUE_URL is required to publish batch messages")
        self.queue_url = queue_url
        self.client = client or boto3.client("sqs", region_name=region)

    def send(self, body: str) -> Optional[str]:
        try:
            resp = self.client.send_message(QueueUrl=self.queue_url, MessageBody=body)
        except (BotoCoreError, ClientError) as e:
            raise TransportError(f"queue send failed: {e}") from e
        return resp.get("MessageId") if isinstance(resp, dict) else None


# --------------------------------------------------
# Dispatcher
# --------------------------------------------------
class BatchDispatcher:
    """
    Count-and-signal: publishes one coarse "run a batch" message when the
    pending backlog reaches the threshold. The message never lists jobs;
    the consumer re-queries the store when it drains.
    """

    def __init__(self, repo, publisher, batch_size: int = config.BATCH_SIZE, threshold: int = config.BATCH_THRESHOLD):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.repo = repo
        self.publisher = publisher
        self.batch_size = batch_size
        self.threshold = threshold

    def run(self, force: bool = False) -> DispatchResult:
        pending = self.repo.count_pending()
        kind = self.repo.kind.value
        log.info("found %d pending %s jobs", pending, kind)

        result = DispatchResult(
            kind=kind,
            pendingCount=pending,
            threshold=self.threshold,
            forced=force,
            sent=False,
            batchSize=self.batch_size,
        )

        if pending < self.threshold and not force:
            log.info("pending count below threshold %d, skipping batch dispatch", self.threshold)
            return result

        message = BatchMessage(
            kind=kind,
            batchSize=self.batch_size,
            timestamp=datetime.now(timezone.utc).isoformat(timespec="seconds"),
        )
        result.messageId = self.publisher.send(message.model_dump_json())
        result.sent = True
        log.info("batch dispatch sent (batchSize=%d, messageId=%s)", self.batch_size, result.messageId)
        return result


# --------------------------------------------------
# Consumer side
# --------------------------------------------------
def drain_pending(invoker, repo, batch_size: int) -> List:
    """Convert up to batch_size pending jobs, oldest first."""
    outcomes = []
    for job in repo.list_pending(batch_size):
        outcome = invoker.convert(repo.kind, job.id)
        outcomes.append(outcome)

    converted = sum(1 for o in outcomes if o.succeeded and not o.skipped)
    log.info("drained %d %s jobs (%d converted)", len(outcomes), repo.kind.value, converted)
    return outcomes


def parse_batch_message(body: str) -> BatchMessage:
    data = json.loads(body)
    if data.get("type") != "batch_conversion":
        raise ValueError(f"unexpected message type: {data.get('type')!r}")
    data.setdefault("kind", "image")
    return BatchMessage.model_validate(data)
