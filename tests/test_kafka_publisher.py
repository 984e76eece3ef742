import pytest

from servicekit.messaging.kafka_publisher import (
    KafkaPublisher,
    KafkaRecord,
    MessageWriter,
    PublisherClosedError,
)
from servicekit.messaging.message import Message, PublisherConfig
from servicekit.metrics import new_metrics


class CaptureLogger:
    def __init__(self):
        self.entries = []

    def log_service(self, entry):
        self.entries.append(entry)

    def contains(self, operation, status):
        return any(e.operation == operation and e.status == status for e in self.entries)


class StubWriter:
    def __init__(self, outcomes=None):
        self._outcomes = list(outcomes or [])
        self.written = []
        self.close_calls = 0

    async def write_messages(self, *args):
        self.written.extend(args)
        if self._outcomes:
            outcome = self._outcomes.pop(0)
            if outcome is not None:
                raise outcome

    async def close(self):
        self.close_calls += 1


@pytest.mark.asyncio
async def test_close_idempotent_and_publish_after_close():
    writer = StubWriter()
    assert isinstance(writer, MessageWriter)
    pub = KafkaPublisher(writer)

    await pub.close()
    await pub.close()
    assert writer.close_calls == 1
    assert pub.closed is True

    with pytest.raises(PublisherClosedError, match="publisher already closed"):
        await pub.publish(Message(topic="topic", key=b"k", payload=b"v"))
    assert writer.written == []


@pytest.mark.asyncio
async def test_observability_success():
    writer = StubWriter()
    log = CaptureLogger()
    metrics = new_metrics()
    pub = KafkaPublisher(
        writer,
        PublisherConfig(
            log=log,
            metrics=metrics,
            service_name="publisher-success-test",
            success_logging=True,
        ),
    )

    await pub.publish(Message(topic="record.created", key=b"k", payload=b"v", headers={"h": "1"}))

    counter = metrics.message_publish_total.labels("publisher-success-test", "record.created", "success")
    assert counter.value == 1
    assert log.contains("message_publish", "success")
    assert writer.written == [
        KafkaRecord(topic="record.created", key=b"k", value=b"v", headers=[("h", b"1")])
    ]


@pytest.mark.asyncio
async def test_success_without_success_logging_writes_no_log():
    log = CaptureLogger()
    writer = StubWriter()
    pub = KafkaPublisher(writer, PublisherConfig(log=log))
    await pub.publish(Message(topic="t", payload=b"v"))
    assert log.entries == []
    assert len(writer.written) == 1


@pytest.mark.parametrize(
    ("name", "dlq_error", "want_dlq_status"),
    [
        ("dlq success", None, "dlq_success"),
        ("dlq failed", RuntimeError("dlq failed"), "dlq_failed"),
    ],
)
@pytest.mark.asyncio
async def test_observability_failure_and_dlq(name, dlq_error, want_dlq_status):
    writer = StubWriter([RuntimeError("publish failed"), dlq_error])
    log = CaptureLogger()
    metrics = new_metrics()
    service_name = "publisher-failure-test-" + name.replace(" ", "-")
    pub = KafkaPublisher(
        writer,
        PublisherConfig(log=log, metrics=metrics, service_name=service_name, dlq_enabled=True),
    )

    with pytest.raises(RuntimeError, match="publish failed"):
        await pub.publish(Message(topic="record.failed", key=b"k", payload=b"v"))

    total = metrics.message_publish_total
    assert total.labels(service_name, "record.failed", "failed").value == 1
    assert total.labels(service_name, "record.failed", want_dlq_status).value == 1
    assert log.contains("message_publish", "failed")
    assert log.contains("message_publish", want_dlq_status)
    assert writer.written[1].topic == "record.failed.dlq"


@pytest.mark.asyncio
async def test_failure_without_dlq_writes_once():
    writer = StubWriter([RuntimeError("publish failed")])
    log = CaptureLogger()
    pub = KafkaPublisher(writer, PublisherConfig(log=log))

    with pytest.raises(RuntimeError):
        await pub.publish(Message(topic="t", payload=b"v"))

    assert len(writer.written) == 1
    failed = [e for e in log.entries if e.status == "failed"]
    assert failed[0].error_code == "publish_failed"
    assert failed[0].metadata["error"] == "publish failed"


@pytest.mark.asyncio
async def test_retry_recovers_from_transient_failure():
    writer = StubWriter([RuntimeError("temporary"), None])
    metrics = new_metrics()
    pub = KafkaPublisher(
        writer,
        PublisherConfig(
            retry_enabled=True,
            max_retries=2,
            metrics=metrics,
            service_name="publisher-retry-test",
        ),
    )

    await pub.publish(Message(topic="record.retry", payload=b"v"))

    assert len(writer.written) == 2
    total = metrics.message_publish_total
    assert total.labels("publisher-retry-test", "record.retry", "success").value == 1
    assert total.labels("publisher-retry-test", "record.retry", "failed").value == 0