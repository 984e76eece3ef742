from datetime import timedelta

from servicekit.servicelog import ServiceLog, ServiceLogger, emit_service_log


class CaptureLogger:
    def __init__(self):
        self.entries = []

    def log_service(self, entry):
        self.entries.append(entry)


def test_emit_passes_fields_through():
    log = CaptureLogger()
    assert isinstance(log, ServiceLogger)
    metadata = {"topic": "record.created", "group": "group-a"}
    emit_service_log(log, "message_consume", "success", timedelta(seconds=0), "", metadata)
    assert len(log.entries) == 1
    entry = log.entries[0]
    assert entry.operation == "message_consume"
    assert entry.status == "success"
    assert entry.error_code == ""
    assert entry.metadata == metadata


def test_emit_copies_metadata():
    log = CaptureLogger()
    metadata = {"dlq": True}
    emit_service_log(log, "message_publish", "dlq_success", 0, "", metadata)
    metadata["dlq"] = False
    assert log.entries[0].metadata == {"dlq": True}


def test_duration_converted_to_milliseconds():
    log = CaptureLogger()
    emit_service_log(log, "op", "failed", timedelta(milliseconds=1500), "commit_failed", None)
    emit_service_log(log, "op", "failed", timedelta(microseconds=999), "commit_failed", None)
    emit_service_log(log, "op", "failed", 2, "commit_failed", None)
    assert [e.duration_ms for e in log.entries] == [1500, 0, 2000]
    assert log.entries[0].metadata == {}


def test_service_log_defaults_are_independent():
    a = ServiceLog(operation="outbox_batch", status="empty")
    b = ServiceLog(operation="outbox_batch", status="empty")
    a.metadata["driver"] = "mysql"
    assert b.metadata == {}
    assert a.duration_ms == 0
    assert a.error_code == ""