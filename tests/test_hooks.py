from servicekit.resilience.hooks import (
    RetryEvent,
    TimeoutEvent,
    retry_service_log_hook,
    timeout_service_log_hook,
)


class CaptureLogger:
    def __init__(self):
        self.entries = []

    def log_service(self, entry):
        self.entries.append(entry)


def test_retry_hook_emits_structured_log():
    log = CaptureLogger()
    hook = retry_service_log_hook(log, "partner_call", {"dependency": "ledger"})

    hook(
        RetryEvent(
            attempt=1,
            max_attempts=3,
            delay=0.05,
            status="retry_scheduled",
            err=TimeoutError("deadline exceeded"),
        )
    )

    assert len(log.entries) == 1
    entry = log.entries[0]
    assert entry.operation == "resilience_retry"
    assert entry.status == "retry_scheduled"
    assert entry.error_code == "retryable_error"
    assert entry.metadata == {
        "target_operation": "partner_call",
        "attempt": 1,
        "max_attempts": 3,
        "delay_ms": 50,
        "dependency": "ledger",
        "error": "deadline exceeded",
    }


def test_retry_hook_error_codes_by_status():
    log = CaptureLogger()
    hook = retry_service_log_hook(log, "op", None)
    for status in ("stopped", "canceled", "something_else"):
        hook(RetryEvent(attempt=1, max_attempts=2, status=status))
    assert [e.error_code for e in log.entries] == ["not_retryable", "context_canceled", ""]
    assert all("error" not in e.metadata for e in log.entries)


def test_timeout_hook_emits_structured_log():
    log = CaptureLogger()
    hook = timeout_service_log_hook(log, "partner_call", {"dependency": "ledger"})

    hook(TimeoutEvent(timeout=0.25, status="timeout", err=TimeoutError()))

    entry = log.entries[0]
    assert entry.operation == "resilience_timeout"
    assert entry.status == "timeout"
    assert entry.error_code == "deadline_exceeded"
    assert entry.metadata["timeout_ms"] == 250
    assert entry.metadata["dependency"] == "ledger"
    assert entry.metadata["error"] == "TimeoutError"


def test_timeout_hook_success_has_no_error_code():
    log = CaptureLogger()
    hook = timeout_service_log_hook(log, "op")
    hook(TimeoutEvent(timeout=1.0, status="success"))
    hook(TimeoutEvent(timeout=1.0, status="canceled"))
    assert [e.error_code for e in log.entries] == ["", "context_canceled"]


def test_metadata_overrides_builtin_fields():
    log = CaptureLogger()
    hook = timeout_service_log_hook(log, "op", {"target_operation": "custom"})
    hook(TimeoutEvent(timeout=1.0, status="success"))
    assert log.entries[0].metadata["target_operation"] == "custom"