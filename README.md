# servicekit

Building blocks for backend services, with no runtime dependencies beyond the
standard library. Calls that wait (retries, timeouts, the circuit breaker,
publishing, consuming and the outbox worker) are `asyncio` coroutines; all
durations are given in seconds.

## Metrics — `servicekit.metrics`

- `Counter` (`inc(amount=1.0)`, never decreases) and `Histogram`
  (`observe(value)` into cumulative upper-bound buckets; `DEFAULT_BUCKETS`
  unless given).
- `CounterVec` and `HistogramVec`: families partitioned by label values;
  `labels(*values)` returns the child for those values, creating it on first
  use. The number of values must match the label names.
- `Registry`: `register(collector)` raises `AlreadyRegisteredError` (which
  carries `existing_collector`) when the name is taken; `render()` returns the
  text exposition format (`# HELP`, `# TYPE`, samples, and for histograms the
  `_bucket`, `_sum` and `_count` lines).
- `register_or_reuse_counter_vec(...)` and
  `register_or_reuse_histogram_vec(...)` return the family already registered
  under the name when its type and label names match, and raise `RuntimeError`
  when they do not.
- `new_metrics()` returns the one process-wide `Metrics` set (request, HTTP,
  service, database, message publish/consume/process, outbox batch and
  transaction families), registered in the default registry once.
  `render_metrics()` renders the default registry.

```python
from servicekit.metrics import new_metrics, render_metrics

metrics = new_metrics()
metrics.message_publish_total.labels("orders", "order.created", "success").inc()
print(render_metrics())
```

## Request context — `servicekit.context`

`request_id_scope(request_id)` and `transaction_id_scope(transaction_id)` are
context managers that set an identifier for the duration of a block (in
`contextvars`, so it follows tasks). `get_request_id()` and
`get_transaction_id()` read it back, or return `""` when unset.
`generate_request_id()` returns a fresh UUID string.

## Structured service logs — `servicekit.servicelog`

`ServiceLog` is one record (operation, status, `duration_ms`, `error_code`,
metadata). `ServiceLogger` is any object with `log_service(entry)`.
`emit_service_log(log, operation, status, duration, error_code, metadata)`
builds and sends a record, does nothing when `log` is `None`, and records the
duration (a `timedelta` or seconds) as whole milliseconds.

Every component below reports through a `ServiceLogger` when one is given,
and through the shared `Metrics` when both metrics and a service name are
given; without them it stays silent.

## Resilience — `servicekit.resilience`

`servicekit.resilience.retry`:

- `retry(opts, fn)` awaits `fn()` until it succeeds, returning its result.
  `RetryOptions` (or `default_retry_options()`: one attempt, 0.2 s base
  delay, 2 s cap, 0.1 s jitter) sets `max_attempts`, exponential backoff from
  `base_delay` capped at `max_delay`, random `jitter` added to each delay, a
  `retryable` predicate (`is_transient_error`, which accepts timeouts, by
  default) and an `on_retry` hook. Out-of-range values fall back to the
  defaults. The last error is raised when attempts run out or an error is not
  retryable.
- `with_timeout(timeout, fn)` and `with_timeout_observed(timeout, hook, fn)`
  await `fn()` under a time limit; zero or less means no limit.

`servicekit.resilience.hooks`: the `RetryEvent` (statuses `retry_scheduled`,
`stopped`, `canceled`) and `TimeoutEvent` (`success`, `timeout`, `canceled`)
records, and `retry_service_log_hook(log, target_operation, metadata)` /
`timeout_service_log_hook(...)`, which write them as `resilience_retry` and
`resilience_timeout` service logs with a matching error code.

`servicekit.resilience.circuitbreaker`: `CircuitBreaker(opts)` with
`await breaker.call(fn)`. With `default_circuit_breaker_options(name)` it
opens after more than five consecutive failures, stays open for 60 s and then
lets one trial request through. An open breaker raises `CircuitOpenError`; a
half-open one whose trial requests are used up raises `TooManyRequestsError`.
A timeout raised by `fn` is not counted as a failure and `call` returns
`None`; a cancellation is not counted either and propagates. `state` and
`counts` show the current `CircuitState` and `Counts`.

```python
import asyncio
from servicekit.resilience.retry import RetryOptions, retry

async def fetch():
    ...

asyncio.run(retry(RetryOptions(max_attempts=3, retryable=lambda err: True), fetch))
```

## Messaging — `servicekit.messaging`

`servicekit.messaging.message` holds `Message` (topic, key, payload, string
headers), the `Publisher` and `Consumer` interfaces, `PublisherConfig` and
`ConsumerConfig`, and `execute_with_retry(enabled, max_retries, delay, fn)`,
which tries `fn` once plus up to `max_retries` more times when enabled.

`KafkaPublisher(writer, config)` (in `kafka_publisher`) sends each message as
a `KafkaRecord` through a `MessageWriter`, retrying as configured. When
delivery finally fails and `dlq_enabled` is set, it writes a copy to
`<topic>.dlq` before raising the original error. After `close()` (safe to call
twice) `publish` raises `PublisherClosedError`.

`KafkaConsumer(reader, topic, group_id, handler, config)` (in
`kafka_consumer`) reads records from a `MessageReader` and hands them to
`config.worker_count` workers. A record is committed only when the handler
succeeded, or when it failed and was published to `config.dlq_publisher`
under `<topic>.dlq`. Fetch errors are counted, logged and retried after
`fetch_retry_delay` seconds. `start()` runs until its task is cancelled; the
workers then finish the records they hold. An empty topic or group, or a
missing handler, raises `ValueError`.

## Transactional outbox — `servicekit.outbox`

`servicekit.outbox.queries`: `OutboxPublisher(driver).publish_tx(cursor, msg)`
inserts a `PENDING` row into `outbox_events` through a DB-API cursor of your
open transaction. `build_insert_pending_query`, `build_select_pending_query`
and `build_mark_published_query` return `(sql, params)` for MySQL, PostgreSQL
and SQL Server; `normalize_driver` maps anything else to `mysql`, and
`key_column` quotes the `key` column for the dialect.

`servicekit.outbox.worker`: `Worker(db, publisher, log, driver=..., batch_size=50, interval=2.0, metrics=..., service_name=...)`
takes a DB-API connection. `await run_once()` locks up to `batch_size`
unpublished rows, publishes each, marks it published and commits; any failure
rolls the batch back and is raised. It returns the number published.
`await start()` polls every `interval` seconds in the background (starting
twice raises `WorkerAlreadyStartedError`); `await stop()` ends the loop.
`validate()` raises `ValueError` when the connection, publisher or logger is
missing.

```python
from servicekit.outbox.queries import build_select_pending_query, normalize_driver

normalize_driver("unknown")          # "mysql"
query, args = build_select_pending_query("postgres", 50)
# query ends with "FOR UPDATE SKIP LOCKED LIMIT $1"; args == [50]
```

## Migrations — `servicekit.migration`

`SqlMigrationRunner` (also reachable as `run_migrations(conn, driver, directory, action)`)
runs files named `<version>_<name>.sql` whose statements sit under
`-- +goose Up` and `-- +goose Down` annotations (`StatementBegin` /
`StatementEnd` group multi-line statements, `NO TRANSACTION` commits each
statement). Applied versions are recorded in `goose_db_version`. `up` applies
every migration newer than the current version; `down` rolls back the current
one. Failures raise `MigrationError`.

`auto_run_up(cfg, runner=None, log=None)` does nothing unless
`cfg.migration.auto_run` is set. Otherwise it opens the database named by
`cfg.migration.db_name` with `open_sql_db` (SQLite through `sqlite3`, or any
driver whose `DBConfig` gives a `connect` function), creates the version table
on SQL Server (`ensure_version_table`), optionally takes a migration lock,
runs the runner `up`, releases the lock and closes the connection. The runner
defaults to the one set with `set_default_runner`.

`acquire_migration_lock(conn, driver, lock_key, timeout)` uses `GET_LOCK` on
MySQL, `pg_try_advisory_lock` on PostgreSQL and `sp_getapplock` on SQL Server,
and returns a function that releases the lock; other drivers get a no-op. The
timeout defaults to 30 s. The default lock key, from
`default_migration_lock_key(cfg, db_name)`, is `<service>:migration:<db>`.

```python
from servicekit.migration import (
    DBConfig, MigrationConfig, MigrationSettings, auto_run_up, default_migration_lock_key,
)

cfg = MigrationConfig(
    service_name="orders",
    databases={"orders": DBConfig(driver="sqlite3", dsn="orders.db")},
    migration=MigrationSettings(auto_run=True, db_name="orders", directory="migrations"),
)
auto_run_up(cfg)

default_migration_lock_key(None, "")   # "service:migration:default"
```

## What the package does not do

- It has no Kafka network client: `KafkaPublisher` and `KafkaConsumer` work
  over a `MessageWriter` / `MessageReader` that you provide.
- It does not serve metrics over HTTP; `render_metrics()` returns the text for
  you to serve.
- It does not set up distributed tracing or export spans.
- It ships no database drivers other than the standard library's `sqlite3`.
- It has no command-line interface.

## Requirements

Python 3.10 or later. Tests need `pytest` and `pytest-asyncio`
(`pip install .[test]`).