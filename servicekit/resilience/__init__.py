"""Retries with backoff, timeouts, circuit breaking and their service-log hooks."""