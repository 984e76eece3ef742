"""Transactional outbox: event queries, the in-transaction publisher and the polling worker."""