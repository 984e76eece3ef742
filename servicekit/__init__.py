"""Building blocks for backend services: metrics, context, service logs, resilience, messaging, outbox and migrations."""

__version__ = "0.1.0"