"""jobwatch - live read-only monitor for Procrastinate PostgreSQL job queues."""

__version__ = "0.1.0"
