"""Database repositories for the job queue monitor."""

from jobwatch.repositories.jobs import JobQueryRepository

__all__ = ["JobQueryRepository"]
