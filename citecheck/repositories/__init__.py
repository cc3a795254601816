from citecheck.repositories.checks import InMemoryChecksRepository, PostgresChecksRepository
from citecheck.repositories.issues import InMemoryIssuesRepository, PostgresIssuesRepository

__all__ = [
    "InMemoryChecksRepository",
    "PostgresChecksRepository",
    "InMemoryIssuesRepository",
    "PostgresIssuesRepository",
]
