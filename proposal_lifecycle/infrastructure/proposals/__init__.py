from proposal_lifecycle.infrastructure.proposals.in_memory import InMemoryProposalRepository
from proposal_lifecycle.infrastructure.proposals.postgres import PostgresProposalRepository
from proposal_lifecycle.infrastructure.proposals.sqlite import SqliteProposalRepository

__all__ = [
    "InMemoryProposalRepository",
    "PostgresProposalRepository",
    "SqliteProposalRepository",
]
