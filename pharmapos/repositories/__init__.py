"""
PharmaPOS Repositories
"""

from .base import Repository
from .memory import InMemoryRepository
from .sql import SqlAlchemyRepository

__all__ = [
    "Repository",
    "InMemoryRepository",
    "SqlAlchemyRepository",
]
