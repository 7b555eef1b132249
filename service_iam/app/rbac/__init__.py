"""
Role-based access control: entities, persistence and resolution.
"""

from .directory import RbacDirectory, request_scope
from .postgres import PostgresDirectoryRepository
from .repository import DirectoryRepository, InMemoryDirectoryRepository

__all__ = [
    "DirectoryRepository",
    "InMemoryDirectoryRepository",
    "PostgresDirectoryRepository",
    "RbacDirectory",
    "request_scope",
]
