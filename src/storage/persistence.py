"""
Persistence Service Interface.

The scan pipeline never performs durable I/O itself; everything it stores
goes through this narrow interface.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from scanner.models import Commit, MergeRequest, User


class PersistenceService(ABC):
    """Storage boundary for commits, merge requests and users."""

    @abstractmethod
    async def save_commits(self, commits: List[Commit]) -> None:
        pass

    @abstractmethod
    async def save_merge_requests(self, merge_requests: List[MergeRequest]) -> None:
        pass

    @abstractmethod
    async def save_user(self, user: User) -> User:
        """
        Insert a user or return the stored copy with the same identity.

        Args:
            user (User): Identity to store

        Returns:
            User: Persisted user with its id assigned
        """
        pass

    @abstractmethod
    async def find_or_create_user(
        self,
        repository_name: str,
        username_or_id: Optional[str],
        email: Optional[str],
        display_name: Optional[str],
        tool_config_id: Optional[str],
    ) -> User:
        """
        Look a user up by username (or id) and create it when missing.

        Returns:
            User: Existing or newly created user
        """
        pass
