"""
Data Reference Updater.

Links commits and merge requests to the persisted identities produced by
UserProcessor. Merge request authors that never appeared in the user map are
created on the fly through the persistence layer.
"""

from typing import Dict, List, Optional

from config import logger
from scanner.exceptions import DataPersistenceException, GitScannerException
from scanner.models import Commit, MergeRequest, User
from storage.persistence import PersistenceService


class DataReferenceUpdater:
    """Resolves author, committer and reviewer references."""

    def __init__(self, persistence: PersistenceService):
        self.persistence = persistence

    def update_commits_with_user_references(
        self, commits: List[Commit], user_map: Dict[str, User], repository_name: str
    ) -> None:
        """Set repository name and resolve author and committer; misses stay unset."""
        for commit in commits:
            commit.repository_name = repository_name
            if commit.author_name:
                commit.resolved_author = user_map.get(commit.author_name)
            if commit.committer_name:
                commit.resolved_committer = user_map.get(commit.committer_name)

    async def update_merge_requests_with_user_references(
        self,
        merge_requests: List[MergeRequest],
        user_map: Dict[str, User],
        repository_name: str,
        tool_config_id: Optional[str] = None,
    ) -> None:
        """
        Resolve merge request authors and reviewers.

        An author missing from user_map is looked up or created through
        find_or_create_user. Reviewers are resolved by lookup only and
        unresolved reviewers are omitted.

        Raises:
            DataPersistenceException: If a missing author cannot be created
        """
        for merge_request in merge_requests:
            merge_request.repository_name = repository_name

            author = merge_request.author
            key = merge_request.author_user_id or (author.username if author else None)
            resolved = user_map.get(key) if key else None
            if resolved is None and author is not None:
                resolved = await self._create_author(
                    merge_request, key, repository_name, tool_config_id
                )
            merge_request.resolved_author = resolved

            merge_request.resolved_reviewers = [
                user_map[reviewer]
                for reviewer in merge_request.reviewers
                if reviewer in user_map
            ]

    async def _create_author(
        self,
        merge_request: MergeRequest,
        key: Optional[str],
        repository_name: str,
        tool_config_id: Optional[str],
    ) -> User:
        author = merge_request.author
        try:
            user = await self.persistence.find_or_create_user(
                repository_name,
                key or author.email,
                author.email,
                author.display_name,
                tool_config_id,
            )
        except GitScannerException:
            raise
        except Exception as e:
            logger.error(
                {
                    "message": "Failed to save user",
                    "repository": repository_name,
                    "merge_request": merge_request.external_id,
                    "author": key,
                    "error": str(e),
                }
            )
            raise DataPersistenceException(
                "find_or_create_user", "Failed to save user"
            ) from e

        if user is None:
            raise DataPersistenceException("find_or_create_user", "Failed to save user")
        logger.debug(
            {
                "message": "Created merge request author",
                "repository": repository_name,
                "merge_request": merge_request.external_id,
                "author": key,
            }
        )
        return user
