"""
User Processor.

Extracts contributor identities from commits and merge requests, deduplicates
them and persists each addressable identity once per scan.
"""

from dataclasses import dataclass, field
from typing import Dict, List

from config import logger
from scanner.exceptions import DataPersistenceException, GitScannerException
from scanner.models import Commit, MergeRequest, ScanRequest, User
from storage.persistence import PersistenceService


@dataclass
class UserProcessingResult:
    """
    Outcome of user processing.

    Attributes:
        user_map (Dict[str, User]): Persisted users keyed by username
        all_users (List[User]): Every distinct identity, including those
            without a username
    """

    user_map: Dict[str, User] = field(default_factory=dict)
    all_users: List[User] = field(default_factory=list)


class UserProcessor:
    """Reconciles identities seen in a scan with the persistence layer."""

    def __init__(self, persistence: PersistenceService):
        self.persistence = persistence

    def extract_users(
        self,
        commits: List[Commit],
        merge_requests: List[MergeRequest],
        scan_request: ScanRequest,
    ) -> List[User]:
        """
        Collect distinct identities in encounter order.

        Commit authors come first, then merge request authors, then one
        placeholder per reviewer username. Identities are equal when username,
        display name and repository match; identities without a username are
        never merged.
        """
        repository_name = scan_request.repository_name
        candidates: List[User] = []

        for commit in commits:
            if commit.author is not None:
                candidates.append(
                    commit.author.model_copy(
                        update={
                            "repository_name": commit.author.repository_name
                            or repository_name
                        }
                    )
                )

        for merge_request in merge_requests:
            if merge_request.author is not None:
                candidates.append(
                    merge_request.author.model_copy(
                        update={"repository_name": repository_name, "active": True}
                    )
                )
            for reviewer in merge_request.reviewers:
                candidates.append(
                    User(
                        username=reviewer,
                        display_name=reviewer,
                        repository_name=repository_name,
                        active=True,
                    )
                )

        seen = set()
        unique: List[User] = []
        for user in candidates:
            key = user.identity_key
            if key is None:
                unique.append(user)
            elif key not in seen:
                seen.add(key)
                unique.append(user)
        return unique

    async def process_users(
        self,
        commits: List[Commit],
        merge_requests: List[MergeRequest],
        scan_request: ScanRequest,
    ) -> UserProcessingResult:
        """
        Deduplicate and persist the identities referenced by a scan.

        Args:
            commits (List[Commit]): Fetched commits
            merge_requests (List[MergeRequest]): Fetched merge requests
            scan_request (ScanRequest): Scan being executed

        Returns:
            UserProcessingResult: Username map and all distinct identities

        Raises:
            DataPersistenceException: If a user cannot be saved
        """
        result = UserProcessingResult(
            all_users=self.extract_users(commits, merge_requests, scan_request)
        )

        for user in result.all_users:
            if user.username is None or user.username in result.user_map:
                continue
            user.tool_config_id = scan_request.tool_config_id
            try:
                persisted = await self.persistence.save_user(user)
            except GitScannerException:
                raise
            except Exception as e:
                logger.error(
                    {
                        "message": "Failed to save user",
                        "repository": scan_request.repository_name,
                        "username": user.username,
                        "error": str(e),
                    }
                )
                raise DataPersistenceException(
                    "save_user", f"Failed to save user '{user.username}': {e}"
                ) from e
            result.user_map[user.username] = persisted or user

        logger.info(
            {
                "message": "Users processed",
                "repository": scan_request.repository_name,
                "users_found": len(result.all_users),
                "users_persisted": len(result.user_map),
            }
        )
        return result
