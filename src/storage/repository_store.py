"""
Repository Storage Module.

JSON file implementation of PersistenceService. Each repository gets its own
commits, merge request and user files under the data directory; records are
upserted by their natural key so rescans replace earlier copies.
"""

import asyncio
import json
import os
import threading
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from config import logger
from scanner.exceptions import DataPersistenceException
from scanner.models import Commit, MergeRequest, User
from storage.persistence import PersistenceService


class JsonPersistenceService(PersistenceService):
    """
    Stores scan output as JSON documents.

    Attributes:
        storage_dir (Path): Base directory for the JSON files
    """

    def __init__(self, data_dir: str):
        """Initialize the storage directory.

        Args:
            data_dir (str): Base directory path for storing scan data.
        """
        self.storage_dir = Path(data_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _get_file_path(self, repo_name: Optional[str], kind: str) -> str:
        """Generate the file path for one kind of record of a repository.

        Args:
            repo_name (Optional[str]): Name of the repository.
            kind (str): Record kind, e.g. "commits".

        Returns:
            str: Complete file path.
        """
        # Convert repo name to safe filename
        safe_name = (repo_name or "_unknown").replace("/", "_").replace("\\", "_")
        return os.path.join(self.storage_dir, f"{safe_name}_{kind}.json")

    def _load(self, file_path: str) -> Dict[str, dict]:
        if not os.path.exists(file_path):
            return {}
        with open(file_path, "r") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError:
                # Handle corrupted file by starting fresh
                logger.error(
                    {"message": "Corrupted data file", "file": str(file_path)}
                )
                return {}
        return data if isinstance(data, dict) else {}

    def _write(self, file_path: str, records: Dict[str, dict]) -> None:
        with open(file_path, "w") as f:
            json.dump(records, f, indent=2, default=str)

    def _upsert(
        self, repo_name: Optional[str], kind: str, records: Dict[str, dict]
    ) -> None:
        file_path = self._get_file_path(repo_name, kind)
        try:
            with self._lock:
                existing = self._load(file_path)
                existing.update(records)
                self._write(file_path, existing)
        except OSError as e:
            logger.error(
                {
                    "message": f"Failed to save {kind}",
                    "repository": repo_name,
                    "error": str(e),
                }
            )
            raise DataPersistenceException(f"save_{kind}", str(e)) from e

        logger.info(
            {
                "message": f"Saved {kind}",
                "repository": repo_name,
                "count": len(records),
                "file": str(file_path),
            }
        )

    async def save_commits(self, commits: List[Commit]) -> None:
        by_repo: Dict[Optional[str], Dict[str, dict]] = {}
        for commit in commits:
            records = by_repo.setdefault(commit.repository_name, {})
            records[commit.sha] = commit.model_dump(mode="json")
        for repo_name, records in by_repo.items():
            await asyncio.to_thread(self._upsert, repo_name, "commits", records)

    async def save_merge_requests(self, merge_requests: List[MergeRequest]) -> None:
        by_repo: Dict[Optional[str], Dict[str, dict]] = {}
        for merge_request in merge_requests:
            by_repo.setdefault(merge_request.repository_name, {})[
                merge_request.external_id
            ] = merge_request.model_dump(mode="json")
        for repo_name, records in by_repo.items():
            await asyncio.to_thread(self._upsert, repo_name, "merge_requests", records)

    def _save_user_sync(self, user: User) -> User:
        file_path = self._get_file_path(user.repository_name, "users")
        try:
            with self._lock:
                users = self._load(file_path)
                key = user.username or user.email or uuid.uuid4().hex
                if key in users:
                    return User(**users[key])
                stored = user.model_copy(update={"id": user.id or uuid.uuid4().hex})
                users[key] = stored.model_dump(mode="json")
                self._write(file_path, users)
        except OSError as e:
            logger.error(
                {
                    "message": "Failed to save user",
                    "repository": user.repository_name,
                    "username": user.username,
                    "error": str(e),
                }
            )
            raise DataPersistenceException("save_user", str(e)) from e
        return stored

    async def save_user(self, user: User) -> User:
        return await asyncio.to_thread(self._save_user_sync, user)

    async def find_or_create_user(
        self,
        repository_name: str,
        username_or_id: Optional[str],
        email: Optional[str],
        display_name: Optional[str],
        tool_config_id: Optional[str],
    ) -> User:
        return await self.save_user(
            User(
                username=username_or_id,
                display_name=display_name,
                email=email,
                repository_name=repository_name,
                active=True,
                tool_config_id=tool_config_id,
            )
        )

    def load_users(self, repo_name: str) -> List[User]:
        """Load the stored users of a repository."""
        users = self._load(self._get_file_path(repo_name, "users"))
        return [User(**data) for data in users.values()]

    def load_commits(self, repo_name: str) -> List[Commit]:
        """Load the stored commits of a repository."""
        commits = self._load(self._get_file_path(repo_name, "commits"))
        return [Commit(**data) for data in commits.values()]

    def load_merge_requests(self, repo_name: str) -> List[MergeRequest]:
        """Load the stored merge requests of a repository."""
        merge_requests = self._load(self._get_file_path(repo_name, "merge_requests"))
        return [MergeRequest(**data) for data in merge_requests.values()]
