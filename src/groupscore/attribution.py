"""
Commit ingestion and attribution of commit authors to registered users.
"""
import logging
import re
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from .models import CommitFeedEntry, CommitRecord, User

logger = logging.getLogger(__name__)

TASK_ID_PATTERN = re.compile(r"\[TASK-(\d+)\]")


def extract_task_id(message: str) -> Optional[int]:
    """Return the task referenced as `[TASK-<id>]` in a commit message."""
    if not message:
        return None
    match = TASK_ID_PATTERN.search(message)
    return int(match.group(1)) if match else None


def normalize_name(value: Optional[str]) -> str:
    """Case-folded name with all whitespace removed."""
    if not value:
        return ""
    return "".join(value.split()).casefold()


def build_commit_record(entry: CommitFeedEntry, record_id: int, project_id: int,
                        group_id: Optional[int] = None,
                        ingested_at: Optional[datetime] = None) -> CommitRecord:
    """Create an unresolved CommitRecord from a raw feed entry."""
    return CommitRecord(
        id=record_id,
        commit_id=entry.commit_id,
        project_id=project_id,
        group_id=group_id,
        author_name=entry.author_name,
        author_email=entry.author_email,
        timestamp=entry.timestamp,
        message=entry.message,
        task_id=extract_task_id(entry.message),
        resolved_user_id=None,
        is_valid=False,
        ingested_at=ingested_at or datetime.now()
    )


class CommitAttributionResolver:
    """Maps commit author identities onto a project roster."""

    def match_user(self, author_name: str, author_email: str, roster: Sequence[User]) -> Optional[User]:
        """Find the roster user a commit author corresponds to."""
        candidates = sorted(roster, key=lambda u: u.id)

        email = (author_email or "").strip().casefold()
        if email:
            for user in candidates:
                if user.email and user.email.strip().casefold() == email:
                    return user

        name = (author_name or "").strip()
        if name:
            for user in candidates:
                if user.username == name:
                    return user

        normalized = normalize_name(author_name)
        if normalized:
            for user in candidates:
                if normalized in (normalize_name(user.username), normalize_name(user.full_name)):
                    return user

        return None

    def resolve(self, record: CommitRecord, roster: Sequence[User]) -> CommitRecord:
        """Return the record with its resolution fields set against `roster`."""
        user = self.match_user(record.author_name, record.author_email, roster)

        if user is None:
            if record.is_valid or record.resolved_user_id is not None:
                logger.info(f"Commit {record.commit_id[:8]} no longer matches the roster")
            else:
                logger.info(f"Unattributed commit {record.commit_id[:8]} by "
                            f"{record.author_name} <{record.author_email}>")
            return record.model_copy(update={"resolved_user_id": None, "is_valid": False})

        return record.model_copy(update={"resolved_user_id": user.id, "is_valid": True})

    def resolve_all(self, records: Iterable[CommitRecord], roster: Sequence[User]) -> List[CommitRecord]:
        """Resolve a batch of records, returning them in input order."""
        resolved = [self.resolve(record, roster) for record in records]
        invalid = sum(1 for r in resolved if not r.is_valid)
        if invalid:
            logger.info(f"{invalid} of {len(resolved)} commits could not be attributed")
        return resolved
