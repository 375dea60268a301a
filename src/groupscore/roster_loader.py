"""
Group roster loading from CSV files.
"""
import csv
from pathlib import Path
from typing import List, Dict, Optional, Tuple
from dataclasses import dataclass, field
import logging

from .models import Group, User

logger = logging.getLogger(__name__)

TRUE_VALUES = {"1", "true", "yes", "y"}


@dataclass
class GroupData:
    """Group data loaded from CSV."""
    group_id: int
    group_name: str
    project_id: int
    members: List[Dict[str, str]] = field(default_factory=list)
    leader_id: Optional[int] = None


class CSVRosterLoader:
    """
    Load group rosters from a CSV file.

    Expected columns: group_id, group_name, project_id, user_id, username,
    email, full_name, is_leader. One row per member.
    """

    def __init__(self, csv_file: str):
        self.csv_file = csv_file

    def load_groups(self) -> List[GroupData]:
        """Load groups from CSV file."""
        if not Path(self.csv_file).exists():
            raise FileNotFoundError(f"Roster CSV file not found: {self.csv_file}")

        groups: Dict[int, GroupData] = {}

        with open(self.csv_file, 'r', newline='', encoding='utf-8') as f:
            reader = csv.DictReader(f)

            for row in reader:
                group_id = int(row['group_id'])
                group_data = groups.get(group_id)
                if group_data is None:
                    group_data = GroupData(
                        group_id=group_id,
                        group_name=row['group_name'],
                        project_id=int(row['project_id'])
                    )
                    groups[group_id] = group_data

                member = {
                    'id': row['user_id'],
                    'username': row['username'],
                    'email': row['email'],
                    'full_name': row.get('full_name') or ''
                }
                group_data.members.append(member)

                if (row.get('is_leader') or '').strip().lower() in TRUE_VALUES:
                    group_data.leader_id = int(row['user_id'])

        logger.info(f"Loaded {len(groups)} groups from CSV")
        return list(groups.values())

    def convert_to_models(self, group_data: GroupData, max_members: Optional[int] = None) -> Tuple[Group, List[User]]:
        """Convert GroupData to a Group and its Users."""
        users = [
            User(
                id=int(member["id"]),
                username=member["username"],
                email=member["email"],
                full_name=member["full_name"]
            )
            for member in group_data.members
        ]

        if max_members is not None and len(users) > max_members:
            raise ValueError(f"Group {group_data.group_name} has {len(users)} members, "
                             f"maximum allowed is {max_members}")

        group = Group(
            id=group_data.group_id,
            project_id=group_data.project_id,
            name=group_data.group_name,
            member_ids=tuple(u.id for u in users),
            leader_id=group_data.leader_id
        )
        return group, users

    def load_project_roster(self, project_id: int, max_members: Optional[int] = None) -> Tuple[List[Group], List[User]]:
        """All groups and users of one project."""
        groups = []
        users_by_id: Dict[int, User] = {}
        for group_data in self.load_groups():
            if group_data.project_id != project_id:
                continue
            group, users = self.convert_to_models(group_data, max_members)
            groups.append(group)
            for user in users:
                users_by_id.setdefault(user.id, user)
        return groups, list(users_by_id.values())
