import logging
from typing import Iterable, List, Optional

from ..domain.errors import AlreadyMember, Invalid, NotFound, StoreFailure
from ..domain.models import Group
from ..storage.json_store import GROUPS, JsonStore
from .users import UserDirectory

logger = logging.getLogger(__name__)


class GroupDirectory:
    def __init__(self, store: JsonStore, users: UserDirectory):
        self.store = store
        self.users = users

    def find_by_id(self, group_id: str) -> Optional[Group]:
        for record in self.store.load(GROUPS):
            if record.get('id') == group_id:
                return Group.model_validate(record)
        return None

    def get(self, group_id: str) -> Group:
        group = self.find_by_id(group_id)
        if group is None:
            raise NotFound(f"Group {group_id} not found")
        return group

    def create_group(self, name: str, creator_id: str, member_ids: Iterable[str] = ()) -> Group:
        name = (name or '').strip()
        if not name:
            raise Invalid("Group name is required")

        # Creator first, duplicates collapsed, order preserved
        members = list(dict.fromkeys([creator_id, *member_ids]))
        known = {user.id for user in self.users.all_users()}
        missing = [member for member in members if member not in known]
        if missing:
            raise NotFound("User not found", details={'missing': missing})

        group = Group(name=name, creatorId=creator_id, members=members)
        with self.store.locked(GROUPS):
            groups = self.store.load(GROUPS)
            groups.append(group.model_dump())
            if not self.store.save(GROUPS, groups):
                raise StoreFailure("Failed to save group")

        logger.info(f"Created group '{group.name}' ({group.id}) with {len(group.members)} members")
        return group

    def add_member(self, group_id: str, user_id: str) -> Group:
        if self.users.find_by_id(user_id) is None:
            raise NotFound(f"User {user_id} not found")

        with self.store.locked(GROUPS):
            groups = self.store.load(GROUPS)
            for index, record in enumerate(groups):
                if record.get('id') == group_id:
                    break
            else:
                raise NotFound(f"Group {group_id} not found")

            group = Group.model_validate(record)
            if user_id in group.members:
                raise AlreadyMember("User is already a member of this group")

            group.members.append(user_id)
            groups[index] = group.model_dump()
            if not self.store.save(GROUPS, groups):
                raise StoreFailure("Failed to save group membership")
        return group

    def get_user_groups(self, user_id: str) -> List[Group]:
        return [Group.model_validate(record)
                for record in self.store.load(GROUPS)
                if user_id in record.get('members', [])]
