import logging
from typing import Any, Dict, List, Optional, Tuple

from ..domain.errors import (AlreadyFriends, DuplicateUsername, Invalid,
                             InvalidCredentials, NotFound, StoreFailure)
from ..domain.models import FriendSummary, User
from ..storage.json_store import USERS, JsonStore

logger = logging.getLogger(__name__)


def _index_of(users: List[Dict[str, Any]], user_id: str) -> int:
    for index, record in enumerate(users):
        if record.get('id') == user_id:
            return index
    return -1


class UserDirectory:
    """User accounts and friend edges held in the ``users`` document.

    Friend edges are denormalized summaries kept on both users; every
    operation touching two users writes them with a single save.
    """

    def __init__(self, store: JsonStore):
        self.store = store

    def all_users(self) -> List[User]:
        return [User.model_validate(record) for record in self.store.load(USERS)]

    def find_by_id(self, user_id: str) -> Optional[User]:
        for record in self.store.load(USERS):
            if record.get('id') == user_id:
                return User.model_validate(record)
        return None

    def find_by_username(self, username: str) -> Optional[User]:
        for record in self.store.load(USERS):
            if record.get('username') == username:
                return User.model_validate(record)
        return None

    def get(self, user_id: str) -> User:
        user = self.find_by_id(user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found")
        return user

    def resolve(self, identifier: str) -> User:
        """Look a user up by id first, then by exact username."""
        user = self.find_by_id(identifier) or self.find_by_username(identifier)
        if user is None:
            raise NotFound(f"User '{identifier}' not found")
        return user

    def add_user(self, username: str, password: str) -> User:
        username = (username or '').strip()
        if not username or not password:
            raise Invalid("Username and password are required")

        with self.store.locked(USERS):
            users = self.store.load(USERS)
            if any(u.get('username') == username for u in users):
                raise DuplicateUsername("Username already exists")

            user = User(username=username, password=password)
            users.append(user.model_dump())
            if not self.store.save(USERS, users):
                raise StoreFailure("Failed to save user")

        logger.info(f"Registered user {user.username} ({user.id})")
        return user

    def authenticate(self, username: str, password: str) -> User:
        user = self.find_by_username((username or '').strip())
        if user is None or user.password != password:
            raise InvalidCredentials("Invalid username or password")
        return user

    def update_user(self, user_id: str, username: Optional[str] = None, password: Optional[str] = None) -> User:
        with self.store.locked(USERS):
            users = self.store.load(USERS)
            index = _index_of(users, user_id)
            if index == -1:
                raise NotFound(f"User {user_id} not found")

            record = users[index]
            if username is not None:
                username = username.strip()
                if not username:
                    raise Invalid("Username must not be empty")
                if any(u.get('username') == username and u.get('id') != user_id for u in users):
                    raise DuplicateUsername("Username already exists")
                record['username'] = username
            if password is not None:
                if not password:
                    raise Invalid("Password must not be empty")
                record['password'] = password

            if not self.store.save(USERS, users):
                raise StoreFailure("Failed to update user")
        return User.model_validate(record)

    def add_friendship(self, user_id: str, friend_id: str) -> Tuple[User, User]:
        """Create a symmetric friend edge between two users.

        Args:
            user_id (str): The requesting user.
            friend_id (str): The user being added.

        Returns:
            Tuple[User, User]: The updated requesting user and friend.

        Raises:
            Invalid: If both ids are the same.
            NotFound: If either user does not exist.
            AlreadyFriends: If the edge already exists.
            StoreFailure: If the users document could not be saved; neither side is changed.
        """
        if user_id == friend_id:
            raise Invalid("Cannot add yourself as a friend")

        logger.info(f"Adding friendship between {user_id} and {friend_id}")
        with self.store.locked(USERS):
            users = self.store.load(USERS)
            user_index = _index_of(users, user_id)
            friend_index = _index_of(users, friend_id)
            if user_index == -1 or friend_index == -1:
                raise NotFound("User or friend not found", details={
                    'userFound': user_index != -1,
                    'friendFound': friend_index != -1,
                })

            user = User.model_validate(users[user_index])
            friend = User.model_validate(users[friend_index])
            if user.is_friend_of(friend.id) or friend.is_friend_of(user.id):
                raise AlreadyFriends("Already friends")

            user.friends.append(friend.summary())
            friend.friends.append(user.summary())
            users[user_index] = user.model_dump()
            users[friend_index] = friend.model_dump()

            if not self.store.save(USERS, users):
                raise StoreFailure("Failed to save friendship")

        logger.info(f"User {user.username} now has {len(user.friends)} friends, "
                    f"{friend.username} now has {len(friend.friends)}")
        return user, friend

    def get_profile(self, user_id: str) -> User:
        """Return a user with friend summaries refreshed from the current user records."""
        users = {record.get('id'): record for record in self.store.load(USERS)}
        record = users.get(user_id)
        if record is None:
            raise NotFound(f"User {user_id} not found")

        user = User.model_validate(record)
        refreshed = []
        for summary in user.friends:
            current = users.get(summary.id)
            if current is not None and current.get('username') != summary.username:
                summary = FriendSummary(**{**summary.model_dump(), 'username': current['username']})
            refreshed.append(summary)
        user.friends = refreshed
        return user
