from .json_store import GROUPS, HISTORY_DIR, USERS, JsonStore
from .history import ChatHistory, validate_room_id

__all__ = ['JsonStore', 'ChatHistory', 'validate_room_id', 'USERS', 'GROUPS', 'HISTORY_DIR']
