import shutil
import tempfile

import pytest

from bubbly.broadcaster import ConnectionManager
from bubbly.internal.directory.groups import GroupDirectory
from bubbly.internal.directory.users import UserDirectory
from bubbly.internal.dispatch.dispatcher import MessageDispatcher
from bubbly.internal.storage.history import ChatHistory
from bubbly.internal.storage.json_store import JsonStore


@pytest.fixture
def data_dir():
    path = tempfile.mkdtemp()
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def store(data_dir):
    store = JsonStore(data_dir)
    store.ensure_layout()
    return store


@pytest.fixture
def users(store):
    return UserDirectory(store)


@pytest.fixture
def groups(store, users):
    return GroupDirectory(store, users)


@pytest.fixture
def history(store):
    return ChatHistory(store, limit=1000)


@pytest.fixture
def manager(history):
    return ConnectionManager(history)


@pytest.fixture
def dispatcher(history, manager):
    return MessageDispatcher(history, manager)
