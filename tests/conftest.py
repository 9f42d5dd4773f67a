from __future__ import annotations

from pathlib import Path
import sys

import pytest


def _prepend_repo_src_to_syspath() -> None:
    src = Path(__file__).resolve().parents[1] / 'src'
    if not src.is_dir():
        return
    src_text = str(src)
    key = src_text.replace('\\', '/').lower()
    sys.path[:] = [src_text] + [
        item for item in sys.path
        if str(item or '').strip() and str(item).replace('\\', '/').lower() != key
    ]


_prepend_repo_src_to_syspath()

from taskkeeper.auth import Principal  # noqa: E402
from taskkeeper.domain.models import UserRole  # noqa: E402
from taskkeeper.repository import InMemoryTaskRepository  # noqa: E402


@pytest.fixture()
def task_repo() -> InMemoryTaskRepository:
    return InMemoryTaskRepository()


@pytest.fixture()
def alice() -> Principal:
    return Principal(user_id='user-alice', email='alice@example.com', role=UserRole.USER)


@pytest.fixture()
def bob() -> Principal:
    return Principal(user_id='user-bob', email='bob@example.com', role=UserRole.USER)


@pytest.fixture()
def admin() -> Principal:
    return Principal(user_id='user-admin', email='admin@example.com', role=UserRole.ADMIN)
