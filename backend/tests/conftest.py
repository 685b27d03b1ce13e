import asyncio
import os
import tempfile

# 앱 모듈 임포트 전에 테스트용 SQLite 파일 DB를 지정합니다.
_tmp_dir = tempfile.mkdtemp(prefix="chat-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_tmp_dir, 'test.db')}"
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest

from app.db.database import AsyncSessionLocal, drop_db, init_db
from app.db.models.user import User


class FakeWebSocket:
    """send_json 호출을 기록하는 테스트용 소켓"""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def events(self, name=None):
        return [f["data"] for f in self.sent if name is None or f["event"] == name]


async def create_users(*names):
    async with AsyncSessionLocal() as db:
        users = [
            User(name=name, email=f"{name.lower()}@example.com", password="not-a-real-hash", bio=f"{name} bio")
            for name in names
        ]
        db.add_all(users)
        await db.commit()
        return [u.id for u in users]


@pytest.fixture(autouse=True)
def fresh_db():
    async def reset():
        await drop_db()
        await init_db()

    asyncio.run(reset())
    yield


@pytest.fixture
def users():
    """alice, bob, carol 세 명을 만들고 ID를 반환합니다."""
    return asyncio.run(create_users("Alice", "Bob", "Carol"))
