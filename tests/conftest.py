import time

import pytest

from blogcore.api import create_app
from blogcore.settings import Settings

SECRET = 'test-secret'


class FakeClock:
    """Stands in for time.time so tests can move token time forward"""

    def __init__(self, now=None):
        self.now = float(int(time.time() if now is None else now))

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def settings(tmp_path):
    return Settings(secret=SECRET, db_path=str(tmp_path / 'data'))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def client(aiohttp_client, settings, clock):
    return await aiohttp_client(create_app(settings, clock=clock))


async def register(client, username='alice', email='a@x.com', password='secret123'):
    resp = await client.post('/api/auth/register', json={
        'username': username,
        'email': email,
        'password': password,
    })
    assert resp.status == 200, await resp.text()
    return await resp.json()


async def login(client, email='a@x.com', password='secret123'):
    resp = await client.post('/api/auth/login', json={'email': email, 'password': password})
    assert resp.status == 200, await resp.text()
    return await resp.json()


async def create_post(client, title='Hello', desc='First post'):
    resp = await client.post('/api/posts/create', json={'title': title, 'desc': desc})
    assert resp.status == 200, await resp.text()
    return await resp.json()


async def create_comment(client, post_id, text='Nice post'):
    resp = await client.post('/api/comments/create', json={'comment': text, 'post_id': post_id})
    assert resp.status == 200, await resp.text()
    return await resp.json()
