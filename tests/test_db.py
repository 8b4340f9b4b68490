import json

import pytest

from blogcore.db import AsyncJSONDB, DatabaseError, DuplicateKeyError


@pytest.fixture
def db(tmp_path):
    return AsyncJSONDB(str(tmp_path / 'data'))


async def test_insert_assigns_id_and_timestamps(db):
    posts = db.get_collection('posts')
    post = await posts.insert({'title': 'Hello'})
    assert post['_id']
    assert post['created_at'] == post['updated_at']
    assert await posts.get(post['_id']) == post


async def test_insert_enforces_unique_fields(db):
    accounts = db.get_collection('accounts')
    await accounts.insert({'username': 'alice', 'email': 'a@x.com'}, unique=('username', 'email'))
    with pytest.raises(DuplicateKeyError) as exc:
        await accounts.insert({'username': 'bob', 'email': 'a@x.com'}, unique=('username', 'email'))
    assert exc.value.field == 'email'
    assert await accounts.count() == 1


async def test_update_merges_fields_and_checks_uniqueness(db):
    posts = db.get_collection('posts')
    first = await posts.insert({'title': 'One', 'desc': 'a'}, unique=('title',))
    second = await posts.insert({'title': 'Two', 'desc': 'b'}, unique=('title',))

    updated = await posts.update(first['_id'], {'desc': 'changed'}, unique=('title',))
    assert updated['title'] == 'One'
    assert updated['desc'] == 'changed'

    with pytest.raises(DuplicateKeyError):
        await posts.update(second['_id'], {'title': 'One'}, unique=('title',))
    assert await posts.update('missing', {'desc': 'x'}) is None


async def test_delete_returns_removed_document(db):
    posts = db.get_collection('posts')
    post = await posts.insert({'title': 'Hello'})
    assert (await posts.delete(post['_id']))['title'] == 'Hello'
    assert await posts.delete(post['_id']) is None


async def test_delete_many_and_update_many(db):
    comments = db.get_collection('comments')
    for post_id in ['p1', 'p1', 'p2']:
        await comments.insert({'post_id': post_id, 'author': 'alice'})

    assert await comments.update_many(lambda c: c['post_id'] == 'p2', {'author': 'alicia'}) == 1
    removed = await comments.delete_many(lambda c: c['post_id'] == 'p1')
    assert len(removed) == 2
    remaining = await comments.find()
    assert [c['author'] for c in remaining] == ['alicia']
    assert await comments.delete_many(lambda c: c['post_id'] == 'p1') == []


async def test_find_with_filter_and_limit(db):
    posts = db.get_collection('posts')
    for i in range(5):
        await posts.insert({'title': f'post {i}', 'n': i})
    assert len(await posts.find(lambda p: p['n'] % 2 == 0)) == 3
    assert len(await posts.find(limit=2)) == 2
    assert (await posts.find_one(lambda p: p['n'] == 4))['title'] == 'post 4'
    assert await posts.find_one(lambda p: p['n'] == 9) is None


async def test_data_survives_a_new_database_instance(tmp_path):
    path = str(tmp_path / 'data')
    post = await AsyncJSONDB(path).get_collection('posts').insert({'title': 'Persisted'})
    reopened = AsyncJSONDB(path)
    assert (await reopened.get_collection('posts').get(post['_id']))['title'] == 'Persisted'
    assert await reopened.list_collections() == ['posts']


async def test_corrupted_file_raises_database_error(db, tmp_path):
    (tmp_path / 'data').mkdir()
    (tmp_path / 'data' / 'posts.json').write_text('{not json')
    with pytest.raises(DatabaseError):
        await db.get_collection('posts').find()


async def test_file_is_plain_json(db, tmp_path):
    post = await db.get_collection('posts').insert({'title': 'x'})
    stored = json.loads((tmp_path / 'data' / 'posts.json').read_text())
    assert stored[post['_id']]['title'] == 'x'
