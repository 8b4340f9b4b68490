#!/usr/bin/env python3
"""
Blog API: accounts, posts and comments behind a cookie session.

Every mutation of an account, post or comment requires a session and is
allowed only for the owning account. Deleting an account or a post goes
through the cascade engine so no post or comment is left pointing at a
record that no longer exists.
"""

import logging
import sys
import time
from typing import Any, Dict, Optional

from aiohttp import web

from blogcore.aioweb import (
    error_middleware, json_response, get_json_data, get_query_params,
    get_path_params, require_fields, validate_field_types
)
from blogcore.cascade import ACCOUNTS, COMMENTS, POSTS, CascadeDeletionEngine
from blogcore.credentials import CredentialStore
from blogcore.db import AsyncJSONDB, Collection, DuplicateKeyError
from blogcore.errors import (
    ConflictError, Forbidden, NotFoundError, PartialCascadeFailure, Unauthorized, ValidationError
)
from blogcore.query_filter import build_title_filter
from blogcore.session_guard import (
    SESSION_GUARD, SessionGuard, current_identity, login_required, require_owner
)
from blogcore.settings import ConfigurationError, Settings
from blogcore.tokens import TokenService

logger = logging.getLogger(__name__)

REVOKED_TOKENS = 'revoked_tokens'

SETTINGS = web.AppKey('settings', Settings)
DB = web.AppKey('db', AsyncJSONDB)
CREDENTIALS = web.AppKey('credentials', CredentialStore)
TOKENS = web.AppKey('tokens', TokenService)
CASCADE = web.AppKey('cascade', CascadeDeletionEngine)

routes = web.RouteTableDef()


# =============================================================================
# Helpers
# =============================================================================

def collection(request: web.Request, name: str) -> Collection:
    return request.app[DB].get_collection(name)


def public_account(account: Dict[str, Any]) -> Dict[str, Any]:
    """Account document without its password hash"""
    return {k: v for k, v in account.items() if k != 'password'}


def normalize_email(email: str) -> str:
    return (email or '').strip().lower()


def conflict(e: DuplicateKeyError) -> ConflictError:
    return ConflictError(f"{e.field.capitalize()} already exists", details={'field': e.field})


def validate_username(username: str) -> str:
    username = username.strip()
    if len(username) < 3:
        raise ValidationError("Username must be at least 3 characters long")
    return username


def validate_email(email: str) -> str:
    email = normalize_email(email)
    if '@' not in email or '.' not in email.split('@')[-1]:
        raise ValidationError("Invalid email format")
    return email


def validate_password(password: str) -> str:
    if len(password) < 6:
        raise ValidationError("Password must be at least 6 characters long")
    return password


def non_empty(data: Dict[str, Any], field: str) -> str:
    value = data[field].strip()
    if not value:
        raise ValidationError(f"{field.capitalize()} cannot be empty")
    return value


def session_cookie(response: web.StreamResponse, settings: Settings, token: str, max_age: Optional[int]):
    response.set_cookie(
        settings.cookie_name,
        token,
        max_age=max_age,
        httponly=True,
        secure=settings.production,
        samesite=settings.cookie_samesite,
        path='/',
    )


def clear_session_cookie(response: web.StreamResponse, settings: Settings):
    session_cookie(response, settings, '', max_age=0)


def newest_first(docs):
    return sorted(docs, key=lambda doc: doc.get('created_at', 0), reverse=True)


# =============================================================================
# Authentication Endpoints
# =============================================================================

@routes.post('/api/auth/register')
async def register(request: web.Request):
    """Register a new account"""
    data = await get_json_data(request)
    require_fields(data, ['username', 'email', 'password'])
    validate_field_types(data, {
        'username': str,
        'email': str,
        'password': str,
    })

    username = validate_username(data['username'])
    email = validate_email(data['email'])
    password = validate_password(data['password'])

    hashed = await request.app[CREDENTIALS].hash(password)
    accounts = collection(request, ACCOUNTS)
    try:
        account = await accounts.insert({
            'username': username,
            'email': email,
            'password': hashed,
            'bio': data.get('bio') if isinstance(data.get('bio'), str) else '',
        }, unique=('username', 'email'))
    except DuplicateKeyError as e:
        raise conflict(e)

    logger.info(f"Registered account {account['_id']} ({username})")
    return json_response(public_account(account))


@routes.post('/api/auth/login')
async def login(request: web.Request):
    """Log in and receive the session cookie"""
    data = await get_json_data(request)
    require_fields(data, ['email', 'password'])
    validate_field_types(data, {
        'email': str,
        'password': str,
    })

    email = normalize_email(data['email'])
    account = await collection(request, ACCOUNTS).find_one(lambda doc: doc.get('email') == email)
    if account is None:
        raise NotFoundError("User not found")

    if not await request.app[CREDENTIALS].verify(data['password'], account['password']):
        raise Unauthorized("Wrong password")

    settings = request.app[SETTINGS]
    token = request.app[TOKENS].issue({
        'account_id': account['_id'],
        'username': account['username'],
        'email': account['email'],
    })

    response = json_response(public_account(account))
    session_cookie(response, settings, token, max_age=settings.token_ttl)
    logger.info(f"Account {account['_id']} logged in")
    return response


@routes.get('/api/auth/logout')
async def logout(request: web.Request):
    """Clear the session cookie and revoke the token it held"""
    settings = request.app[SETTINGS]
    guard = request.app[SESSION_GUARD]

    if await guard.revoke(request.cookies.get(settings.cookie_name)):
        logger.info("Session token revoked at logout")
    await guard.purge_expired()

    response = json_response({'message': 'User logout success'})
    clear_session_cookie(response, settings)
    return response


@routes.get('/api/auth/refetch')
@login_required
async def refetch(request: web.Request):
    """Return the claims of the current session"""
    identity = current_identity(request)
    # Other sessions of a deleted account still carry valid signatures
    if await collection(request, ACCOUNTS).get(identity.account_id) is None:
        raise Forbidden("Token is not valid")
    return json_response({
        'account_id': identity.account_id,
        'username': identity.username,
        'email': identity.email,
        'exp': identity.expires_at,
    })


# =============================================================================
# Account Endpoints
# =============================================================================

@routes.get('/api/users/{user_id}')
async def get_account(request: web.Request):
    user_id = get_path_params(request)['user_id']
    account = await collection(request, ACCOUNTS).get(user_id)
    if account is None:
        raise NotFoundError("User not found")
    return json_response(public_account(account))


@routes.put('/api/users/{user_id}')
@login_required
async def update_account(request: web.Request):
    """Update the caller's own account"""
    user_id = get_path_params(request)['user_id']
    require_owner(current_identity(request), user_id, 'account')

    data = await get_json_data(request)
    validate_field_types(data, {
        'username': str,
        'email': str,
        'password': str,
        'bio': str,
    })

    accounts = collection(request, ACCOUNTS)
    account = await accounts.get(user_id)
    if account is None:
        raise NotFoundError("User not found")

    updates = {}
    if data.get('username') is not None:
        updates['username'] = validate_username(data['username'])
    if data.get('email') is not None:
        updates['email'] = validate_email(data['email'])
    if data.get('bio') is not None:
        updates['bio'] = data['bio']
    if data.get('password') is not None:
        updates['password'] = await request.app[CREDENTIALS].hash(validate_password(data['password']))

    try:
        updated = await accounts.update(user_id, updates, unique=('username', 'email'))
    except DuplicateKeyError as e:
        raise conflict(e)
    if updated is None:
        raise NotFoundError("User not found")

    if updated['username'] != account['username']:
        await request.app[CASCADE].on_account_renamed(user_id, updated['username'])

    logger.info(f"Updated account {user_id}: {sorted(updates)}")
    return json_response(public_account(updated))


@routes.delete('/api/users/{user_id}')
@login_required
async def delete_account(request: web.Request):
    """Delete the caller's own account with its posts and comments"""
    user_id = get_path_params(request)['user_id']
    require_owner(current_identity(request), user_id, 'account')

    settings = request.app[SETTINGS]
    guard = request.app[SESSION_GUARD]
    try:
        _, result = await request.app[CASCADE].delete_account(user_id)
    except PartialCascadeFailure:
        # The account is gone even though its cleanup is not
        await guard.revoke(request.cookies.get(settings.cookie_name))
        raise

    await guard.revoke(request.cookies.get(settings.cookie_name))
    response = json_response({
        'message': 'User has been deleted',
        'removed': result.removed,
    })
    clear_session_cookie(response, settings)
    return response


# =============================================================================
# Post Endpoints
# =============================================================================

@routes.post('/api/posts/create')
@login_required
async def create_post(request: web.Request):
    """Create a post owned by the caller"""
    identity = current_identity(request)
    data = await get_json_data(request)
    require_fields(data, ['title', 'desc'])
    validate_field_types(data, {
        'title': str,
        'desc': str,
        'photo': str,
        'categories': list,
    })

    accounts = collection(request, ACCOUNTS)
    posts = collection(request, POSTS)

    account = await accounts.get(identity.account_id)
    if account is None:
        raise NotFoundError("User not found")

    try:
        post = await posts.insert({
            'title': non_empty(data, 'title'),
            'desc': non_empty(data, 'desc'),
            'photo': data.get('photo') or '',
            'categories': data.get('categories') or [],
            'username': account['username'],
            'user_id': identity.account_id,
        }, unique=('title',))
    except DuplicateKeyError as e:
        raise conflict(e)

    # The owner may have been deleted while the post was being written
    if await accounts.get(identity.account_id) is None:
        await posts.delete(post['_id'])
        logger.warning(f"Discarded post {post['_id']}: owner {identity.account_id} was deleted")
        raise NotFoundError("User not found")

    logger.info(f"Account {identity.account_id} created post {post['_id']}")
    return json_response(post)


@routes.put('/api/posts/{post_id}')
@login_required
async def update_post(request: web.Request):
    post_id = get_path_params(request)['post_id']
    data = await get_json_data(request)
    validate_field_types(data, {
        'title': str,
        'desc': str,
        'photo': str,
        'categories': list,
    })

    posts = collection(request, POSTS)
    post = await posts.get(post_id)
    if post is None:
        raise NotFoundError("Post not found")
    require_owner(current_identity(request), post.get('user_id'), 'posts')

    updates = {}
    for field in ['title', 'desc']:
        if data.get(field) is not None:
            updates[field] = non_empty(data, field)
    if data.get('categories') is not None:
        updates['categories'] = data['categories']
    # An empty or missing photo keeps the current one
    updates['photo'] = data.get('photo') or post.get('photo', '')

    try:
        updated = await posts.update(post_id, updates, unique=('title',))
    except DuplicateKeyError as e:
        raise conflict(e)
    if updated is None:
        raise NotFoundError("Post not found")
    return json_response(updated)


@routes.delete('/api/posts/{post_id}')
@login_required
async def delete_post(request: web.Request):
    """Delete a post and its comments"""
    post_id = get_path_params(request)['post_id']
    post = await collection(request, POSTS).get(post_id)
    if post is None:
        raise NotFoundError("Post not found")
    require_owner(current_identity(request), post.get('user_id'), 'posts')

    _, result = await request.app[CASCADE].delete_post(post_id)
    return json_response({
        'message': 'Post has been deleted',
        'removed': result.removed,
    })


@routes.get('/api/posts/user/{user_id}')
async def get_account_posts(request: web.Request):
    user_id = get_path_params(request)['user_id']
    posts = await collection(request, POSTS).find(lambda post: post.get('user_id') == user_id)
    return json_response(newest_first(posts))


@routes.get('/api/posts/{post_id}')
async def get_post(request: web.Request):
    post_id = get_path_params(request)['post_id']
    post = await collection(request, POSTS).get(post_id)
    if post is None:
        raise NotFoundError("Post not found")
    return json_response(post)


@routes.get('/api/posts')
async def list_posts(request: web.Request):
    """All posts, optionally filtered by ?search= on the title"""
    search = get_query_params(request).get('search')
    posts = await collection(request, POSTS).find(build_title_filter(search))
    return json_response(newest_first(posts))


# =============================================================================
# Comment Endpoints
# =============================================================================

@routes.post('/api/comments/create')
@login_required
async def create_comment(request: web.Request):
    identity = current_identity(request)
    data = await get_json_data(request)
    require_fields(data, ['comment', 'post_id'])
    validate_field_types(data, {
        'comment': str,
        'post_id': str,
    })

    accounts = collection(request, ACCOUNTS)
    posts = collection(request, POSTS)
    comments = collection(request, COMMENTS)

    account = await accounts.get(identity.account_id)
    if account is None:
        raise NotFoundError("User not found")
    if await posts.get(data['post_id']) is None:
        raise NotFoundError("Post not found")

    comment = await comments.insert({
        'comment': non_empty(data, 'comment'),
        'author': account['username'],
        'post_id': data['post_id'],
        'user_id': identity.account_id,
    })

    # The post or the author may have been deleted in the meantime
    if await posts.get(data['post_id']) is None or await accounts.get(identity.account_id) is None:
        await comments.delete(comment['_id'])
        logger.warning(f"Discarded comment {comment['_id']}: its post or author was deleted")
        raise NotFoundError("Post not found")

    return json_response(comment)


@routes.put('/api/comments/{comment_id}')
@login_required
async def update_comment(request: web.Request):
    comment_id = get_path_params(request)['comment_id']
    data = await get_json_data(request)
    require_fields(data, ['comment'])
    validate_field_types(data, {'comment': str})

    comments = collection(request, COMMENTS)
    comment = await comments.get(comment_id)
    if comment is None:
        raise NotFoundError("Comment not found")
    require_owner(current_identity(request), comment.get('user_id'), 'comments')

    updated = await comments.update(comment_id, {'comment': non_empty(data, 'comment')})
    if updated is None:
        raise NotFoundError("Comment not found")
    return json_response(updated)


@routes.delete('/api/comments/{comment_id}')
@login_required
async def delete_comment(request: web.Request):
    comment_id = get_path_params(request)['comment_id']
    comments = collection(request, COMMENTS)
    comment = await comments.get(comment_id)
    if comment is None:
        raise NotFoundError("Comment not found")
    require_owner(current_identity(request), comment.get('user_id'), 'comments')

    if await comments.delete(comment_id) is None:
        raise NotFoundError("Comment not found")
    return json_response({'message': 'Comment has been deleted'})


@routes.get('/api/comments/post/{post_id}')
async def get_post_comments(request: web.Request):
    post_id = get_path_params(request)['post_id']
    comments = await collection(request, COMMENTS).find(lambda comment: comment.get('post_id') == post_id)
    comments.sort(key=lambda comment: comment.get('created_at', 0))
    return json_response(comments)


# =============================================================================
# Health
# =============================================================================

@routes.get('/api/health')
async def health_check(request: web.Request):
    counts = {}
    for name in (ACCOUNTS, POSTS, COMMENTS):
        counts[name] = await collection(request, name).count()
    return json_response({
        'status': 'healthy',
        'timestamp': time.time(),
        'collections': await request.app[DB].list_collections(),
        'counts': counts,
    })


# =============================================================================
# Application Lifecycle
# =============================================================================

async def cleanup(app: web.Application):
    logger.info("Shutting down the blog API...")
    await app[DB].close()


def create_app(settings: Settings, clock=time.time) -> web.Application:
    """Create the application and wire every component from `settings`"""
    app = web.Application(middlewares=[error_middleware])

    db = AsyncJSONDB(settings.db_path)
    tokens = TokenService(settings.secret, settings.token_ttl, clock=clock)

    app[SETTINGS] = settings
    app[DB] = db
    app[CREDENTIALS] = CredentialStore()
    app[TOKENS] = tokens
    app[SESSION_GUARD] = SessionGuard(tokens, db.get_collection(REVOKED_TOKENS), settings.cookie_name)
    app[CASCADE] = CascadeDeletionEngine(
        db.get_collection(ACCOUNTS),
        db.get_collection(POSTS),
        db.get_collection(COMMENTS),
        recheck_attempts=settings.cascade_recheck_attempts,
    )

    app.add_routes(routes)
    app.on_cleanup.append(cleanup)

    logger.info(f"Blog API created (data in {settings.db_path}, production={settings.production})")
    return app


def main():
    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    host = settings.host
    port = settings.port
    log_level = settings.log_level

    if '--host' in sys.argv:
        host = sys.argv[sys.argv.index('--host') + 1]

    if '--port' in sys.argv:
        port = int(sys.argv[sys.argv.index('--port') + 1])

    if '--debug' in sys.argv:
        log_level = 'DEBUG'

    logging.basicConfig(level=log_level, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    app = create_app(settings.with_overrides(host=host, port=port, log_level=log_level))
    logger.info(f"Starting server on {host}:{port}")
    web.run_app(app, host=host, port=port, access_log=logger if log_level == 'DEBUG' else None)


if __name__ == '__main__':
    main()
