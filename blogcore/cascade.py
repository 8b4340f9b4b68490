"""
Referential integrity across the accounts, posts and comments collections.

The store has no foreign keys, so deleting a parent record is followed by
explicit removal of its children. The primary delete commits first; if a
cleanup step then fails the caller gets PartialCascadeFailure naming the
collections that may still hold orphans, never a silent success.

Requests are not serialized against each other, so a child can be created
for a parent while that parent is being deleted. After each cascade the
engine looks for such late children and repeats the cleanup up to
`recheck_attempts` times. That bounds, but does not close, the window in
which an orphan can be left behind.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from blogcore.db import Collection, DatabaseError, Document, Filter
from blogcore.errors import NotFoundError, PartialCascadeFailure

logger = logging.getLogger(__name__)

ACCOUNTS = 'accounts'
POSTS = 'posts'
COMMENTS = 'comments'


@dataclass
class CascadeResult:
    removed: Dict[str, int] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def record(self, collection: str, outcome):
        if isinstance(outcome, Exception):
            self.failed[collection] = str(outcome) or type(outcome).__name__
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            self.removed[collection] = self.removed.get(collection, 0) + len(outcome)

    def merge(self, other: 'CascadeResult'):
        for name, count in other.removed.items():
            self.removed[name] = self.removed.get(name, 0) + count
        self.failed.update(other.failed)


class CascadeDeletionEngine:
    def __init__(self, accounts: Collection, posts: Collection, comments: Collection,
                 recheck_attempts: int = 2):
        self.accounts = accounts
        self.posts = posts
        self.comments = comments
        self.recheck_attempts = recheck_attempts

    async def _remove(self, collection: Collection, filter_func: Filter) -> List[Document]:
        try:
            return await collection.delete_many(filter_func)
        except DatabaseError as e:
            logger.error(f"Cascade cleanup of {collection.name} failed: {e}")
            raise

    async def on_account_deleted(self, account_id: str) -> CascadeResult:
        """Remove the posts and comments of a deleted account"""
        result = CascadeResult()
        posts_outcome, comments_outcome = await asyncio.gather(
            self._remove(self.posts, lambda post: post.get('user_id') == account_id),
            self._remove(self.comments, lambda comment: comment.get('user_id') == account_id),
            return_exceptions=True,
        )
        result.record(POSTS, posts_outcome)
        result.record(COMMENTS, comments_outcome)

        # Comments other accounts left on the removed posts
        if posts_outcome and POSTS not in result.failed:
            post_ids = {post['_id'] for post in posts_outcome}
            try:
                orphaned = await self._remove(self.comments, lambda comment: comment.get('post_id') in post_ids)
            except DatabaseError as e:
                orphaned = e
            result.record(COMMENTS, orphaned)

        logger.info(f"Cascade for account {account_id}: removed {result.removed}, failed {list(result.failed)}")
        return result

    async def on_post_deleted(self, post_id: str) -> CascadeResult:
        """Remove the comments of a deleted post"""
        result = CascadeResult()
        try:
            outcome = await self._remove(self.comments, lambda comment: comment.get('post_id') == post_id)
        except DatabaseError as e:
            outcome = e
        result.record(COMMENTS, outcome)
        logger.info(f"Cascade for post {post_id}: removed {result.removed}, failed {list(result.failed)}")
        return result

    async def _has_account_children(self, account_id: str) -> bool:
        post = await self.posts.find_one(lambda doc: doc.get('user_id') == account_id)
        comment = await self.comments.find_one(lambda doc: doc.get('user_id') == account_id)
        return post is not None or comment is not None

    async def _has_post_children(self, post_id: str) -> bool:
        return await self.comments.find_one(lambda doc: doc.get('post_id') == post_id) is not None

    async def delete_account(self, account_id: str) -> Tuple[Document, CascadeResult]:
        """Delete an account and everything that references it"""
        account = await self.accounts.delete(account_id)
        if account is None:
            raise NotFoundError("User not found")
        logger.info(f"Deleted account {account_id}")

        result = await self.on_account_deleted(account_id)
        await self._recheck(result, lambda: self._has_account_children(account_id),
                            lambda: self.on_account_deleted(account_id), f"account {account_id}")
        self._raise_if_partial(result, f"User {account_id} was deleted but cleanup did not complete")
        return account, result

    async def delete_post(self, post_id: str) -> Tuple[Document, CascadeResult]:
        """Delete a post and its comments"""
        post = await self.posts.delete(post_id)
        if post is None:
            raise NotFoundError("Post not found")
        logger.info(f"Deleted post {post_id}")

        result = await self.on_post_deleted(post_id)
        await self._recheck(result, lambda: self._has_post_children(post_id),
                            lambda: self.on_post_deleted(post_id), f"post {post_id}")
        self._raise_if_partial(result, f"Post {post_id} was deleted but cleanup did not complete")
        return post, result

    async def _recheck(self, result: CascadeResult, has_children, cascade, label: str):
        for _ in range(self.recheck_attempts):
            if not result.ok:
                return
            try:
                if not await has_children():
                    return
            except DatabaseError as e:
                logger.error(f"Re-check after cascade for {label} failed: {e}")
                return
            logger.warning(f"Children created during cascade for {label}, repeating cleanup")
            result.merge(await cascade())

    @staticmethod
    def _raise_if_partial(result: CascadeResult, message: str):
        if not result.ok:
            logger.error(f"{message}; orphans may remain in {sorted(result.failed)}")
            raise PartialCascadeFailure(message, result.failed.keys(), result.removed)

    async def on_account_renamed(self, account_id: str, username: str) -> Dict[str, int]:
        """Carry a new handle into the copies held by posts and comments"""
        posts_outcome, comments_outcome = await asyncio.gather(
            self.posts.update_many(lambda post: post.get('user_id') == account_id, {'username': username}),
            self.comments.update_many(lambda comment: comment.get('user_id') == account_id, {'author': username}),
            return_exceptions=True,
        )
        updated, failed = {}, []
        for name, outcome in ((POSTS, posts_outcome), (COMMENTS, comments_outcome)):
            if isinstance(outcome, Exception):
                logger.error(f"Renaming account {account_id} in {name} failed: {outcome}")
                failed.append(name)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                updated[name] = outcome
        if failed:
            raise PartialCascadeFailure(
                f"User {account_id} was renamed but not every copy of the handle was updated",
                failed)
        return updated
