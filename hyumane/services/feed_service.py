from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from supabase import Client as SupabaseClient

from ..extensions import db
from ..models import Like, Post, Reply
from .backend import (
    DuplicateRecordError,
    commit_local,
    first_row,
    is_duplicate_error,
    row_count,
    rows,
    utcnow_iso,
)
from .profile_service import ProfileService
from .realtime import ChangeFeed

logger = logging.getLogger(__name__)

ANONYMOUS_AUTHOR = 'anonymous'


class FeedService:
    """Posts, likes and replies."""

    def __init__(
        self,
        profiles: ProfileService,
        supabase: Optional[SupabaseClient] = None,
        change_feed: Optional[ChangeFeed] = None,
    ) -> None:
        self._profiles = profiles
        self._supabase = supabase
        self._changes = change_feed or ChangeFeed()

    # --- Posts ----------------------------------------------------------

    def get_posts(self, current_user_id: Optional[str] = None, following_only: bool = True) -> List[Dict[str, Any]]:
        """Return the newest posts first, joined with author and engagement data.

        With ``following_only`` the feed narrows to the accounts the viewer
        follows plus the viewer's own posts. A viewer who follows nobody gets
        everyone's posts instead of an empty page.
        """

        author_ids: Optional[List[str]] = None
        if current_user_id and following_only:
            followed = self._profiles.following_ids(current_user_id)
            if followed:
                author_ids = followed + [current_user_id]

        if self._supabase:
            try:
                query = self._supabase.table('posts').select('*').order('created_at', desc=True)
                if author_ids is not None:
                    query = query.in_('author_id', author_ids)
                posts = rows(query.execute())
            except Exception:
                logger.error('feed.get_posts.failed', exc_info=True, extra={'user_id': current_user_id})
                return []
        else:
            statement = db.select(Post).order_by(Post.created_at.desc())
            if author_ids is not None:
                statement = statement.where(Post.author_id.in_(author_ids))
            posts = [post.to_dict() for post in db.session.execute(statement).scalars()]

        return [self._decorate_post(post, current_user_id) for post in posts]

    def create_post(self, content: str, user_id: str, image_url: Optional[str] = None) -> Dict[str, Any]:
        content = (content or '').strip()
        if (not content and not image_url) or not user_id:
            raise ValueError('Content or image and user ID are required')

        record = {
            'content': content,
            'author_id': user_id,
            'created_at': utcnow_iso(),
            'likes': 0,
            'image_url': image_url or None,
        }

        if self._supabase:
            try:
                response = self._supabase.table('posts').insert(record).execute()
            except Exception:
                logger.error('feed.create_post.failed', exc_info=True, extra={'user_id': user_id})
                raise
            created = first_row(response) or record
        else:
            post = Post(content=content, author_id=user_id, image_url=image_url or None, likes=0)
            commit_local(post)
            created = post.to_dict()

        self._changes.publish('posts', 'INSERT', created)
        logger.info('feed.create_post.success', extra={'user_id': user_id})
        return created

    # --- Likes ----------------------------------------------------------

    def like_post(self, post_id: str, user_id: str) -> Dict[str, Any]:
        record = {'post_id': post_id, 'user_id': user_id, 'created_at': utcnow_iso()}

        if self._supabase:
            try:
                response = self._supabase.table('likes').insert(record).execute()
            except Exception as exc:
                if is_duplicate_error(exc):
                    raise DuplicateRecordError('You already liked this post.') from exc
                raise
            created = first_row(response) or record
        else:
            like = Like(post_id=post_id, user_id=user_id)
            commit_local(like, message='You already liked this post.')
            created = like.to_dict()

        self._changes.publish('likes', 'INSERT', created)
        return created

    def unlike_post(self, post_id: str, user_id: str) -> None:
        if self._supabase:
            self._supabase.table('likes').delete().eq('post_id', post_id).eq('user_id', user_id).execute()
        else:
            db.session.execute(db.delete(Like).where(Like.post_id == post_id, Like.user_id == user_id))
            db.session.commit()

        self._changes.publish('likes', 'DELETE', old={'post_id': post_id, 'user_id': user_id})

    def toggle_like(self, post_id: str, user_id: str, currently_liked: bool) -> Dict[str, Any]:
        """Flip the like state the viewer saw.

        A duplicate-key failure on like means the viewer's page was stale and
        the post was already liked, so the like is removed instead.
        """

        if currently_liked:
            self.unlike_post(post_id, user_id)
            liked = False
        else:
            try:
                self.like_post(post_id, user_id)
                liked = True
            except DuplicateRecordError:
                logger.info('feed.toggle_like.already_liked', extra={'post_id': post_id, 'user_id': user_id})
                self.unlike_post(post_id, user_id)
                liked = False

        return {'post_id': post_id, 'liked': liked, 'likes': self.like_count(post_id)}

    def like_count(self, post_id: str) -> int:
        if self._supabase:
            try:
                response = self._supabase.table('likes').select('*', count='exact').eq('post_id', post_id).execute()
            except Exception:
                logger.warning('feed.like_count.failed', exc_info=True, extra={'post_id': post_id})
                return 0
            return row_count(response)

        statement = db.select(db.func.count()).select_from(Like).where(Like.post_id == post_id)
        return db.session.execute(statement).scalar() or 0

    def is_liked(self, post_id: str, user_id: Optional[str]) -> bool:
        if not user_id:
            return False

        if self._supabase:
            try:
                response = (
                    self._supabase.table('likes')
                    .select('id')
                    .eq('post_id', post_id)
                    .eq('user_id', user_id)
                    .limit(1)
                    .execute()
                )
            except Exception:
                logger.warning('feed.is_liked.failed', exc_info=True, extra={'post_id': post_id})
                return False
            return first_row(response) is not None

        statement = db.select(Like.id).where(Like.post_id == post_id, Like.user_id == user_id)
        return db.session.execute(statement).first() is not None

    # --- Replies --------------------------------------------------------

    def create_reply(self, post_id: str, content: str, user_id: str) -> Dict[str, Any]:
        content = (content or '').strip()
        if not content or not user_id or not post_id:
            raise ValueError('Post ID, content, and user ID are required')

        record = {
            'post_id': post_id,
            'content': content,
            'author_id': user_id,
            'created_at': utcnow_iso(),
        }

        if self._supabase:
            try:
                response = self._supabase.table('replies').insert(record).execute()
            except Exception:
                logger.error('feed.create_reply.failed', exc_info=True, extra={'post_id': post_id})
                raise
            created = first_row(response) or record
        else:
            reply = Reply(post_id=post_id, content=content, author_id=user_id)
            commit_local(reply)
            created = reply.to_dict()

        self._changes.publish('replies', 'INSERT', created)
        return created

    def get_replies(self, post_id: str) -> List[Dict[str, Any]]:
        if self._supabase:
            try:
                response = (
                    self._supabase.table('replies')
                    .select('*')
                    .eq('post_id', post_id)
                    .order('created_at', desc=False)
                    .execute()
                )
            except Exception:
                logger.error('feed.get_replies.failed', exc_info=True, extra={'post_id': post_id})
                return []
            replies = rows(response)
        else:
            statement = db.select(Reply).where(Reply.post_id == post_id).order_by(Reply.created_at.asc())
            replies = [reply.to_dict() for reply in db.session.execute(statement).scalars()]

        decorated = []
        for reply in replies:
            author = self._author(reply.get('author_id'))
            decorated.append(
                {
                    'id': reply.get('id'),
                    'post_id': reply.get('post_id', post_id),
                    'content': reply.get('content', ''),
                    'username': author['username'],
                    'avatar': author['avatar'],
                    'author_id': reply.get('author_id'),
                    'created_at': reply.get('created_at'),
                }
            )
        return decorated

    def reply_count(self, post_id: str) -> int:
        if self._supabase:
            try:
                response = self._supabase.table('replies').select('*', count='exact').eq('post_id', post_id).execute()
            except Exception:
                logger.warning('feed.reply_count.failed', exc_info=True, extra={'post_id': post_id})
                return 0
            return row_count(response)

        statement = db.select(db.func.count()).select_from(Reply).where(Reply.post_id == post_id)
        return db.session.execute(statement).scalar() or 0

    # --- Private helpers -------------------------------------------------

    def _author(self, author_id: Optional[str]) -> Dict[str, Optional[str]]:
        profile = self._profiles.get_user_profile(author_id) if author_id else None
        return {
            'username': (profile or {}).get('username') or ANONYMOUS_AUTHOR,
            'avatar': (profile or {}).get('avatar_url') or None,
        }

    def _decorate_post(self, post: Dict[str, Any], current_user_id: Optional[str]) -> Dict[str, Any]:
        post_id = post.get('id')
        author = self._author(post.get('author_id'))
        return {
            'id': post_id,
            'content': post.get('content') or '',
            'username': author['username'],
            'avatar': author['avatar'],
            'author_id': post.get('author_id'),
            'created_at': post.get('created_at'),
            'likes': self.like_count(post_id),
            'is_liked': self.is_liked(post_id, current_user_id),
            'replies': self.reply_count(post_id),
            'image_url': post.get('image_url') or None,
        }
