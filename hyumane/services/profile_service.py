from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from supabase import Client as SupabaseClient

from ..extensions import db
from ..models import Follow, Profile
from .backend import (
    DuplicateRecordError,
    commit_local,
    first_row,
    is_duplicate_error,
    row_count,
    rows,
    utcnow_iso,
)
from .realtime import ChangeFeed

logger = logging.getLogger(__name__)

DIRECTORY_COLUMNS = "verified_user_id, username, bio, avatar_url, is_verified"


def normalize_username(username: Optional[str]) -> str:
    """Trim whitespace and a leading ``@`` from a submitted handle."""

    value = (username or "").strip()
    if value.startswith("@"):
        value = value[1:].strip()
    return value


class ProfileService:
    """Profiles and the follow graph.

    Every method talks to Supabase when a client is configured and to the
    local SQLAlchemy tables otherwise. Profiles are keyed by the
    ``verified_user_id`` handed out by the identity provider, not by the row
    id.
    """

    def __init__(self, supabase: Optional[SupabaseClient] = None, change_feed: Optional[ChangeFeed] = None) -> None:
        self._supabase = supabase
        self._changes = change_feed or ChangeFeed()

    # --- Profiles -------------------------------------------------------

    def create_profile(
        self,
        username: str,
        bio: str,
        interests: str,
        verified_user_id: str,
        verification_date: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        username = normalize_username(username)
        if not username:
            raise ValueError('Choose a username to continue.')
        if not verified_user_id:
            raise ValueError('A verified identity is required to create a profile.')

        record = {
            'username': username,
            'bio': (bio or '').strip(),
            'interests': (interests or '').strip(),
            'verified_user_id': verified_user_id,
            'is_verified': True,
            'avatar_url': avatar_url or None,
            'verification_date': verification_date or None,
            'created_at': utcnow_iso(),
        }

        if self._supabase:
            try:
                response = self._supabase.table('profiles').insert(record).execute()
            except Exception as exc:
                if is_duplicate_error(exc):
                    raise DuplicateRecordError(self._duplicate_message(exc)) from exc
                logger.error('profiles.create.failed', exc_info=True, extra={'user_id': verified_user_id})
                raise
            created = first_row(response) or record
        else:
            if self._local_profile(verified_user_id) is not None:
                raise DuplicateRecordError('A profile already exists for this account.')
            if db.session.execute(db.select(Profile).filter_by(username=username)).scalar_one_or_none():
                raise DuplicateRecordError('That username is already taken.')
            record.pop('created_at')
            profile = Profile(**record)
            commit_local(profile, message='That username is already taken.')
            created = profile.to_dict()

        self._changes.publish('profiles', 'INSERT', created)
        logger.info('profiles.create.success', extra={'user_id': verified_user_id})
        return created

    def update_profile(
        self,
        user_id: str,
        username: Optional[str] = None,
        bio: Optional[str] = None,
        interests: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Update the provided fields of a profile and return the changes."""

        changes: Dict[str, Any] = {}
        if username is not None:
            username = normalize_username(username)
            if not username:
                raise ValueError('Username cannot be empty.')
            changes['username'] = username
        if bio is not None:
            changes['bio'] = bio.strip()
        if interests is not None:
            changes['interests'] = interests.strip()
        if avatar_url is not None:
            changes['avatar_url'] = avatar_url
        if not changes:
            return {}

        if self._supabase:
            try:
                self._supabase.table('profiles').update(changes).eq('verified_user_id', user_id).execute()
            except Exception as exc:
                if is_duplicate_error(exc):
                    raise DuplicateRecordError(self._duplicate_message(exc)) from exc
                logger.error('profiles.update.failed', exc_info=True, extra={'user_id': user_id})
                raise
        else:
            profile = self._local_profile(user_id)
            if profile is None:
                raise ValueError('Profile not found.')
            for key, value in changes.items():
                setattr(profile, key, value)
            commit_local(profile, message='That username is already taken.')

        self._changes.publish('profiles', 'UPDATE', dict(changes, verified_user_id=user_id))
        return changes

    def get_user_profile(self, verified_user_id: str) -> Optional[Dict[str, Any]]:
        if not verified_user_id:
            return None

        if self._supabase:
            try:
                response = (
                    self._supabase.table('profiles')
                    .select('*')
                    .eq('verified_user_id', verified_user_id)
                    .limit(1)
                    .execute()
                )
            except Exception:
                logger.warning('profiles.fetch.failed', exc_info=True, extra={'user_id': verified_user_id})
                return None
            return first_row(response)

        profile = self._local_profile(verified_user_id)
        return profile.to_dict() if profile else None

    def get_all_users(self, current_user_id: Optional[str] = None, query: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return the member directory, minus the viewer, sorted by username."""

        if self._supabase:
            try:
                response = (
                    self._supabase.table('profiles')
                    .select(DIRECTORY_COLUMNS)
                    .neq('verified_user_id', current_user_id or '')
                    .order('username', desc=False)
                    .execute()
                )
            except Exception:
                logger.warning('profiles.directory.failed', exc_info=True)
                return []
            users = rows(response)
        else:
            statement = db.select(Profile).order_by(Profile.username.asc())
            if current_user_id:
                statement = statement.where(Profile.verified_user_id != current_user_id)
            columns = DIRECTORY_COLUMNS.split(', ')
            users = []
            for profile in db.session.execute(statement).scalars():
                row = profile.to_dict()
                users.append({key: row[key] for key in columns})

        needle = (query or '').strip().lower()
        if not needle:
            return users
        return [
            user for user in users
            if needle in (user.get('username') or '').lower() or needle in (user.get('bio') or '').lower()
        ]

    # --- Follows --------------------------------------------------------

    def follow_user(self, follower_id: str, following_id: str) -> None:
        if not follower_id or not following_id:
            raise ValueError('Both users are required to follow.')
        if follower_id == following_id:
            raise ValueError('You cannot follow yourself.')

        record = {'follower_id': follower_id, 'following_id': following_id, 'created_at': utcnow_iso()}
        try:
            if self._supabase:
                try:
                    response = self._supabase.table('follows').insert(record).execute()
                except Exception as exc:
                    if is_duplicate_error(exc):
                        raise DuplicateRecordError('Already following.') from exc
                    raise
                created = first_row(response) or record
            else:
                follow = Follow(follower_id=follower_id, following_id=following_id)
                commit_local(follow, message='Already following.')
                created = follow.to_dict()
        except DuplicateRecordError:
            logger.info('follows.follow.already_following', extra={'follower_id': follower_id, 'following_id': following_id})
            return

        self._changes.publish('follows', 'INSERT', created)

    def unfollow_user(self, follower_id: str, following_id: str) -> None:
        if self._supabase:
            self._supabase.table('follows').delete().eq('follower_id', follower_id).eq('following_id', following_id).execute()
        else:
            db.session.execute(
                db.delete(Follow).where(Follow.follower_id == follower_id, Follow.following_id == following_id)
            )
            db.session.commit()

        self._changes.publish('follows', 'DELETE', old={'follower_id': follower_id, 'following_id': following_id})

    def is_following(self, follower_id: str, following_id: str) -> bool:
        if not follower_id or not following_id:
            return False

        if self._supabase:
            try:
                response = (
                    self._supabase.table('follows')
                    .select('id')
                    .eq('follower_id', follower_id)
                    .eq('following_id', following_id)
                    .limit(1)
                    .execute()
                )
            except Exception:
                logger.warning('follows.status.failed', exc_info=True)
                return False
            return first_row(response) is not None

        statement = db.select(Follow.id).where(Follow.follower_id == follower_id, Follow.following_id == following_id)
        return db.session.execute(statement).first() is not None

    def toggle_follow(self, follower_id: str, following_id: str, currently_following: bool) -> bool:
        """Flip the follow state the viewer saw and return the new state."""

        if currently_following:
            self.unfollow_user(follower_id, following_id)
            return False
        self.follow_user(follower_id, following_id)
        return True

    def following_ids(self, follower_id: str) -> List[str]:
        if self._supabase:
            try:
                response = self._supabase.table('follows').select('following_id').eq('follower_id', follower_id).execute()
            except Exception:
                logger.warning('follows.list.failed', exc_info=True, extra={'user_id': follower_id})
                return []
            return [row['following_id'] for row in rows(response) if row.get('following_id')]

        statement = db.select(Follow.following_id).where(Follow.follower_id == follower_id)
        return list(db.session.execute(statement).scalars())

    def following_map(self, follower_id: str, user_ids: Iterable[str]) -> Dict[str, bool]:
        """Return ``{user_id: is_followed}`` for everyone but the follower."""

        targets = [user_id for user_id in dict.fromkeys(user_ids) if user_id and user_id != follower_id]
        if not targets:
            return {}
        followed = set(self.following_ids(follower_id))
        return {user_id: user_id in followed for user_id in targets}

    def get_follow_stats(self, user_id: str) -> Dict[str, int]:
        if self._supabase:
            try:
                followers = self._supabase.table('follows').select('id', count='exact').eq('following_id', user_id).execute()
                following = self._supabase.table('follows').select('id', count='exact').eq('follower_id', user_id).execute()
            except Exception:
                logger.warning('follows.stats.failed', exc_info=True, extra={'user_id': user_id})
                return {'followers': 0, 'following': 0}
            return {'followers': row_count(followers), 'following': row_count(following)}

        count = db.select(db.func.count()).select_from(Follow)
        return {
            'followers': db.session.execute(count.where(Follow.following_id == user_id)).scalar() or 0,
            'following': db.session.execute(count.where(Follow.follower_id == user_id)).scalar() or 0,
        }

    # --- Private helpers -------------------------------------------------

    @staticmethod
    def _local_profile(verified_user_id: str) -> Optional[Profile]:
        statement = db.select(Profile).filter_by(verified_user_id=verified_user_id)
        return db.session.execute(statement).scalar_one_or_none()

    @staticmethod
    def _duplicate_message(exc: BaseException) -> str:
        details = ' '.join(str(part) for part in (getattr(exc, 'message', ''), getattr(exc, 'details', ''), exc))
        if 'verified_user_id' in details:
            return 'A profile already exists for this account.'
        return 'That username is already taken.'
