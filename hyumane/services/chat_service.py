from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from supabase import Client as SupabaseClient

from ..extensions import db
from ..models import Chat, Message
from .backend import commit_local, first_row, rows, utcnow_iso
from .profile_service import ProfileService
from .realtime import ChangeFeed

logger = logging.getLogger(__name__)

CHAT_COLUMNS = 'id, last_message, updated_at, participant1_id, participant2_id'
EMPTY_CHAT_PREVIEW = 'No messages yet'
ANONYMOUS_SENDER = 'Anonymous'


class ChatService:
    """One-to-one conversations between members."""

    def __init__(
        self,
        profiles: ProfileService,
        supabase: Optional[SupabaseClient] = None,
        change_feed: Optional[ChangeFeed] = None,
    ) -> None:
        self._profiles = profiles
        self._supabase = supabase
        self._changes = change_feed or ChangeFeed()

    def get_chats(self, user_id: str) -> List[Dict[str, Any]]:
        """Return the user's chats, most recently active first.

        Chats whose other participant has no profile are left out.
        """

        if self._supabase:
            try:
                response = (
                    self._supabase.table('chats')
                    .select(CHAT_COLUMNS)
                    .or_(f'participant1_id.eq.{user_id},participant2_id.eq.{user_id}')
                    .order('updated_at', desc=True)
                    .execute()
                )
            except Exception:
                logger.error('chat.get_chats.failed', exc_info=True, extra={'user_id': user_id})
                return []
            chats = rows(response)
        else:
            statement = (
                db.select(Chat)
                .where(db.or_(Chat.participant1_id == user_id, Chat.participant2_id == user_id))
                .order_by(Chat.updated_at.desc())
            )
            chats = [chat.to_dict() for chat in db.session.execute(statement).scalars()]

        summaries = []
        for chat in chats:
            other_id = other_participant(chat, user_id)
            profile = self._profiles.get_user_profile(other_id)
            if not profile:
                continue
            summaries.append(
                {
                    'id': chat.get('id'),
                    'name': profile.get('username'),
                    'other_user_id': other_id,
                    'avatar': profile.get('avatar_url') or None,
                    'last_message': chat.get('last_message') or EMPTY_CHAT_PREVIEW,
                    'updated_at': chat.get('updated_at'),
                }
            )
        return summaries

    def get_chat(self, chat_id: str) -> Optional[Dict[str, Any]]:
        if not chat_id:
            return None

        if self._supabase:
            try:
                response = self._supabase.table('chats').select(CHAT_COLUMNS).eq('id', chat_id).limit(1).execute()
            except Exception:
                logger.warning('chat.get_chat.failed', exc_info=True, extra={'chat_id': chat_id})
                return None
            return first_row(response)

        chat = db.session.get(Chat, chat_id)
        return chat.to_dict() if chat else None

    def get_messages(self, chat_id: str, viewer_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if self._supabase:
            try:
                response = (
                    self._supabase.table('messages')
                    .select('id, chat_id, content, created_at, sender_id')
                    .eq('chat_id', chat_id)
                    .order('created_at', desc=False)
                    .execute()
                )
            except Exception:
                logger.error('chat.get_messages.failed', exc_info=True, extra={'chat_id': chat_id})
                return []
            messages = rows(response)
        else:
            statement = db.select(Message).where(Message.chat_id == chat_id).order_by(Message.created_at.asc())
            messages = [message.to_dict() for message in db.session.execute(statement).scalars()]

        return [self.describe_message(message, viewer_id) for message in messages]

    def describe_message(self, message: Dict[str, Any], viewer_id: Optional[str] = None) -> Dict[str, Any]:
        """Join the sender's username onto a raw message row."""

        sender_id = message.get('sender_id')
        profile = self._profiles.get_user_profile(sender_id) if sender_id else None
        return {
            'id': message.get('id'),
            'chat_id': message.get('chat_id'),
            'content': message.get('content', ''),
            'sender': (profile or {}).get('username') or ANONYMOUS_SENDER,
            'sender_id': sender_id,
            'created_at': message.get('created_at'),
            'is_own': bool(viewer_id) and sender_id == viewer_id,
        }

    def send_message(self, chat_id: str, content: str, sender_id: str) -> Dict[str, Any]:
        content = (content or '').strip()
        if not chat_id or not content or not sender_id:
            raise ValueError('Chat ID, content, and sender ID are required')

        now = utcnow_iso()
        record = {'chat_id': chat_id, 'content': content, 'sender_id': sender_id, 'created_at': now}

        if self._supabase:
            try:
                response = self._supabase.table('messages').insert(record).execute()
            except Exception:
                logger.error('chat.send_message.failed', exc_info=True, extra={'chat_id': chat_id})
                raise
            created = first_row(response) or record
            try:
                updated = first_row(
                    self._supabase.table('chats')
                    .update({'last_message': content, 'updated_at': now})
                    .eq('id', chat_id)
                    .execute()
                )
            except Exception:
                logger.warning('chat.send_message.touch_failed', exc_info=True, extra={'chat_id': chat_id})
                updated = None
        else:
            chat = db.session.get(Chat, chat_id)
            if chat is None:
                raise ValueError('Chat not found.')
            message = Message(chat_id=chat_id, content=content, sender_id=sender_id)
            chat.touch(content)
            commit_local(message, chat)
            created = message.to_dict()
            updated = chat.to_dict()

        self._changes.publish('messages', 'INSERT', created)
        self._changes.publish('chats', 'UPDATE', updated or {'id': chat_id, 'last_message': content, 'updated_at': now})
        logger.info('chat.send_message.success', extra={'chat_id': chat_id, 'user_id': sender_id})
        return created

    def create_or_get_chat(self, user_id_1: str, user_id_2: str) -> str:
        """Return the id of the chat between two users, creating it once."""

        if not user_id_1 or not user_id_2:
            raise ValueError('Both participants are required to start a chat.')
        if user_id_1 == user_id_2:
            raise ValueError('You cannot start a chat with yourself.')

        if self._supabase:
            try:
                response = self._supabase.rpc(
                    'get_or_create_chat',
                    {'user1_id': user_id_1, 'user2_id': user_id_2},
                ).execute()
            except Exception:
                logger.error('chat.create_or_get.failed', exc_info=True, extra={'user_id': user_id_1})
                raise
            chat_id = _rpc_scalar(getattr(response, 'data', None))
            if not chat_id:
                raise ValueError('Unable to open a chat right now.')
            return chat_id

        existing = self._local_chat_between(user_id_1, user_id_2)
        if existing is not None:
            return existing.id

        chat = Chat(participant1_id=user_id_1, participant2_id=user_id_2)
        commit_local(chat, message='Chat already exists.')
        self._changes.publish('chats', 'INSERT', chat.to_dict())
        return chat.id

    @staticmethod
    def _local_chat_between(user_id_1: str, user_id_2: str) -> Optional[Chat]:
        statement = db.select(Chat).where(
            db.or_(
                db.and_(Chat.participant1_id == user_id_1, Chat.participant2_id == user_id_2),
                db.and_(Chat.participant1_id == user_id_2, Chat.participant2_id == user_id_1),
            )
        )
        return db.session.execute(statement).scalars().first()


def is_participant(chat: Optional[Dict[str, Any]], user_id: Optional[str]) -> bool:
    if not chat or not user_id:
        return False
    return user_id in (chat.get('participant1_id'), chat.get('participant2_id'))


def other_participant(chat: Dict[str, Any], user_id: str) -> Optional[str]:
    if chat.get('participant1_id') == user_id:
        return chat.get('participant2_id')
    return chat.get('participant1_id')


def _rpc_scalar(data: Any) -> Optional[str]:
    # PostgREST returns a bare scalar for ``returns uuid`` functions but a
    # row list for ``returns setof``/table functions.
    if isinstance(data, list):
        data = data[0] if data else None
    if isinstance(data, dict):
        data = data.get('id') or data.get('get_or_create_chat') or next(iter(data.values()), None)
    return str(data) if data else None
