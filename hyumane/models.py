"""Local database models for Hyumane.

These mirror the tables the hosted Supabase project exposes so the app can
run against SQLite during development and tests. Column names match the
Supabase schema exactly; services convert rows with :meth:`to_dict` so both
backends hand the same shapes to the views.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict
from uuid import uuid4

from .extensions import db


def _uuid() -> str:
    return str(uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SerializerMixin:
    """Render a row as the plain dict Supabase would return for it."""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for column in self.__table__.columns:  # type: ignore[attr-defined]
            value = getattr(self, column.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            data[column.name] = value
        return data


class Profile(SerializerMixin, db.Model):
    __tablename__ = "profiles"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    verified_user_id = db.Column(db.String(255), unique=True, nullable=False, index=True)
    username = db.Column(db.String(64), unique=True, nullable=False)
    bio = db.Column(db.Text, nullable=False, default="")
    interests = db.Column(db.Text, nullable=False, default="")
    avatar_url = db.Column(db.Text, nullable=True)
    is_verified = db.Column(db.Boolean, nullable=False, default=True)
    verification_date = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)


class Post(SerializerMixin, db.Model):
    __tablename__ = "posts"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    author_id = db.Column(db.String(255), nullable=False, index=True)
    content = db.Column(db.Text, nullable=False, default="")
    image_url = db.Column(db.Text, nullable=True)
    # Legacy counter kept for schema parity; like totals come from ``likes``.
    likes = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)


class Like(SerializerMixin, db.Model):
    __tablename__ = "likes"
    __table_args__ = (db.UniqueConstraint("post_id", "user_id", name="likes_post_id_user_id_key"),)

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    post_id = db.Column(db.String(36), nullable=False, index=True)
    user_id = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)


class Reply(SerializerMixin, db.Model):
    __tablename__ = "replies"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    post_id = db.Column(db.String(36), nullable=False, index=True)
    author_id = db.Column(db.String(255), nullable=False)
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)


class Follow(SerializerMixin, db.Model):
    __tablename__ = "follows"
    __table_args__ = (
        db.UniqueConstraint("follower_id", "following_id", name="follows_follower_id_following_id_key"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    follower_id = db.Column(db.String(255), nullable=False, index=True)
    following_id = db.Column(db.String(255), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)


class Chat(SerializerMixin, db.Model):
    __tablename__ = "chats"
    __table_args__ = (
        db.UniqueConstraint("participant1_id", "participant2_id", name="chats_participants_key"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    participant1_id = db.Column(db.String(255), nullable=False, index=True)
    participant2_id = db.Column(db.String(255), nullable=False, index=True)
    last_message = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)

    def touch(self, last_message: str) -> None:
        """Record the latest message preview and bump the ordering key."""

        self.last_message = last_message
        self.updated_at = _now()


class Message(SerializerMixin, db.Model):
    __tablename__ = "messages"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    chat_id = db.Column(db.String(36), nullable=False, index=True)
    sender_id = db.Column(db.String(255), nullable=False)
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
