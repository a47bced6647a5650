from __future__ import annotations

import pytest
from postgrest.exceptions import APIError

from conftest import make_profile, response

from hyumane.services.backend import DuplicateRecordError
from hyumane.services.feed_service import FeedService
from hyumane.services.profile_service import ProfileService
from hyumane.services.realtime import ChangeFeed, ChangeTopic


@pytest.fixture
def people(app):
    for user_id, username in (("user-ada", "ada"), ("user-bob", "bob"), ("user-carol", "carol")):
        make_profile(app, user_id, username)
    return app


def test_feed_falls_back_to_everyone_without_follows(people):
    feed = people.feed_service
    feed.create_post("hello from bob", "user-bob")
    feed.create_post("hello from carol", "user-carol")

    posts = feed.get_posts("user-ada", following_only=True)

    assert [post["content"] for post in posts] == ["hello from carol", "hello from bob"]


def test_following_tab_limits_to_followed_and_self(people):
    feed = people.feed_service
    feed.create_post("bob post", "user-bob")
    feed.create_post("carol post", "user-carol")
    feed.create_post("ada post", "user-ada")
    people.profile_service.follow_user("user-ada", "user-carol")

    following = [post["content"] for post in feed.get_posts("user-ada", following_only=True)]
    everyone = [post["content"] for post in feed.get_posts("user-ada", following_only=False)]

    assert following == ["ada post", "carol post"]
    assert everyone == ["ada post", "carol post", "bob post"]


def test_posts_are_decorated_with_author_and_engagement(people):
    feed = people.feed_service
    post = feed.create_post("with image", "user-bob", image_url="/media/post-images/user-bob/1.png")
    feed.like_post(post["id"], "user-ada")
    feed.create_reply(post["id"], "nice", "user-carol")

    (decorated,) = feed.get_posts("user-ada", following_only=False)

    assert decorated["username"] == "bob"
    assert decorated["likes"] == 1
    assert decorated["is_liked"] is True
    assert decorated["replies"] == 1
    assert decorated["image_url"] == "/media/post-images/user-bob/1.png"


def test_posts_by_unknown_authors_show_as_anonymous(people):
    people.feed_service.create_post("ghost", "user-ghost")

    (post,) = people.feed_service.get_posts(None, following_only=False)

    assert post["username"] == "anonymous"
    assert post["avatar"] is None


def test_create_post_requires_content_or_image(people):
    with pytest.raises(ValueError, match="Content or image"):
        people.feed_service.create_post("   ", "user-ada")

    created = people.feed_service.create_post("", "user-ada", image_url="/media/post-images/a.png")
    assert created["content"] == ""


def test_like_is_unique_per_user(people):
    feed = people.feed_service
    post = feed.create_post("likeable", "user-bob")
    feed.like_post(post["id"], "user-ada")

    with pytest.raises(DuplicateRecordError):
        feed.like_post(post["id"], "user-ada")
    assert feed.like_count(post["id"]) == 1


def test_toggle_like_recovers_from_stale_state(people):
    feed = people.feed_service
    post = feed.create_post("likeable", "user-bob")

    assert feed.toggle_like(post["id"], "user-ada", currently_liked=False) == {
        "post_id": post["id"],
        "liked": True,
        "likes": 1,
    }
    # The page still thinks the post is unliked; the duplicate turns into an unlike.
    assert feed.toggle_like(post["id"], "user-ada", currently_liked=False)["liked"] is False
    assert feed.like_count(post["id"]) == 0


def test_likes_and_replies_publish_changes(people):
    feed = people.feed_service
    post = feed.create_post("watched", "user-bob")

    with people.change_feed.subscribe(ChangeTopic("likes"), ChangeTopic("replies", "INSERT")) as subscription:
        feed.like_post(post["id"], "user-ada")
        feed.unlike_post(post["id"], "user-ada")
        feed.create_reply(post["id"], "first!", "user-carol")
        changes = [subscription.get(timeout=0.1) for _ in range(3)]

    assert [(change.table, change.event) for change in changes] == [
        ("likes", "INSERT"),
        ("likes", "DELETE"),
        ("replies", "INSERT"),
    ]
    assert changes[1].record()["post_id"] == post["id"]


def test_replies_are_oldest_first(people):
    feed = people.feed_service
    post = feed.create_post("thread", "user-bob")
    feed.create_reply(post["id"], "one", "user-ada")
    feed.create_reply(post["id"], "two", "user-carol")

    replies = feed.get_replies(post["id"])

    assert [(reply["username"], reply["content"]) for reply in replies] == [("ada", "one"), ("carol", "two")]
    assert feed.reply_count(post["id"]) == 2


def test_create_reply_requires_content(people):
    with pytest.raises(ValueError, match="Post ID, content, and user ID are required"):
        people.feed_service.create_reply("post-1", " ", "user-ada")


# --- Supabase backend ---------------------------------------------------------


def _supabase_feed(fake_supabase):
    profiles = ProfileService(fake_supabase, ChangeFeed())
    return FeedService(profiles, fake_supabase, ChangeFeed())


def test_supabase_following_feed_filters_by_author(fake_supabase):
    fake_supabase.respond("follows", response([{"following_id": "user-bob"}]))
    fake_supabase.respond("posts", response([]))
    feed = _supabase_feed(fake_supabase)

    assert feed.get_posts("user-ada", following_only=True) == []

    calls = fake_supabase.calls_for("posts")[0]
    assert ("in_", ("author_id", ["user-bob", "user-ada"]), {}) in calls
    assert ("order", ("created_at",), {"desc": True}) in calls


def test_supabase_duplicate_like_becomes_unlike(fake_supabase):
    fake_supabase.respond("likes", APIError({"code": "23505", "message": "duplicate key"}))
    feed = _supabase_feed(fake_supabase)

    result = feed.toggle_like("post-1", "user-ada", currently_liked=False)

    assert result == {"post_id": "post-1", "liked": False, "likes": 0}
    delete_calls = fake_supabase.calls_for("likes")[1]
    assert ("delete", (), {}) in delete_calls
    assert ("eq", ("user_id", "user-ada"), {}) in delete_calls
