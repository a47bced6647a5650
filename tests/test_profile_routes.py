from __future__ import annotations

import io

from conftest import login, make_profile


def test_create_profile_with_avatar(app, client):
    login(client, "user-ada")

    response = client.post(
        "/create-profile",
        data={
            "username": "@ada",
            "bio": "Analyst",
            "interests": "engines",
            "avatar": (io.BytesIO(b"\x89PNG avatar"), "portrait.png"),
        },
        content_type="multipart/form-data",
    )

    assert response.status_code == 302
    assert response.headers["Location"].endswith("/feed")
    profile = app.profile_service.get_user_profile("user-ada")
    assert profile["username"] == "ada"
    assert profile["avatar_url"] == "/media/avatars/user-ada.png"
    assert profile["verification_date"]

    media = client.get("/media/avatars/user-ada.png")
    assert media.status_code == 200
    assert media.data == b"\x89PNG avatar"
    media.close()


def test_create_profile_rejects_taken_username(app, client):
    make_profile(app, "user-bob", "ada")
    login(client, "user-ada")

    response = client.post("/create-profile", data={"username": "ada", "bio": "", "interests": ""})

    assert response.status_code == 400
    assert b"already taken" in response.data
    assert app.profile_service.get_user_profile("user-ada") is None


def test_create_profile_rejects_bad_avatar(app, client):
    login(client, "user-ada")

    response = client.post(
        "/create-profile",
        data={"username": "ada", "avatar": (io.BytesIO(b"text"), "notes.txt")},
        content_type="multipart/form-data",
    )

    assert response.status_code == 400
    assert app.profile_service.get_user_profile("user-ada") is None


def test_edit_own_profile(app, client):
    make_profile(app, "user-ada", "ada", bio="old")
    login(client, "user-ada")

    assert client.get("/profile?edit=1").status_code == 200
    response = client.post("/profile", data={"username": "ada", "bio": "new bio", "interests": "looms"})

    assert response.headers["Location"].endswith("/profile")
    profile = app.profile_service.get_user_profile("user-ada")
    assert (profile["bio"], profile["interests"]) == ("new bio", "looms")


def test_other_profiles_show_follow_state(app, client):
    make_profile(app, "user-ada", "ada")
    make_profile(app, "user-bob", "bob", bio="Photographer")
    app.profile_service.follow_user("user-ada", "user-bob")
    login(client, "user-ada")

    response = client.get("/profile/user-bob")

    assert response.status_code == 200
    assert b"Photographer" in response.data
    assert b"Following" in response.data
    assert client.get("/profile/user-ada").headers["Location"].endswith("/profile")
    assert client.get("/profile/user-ghost").headers["Location"].endswith("/discover")


def test_discover_lists_and_searches_members(app, client):
    make_profile(app, "user-ada", "ada")
    make_profile(app, "user-bob", "bob", bio="Photographer")
    make_profile(app, "user-carol", "carol", bio="Hiker")
    login(client, "user-ada")

    everyone = client.get("/discover").get_data(as_text=True)
    searched = client.get("/discover?q=photo").get_data(as_text=True)

    assert "@bob" in everyone and "@carol" in everyone
    assert "@ada" not in everyone
    assert "@bob" in searched and "@carol" not in searched


def test_follow_form_toggles_and_redirects_back(app, client):
    make_profile(app, "user-ada", "ada")
    make_profile(app, "user-bob", "bob")
    login(client, "user-ada")

    response = client.post("/users/user-bob/follow", data={"following": "0", "next": "/profile/user-bob"})

    assert response.headers["Location"].endswith("/profile/user-bob")
    assert app.profile_service.is_following("user-ada", "user-bob")

    client.post("/users/user-bob/follow", data={"following": "1", "next": "https://evil.example.com"})
    assert not app.profile_service.is_following("user-ada", "user-bob")


def test_follow_api_returns_follower_count(app, client):
    make_profile(app, "user-ada", "ada")
    make_profile(app, "user-bob", "bob")
    login(client, "user-ada")

    followed = client.post("/api/users/user-bob/follow", json={"following": False})
    unfollowed = client.post("/api/users/user-bob/follow", json={"following": True})
    self_follow = client.post("/api/users/user-ada/follow", json={"following": False})

    assert followed.get_json() == {"user_id": "user-bob", "following": True, "followers": 1}
    assert unfollowed.get_json() == {"user_id": "user-bob", "following": False, "followers": 0}
    assert self_follow.status_code == 400


def test_avatar_for_id_with_reserved_characters_is_served(app, client):
    login(client, "did:key:ab")

    client.post(
        "/create-profile",
        data={"username": "did", "avatar": (io.BytesIO(b"did avatar"), "me.png")},
        content_type="multipart/form-data",
    )

    avatar_url = app.profile_service.get_user_profile("did:key:ab")["avatar_url"]
    assert avatar_url == "/media/avatars/did%3Akey%3Aab.png"
    media = client.get(avatar_url)
    assert media.data == b"did avatar"
    media.close()
