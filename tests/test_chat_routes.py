from __future__ import annotations

import pytest

from conftest import login, make_profile


@pytest.fixture
def people(app):
    for user_id, username in (("user-ada", "ada"), ("user-bob", "bob"), ("user-carol", "carol")):
        make_profile(app, user_id, username)
    return app


def test_message_button_opens_single_chat(people, client):
    login(client, "user-ada")

    first = client.post("/users/user-bob/message")
    second = client.post("/users/user-bob/message")

    assert first.status_code == 302
    assert "/chat?chat_id=" in first.headers["Location"]
    assert first.headers["Location"] == second.headers["Location"]


def test_cannot_message_yourself(people, client):
    login(client, "user-ada")

    response = client.post("/users/user-ada/message", data={"next": "/profile"})

    assert response.headers["Location"].endswith("/profile")


def test_chat_page_lists_and_shows_messages(people, client):
    chat_id = people.chat_service.create_or_get_chat("user-ada", "user-bob")
    people.chat_service.send_message(chat_id, "hello ada", "user-bob")
    login(client, "user-ada")

    page = client.get(f"/chat?chat_id={chat_id}").get_data(as_text=True)

    assert "hello ada" in page
    assert f'data-chat-id="{chat_id}"' in page


def test_send_message_form(people, client):
    chat_id = people.chat_service.create_or_get_chat("user-ada", "user-bob")
    login(client, "user-ada")

    response = client.post(f"/chat/{chat_id}/messages", data={"content": "hi bob"})

    assert response.headers["Location"].endswith(f"/chat?chat_id={chat_id}")
    (message,) = people.chat_service.get_messages(chat_id)
    assert message["content"] == "hi bob"


def test_messages_api(people, client):
    chat_id = people.chat_service.create_or_get_chat("user-ada", "user-bob")
    login(client, "user-ada")

    sent = client.post(f"/api/chats/{chat_id}/messages", json={"content": "json hello"})
    empty = client.post(f"/api/chats/{chat_id}/messages", json={"content": "  "})
    listing = client.get(f"/api/chats/{chat_id}/messages").get_json()
    chats = client.get("/api/chats").get_json()["chats"]

    assert sent.status_code == 201
    assert sent.get_json()["message"]["is_own"] is True
    assert sent.get_json()["message"]["sender"] == "ada"
    assert empty.status_code == 400
    assert [m["content"] for m in listing["messages"]] == ["json hello"]
    assert chats[0]["last_message"] == "json hello"
    assert chats[0]["name"] == "bob"


def test_outsiders_cannot_read_or_write_a_chat(people, client):
    chat_id = people.chat_service.create_or_get_chat("user-ada", "user-bob")
    login(client, "user-carol")

    page = client.get(f"/chat?chat_id={chat_id}")

    assert page.headers["Location"].endswith("/chat")
    assert client.get(f"/api/chats/{chat_id}/messages").status_code == 404
    assert client.post(f"/api/chats/{chat_id}/messages", json={"content": "sneaky"}).status_code == 404
    assert client.post(f"/chat/{chat_id}/messages", data={"content": "sneaky"}).status_code == 404
    assert client.get(f"/api/stream/chat?chat_id={chat_id}").status_code == 404
    assert people.chat_service.get_messages(chat_id) == []
