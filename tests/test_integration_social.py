"""End-to-end follow, block, post and comment scenarios over HTTP."""

import pytest


@pytest.fixture
def trio(accounts):
    alice, alice_h = accounts.create("alice")
    bob, bob_h = accounts.create("bob")
    carol, carol_h = accounts.create("carol")
    return {
        "alice": (alice, alice_h),
        "bob": (bob, bob_h),
        "carol": (carol, carol_h),
    }


def _post(client, headers, header="hello world"):
    response = client.post("/v1/posts", json={"header": header, "images": []}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestFollowGraph:
    def test_follow_and_unfollow(self, client, trio):
        alice, alice_h = trio["alice"]
        bob, bob_h = trio["bob"]

        assert client.post(f"/v1/users/{bob['id']}/follow", headers=alice_h).status_code == 200
        again = client.post(f"/v1/users/{bob['id']}/follow", headers=alice_h)
        assert again.status_code == 400

        profile = client.get(f"/v1/users/{bob['id']}", headers=alice_h).json()["data"]
        assert profile["followers_count"] == 1
        me = client.get("/v1/users/me", headers=alice_h).json()["data"]
        assert me["following_count"] == 1

        assert client.post(f"/v1/users/{bob['id']}/unfollow", headers=alice_h).status_code == 200
        assert client.post(f"/v1/users/{bob['id']}/unfollow", headers=alice_h).status_code == 400

    def test_self_targeting_is_a_validation_error(self, client, trio):
        alice, alice_h = trio["alice"]
        for action in ("follow", "unfollow", "block", "unblock"):
            response = client.post(f"/v1/users/{alice['id']}/{action}", headers=alice_h)
            assert response.status_code == 400, action
        assert client.get(f"/v1/users/{alice['id']}", headers=alice_h).status_code == 400

    def test_unknown_user(self, client, trio):
        _alice, alice_h = trio["alice"]
        assert client.post("/v1/users/nobody/follow", headers=alice_h).status_code == 404
        assert client.get("/v1/users/nobody", headers=alice_h).status_code == 404

    def test_block_hides_profile_and_severs_follows(self, client, trio):
        alice, alice_h = trio["alice"]
        bob, bob_h = trio["bob"]
        client.post(f"/v1/users/{bob['id']}/follow", headers=alice_h)

        assert client.post(f"/v1/users/{alice['id']}/block", headers=bob_h).status_code == 200

        hidden = client.get(f"/v1/users/{bob['id']}", headers=alice_h)
        assert hidden.status_code == 403
        follow = client.post(f"/v1/users/{bob['id']}/follow", headers=alice_h)
        assert follow.status_code == 403
        assert follow.json()["error"]["message"] == hidden.json()["error"]["message"]

        me = client.get("/v1/users/me", headers=alice_h).json()["data"]
        assert me["following_count"] == 0
        blocked = client.get("/v1/users/me/blocked", headers=bob_h).json()["data"]["users"]
        assert [u["id"] for u in blocked] == [alice["id"]]

        assert client.post(f"/v1/users/{alice['id']}/unblock", headers=bob_h).status_code == 200
        assert client.get(f"/v1/users/{bob['id']}", headers=alice_h).status_code == 200

    def test_search(self, client, trio):
        alice, alice_h = trio["alice"]
        bob, bob_h = trio["bob"]
        found = client.get("/v1/users/search", params={"q": "bo"}, headers=alice_h)
        assert [u["username"] for u in found.json()["data"]["users"]] == ["bob"]

        client.post(f"/v1/users/{alice['id']}/block", headers=bob_h)
        found = client.get("/v1/users/search", params={"q": "bo"}, headers=alice_h)
        assert found.json()["data"]["users"] == []

        too_short = client.get("/v1/users/search", params={"q": "b"}, headers=alice_h)
        assert too_short.status_code == 400

    def test_profile_update(self, client, trio):
        _alice, alice_h = trio["alice"]
        response = client.patch(
            "/v1/users/me", json={"bio": "hi there", "name": "Alice A"}, headers=alice_h
        )
        assert response.status_code == 200
        assert response.json()["data"]["bio"] == "hi there"

        taken = client.patch("/v1/users/me", json={"username": "bob"}, headers=alice_h)
        assert taken.status_code == 400
        assert taken.json()["error"]["code"] == "conflict"


class TestContentInteractions:
    def test_comment_requires_a_follow_edge(self, client, trio):
        alice, alice_h = trio["alice"]
        bob, bob_h = trio["bob"]
        post = _post(client, bob_h)

        denied = client.post(
            f"/v1/posts/{post['id']}/comments", json={"content": "nice"}, headers=alice_h
        )
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "forbidden"

        client.post(f"/v1/users/{bob['id']}/follow", headers=alice_h)
        created = client.post(
            f"/v1/posts/{post['id']}/comments", json={"content": "nice"}, headers=alice_h
        )
        assert created.status_code == 201

        # a follow edge in either direction is enough
        own = _post(client, alice_h, "alice post")
        reverse = client.post(
            f"/v1/posts/{own['id']}/comments", json={"content": "thanks"}, headers=bob_h
        )
        assert reverse.status_code == 201
        listed = client.get(f"/v1/posts/{post['id']}/comments", headers=bob_h)
        assert [c["content"] for c in listed.json()["data"]["comments"]] == ["nice"]

    def test_block_after_follow_denies_comments(self, client, trio):
        alice, alice_h = trio["alice"]
        bob, bob_h = trio["bob"]
        post = _post(client, bob_h)
        client.post(f"/v1/users/{bob['id']}/follow", headers=alice_h)
        client.post(f"/v1/users/{alice['id']}/block", headers=bob_h)

        denied = client.post(
            f"/v1/posts/{post['id']}/comments", json={"content": "hey"}, headers=alice_h
        )
        assert denied.status_code == 403
        assert client.get(f"/v1/posts/{post['id']}/comments", headers=alice_h).status_code == 403

    def test_missing_post_is_not_found_before_authorization(self, client, trio):
        _alice, alice_h = trio["alice"]
        response = client.post(
            "/v1/posts/missing/comments", json={"content": "hey"}, headers=alice_h
        )
        assert response.status_code == 404

    def test_comment_length_and_blank(self, client, trio):
        _alice, alice_h = trio["alice"]
        post = _post(client, alice_h)
        blank = client.post(
            f"/v1/posts/{post['id']}/comments", json={"content": "   "}, headers=alice_h
        )
        assert blank.status_code == 400
        long = client.post(
            f"/v1/posts/{post['id']}/comments", json={"content": "x" * 257}, headers=alice_h
        )
        assert long.status_code == 400

    def test_reply_checks_parent_author_too(self, client, trio):
        alice, alice_h = trio["alice"]
        bob, bob_h = trio["bob"]
        carol, carol_h = trio["carol"]
        post = _post(client, bob_h)
        client.post(f"/v1/users/{bob['id']}/follow", headers=carol_h)
        parent = client.post(
            f"/v1/posts/{post['id']}/comments", json={"content": "first"}, headers=carol_h
        ).json()["data"]

        # alice follows bob but has no edge with carol
        client.post(f"/v1/users/{bob['id']}/follow", headers=alice_h)
        denied = client.post(
            f"/v1/comments/{parent['id']}/replies", json={"content": "reply"}, headers=alice_h
        )
        assert denied.status_code == 403

        client.post(f"/v1/users/{carol['id']}/follow", headers=alice_h)
        reply = client.post(
            f"/v1/comments/{parent['id']}/replies", json={"content": "reply"}, headers=alice_h
        )
        assert reply.status_code == 201
        assert reply.json()["data"]["parent_comment_id"] == parent["id"]

    def test_comments_from_blocked_users_are_hidden(self, client, trio):
        alice, alice_h = trio["alice"]
        bob, bob_h = trio["bob"]
        carol, carol_h = trio["carol"]
        post = _post(client, bob_h)
        client.post(f"/v1/users/{bob['id']}/follow", headers=alice_h)
        client.post(f"/v1/users/{bob['id']}/follow", headers=carol_h)
        client.post(f"/v1/posts/{post['id']}/comments", json={"content": "from carol"}, headers=carol_h)
        client.post(f"/v1/posts/{post['id']}/comments", json={"content": "from alice"}, headers=alice_h)

        client.post(f"/v1/users/{carol['id']}/block", headers=alice_h)
        listed = client.get(f"/v1/posts/{post['id']}/comments", headers=alice_h)
        assert [c["content"] for c in listed.json()["data"]["comments"]] == ["from alice"]

    def test_comment_edit_delete_and_likes(self, client, trio):
        alice, alice_h = trio["alice"]
        bob, bob_h = trio["bob"]
        post = _post(client, bob_h)
        client.post(f"/v1/users/{bob['id']}/follow", headers=alice_h)
        comment = client.post(
            f"/v1/posts/{post['id']}/comments", json={"content": "typo"}, headers=alice_h
        ).json()["data"]

        assert client.patch(
            f"/v1/comments/{comment['id']}", json={"content": "hijack"}, headers=bob_h
        ).status_code == 403
        edited = client.patch(
            f"/v1/comments/{comment['id']}", json={"content": "fixed"}, headers=alice_h
        )
        assert edited.json()["data"]["content"] == "fixed"

        liked = client.post(f"/v1/comments/{comment['id']}/like", headers=bob_h)
        assert liked.json()["data"]["likes_count"] == 1
        assert liked.json()["data"]["liked_by_me"] is True
        assert client.post(f"/v1/comments/{comment['id']}/like", headers=bob_h).status_code == 400
        unliked = client.delete(f"/v1/comments/{comment['id']}/like", headers=bob_h)
        assert unliked.json()["data"]["likes_count"] == 0

        # the post author may remove comments on their post
        assert client.delete(f"/v1/comments/{comment['id']}", headers=bob_h).status_code == 200
        assert client.delete(f"/v1/comments/{comment['id']}", headers=bob_h).status_code == 404


class TestPosts:
    def test_post_lifecycle(self, client, trio):
        alice, alice_h = trio["alice"]
        bob, bob_h = trio["bob"]
        post = _post(client, alice_h, "first post")

        assert client.patch(
            f"/v1/posts/{post['id']}", json={"header": "stolen"}, headers=bob_h
        ).status_code == 403
        edited = client.patch(
            f"/v1/posts/{post['id']}", json={"header": "edited"}, headers=alice_h
        )
        assert edited.json()["data"]["header"] == "edited"

        assert client.delete(f"/v1/posts/{post['id']}", headers=bob_h).status_code == 403
        assert client.delete(f"/v1/posts/{post['id']}", headers=alice_h).status_code == 200
        assert client.patch(
            f"/v1/posts/{post['id']}", json={"header": "gone"}, headers=alice_h
        ).status_code == 404

    def test_post_likes_need_follow(self, client, trio):
        alice, alice_h = trio["alice"]
        bob, bob_h = trio["bob"]
        post = _post(client, alice_h)

        assert client.post(f"/v1/posts/{post['id']}/like", headers=bob_h).status_code == 403
        client.post(f"/v1/users/{alice['id']}/follow", headers=bob_h)
        liked = client.post(f"/v1/posts/{post['id']}/like", headers=bob_h)
        assert liked.status_code == 200
        assert liked.json()["data"]["likes_count"] == 1
        assert client.post(f"/v1/posts/{post['id']}/like", headers=bob_h).status_code == 400
        assert client.delete(f"/v1/posts/{post['id']}/like", headers=bob_h).status_code == 200
        assert client.delete(f"/v1/posts/{post['id']}/like", headers=bob_h).status_code == 400

    def test_user_posts_and_feed(self, client, trio):
        alice, alice_h = trio["alice"]
        bob, bob_h = trio["bob"]
        carol, carol_h = trio["carol"]
        _post(client, bob_h, "bob 1")
        _post(client, bob_h, "bob 2")
        _post(client, carol_h, "carol 1")
        _post(client, alice_h, "alice 1")

        assert client.get(f"/v1/users/{bob['id']}/posts", headers=alice_h).status_code == 403
        client.post(f"/v1/users/{bob['id']}/follow", headers=alice_h)
        bob_posts = client.get(f"/v1/users/{bob['id']}/posts", headers=alice_h)
        assert [p["header"] for p in bob_posts.json()["data"]["posts"]] == ["bob 2", "bob 1"]

        feed = client.get("/v1/feed", headers=alice_h).json()["data"]["posts"]
        assert {p["header"] for p in feed} == {"alice 1", "bob 1", "bob 2"}

        client.post(f"/v1/users/{alice['id']}/block", headers=bob_h)
        feed = client.get("/v1/feed", headers=alice_h).json()["data"]["posts"]
        assert [p["header"] for p in feed] == ["alice 1"]


class TestAdmin:
    def test_admin_routes_require_admin(self, client, trio, runtime):
        alice, alice_h = trio["alice"]
        bob, _bob_h = trio["bob"]
        assert client.get("/v1/admin/users", headers=alice_h).status_code == 403

        runtime.store.set_user_role(alice["id"], "admin")
        listed = client.get("/v1/admin/users", headers=alice_h)
        assert listed.status_code == 200
        assert len(listed.json()["data"]["users"]) == 3

        promoted = client.post(
            f"/v1/admin/users/{bob['id']}/role", json={"role": "admin"}, headers=alice_h
        )
        assert promoted.json()["data"]["role"] == "admin"
        bad = client.post(
            f"/v1/admin/users/{bob['id']}/role", json={"role": "root"}, headers=alice_h
        )
        assert bad.status_code == 400

    def test_admin_may_delete_any_post(self, client, trio, runtime):
        alice, alice_h = trio["alice"]
        _bob, bob_h = trio["bob"]
        post = _post(client, bob_h)
        runtime.store.set_user_role(alice["id"], "admin")
        assert client.delete(f"/v1/posts/{post['id']}", headers=alice_h).status_code == 200
