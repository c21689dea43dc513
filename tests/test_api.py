"""Проверяет JSON API и WebSocket-подписки поверх SQLite-файла."""

import asyncio

import pytest
from fastapi.testclient import TestClient

import arena_db
from imaginarena.core.config import settings
from imaginarena.db.base import Base
from imaginarena.db.session import get_db, get_session_factory, make_session_factory
from imaginarena.main import app
from imaginarena.models.user import User
from imaginarena.routers.api import get_uploader
from imaginarena.services.realtime import ChangeFeed, change_feed

ADMIN_ID = 1
PLAYER_IDS = [11, 12, 13, 14]


class FakeUploader:
    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        return f"https://cdn.test/images/{path}"


async def _prepare(engine) -> None:
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    async with make_session_factory(engine, ChangeFeed())() as db:
        db.add(User(id=ADMIN_ID, username="arena_admin", is_admin=True, is_bot=False))
        db.add_all([User(id=user_id, username=f"player_{user_id}", is_admin=False, is_bot=False) for user_id in PLAYER_IDS])
        await db.commit()


@pytest.fixture
def client(tmp_path):
    engine = arena_db.make_engine(str(tmp_path / "api.db"))
    asyncio.run(_prepare(engine))
    session_factory = make_session_factory(engine, change_feed)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_uploader] = FakeUploader
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()
        asyncio.run(engine.dispose())


def sign_in(client: TestClient, user_id: int) -> None:
    response = client.post("/session", json={"user_id": user_id, "provider_key": settings.identity_provider_key})
    assert response.status_code == 200


def test_session_and_profile_flow(client: TestClient) -> None:
    assert client.get("/me").status_code == 401

    response = client.post("/session", json={"user_id": 100, "provider_key": "wrong"})
    assert response.status_code == 403
    assert response.json()["error"] == "unauthorized"

    sign_in(client, 100)
    assert client.get("/me").json() == {"needs_profile": True, "user": None}

    response = client.post("/me/profile", json={"username": "a!"})
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"

    response = client.post("/me/profile", json={"username": "painter_100"})
    assert response.status_code == 201
    assert client.get("/me").json()["user"]["username"] == "painter_100"

    response = client.post("/me/profile", json={"username": "painter_again"})
    assert response.status_code == 409
    assert response.json() == {"error": "conflict", "detail": "Profile already exists"}


def test_two_player_tournament_over_http(client: TestClient) -> None:
    sign_in(client, PLAYER_IDS[0])
    assert client.post("/tournaments", json={"tournament_size": 2}).status_code == 403

    sign_in(client, ADMIN_ID)
    response = client.post("/tournaments", json={"tournament_size": 2, "language": "it"})
    assert response.status_code == 201
    tournament_id = response.json()["id"]

    sign_in(client, PLAYER_IDS[0])
    assert client.post(f"/tournaments/{tournament_id}/join").json() == {"joined": True, "started": False}
    assert client.post(f"/tournaments/{tournament_id}/join").status_code == 409
    sign_in(client, PLAYER_IDS[1])
    assert client.post(f"/tournaments/{tournament_id}/join").json() == {"joined": True, "started": True}

    matches = client.get(f"/tournaments/{tournament_id}/matches").json()
    assert len(matches) == 1
    assert matches[0]["phase"] == "submission"
    assert matches[0]["round_name"] == "Final"
    match_id = matches[0]["id"]

    for player_id in PLAYER_IDS[:2]:
        sign_in(client, player_id)
        response = client.post(
            f"/matches/{match_id}/submissions",
            files={"image": ("art.png", b"\x89PNG fake", "image/png")},
        )
        assert response.status_code == 201
        assert response.json()["image_url"].startswith("https://cdn.test/images/submissions/")

    sign_in(client, PLAYER_IDS[2])
    view = client.get(f"/matches/{match_id}").json()
    assert view["phase"] == "voting"
    assert {player["name"] for player in view["players"]} == {"player_11", "player_12"}
    submission_id = view["submissions"][0]["id"]

    assert client.post(f"/matches/{match_id}/votes", json={"submission_id": submission_id}).status_code == 201
    assert client.post(f"/matches/{match_id}/end-voting").status_code == 403

    sign_in(client, ADMIN_ID)
    result = client.post(f"/matches/{match_id}/end-voting").json()
    assert result["is_tie"] is False
    assert result["winner_id"] == view["submissions"][0]["user_id"]

    details = client.get(f"/tournaments/{tournament_id}").json()
    assert details["status"] == "finished"
    assert details["champion_id"] == result["winner_id"]
    assert [participant["id"] for participant in details["participants"]] == PLAYER_IDS[:2]
    assert details["matches"][0]["phase"] == "results"


def test_anonymous_voting_hides_names_from_players(client: TestClient) -> None:
    sign_in(client, ADMIN_ID)
    tournament_id = client.post("/tournaments", json={"tournament_size": 2, "anonymous_voting": True}).json()["id"]
    for player_id in PLAYER_IDS[:2]:
        sign_in(client, player_id)
        client.post(f"/tournaments/{tournament_id}/join")
    match_id = client.get(f"/tournaments/{tournament_id}/matches").json()[0]["id"]

    sign_in(client, PLAYER_IDS[3])
    hidden = client.get(f"/matches/{match_id}").json()
    assert [player["name"] for player in hidden["players"]] == ["Player A", "Player B"]
    assert all(player["user_id"] is None for player in hidden["players"])

    sign_in(client, ADMIN_ID)
    shown = client.get(f"/matches/{match_id}").json()
    assert {player["name"] for player in shown["players"]} == {"player_11", "player_12"}
    assert [player["side"] for player in shown["players"]] == ["left", "right"]


def test_admin_controls(client: TestClient) -> None:
    sign_in(client, ADMIN_ID)
    tournament_id = client.post("/tournaments", json={"tournament_size": 4}).json()["id"]

    bots = client.post(f"/tournaments/{tournament_id}/bots").json()["bots"]
    assert len(bots) == 4
    assert client.get(f"/tournaments/{tournament_id}").json()["status"] == "in_progress"

    match = client.get(f"/tournaments/{tournament_id}/matches").json()[0]
    prompt = client.post(f"/matches/{match['id']}/prompt").json()["prompt"]
    assert prompt != match["prompt"]

    winner = client.post(f"/matches/{match['id']}/winner", json={"winner_id": match["player2_id"]}).json()
    assert winner["winner_id"] == match["player2_id"]

    finished = client.post(f"/tournaments/{tournament_id}/force-finish").json()
    assert (finished["status"], finished["admin_ended"]) == ("finished", True)

    reset = client.post(f"/tournaments/{tournament_id}/reset").json()
    assert reset["status"] == "lobby"
    assert client.get(f"/tournaments/{tournament_id}/matches").json() == []

    assert client.post(f"/tournaments/{tournament_id}/anonymous-voting", json={"enabled": True}).json()["anonymous_voting"]
    assert client.delete(f"/tournaments/{tournament_id}").status_code == 204
    assert client.get(f"/tournaments/{tournament_id}").json()["error"] == "not_found"

    assert {user["id"] for user in client.get("/admin/users").json()} >= {ADMIN_ID, *PLAYER_IDS}
    assert client.post(f"/admin/users/{PLAYER_IDS[3]}/admin", json={"enabled": True}).json()["is_admin"] is True
    assert client.delete(f"/admin/users/{PLAYER_IDS[3]}").status_code == 422
    assert client.delete(f"/admin/users/{PLAYER_IDS[2]}").status_code == 204


def test_current_tournament_is_created_on_demand(client: TestClient) -> None:
    first = client.get("/tournaments/current").json()
    second = client.get("/tournaments/current").json()

    assert first["id"] == second["id"]
    assert first["tournament_size"] == 16
    assert [item["id"] for item in client.get("/tournaments").json()] == [first["id"]]


def test_tournament_socket_sends_snapshot_then_changes(client: TestClient) -> None:
    sign_in(client, ADMIN_ID)
    tournament_id = client.post("/tournaments", json={"tournament_size": 4}).json()["id"]

    with client.websocket_connect(f"/ws/tournaments/{tournament_id}") as websocket:
        snapshot = websocket.receive_json()
        sign_in(client, PLAYER_IDS[0])
        client.post(f"/tournaments/{tournament_id}/join")

        message = websocket.receive_json()

    assert snapshot["type"] == "SNAPSHOT"
    assert snapshot["state"]["status"] == "lobby"
    assert snapshot["state"]["participant_count"] == 0

    assert message["table"] == "tournament_participants"
    assert message["type"] == "INSERT"
    assert message["row"] == {"tournament_id": tournament_id, "user_id": PLAYER_IDS[0]}
    assert message["state"]["participant_count"] == 1


def test_match_socket_reports_reset(client: TestClient) -> None:
    sign_in(client, ADMIN_ID)
    tournament_id = client.post("/tournaments", json={"tournament_size": 2}).json()["id"]
    for player_id in PLAYER_IDS[:2]:
        sign_in(client, player_id)
        client.post(f"/tournaments/{tournament_id}/join")
    match_id = client.get(f"/tournaments/{tournament_id}/matches").json()[0]["id"]

    with client.websocket_connect(f"/ws/matches/{match_id}") as websocket:
        assert websocket.receive_json()["state"]["phase"] == "submission"
        sign_in(client, ADMIN_ID)
        client.post(f"/tournaments/{tournament_id}/reset")

        deleted = [websocket.receive_json() for _ in range(3)]

    assert {message["table"] for message in deleted} == {"votes", "submissions", "matches"}
    assert all(message["type"] == "DELETE" for message in deleted)
    assert deleted[-1]["state"]["phase"] is None


def test_unavailable_database_is_a_transient_error(tmp_path) -> None:
    engine = arena_db.make_engine(str(tmp_path / "missing" / "arena.db"))
    session_factory = make_session_factory(engine, ChangeFeed())

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    try:
        with TestClient(app) as test_client:
            response = test_client.get("/tournaments")
    finally:
        app.dependency_overrides.clear()
        asyncio.run(engine.dispose())

    assert response.status_code == 503
    assert response.json()["error"] == "transient_io"
