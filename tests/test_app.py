import base64
import itertools
import json

import pytest

import app
import store
from conftest import FakeOpenAIClient, FakeResponse, add_user, track_payload, users_table


def api_event(method, path, body=None, user_id="u1", raw_body=None):
    event = {"rawPath": path, "requestContext": {"http": {"method": method, "path": path}}}
    if user_id:
        event["requestContext"]["authorizer"] = {"lambda": {"user_id": user_id}}
    if body is not None:
        event["body"] = json.dumps(body)
    if raw_body is not None:
        event["body"] = raw_body
    return event


def call(event):
    response = app.handler(event, None)
    return response["statusCode"], json.loads(response["body"])


@pytest.fixture
def openai(monkeypatch):
    client = FakeOpenAIClient([])
    monkeypatch.setattr(app, "APP_CONTEXT", app.AppContext(openai=client))
    return client


@pytest.fixture
def ticking_clock(monkeypatch):
    ticks = itertools.count(1_700_000_000_000)
    monkeypatch.setattr(store, "_now_ms", lambda: next(ticks))


def add_stored_playlist(resource, spotify_id, name, user_id="u1"):
    resource.Table("curator_playlists").put_item(
        Item={"user_id": user_id, "spotify_id": spotify_id, "name": name, "track_count": 2}
    )


def library_api(method, url, kwargs):
    if url.endswith("/playlists/p1/tracks"):
        return FakeResponse(
            200,
            {
                "items": [
                    {"track": track_payload("a", "Open Road", ["Desert Lights"])},
                    {"track": track_payload("b", "Rain", ["Grey Skies"])},
                ]
            },
        )
    if url.endswith("/audio-features"):
        ids = kwargs["params"]["ids"].split(",")
        return FakeResponse(200, {"audio_features": [{"id": i, "energy": 0.5} for i in ids]})
    return FakeResponse(404, {"error": "not found"})


def test_missing_authorizer_is_unauthorized(ddb):
    status, body = call(api_event("GET", "/user", user_id=None))

    assert status == 401
    assert body == {"error": "Unauthorized"}


def test_unknown_route_is_not_found(ddb):
    status, body = call(api_event("GET", "/nowhere", user_id=None))

    assert status == 404
    assert body["error"] == "route not found"


def test_get_user_profile(ddb):
    add_user(ddb)

    status, body = call(api_event("GET", "/api/user"))

    assert status == 200
    assert body["id"] == "u1"
    assert body["spotifyId"] == "spotify-u1"


def test_rest_api_event_shape(ddb):
    add_user(ddb)
    event = {
        "httpMethod": "GET",
        "path": "/user/",
        "requestContext": {"authorizer": {"user_id": "u1"}},
    }

    status, body = call(event)

    assert status == 200
    assert body["id"] == "u1"


def test_unexpected_exception_becomes_500(ddb, monkeypatch):
    def explode(user_id):
        raise RuntimeError("boom")

    monkeypatch.setattr(store, "get_user_profile", explode)

    status, body = call(api_event("GET", "/user"))

    assert status == 500
    assert body == {"error": "Internal server error", "details": "boom"}


def test_token_grant_records_sign_in(ddb):
    status, body = call(
        api_event(
            "POST",
            "/auth/token-grant",
            {
                "providerAccountId": "spotify-u1",
                "accessToken": "acc",
                "refreshToken": "ref",
                "expiresAt": 1_700_003_600,
                "email": "u1@example.com",
            },
        )
    )

    assert (status, body) == (200, {"ok": True})
    stored = users_table(ddb).get_item(Key={"user_id": "u1"})["Item"]
    assert stored["refresh_token"] == "ref"
    assert stored["email"] == "u1@example.com"


def test_token_grant_requires_account_id(ddb):
    status, body = call(api_event("POST", "/auth/token-grant", {"accessToken": "x"}))

    assert status == 400
    assert body["error"] == "providerAccountId is required"


def test_playlist_tracks_route(ddb, http):
    add_user(ddb)
    http.responder = library_api

    status, body = call(api_event("GET", "/playlists/p1/tracks"))

    assert status == 200
    assert body["total"] == 2
    assert body["items"][0]["audio_features"]["energy"] == 0.5


@pytest.mark.parametrize(
    "payload",
    [{}, {"selectedPlaylistIds": []}, {"selectedPlaylistIds": "p1"}, {"selectedPlaylistIds": [1]}],
)
def test_generate_validates_selection(ddb, openai, payload):
    status, body = call(api_event("POST", "/generate-playlist", payload))

    assert status == 400
    assert openai.calls == []


def test_generate_rejects_invalid_json(ddb, openai):
    status, body = call(api_event("POST", "/generate-playlist", raw_body="{nope"))

    assert status == 400
    assert body["error"] == "body must be valid JSON"


def test_generate_with_no_usable_playlists(ddb, http, openai):
    add_user(ddb)

    status, body = call(api_event("POST", "/generate-playlist", {"selectedPlaylistIds": ["ghost"]}))

    assert status == 400
    assert body["error"] == "No valid playlists found"
    assert openai.calls == []


def test_generate_stores_and_returns_record(ddb, http, openai):
    add_user(ddb)
    add_stored_playlist(ddb, "p1", "Drive")
    http.responder = library_api
    openai.replies.append(
        json.dumps(
            {
                "theme": "road trip",
                "mood": "Upbeat",
                "energy_level": 8,
                "genres": ["indie"],
                "recommended_tracks": [{"name": "Open Road", "artist": "Desert Lights"}],
                "playlist_name": "Miles Ahead",
                "playlist_description": "Windows down.",
            }
        )
    )
    encoded = base64.b64encode(
        json.dumps({"selectedPlaylistIds": ["p1"], "prompt": "  road trip  "}).encode()
    ).decode()
    event = api_event("POST", "/api/generate-playlist", raw_body=encoded)
    event["isBase64Encoded"] = True

    status, body = call(event)

    assert status == 200
    assert body["name"] == "Miles Ahead"
    assert body["aiPrompt"] == "road trip"
    assert body["sourcePlaylistIds"] == ["p1"]
    assert [t["id"] for t in body["tracks"]] == ["a"]
    assert body["spotifyPlaylistId"] is None
    assert body["analysis"]["theme"] == "road trip"
    assert store.get_generation(body["id"]).user_id == "u1"


def test_generate_uses_default_prompt(ddb, http, openai):
    add_user(ddb)
    add_stored_playlist(ddb, "p1", "Drive")
    http.responder = library_api
    openai.replies.append('{"recommended_tracks": []}')

    status, body = call(api_event("POST", "/generate-playlist", {"selectedPlaylistIds": ["p1"]}))

    assert status == 200
    assert body["aiPrompt"] is None
    assert [t["id"] for t in body["tracks"]] == ["a", "b"]
    assert app.DEFAULT_GENERATION_PROMPT in openai.calls[0]["messages"][1]["content"]


def test_generate_reports_invalid_model_output(ddb, http, openai):
    add_user(ddb)
    add_stored_playlist(ddb, "p1", "Drive")
    http.responder = library_api
    openai.replies.append("I cannot do that")

    status, body = call(api_event("POST", "/generate-playlist", {"selectedPlaylistIds": ["p1"]}))

    assert status == 502
    assert body["details"]["reason"] == "invalid_model_output"


def test_save_to_spotify_route(ddb, http):
    add_user(ddb)
    record = store.create_generation("u1", "Mix", "desc", ["p1"], [], None)

    def responder(method, url, kwargs):
        if url.endswith("/users/spotify-u1/playlists"):
            return FakeResponse(201, {"id": "pl-9"})
        return FakeResponse(201, {})

    http.responder = responder

    status, body = call(api_event("POST", f"/api/save-to-spotify/{record.id}"))

    assert status == 200
    assert body == {"spotifyUrl": "https://open.spotify.com/playlist/pl-9", "playlistId": "pl-9"}

    status, body = call(api_event("POST", f"/save-to-spotify/{record.id}"))
    assert status == 400
    assert body["details"] == {"playlistId": "pl-9"}


def test_chat_round_trip(ddb, openai, ticking_clock):
    openai.replies.append("Try adding some synthwave.")

    status, body = call(
        api_event(
            "POST",
            "/chat",
            {"message": "What should I add?", "context": {"selectedPlaylists": ["Drive"]}},
        )
    )

    assert status == 200
    assert body["response"] == "Try adding some synthwave."
    assert body["message"]["role"] == "assistant"
    sent = openai.calls[0]["messages"]
    assert sent[-1] == {"role": "user", "content": "What should I add?"}
    assert "Selected playlists: Drive" in sent[0]["content"]

    status, body = call(api_event("GET", "/chat"))
    assert status == 200
    assert [m["role"] for m in body["messages"]] == ["user", "assistant"]

    status, body = call(api_event("DELETE", "/chat"))
    assert (status, body) == (200, {"ok": True})

    status, body = call(api_event("GET", "/chat"))
    assert body["messages"] == []


def test_chat_history_sent_to_model_is_bounded(ddb, openai, ticking_clock):
    for i in range(15):
        store.create_chat_message("u1", "user" if i % 2 == 0 else "assistant", f"m{i}")
    openai.replies.append("ok")

    call(api_event("POST", "/chat", {"message": "latest"}))

    history = openai.calls[0]["messages"][1:]
    assert len(history) == app.CHAT_CONTEXT_MESSAGES
    assert history[-1]["content"] == "latest"
    assert history[0]["content"] == "m6"


def test_chat_requires_message(ddb, openai):
    status, body = call(api_event("POST", "/chat", {"message": "   "}))

    assert status == 400
    assert openai.calls == []
