from typing import Any, Dict, List

import requests

import store
from catalog import API_BASE, fetch_spotify_user
from errors import AlreadyPublished, GenerationNotFound, UpstreamRequestFailed
from runtime import log
from spotify_auth import spotify_fetch

ADD_TRACKS_CHUNK = 100
DEFAULT_DESCRIPTION = "Generated by PlaylistAI"


def _checked(resp: requests.Response, action: str) -> Dict[str, Any]:
    if resp.status_code >= 400:
        log("warning", f"Spotify {action} failed", status=resp.status_code, body=resp.text)
        raise UpstreamRequestFailed(f"Spotify {action} failed", resp.status_code)
    return resp.json() if resp.text else {}


def _provider_account_id(user_id: str) -> str:
    credential = store.get_credential(user_id)
    if credential.provider_account_id:
        return credential.provider_account_id
    profile = fetch_spotify_user(user_id)
    if not profile or not profile.get("id"):
        raise UpstreamRequestFailed("Unable to resolve Spotify account")
    return profile["id"]


def add_tracks_to_playlist(user_id: str, playlist_id: str, uris: List[str]) -> None:
    url = f"{API_BASE}/playlists/{playlist_id}/tracks"
    for i in range(0, len(uris), ADD_TRACKS_CHUNK):
        chunk = uris[i : i + ADD_TRACKS_CHUNK]
        _checked(spotify_fetch(user_id, "POST", url, json={"uris": chunk}), "add tracks")


def publish(user_id: str, generation_id: str) -> Dict[str, Any]:
    """Create a private Spotify playlist from a stored generation.

    The published check and the final write are separate calls, so two
    simultaneous publishes of one record can both create a playlist. If the
    client gives up mid-call the Spotify side may still complete.
    """
    record = store.get_generation(generation_id)
    if record is None or record.user_id != user_id:
        raise GenerationNotFound()
    if record.published_playlist_id:
        raise AlreadyPublished(record.published_playlist_id)

    account_id = _provider_account_id(user_id)
    playlist = _checked(
        spotify_fetch(
            user_id,
            "POST",
            f"{API_BASE}/users/{account_id}/playlists",
            json={
                "name": record.name,
                "description": record.description or DEFAULT_DESCRIPTION,
                "public": False,
            },
        ),
        "create playlist",
    )
    playlist_id = playlist.get("id")
    if not playlist_id:
        raise UpstreamRequestFailed("Spotify playlist payload missing id")

    uris = [track.uri for track in record.tracks if track.uri]
    add_tracks_to_playlist(user_id, playlist_id, uris)

    store.set_published_playlist_id(generation_id, playlist_id)
    spotify_url = (playlist.get("external_urls") or {}).get("spotify") or (
        f"https://open.spotify.com/playlist/{playlist_id}"
    )
    log(
        "info",
        "playlist_published",
        generation_id=generation_id,
        playlist_id=playlist_id,
        tracks=len(uris),
        dropped_without_uri=len(record.tracks) - len(uris),
    )
    return {"spotifyUrl": spotify_url, "playlistId": playlist_id}
