from typing import Any, Dict, List, Optional

import requests

import store
from errors import UpstreamRequestFailed
from models import AudioFeatures, FeaturePair, SourcePlaylist, StoredPlaylist, Track
from runtime import log
from spotify_auth import spotify_fetch

API_BASE = "https://api.spotify.com/v1"
PLAYLIST_PAGE_SIZE = 50
AUDIO_FEATURES_LIMIT = 50


def _is_playable_track(item: Any) -> bool:
    track = item.get("track") if isinstance(item, dict) else None
    return isinstance(track, dict) and track.get("type") == "track"


def fetch_playlist_tracks(user_id: str, playlist_id: str) -> Optional[List[Track]]:
    try:
        resp = spotify_fetch(
            user_id,
            "GET",
            f"{API_BASE}/playlists/{playlist_id}/tracks",
            params={"limit": PLAYLIST_PAGE_SIZE},
        )
    except requests.RequestException as exc:
        log(
            "warning",
            "Spotify GET playlist tracks errored",
            playlist_id=playlist_id,
            error=str(exc),
        )
        return None
    if resp.status_code >= 400:
        log(
            "warning",
            "Spotify GET playlist tracks failed",
            playlist_id=playlist_id,
            status=resp.status_code,
            body=resp.text,
        )
        return None
    try:
        items = (resp.json() or {}).get("items") or []
    except ValueError:
        log("warning", "Spotify playlist tracks body is not JSON", playlist_id=playlist_id)
        return None
    # Episodes and unavailable items go before the feature request is built.
    return [Track.from_payload(item["track"]) for item in items if _is_playable_track(item)]


def fetch_audio_features(user_id: str, track_ids: List[str]) -> List[Optional[AudioFeatures]]:
    ids = track_ids[:AUDIO_FEATURES_LIMIT]
    if not ids:
        return []
    try:
        resp = spotify_fetch(
            user_id,
            "GET",
            f"{API_BASE}/audio-features",
            params={"ids": ",".join(ids)},
        )
    except requests.RequestException as exc:
        log(
            "warning",
            "Spotify GET audio features errored; continuing without features",
            error=str(exc),
            requested=len(ids),
        )
        return []
    if resp.status_code >= 400:
        log(
            "warning",
            "Spotify GET audio features failed; continuing without features",
            status=resp.status_code,
            requested=len(ids),
        )
        return []
    try:
        raw = (resp.json() or {}).get("audio_features") or []
    except ValueError:
        log("warning", "Spotify audio features body is not JSON; continuing without features")
        return []
    return [AudioFeatures.from_payload(entry) for entry in raw]


def pair_audio_features(
    tracks: List[Track], features: List[Optional[AudioFeatures]]
) -> List[FeaturePair]:
    """Pair ``features[i]`` with ``tracks[i]``.

    Spotify answers ``/audio-features`` in request order, so the pairing is by
    position only. A short response leaves the trailing tracks with ``None``.
    """
    return [
        FeaturePair(track, features[index] if index < len(features) else None)
        for index, track in enumerate(tracks)
    ]


def join_audio_features(
    tracks: List[Track], features: List[Optional[AudioFeatures]]
) -> List[Track]:
    joined = []
    for pair in pair_audio_features(tracks, features):
        pair.track.audio_features = pair.features
        joined.append(pair.track)
    return joined


def enrich_tracks(user_id: str, tracks: List[Track]) -> List[Track]:
    # Feature slots line up with the id list, so only tracks with an id take part.
    with_ids = [track for track in tracks if track.id][:AUDIO_FEATURES_LIMIT]
    features = fetch_audio_features(user_id, [track.id for track in with_ids])
    join_audio_features(with_ids, features)
    return tracks


def build_catalog(user_id: str, playlist_ids: List[str]) -> List[SourcePlaylist]:
    catalog: List[SourcePlaylist] = []
    for playlist_id in playlist_ids:
        stored = store.find_user_playlist(user_id, playlist_id)
        if stored is None:
            log("info", "catalog_playlist_skipped", playlist_id=playlist_id, reason="not_owned")
            continue
        tracks = fetch_playlist_tracks(user_id, playlist_id)
        if tracks is None:
            log("info", "catalog_playlist_skipped", playlist_id=playlist_id, reason="fetch_failed")
            continue
        catalog.append(
            SourcePlaylist(
                spotify_id=playlist_id,
                name=stored.name,
                tracks=enrich_tracks(user_id, tracks),
            )
        )
    log(
        "info",
        "catalog_built",
        requested=len(playlist_ids),
        playlists=len(catalog),
        tracks=sum(len(p.tracks) for p in catalog),
    )
    return catalog


def playlist_tracks_with_features(user_id: str, playlist_id: str) -> List[Dict[str, Any]]:
    tracks = fetch_playlist_tracks(user_id, playlist_id)
    if tracks is None:
        raise UpstreamRequestFailed("Failed to fetch tracks from Spotify")
    return [track.to_dict() for track in enrich_tracks(user_id, tracks)]


def fetch_spotify_user(user_id: str) -> Optional[Dict[str, Any]]:
    resp = spotify_fetch(user_id, "GET", f"{API_BASE}/me")
    if resp.status_code >= 400:
        log("warning", "Spotify GET profile failed", status=resp.status_code)
        return None
    return resp.json()


def sync_user_playlists(user_id: str) -> List[Dict[str, Any]]:
    resp = spotify_fetch(
        user_id,
        "GET",
        f"{API_BASE}/me/playlists",
        params={"limit": PLAYLIST_PAGE_SIZE},
    )
    if resp.status_code >= 400:
        log(
            "warning",
            "Spotify GET playlists failed",
            status=resp.status_code,
            body=resp.text,
        )
        raise UpstreamRequestFailed("Failed to fetch playlists from Spotify", resp.status_code)

    items = [
        item for item in ((resp.json() or {}).get("items") or [])
        if isinstance(item, dict) and item.get("id")
    ]
    profile = fetch_spotify_user(user_id)
    provider_user_id = (profile or {}).get("id")

    store.upsert_playlists(
        user_id,
        [StoredPlaylist.from_payload(user_id, item, provider_user_id) for item in items],
    )
    return [playlist.to_spotify_shape() for playlist in store.list_user_playlists(user_id)]
