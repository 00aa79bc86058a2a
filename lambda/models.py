"""Typed records for everything that crosses the Spotify, OpenAI and DynamoDB boundaries.

Provider and model payloads are untyped JSON. Each record has a defensive
constructor (``from_payload`` for API JSON, ``from_item`` for DynamoDB items)
so malformed fields become ``None``/defaults instead of ``KeyError`` deep in
the pipeline.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, NamedTuple, Optional

from runtime import clean_string, to_float, to_int


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


@dataclass
class Credential:
    user_id: str
    provider_account_id: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at_epoch: Optional[int] = None

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "Credential":
        return cls(
            user_id=item["user_id"],
            provider_account_id=_optional_str(item.get("provider_account_id")),
            access_token=_optional_str(item.get("access_token")),
            refresh_token=_optional_str(item.get("refresh_token")),
            expires_at_epoch=to_int(item.get("expires_at_epoch"), None),
        )


@dataclass
class SignInGrant:
    """Token grant handed over by the identity provider at sign-in."""

    user_id: str
    provider_account_id: str
    access_token: Optional[str]
    refresh_token: Optional[str]
    expires_at_epoch: Optional[int]
    email: str = ""
    display_name: str = ""


@dataclass
class Artist:
    name: str
    id: Optional[str] = None
    uri: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "Artist":
        data = _as_dict(payload)
        return cls(
            name=clean_string(data.get("name")),
            id=_optional_str(data.get("id")),
            uri=_optional_str(data.get("uri")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "uri": self.uri}


@dataclass
class Album:
    name: str
    images: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Any) -> "Album":
        data = _as_dict(payload)
        images = []
        for image in _as_list(data.get("images")):
            image = _as_dict(image)
            if isinstance(image.get("url"), str):
                images.append(
                    {
                        "url": image["url"],
                        "height": to_int(image.get("height"), None),
                        "width": to_int(image.get("width"), None),
                    }
                )
        return cls(name=clean_string(data.get("name")), images=images)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "images": self.images}


AUDIO_FEATURE_FIELDS = (
    "danceability",
    "energy",
    "key",
    "loudness",
    "mode",
    "speechiness",
    "acousticness",
    "instrumentalness",
    "liveness",
    "valence",
    "tempo",
    "duration_ms",
    "time_signature",
)


@dataclass
class AudioFeatures:
    """Numeric descriptors exactly as Spotify reports them.

    The ``id`` field is kept for display only; nothing checks it against the
    track the vector is attached to.
    """

    id: Optional[str] = None
    values: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["AudioFeatures"]:
        if not isinstance(payload, dict):
            return None
        values = {}
        for name in AUDIO_FEATURE_FIELDS:
            number = to_float(payload.get(name), None)
            if number is not None:
                values[name] = number
        return cls(id=_optional_str(payload.get("id")), values=values)

    def get(self, name: str) -> Optional[float]:
        return self.values.get(name)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, **self.values}


@dataclass
class Track:
    id: Optional[str]
    name: str
    artists: List[Artist] = field(default_factory=list)
    album: Album = field(default_factory=lambda: Album(name=""))
    duration_ms: Optional[int] = None
    uri: Optional[str] = None
    audio_features: Optional[AudioFeatures] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "Track":
        data = _as_dict(payload)
        return cls(
            id=_optional_str(data.get("id")),
            name=clean_string(data.get("name")),
            artists=[Artist.from_payload(a) for a in _as_list(data.get("artists"))],
            album=Album.from_payload(data.get("album")),
            duration_ms=to_int(data.get("duration_ms"), None),
            uri=_optional_str(data.get("uri")),
            audio_features=AudioFeatures.from_payload(data.get("audio_features")),
        )

    @property
    def artist_names(self) -> List[str]:
        return [artist.name for artist in self.artists if artist.name]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "artists": [artist.to_dict() for artist in self.artists],
            "album": self.album.to_dict(),
            "duration_ms": self.duration_ms,
            "uri": self.uri,
            "audio_features": (
                self.audio_features.to_dict() if self.audio_features else None
            ),
        }


class FeaturePair(NamedTuple):
    """A retained track and the audio-feature slot at the same response index."""

    track: Track
    features: Optional[AudioFeatures]


@dataclass
class SourcePlaylist:
    spotify_id: str
    name: str
    tracks: List[Track] = field(default_factory=list)


@dataclass
class StoredPlaylist:
    user_id: str
    spotify_id: str
    name: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    track_count: int = 0
    is_owner: bool = False
    created_at: Optional[int] = None

    @classmethod
    def from_payload(
        cls, user_id: str, payload: Dict[str, Any], provider_user_id: Optional[str]
    ) -> "StoredPlaylist":
        images = _as_list(payload.get("images"))
        first_image = _as_dict(images[0]) if images else {}
        owner_id = _as_dict(payload.get("owner")).get("id")
        return cls(
            user_id=user_id,
            spotify_id=payload["id"],
            name=clean_string(payload.get("name")),
            description=_optional_str(payload.get("description")),
            image_url=_optional_str(first_image.get("url")),
            track_count=to_int(_as_dict(payload.get("tracks")).get("total"), 0),
            is_owner=bool(provider_user_id) and owner_id == provider_user_id,
        )

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "StoredPlaylist":
        return cls(
            user_id=item["user_id"],
            spotify_id=item["spotify_id"],
            name=clean_string(item.get("name")),
            description=_optional_str(item.get("description")),
            image_url=_optional_str(item.get("image_url")),
            track_count=to_int(item.get("track_count"), 0),
            is_owner=bool(item.get("is_owner")),
            created_at=to_int(item.get("created_at"), None),
        )

    def to_spotify_shape(self) -> Dict[str, Any]:
        return {
            "id": self.spotify_id,
            "name": self.name,
            "description": self.description,
            "images": [{"url": self.image_url}] if self.image_url else [],
            "tracks": {"total": self.track_count},
        }


@dataclass
class RecommendedTrack:
    name: str
    artist: str
    reason: str = ""
    energy_score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "artist": self.artist,
            "reason": self.reason,
            "energy_score": self.energy_score,
        }


@dataclass
class PlaylistAnalysis:
    theme: str
    mood: str
    energy_level: float
    genres: List[str]
    recommended_tracks: List[RecommendedTrack]
    playlist_name: str
    playlist_description: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "theme": self.theme,
            "mood": self.mood,
            "energy_level": self.energy_level,
            "genres": list(self.genres),
            "recommended_tracks": [t.to_dict() for t in self.recommended_tracks],
            "playlist_name": self.playlist_name,
            "playlist_description": self.playlist_description,
        }


@dataclass
class GenerationRecord:
    id: str
    user_id: str
    name: str
    description: str
    source_playlist_ids: List[str]
    tracks: List[Track]
    prompt: Optional[str]
    published_playlist_id: Optional[str] = None
    created_at: Optional[int] = None

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "GenerationRecord":
        return cls(
            id=item["id"],
            user_id=item["user_id"],
            name=clean_string(item.get("name")),
            description=clean_string(item.get("description")),
            source_playlist_ids=[
                s for s in _as_list(item.get("source_playlist_ids")) if isinstance(s, str)
            ],
            tracks=[Track.from_payload(t) for t in _as_list(item.get("tracks"))],
            prompt=_optional_str(item.get("prompt")),
            published_playlist_id=_optional_str(item.get("published_playlist_id")),
            created_at=to_int(item.get("created_at"), None),
        )

    def to_item(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "description": self.description,
            "source_playlist_ids": list(self.source_playlist_ids),
            "tracks": [track.to_dict() for track in self.tracks],
            "prompt": self.prompt,
            "published_playlist_id": self.published_playlist_id,
            "created_at": self.created_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "name": self.name,
            "description": self.description,
            "sourcePlaylistIds": list(self.source_playlist_ids),
            "tracks": [track.to_dict() for track in self.tracks],
            "aiPrompt": self.prompt,
            "spotifyPlaylistId": self.published_playlist_id,
            "createdAt": self.created_at,
        }


CHAT_ROLES = ("user", "assistant")


@dataclass
class ChatMessage:
    id: str
    user_id: str
    role: str
    content: str
    created_at: int
    generation_id: Optional[str] = None

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "ChatMessage":
        return cls(
            id=item["id"],
            user_id=item["user_id"],
            role=item.get("role") if item.get("role") in CHAT_ROLES else "user",
            content=item.get("content") or "",
            created_at=to_int(item.get("created_at"), 0),
            generation_id=_optional_str(item.get("generation_id")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "role": self.role,
            "content": self.content,
            "playlistGenerationId": self.generation_id,
            "createdAt": self.created_at,
        }
