import json
import random
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

import runtime
from errors import HTTPError, InvalidModelOutput, UpstreamRequestFailed
from models import PlaylistAnalysis, RecommendedTrack, SourcePlaylist, Track
from runtime import ENV_CONFIG, REQUEST_TIMEOUT, log, sha256_hash

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
PROMPT_TRACKS_PER_PLAYLIST = 50
FALLBACK_TRACK_LIMIT = 25
DEFAULT_ENERGY_LEVEL = 6
DEFAULT_THEME = "mixed"
DEFAULT_MOOD = "Mixed"
DEFAULT_PLAYLIST_NAME = "AI Curated Playlist"
CHAT_FALLBACK_REPLY = "I'm having trouble responding right now. Please try again."

SYSTEM_INSTRUCTION = (
    "You are an expert music curator and playlist generator. Analyze music data "
    "and create a cohesive playlist based on instructions."
)

Transport = Callable[[Dict[str, Any]], requests.Response]


class OpenAIClient:
    """Chat-completions client built once per container and handed to callers.

    ``transport`` replaces the HTTP call entirely; tests pass a callable that
    receives the request payload and returns a response-like object.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        max_completion_tokens: int,
        session: Optional[requests.Session] = None,
        transport: Optional[Transport] = None,
        max_attempts: int = 3,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.max_completion_tokens = max_completion_tokens
        self.session = session or runtime.REQUEST_SESSION
        self.transport = transport
        self.max_attempts = max_attempts

    def complete(self, messages: List[Dict[str, str]], json_response: bool = False) -> str:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_completion_tokens": self.max_completion_tokens,
        }
        if json_response:
            payload["response_format"] = {"type": "json_object"}

        def _make_request() -> requests.Response:
            if self.transport:
                return self.transport(payload)
            return self.session.post(
                OPENAI_URL,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                data=json.dumps(payload),
                timeout=REQUEST_TIMEOUT,
            )

        resp = openai_request_with_retries(
            _make_request,
            max_attempts=self.max_attempts,
            remaining_time_ms_fn=runtime.get_remaining_time_ms,
        )
        if resp.status_code >= 400:
            log("warning", "OpenAI request failed", status=resp.status_code, body=resp.text)
            raise UpstreamRequestFailed("Model request failed", resp.status_code)

        try:
            choice = resp.json()["choices"][0]
            content = choice["message"].get("content") or ""
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            log("critical", "Unexpected OpenAI response", response=resp.text[:1000])
            raise UpstreamRequestFailed("Unexpected model response shape", resp.status_code) from exc
        log(
            "info",
            "openai_completion_received",
            finish_reason=choice.get("finish_reason"),
            content_length_chars=len(content),
        )
        return content


def build_openai_client(transport: Optional[Transport] = None) -> OpenAIClient:
    return OpenAIClient(
        api_key=runtime.get_secure_parameter("openai_api_key_param"),
        model=ENV_CONFIG["openai_model"],
        max_completion_tokens=ENV_CONFIG["openai_max_completion_tokens"],
        transport=transport,
        max_attempts=ENV_CONFIG["openai_max_attempts"],
    )


def openai_request_with_retries(
    request_fn: Callable[[], requests.Response],
    max_attempts: int = 3,
    max_sleep_s: float = 30.0,
    remaining_time_ms_fn: Optional[Callable[[], Optional[int]]] = None,
) -> requests.Response:
    safety_margin_ms = ENV_CONFIG.get("retry_safety_margin_ms", 5000)
    min_request_budget_ms = ENV_CONFIG.get("min_request_budget_ms", 8000)

    def _remaining_ms() -> Optional[int]:
        if not remaining_time_ms_fn:
            return None
        value = remaining_time_ms_fn()
        return runtime.to_int(value, None)

    def _abort_due_to_budget(phase: str, attempt: int, remaining_ms: int) -> None:
        log(
            "warning",
            "Not enough time left for OpenAI retry budget; aborting",
            phase=phase,
            attempt=attempt,
            remaining_ms=remaining_ms,
        )
        raise HTTPError(
            502,
            "openai_timeout_budget",
            {
                "reason": "openai_timeout_budget",
                "phase": phase,
                "attempt": attempt,
                "remaining_ms": remaining_ms,
            },
        )

    def _sleep_before_retry(attempt: int, sleep_s: float, **details: Any) -> None:
        remaining_ms = _remaining_ms()
        if remaining_ms is not None and int(sleep_s * 1000) + safety_margin_ms > remaining_ms:
            _abort_due_to_budget("sleep", attempt, remaining_ms)
        log(
            "warning",
            "OpenAI request failed - retrying",
            attempt=attempt,
            sleep_s=round(sleep_s, 2),
            **details,
        )
        runtime.sleep_for(sleep_s)

    last_error: Optional[Exception] = None
    for attempt in range(1, max_attempts + 1):
        remaining_ms = _remaining_ms()
        if remaining_ms is not None and remaining_ms < min_request_budget_ms:
            _abort_due_to_budget("pre_request", attempt, remaining_ms)
        try:
            resp = request_fn()
        except requests.RequestException as exc:
            last_error = exc
            if attempt == max_attempts:
                raise HTTPError(
                    502,
                    "openai_unavailable",
                    {"reason": "network_error", "error": str(exc)},
                ) from exc
            _sleep_before_retry(
                attempt, compute_retry_sleep(attempt, max_sleep_s), error=str(exc)
            )
            continue

        log("info", "OpenAI request completed", attempt=attempt, status=resp.status_code)
        retryable = resp.status_code == 429 or resp.status_code >= 500
        if not retryable or attempt == max_attempts:
            return resp
        retry_after = resp.headers.get("Retry-After")
        _sleep_before_retry(
            attempt,
            compute_retry_sleep(attempt, max_sleep_s, retry_after),
            status=resp.status_code,
        )

    raise HTTPError(
        502,
        "openai_unavailable",
        {"reason": "openai_unknown_error", "error": str(last_error)},
    )


def compute_retry_sleep(
    attempt: int, max_sleep_s: float, retry_after: Optional[str] = None
) -> float:
    if retry_after:
        try:
            base = min(float(retry_after), max_sleep_s)
        except ValueError:
            base = min(max_sleep_s, 2 * (2 ** (attempt - 1)))
    else:
        base = min(max_sleep_s, 2 * (2 ** (attempt - 1)))
    jitter = random.uniform(0, max(0.5 * base, 0.1))
    return min(base + jitter, max_sleep_s)


def condense_catalog(catalog: List[SourcePlaylist]) -> List[Dict[str, Any]]:
    return [
        {
            "name": playlist.name,
            "tracks": [
                {
                    "name": track.name,
                    "artist": ", ".join(track.artist_names),
                    "album": track.album.name,
                }
                for track in playlist.tracks[:PROMPT_TRACKS_PER_PLAYLIST]
            ],
        }
        for playlist in catalog
    ]


def build_generation_prompt(catalog: List[SourcePlaylist], user_prompt: str) -> str:
    # Every playlist goes in as compact JSON. Costs more tokens than listing one
    # playlist as text, but the model sees the whole selection.
    playlists_json = json.dumps(condense_catalog(catalog), ensure_ascii=False)
    return (
        "Analyze the source playlists below and pick 25 tracks for a new playlist.\n"
        "Prefer tracks that appear in the source playlists; use the exact track "
        "name and primary artist as they are listed.\n\n"
        f"Source playlists (JSON):\n{playlists_json}\n\n"
        f"User request: {user_prompt}\n\n"
        "Respond ONLY with valid JSON (no markdown):\n"
        "{\n"
        '  "theme": string,\n'
        '  "mood": string,\n'
        '  "energy_level": number,\n'
        '  "genres": [string],\n'
        '  "recommended_tracks": [\n'
        '    {"name": string, "artist": string, "reason": string, "energy_score": number}\n'
        "  ],\n"
        '  "playlist_name": string,\n'
        '  "playlist_description": string\n'
        "}"
    )


def parse_model_output(raw: str) -> Dict[str, Any]:
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        parsed = _extract_first_object(raw)
    if not isinstance(parsed, dict):
        log("warning", "Model output is not a JSON object", raw=raw[:500])
        raise InvalidModelOutput(raw)
    return parsed


def _extract_first_object(raw: str) -> Any:
    start = raw.find("{") if isinstance(raw, str) else -1
    if start < 0:
        return None
    try:
        parsed, _ = json.JSONDecoder().raw_decode(raw, start)
    except ValueError:
        return None
    log("info", "model_output_recovered_from_text", offset=start)
    return parsed


def _first_present(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _text(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def _normalize_recommendation(entry: Any) -> Optional[RecommendedTrack]:
    if not isinstance(entry, dict):
        return None
    artist = _first_present(entry, "artist", "artist_name", "artistName", "artists")
    if isinstance(artist, list):
        artist = ", ".join(a for a in artist if isinstance(a, str))
    return RecommendedTrack(
        name=_text(_first_present(entry, "name", "title", "track", "track_name", "trackName"), ""),
        artist=_text(artist, ""),
        reason=_text(entry.get("reason"), ""),
        energy_score=runtime.to_float(
            _first_present(entry, "energy_score", "energyScore"), None
        ),
    )


def normalize_analysis(data: Dict[str, Any]) -> PlaylistAnalysis:
    raw_tracks = _first_present(data, "recommended_tracks", "recommendedTracks", "tracks")
    recommendations = [
        rec
        for rec in (_normalize_recommendation(e) for e in (raw_tracks or []))
        if rec is not None
    ] if isinstance(raw_tracks, list) else []

    genres = _first_present(data, "genres", "genre")
    if isinstance(genres, str):
        genres = [genres]
    genres = [g.strip() for g in genres if isinstance(g, str) and g.strip()] if isinstance(genres, list) else []

    return PlaylistAnalysis(
        theme=_text(data.get("theme"), DEFAULT_THEME),
        mood=_text(data.get("mood"), DEFAULT_MOOD),
        energy_level=runtime.to_float(
            _first_present(data, "energy_level", "energyLevel"), DEFAULT_ENERGY_LEVEL
        ),
        genres=genres,
        recommended_tracks=recommendations,
        playlist_name=_text(
            _first_present(data, "playlist_name", "playlistName", "name"),
            DEFAULT_PLAYLIST_NAME,
        ),
        playlist_description=_text(
            _first_present(data, "playlist_description", "playlistDescription", "description"),
            "",
        ),
    )


def _matches(track: Track, recommendation: RecommendedTrack) -> bool:
    name = recommendation.name.casefold()
    artist = recommendation.artist.casefold()
    if name and name in track.name.casefold():
        return True
    return bool(artist) and any(artist in a.casefold() for a in track.artist_names)


def reconcile_tracks(
    recommendations: List[RecommendedTrack], catalog: List[SourcePlaylist]
) -> List[Track]:
    matched: List[Track] = []
    seen_ids = set()
    for recommendation in recommendations:
        for playlist in catalog:
            candidate = next((t for t in playlist.tracks if _matches(t, recommendation)), None)
            if candidate is None:
                continue
            # Local files have no id, so they are told apart by identity.
            key = candidate.id or id(candidate)
            if key in seen_ids:
                continue
            matched.append(candidate)
            seen_ids.add(key)
            break
    return matched


def fallback_tracks(catalog: List[SourcePlaylist], limit: int = FALLBACK_TRACK_LIMIT) -> List[Track]:
    picked: List[Track] = []
    seen_ids = set()
    for playlist in catalog:
        for track in playlist.tracks:
            # Local files have no id; each one is kept.
            if track.id:
                if track.id in seen_ids:
                    continue
                seen_ids.add(track.id)
            picked.append(track)
            if len(picked) >= limit:
                return picked
    return picked


def generate_playlist(
    catalog: List[SourcePlaylist], user_prompt: str, client: OpenAIClient
) -> Tuple[PlaylistAnalysis, List[Track]]:
    prompt = build_generation_prompt(catalog, user_prompt)
    log(
        "info",
        "openai_generation_request",
        prompt_hash=sha256_hash(prompt),
        prompt_length_chars=len(prompt),
        playlists=len(catalog),
    )
    raw = client.complete(
        [
            {"role": "system", "content": SYSTEM_INSTRUCTION},
            {"role": "user", "content": prompt},
        ],
        json_response=True,
    )
    analysis = normalize_analysis(parse_model_output(raw))
    tracks = reconcile_tracks(analysis.recommended_tracks, catalog)
    if not tracks:
        tracks = fallback_tracks(catalog)
        log(
            "warning",
            "No recommendations matched the catalog; using fallback selection",
            recommended=len(analysis.recommended_tracks),
            fallback=len(tracks),
        )
    log(
        "info",
        "playlist_generated",
        recommended=len(analysis.recommended_tracks),
        tracks=len(tracks),
    )
    return analysis, tracks


def chat_reply(
    client: OpenAIClient,
    history: List[Dict[str, str]],
    context: Optional[Dict[str, Any]] = None,
) -> str:
    system_prompt = (
        "You are an AI music assistant helping users create perfect playlists from "
        "their Spotify library.\n\n"
        "You can help with:\n"
        "- Analyzing their musical taste\n"
        "- Suggesting playlist themes and moods\n"
        "- Recommending track combinations\n"
        "- Refining playlist generation parameters\n\n"
        "Be conversational, helpful, and music-focused. If they have selected "
        "playlists, reference them naturally."
    )
    selected = (context or {}).get("selectedPlaylists")
    if isinstance(selected, list) and selected:
        names = ", ".join(str(s) for s in selected)
        system_prompt += f"\n\nSelected playlists: {names}"
    reply = client.complete([{"role": "system", "content": system_prompt}, *history])
    return reply.strip() or CHAT_FALLBACK_REPLY
