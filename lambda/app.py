import base64
import json
import os
import re
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import catalog
import curator
import publisher
import spotify_auth
import store
from errors import BadRequest, HTTPError, NoValidPlaylists, Unauthenticated
from models import SignInGrant
from runtime import CONTEXT_VAR, RUN_ID_VAR, USER_ID_VAR, clean_string, json_default, log, to_int

DEFAULT_GENERATION_PROMPT = "Create an energetic playlist perfect for a road trip"
CHAT_HISTORY_LIMIT = 50
CHAT_CONTEXT_MESSAGES = 10
MAX_PROMPT_CHARS = 1000


@dataclass
class AppContext:
    openai: curator.OpenAIClient


APP_CONTEXT: Optional[AppContext] = None


def get_app_context() -> AppContext:
    global APP_CONTEXT
    if APP_CONTEXT is None:
        APP_CONTEXT = AppContext(openai=curator.build_openai_client())
    return APP_CONTEXT


@dataclass
class Request:
    method: str
    path: str
    user_id: str
    event: Dict[str, Any]
    params: Dict[str, str]


def log_runtime_identity(context: Any) -> None:
    log(
        "info",
        "lambda_identity",
        function_name=os.getenv("AWS_LAMBDA_FUNCTION_NAME"),
        function_version=os.getenv("AWS_LAMBDA_FUNCTION_VERSION"),
        aws_request_id=getattr(context, "aws_request_id", None),
    )


def handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    run_id = uuid.uuid4().hex
    token = RUN_ID_VAR.set(run_id)
    ctx_token = CONTEXT_VAR.set(context)
    user_token = USER_ID_VAR.set("")
    log_runtime_identity(context)
    try:
        return process_event(event)
    except HTTPError as exc:
        log("warning", "Handled HTTP error", status=exc.status_code, message=exc.message)
        return build_response(exc.status_code, exc.to_body(), exc.headers)
    except Exception as exc:  # pylint: disable=broad-except
        log("critical", "Unhandled exception", error=repr(exc))
        return build_response(
            500, {"error": "Internal server error", "details": str(exc) or type(exc).__name__}
        )
    finally:
        RUN_ID_VAR.reset(token)
        CONTEXT_VAR.reset(ctx_token)
        USER_ID_VAR.reset(user_token)


def _method_and_path(event: Dict[str, Any]) -> Tuple[str, str]:
    http_context = (event.get("requestContext") or {}).get("http")
    if http_context:
        method = http_context.get("method")
        path = event.get("rawPath") or http_context.get("path")
    else:
        method = event.get("httpMethod")
        path = event.get("path") or event.get("resource")
    normalized = (path or "").rstrip("/") or "/"
    return (method or "").upper(), normalized


def resolve_user_id(event: Dict[str, Any]) -> str:
    authorizer = (event.get("requestContext") or {}).get("authorizer") or {}
    candidates = [
        (authorizer.get("lambda") or {}).get("user_id"),
        ((authorizer.get("jwt") or {}).get("claims") or {}).get("sub"),
        authorizer.get("user_id"),
    ]
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    raise Unauthenticated()


def process_event(event: Dict[str, Any]) -> Dict[str, Any]:
    method, path = _method_and_path(event)
    log("info", "Incoming request", method=method, path=path)

    for route_method, pattern, route_fn in ROUTES:
        match = pattern.fullmatch(path)
        if match and route_method == method:
            user_id = resolve_user_id(event)
            USER_ID_VAR.set(user_id)
            request = Request(method, path, user_id, event, match.groupdict())
            return build_response(200, route_fn(request))

    raise HTTPError(404, "route not found")


def parse_json_body(event: Dict[str, Any]) -> Dict[str, Any]:
    body = event.get("body")
    if body is None:
        raise BadRequest("request body is required")

    if event.get("isBase64Encoded"):
        try:
            body = base64.b64decode(body).decode("utf-8")
        except (ValueError, UnicodeDecodeError) as exc:
            raise BadRequest("invalid base64 body") from exc

    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        raise BadRequest("body must be valid JSON") from exc

    if not isinstance(data, dict):
        raise BadRequest("body must be a JSON object")

    return data


def build_response(
    status_code: int, body: Any, headers: Optional[Dict[str, str]] = None
) -> Dict[str, Any]:
    final_headers = {"Content-Type": "application/json"}
    if headers:
        final_headers.update(headers)
    return {
        "statusCode": status_code,
        "headers": final_headers,
        "body": json.dumps(body, default=json_default),
    }


def get_user(request: Request) -> Dict[str, Any]:
    return store.get_user_profile(request.user_id)


def record_token_grant(request: Request) -> Dict[str, Any]:
    payload = parse_json_body(request.event)
    provider_account_id = clean_string(payload.get("providerAccountId"))
    if not provider_account_id:
        raise BadRequest("providerAccountId is required")
    access_token = payload.get("accessToken")
    refresh_token = payload.get("refreshToken")
    for name, value in (("accessToken", access_token), ("refreshToken", refresh_token)):
        if value is not None and not isinstance(value, str):
            raise BadRequest(f"{name} must be a string when provided")
    spotify_auth.record_sign_in(
        SignInGrant(
            user_id=request.user_id,
            provider_account_id=provider_account_id,
            access_token=access_token or None,
            refresh_token=refresh_token or None,
            expires_at_epoch=to_int(payload.get("expiresAt"), None),
            email=clean_string(payload.get("email")),
            display_name=clean_string(payload.get("displayName")),
        )
    )
    return {"ok": True}


def list_playlists(request: Request) -> List[Dict[str, Any]]:
    return catalog.sync_user_playlists(request.user_id)


def get_playlist_tracks(request: Request) -> Dict[str, Any]:
    items = catalog.playlist_tracks_with_features(request.user_id, request.params["playlist_id"])
    return {"items": items, "total": len(items)}


def generate(request: Request) -> Dict[str, Any]:
    payload = parse_json_body(request.event)
    selected = payload.get("selectedPlaylistIds")
    if not isinstance(selected, list) or not selected:
        raise BadRequest("At least one playlist must be selected")
    if not all(isinstance(pid, str) and pid for pid in selected):
        raise BadRequest("selectedPlaylistIds must be a list of playlist ids")
    prompt_raw = payload.get("prompt")
    if prompt_raw is not None and not isinstance(prompt_raw, str):
        raise BadRequest("prompt must be a string when provided")
    prompt = clean_string(prompt_raw)
    if len(prompt) > MAX_PROMPT_CHARS:
        raise BadRequest(f"prompt must be at most {MAX_PROMPT_CHARS} characters")

    source_playlists = catalog.build_catalog(request.user_id, selected)
    if not source_playlists:
        raise NoValidPlaylists()

    analysis, tracks = curator.generate_playlist(
        source_playlists, prompt or DEFAULT_GENERATION_PROMPT, get_app_context().openai
    )
    record = store.create_generation(
        user_id=request.user_id,
        name=analysis.playlist_name,
        description=analysis.playlist_description,
        source_playlist_ids=selected,
        tracks=tracks,
        prompt=prompt or None,
    )
    return {**record.to_dict(), "analysis": analysis.to_dict()}


def save_to_spotify(request: Request) -> Dict[str, Any]:
    return publisher.publish(request.user_id, request.params["generation_id"])


def get_chat(request: Request) -> Dict[str, Any]:
    messages = store.list_chat_messages(request.user_id, CHAT_HISTORY_LIMIT)
    return {"messages": [message.to_dict() for message in messages]}


def post_chat(request: Request) -> Dict[str, Any]:
    payload = parse_json_body(request.event)
    message = payload.get("message")
    if not isinstance(message, str) or not message.strip():
        raise BadRequest("Message is required and must be a string")
    context = payload.get("context") if isinstance(payload.get("context"), dict) else {}
    generation_id = context.get("generationId") if isinstance(context.get("generationId"), str) else None

    store.create_chat_message(request.user_id, "user", message, generation_id)
    history = [
        {"role": m.role, "content": m.content}
        for m in store.list_chat_messages(request.user_id, CHAT_CONTEXT_MESSAGES)
    ]
    reply = curator.chat_reply(get_app_context().openai, history, context)
    saved = store.create_chat_message(request.user_id, "assistant", reply, generation_id)
    return {"message": saved.to_dict(), "response": reply}


def reset_chat(request: Request) -> Dict[str, Any]:
    store.delete_chat_messages(request.user_id)
    return {"ok": True}


def _route(method: str, path: str, route_fn: Callable[[Request], Any]):
    # The frontend calls the API under /api; API Gateway may strip it.
    return method, re.compile(r"(?:/api)?" + path), route_fn


ROUTES = [
    _route("GET", r"/user", get_user),
    _route("POST", r"/auth/token-grant", record_token_grant),
    _route("GET", r"/playlists", list_playlists),
    _route("GET", r"/playlists/(?P<playlist_id>[^/]+)/tracks", get_playlist_tracks),
    _route("POST", r"/generate-playlist", generate),
    _route("POST", r"/save-to-spotify/(?P<generation_id>[^/]+)", save_to_spotify),
    _route("GET", r"/chat", get_chat),
    _route("POST", r"/chat", post_chat),
    _route("DELETE", r"/chat", reset_chat),
]
