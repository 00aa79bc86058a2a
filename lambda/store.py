import itertools
import json
import time
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

from boto3.dynamodb.conditions import Key
from boto3.dynamodb.types import TypeSerializer

import runtime
from errors import UserNotFound
from models import (
    ChatMessage,
    Credential,
    GenerationRecord,
    SignInGrant,
    StoredPlaylist,
    Track,
)
from runtime import ENV_CONFIG, log

_SERIALIZER = TypeSerializer()
# Orders chat messages written in the same millisecond by this container.
_CHAT_SEQUENCE = itertools.count()


def _table(config_key: str) -> Any:
    return runtime.DDB_RESOURCE.Table(ENV_CONFIG[config_key])


def _now_ms() -> int:
    return int(time.time() * 1000)


def to_dynamo(value: Any) -> Any:
    # DynamoDB rejects float; round-trip through JSON to turn them into Decimal.
    return json.loads(json.dumps(value, default=runtime.json_default), parse_float=Decimal)


def get_credential(user_id: str) -> Credential:
    response = _table("users_table").get_item(Key={"user_id": user_id})
    item = response.get("Item")
    if not item:
        raise UserNotFound(user_id)
    return Credential.from_item(item)


def get_user_profile(user_id: str) -> Dict[str, Any]:
    response = _table("users_table").get_item(Key={"user_id": user_id})
    item = response.get("Item")
    if not item:
        raise UserNotFound(user_id)
    return {
        "id": item["user_id"],
        "spotifyId": item.get("provider_account_id"),
        "email": item.get("email") or "",
        "displayName": item.get("display_name") or "",
        "createdAt": runtime.to_int(item.get("created_at"), None),
    }


def save_refreshed_tokens(
    user_id: str,
    access_token: str,
    refresh_token: str,
    expires_at_epoch: int,
) -> None:
    _table("users_table").update_item(
        Key={"user_id": user_id},
        UpdateExpression=(
            "SET access_token = :access, refresh_token = :refresh, "
            "expires_at_epoch = :expires"
        ),
        ExpressionAttributeValues={
            ":access": access_token,
            ":refresh": refresh_token,
            ":expires": Decimal(str(int(expires_at_epoch))),
        },
    )


def save_sign_in(grant: SignInGrant) -> None:
    expires = (
        Decimal(str(int(grant.expires_at_epoch)))
        if grant.expires_at_epoch is not None
        else None
    )
    _table("users_table").update_item(
        Key={"user_id": grant.user_id},
        UpdateExpression=(
            "SET provider_account_id = :account, access_token = :access, "
            "refresh_token = :refresh, expires_at_epoch = :expires, "
            "email = :email, display_name = :display_name, "
            "created_at = if_not_exists(created_at, :now)"
        ),
        ExpressionAttributeValues={
            ":account": grant.provider_account_id,
            ":access": grant.access_token,
            ":refresh": grant.refresh_token,
            ":expires": expires,
            ":email": grant.email,
            ":display_name": grant.display_name,
            ":now": Decimal(_now_ms()),
        },
    )


def find_user_playlist(user_id: str, spotify_id: str) -> Optional[StoredPlaylist]:
    response = _table("playlists_table").get_item(
        Key={"user_id": user_id, "spotify_id": spotify_id}
    )
    item = response.get("Item")
    return StoredPlaylist.from_item(item) if item else None


def list_user_playlists(user_id: str) -> List[StoredPlaylist]:
    table = _table("playlists_table")
    items: List[Dict[str, Any]] = []
    last_key = None
    while True:
        query_kwargs: Dict[str, Any] = {
            "KeyConditionExpression": Key("user_id").eq(user_id)
        }
        if last_key:
            query_kwargs["ExclusiveStartKey"] = last_key
        response = table.query(**query_kwargs)
        items.extend(response.get("Items", []))
        last_key = response.get("LastEvaluatedKey")
        if not last_key:
            break
    playlists = [StoredPlaylist.from_item(item) for item in items]
    playlists.sort(key=lambda p: p.created_at or 0, reverse=True)
    return playlists


def upsert_playlists(user_id: str, playlists: List[StoredPlaylist]) -> None:
    """Write the whole playlist refresh as one DynamoDB transaction.

    Either every playlist row is updated or none is. ``created_at`` is only
    set on first insert so listing order stays stable across refreshes.
    """
    if not playlists:
        return
    table_name = ENV_CONFIG["playlists_table"]
    now = _now_ms()
    transact_items = []
    for playlist in playlists:
        values = {
            ":name": playlist.name,
            ":description": playlist.description,
            ":image_url": playlist.image_url,
            ":track_count": playlist.track_count,
            ":is_owner": playlist.is_owner,
            ":now": now,
        }
        transact_items.append(
            {
                "Update": {
                    "TableName": table_name,
                    "Key": {
                        "user_id": _SERIALIZER.serialize(user_id),
                        "spotify_id": _SERIALIZER.serialize(playlist.spotify_id),
                    },
                    "UpdateExpression": (
                        "SET #name = :name, description = :description, "
                        "image_url = :image_url, track_count = :track_count, "
                        "is_owner = :is_owner, "
                        "created_at = if_not_exists(created_at, :now)"
                    ),
                    "ExpressionAttributeNames": {"#name": "name"},
                    "ExpressionAttributeValues": {
                        key: _SERIALIZER.serialize(value) for key, value in values.items()
                    },
                }
            }
        )
    runtime.DDB_CLIENT.transact_write_items(TransactItems=transact_items)
    log("info", "playlists_upserted", count=len(transact_items))


def create_generation(
    user_id: str,
    name: str,
    description: str,
    source_playlist_ids: List[str],
    tracks: List[Track],
    prompt: Optional[str],
) -> GenerationRecord:
    record = GenerationRecord(
        id=str(uuid.uuid4()),
        user_id=user_id,
        name=name,
        description=description,
        source_playlist_ids=list(source_playlist_ids),
        tracks=list(tracks),
        prompt=prompt,
        created_at=_now_ms(),
    )
    _table("generations_table").put_item(Item=to_dynamo(record.to_item()))
    return record


def get_generation(generation_id: str) -> Optional[GenerationRecord]:
    response = _table("generations_table").get_item(Key={"id": generation_id})
    item = response.get("Item")
    return GenerationRecord.from_item(item) if item else None


def set_published_playlist_id(generation_id: str, playlist_id: str) -> None:
    # Plain write: two concurrent publishes can both pass the caller's check.
    _table("generations_table").update_item(
        Key={"id": generation_id},
        UpdateExpression="SET published_playlist_id = :playlist_id",
        ExpressionAttributeValues={":playlist_id": playlist_id},
    )


def chat_sort_key(created_at: int, sequence: int, message_id: str) -> str:
    return f"{created_at:013d}#{sequence:012d}#{message_id}"


def create_chat_message(
    user_id: str, role: str, content: str, generation_id: Optional[str] = None
) -> ChatMessage:
    message = ChatMessage(
        id=str(uuid.uuid4()),
        user_id=user_id,
        role=role,
        content=content,
        created_at=_now_ms(),
        generation_id=generation_id,
    )
    _table("chat_table").put_item(
        Item={
            "user_id": user_id,
            "sort_key": chat_sort_key(message.created_at, next(_CHAT_SEQUENCE), message.id),
            "id": message.id,
            "role": role,
            "content": content,
            "created_at": message.created_at,
            "generation_id": generation_id,
        }
    )
    return message


def list_chat_messages(user_id: str, limit: int = 50) -> List[ChatMessage]:
    """Return the newest ``limit`` messages, oldest first."""
    response = _table("chat_table").query(
        KeyConditionExpression=Key("user_id").eq(user_id),
        ScanIndexForward=False,
        Limit=limit,
    )
    messages = [ChatMessage.from_item(item) for item in response.get("Items", [])]
    messages.reverse()
    return messages


def delete_chat_messages(user_id: str) -> int:
    table = _table("chat_table")
    keys: List[Dict[str, Any]] = []
    last_key = None
    while True:
        query_kwargs: Dict[str, Any] = {
            "KeyConditionExpression": Key("user_id").eq(user_id),
            "ProjectionExpression": "user_id, sort_key",
        }
        if last_key:
            query_kwargs["ExclusiveStartKey"] = last_key
        response = table.query(**query_kwargs)
        keys.extend(
            {"user_id": item["user_id"], "sort_key": item["sort_key"]}
            for item in response.get("Items", [])
        )
        last_key = response.get("LastEvaluatedKey")
        if not last_key:
            break
    with table.batch_writer() as batch:
        for key in keys:
            batch.delete_item(Key=key)
    log("info", "chat_messages_deleted", count=len(keys))
    return len(keys)
