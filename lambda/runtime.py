import hashlib
import json
import os
import time
from contextvars import ContextVar
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import boto3
import requests

from errors import HTTPError

REQUEST_TIMEOUT = (10, 30)
SSM_CACHE: Dict[str, Tuple[str, float]] = {}

RUN_ID_VAR: ContextVar[str] = ContextVar("run_id", default="")
USER_ID_VAR: ContextVar[str] = ContextVar("user_id", default="")
CONTEXT_VAR: ContextVar[Any] = ContextVar("lambda_context", default=None)

ENV_CONFIG = {
    "aws_region": os.environ.get("AWS_REGION", "ap-southeast-2"),
    "spotify_client_id_param": os.environ.get("PARAM_SPOTIFY_CLIENT_ID"),
    "spotify_client_secret_param": os.environ.get("PARAM_SPOTIFY_CLIENT_SECRET"),
    "openai_api_key_param": os.environ.get("PARAM_OPENAI_API_KEY"),
    "users_table": os.environ.get("USERS_TABLE", "curator_users"),
    "playlists_table": os.environ.get("PLAYLISTS_TABLE", "curator_playlists"),
    "generations_table": os.environ.get("GENERATIONS_TABLE", "curator_generations"),
    "chat_table": os.environ.get("CHAT_TABLE", "curator_chat_messages"),
    "openai_model": os.environ.get("OPENAI_MODEL", "gpt-5"),
    "openai_max_completion_tokens": int(
        os.environ.get("OPENAI_MAX_COMPLETION_TOKENS", "16000")
    ),
    "openai_max_attempts": int(os.environ.get("OPENAI_MAX_ATTEMPTS", "3")),
    # Retry guards ensure we do not sleep longer than the remaining Lambda budget.
    "retry_safety_margin_ms": int(os.environ.get("RETRY_SAFETY_MARGIN_MS", "5000")),
    "min_request_budget_ms": int(os.environ.get("MIN_REQUEST_BUDGET_MS", "8000")),
    "ssm_cache_ttl_seconds": int(os.environ.get("SSM_CACHE_TTL_SECONDS", "300")),
}

REQUEST_SESSION = requests.Session()
SSM_CLIENT = boto3.client("ssm", region_name=ENV_CONFIG["aws_region"])
DDB_RESOURCE = boto3.resource("dynamodb", region_name=ENV_CONFIG["aws_region"])
DDB_CLIENT = boto3.client("dynamodb", region_name=ENV_CONFIG["aws_region"])


def log(level: str, msg: str, **details: Any) -> None:
    prefix = {
        "info": "[info]",
        "warning": "[warning]",
        "critical": "[critical]",
    }.get(level, "[info]")
    ctx = {}
    run_id = RUN_ID_VAR.get()
    user_id = USER_ID_VAR.get()
    if run_id:
        ctx["run_id"] = run_id
    if user_id:
        ctx["user_id"] = user_id
    payload = {**ctx, **details} if details or ctx else None
    suffix = f" {json.dumps(payload, sort_keys=True, default=str)}" if payload else ""
    print(f"{prefix} {msg}{suffix}")


def get_remaining_time_ms() -> Optional[int]:
    ctx = CONTEXT_VAR.get()
    if not ctx:
        return None
    getter = getattr(ctx, "get_remaining_time_in_millis", None)
    if not callable(getter):
        return None
    try:
        return int(getter())
    except (TypeError, ValueError):
        return None


def get_secure_parameter(config_key: str, force_refresh: bool = False) -> str:
    param_name = _get_parameter_name(config_key)
    return ssm_get_parameter(param_name, force_refresh=force_refresh)


def ssm_get_parameter(name: str, force_refresh: bool = False) -> str:
    now = time.time()
    if not force_refresh:
        cached = SSM_CACHE.get(name)
        if cached and cached[1] > now:
            return cached[0]

    try:
        response = SSM_CLIENT.get_parameter(Name=name, WithDecryption=True)
    except SSM_CLIENT.exceptions.ParameterNotFound as exc:
        raise HTTPError(502, f"ssm parameter {name} not found") from exc

    value = response["Parameter"]["Value"]
    SSM_CACHE[name] = (value, now + ENV_CONFIG["ssm_cache_ttl_seconds"])
    return value


def _get_parameter_name(config_key: str) -> str:
    param_name = ENV_CONFIG.get(config_key)
    if not param_name:
        raise HTTPError(502, f"missing environment configuration for {config_key}")
    return param_name


def sha256_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def now_epoch() -> float:
    return time.time()


def sleep_for(seconds: float) -> None:
    if seconds > 0:
        time.sleep(seconds)


def clean_string(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()


def to_int(value: Any, default: Optional[int]) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, Decimal):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: Optional[float]) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    return str(value)
