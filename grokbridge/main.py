import functools
import json
import os
import sys
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import APIKeyHeader

from . import chat_completions
from .api_server import build_router
from .browser_automation import extract_temp_credential
from .console import debug_print, mask_credential
from .credential_pool import CredentialPool
from .errors import GatewayError
from .temp_credential_pool import TempCredentialPool

# ============================================================
# CONFIGURATION
# ============================================================
CONFIG_FILE = os.environ.get("CONFIG_FILE", "config.json")

DEFAULT_PORT = 3000
DEFAULT_BODY_LIMIT_BYTES = 5 * 1024 * 1024
API_KEY_HEADER = APIKeyHeader(name="Authorization", auto_error=False)

# Never written back to disk; credentials live only in memory.
SECRET_CONFIG_KEYS = ("api_key", "sso", "picgo_key", "tumy_key")


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() == "true"


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except (TypeError, ValueError):
        debug_print(f"⚠️  Invalid integer for {name}, using {default}")
        return default


def _as_int(value: object, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def get_config():
    try:
        with open(CONFIG_FILE, "r") as f:
            config = json.load(f)
    except FileNotFoundError:
        config = {}
    except json.JSONDecodeError as e:
        debug_print(f"⚠️  Config file error: {e}, using defaults")
        config = {}
    if not isinstance(config, dict):
        config = {}

    config.setdefault("api_key", os.environ.get("API_KEY") or "sk-123456")
    config.setdefault("sso", os.environ.get("SSO") or "")
    config.setdefault("is_custom_sso", _env_bool("IS_CUSTOM_SSO", False))
    config.setdefault("is_temp_grok2", _env_bool("IS_TEMP_GROK2", True))
    config.setdefault("is_temp_conversation", _env_bool("IS_TEMP_CONVERSATION", False))
    config.setdefault("grok2_concurrency_level", _env_int("GROK2_CONCURRENCY_LEVEL", 4))
    config.setdefault("picgo_key", os.environ.get("PICGO_KEY") or "")
    config.setdefault("tumy_key", os.environ.get("TUMY_KEY") or "")
    config.setdefault("show_thinking", _env_bool("SHOW_THINKING", False))
    config.setdefault("show_search_results", _env_bool("ISSHOW_SEARCH_RESULTS", True))
    config.setdefault("anti_idle_enabled", True)
    config.setdefault("anti_idle_interval_ms", _env_int("ANTI_IDLE_INTERVAL", 20000))
    config.setdefault("max_retry_attempts", _env_int("MAX_RETRY_ATTEMPTS", 2))
    config.setdefault("body_limit_bytes", _env_int("BODY_LIMIT_BYTES", DEFAULT_BODY_LIMIT_BYTES))
    config.setdefault("port", _env_int("PORT", DEFAULT_PORT))
    config.setdefault("chrome_path", os.environ.get("CHROME_PATH") or "")
    config.setdefault("camoufox_headless", True)

    # Malformed numbers in the file fall back to defaults
    config["grok2_concurrency_level"] = max(1, _as_int(config["grok2_concurrency_level"], 4))
    config["anti_idle_interval_ms"] = max(50, _as_int(config["anti_idle_interval_ms"], 20000))
    config["max_retry_attempts"] = max(1, _as_int(config["max_retry_attempts"], 2))
    config["body_limit_bytes"] = max(0, _as_int(config["body_limit_bytes"], DEFAULT_BODY_LIMIT_BYTES))
    config["port"] = _as_int(config["port"], DEFAULT_PORT)
    return config


def save_config(config):
    try:
        persisted = {k: v for k, v in config.items() if k not in SECRET_CONFIG_KEYS}
        with open(CONFIG_FILE, "w") as f:
            json.dump(persisted, f, indent=4)
    except OSError as e:
        debug_print(f"❌ Error saving config: {e}")


def parse_sso_list(value: object) -> list:
    if isinstance(value, list):
        items = value
    else:
        items = str(value or "").split(",")
    return [str(item).strip() for item in items if str(item).strip()]


# --- Global State ---

credential_pool = CredentialPool()
temp_credential_pool: Optional[TempCredentialPool] = None


def load_sso_credentials(config: dict) -> int:
    tokens = parse_sso_list(config.get("sso"))
    for token in tokens:
        credential_pool.add(f"sso-rw={token};sso={token}")
    debug_print(f"🔑 Loaded {len(tokens)} long-lived credential(s)")
    return len(tokens)


def build_temp_credential_pool(config: dict) -> TempCredentialPool:
    return TempCredentialPool(
        functools.partial(extract_temp_credential, config),
        target_size=config.get("grok2_concurrency_level", 4),
    )


async def verify_api_key(key: Optional[str] = Depends(API_KEY_HEADER)) -> str:
    key = (key or "").strip()
    token = key[7:].strip() if key.startswith("Bearer ") else key
    config = get_config()
    if config.get("is_custom_sso"):
        if not token:
            raise HTTPException(status_code=401, detail="Custom SSO token missing")
        return token
    if not token or token != config.get("api_key"):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return token


async def api_chat_completions(request: Request, auth_token: str):
    return await chat_completions.api_chat_completions(sys.modules[__name__], request, auth_token)


# ============================================================
# APP
# ============================================================

app = FastAPI()
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.on_event("startup")
async def startup_event():
    global temp_credential_pool
    try:
        config = get_config()
        save_config(config)
        load_sso_credentials(config)
        debug_print(f"📊 Remaining capacity: {credential_pool.remaining_capacity()}")

        if config.get("is_temp_grok2"):
            temp_credential_pool = build_temp_credential_pool(config)
            try:
                await temp_credential_pool.ensure()
            except GatewayError as e:
                debug_print(f"⚠️  Startup short-lived credential fetch failed: {e.message}")
            if temp_credential_pool.credentials:
                debug_print(f"✅ Short-lived credential ready: {mask_credential(temp_credential_pool.consume())}")
    except Exception as e:
        debug_print(f"❌ Error during startup: {e}")
        # Continue anyway - server should still start


@app.on_event("shutdown")
async def shutdown_event():
    await credential_pool.close()


app.include_router(build_router(sys.modules[__name__]))


def run():
    port = get_config().get("port", DEFAULT_PORT)
    print("=" * 60)
    print("🚀 Grok Bridge Server Starting...")
    print("=" * 60)
    print(f"📚 API Base URL: http://localhost:{port}/v1")
    print("=" * 60)
    uvicorn.run(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    run()
