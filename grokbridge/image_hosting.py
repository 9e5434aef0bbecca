import asyncio
import base64
import json
import re
import time
from typing import Optional, Tuple

import httpx

from .console import debug_print
from .errors import UpstreamTransportFailure

GROK_BASE_URL = "https://grok.com"
GROK_ASSETS_URL = "https://assets.grok.com"
PICGO_UPLOAD_URL = "https://www.picgo.net/api/1/upload"
TUMY_UPLOAD_URL = "https://tu.my/api/v1/upload"

DEFAULT_HEADERS = {
    "accept": "*/*",
    "accept-language": "zh-CN,zh;q=0.9",
    "content-type": "text/plain;charset=UTF-8",
    "origin": GROK_BASE_URL,
    "sec-fetch-dest": "empty",
    "sec-fetch-mode": "cors",
    "sec-fetch-site": "same-origin",
    "user-agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/129.0.0.0 Safari/537.36",
}

_DATA_URL_RE = re.compile(r"data:([a-zA-Z0-9]+/[a-zA-Z0-9\-.+]+);base64,")


def describe_data_url(data_url: str) -> Tuple[str, str, str]:
    """
    Split a base64 image literal into (mime_type, file_name, base64_payload).

    Bare base64 strings are treated as JPEG.
    """
    mime_type = "image/jpeg"
    match = _DATA_URL_RE.search(data_url or "")
    if match:
        mime_type = match.group(1)
    payload = data_url.split(",", 1)[1] if "data:image" in (data_url or "") and "," in data_url else data_url
    extension = mime_type.split("/")[1]
    return mime_type, f"image.{extension}", payload or ""


async def upload_attachment(data_url: str, credential: str, *, base_url: str = GROK_BASE_URL) -> str:
    """
    Upload an inline image to the upstream file store.

    Returns the upstream ``fileMetadataId`` or an empty string on failure.
    """
    mime_type, file_name, payload = describe_data_url(data_url)
    if not payload:
        return ""
    upload_data = {
        "rpc": "uploadFile",
        "req": {"fileName": file_name, "fileMimeType": mime_type, "content": payload},
    }
    headers = dict(DEFAULT_HEADERS)
    headers["cookie"] = credential or ""

    debug_print(f"📤 Uploading attachment {file_name} ({len(payload)} base64 chars)")
    async with httpx.AsyncClient() as client:
        try:
            response = await client.post(
                f"{base_url}/api/rpc",
                headers=headers,
                content=json.dumps(upload_data),
                timeout=30.0,
            )
            response.raise_for_status()
        except httpx.TimeoutException:
            debug_print("❌ Timeout while uploading attachment")
            return ""
        except httpx.HTTPError as e:
            debug_print(f"❌ HTTP error while uploading attachment: {e}")
            return ""

    try:
        file_id = response.json().get("fileMetadataId") or ""
    except (json.JSONDecodeError, AttributeError) as e:
        debug_print(f"❌ Failed to parse attachment upload response: {e}")
        return ""
    debug_print(f"✅ Attachment uploaded: {file_id}")
    return str(file_id)


async def fetch_generated_image(
    image_path: str,
    credential: str,
    *,
    attempts: int = 2,
    retry_delay_seconds: float = 1.0,
) -> Tuple[bytes, str]:
    """Download a generated image from the upstream asset host."""
    headers = dict(DEFAULT_HEADERS)
    headers["cookie"] = credential or ""
    url = f"{GROK_ASSETS_URL}/{str(image_path or '').lstrip('/')}"

    last_error = ""
    async with httpx.AsyncClient() as client:
        for attempt in range(1, attempts + 1):
            try:
                response = await client.get(url, headers=headers, timeout=60.0)
                if response.status_code < 400:
                    content_type = response.headers.get("content-type") or "image/jpeg"
                    return response.content, content_type
                last_error = f"status {response.status_code}"
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"
            debug_print(f"⚠️  Generated image download failed ({attempt}/{attempts}): {last_error}")
            if attempt < attempts:
                await asyncio.sleep(retry_delay_seconds * attempt)

    raise UpstreamTransportFailure(f"Failed to download generated image: {last_error}")


def _upload_file_name() -> str:
    return f"image-{int(time.time() * 1000)}.jpg"


async def upload_to_picgo(image_bytes: bytes, api_key: str) -> Optional[str]:
    async with httpx.AsyncClient() as client:
        try:
            response = await client.post(
                PICGO_UPLOAD_URL,
                headers={"X-API-Key": api_key},
                files={"source": (_upload_file_name(), image_bytes, "image/jpeg")},
                timeout=60.0,
            )
            response.raise_for_status()
            return response.json()["image"]["url"]
        except (httpx.HTTPError, json.JSONDecodeError, KeyError, TypeError) as e:
            debug_print(f"❌ PICGO upload failed: {e}")
            return None


async def upload_to_tumy(image_bytes: bytes, api_key: str) -> Optional[str]:
    async with httpx.AsyncClient() as client:
        try:
            response = await client.post(
                TUMY_UPLOAD_URL,
                headers={"Accept": "application/json", "Authorization": f"Bearer {api_key}"},
                files={"file": (_upload_file_name(), image_bytes, "image/jpeg")},
                timeout=60.0,
            )
            response.raise_for_status()
            return response.json()["data"]["links"]["url"]
        except (httpx.HTTPError, json.JSONDecodeError, KeyError, TypeError) as e:
            debug_print(f"❌ TUMY upload failed: {e}")
            return None


async def host_generated_image(image_path: str, credential: str, config: dict) -> str:
    """
    Fetch a generated image and turn it into a markdown image token.

    PICGO wins when both hosting keys are set. Without a key the image is
    inlined as a data URI.
    """
    image_bytes, content_type = await fetch_generated_image(image_path, credential)

    picgo_key = str(config.get("picgo_key") or "").strip()
    tumy_key = str(config.get("tumy_key") or "").strip()
    if not picgo_key and not tumy_key:
        encoded = base64.b64encode(image_bytes).decode("ascii")
        return f"![image](data:{content_type};base64,{encoded})"

    debug_print("🖼️  Uploading generated image to image host...")
    if picgo_key:
        url = await upload_to_picgo(image_bytes, picgo_key)
        if not url:
            return "Image generation failed, please check that the PICGO image host key is correct"
    else:
        url = await upload_to_tumy(image_bytes, tumy_key)
        if not url:
            return "Image generation failed, please check that the TUMY image host key is correct"
    debug_print("✅ Generated image hosted")
    return f"![image]({url})"
