import re
from typing import Awaitable, Callable, List, Optional

from .console import debug_print
from .errors import ConfigurationError, InvalidRequestError

# Public model id -> upstream modelName
MODELS = {
    "grok-2": "grok-latest",
    "grok-2-imageGen": "grok-latest",
    "grok-2-search": "grok-latest",
    "grok-3": "grok-3",
    "grok-3-search": "grok-3",
    "grok-3-imageGen": "grok-3",
    "grok-3-deepsearch": "grok-3",
    "grok-3-reasoning": "grok-3",
}

IMAGE_GEN_MODELS = frozenset({"grok-2-imageGen", "grok-3-imageGen"})
SEARCH_MODELS = frozenset({"grok-2-search", "grok-3-search"})
DEEPSEARCH_MODEL = "grok-3-deepsearch"
REASONING_MODEL = "grok-3-reasoning"

IMAGE_PLACEHOLDER = "[image]"
MAX_FILE_ATTACHMENTS = 4

_THINK_SPAN_RE = re.compile(r"<think>[\s\S]*?</think>")
_INLINE_BASE64_IMAGE_RE = re.compile(r"!\[image\]\(data:.*?base64,.*?\)")

Uploader = Callable[[str], Awaitable[str]]


def is_image_gen_model(model: str) -> bool:
    return model in IMAGE_GEN_MODELS


def upstream_model_name(model: str) -> str:
    try:
        return MODELS[model]
    except (KeyError, TypeError):
        raise InvalidRequestError(f"Unsupported model: {model}") from None


def strip_reasoning_and_inline_images(text: str) -> str:
    text = _THINK_SPAN_RE.sub("", str(text or "")).strip()
    return _INLINE_BASE64_IMAGE_RE.sub(IMAGE_PLACEHOLDER, text)


def _is_image_part(part: object) -> bool:
    return isinstance(part, dict) and part.get("type") == "image_url"


def _image_part_url(part: dict) -> str:
    image_url = part.get("image_url")
    if isinstance(image_url, dict):
        return str(image_url.get("url") or "")
    return str(image_url or "")


def content_to_text(content: object) -> str:
    """Flatten OpenAI message content (string, single part or part list) into transcript text."""
    if isinstance(content, list):
        pieces: List[str] = []
        for part in content:
            if _is_image_part(part):
                pieces.append(IMAGE_PLACEHOLDER)
            elif isinstance(part, dict) and part.get("type") == "text":
                pieces.append(strip_reasoning_and_inline_images(part.get("text")))
        return "\n".join(pieces)
    if isinstance(content, dict):
        if _is_image_part(content):
            return IMAGE_PLACEHOLDER
        if content.get("type") == "text":
            return strip_reasoning_and_inline_images(content.get("text"))
        return ""
    if isinstance(content, str):
        return strip_reasoning_and_inline_images(content)
    return ""


def inline_image_urls(content: object) -> List[str]:
    """Data-URI images carried by a message's content."""
    parts = content if isinstance(content, list) else [content]
    urls = []
    for part in parts:
        if _is_image_part(part):
            url = _image_part_url(part)
            if "data:image" in url:
                urls.append(url)
    return urls


async def upload_attachments(urls: List[str], uploader: Optional[Uploader]) -> List[str]:
    """Upload images one at a time, keeping at most MAX_FILE_ATTACHMENTS file ids."""
    file_ids: List[str] = []
    if uploader is None:
        return file_ids
    for url in urls:
        if len(file_ids) >= MAX_FILE_ATTACHMENTS:
            debug_print(f"⚠️  Dropping {len(urls) - len(file_ids)} extra image attachment(s)")
            break
        file_id = await uploader(url)
        if file_id:
            file_ids.append(file_id)
    return file_ids


def build_transcript(messages: list, *, has_attachments: bool = False) -> str:
    """
    Render messages as ``USER: ...`` / ``ASSISTANT: ...`` lines.

    A message with the same role as the previous one is folded into that line:
    the previously emitted line is cut off and rewritten with the merged text.
    """
    transcript = ""
    last_role = None
    last_content = ""
    last_line_start = 0

    for index, message in enumerate(messages):
        if not isinstance(message, dict):
            continue
        role = "assistant" if message.get("role") == "assistant" else "user"
        is_last = index == len(messages) - 1
        text = content_to_text(message.get("content"))

        if not text and not (is_last and has_attachments):
            continue

        label = f"{role.upper()}: "
        if role == last_role and text:
            last_content = f"{last_content}\n{text}"
            transcript = transcript[:last_line_start] + f"{label}{last_content}\n"
        else:
            last_line_start = len(transcript)
            transcript += f"{label}{text or IMAGE_PLACEHOLDER}\n"
            last_content = text
            last_role = role

    return transcript.strip()


async def build_chat_payload(body: dict, *, config: dict, uploader: Optional[Uploader] = None) -> dict:
    """
    Translate an OpenAI chat request body into the upstream conversation payload.

    ``uploader`` turns a data-URI image into an upstream file id (empty string on
    failure). Only images in the final message are uploaded.
    """
    model = str(body.get("model") or "")
    model_name = upstream_model_name(model)
    messages = list(body.get("messages") or [])
    stream = bool(body.get("stream", False))
    image_gen = is_image_gen_model(model)

    if image_gen:
        if stream and not (config.get("picgo_key") or config.get("tumy_key")):
            raise ConfigurationError(
                "Streaming image generation requires a PICGO or TUMY image host key"
            )
        if not messages or not isinstance(messages[-1], dict) or messages[-1].get("role") != "user":
            raise InvalidRequestError("The last message for an image generation model must be a user message")
        messages = [messages[-1]]

    file_attachments: List[str] = []
    if messages and isinstance(messages[-1], dict):
        file_attachments = await upload_attachments(inline_image_urls(messages[-1].get("content")), uploader)

    transcript = build_transcript(messages, has_attachments=bool(file_attachments))
    search = model in SEARCH_MODELS

    return {
        "temporary": bool(config.get("is_temp_conversation", False)),
        "modelName": model_name,
        "message": transcript,
        "fileAttachments": file_attachments[:MAX_FILE_ATTACHMENTS],
        "imageAttachments": [],
        "disableSearch": False,
        "enableImageGeneration": True,
        "returnImageBytes": False,
        "returnRawGrokInXaiRequest": False,
        "enableImageStreaming": False,
        "imageGenerationCount": 1,
        "forceConcise": False,
        "toolOverrides": {
            "imageGen": image_gen,
            "webSearch": search,
            "xSearch": search,
            "xMediaSearch": search,
            "trendsSearch": search,
            "xPostAnalyze": search,
        },
        "enableSideBySide": True,
        "isPreset": False,
        "sendFinalMetadata": True,
        "customInstructions": "",
        "deepsearchPreset": "default" if model == DEEPSEARCH_MODEL else "",
        "isReasoning": model == REASONING_MODEL,
    }
