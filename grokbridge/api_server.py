import time

from fastapi import APIRouter, Depends, Request
from starlette.responses import PlainTextResponse

from .chat_payload import MODELS

LIVENESS_TEXT = "api is running"


def build_router(core) -> APIRouter:  # noqa: ANN001
    router = APIRouter()

    # --- OpenAI Compatible API Endpoints ---

    @router.get("/v1/models")
    async def list_models():
        created = int(time.time())
        return {
            "object": "list",
            "data": [
                {"id": model, "object": "model", "created": created, "owned_by": "grok"}
                for model in MODELS
            ],
        }

    @router.post("/v1/chat/completions")
    async def chat_completions(request: Request, auth_token: str = Depends(core.verify_api_key)):
        return await core.api_chat_completions(request, auth_token)

    # Registered last so it only answers what nothing else matched.
    @router.api_route(
        "/{path:path}",
        methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"],
        response_class=PlainTextResponse,
    )
    async def liveness(path: str):  # noqa: ARG001
        return PlainTextResponse(LIVENESS_TEXT)

    return router
