from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from ..config import settings
from ..deps import require_user
from ..models import AppUser
from ..schemas import ContactExtractionRequest, DocumentExtractionRequest
from ..services.extraction import (
    ChatCompletionClient,
    ExtractionUnavailable,
    MalformedResponse,
    OpenAIChatClient,
    contact_details_prompt,
    document_upload_prompt,
    extract_contacts,
    extract_document_suggestions,
)

router = APIRouter(prefix="/api/extraction", tags=["extraction"])


def get_chat_client():
    """Per-request model client; override in tests via app.dependency_overrides."""
    if not settings.openai_api_key:
        raise HTTPException(503, "OPENAI_API_KEY not configured")
    client = OpenAIChatClient(
        settings.openai_api_key,
        model=settings.openai_model,
        base_url=settings.openai_base_url,
        timeout=settings.openai_timeout_seconds,
    )
    try:
        yield client
    finally:
        client.close()


@router.post("/contacts")
def contacts(
    payload: ContactExtractionRequest,
    user: AppUser = Depends(require_user),
    client: ChatCompletionClient = Depends(get_chat_client),
):
    try:
        found = extract_contacts(client, [t.model_dump() for t in payload.conversation])
    except MalformedResponse as e:
        raise HTTPException(502, str(e))
    except ExtractionUnavailable as e:
        raise HTTPException(503, str(e))

    return {
        "contacts": [
            {**c.model_dump(), "followUpPrompt": contact_details_prompt(c) or None}
            for c in found
        ]
    }


@router.post("/documents")
def documents(
    payload: DocumentExtractionRequest,
    user: AppUser = Depends(require_user),
    client: ChatCompletionClient = Depends(get_chat_client),
):
    try:
        suggestions = extract_document_suggestions(client, payload.will_content)
    except MalformedResponse as e:
        raise HTTPException(502, str(e))
    except ExtractionUnavailable as e:
        raise HTTPException(503, str(e))

    return {
        "suggestions": [s.model_dump(by_alias=True) for s in suggestions],
        "uploadPrompt": document_upload_prompt(suggestions),
    }
