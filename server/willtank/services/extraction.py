"""Contact and supporting-document extraction backed by a hosted chat model.

The model client is constructed explicitly and passed in, so callers (and
tests) decide which implementation is used. Model output is validated
against pydantic schemas; anything that does not fit raises
``MalformedResponse``.
"""

from __future__ import annotations

import logging
from typing import Literal, Optional, Protocol, Sequence

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

MIN_WILL_CONTENT_CHARS = 100
MAX_UPLOAD_SUGGESTIONS = 5

CONTACTS_SYSTEM_PROMPT = """You extract contact information from conversations about wills and estate planning.
Identify every person explicitly mentioned as a beneficiary, executor or witness, or who will receive assets.
Do not include the will creator.
Respond with JSON: {"contacts": [{"name": str, "relationship": str,
"role": "beneficiary"|"executor"|"witness"|"other", "email": str?, "phone": str?,
"address": str?, "notes": str?}]}. Use an empty array when nobody is found."""

CONTACTS_USER_PROMPT = (
    "Based on our conversation about my will, please extract all the contacts I've mentioned "
    "including any beneficiaries, executors, or witnesses. Format the response as JSON."
)

DOCUMENTS_SYSTEM_PROMPT = """You analyse will content for estate planning.
Identify the assets and arrangements it mentions and recommend supporting documents to keep with the will.
Respond with JSON: {"suggestions": [{"documentType": str, "description": str,
"importance": "high"|"medium"|"low", "reason": str}]}.
Only suggest documents relevant to assets or arrangements in the will."""

GENERIC_UPLOAD_PROMPT = (
    "Based on your will, you might want to upload supporting documents like property deeds, "
    "financial statements, or other important papers. These documents will help ensure your will "
    "can be properly executed."
)

_IMPORTANCE_ORDER = {"high": 0, "medium": 1, "low": 2}


class ExtractionError(Exception):
    pass


class MalformedResponse(ExtractionError):
    """The model answered, but not with the agreed JSON shape."""


class ExtractionUnavailable(ExtractionError):
    """The model could not be reached or returned an error status."""


class ExtractedContact(BaseModel):
    name: str = Field(min_length=1)
    relationship: str = ""
    role: Literal["beneficiary", "executor", "witness", "other"] = "beneficiary"
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None


class ContactExtraction(BaseModel):
    contacts: list[ExtractedContact] = Field(default_factory=list)


class DocumentSuggestion(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_type: str = Field(alias="documentType")
    description: str
    importance: Literal["high", "medium", "low"]
    reason: str = ""


class DocumentSuggestions(BaseModel):
    suggestions: list[DocumentSuggestion] = Field(default_factory=list)


class ChatCompletionClient(Protocol):
    def complete_json(self, messages: list[dict[str, str]], *, temperature: float) -> str: ...


class OpenAIChatClient:
    """Minimal chat-completions client that asks for a JSON object reply."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gpt-4o",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        http: httpx.Client | None = None,
    ) -> None:
        self.model = model
        self._http = http or httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        )

    def complete_json(self, messages: list[dict[str, str]], *, temperature: float) -> str:
        try:
            resp = self._http.post(
                "/chat/completions",
                json={
                    "model": self.model,
                    "messages": messages,
                    "response_format": {"type": "json_object"},
                    "temperature": temperature,
                },
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise ExtractionUnavailable(f"chat completion request failed: {e}") from e

        try:
            return resp.json()["choices"][0]["message"]["content"] or "{}"
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise MalformedResponse("chat completion envelope has no message content") from e

    def close(self) -> None:
        self._http.close()


def _decode(raw: str, schema: type[BaseModel]):
    try:
        return schema.model_validate_json(raw)
    except ValidationError as e:
        logger.warning("Model response did not match %s: %s", schema.__name__, e.error_count())
        raise MalformedResponse(f"model response does not match {schema.__name__}") from e


def extract_contacts(client: ChatCompletionClient, conversation: Sequence[dict[str, str]]) -> list[ExtractedContact]:
    messages = [{"role": "system", "content": CONTACTS_SYSTEM_PROMPT}]
    messages += [
        {"role": m["role"], "content": m["content"]}
        for m in conversation
        if m.get("role") in ("user", "assistant")
    ]
    messages.append({"role": "user", "content": CONTACTS_USER_PROMPT})

    raw = client.complete_json(messages, temperature=0.2)
    return _decode(raw, ContactExtraction).contacts


def extract_document_suggestions(client: ChatCompletionClient, will_content: str) -> list[DocumentSuggestion]:
    if not will_content or len(will_content) < MIN_WILL_CONTENT_CHARS:
        return []

    messages = [
        {"role": "system", "content": DOCUMENTS_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": f"Please analyze this will content and suggest supporting documents that should be included:\n\n{will_content}",
        },
    ]
    raw = client.complete_json(messages, temperature=0.3)
    return _decode(raw, DocumentSuggestions).suggestions


def document_upload_prompt(suggestions: Sequence[DocumentSuggestion]) -> str:
    if not suggestions:
        return GENERIC_UPLOAD_PROMPT

    top = sorted(suggestions, key=lambda s: _IMPORTANCE_ORDER[s.importance])[:MAX_UPLOAD_SUGGESTIONS]
    lines = ["Based on your will, I recommend uploading the following supporting documents:", ""]
    for i, s in enumerate(top, start=1):
        flag = " (Important)" if s.importance == "high" else ""
        lines.append(f"{i}. **{s.document_type}**: {s.description}{flag}")
    lines += ["", "Would you like to upload any of these documents now?"]
    return "\n".join(lines)


def contact_details_prompt(contact: ExtractedContact) -> str:
    missing = []
    if not contact.email:
        missing.append("email address")
    if not contact.phone:
        missing.append("phone number")
    if not contact.address:
        missing.append("mailing address")
    if not missing:
        return ""

    return (
        f"I noticed you mentioned {contact.name} as a {contact.role} in your will. "
        f"To properly document this, could you please provide their {', '.join(missing)}? "
        "This information will help ensure they can be properly notified when needed."
    )
