from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import List, Optional


class CamelModel(BaseModel):
    # The web client speaks camelCase JSON.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Credentials(BaseModel):
    username: str
    password: str


class UserOut(CamelModel):
    id: int
    username: str
    two_factor_enabled: bool = False


class TokenPayload(BaseModel):
    token: str


class DisablePayload(BaseModel):
    password: str
    token: Optional[str] = None


class TwoFactorStatusOut(CamelModel):
    enabled: bool
    has_two_factor_secret: bool
    backup_codes: Optional[List[str]] = None


class TwoFactorSecretOut(CamelModel):
    secret: str
    qr_code: str
    otp_auth_url: str


class TwoFactorEnabledOut(CamelModel):
    success: bool = True
    backup_codes: List[str]


class TokenCheckOut(CamelModel):
    valid: bool
    used_backup_code: bool = False
    remaining_backup_codes: Optional[int] = None


class ChatTurn(BaseModel):
    role: str
    content: str


class ContactExtractionRequest(BaseModel):
    conversation: List[ChatTurn] = Field(default_factory=list)


class DocumentExtractionRequest(CamelModel):
    will_content: str = ""
