# pkauth/common/protocol.py
from typing import Dict, Literal, Type, Union

from pydantic import BaseModel


# --- Registration ---

class NewUserBegin(BaseModel):
    type: Literal["new_user_begin"] = "new_user_begin"
    username: str


class CertRequest(BaseModel):
    type: Literal["cert_request"] = "cert_request"
    server_name: str
    challenge: bytes     # 128 random bytes, single use


class CertResponse(BaseModel):
    type: Literal["cert_response"] = "cert_response"
    credential_id: str
    signature: bytes     # raw Ed25519 signature over the challenge
    public_key: bytes    # raw Ed25519 public key


# --- Authentication ---

class AuthBegin(BaseModel):
    type: Literal["auth_begin"] = "auth_begin"
    username: str


class ChallengeRequest(BaseModel):
    type: Literal["challenge_request"] = "challenge_request"
    credential_id: str
    challenge: bytes


class ChallengeResponse(BaseModel):
    type: Literal["challenge_response"] = "challenge_response"
    credential_id: str
    signature: bytes


# --- Session ---

class TextMessage(BaseModel):
    type: Literal["text"] = "text"
    body: str


class NoMessage(BaseModel):
    """Peer closed the stream cleanly with nothing pending."""
    type: Literal["none"] = "none"


Message = Union[
    NewUserBegin,
    CertRequest,
    CertResponse,
    AuthBegin,
    ChallengeRequest,
    ChallengeResponse,
    TextMessage,
    NoMessage,
]

# Wire discriminators, in declaration order.
MESSAGE_TYPES = (
    NewUserBegin,
    CertRequest,
    CertResponse,
    AuthBegin,
    ChallengeRequest,
    ChallengeResponse,
    TextMessage,
    NoMessage,
)

TAG_BY_TYPE: Dict[Type[BaseModel], int] = {cls: tag for tag, cls in enumerate(MESSAGE_TYPES)}
