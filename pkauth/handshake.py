# pkauth/handshake.py
"""
Registration + challenge/response handshake, one session object per
connection and role.

Client                                  Server
  NewUserBegin{username}        ->
                                <-      CertRequest{server_name, C1}
  CertResponse{id, sig(C1), pk} ->      verify, bind id -> pk
  AuthBegin{username}           ->
                                <-      ChallengeRequest{id, C2}
  ChallengeResponse{id, sig(C2)}->      verify with bound pk
                                <-      TextMessage (greeting)
  TextMessage                   ->

Stages only move forward. Any message other than the one expected next is a
ProtocolViolation; nothing is buffered, skipped or retried.
"""
import enum
import logging
from typing import Optional, Type, TypeVar

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from pkauth.common.errors import (
    AuthenticationError,
    CredentialError,
    CredentialMismatch,
    GracefulClose,
    ProtocolViolation,
    TransportError,
    UnknownUserError,
)
from pkauth.common.protocol import (
    AuthBegin,
    CertRequest,
    CertResponse,
    ChallengeRequest,
    ChallengeResponse,
    NewUserBegin,
    Message,
    NoMessage,
    TextMessage,
)
from pkauth.common.utils import short_digest
from pkauth.crypto import sign
from pkauth.net.connection import Connection
from pkauth.storage.credentials import CredentialStore

log = logging.getLogger(__name__)

# The only thing a rejected client ever learns.
GENERIC_FAILURE = "authentication failed"
SERVER_GREETING = "Hello from server"

M = TypeVar("M")


class ClientStage(enum.Enum):
    IDLE = "idle"
    REGISTRATION_REQUESTED = "registration_requested"
    KEY_REGISTERED = "key_registered"
    AUTH_REQUESTED = "auth_requested"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class ServerStage(enum.Enum):
    IDLE = "idle"
    CERT_REQUESTED = "cert_requested"
    REGISTERED = "registered"
    CHALLENGE_SENT = "challenge_sent"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class _Session:
    role = ""

    def __init__(self, conn: Connection, initial_stage):
        self.conn = conn
        self.stage = initial_stage
        self.username: Optional[str] = None
        self.credential_id: Optional[str] = None

    def _require(self, stage) -> None:
        if self.stage is not stage:
            raise ProtocolViolation(
                f"{self.role}: step needs stage {stage.value}, session is at {self.stage.value}"
            )

    def _advance(self, stage) -> None:
        log.debug("%s: %s -> %s", self.role, self.stage.value, stage.value)
        self.stage = stage

    def _receive(self) -> Message:
        return self.conn.receive()

    def _expect(self, expected: Type[M]) -> M:
        message = self._receive()
        # An encoded NoMessage frame is not an end of stream.
        if isinstance(message, NoMessage) and self.conn.at_eof:
            raise GracefulClose(
                f"{self.role}: peer closed while waiting for {expected.__name__}"
            )
        if not isinstance(message, expected):
            raise ProtocolViolation(
                f"{self.role}: expected {expected.__name__} at stage {self.stage.value}, "
                f"got {type(message).__name__}"
            )
        return message


class ClientSession(_Session):
    role = "client"

    def __init__(
        self,
        conn: Connection,
        username: str,
        closing_text: Optional[str] = None,
        credential_id: Optional[str] = None,
    ):
        if not username:
            raise ValueError("Username must not be empty")
        super().__init__(conn, ClientStage.IDLE)
        self.username = username
        self.closing_text = closing_text or f"Hello from [{username}]"
        self.server_name: Optional[str] = None
        self.private_key: Optional[Ed25519PrivateKey] = None
        self._chosen_id = credential_id

    def begin_registration(self) -> None:
        self._require(ClientStage.IDLE)
        self.conn.send(NewUserBegin(username=self.username))
        self._advance(ClientStage.REGISTRATION_REQUESTED)

    def complete_registration(self) -> None:
        self._require(ClientStage.REGISTRATION_REQUESTED)
        request = self._expect(CertRequest)
        if len(request.challenge) != sign.CHALLENGE_LENGTH:
            raise ProtocolViolation(
                f"Challenge must be {sign.CHALLENGE_LENGTH} bytes, got {len(request.challenge)}"
            )
        self.server_name = request.server_name

        private_key, public_key = sign.generate_keypair()
        credential_id = self._chosen_id or sign.new_credential_id()
        self.conn.send(CertResponse(
            credential_id=credential_id,
            signature=sign.sign_challenge(private_key, request.challenge),
            public_key=sign.encode_public_key(public_key),
        ))
        self.private_key = private_key
        self.credential_id = credential_id
        log.info("Registered key %s with %s", credential_id, request.server_name)
        self._advance(ClientStage.KEY_REGISTERED)

    def begin_auth(self) -> None:
        self._require(ClientStage.KEY_REGISTERED)
        self.conn.send(AuthBegin(username=self.username))
        self._advance(ClientStage.AUTH_REQUESTED)

    def _receive(self) -> Message:
        # The server answers any rejected step with the same generic text.
        message = self.conn.receive()
        if isinstance(message, TextMessage) and message.body == GENERIC_FAILURE:
            raise AuthenticationError(f"Server rejected the session at stage {self.stage.value}")
        return message

    def complete_auth(self) -> None:
        self._require(ClientStage.AUTH_REQUESTED)
        message = self._expect(ChallengeRequest)
        if message.credential_id != self.credential_id:
            raise CredentialMismatch(
                f"Server requested key {message.credential_id!r}, registered {self.credential_id!r}"
            )
        if len(message.challenge) != sign.CHALLENGE_LENGTH:
            raise ProtocolViolation(
                f"Challenge must be {sign.CHALLENGE_LENGTH} bytes, got {len(message.challenge)}"
            )

        self.conn.send(ChallengeResponse(
            credential_id=self.credential_id,
            signature=sign.sign_challenge(self.private_key, message.challenge),
        ))
        self._advance(ClientStage.AUTHENTICATED)

    def exchange_greeting(self) -> str:
        """Receive the server's greeting, answer with our own; returns the greeting."""
        self._require(ClientStage.AUTHENTICATED)
        greeting = self._expect(TextMessage)
        self.conn.send(TextMessage(body=self.closing_text))
        self._advance(ClientStage.CLOSED)
        return greeting.body

    def run(self) -> str:
        self.begin_registration()
        self.complete_registration()
        self.begin_auth()
        self.complete_auth()
        return self.exchange_greeting()


class ServerSession(_Session):
    role = "server"

    def __init__(self, conn: Connection, server_name: str = "localhost", greeting: str = SERVER_GREETING):
        super().__init__(conn, ServerStage.IDLE)
        self.server_name = server_name
        self.greeting = greeting
        self.credentials = CredentialStore()
        self.pending_challenge: Optional[bytes] = None

    def _issue_challenge(self) -> bytes:
        challenge = sign.new_challenge()
        self.pending_challenge = challenge
        return challenge

    def _take_challenge(self) -> bytes:
        # Single use: whatever the outcome, this challenge is spent.
        challenge, self.pending_challenge = self.pending_challenge, None
        return challenge

    def start_registration(self) -> None:
        self._require(ServerStage.IDLE)
        begin = self._expect(NewUserBegin)
        if not begin.username:
            raise ProtocolViolation("Username must not be empty")
        self.username = begin.username

        challenge = self._issue_challenge()
        self.conn.send(CertRequest(server_name=self.server_name, challenge=challenge))
        log.debug("Sent registration challenge %s to %s", short_digest(challenge), self.username)
        self._advance(ServerStage.CERT_REQUESTED)

    def finish_registration(self) -> None:
        self._require(ServerStage.CERT_REQUESTED)
        response = self._expect(CertResponse)
        challenge = self._take_challenge()

        public_key = sign.decode_public_key(response.public_key)
        signature = sign.decode_signature(response.signature)
        if not sign.verify_signature(public_key, challenge, signature):
            raise AuthenticationError(
                f"Registration signature for {self.username} does not verify"
            )

        self.credentials.bind(response.credential_id, self.username, public_key)
        self.credential_id = response.credential_id
        log.info(
            "Registered new key %s for %s (%s)",
            response.credential_id, self.username, short_digest(response.public_key),
        )
        self._advance(ServerStage.REGISTERED)

    def start_auth(self) -> None:
        self._require(ServerStage.REGISTERED)
        begin = self._expect(AuthBegin)
        if begin.username != self.username:
            raise UnknownUserError(f"Unknown user {begin.username!r}")

        challenge = self._issue_challenge()
        self.conn.send(ChallengeRequest(credential_id=self.credential_id, challenge=challenge))
        log.debug("Sent auth challenge %s to %s", short_digest(challenge), self.username)
        self._advance(ServerStage.CHALLENGE_SENT)

    def finish_auth(self) -> None:
        self._require(ServerStage.CHALLENGE_SENT)
        response = self._expect(ChallengeResponse)
        challenge = self._take_challenge()

        if response.credential_id != self.credential_id:
            raise AuthenticationError(
                f"Incorrect credential id {response.credential_id!r} returned"
            )
        public_key = self.credentials.lookup(response.credential_id, self.username)
        if public_key is None:
            raise AuthenticationError(f"No key bound to {response.credential_id!r}")

        signature = sign.decode_signature(response.signature)
        if not sign.verify_signature(public_key, challenge, signature):
            raise AuthenticationError(f"Auth signature for {self.username} does not verify")

        log.info("Authenticated %s with key %s", self.username, self.credential_id)
        self._advance(ServerStage.AUTHENTICATED)

    def exchange_greeting(self) -> str:
        """Send the greeting, then return the client's closing text."""
        self._require(ServerStage.AUTHENTICATED)
        self.conn.send(TextMessage(body=self.greeting))
        closing = self._expect(TextMessage)
        self._advance(ServerStage.CLOSED)
        return closing.body

    def _reject(self) -> None:
        try:
            self.conn.send(TextMessage(body=GENERIC_FAILURE))
        except TransportError as exc:
            log.debug("Could not deliver failure notice: %s", exc)

    def run(self) -> str:
        try:
            self.start_registration()
            self.finish_registration()
            self.start_auth()
            self.finish_auth()
        except (AuthenticationError, CredentialError):
            self._reject()
            raise
        return self.exchange_greeting()
