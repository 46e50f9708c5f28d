# pkauth/common/errors.py


class HandshakeError(Exception):
    """Base class for every error that aborts a single session."""


class TransportError(HandshakeError):
    """Read or write on the underlying stream failed."""


class ConnectionReset(TransportError):
    """Peer closed the stream while a frame was only partially received."""


class FramingError(HandshakeError):
    """Received bytes are not a valid encoding of any known message."""


class ProtocolViolation(HandshakeError):
    """A well-formed message arrived at the wrong stage."""


class CredentialError(HandshakeError):
    """Public key or signature bytes could not be decoded."""


class AuthenticationError(HandshakeError):
    """Signature, credential id or username did not check out."""


class CredentialMismatch(AuthenticationError):
    pass


class UnknownUserError(AuthenticationError):
    pass


class GracefulClose(Exception):
    """
    Peer closed the stream with nothing pending while a message was still
    expected. Not a failure: workers treat it as a normal end of session.
    """
