"""Server implementation: TLS listener, one worker thread per connection."""

import logging
import os
import socket
import ssl
import threading
from typing import Optional, Tuple

from dotenv import load_dotenv

from pkauth.common.errors import GracefulClose, HandshakeError
from pkauth.common.utils import env_float, env_int
from pkauth.crypto import pki
from pkauth.handshake import ServerSession
from pkauth.net.connection import Connection
from pkauth.net.transport import SocketTransport

load_dotenv()

log = logging.getLogger(__name__)


# ============ Helpers ============

def load_server_crypto() -> ssl.SSLContext:
    cert_path = os.getenv("SERVER_CERT", "certs/server.crt")
    key_path = os.getenv("SERVER_KEY", "certs/server.key")
    password = os.getenv("SERVER_KEY_PASSWORD") or None

    log.info("Loading server certificate %s", cert_path)
    log.info("Server certificate fingerprint %s", pki.get_cert_fingerprint(pki.load_cert(cert_path)))
    return pki.build_server_context(cert_path, key_path, password)


# ============ Per-connection worker ============

def serve_session(conn: Connection, addr, server_name: str) -> Optional[str]:
    """
    Run one server handshake and report how it ended.
    Returns the client's closing text, or None if the session did not finish.
    Never raises HandshakeError: failures stay inside this session.
    """
    session = ServerSession(conn, server_name=server_name)
    try:
        text = session.run()
    except GracefulClose as e:
        log.info("Client %s left at stage %s: %s", addr, session.stage.value, e)
        return None
    except HandshakeError as e:
        log.error("Handshake with %s failed at stage %s: %s: %s",
                  addr, session.stage.value, type(e).__name__, e)
        return None

    log.info("Client %s (%s) says: %s", addr, session.username, text)
    return text


def handle_client(
    sock: socket.socket,
    addr,
    context: ssl.SSLContext,
    server_name: str,
    timeout: Optional[float] = None,
) -> Optional[str]:
    """
    TLS handshake, then the registration/auth session; always closes `sock`.
    Returns the client's closing text when the session completed.
    """
    with sock:
        sock.settimeout(timeout)
        try:
            tls_sock = context.wrap_socket(sock, server_side=True)
        except (ssl.SSLError, OSError) as e:
            log.error("TLS handshake with %s failed: %s", addr, e)
            return None

        with tls_sock:
            text = serve_session(Connection(SocketTransport(tls_sock)), addr, server_name)
    log.debug("Connection %s closed", addr)
    return text


# ============ Main Server Loop ============

def serve_forever(
    listener: socket.socket,
    context: ssl.SSLContext,
    server_name: str,
    timeout: Optional[float] = None,
) -> None:
    while True:
        try:
            conn, addr = listener.accept()
        except OSError as e:
            # A closed listener cannot recover; anything else only costs this peer.
            if listener.fileno() == -1:
                raise
            log.error("Accept failed: %s", e)
            continue
        log.info("New connection from %s", addr)
        threading.Thread(
            target=handle_client,
            args=(conn, addr, context, server_name, timeout),
            daemon=True,
        ).start()


def bind_listener(host: str, port: int) -> socket.socket:
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    listener.bind((host, port))
    listener.listen(5)
    return listener


def load_settings() -> Tuple[str, int, str, Optional[float]]:
    host = os.getenv("SERVER_HOST", "127.0.0.1")
    port = env_int("SERVER_PORT", 8443)
    server_name = os.getenv("SERVER_NAME", "localhost")
    timeout = env_float("HANDSHAKE_TIMEOUT")
    return host, port, server_name, timeout


def main():
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    host, port, server_name, timeout = load_settings()
    context = load_server_crypto()

    with bind_listener(host, port) as listener:
        print(f"[+] pkauth server listening on {host}:{port} as {server_name!r} ...")
        try:
            serve_forever(listener, context, server_name, timeout)
        except KeyboardInterrupt:
            print("\n[*] Shutting down server.")


if __name__ == "__main__":
    main()
