"""Client implementation: registers a fresh key over TLS, then authenticates with it."""

import argparse
import logging
import os
import socket
import ssl
import sys
from typing import Optional

from dotenv import load_dotenv

from pkauth.common.errors import GracefulClose, HandshakeError
from pkauth.common.utils import env_float, env_int
from pkauth.crypto import pki
from pkauth.handshake import ClientSession
from pkauth.net.connection import Connection
from pkauth.net.transport import SocketTransport

load_dotenv()

log = logging.getLogger(__name__)


# ============ Helpers ============

def load_client_crypto() -> ssl.SSLContext:
    ca_path = os.getenv("CA_CERT", "certs/root_ca.crt")
    log.info("Trusting CA %s", ca_path)
    return pki.build_client_context(ca_path)


def connect(
    host: str,
    port: int,
    context: ssl.SSLContext,
    server_name: str,
    timeout: Optional[float] = None,
) -> ssl.SSLSocket:
    """TCP connect + TLS handshake; the certificate must be valid for server_name."""
    sock = socket.create_connection((host, port), timeout=timeout)
    try:
        tls_sock = context.wrap_socket(sock, server_hostname=server_name)
    except (ssl.SSLError, OSError):
        sock.close()
        raise
    log.info("Server certificate fingerprint %s", pki.peer_fingerprint(tls_sock))
    return tls_sock


def authenticate(tls_sock: socket.socket, username: str) -> str:
    """Run the full client handshake; returns the server's greeting."""
    session = ClientSession(Connection(SocketTransport(tls_sock)), username)
    try:
        return session.run()
    except HandshakeError as e:
        log.error("Handshake failed at stage %s: %s: %s", session.stage.value, type(e).__name__, e)
        raise


# ============ Main ============

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Register a new key and authenticate with it")
    parser.add_argument("--username", default=os.getenv("CLIENT_USERNAME", "sergei"))
    parser.add_argument("--host", default=os.getenv("SERVER_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=env_int("SERVER_PORT", 8443))
    parser.add_argument("--server-name", default=os.getenv("SERVER_NAME", "localhost"),
                        help="Name the server certificate must be valid for")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    args = parse_args(argv)
    if not args.username:
        print("[!] Username must not be empty")
        return 2

    context = load_client_crypto()
    timeout = env_float("HANDSHAKE_TIMEOUT")

    print(f"[+] Connecting to server at {args.host}:{args.port} ...")
    try:
        with connect(args.host, args.port, context, args.server_name, timeout) as tls_sock:
            greeting = authenticate(tls_sock, args.username)
    except GracefulClose as e:
        print(f"[!] Server closed the connection: {e}")
        return 1
    except HandshakeError as e:
        print(f"[!] {type(e).__name__}: {e}")
        return 1
    except (ssl.SSLError, OSError) as e:
        print(f"[!] Connection error: {e}")
        return 1

    print(f"[+] User {args.username} registered and authenticated.")
    print(greeting)
    return 0


if __name__ == "__main__":
    sys.exit(main())
