# pkauth/crypto/pki.py
import ssl
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes


def load_cert(path: str) -> x509.Certificate:
    with open(path, "rb") as f:
        return x509.load_pem_x509_certificate(f.read())


def get_cert_fingerprint(cert: x509.Certificate) -> str:
    """Return SHA-256 fingerprint as hex string."""
    return cert.fingerprint(hashes.SHA256()).hex()


def peer_fingerprint(tls_sock: ssl.SSLSocket) -> Optional[str]:
    der = tls_sock.getpeercert(binary_form=True)
    if der is None:
        return None
    return get_cert_fingerprint(x509.load_der_x509_certificate(der))


def build_server_context(cert_path: str, key_path: str, password: Optional[str] = None) -> ssl.SSLContext:
    """
    TLS server context presenting cert_path/key_path.
    Raises OSError / ssl.SSLError if the files are missing or do not match.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.load_cert_chain(certfile=cert_path, keyfile=key_path, password=password)
    return context


def build_client_context(ca_path: str) -> ssl.SSLContext:
    """
    TLS client context that trusts only the CA in ca_path and checks the
    server hostname.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.load_verify_locations(cafile=ca_path)
    return context
