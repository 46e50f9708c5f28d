# scripts/gen_cert.py
"""
Issue a server certificate signed by the root CA from gen_ca.

Needs the pkauth package importable: either `pip install -e .` first, or run
from the repository root as `python -m scripts.gen_cert`.
"""
import argparse

from pkauth.crypto.certs import issue_server_cert


def main(argv=None):
    parser = argparse.ArgumentParser(description="Issue a server cert signed by the root CA")
    parser.add_argument("--name", action="append", dest="names",
                        help="DNS name or IP the cert is valid for (repeatable; first is the CN)")
    parser.add_argument("--out", default="certs/server", help="Output prefix (e.g., certs/server)")
    parser.add_argument("--ca-key", default="certs/root_ca.key")
    parser.add_argument("--ca-cert", default="certs/root_ca.crt")
    args = parser.parse_args(argv)

    names = args.names or ["localhost", "127.0.0.1"]
    key_path, cert_path = issue_server_cert(names, args.out, args.ca_key, args.ca_cert)
    print(f"[+] Server key:  {key_path}")
    print(f"[+] Server cert: {cert_path}")
    print(f"[+] Valid for:   {', '.join(names)}")
    return key_path, cert_path


if __name__ == "__main__":
    main()
