# scripts/gen_ca.py
"""
Generate the root CA the client trusts.

Needs the pkauth package importable: either `pip install -e .` first, or run
from the repository root as `python -m scripts.gen_ca`.
"""
import argparse

from pkauth.crypto.certs import generate_root_ca


def main(argv=None):
    parser = argparse.ArgumentParser(description="Generate the root CA the client trusts")
    parser.add_argument("--name", default="pkauth Root CA", help="Common Name for Root CA")
    parser.add_argument("--out", default="certs", help="Output directory for CA files")
    args = parser.parse_args(argv)

    key_path, cert_path = generate_root_ca(args.name, args.out)
    print(f"[+] Root CA key:  {key_path}")
    print(f"[+] Root CA cert: {cert_path}")
    return key_path, cert_path


if __name__ == "__main__":
    main()
