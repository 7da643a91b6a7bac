#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

RSA_KEY_SIZE = 2048
PRIVATE_KEY_PERMISSIONS = 0o600
PUBLIC_KEY_PERMISSIONS = 0o644


def eprint(*args: Any) -> None:
    print(*args, file=sys.stderr)


def load_yaml(path: str) -> Dict[str, Any]:
    try:
        import yaml  # type: ignore
    except Exception as ex:
        raise RuntimeError("PyYAML required: python3 -m pip install pyyaml") from ex

    p = Path(path)
    if not p.exists():
        raise RuntimeError(f"Config not found: {p}")
    data = yaml.safe_load(p.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise RuntimeError("Config root must be a mapping")
    return data


def key_paths(cfg: Dict[str, Any], base_dir: Path) -> Tuple[Path, Path, Path]:
    broker = cfg.get("broker", {}) or {}
    out: List[Path] = []
    for key in ("auth_priv_key", "auth_pub_key", "auth_salt_file"):
        v = broker.get(key)
        if not v:
            raise RuntimeError(f"Missing required config key: broker.{key}")
        p = Path(str(v)).expanduser()
        out.append(p if p.is_absolute() else base_dir / p)
    return out[0], out[1], out[2]


def generate_keypair(passphrase: Optional[bytes] = None) -> Tuple[bytes, bytes]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
    encryption = (
        serialization.BestAvailableEncryption(passphrase)
        if passphrase
        else serialization.NoEncryption()
    )
    priv = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=encryption,
    )
    pub = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return priv, pub


def write_secret(path: Path, content: bytes, mode: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # O_CREAT applies mode only to new files; chmod covers --force overwrites
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as f:
        f.write(content)
    os.chmod(path, mode)


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(
        description="Generate the broker auth keypair and token salt."
    )
    ap.add_argument("--config", required=True)
    ap.add_argument(
        "--force", action="store_true", help="Overwrite existing key material"
    )
    ap.add_argument("--dry-run", action="store_true")
    args = ap.parse_args(argv)

    try:
        cfg = load_yaml(args.config)
        base_dir = Path(args.config).expanduser().resolve().parent
        priv_path, pub_path, salt_path = key_paths(cfg, base_dir)

        existing = [p for p in (priv_path, pub_path, salt_path) if p.exists()]
        if existing and not args.force:
            raise RuntimeError(
                "Refusing to overwrite existing key material (use --force): "
                + ", ".join(str(p) for p in existing)
            )

        if args.dry_run:
            print(f"DRY-RUN: would write private key {priv_path}")
            print(f"DRY-RUN: would write public key {pub_path}")
            print(f"DRY-RUN: would write salt {salt_path}")
            return 0

        # Rotating the keypair invalidates every token already installed in gears;
        # run broker_auth --rekey-all afterwards.
        passphrase = (cfg.get("broker", {}) or {}).get("auth_priv_key_pass")
        priv, pub = generate_keypair(passphrase.encode("utf-8") if passphrase else None)
        write_secret(priv_path, priv, PRIVATE_KEY_PERMISSIONS)
        write_secret(pub_path, pub, PUBLIC_KEY_PERMISSIONS)
        write_secret(
            salt_path,
            (secrets.token_urlsafe(48) + "\n").encode("ascii"),
            PRIVATE_KEY_PERMISSIONS,
        )

        print(f"Wrote broker auth keypair: {priv_path}, {pub_path}")
        print(f"Wrote broker auth salt: {salt_path}")
        if existing:
            print("Existing gear tokens are now invalid; rekey all gears.")
        return 0

    except Exception as ex:
        eprint(f"ERROR: {ex}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
