"""Shared fixtures for broker-auth tests."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Tuple

import pytest
import yaml
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from script.broker_auth import Application, Gear, Inventory


@pytest.fixture(scope="session")
def rsa_keypair() -> Tuple[bytes, bytes]:
    """PEM (private, public) pair shared by the whole session."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    priv = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    pub = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return priv, pub


def make_inventory(layout: Dict[str, List[Tuple[str, str]]]) -> Inventory:
    """Build an inventory from {app_name: [(gear_uuid, node), ...]}."""
    apps = []
    for name, gears in layout.items():
        app_uuid = f"app-{name}"
        apps.append(
            Application(
                uuid=app_uuid,
                name=name,
                created_at="2024-01-01T00:00:00+00:00",
                gears=[Gear(uuid=u, app_uuid=app_uuid, server_identity=n) for u, n in gears],
            )
        )
    return Inventory(apps)


@pytest.fixture()
def inventory() -> Inventory:
    return make_inventory(
        {
            "blog": [("g1", "node1"), ("g2", "node2")],
            "shop": [("g3", "node1")],
            "wiki": [("g4", "node3")],
        }
    )


@pytest.fixture()
def config_dir(tmp_path: Path, rsa_keypair: Tuple[bytes, bytes]) -> Path:
    """Config dir with keys, an inventory export and broker-auth.yml."""
    priv, pub = rsa_keypair
    (tmp_path / "server_priv.pem").write_bytes(priv)
    (tmp_path / "server_pub.pem").write_bytes(pub)

    inventory_data = {
        "applications": [
            {
                "uuid": "app-blog",
                "name": "blog",
                "created_at": "2024-01-01T00:00:00Z",
                "gears": [
                    {"uuid": "g1", "server_identity": "node1"},
                    {"uuid": "g2", "server_identity": "NODE2"},
                ],
            },
            {
                "uuid": "app-shop",
                "name": "shop",
                "gears": [{"uuid": "g3", "server_identity": "node1"}],
            },
            {
                "uuid": "app-wiki",
                "name": "wiki",
                "gears": [{"uuid": "g4", "server_identity": "node3"}],
            },
        ]
    }
    (tmp_path / "inventory.yml").write_text(yaml.safe_dump(inventory_data))

    cfg = {
        "inventory": {"path": "inventory.yml"},
        "fleet": {
            "gear_base_dir": "/var/lib/openshift",
            "timeout_seconds": 5,
            "max_parallel": 4,
            "ssh": {"default_user": "ops"},
        },
        "broker": {
            "auth_pub_key": "server_pub.pem",
            "auth_priv_key": "server_priv.pem",
            "auth_salt": "s3cr3t-salt",
        },
    }
    (tmp_path / "broker-auth.yml").write_text(yaml.safe_dump(cfg))
    return tmp_path
