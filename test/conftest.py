from __future__ import annotations

import pytest

from tlsprobe import certs
from tlsprobe.net import tls


@pytest.fixture(scope="session")
def ca():
    # RSA key generation is slow, share one CA across the whole run.
    return certs.create_ca(organization="tlsprobe", cn="tlsprobe test CA", key_size=2048)


@pytest.fixture(scope="session")
def identity(ca):
    ca_key, ca_cert = ca
    return certs.Identity.generate(ca_key, ca_cert, "example.com", ["example.com"])


@pytest.fixture(scope="session")
def other_identity(ca):
    ca_key, ca_cert = ca
    return certs.Identity.generate(
        ca_key, ca_cert, "other.example", ["other.example", "*.other.example"]
    )


@pytest.fixture()
def settings(identity):
    return tls.TlsSettings(identity=identity)
