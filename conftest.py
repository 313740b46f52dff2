"""
Shared fixtures.

RSA-4096 generation takes seconds, so identities are built once per session.
"""

import pytest

from e2ee.keys import IdentityKeys


@pytest.fixture(scope="session")
def alice_keys() -> IdentityKeys:
    return IdentityKeys.generate()


@pytest.fixture(scope="session")
def bob_keys() -> IdentityKeys:
    return IdentityKeys.generate()


@pytest.fixture(scope="session")
def eve_keys() -> IdentityKeys:
    """Third party; a smaller modulus is enough for a wrong-key check"""
    return IdentityKeys.generate(rsa_key_size=2048)
