"""
Unit Tests for login response builders and the protocol handler registry
"""

import hashlib

import pytest

from monetdb_mapi.errors import ProtocolError
from monetdb_mapi.protocols import (
    ProtocolHandlerRegistry,
    build_v8_response,
    build_v9_response,
    default_registry,
    select_hash_algorithm,
)


def challenge_tokens(challenge: str):
    return challenge.split(":")


class TestProtocolHandlerRegistry:

    def test_default_registry_versions(self):
        registry = default_registry()
        assert sorted(registry) == [8, 9]
        assert registry[8] is build_v8_response
        assert registry[9] is build_v9_response

    def test_lookup_is_exact(self):
        registry = default_registry()
        assert registry.lookup(10) is None
        assert registry.lookup(7) is None

    def test_registry_is_read_only(self):
        registry = ProtocolHandlerRegistry({8: build_v8_response})
        with pytest.raises(TypeError):
            registry[9] = build_v9_response

    def test_registry_copies_input(self):
        """Mutating the source dict does not leak into the registry"""
        handlers = {8: build_v8_response}
        registry = ProtocolHandlerRegistry(handlers)
        handlers[9] = build_v9_response
        assert 9 not in registry
        assert len(registry) == 1


class TestSelectHashAlgorithm:

    def test_strongest_advertised_wins(self):
        assert select_hash_algorithm("MD5,SHA256,SHA1") == "SHA256"
        assert select_hash_algorithm("SHA1,SHA512,MD5") == "SHA512"

    def test_override(self):
        assert select_hash_algorithm("SHA512,MD5", "md5") == "MD5"

    def test_override_not_advertised(self):
        with pytest.raises(ProtocolError, match="not supported by server"):
            select_hash_algorithm("SHA512", "MD5")

    def test_nothing_usable(self):
        with pytest.raises(ProtocolError, match="Unsupported hash algorithms"):
            select_hash_algorithm("FOO,BAR")


class TestBuildResponses:

    def test_v8_response(self):
        tokens = challenge_tokens("salty:merovingian:8:MD5,SHA1:BIG")
        response = build_v8_response("monetdb", "monetdb", "sql", tokens, "demo")

        expected_hash = hashlib.sha1(b"monetdbsalty").hexdigest()
        assert response == f"BIG:monetdb:{{SHA1}}{expected_hash}:sql:demo:"

    def test_v8_response_with_override(self):
        tokens = challenge_tokens("salty:merovingian:8:MD5,SHA1:BIG")
        response = build_v8_response("monetdb", "monetdb", "sql", tokens, "demo", "MD5")

        expected_hash = hashlib.md5(b"monetdbsalty").hexdigest()
        assert response == f"BIG:monetdb:{{MD5}}{expected_hash}:sql:demo:"

    def test_v9_response_prehashes_password(self):
        tokens = challenge_tokens("salty:merovingian:9:SHA256,SHA1:LIT:SHA512:")
        response = build_v9_response("alice", "secret", "sql", tokens, "sales")

        prehashed = hashlib.sha512(b"secret").hexdigest()
        expected_hash = hashlib.sha256((prehashed + "salty").encode()).hexdigest()
        assert response == f"BIG:alice:{{SHA256}}{expected_hash}:sql:sales:"

    def test_v9_without_password_algorithm(self):
        tokens = challenge_tokens("salty:merovingian:9:SHA256:BIG")
        with pytest.raises(ProtocolError, match="password hash algorithm"):
            build_v9_response("alice", "secret", "sql", tokens, "sales")

    def test_response_is_single_line(self):
        tokens = challenge_tokens("salty:merovingian:9:SHA512:BIG:SHA512:")
        response = build_v9_response("alice", "secret", "sql", tokens, "sales")
        assert "\n" not in response
        assert response.endswith(":")
