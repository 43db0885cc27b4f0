"""Tests for web3_infra.address_deriver — golden vectors, determinism, validation."""

from __future__ import annotations

import pytest
from eth_keys import keys
from eth_keys.constants import SECPK1_N
from hypothesis import given, settings as hsettings, strategies as st

from core.errors import DerivationError, ValidationError
from web3_infra.address_deriver import (
    EPSILON_DERIVATION_PREFIX,
    SOLANA_CHAIN_ID,
    derive_epsilon,
    derive_evm_address,
    derive_evm_address_bytes,
    derive_public_key,
    parse_base_public_key,
)

BASE_PUBLIC_KEY = (
    "0x04bb50e2d89a4ed70663d080659fe0ad4b9bc3e06c17a227433966cb59ceee02"
    "0decddbf6e00192011648d13b1c00af770c0c1bb609d4d3a5c98a43772e0e18ef4"
)
PROGRAM = "3si68i2yXFAGy5k8BpqGpPJR5wE27id1Jenx3uN8GCws"
USER = "Dewq9xyD1MZi1rE588XZFvK7uUqkcHLgCnDsn9Ns4H9M"


def _base_for(private_key: int) -> bytes:
    return b"\x04" + keys.PrivateKey(private_key.to_bytes(32, "big")).public_key.to_bytes()


# ──────────────────────────────────────────────
# Golden vectors
# ──────────────────────────────────────────────


class TestGoldenVectors:
    """Values computed independently of this code base."""

    def test_derivation_constants(self):
        assert EPSILON_DERIVATION_PREFIX == "sig.network v1.0.0 epsilon derivation"
        assert SOLANA_CHAIN_ID == "0x800001f5"

    def test_epsilon_root_path(self):
        eps = derive_epsilon(PROGRAM, "root")
        assert eps == int(
            "b797a3411665a35b6fa35e42e2d73330889121f9319045a5397415b6e322fcc5", 16
        )

    def test_address_root_path(self):
        assert derive_evm_address("root", PROGRAM, BASE_PUBLIC_KEY) == (
            "0xAf24417efCb5af1CbB56f7739f48bD6A8993722f"
        )

    def test_address_user_path(self):
        assert derive_evm_address(USER, USER, BASE_PUBLIC_KEY) == (
            "0xB657F65052F456a6C085165399F7818B8fC16A1E"
        )

    def test_address_bytes_match_checksum(self):
        raw = derive_evm_address_bytes("root", PROGRAM, BASE_PUBLIC_KEY)
        assert len(raw) == 20
        assert "0x" + raw.hex() == "0xaf24417efcb5af1cbb56f7739f48bd6a8993722f"


# ──────────────────────────────────────────────
# Algebraic consistency
# ──────────────────────────────────────────────


class TestConsistency:
    """derive(base = k·G) must equal the address of private key k + epsilon."""

    @hsettings(max_examples=25, deadline=None)
    @given(
        k=st.integers(min_value=1, max_value=SECPK1_N - 1),
        requester=st.text(min_size=1, max_size=44),
        path=st.text(max_size=32),
    )
    def test_matches_tweaked_private_key(self, k, requester, path):
        tweaked = (k + derive_epsilon(requester, path)) % SECPK1_N
        if tweaked == 0:
            return
        expected = keys.PrivateKey(tweaked.to_bytes(32, "big")).public_key.to_checksum_address()
        assert derive_evm_address(path, requester, _base_for(k)) == expected

    def test_deterministic(self):
        first = derive_public_key("root", PROGRAM, BASE_PUBLIC_KEY)
        second = derive_public_key("root", PROGRAM, bytes.fromhex(BASE_PUBLIC_KEY[2:]))
        assert first == second
        assert len(first) == 65 and first[0] == 4

    def test_path_changes_address(self):
        assert derive_evm_address("root", PROGRAM, BASE_PUBLIC_KEY) != derive_evm_address(
            "root2", PROGRAM, BASE_PUBLIC_KEY
        )


# ──────────────────────────────────────────────
# Malformed base keys
# ──────────────────────────────────────────────


class TestBaseKeyValidation:
    def test_wrong_length(self):
        with pytest.raises(DerivationError, match="65 bytes"):
            parse_base_public_key(BASE_PUBLIC_KEY[:-2])

    def test_compressed_prefix_rejected(self):
        bad = "0x02" + BASE_PUBLIC_KEY[4:]
        with pytest.raises(DerivationError, match="uncompressed"):
            derive_evm_address("root", PROGRAM, bad)

    def test_point_off_curve(self):
        bad = BASE_PUBLIC_KEY[:-1] + ("5" if BASE_PUBLIC_KEY[-1] != "5" else "6")
        with pytest.raises(DerivationError, match="not a point"):
            parse_base_public_key(bad)

    def test_not_hex(self):
        with pytest.raises(DerivationError):
            parse_base_public_key("not-a-key")

    def test_derivation_error_is_validation_error(self):
        assert issubclass(DerivationError, ValidationError)
