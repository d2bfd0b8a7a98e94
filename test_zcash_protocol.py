# Copyright (c) 2026 Emiliano G Solazzi
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.
#
# Commercial licenses available. Contact: emiliano.arlington@gmail.com
import pytest
from zcash_protocol import *
import hashlib
import struct
from types import SimpleNamespace

from coincurve import PrivateKey


def _pubkey(n: int = 1) -> bytes:
    return PrivateKey(n.to_bytes(32, "big")).public_key.format(compressed=True)


def _orchard_ua(fill: int = 7, network: Network = Network.TESTNET) -> UnifiedAddress:
    return UnifiedAddress(network, ((ORCHARD_TYPECODE, bytes([fill]) * 43),))


class TestCompactSize:
    """CompactSize encoding boundaries and strict decoding."""

    @pytest.mark.parametrize("value,encoded", [
        (0, "00"),
        (0xfc, "fc"),
        (0xfd, "fdfd00"),
        (0xffff, "fdffff"),
        (0x10000, "fe00000100"),
        (0xffffffff, "feffffffff"),
        (0x100000000, "ff0000000001000000"),
    ])
    def test_encode_decode(self, value, encoded):
        assert compact_size(value).hex() == encoded
        assert read_compact_size(bytes.fromhex(encoded), 0) == (value, len(encoded) // 2)

    def test_decode_at_offset(self):
        data = b"\xaa\xbb" + compact_size(300) + b"\xcc"
        assert read_compact_size(data, 2) == (300, 5)

    def test_non_canonical_rejected(self):
        with pytest.raises(ValueError, match="non-canonical"):
            read_compact_size(b"\xfd\x10\x00", 0)

    @pytest.mark.parametrize("data", [b"", b"\xfd\x01", b"\xfe\x00\x00", b"\xff" + b"\x00" * 7])
    def test_truncated_rejected(self, data):
        with pytest.raises(ValueError, match="truncated"):
            read_compact_size(data, 0)

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            compact_size(-1)


class TestHashing:
    """BLAKE2b personalisation and HASH160."""

    def test_hash160_known_vector(self):
        # secp256k1 generator point, compressed
        assert hash160(_pubkey(1)).hex() == "751e76e8199196d454941c45d1b3a323f1433bd6"

    def test_blake2b_personalisation_separates_domains(self):
        a = blake2b_256(b"ZTxIdHeadersHash", b"data")
        b = blake2b_256(b"ZTxIdOutputsHash", b"data")
        assert len(a) == 32
        assert a != b
        assert a == hashlib.blake2b(b"data", digest_size=32, person=b"ZTxIdHeadersHash").digest()

    def test_value_commitment_binds_value_and_trapdoor(self):
        rcv = b"\x01" * 32
        cv = value_commitment(1000, rcv)
        assert cv == value_commitment(1000, rcv)
        assert cv != value_commitment(1001, rcv)
        assert cv != value_commitment(1000, b"\x02" * 32)

    def test_note_commitment_binds_recipient(self):
        rseed = b"\x05" * 32
        assert note_commitment(b"\x01" * 43, 5, rseed) != note_commitment(b"\x02" * 43, 5, rseed)


class TestNetworkUpgrades:
    """Consensus branch id selection per network and height."""

    @pytest.mark.parametrize("network,height,branch", [
        (Network.MAINNET, 1_687_104, NU5_BRANCH_ID),
        (Network.MAINNET, 2_726_399, NU5_BRANCH_ID),
        (Network.MAINNET, 2_726_400, NU6_BRANCH_ID),
        (Network.MAINNET, 3_146_400, NU6_1_BRANCH_ID),
        (Network.TESTNET, 1_842_420, NU5_BRANCH_ID),
        (Network.TESTNET, 2_976_000, NU6_BRANCH_ID),
        (Network.TESTNET, 3_536_500, NU6_1_BRANCH_ID),
    ])
    def test_branch_id_by_height(self, network, height, branch):
        assert consensus_branch_id(network, height) == branch

    def test_no_height_uses_latest_upgrade(self):
        assert consensus_branch_id(Network.MAINNET) == NU6_1_BRANCH_ID
        assert consensus_branch_id(Network.TESTNET) == NU6_1_BRANCH_ID

    def test_pre_nu5_height_rejected(self):
        with pytest.raises(ValueError, match="before NU5"):
            consensus_branch_id(Network.MAINNET, 1_687_103)


class TestZip317Fee:
    """Conventional fee from the logical action count."""

    @pytest.mark.parametrize("t_in,t_out,orchard,fee", [
        (1, 2, 0, 10_000),
        (1, 1, 1, 15_000),      # one output padded to two actions
        (0, 0, 0, 10_000),      # grace actions
        (5, 1, 0, 25_000),
        (1, 1, 3, 20_000),
        (2, 3, 2, 25_000),
    ])
    def test_fee_table(self, t_in, t_out, orchard, fee):
        assert zip317_fee(t_in, t_out, orchard) == fee

    def test_fee_is_multiple_of_marginal_fee(self):
        for n in range(10):
            assert zip317_fee(n, n + 1, n % 3) % MARGINAL_FEE == 0


class TestMemoEncoding:
    """ZIP-302 memo field encoding."""

    def test_no_memo(self):
        memo = encode_memo(None)
        assert len(memo) == MEMO_SIZE
        assert memo[0] == 0xF6
        assert memo[1:] == b"\x00" * (MEMO_SIZE - 1)

    def test_empty_memo_same_as_none(self):
        assert encode_memo(b"") == encode_memo(None)

    def test_text_memo_zero_padded(self):
        memo = encode_memo(b"hello")
        assert memo[:5] == b"hello"
        assert memo[5:] == b"\x00" * (MEMO_SIZE - 5)

    def test_full_length_memo(self):
        assert encode_memo(b"x" * MEMO_SIZE) == b"x" * MEMO_SIZE

    def test_oversized_memo_rejected(self):
        with pytest.raises(ValueError, match="maximum is 512"):
            encode_memo(b"x" * (MEMO_SIZE + 1))


class TestTransparentAddresses:
    """Base58Check t-addresses and their scripts."""

    @pytest.mark.parametrize("network,kind,prefix", [
        (Network.MAINNET, P2PKH, "t1"),
        (Network.MAINNET, P2SH, "t3"),
        (Network.TESTNET, P2PKH, "tm"),
        (Network.TESTNET, P2SH, "t2"),
    ])
    def test_round_trip_and_prefix(self, network, kind, prefix):
        addr = TransparentAddress(network, kind, hash160(_pubkey(3)))
        encoded = addr.encode()
        assert encoded.startswith(prefix)
        assert decode_transparent_address(encoded) == addr
        assert decode_address(encoded) == addr

    def test_p2pkh_script(self):
        h = hash160(_pubkey(1))
        addr = TransparentAddress(Network.TESTNET, P2PKH, h)
        assert addr.script_pubkey() == bytes.fromhex("76a914") + h + bytes.fromhex("88ac")

    def test_p2sh_script(self):
        h = b"\x11" * 20
        addr = TransparentAddress(Network.MAINNET, P2SH, h)
        assert addr.script_pubkey() == bytes.fromhex("a914") + h + bytes.fromhex("87")

    def test_corrupted_checksum_rejected(self):
        encoded = TransparentAddress(Network.TESTNET, P2PKH, b"\x22" * 20).encode()
        last = "2" if encoded[-1] != "2" else "3"
        with pytest.raises(ValueError, match="Base58Check"):
            decode_transparent_address(encoded[:-1] + last)

    @pytest.mark.parametrize("bad", ["t1abc", "tm0OIl", "", "t"])
    def test_malformed_rejected(self, bad):
        with pytest.raises(ValueError):
            decode_address(bad)

    def test_bitcoin_address_rejected(self):
        # Valid Base58Check but a one-byte Bitcoin version prefix
        import base58
        btc = base58.b58encode_check(b"\x00" + b"\x33" * 20).decode()
        with pytest.raises(ValueError, match="not a Zcash"):
            decode_transparent_address(btc)


class TestF4Jumble:
    """F4Jumble permutation and its inverse."""

    @pytest.mark.parametrize("length", [48, 61, 64, 128, 200, 1000])
    def test_inverse(self, length):
        message = bytes(i % 251 for i in range(length))
        jumbled = f4jumble(message)
        assert len(jumbled) == length
        assert jumbled != message
        assert f4jumble_inv(jumbled) == message

    def test_single_bit_change_diffuses(self):
        message = bytes(100)
        flipped = b"\x01" + bytes(99)
        a, b = f4jumble(message), f4jumble(flipped)
        assert sum(x != y for x, y in zip(a, b)) > 50

    @pytest.mark.parametrize("length", [0, 47])
    def test_too_short_rejected(self, length):
        with pytest.raises(ValueError, match="out of range"):
            f4jumble(bytes(length))


class TestUnifiedAddresses:
    """ZIP-316 unified address encoding and decoding."""

    def test_round_trip_orchard_only(self):
        ua = _orchard_ua()
        encoded = ua.encode()
        assert encoded.startswith("utest1")
        assert len(encoded) > 90
        decoded = decode_unified_address(encoded)
        assert decoded == ua
        assert decoded.orchard == bytes([7]) * 43

    def test_mainnet_prefix(self):
        encoded = _orchard_ua(network=Network.MAINNET).encode()
        assert encoded.startswith("u1")
        assert decode_address(encoded).network == Network.MAINNET

    def test_receivers_sorted_on_encode(self):
        ua = UnifiedAddress(Network.TESTNET, (
            (ORCHARD_TYPECODE, b"\x03" * 43),
            (P2PKH_TYPECODE, b"\x01" * 20),
        ))
        decoded = decode_unified_address(ua.encode())
        assert [code for code, _ in decoded.receivers] == [P2PKH_TYPECODE, ORCHARD_TYPECODE]
        assert decoded.receiver(P2PKH_TYPECODE) == b"\x01" * 20

    def test_no_orchard_receiver(self):
        ua = UnifiedAddress(Network.TESTNET, ((SAPLING_TYPECODE, b"\x02" * 43),))
        assert decode_unified_address(ua.encode()).orchard is None

    @pytest.mark.parametrize("hrp,data,encoded", [
        ("a", [], "a1lqfn3a"),
        ("abcdef", list(range(31, -1, -1)), "abcdef1l7aum6echk45nj3s0wdvt2fg8x9yrzpqzd3ryx"),
    ])
    def test_bech32m_vectors(self, hrp, data, encoded):
        assert bech32m_encode(hrp, data) == encoded

    def test_bech32_checksum_rejected(self):
        from bech32 import bech32_encode
        with pytest.raises(ValueError, match="checksum"):
            decode_unified_address(bech32_encode("utest", [0] * 80))

    def test_uppercase_accepted(self):
        encoded = _orchard_ua().encode()
        assert decode_unified_address(encoded.upper()) == _orchard_ua()

    def test_mixed_case_rejected(self):
        encoded = _orchard_ua().encode()
        with pytest.raises(ValueError, match="mixed-case"):
            decode_unified_address("UTEST" + encoded[5:])

    def test_tampered_character_rejected(self):
        encoded = _orchard_ua().encode()
        pos = len(encoded) // 2
        swap = "q" if encoded[pos] != "q" else "p"
        with pytest.raises(ValueError, match="checksum"):
            decode_unified_address(encoded[:pos] + swap + encoded[pos + 1:])

    def test_wrong_receiver_length_rejected(self):
        ua = UnifiedAddress(Network.TESTNET, ((ORCHARD_TYPECODE, b"\x03" * 42),))
        with pytest.raises(ValueError, match="length 42"):
            decode_unified_address(ua.encode())

    def test_unknown_prefix_rejected(self):
        from bech32 import convertbits
        bogus = bech32m_encode("zz", convertbits(bytes(64), 8, 5, True))
        with pytest.raises(ValueError, match="unknown unified address prefix"):
            decode_unified_address(bogus)


class TestZIP244Sighash:
    """Signature digest over a minimal transaction-like object."""

    def _tx(self, **overrides):
        inp = SimpleNamespace(
            prevout_txid=b"\xaa" * 32, prevout_index=0, value=100_000,
            script_pub_key=b"\x76\xa9\x14" + b"\x01" * 20 + b"\x88\xac",
            sequence=0xFFFFFFFF,
        )
        out = SimpleNamespace(value=90_000, script_pub_key=b"\xa9\x14" + b"\x02" * 20 + b"\x87")
        fields = dict(
            tx_version=TX_VERSION_5, version_group_id=NU5_VERSION_GROUP_ID,
            consensus_branch_id=NU6_BRANCH_ID, lock_time=0, expiry_height=0,
            inputs=[inp], outputs=[out], actions=[],
        )
        fields.update(overrides)
        return SimpleNamespace(**fields)

    def test_deterministic(self):
        a = ZIP244Sighash(self._tx(), 0).compute()
        b = ZIP244Sighash(self._tx(), 0).compute()
        assert len(a) == 32
        assert a == b

    def test_branch_id_changes_digest(self):
        a = ZIP244Sighash(self._tx(), 0).compute()
        b = ZIP244Sighash(self._tx(consensus_branch_id=NU5_BRANCH_ID), 0).compute()
        assert a != b

    def test_expiry_changes_digest(self):
        a = ZIP244Sighash(self._tx(), 0).compute()
        b = ZIP244Sighash(self._tx(expiry_height=1), 0).compute()
        assert a != b

    def test_index_out_of_range(self):
        with pytest.raises(ValueError, match="out of range"):
            ZIP244Sighash(self._tx(), 1)

    def test_unsupported_hash_type(self):
        with pytest.raises(ValueError, match="unsupported hash type"):
            ZIP244Sighash(self._tx(), 0).compute(0x02)

    def test_unproved_action_rejected(self):
        action = SimpleNamespace(cmx=b"\x01" * 32, memo=bytes(512), cv=b"\x02" * 32,
                                 proof=None, value=1000)
        with pytest.raises(ValueError, match="every action proof"):
            ZIP244Sighash(self._tx(actions=[action]), 0).compute()

    def test_proof_changes_digest(self):
        def action(proof):
            return SimpleNamespace(cmx=b"\x01" * 32, memo=bytes(512), cv=b"\x02" * 32,
                                   proof=proof, value=1000)
        a = ZIP244Sighash(self._tx(actions=[action(b"\x01" * 64)]), 0).compute()
        b = ZIP244Sighash(self._tx(actions=[action(b"\x02" * 64)]), 0).compute()
        assert a != b


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
