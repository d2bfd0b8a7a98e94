"""
Zcash v5 Transaction Primitives
References:
    ZIP-244  https://zips.z.cash/zip-0244  (txid / signature digest)
    ZIP-316  https://zips.z.cash/zip-0316  (unified addresses, F4Jumble)
    ZIP-317  https://zips.z.cash/zip-0317  (proportional transfer fee)
    ZIP-302  https://zips.z.cash/zip-0302  (memo encoding)
"""

import hashlib
import struct
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple, Union

import base58
from bech32 import CHARSET, bech32_hrp_expand, bech32_polymod, convertbits
from Crypto.Hash import RIPEMD160

COIN = 100_000_000
MAX_MONEY = 21_000_000 * COIN

TX_VERSION_5 = 5
TX_OVERWINTERED_FLAG = 1 << 31
NU5_VERSION_GROUP_ID = 0x26A7270A

NU5_BRANCH_ID = 0xC2D6D0B4
NU6_BRANCH_ID = 0xC8E71055
NU6_1_BRANCH_ID = 0x4DEC4DF0

# ZIP-317
MARGINAL_FEE = 5_000
GRACE_ACTIONS = 2
ORCHARD_MIN_ACTIONS = 2

MEMO_SIZE = 512
ORCHARD_RECEIVER_SIZE = 43
SIGHASH_ALL = 0x01

# Orchard bundle flags: spends disabled, outputs enabled
ORCHARD_FLAGS_OUTPUTS_ONLY = 0x02


def compact_size(n: int) -> bytes:
    """Bitcoin CompactSize encoding."""
    if n < 0:
        raise ValueError("CompactSize cannot encode a negative value")
    if n < 0xfd:
        return struct.pack("<B", n)
    elif n <= 0xffff:
        return b'\xfd' + struct.pack("<H", n)
    elif n <= 0xffffffff:
        return b'\xfe' + struct.pack("<I", n)
    else:
        return b'\xff' + struct.pack("<Q", n)


def read_compact_size(data: bytes, pos: int) -> Tuple[int, int]:
    """
    Decode a CompactSize at ``pos``.

    Returns ``(value, new_pos)``.  Truncated or non-canonical encodings
    raise ValueError.
    """
    if pos >= len(data):
        raise ValueError("truncated CompactSize")
    first = data[pos]
    if first < 0xfd:
        return first, pos + 1
    width, fmt, minimum = {
        0xfd: (2, "<H", 0xfd),
        0xfe: (4, "<I", 0x10000),
        0xff: (8, "<Q", 0x100000000),
    }[first]
    if pos + 1 + width > len(data):
        raise ValueError("truncated CompactSize")
    value = struct.unpack_from(fmt, data, pos + 1)[0]
    if value < minimum:
        raise ValueError("non-canonical CompactSize")
    return value, pos + 1 + width


def blake2b_256(personalization: bytes, msg: bytes) -> bytes:
    """BLAKE2b-256 with a (up to) 16-byte personalization string."""
    return hashlib.blake2b(msg, digest_size=32, person=personalization).digest()


def hash160(data: bytes) -> bytes:
    """RIPEMD-160(SHA-256(data))"""
    return RIPEMD160.new(hashlib.sha256(data).digest()).digest()


# ============================================================
# NETWORKS & UPGRADES
# ============================================================

class Network(Enum):
    MAINNET = "main"
    TESTNET = "test"


# (activation height, consensus branch id, name), oldest first
NETWORK_UPGRADES = {
    Network.MAINNET: (
        (1_687_104, NU5_BRANCH_ID, "NU5"),
        (2_726_400, NU6_BRANCH_ID, "NU6"),
        (3_146_400, NU6_1_BRANCH_ID, "NU6.1"),
    ),
    Network.TESTNET: (
        (1_842_420, NU5_BRANCH_ID, "NU5"),
        (2_976_000, NU6_BRANCH_ID, "NU6"),
        (3_536_500, NU6_1_BRANCH_ID, "NU6.1"),
    ),
}


def consensus_branch_id(network: Network, height: Optional[int] = None) -> int:
    """
    Branch id of the upgrade active at ``height``.

    With no height the most recent upgrade is assumed.  Heights before
    NU5 raise ValueError since v5 transactions are not valid there.
    """
    upgrades = NETWORK_UPGRADES[network]
    if height is None:
        return upgrades[-1][1]
    active = [branch for activation, branch, _ in upgrades if height >= activation]
    if not active:
        raise ValueError(
            f"height {height} is before NU5 activation on {network.value}net"
        )
    return active[-1]


def zip317_fee(n_transparent_in: int, n_transparent_out: int, n_orchard_out: int) -> int:
    """
    ZIP-317 conventional fee.

    An Orchard bundle carrying any output is padded to at least
    ORCHARD_MIN_ACTIONS actions.
    """
    orchard_actions = max(ORCHARD_MIN_ACTIONS, n_orchard_out) if n_orchard_out else 0
    logical_actions = max(n_transparent_in, n_transparent_out) + orchard_actions
    return MARGINAL_FEE * max(GRACE_ACTIONS, logical_actions)


def encode_memo(memo: Optional[bytes]) -> bytes:
    """ZIP-302 memo field: 0xF6 marks "no memo", text is zero-padded."""
    if not memo:
        return b"\xf6" + b"\x00" * (MEMO_SIZE - 1)
    if len(memo) > MEMO_SIZE:
        raise ValueError(f"memo is {len(memo)} bytes, maximum is {MEMO_SIZE}")
    return memo + b"\x00" * (MEMO_SIZE - len(memo))


# ============================================================
# TRANSPARENT ADDRESSES  (Base58Check)
# ============================================================

P2PKH = "p2pkh"
P2SH = "p2sh"

_TRANSPARENT_PREFIXES = {
    (Network.MAINNET, P2PKH): b"\x1c\xb8",   # t1
    (Network.MAINNET, P2SH): b"\x1c\xbd",    # t3
    (Network.TESTNET, P2PKH): b"\x1d\x25",   # tm
    (Network.TESTNET, P2SH): b"\x1c\xba",    # t2
}
_PREFIX_LOOKUP = {prefix: key for key, prefix in _TRANSPARENT_PREFIXES.items()}


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    return b"\x76\xa9\x14" + pubkey_hash + b"\x88\xac"


def p2sh_script(script_hash: bytes) -> bytes:
    return b"\xa9\x14" + script_hash + b"\x87"


@dataclass(frozen=True)
class TransparentAddress:
    network: Network
    kind: str           # P2PKH or P2SH
    hash: bytes         # 20-byte HASH160

    def script_pubkey(self) -> bytes:
        if self.kind == P2PKH:
            return p2pkh_script(self.hash)
        return p2sh_script(self.hash)

    def encode(self) -> str:
        prefix = _TRANSPARENT_PREFIXES[(self.network, self.kind)]
        return base58.b58encode_check(prefix + self.hash).decode()


def decode_transparent_address(address: str) -> TransparentAddress:
    try:
        raw = base58.b58decode_check(address)
    except ValueError as exc:
        raise ValueError(f"invalid Base58Check address: {exc}") from exc
    if len(raw) != 22 or raw[:2] not in _PREFIX_LOOKUP:
        raise ValueError("not a Zcash transparent address")
    network, kind = _PREFIX_LOOKUP[raw[:2]]
    return TransparentAddress(network, kind, raw[2:])


# ============================================================
# UNIFIED ADDRESSES  (ZIP-316: TLV receivers -> F4Jumble -> Bech32m)
# ============================================================

P2PKH_TYPECODE = 0x00
P2SH_TYPECODE = 0x01
SAPLING_TYPECODE = 0x02
ORCHARD_TYPECODE = 0x03
BECH32M_CONST = 0x2BC830A3

_RECEIVER_SIZES = {
    P2PKH_TYPECODE: 20,
    P2SH_TYPECODE: 20,
    SAPLING_TYPECODE: 43,
    ORCHARD_TYPECODE: ORCHARD_RECEIVER_SIZE,
}

UNIFIED_HRPS = {Network.MAINNET: "u", Network.TESTNET: "utest"}
_HRP_LOOKUP = {hrp: network for network, hrp in UNIFIED_HRPS.items()}

_F4_MIN_LEN = 48
_F4_MAX_LEN = 4_194_368


def _xor(a: bytes, b: bytes) -> bytes:
    return bytes(x ^ y for x, y in zip(a, b))


def _f4_h(i: int, u: bytes, length: int) -> bytes:
    person = b"UA_F4Jumble_H" + bytes([i, 0, 0])
    return hashlib.blake2b(u, digest_size=length, person=person).digest()


def _f4_g(i: int, u: bytes, length: int) -> bytes:
    blocks = (
        hashlib.blake2b(
            u, digest_size=64, person=b"UA_F4Jumble_G" + bytes([i]) + struct.pack("<H", j),
        ).digest()
        for j in range((length + 63) // 64)
    )
    return b"".join(blocks)[:length]


def _f4_split(n: int) -> Tuple[int, int]:
    if not _F4_MIN_LEN <= n <= _F4_MAX_LEN:
        raise ValueError(f"F4Jumble input length {n} out of range")
    left = min(64, n // 2)
    return left, n - left


def f4jumble(message: bytes) -> bytes:
    left, right = _f4_split(len(message))
    a, b = message[:left], message[left:]
    x = _xor(b, _f4_g(0, a, right))
    y = _xor(a, _f4_h(0, x, left))
    d = _xor(x, _f4_g(1, y, right))
    c = _xor(y, _f4_h(1, d, left))
    return c + d


def f4jumble_inv(message: bytes) -> bytes:
    left, right = _f4_split(len(message))
    c, d = message[:left], message[left:]
    y = _xor(c, _f4_h(1, d, left))
    x = _xor(d, _f4_g(1, y, right))
    a = _xor(y, _f4_h(0, x, left))
    b = _xor(x, _f4_g(0, a, right))
    return a + b


def _hrp_padding(hrp: str) -> bytes:
    return hrp.encode().ljust(16, b"\x00")


def bech32m_encode(hrp: str, data: List[int]) -> str:
    """BIP-350 Bech32m encoding of 5-bit ``data`` under ``hrp``."""
    polymod = bech32_polymod(bech32_hrp_expand(hrp) + data + [0] * 6) ^ BECH32M_CONST
    checksum = [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]
    return hrp + "1" + "".join(CHARSET[d] for d in data + checksum)


def _bech32m_decode(address: str) -> Tuple[str, List[int]]:
    """
    Bech32m decoding without the BIP-173 90 character limit
    (unified addresses routinely exceed it).
    """
    if address.lower() != address and address.upper() != address:
        raise ValueError("mixed-case Bech32m string")
    address = address.lower()
    pos = address.rfind("1")
    if pos < 1 or pos + 7 > len(address):
        raise ValueError("missing Bech32m separator or checksum")
    hrp = address[:pos]
    data = [CHARSET.find(ch) for ch in address[pos + 1:]]
    if -1 in data:
        raise ValueError("invalid Bech32m character")
    if bech32_polymod(bech32_hrp_expand(hrp) + data) != BECH32M_CONST:
        raise ValueError("invalid Bech32m checksum")
    return hrp, data[:-6]


@dataclass(frozen=True)
class UnifiedAddress:
    network: Network
    receivers: Tuple[Tuple[int, bytes], ...]    # (typecode, raw), ascending

    def receiver(self, typecode: int) -> Optional[bytes]:
        for code, raw in self.receivers:
            if code == typecode:
                return raw
        return None

    @property
    def orchard(self) -> Optional[bytes]:
        return self.receiver(ORCHARD_TYPECODE)

    def encode(self) -> str:
        hrp = UNIFIED_HRPS[self.network]
        payload = b"".join(
            compact_size(code) + compact_size(len(raw)) + raw
            for code, raw in sorted(self.receivers)
        )
        jumbled = f4jumble(payload + _hrp_padding(hrp))
        return bech32m_encode(hrp, convertbits(jumbled, 8, 5, True))


def decode_unified_address(address: str) -> UnifiedAddress:
    hrp, data = _bech32m_decode(address)
    if hrp not in _HRP_LOOKUP:
        raise ValueError(f"unknown unified address prefix {hrp!r}")
    converted = convertbits(data, 5, 8, False)
    if converted is None:
        raise ValueError("invalid Bech32m padding")
    raw = f4jumble_inv(bytes(converted))
    if raw[-16:] != _hrp_padding(hrp):
        raise ValueError("unified address padding does not match its prefix")

    body = raw[:-16]
    receivers = []
    pos = 0
    while pos < len(body):
        code, pos = read_compact_size(body, pos)
        length, pos = read_compact_size(body, pos)
        if pos + length > len(body):
            raise ValueError("truncated unified address receiver")
        if receivers and code <= receivers[-1][0]:
            raise ValueError("unified address receivers out of order")
        if code in _RECEIVER_SIZES and length != _RECEIVER_SIZES[code]:
            raise ValueError(f"receiver typecode {code} has length {length}")
        receivers.append((code, body[pos:pos + length]))
        pos += length
    if not receivers:
        raise ValueError("unified address has no receivers")
    return UnifiedAddress(_HRP_LOOKUP[hrp], tuple(receivers))


def decode_address(address: str) -> Union[TransparentAddress, UnifiedAddress]:
    """Decode a transparent (``t...``) or unified (``u...``) address."""
    if not address:
        raise ValueError("empty address")
    if address.startswith("t"):
        return decode_transparent_address(address)
    if address.lower().startswith("u"):
        return decode_unified_address(address)
    raise ValueError(f"unsupported address type: {address[:8]!r}")


# ============================================================
# SHIELDED COMMITMENTS
# ============================================================
# BLAKE2b bindings for the value and note commitments.  The Pallas
# (Sinsemilla / Pedersen) versions are produced by the external proving
# system; these keep the staged transaction self-consistent.

def value_commitment(value: int, rcv: bytes) -> bytes:
    return blake2b_256(b"Zcash_t2z_cv____", struct.pack("<Q", value) + rcv)


def note_commitment(recipient: bytes, value: int, rseed: bytes) -> bytes:
    return blake2b_256(
        b"Zcash_t2z_cmx___", recipient + struct.pack("<Q", value) + rseed,
    )


# ============================================================
# ZIP-244 SIGNATURE DIGEST
# ============================================================

class ZIP244Sighash:
    """
    ZIP-244 signature digest for one transparent input of a v5
    transaction.

    Works on any object exposing ``tx_version``, ``version_group_id``,
    ``consensus_branch_id``, ``lock_time``, ``expiry_height`` and the
    ``inputs`` / ``outputs`` / ``actions`` sequences of the staged
    transaction.  Signature slots are never read.
    """

    SIGHASH_ALL = SIGHASH_ALL

    def __init__(self, tx, input_index: int):
        if not 0 <= input_index < len(tx.inputs):
            raise ValueError(f"input index {input_index} out of range")
        self.tx = tx
        self.input_index = input_index

    def compute(self, hash_type: int = SIGHASH_ALL) -> bytes:
        """
        Compute the 32-byte digest the input's signature commits to.

        Only SIGHASH_ALL is supported.
        """
        if hash_type != self.SIGHASH_ALL:
            raise ValueError(f"unsupported hash type 0x{hash_type:02x}")
        person = b"ZcashTxHash_" + struct.pack("<I", self.tx.consensus_branch_id)
        return blake2b_256(
            person,
            self._header_digest()
            + self._transparent_sig_digest(hash_type)
            + self._sapling_digest()
            + self._orchard_digest(),
        )

    # === Helper methods for hashing transaction data ===

    def _header_digest(self) -> bytes:
        tx = self.tx
        data = struct.pack(
            "<IIIII",
            tx.tx_version | TX_OVERWINTERED_FLAG,
            tx.version_group_id,
            tx.consensus_branch_id,
            tx.lock_time,
            tx.expiry_height,
        )
        return blake2b_256(b"ZTxIdHeadersHash", data)

    def _transparent_sig_digest(self, hash_type: int) -> bytes:
        return blake2b_256(
            b"ZTxIdTranspaHash",
            bytes([hash_type])
            + self._prevouts_digest()
            + self._amounts_digest()
            + self._scriptpubkeys_digest()
            + self._sequence_digest()
            + self._outputs_digest()
            + self._txin_digest(),
        )

    def _prevouts_digest(self) -> bytes:
        data = b"".join(
            inp.prevout_txid + struct.pack("<I", inp.prevout_index)
            for inp in self.tx.inputs
        )
        return blake2b_256(b"ZTxIdPrevoutHash", data)

    def _amounts_digest(self) -> bytes:
        data = b"".join(struct.pack("<q", inp.value) for inp in self.tx.inputs)
        return blake2b_256(b"ZTxTrAmountsHash", data)

    def _scriptpubkeys_digest(self) -> bytes:
        data = b"".join(
            compact_size(len(inp.script_pub_key)) + inp.script_pub_key
            for inp in self.tx.inputs
        )
        return blake2b_256(b"ZTxTrScriptsHash", data)

    def _sequence_digest(self) -> bytes:
        data = b"".join(struct.pack("<I", inp.sequence) for inp in self.tx.inputs)
        return blake2b_256(b"ZTxIdSequencHash", data)

    def _outputs_digest(self) -> bytes:
        data = b"".join(
            struct.pack("<q", out.value)
            + compact_size(len(out.script_pub_key)) + out.script_pub_key
            for out in self.tx.outputs
        )
        return blake2b_256(b"ZTxIdOutputsHash", data)

    def _txin_digest(self) -> bytes:
        inp = self.tx.inputs[self.input_index]
        data = (
            inp.prevout_txid
            + struct.pack("<I", inp.prevout_index)
            + struct.pack("<q", inp.value)
            + compact_size(len(inp.script_pub_key)) + inp.script_pub_key
            + struct.pack("<I", inp.sequence)
        )
        return blake2b_256(b"Zcash___TxInHash", data)

    @staticmethod
    def _sapling_digest() -> bytes:
        # v5 transactions built here never carry a Sapling bundle
        return blake2b_256(b"ZTxIdSaplingHash", b"")

    def _orchard_digest(self) -> bytes:
        actions = self.tx.actions
        if not actions:
            return blake2b_256(b"ZTxIdOrchardHash", b"")
        if any(not action.proof for action in actions):
            raise ValueError("orchard digest requires every action proof")

        compact = blake2b_256(b"ZTxIdOrcActCHash", b"".join(a.cmx for a in actions))
        memos = blake2b_256(b"ZTxIdOrcActMHash", b"".join(a.memo for a in actions))
        noncompact = blake2b_256(b"ZTxIdOrcActNHash", b"".join(a.cv for a in actions))
        proofs = blake2b_256(
            b"ZTxAuthOrchaHash",
            b"".join(compact_size(len(a.proof)) + a.proof for a in actions),
        )
        value_balance = -sum(a.value for a in actions)
        return blake2b_256(
            b"ZTxIdOrchardHash",
            compact + memos + noncompact + proofs
            + bytes([ORCHARD_FLAGS_OUTPUTS_ONLY])
            + struct.pack("<q", value_balance),
        )
