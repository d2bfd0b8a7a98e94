"""
Partially Constructed Zcash Transactions (PCZT)
===============================================
- Transparent-to-shielded (t2z) transaction staging for Zcash v5 (NU5+)
- Payment requests to transparent (t1/tm) and unified (u/utest) addresses
- ZIP-317 fee calculation with change and dust folding
- ZIP-244 per-input signature digests for external / hardware signers
- Lossless binary + base64 staging format usable at every step
- Conflict-checked combination of independently signed / proved copies

Roles (each a pure function returning a new ``StagedTransaction``):

    PaymentRequest -> propose -> prove -> verify_before_signing
        -> sighash / append_signature (per input, possibly on other devices)
        -> combine -> finalize_and_extract

Dependencies:
    pip install coincurve bech32 base58 pycryptodome

Staging Model:
    The skeleton (inputs, outputs, amounts, addresses, metadata) is fixed
    by ``propose``.  Later roles only fill empty slots: one 64-byte
    signature slot per transparent input, one proof slot per shielded
    action.  Filling is monotone, so ``combine`` is a set union that
    fails on conflicting values instead of picking a winner.

Security Model:
    - ``verify_before_signing`` recomputes the payment set from the
      skeleton and compares it with the signer's own request, so a
      tampered proposal is rejected before any key is used.
    - Signature digests cover every filled proof slot and never any
      signature slot; parallel signers therefore agree on each digest.
    - ECDSA signatures are checked against the input's public key
      (coincurve / libsecp256k1) when one was supplied.

Proving Note:
    Halo 2 proof generation is external.  ``prove`` checks each action's
    witness (the value commitment must open) and delegates to a
    ``ProvingBackend``.  The bundled ``DigestProvingBackend`` emits a
    deterministic transcript digest so the pipeline can be exercised end
    to end; plug a real prover in for network use.

Status: Experimental / Research-Grade.
"""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
import struct
import time
from base64 import b64decode, b64encode
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

# Symmetric encryption for PCZT files at rest
from Crypto.Cipher import AES
from Crypto.Protocol.KDF import scrypt

# secp256k1 key handling (libsecp256k1)
from coincurve import PublicKey
from coincurve.ecdsa import cdata_to_der, deserialize_compact

from zcash_protocol import (
    MAX_MONEY,
    MEMO_SIZE,
    NU5_VERSION_GROUP_ID,
    ORCHARD_FLAGS_OUTPUTS_ONLY,
    ORCHARD_RECEIVER_SIZE,
    SIGHASH_ALL,
    TX_OVERWINTERED_FLAG,
    TX_VERSION_5,
    Network,
    TransparentAddress,
    UnifiedAddress,
    ZIP244Sighash,
    compact_size,
    consensus_branch_id,
    decode_address,
    encode_memo,
    hash160,
    note_commitment,
    read_compact_size,
    value_commitment,
    zip317_fee,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
from logging.handlers import RotatingFileHandler

log = logging.getLogger("pczt")
log.addHandler(logging.NullHandler())


def setup_logging(
    log_file: str = "pczt.log",
    level: int = logging.INFO,
    console_level: int = logging.WARNING,
) -> None:
    """
    Route the ``pczt`` loggers (roles and the ``pczt.t2z`` boundary) to a
    rotating file and the console.

    Role transitions are logged at INFO, rejected boundary calls at DEBUG.
    Signing devices usually keep ``level`` at INFO so every proposal,
    signature and extraction leaves an audit line. Only the first call
    installs handlers.
    """
    if getattr(setup_logging, "_done", False):
        return

    fmt = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    file_handler = RotatingFileHandler(
        log_file, maxBytes=10 * 1024 * 1024, backupCount=5,
    )
    file_handler.setFormatter(fmt)
    file_handler.setLevel(level)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(fmt)
    console_handler.setLevel(console_level)

    log.addHandler(file_handler)
    log.addHandler(console_handler)
    log.setLevel(min(level, console_level))

    setup_logging._done = True  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# Tunables
# ---------------------------------------------------------------------------
DUST_THRESHOLD = 5_000              # zatoshis; smaller change goes to the fee
DEFAULT_TX_EXPIRY_DELTA = 40        # blocks after the target height
DEFAULT_SEQUENCE = 0xFFFFFFFF
SIGNATURE_SIZE = 64                 # compact (r || s) ECDSA
PCZT_SCRYPT_N = 2 ** 17


# ============================================================
# ERRORS
# ============================================================

class ErrorKind(Enum):
    INVALID_INPUT = "InvalidInput"
    INVALID_STATE = "InvalidState"
    PROPOSAL = "Proposal"
    PROVER = "Prover"
    VERIFICATION = "Verification"
    SIGHASH = "Sighash"
    SIGNATURE = "Signature"
    COMBINE = "Combine"
    FINALIZATION = "Finalization"
    PARSE = "Parse"


class PcztError(ValueError):
    """Base class; ``kind`` tells which role rejected the call."""
    kind: ErrorKind


class InvalidInputError(PcztError):
    kind = ErrorKind.INVALID_INPUT


class InvalidStateError(PcztError):
    kind = ErrorKind.INVALID_STATE


class ProposalError(PcztError):
    kind = ErrorKind.PROPOSAL


class ProverError(PcztError):
    kind = ErrorKind.PROVER


class VerificationError(PcztError):
    kind = ErrorKind.VERIFICATION


class SighashError(PcztError):
    kind = ErrorKind.SIGHASH


class SignatureError(PcztError):
    kind = ErrorKind.SIGNATURE


class CombineError(PcztError):
    kind = ErrorKind.COMBINE


class FinalizationError(PcztError):
    kind = ErrorKind.FINALIZATION


class ParseError(PcztError):
    kind = ErrorKind.PARSE


def _check_u32(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= 0xFFFFFFFF


def calculate_fee(
    n_transparent_inputs: int,
    n_transparent_outputs: int,
    n_orchard_outputs: int = 0,
) -> int:
    """
    ZIP-317 fee for a transaction of the given shape.

    Useful for "send max": spendable = inputs - calculate_fee(n, 1, 0).
    """
    return zip317_fee(n_transparent_inputs, n_transparent_outputs, n_orchard_outputs)


# ============================================================
# PAYMENT REQUEST
# ============================================================

@dataclass(frozen=True)
class Payment:
    """One requested payment (ZIP-321 style fields)."""
    address: str
    amount: int                         # zatoshis
    memo: Optional[bytes] = None        # shielded recipients only
    label: Optional[str] = None
    message: Optional[str] = None

    def is_transparent(self) -> bool:
        return self.address.startswith("t")

    def is_unified(self) -> bool:
        return self.address.startswith("u")


class PaymentRequest:
    """
    Validated, ordered set of payments plus the network parameters
    they are to be built for.

    ``set_target_height`` / ``set_network`` are only allowed until the
    request has been handed to ``propose``.
    """

    def __init__(
        self,
        payments: Iterable[Payment],
        *,
        target_height: Optional[int] = None,
        network: Network = Network.MAINNET,
    ) -> None:
        payments = tuple(payments)
        if not payments:
            raise InvalidInputError("Payment request needs at least one payment")
        for i, payment in enumerate(payments):
            self._validate_payment(i, payment)
        if target_height is not None and not _check_u32(target_height):
            raise InvalidInputError(f"Invalid target height: {target_height!r}")
        if not isinstance(network, Network):
            raise InvalidInputError(f"Invalid network: {network!r}")

        self._payments = payments
        self._target_height = target_height
        self._network = network
        self._consumed = False

    @staticmethod
    def _validate_payment(index: int, payment: Payment) -> None:
        if not isinstance(payment, Payment):
            raise InvalidInputError(f"Payment {index} is not a Payment")
        if not isinstance(payment.address, str) or not payment.address:
            raise InvalidInputError(f"Payment {index} has an empty address")
        amount = payment.amount
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise InvalidInputError(f"Payment {index} amount must be positive")
        if amount > MAX_MONEY:
            raise InvalidInputError(f"Payment {index} amount exceeds MAX_MONEY")
        if payment.memo is not None:
            if not isinstance(payment.memo, (bytes, bytearray)):
                raise InvalidInputError(f"Payment {index} memo must be bytes")
            if len(payment.memo) > MEMO_SIZE:
                raise InvalidInputError(
                    f"Payment {index} memo is {len(payment.memo)} bytes "
                    f"(max {MEMO_SIZE})"
                )

    # ---- accessors ----------------------------------------------------
    @property
    def payments(self) -> Tuple[Payment, ...]:
        return self._payments

    @property
    def target_height(self) -> Optional[int]:
        return self._target_height

    @property
    def network(self) -> Network:
        return self._network

    @property
    def consumed(self) -> bool:
        return self._consumed

    def total_amount(self) -> int:
        return sum(p.amount for p in self._payments)

    def has_shielded_outputs(self) -> bool:
        return any(not p.is_transparent() for p in self._payments)

    # ---- mutators -----------------------------------------------------
    def _check_mutable(self) -> None:
        if self._consumed:
            raise InvalidStateError(
                "Payment request was already used to propose a transaction"
            )

    def set_target_height(self, height: int) -> None:
        self._check_mutable()
        if not _check_u32(height):
            raise InvalidInputError(f"Invalid target height: {height!r}")
        self._target_height = height

    def set_network(self, network: Network) -> None:
        self._check_mutable()
        if not isinstance(network, Network):
            raise InvalidInputError(f"Invalid network: {network!r}")
        self._network = network

    def set_use_mainnet(self, use_mainnet: bool) -> None:
        self.set_network(Network.MAINNET if use_mainnet else Network.TESTNET)

    def _consume(self) -> None:
        self._consumed = True

    def __repr__(self) -> str:
        return (
            f"PaymentRequest({len(self._payments)} payments, "
            f"network={self._network.value}, "
            f"target_height={self._target_height}, consumed={self._consumed})"
        )


# ============================================================
# TRANSPARENT INPUTS
# ============================================================

@dataclass(frozen=True)
class TransparentInput:
    """
    A caller-selected transparent UTXO.

    ``prevout_txid`` is in internal (wire) byte order.  ``pubkey`` is the
    optional 33-byte compressed key that controls a P2PKH output.
    """
    prevout_txid: bytes
    prevout_index: int
    script_pub_key: bytes
    value: int
    pubkey: Optional[bytes] = None

    def __post_init__(self) -> None:
        if not isinstance(self.prevout_txid, (bytes, bytearray)) or len(self.prevout_txid) != 32:
            raise InvalidInputError("prevout_txid must be 32 bytes")
        if not _check_u32(self.prevout_index):
            raise InvalidInputError(f"Invalid prevout index: {self.prevout_index!r}")
        if not isinstance(self.value, int) or not 0 <= self.value <= MAX_MONEY:
            raise InvalidInputError(f"Invalid input value: {self.value!r}")
        if not self.script_pub_key:
            raise InvalidInputError("script_pub_key must not be empty")
        if self.pubkey is not None and len(self.pubkey) != 33:
            raise InvalidInputError("pubkey must be 33 bytes (compressed)")
        object.__setattr__(self, "prevout_txid", bytes(self.prevout_txid))
        object.__setattr__(self, "script_pub_key", bytes(self.script_pub_key))


_NO_PUBKEY = b"\x00" * 33


def serialize_transparent_inputs(inputs: Sequence[TransparentInput]) -> bytes:
    """
    External-input wire format::

        u16 count
        per input: pubkey[33] txid[32] vout:u32 value:u64 script_len:u16 script

    An all-zero pubkey field means "no public key".
    """
    out = bytearray(struct.pack("<H", len(inputs)))
    for inp in inputs:
        out += inp.pubkey or _NO_PUBKEY
        out += inp.prevout_txid
        out += struct.pack("<IQH", inp.prevout_index, inp.value, len(inp.script_pub_key))
        out += inp.script_pub_key
    return bytes(out)


def parse_transparent_inputs(data: bytes) -> List[TransparentInput]:
    """Inverse of :func:`serialize_transparent_inputs`."""
    if len(data) < 2:
        raise InvalidInputError("Input data too short for count")
    (count,) = struct.unpack_from("<H", data, 0)
    pos = 2
    inputs = []
    for i in range(count):
        if pos + 79 > len(data):
            raise InvalidInputError(f"Input {i} truncated")
        pubkey = data[pos:pos + 33]
        txid = data[pos + 33:pos + 65]
        vout, value, script_len = struct.unpack_from("<IQH", data, pos + 65)
        pos += 79
        if pos + script_len > len(data):
            raise InvalidInputError(f"Input {i} script truncated")
        script = data[pos:pos + script_len]
        pos += script_len
        inputs.append(TransparentInput(
            prevout_txid=bytes(txid),
            prevout_index=vout,
            script_pub_key=bytes(script),
            value=value,
            pubkey=None if pubkey == _NO_PUBKEY else bytes(pubkey),
        ))
    if pos != len(data):
        raise InvalidInputError(f"{len(data) - pos} trailing bytes after inputs")
    return inputs


# ============================================================
# STAGED TRANSACTION
# ============================================================

@dataclass(frozen=True)
class StagedInput:
    prevout_txid: bytes
    prevout_index: int
    value: int
    script_pub_key: bytes
    sequence: int = DEFAULT_SEQUENCE
    pubkey: Optional[bytes] = None
    signature: Optional[bytes] = None       # slot


@dataclass(frozen=True)
class StagedOutput:
    address: str
    script_pub_key: bytes
    value: int
    is_change: bool = False


@dataclass(frozen=True)
class ShieldedAction:
    """
    An Orchard output descriptor: everything the prover needs, plus the
    proof slot.
    """
    address: str
    recipient: bytes        # raw 43-byte Orchard receiver
    value: int
    memo: bytes             # 512-byte ZIP-302 encoding
    rseed: bytes
    rcv: bytes              # value commitment trapdoor
    cv: bytes               # value commitment
    proof: Optional[bytes] = None           # slot

    @property
    def cmx(self) -> bytes:
        return note_commitment(self.recipient, self.value, self.rseed)


@dataclass(frozen=True)
class StagedTransaction:
    """
    Immutable staged transaction.  Roles return updated copies built
    with ``dataclasses.replace``; value equality is structural.
    """
    network: Network
    consensus_branch_id: int
    expiry_height: int
    inputs: Tuple[StagedInput, ...]
    outputs: Tuple[StagedOutput, ...]
    actions: Tuple[ShieldedAction, ...] = ()
    target_height: Optional[int] = None
    lock_time: int = 0
    tx_version: int = TX_VERSION_5
    version_group_id: int = NU5_VERSION_GROUP_ID

    # ---- derived views ------------------------------------------------
    def skeleton(self) -> "StagedTransaction":
        """This transaction with every signature and proof slot emptied."""
        return replace(
            self,
            inputs=tuple(replace(i, signature=None) for i in self.inputs),
            actions=tuple(replace(a, proof=None) for a in self.actions),
        )

    @property
    def fee(self) -> int:
        spent = sum(o.value for o in self.outputs) + sum(a.value for a in self.actions)
        return sum(i.value for i in self.inputs) - spent

    @property
    def value_balance_orchard(self) -> int:
        return -sum(a.value for a in self.actions)

    @property
    def payment_outputs(self) -> Tuple[StagedOutput, ...]:
        return tuple(o for o in self.outputs if not o.is_change)

    @property
    def change_outputs(self) -> Tuple[StagedOutput, ...]:
        return tuple(o for o in self.outputs if o.is_change)

    def is_fully_signed(self) -> bool:
        return all(i.signature is not None for i in self.inputs)

    def is_fully_proved(self) -> bool:
        return all(a.proof is not None for a in self.actions)

    # ---- codec --------------------------------------------------------
    def serialize(self) -> bytes:
        return serialize(self)

    @classmethod
    def parse(cls, data: bytes) -> "StagedTransaction":
        return parse(data)

    def to_base64(self) -> str:
        return b64encode(serialize(self)).decode()

    @classmethod
    def from_base64(cls, b64: str) -> "StagedTransaction":
        try:
            data = b64decode(b64, validate=True)
        except ValueError as exc:
            raise ParseError(f"Invalid base64 PCZT: {exc}") from exc
        return parse(data)


# ============================================================
# CODEC  (staged binary format)
# ============================================================
#
#   "PCZT" | u32 format version
#   u8 network | u32 version | u32 group id | u32 branch id | u32 lock time
#   u32 expiry | opt(u32 target height)
#   inputs:  cs(n) { txid[32] u32 index u64 value var(script) u32 sequence
#                    var(pubkey) opt(sig[64]) }
#   outputs: cs(n) { u64 value var(script) str(address) u8 is_change }
#   actions: cs(n) { str(address) recipient[43] u64 value memo[512]
#                    rseed[32] rcv[32] cv[32] opt(var(proof)) }
#
# cs = CompactSize, var = cs length + bytes, opt = 0x00 | 0x01 value

PCZT_MAGIC = b"PCZT"
PCZT_FORMAT_VERSION = 1

_NETWORK_CODES = {Network.MAINNET: 0x00, Network.TESTNET: 0x01}
_NETWORK_BY_CODE = {code: net for net, code in _NETWORK_CODES.items()}


def _var(data: bytes) -> bytes:
    return compact_size(len(data)) + data


def serialize(tx: StagedTransaction) -> bytes:
    """Encode a staged transaction at any stage of its life cycle."""
    buf = bytearray(PCZT_MAGIC)
    buf += struct.pack("<I", PCZT_FORMAT_VERSION)
    buf += bytes([_NETWORK_CODES[tx.network]])
    buf += struct.pack(
        "<IIIII",
        tx.tx_version, tx.version_group_id, tx.consensus_branch_id,
        tx.lock_time, tx.expiry_height,
    )
    if tx.target_height is None:
        buf += b"\x00"
    else:
        buf += b"\x01" + struct.pack("<I", tx.target_height)

    buf += compact_size(len(tx.inputs))
    for inp in tx.inputs:
        buf += inp.prevout_txid
        buf += struct.pack("<IQ", inp.prevout_index, inp.value)
        buf += _var(inp.script_pub_key)
        buf += struct.pack("<I", inp.sequence)
        buf += _var(inp.pubkey or b"")
        if inp.signature is None:
            buf += b"\x00"
        else:
            buf += b"\x01" + inp.signature

    buf += compact_size(len(tx.outputs))
    for out in tx.outputs:
        buf += struct.pack("<Q", out.value)
        buf += _var(out.script_pub_key)
        buf += _var(out.address.encode())
        buf += b"\x01" if out.is_change else b"\x00"

    buf += compact_size(len(tx.actions))
    for action in tx.actions:
        buf += _var(action.address.encode())
        buf += action.recipient
        buf += struct.pack("<Q", action.value)
        buf += action.memo + action.rseed + action.rcv + action.cv
        if action.proof is None:
            buf += b"\x00"
        else:
            buf += b"\x01" + _var(action.proof)
    return bytes(buf)


class _Reader:
    """Bounds-checked cursor; every failure is a ParseError."""

    def __init__(self, data: bytes) -> None:
        self.data = bytes(data)
        self.pos = 0

    @property
    def remaining(self) -> int:
        return len(self.data) - self.pos

    def take(self, n: int) -> bytes:
        if n > self.remaining:
            raise ParseError(
                f"Truncated PCZT: need {n} bytes at offset {self.pos}, "
                f"{self.remaining} left"
            )
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u32(self) -> int:
        return struct.unpack("<I", self.take(4))[0]

    def u64(self) -> int:
        return struct.unpack("<Q", self.take(8))[0]

    def compact(self) -> int:
        try:
            value, self.pos = read_compact_size(self.data, self.pos)
        except ValueError as exc:
            raise ParseError(f"Bad length field at offset {self.pos}: {exc}") from exc
        return value

    def count(self, what: str) -> int:
        n = self.compact()
        if n > self.remaining:
            raise ParseError(f"{what} count {n} exceeds remaining buffer")
        return n

    def var(self) -> bytes:
        n = self.compact()
        if n > self.remaining:
            raise ParseError(f"Length field {n} exceeds remaining buffer")
        return self.take(n)

    def text(self) -> str:
        raw = self.var()
        try:
            return raw.decode()
        except UnicodeDecodeError as exc:
            raise ParseError("Address is not valid UTF-8") from exc

    def flag(self) -> bool:
        b = self.u8()
        if b not in (0, 1):
            raise ParseError(f"Invalid presence byte 0x{b:02x} at offset {self.pos - 1}")
        return b == 1


def parse(data: bytes) -> StagedTransaction:
    """Decode bytes produced by :func:`serialize`."""
    r = _Reader(data)
    if r.take(4) != PCZT_MAGIC:
        raise ParseError("Not a PCZT (bad magic)")
    version = r.u32()
    if version != PCZT_FORMAT_VERSION:
        raise ParseError(f"Unsupported PCZT format version {version}")
    net_code = r.u8()
    if net_code not in _NETWORK_BY_CODE:
        raise ParseError(f"Unknown network code {net_code}")
    tx_version, group_id, branch_id, lock_time, expiry = (r.u32() for _ in range(5))
    target_height = r.u32() if r.flag() else None

    inputs = []
    for _ in range(r.count("Input")):
        txid = r.take(32)
        index = r.u32()
        value = r.u64()
        script = r.var()
        sequence = r.u32()
        pubkey = r.var()
        if len(pubkey) not in (0, 33):
            raise ParseError(f"Invalid pubkey length {len(pubkey)}")
        signature = r.take(SIGNATURE_SIZE) if r.flag() else None
        inputs.append(StagedInput(
            prevout_txid=txid, prevout_index=index, value=value,
            script_pub_key=script, sequence=sequence,
            pubkey=pubkey or None, signature=signature,
        ))

    outputs = []
    for _ in range(r.count("Output")):
        value = r.u64()
        script = r.var()
        address = r.text()
        outputs.append(StagedOutput(address, script, value, is_change=r.flag()))

    actions = []
    for _ in range(r.count("Action")):
        address = r.text()
        recipient = r.take(ORCHARD_RECEIVER_SIZE)
        value = r.u64()
        memo = r.take(MEMO_SIZE)
        rseed, rcv, cv = r.take(32), r.take(32), r.take(32)
        proof = r.var() if r.flag() else None
        actions.append(ShieldedAction(
            address=address, recipient=recipient, value=value, memo=memo,
            rseed=rseed, rcv=rcv, cv=cv, proof=proof,
        ))

    if r.remaining:
        raise ParseError(f"{r.remaining} trailing bytes after PCZT")

    return StagedTransaction(
        network=_NETWORK_BY_CODE[net_code],
        consensus_branch_id=branch_id,
        expiry_height=expiry,
        inputs=tuple(inputs),
        outputs=tuple(outputs),
        actions=tuple(actions),
        target_height=target_height,
        lock_time=lock_time,
        tx_version=tx_version,
        version_group_id=group_id,
    )


# ============================================================
# CONSTRUCTOR
# ============================================================

def _is_p2pkh(script: bytes) -> bool:
    return (
        len(script) == 25
        and script[:3] == b"\x76\xa9\x14"
        and script[23:] == b"\x88\xac"
    )


def _check_input(index: int, inp: TransparentInput) -> None:
    if inp.pubkey is None:
        return
    try:
        PublicKey(inp.pubkey)
    except Exception as exc:
        raise ProposalError(f"Input {index}: invalid public key") from exc
    if _is_p2pkh(inp.script_pub_key) and inp.script_pub_key[3:23] != hash160(inp.pubkey):
        raise ProposalError(
            f"Input {index}: public key does not match its P2PKH script"
        )


def _decode_for(network: Network, address: str, what: str):
    try:
        decoded = decode_address(address)
    except ValueError as exc:
        raise ProposalError(f"Invalid {what} address {address!r}: {exc}") from exc
    if decoded.network != network:
        raise ProposalError(
            f"{what.capitalize()} address {address!r} is not a "
            f"{network.value}net address"
        )
    return decoded


def propose(
    inputs: Sequence[TransparentInput],
    request: PaymentRequest,
    change_address: str,
) -> StagedTransaction:
    """
    Build the initial staged transaction.

    Transparent payments become outputs in request order, unified
    payments become Orchard actions, and change to ``change_address``
    is appended last unless it would be dust.

    Raises ProposalError on empty / duplicate inputs, malformed or
    wrong-network addresses, and insufficient funds.
    """
    inputs = list(inputs)
    if not inputs:
        raise ProposalError("No inputs provided")
    network = request.network

    seen = set()
    for i, inp in enumerate(inputs):
        outpoint = (inp.prevout_txid, inp.prevout_index)
        if outpoint in seen:
            raise ProposalError(
                f"Input {i} spends {inp.prevout_txid.hex()}:{inp.prevout_index} twice"
            )
        seen.add(outpoint)
        _check_input(i, inp)

    outputs: List[StagedOutput] = []
    actions: List[ShieldedAction] = []
    for i, payment in enumerate(request.payments):
        decoded = _decode_for(network, payment.address, "payment")
        if isinstance(decoded, TransparentAddress):
            if payment.memo:
                raise ProposalError(
                    f"Payment {i}: memos cannot be sent to transparent addresses"
                )
            outputs.append(StagedOutput(
                payment.address, decoded.script_pubkey(), payment.amount,
            ))
            continue
        recipient = decoded.orchard
        if recipient is None:
            raise ProposalError(
                f"Payment {i}: unified address has no Orchard receiver"
            )
        rcv = secrets.token_bytes(32)
        actions.append(ShieldedAction(
            address=payment.address,
            recipient=recipient,
            value=payment.amount,
            memo=encode_memo(payment.memo),
            rseed=secrets.token_bytes(32),
            rcv=rcv,
            cv=value_commitment(payment.amount, rcv),
        ))

    change = _decode_for(network, change_address, "change")
    if not isinstance(change, TransparentAddress):
        raise ProposalError("Change address must be a transparent address")

    total_in = sum(inp.value for inp in inputs)
    if total_in > MAX_MONEY:
        raise ProposalError("Input total exceeds MAX_MONEY")
    total_out = request.total_amount()

    fee = calculate_fee(len(inputs), len(outputs) + 1, len(actions))
    change_value = total_in - total_out - fee
    if change_value >= DUST_THRESHOLD:
        outputs.append(StagedOutput(
            change_address, change.script_pubkey(), change_value, is_change=True,
        ))
    else:
        fee = calculate_fee(len(inputs), len(outputs), len(actions))
        if total_in < total_out + fee:
            raise ProposalError(
                f"Insufficient funds: have {total_in}, need {total_out + fee} "
                f"({total_out} + fee {fee})"
            )
        change_value = 0

    target_height = request.target_height
    try:
        branch_id = consensus_branch_id(network, target_height)
    except ValueError as exc:
        raise ProposalError(str(exc)) from exc
    expiry = 0 if target_height is None else target_height + DEFAULT_TX_EXPIRY_DELTA
    if expiry > 0xFFFFFFFF:
        raise ProposalError(f"Expiry height {expiry} overflows u32")

    tx = StagedTransaction(
        network=network,
        consensus_branch_id=branch_id,
        expiry_height=expiry,
        inputs=tuple(
            StagedInput(
                prevout_txid=inp.prevout_txid,
                prevout_index=inp.prevout_index,
                value=inp.value,
                script_pub_key=inp.script_pub_key,
                pubkey=inp.pubkey,
            )
            for inp in inputs
        ),
        outputs=tuple(outputs),
        actions=tuple(actions),
        target_height=target_height,
    )
    request._consume()
    log.info(
        "PCZT proposed: %d inputs, %d transparent outputs, %d shielded actions, "
        "fee %d, change %d",
        len(tx.inputs), len(tx.outputs), len(tx.actions), tx.fee, change_value,
    )
    return tx


# ============================================================
# PROVER
# ============================================================

class ProvingBackend(Protocol):
    def prove_action(self, action: ShieldedAction) -> bytes:
        ...


class DigestProvingBackend:
    """
    Deterministic 64-byte BLAKE2b transcript of an action's witness.

    Same action in, same proof out, so independently proved copies of a
    transaction combine cleanly.
    """

    def prove_action(self, action: ShieldedAction) -> bytes:
        transcript = (
            action.recipient + struct.pack("<Q", action.value)
            + action.rseed + action.rcv + action.cv + action.memo
        )
        return hashlib.blake2b(
            transcript, digest_size=64, person=b"Zcash_t2z_Proof_",
        ).digest()


DEFAULT_PROVING_BACKEND = DigestProvingBackend()


def _check_witness(index: int, action: ShieldedAction) -> None:
    if len(action.recipient) != ORCHARD_RECEIVER_SIZE:
        raise ProverError(f"Action {index}: recipient must be {ORCHARD_RECEIVER_SIZE} bytes")
    if not 0 < action.value <= MAX_MONEY:
        raise ProverError(f"Action {index}: value {action.value} out of range")
    if len(action.memo) != MEMO_SIZE:
        raise ProverError(f"Action {index}: memo must be {MEMO_SIZE} bytes")
    if len(action.rseed) != 32 or len(action.rcv) != 32:
        raise ProverError(f"Action {index}: missing note randomness")
    if action.cv != value_commitment(action.value, action.rcv):
        raise ProverError(f"Action {index}: value commitment cannot be opened")


def prove(
    tx: StagedTransaction,
    backend: Optional[ProvingBackend] = None,
) -> StagedTransaction:
    """
    Fill every empty proof slot.  Filled slots are left as they are,
    transparent data is never touched.
    """
    backend = backend or DEFAULT_PROVING_BACKEND
    actions = []
    proved = 0
    for i, action in enumerate(tx.actions):
        if action.proof is not None:
            actions.append(action)
            continue
        _check_witness(i, action)
        try:
            proof = backend.prove_action(action)
        except (ValueError, RuntimeError) as exc:
            raise ProverError(f"Action {i}: proving failed: {exc}") from exc
        if not isinstance(proof, bytes) or not proof:
            raise ProverError(f"Action {i}: backend returned an empty proof")
        actions.append(replace(action, proof=proof))
        proved += 1

    if not proved:
        return tx
    log.info("PCZT proved: %d of %d actions", proved, len(tx.actions))
    return replace(tx, actions=tuple(actions))


# ============================================================
# VERIFIER
# ============================================================

@dataclass(frozen=True)
class TransparentOutput:
    """Expected change output (script + value) handed to the verifier."""
    script_pub_key: bytes
    value: int

    @classmethod
    def to_address(cls, address: str, value: int) -> "TransparentOutput":
        decoded = decode_address(address)
        if not isinstance(decoded, TransparentAddress):
            raise InvalidInputError("Expected change must go to a transparent address")
        return cls(decoded.script_pubkey(), value)


def _mismatch(message: str) -> VerificationError:
    log.warning("Verification failed: %s", message)
    return VerificationError(message)


def verify_before_signing(
    tx: StagedTransaction,
    request: PaymentRequest,
    expected_change: Sequence[TransparentOutput] = (),
) -> None:
    """
    Check that ``tx`` pays exactly what ``request`` asked for.

    Transparent outputs beyond the transparent payments are change and
    must equal ``expected_change`` (script, value, count).  Orchard
    actions must match the unified payments (receiver, value, memo).
    The implied fee may not exceed the ZIP-317 fee plus the dust
    threshold.
    """
    if tx.network != request.network:
        raise _mismatch(
            f"Transaction is for {tx.network.value}net, request for "
            f"{request.network.value}net"
        )

    t_idx = a_idx = 0
    for i, payment in enumerate(request.payments):
        try:
            decoded = decode_address(payment.address)
        except ValueError as exc:
            raise _mismatch(f"Payment {i}: invalid address: {exc}") from exc

        if isinstance(decoded, TransparentAddress):
            if t_idx >= len(tx.outputs):
                raise _mismatch(f"Payment {i}: no transparent output")
            out = tx.outputs[t_idx]
            t_idx += 1
            if out.is_change:
                raise _mismatch(f"Payment {i}: output is marked as change")
            if out.script_pub_key != decoded.script_pubkey() or out.address != payment.address:
                raise _mismatch(f"Payment {i}: recipient does not match request")
            if out.value != payment.amount:
                raise _mismatch(
                    f"Payment {i}: amount {out.value} != requested {payment.amount}"
                )
            continue

        if a_idx >= len(tx.actions):
            raise _mismatch(f"Payment {i}: no shielded action")
        action = tx.actions[a_idx]
        a_idx += 1
        if action.recipient != decoded.orchard or action.address != payment.address:
            raise _mismatch(f"Payment {i}: shielded recipient does not match request")
        if action.value != payment.amount:
            raise _mismatch(
                f"Payment {i}: shielded amount {action.value} != requested {payment.amount}"
            )
        if action.memo != encode_memo(payment.memo):
            raise _mismatch(f"Payment {i}: memo does not match request")

    if a_idx != len(tx.actions):
        raise _mismatch(f"{len(tx.actions) - a_idx} unexpected shielded actions")

    change = tx.outputs[t_idx:]
    expected = list(expected_change or ())
    if any(not out.is_change for out in change):
        raise _mismatch("Unexpected non-change transparent output")
    if len(change) != len(expected):
        raise _mismatch(
            f"Expected {len(expected)} change outputs, transaction has {len(change)}"
        )
    for n, (got, want) in enumerate(zip(change, expected)):
        if got.script_pub_key != want.script_pub_key:
            raise _mismatch(f"Change output {n}: script does not match")
        if got.value != want.value:
            raise _mismatch(f"Change output {n}: value {got.value} != expected {want.value}")

    fee = tx.fee
    max_fee = calculate_fee(len(tx.inputs), len(tx.outputs) + 1, len(tx.actions)) + DUST_THRESHOLD
    if fee < 0:
        raise _mismatch(f"Outputs exceed inputs by {-fee}")
    if fee > max_fee:
        raise _mismatch(f"Fee {fee} exceeds maximum {max_fee}")

    log.info(
        "PCZT verified: %d payments, %d change outputs, fee %d",
        len(request.payments), len(change), fee,
    )


# ============================================================
# SIGNING
# ============================================================

def sighash(tx: StagedTransaction, input_index: int, hash_type: int = SIGHASH_ALL) -> bytes:
    """
    32-byte ZIP-244 digest a signature for ``input_index`` must commit to.

    Every proof slot must be filled: the digest covers the proofs.
    """
    if not _check_u32(input_index) or input_index >= len(tx.inputs):
        raise SighashError(
            f"Input index {input_index} out of range ({len(tx.inputs)} inputs)"
        )
    missing = [i for i, a in enumerate(tx.actions) if a.proof is None]
    if missing:
        raise SighashError(f"Actions {missing} have no proof; run prove() first")
    try:
        return ZIP244Sighash(tx, input_index).compute(hash_type)
    except ValueError as exc:
        raise SighashError(str(exc)) from exc


def _compact_to_der(signature: bytes) -> bytes:
    return cdata_to_der(deserialize_compact(signature))


def verify_ecdsa(pubkey: bytes, digest: bytes, signature: bytes) -> bool:
    """Check a 64-byte compact ECDSA signature over a 32-byte digest."""
    try:
        return PublicKey(pubkey).verify(_compact_to_der(signature), digest, hasher=None)
    except Exception:
        return False


def append_signature(
    tx: StagedTransaction,
    input_index: int,
    signature: bytes,
    *,
    verify_signatures: bool = True,
) -> StagedTransaction:
    """
    Attach a 64-byte compact signature to an input's slot.

    Re-attaching the identical signature is a no-op; a different value
    for a filled slot raises SignatureError.  With ``verify_signatures``
    the signature is checked against the input's public key, if known.
    """
    if not _check_u32(input_index) or input_index >= len(tx.inputs):
        raise SignatureError(
            f"Input index {input_index} out of range ({len(tx.inputs)} inputs)"
        )
    if not isinstance(signature, (bytes, bytearray)) or len(signature) != SIGNATURE_SIZE:
        raise SignatureError(f"Signature must be {SIGNATURE_SIZE} bytes")
    signature = bytes(signature)

    inp = tx.inputs[input_index]
    if inp.signature == signature:
        log.debug("Input %d already carries this signature", input_index)
        return tx
    if inp.signature is not None:
        raise SignatureError(f"Input {input_index} already has a different signature")

    if verify_signatures and inp.pubkey is not None:
        try:
            digest = sighash(tx, input_index)
        except SighashError as exc:
            raise SignatureError(f"Cannot verify signature: {exc}") from exc
        if not verify_ecdsa(inp.pubkey, digest, signature):
            raise SignatureError(f"Signature verification failed for input {input_index}")

    inputs = list(tx.inputs)
    inputs[input_index] = replace(inp, signature=signature)
    log.info("Signature attached to input %d", input_index)
    return replace(tx, inputs=tuple(inputs))


# ============================================================
# COMBINER
# ============================================================

def _merge_slot(values: List[Optional[bytes]], what: str) -> Optional[bytes]:
    filled = {v for v in values if v is not None}
    if len(filled) > 1:
        raise CombineError(f"Conflicting values for {what}")
    return filled.pop() if filled else None


def combine(copies: Sequence[StagedTransaction]) -> StagedTransaction:
    """
    Merge copies of one transaction: slots filled in any copy are
    filled in the result.  Commutative and associative.
    """
    copies = list(copies)
    if not copies:
        raise CombineError("No PCZTs provided")
    base = copies[0]
    skeleton = base.skeleton()
    for n, other in enumerate(copies[1:], start=1):
        if other.skeleton() != skeleton:
            raise CombineError(f"PCZT {n} is not a copy of the same transaction")

    inputs = tuple(
        replace(inp, signature=_merge_slot(
            [c.inputs[i].signature for c in copies], f"input {i} signature",
        ))
        for i, inp in enumerate(base.inputs)
    )
    actions = tuple(
        replace(action, proof=_merge_slot(
            [c.actions[i].proof for c in copies], f"action {i} proof",
        ))
        for i, action in enumerate(base.actions)
    )
    merged = replace(base, inputs=inputs, actions=actions)
    log.info(
        "Combined %d PCZTs: %d/%d signatures, %d/%d proofs",
        len(copies),
        sum(i.signature is not None for i in inputs), len(inputs),
        sum(a.proof is not None for a in actions), len(actions),
    )
    return merged


# ============================================================
# FINALIZER / EXTRACTOR
# ============================================================

def _push_data(data: bytes) -> bytes:
    if len(data) < 0x4c:
        return bytes([len(data)]) + data
    return b"\x4c" + bytes([len(data)]) + data


def finalize_and_extract(tx: StagedTransaction) -> bytes:
    """
    Serialize the v5 raw transaction.

    The header, transparent bundle and empty Sapling bundle use the
    consensus layout. The Orchard part is a placeholder encoding
    (``cv || cmx || proof`` per action, then flags and value balance):
    it carries no nullifiers, rk, ephemeral keys, note ciphertexts,
    anchor, aggregated proof or spend-auth and binding signatures, so
    a transaction with shielded actions is not accepted by zcashd or
    zebrad. Transparent-only transactions are complete.

    Raises FinalizationError if any signature or proof slot is empty.
    """
    unsigned = [i for i, inp in enumerate(tx.inputs) if inp.signature is None]
    if unsigned:
        raise FinalizationError(f"Missing signatures for inputs {unsigned}")
    unproved = [i for i, a in enumerate(tx.actions) if a.proof is None]
    if unproved:
        raise FinalizationError(f"Missing proofs for actions {unproved}")
    if tx.fee < 0:
        raise FinalizationError("Outputs exceed inputs")

    # --- header ---
    raw = b""
    raw += struct.pack("<I", tx.tx_version | TX_OVERWINTERED_FLAG)
    raw += struct.pack("<I", tx.version_group_id)
    raw += struct.pack("<I", tx.consensus_branch_id)
    raw += struct.pack("<I", tx.lock_time)
    raw += struct.pack("<I", tx.expiry_height)

    # --- transparent bundle ---
    raw += compact_size(len(tx.inputs))
    for i, inp in enumerate(tx.inputs):
        try:
            der = _compact_to_der(inp.signature)
        except Exception as exc:
            raise FinalizationError(f"Input {i}: malformed signature") from exc
        script_sig = _push_data(der + bytes([SIGHASH_ALL]))
        if inp.pubkey is not None:
            script_sig += _push_data(inp.pubkey)
        raw += inp.prevout_txid
        raw += struct.pack("<I", inp.prevout_index)
        raw += compact_size(len(script_sig)) + script_sig
        raw += struct.pack("<I", inp.sequence)
    raw += compact_size(len(tx.outputs))
    for out in tx.outputs:
        raw += struct.pack("<q", out.value)
        raw += compact_size(len(out.script_pub_key)) + out.script_pub_key

    # --- sapling bundle (empty) ---
    raw += compact_size(0)      # spends
    raw += compact_size(0)      # outputs

    # --- orchard bundle ---
    raw += compact_size(len(tx.actions))
    for action in tx.actions:
        raw += action.cv + action.cmx
        raw += compact_size(len(action.proof)) + action.proof
    if tx.actions:
        raw += bytes([ORCHARD_FLAGS_OUTPUTS_ONLY])
        raw += struct.pack("<q", tx.value_balance_orchard)

    log.info(
        "PCZT finalized: %d inputs, %d outputs, %d actions, %d bytes raw TX",
        len(tx.inputs), len(tx.outputs), len(tx.actions), len(raw),
    )
    return raw


# ============================================================
# FILE TRANSFER  (air-gapped signing)
# ============================================================

def _kdf_params() -> Dict[str, Any]:
    return {"name": "scrypt", "n": PCZT_SCRYPT_N, "r": 8, "p": 1}


def save_pczt(
    filepath: str,
    tx: StagedTransaction,
    metadata: Optional[Dict[str, Any]] = None,
    *,
    password: Optional[str] = None,
) -> None:
    """
    Write a PCZT to a JSON envelope for transfer to another device.

    With ``password`` the PCZT is sealed with AES-256-GCM under a
    scrypt-derived key.
    """
    blob: Dict[str, Any] = {
        "v": 1,
        "created_at": int(time.time()),
        "metadata": metadata or {},
    }
    data = serialize(tx)
    if password is None:
        blob["pczt"] = b64encode(data).decode()
    else:
        kdf_salt = secrets.token_bytes(16)
        key = scrypt(password.encode(), kdf_salt, 32, N=PCZT_SCRYPT_N, r=8, p=1)
        cipher = AES.new(key, AES.MODE_GCM)
        ct, tag = cipher.encrypt_and_digest(data)
        blob.update({
            "kdf": _kdf_params(),
            "salt": kdf_salt.hex(),
            "nonce": cipher.nonce.hex(),
            "tag": tag.hex(),
            "ct": b64encode(ct).decode(),
        })
    Path(filepath).write_text(json.dumps(blob, indent=2))
    log.info("PCZT saved -> %s (%d bytes%s)", filepath, len(data),
             ", encrypted" if password is not None else "")


def load_pczt(
    filepath: str,
    *,
    password: Optional[str] = None,
) -> Tuple[StagedTransaction, Dict[str, Any]]:
    """Read a file written by :func:`save_pczt`; returns (tx, metadata)."""
    try:
        blob = json.loads(Path(filepath).read_text())
        if "ct" in blob:
            if password is None:
                raise ParseError("PCZT file is encrypted; password required")
            kdf = _kdf_params()
            if blob["kdf"] != kdf:
                raise ParseError(f"Unsupported PCZT file KDF parameters: {blob['kdf']!r}")
            key = scrypt(
                password.encode(), bytes.fromhex(blob["salt"]), 32,
                N=kdf["n"], r=kdf["r"], p=kdf["p"],
            )
            cipher = AES.new(key, AES.MODE_GCM, nonce=bytes.fromhex(blob["nonce"]))
            data = cipher.decrypt_and_verify(
                b64decode(blob["ct"]), bytes.fromhex(blob["tag"]),
            )
        else:
            data = b64decode(blob["pczt"], validate=True)
        metadata = blob.get("metadata", {})
    except (KeyError, TypeError) as exc:
        raise ParseError(f"Malformed PCZT file: missing {exc}") from exc
    except ParseError:
        raise
    except ValueError as exc:
        # JSON, hex, base64 and GCM tag failures
        raise ParseError(f"Cannot read PCZT file: {exc}") from exc

    tx = parse(data)
    log.info("PCZT loaded <- %s (%d bytes)", filepath, len(data))
    return tx, metadata


# ============================================================
# SELF-TEST / DEMO
# ============================================================

def _run_demo() -> None:
    """End-to-end demo: propose, prove, verify, sign, combine, extract."""
    from coincurve import PrivateKey

    from zcash_protocol import ORCHARD_TYPECODE, P2PKH

    setup_logging()
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    separator = "=" * 60
    print(f"\n{separator}")
    print("  t2z PCZT pipeline (testnet)")
    print(separator)

    signer = PrivateKey(b"\x01" * 32)
    pubkey = signer.public_key.format(compressed=True)
    source = TransparentAddress(Network.TESTNET, P2PKH, hash160(pubkey))
    merchant = TransparentAddress(
        Network.TESTNET, P2PKH,
        hash160(PrivateKey(b"\x02" * 32).public_key.format(compressed=True)),
    ).encode()
    shielded = UnifiedAddress(
        Network.TESTNET, ((ORCHARD_TYPECODE, secrets.token_bytes(43)),),
    ).encode()
    print(f"  Source:    {source.encode()}")
    print(f"  Payee (t): {merchant}")
    print(f"  Payee (u): {shielded[:40]}...")

    request = PaymentRequest(
        [Payment(merchant, 50_000), Payment(shielded, 30_000, memo=b"thanks!")],
        network=Network.TESTNET,
        target_height=3_600_000,
    )
    inputs = [TransparentInput(b"\xab" * 32, 0, source.script_pubkey(), 200_000, pubkey)]

    tx = propose(inputs, request, source.encode())
    print(f"  Proposed:  fee={tx.fee}  change={[o.value for o in tx.change_outputs]}")

    tx = prove(tx)
    print(f"  Proved:    {len(tx.actions)} action(s), "
          f"{len(tx.actions[0].proof)} B proof")

    expected_change = 200_000 - request.total_amount() - calculate_fee(1, 2, 1)
    verify_before_signing(
        tx, request, [TransparentOutput(source.script_pubkey(), expected_change)],
    )
    print("  Verified:  outputs match request")

    digest = sighash(tx, 0)
    signed = append_signature(tx, 0, signer.sign_recoverable(digest, hasher=None)[:64])
    print(f"  Sighash:   {digest.hex()}")

    merged = combine([tx, signed])
    if StagedTransaction.from_base64(merged.to_base64()) != merged:
        raise SystemExit("FATAL: PCZT codec round-trip failed")
    print(f"  PCZT:      {len(serialize(merged))} B staged, round-trip PASS")

    raw = finalize_and_extract(merged)
    print(f"  Raw TX:    {len(raw)} B")
    print(f"\n{separator}\n")


if __name__ == "__main__":
    _run_demo()
