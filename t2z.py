"""
t2z handle API
==============
Flat, handle-based entry points over :mod:`pczt` for foreign-language
bindings (ctypes / cffi / RPC shims).

- Every call returns ``(ResultCode, value)``; ``value`` is None on failure.
- Requests and PCZTs live in a process-wide handle table.  A handle is
  owned by whoever received it last; ``prove``, ``append_signature``,
  ``combine`` and ``finalize_and_extract`` consume their input handles on
  success and leave them untouched on failure.
- The message of the most recent failure is kept in a process-wide slot
  readable with :func:`get_last_error`.
- Byte results are plain ``bytes`` owned by the caller.
"""

from __future__ import annotations

import itertools
import logging
import threading
from enum import IntEnum
from functools import wraps
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

import pczt
from pczt import (
    ErrorKind,
    InvalidInputError,
    Payment,
    PaymentRequest,
    PcztError,
    ProposalError,
    StagedTransaction,
    TransparentOutput,
    parse_transparent_inputs,
)
from zcash_protocol import Network

log = logging.getLogger("pczt.t2z")


class ResultCode(IntEnum):
    SUCCESS = 0
    NULL_POINTER = 1
    INVALID_UTF8 = 2
    BUFFER_TOO_SMALL = 3
    INVALID_INPUT = 4
    INVALID_STATE = 5
    PROPOSAL = 10
    PROVER = 11
    VERIFICATION = 12
    SIGHASH = 13
    SIGNATURE = 14
    COMBINE = 15
    FINALIZATION = 16
    PARSE = 17
    NOT_IMPLEMENTED = 99


_CODE_FOR_KIND = {
    ErrorKind.INVALID_INPUT: ResultCode.INVALID_INPUT,
    ErrorKind.INVALID_STATE: ResultCode.INVALID_STATE,
    ErrorKind.PROPOSAL: ResultCode.PROPOSAL,
    ErrorKind.PROVER: ResultCode.PROVER,
    ErrorKind.VERIFICATION: ResultCode.VERIFICATION,
    ErrorKind.SIGHASH: ResultCode.SIGHASH,
    ErrorKind.SIGNATURE: ResultCode.SIGNATURE,
    ErrorKind.COMBINE: ResultCode.COMBINE,
    ErrorKind.FINALIZATION: ResultCode.FINALIZATION,
    ErrorKind.PARSE: ResultCode.PARSE,
}

Result = Tuple[ResultCode, Any]


class BoundaryError(Exception):
    """Marshaling failure detected before any core role ran."""

    def __init__(self, code: ResultCode, message: str) -> None:
        super().__init__(message)
        self.code = code


# ============================================================
# HANDLE TABLE
# ============================================================

class HandleTable:
    """Thread-safe map of integer handles to requests and PCZTs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._objects: Dict[int, Any] = {}
        self._ids = itertools.count(1)

    def put(self, obj: Any) -> int:
        with self._lock:
            handle = next(self._ids)
            self._objects[handle] = obj
        return handle

    def get(self, handle: Optional[int], kind: type) -> Any:
        with self._lock:
            obj = self._objects.get(handle) if isinstance(handle, int) else None
        if not isinstance(obj, kind):
            raise BoundaryError(
                ResultCode.NULL_POINTER,
                f"Invalid {kind.__name__} handle: {handle!r}",
            )
        return obj

    def drop(self, *handles: int) -> None:
        with self._lock:
            for handle in handles:
                self._objects.pop(handle, None)

    def release(self, handle: Optional[int]) -> bool:
        with self._lock:
            return self._objects.pop(handle, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)


_handles = HandleTable()

_last_error_lock = threading.Lock()
_last_error: Optional[str] = None


def _set_last_error(message: str) -> None:
    global _last_error
    with _last_error_lock:
        _last_error = message


def _entry_point(func: Callable[..., Any]) -> Callable[..., Result]:
    """Turn exceptions into result codes and record the message."""

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Result:
        try:
            value = func(*args, **kwargs)
        except BoundaryError as exc:
            code, message = exc.code, str(exc)
        except PcztError as exc:
            code, message = _CODE_FOR_KIND[exc.kind], str(exc)
        else:
            return ResultCode.SUCCESS, value
        _set_last_error(message)
        log.debug("%s failed: %s (%s)", func.__name__, message, code.name)
        return code, None

    return wrapper


def _text(value: Union[str, bytes, None], what: str) -> str:
    if value is None:
        raise BoundaryError(ResultCode.NULL_POINTER, f"{what} is null")
    if isinstance(value, (bytes, bytearray)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise BoundaryError(ResultCode.INVALID_UTF8, f"{what} is not valid UTF-8") from exc
    if not isinstance(value, str):
        raise BoundaryError(ResultCode.INVALID_INPUT, f"{what} must be a string")
    return value


def _optional_text(value: Union[str, bytes, None], what: str) -> Optional[str]:
    return None if value is None else _text(value, what)


def _blob(value: Optional[bytes], what: str) -> bytes:
    if value is None:
        raise BoundaryError(ResultCode.NULL_POINTER, f"{what} is null")
    if not isinstance(value, (bytes, bytearray, memoryview)):
        raise BoundaryError(ResultCode.INVALID_INPUT, f"{what} must be bytes, got {type(value).__name__}")
    return bytes(value)


def _payment(entry: Union[Payment, Mapping[str, Any]], index: int) -> Payment:
    if isinstance(entry, Payment):
        return entry
    if entry is None:
        raise BoundaryError(ResultCode.NULL_POINTER, f"Payment {index} is null")
    memo = entry.get("memo")
    if isinstance(memo, str):
        memo = memo.encode("utf-8")
    return Payment(
        address=_text(entry.get("address"), f"payment {index} address"),
        amount=entry.get("amount", 0),
        memo=memo,
        label=_optional_text(entry.get("label"), f"payment {index} label"),
        message=_optional_text(entry.get("message"), f"payment {index} message"),
    )


def _expected_output(entry: Any) -> TransparentOutput:
    """Accept a TransparentOutput, a mapping, or a (script, value) pair."""
    if isinstance(entry, TransparentOutput):
        return entry
    try:
        if isinstance(entry, Mapping):
            script, value = entry["script_pub_key"], entry["value"]
        else:
            script, value = entry
        return TransparentOutput(bytes(script), int(value))
    except (KeyError, TypeError, ValueError) as exc:
        raise InvalidInputError(f"Malformed expected change entry: {entry!r}") from exc


# ============================================================
# PAYMENT REQUESTS
# ============================================================

@_entry_point
def new_payment_request(payments: Optional[Sequence[Union[Payment, Mapping[str, Any]]]]) -> int:
    """
    Create a request from ``Payment`` objects or dicts with the keys
    ``address``, ``amount`` and optionally ``memo``, ``label``, ``message``.
    """
    if payments is None:
        raise BoundaryError(ResultCode.NULL_POINTER, "payments is null")
    request = PaymentRequest([_payment(p, i) for i, p in enumerate(payments)])
    return _handles.put(request)


@_entry_point
def set_target_height(request: int, height: int) -> None:
    _handles.get(request, PaymentRequest).set_target_height(height)


@_entry_point
def set_use_mainnet(request: int, use_mainnet: bool) -> None:
    _handles.get(request, PaymentRequest).set_use_mainnet(use_mainnet)


@_entry_point
def set_network(request: int, network: Network) -> None:
    _handles.get(request, PaymentRequest).set_network(network)


# ============================================================
# ROLES
# ============================================================

@_entry_point
def propose_transaction(*args: Any, **kwargs: Any) -> None:
    """Deprecated per-struct entry point; use :func:`propose`."""
    raise BoundaryError(
        ResultCode.NOT_IMPLEMENTED,
        "propose_transaction is deprecated; pass serialized inputs to propose",
    )


@_entry_point
def propose(
    inputs_bytes: Optional[bytes],
    request: int,
    change_address: Union[str, bytes, None],
) -> int:
    """Build a PCZT from inputs in the external-input wire format."""
    data = _blob(inputs_bytes, "inputs")
    req = _handles.get(request, PaymentRequest)
    address = _text(change_address, "change address")
    try:
        inputs = parse_transparent_inputs(data)
    except PcztError as exc:
        raise ProposalError(f"Failed to parse inputs: {exc}") from exc
    return _handles.put(pczt.propose(inputs, req, address))


@_entry_point
def prove(handle: int) -> int:
    tx = _handles.get(handle, StagedTransaction)
    proved = pczt.prove(tx)
    _handles.drop(handle)
    return _handles.put(proved)


@_entry_point
def verify_before_signing(
    handle: int,
    request: int,
    expected_change: Optional[Sequence[Any]] = None,
) -> None:
    tx = _handles.get(handle, StagedTransaction)
    req = _handles.get(request, PaymentRequest)
    expected = [_expected_output(e) for e in expected_change or ()]
    pczt.verify_before_signing(tx, req, expected)


@_entry_point
def get_sighash(handle: int, input_index: int) -> bytes:
    return pczt.sighash(_handles.get(handle, StagedTransaction), input_index)


@_entry_point
def append_signature(handle: int, input_index: int, signature: Optional[bytes]) -> int:
    tx = _handles.get(handle, StagedTransaction)
    signed = pczt.append_signature(tx, input_index, _blob(signature, "signature"))
    _handles.drop(handle)
    return _handles.put(signed)


@_entry_point
def combine(handles: Optional[Sequence[int]]) -> int:
    if handles is None:
        raise BoundaryError(ResultCode.NULL_POINTER, "handle list is null")
    copies = [_handles.get(h, StagedTransaction) for h in handles]
    merged = pczt.combine(copies)
    _handles.drop(*handles)
    return _handles.put(merged)


@_entry_point
def finalize_and_extract(handle: int) -> bytes:
    raw = pczt.finalize_and_extract(_handles.get(handle, StagedTransaction))
    _handles.drop(handle)
    return raw


@_entry_point
def serialize(handle: int) -> bytes:
    return pczt.serialize(_handles.get(handle, StagedTransaction))


@_entry_point
def parse(data: Optional[bytes]) -> int:
    return _handles.put(pczt.parse(_blob(data, "PCZT bytes")))


@_entry_point
def calculate_fee(n_transparent_inputs: int, n_transparent_outputs: int,
                  n_orchard_outputs: int = 0) -> int:
    return pczt.calculate_fee(n_transparent_inputs, n_transparent_outputs, n_orchard_outputs)


# ============================================================
# RELEASE & ERRORS
# ============================================================

def release(handle: Optional[int]) -> ResultCode:
    """Free a request or PCZT handle.  Releasing twice is harmless."""
    _handles.release(handle)
    return ResultCode.SUCCESS


free_request = release
free_pczt = release


def get_last_error(buffer_len: int = 512) -> Result:
    """
    Message of the most recent failure.

    Mirrors a C caller's buffer: the message plus a NUL terminator must
    fit in ``buffer_len`` bytes, else BUFFER_TOO_SMALL.
    """
    with _last_error_lock:
        message = _last_error or ""
    if len(message.encode("utf-8")) + 1 > buffer_len:
        return ResultCode.BUFFER_TOO_SMALL, None
    return ResultCode.SUCCESS, message


def live_handles() -> int:
    return len(_handles)
