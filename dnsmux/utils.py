"""Small helpers shared by the rest of the package.

Covers option defaults, weakly typed decoding of configuration data,
string splitting, address helpers and certificate handling.
"""

from __future__ import annotations

import dataclasses
import ipaddress
import re
import secrets
import threading
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from types import UnionType
from typing import Any, Optional, Union, get_args, get_origin

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

__all__ = [
    "Errors",
    "set_default_num",
    "set_default_unsigned_num",
    "set_default_string",
    "check_num_range",
    "weak_decode",
    "parse_name_or_num",
    "get_ip_from_addr",
    "split_scheme_and_host",
    "split_line_reg",
    "remove_comment",
    "split_string2",
    "load_cert_pool",
    "generate_certificate",
]


class Errors(Exception):
    """A thread-safe collection of errors that is itself an exception."""

    def __init__(self, errors: Iterable[BaseException] = ()) -> None:
        super().__init__()
        self._lock = threading.Lock()
        self._errors: list[BaseException] = list(errors)

    def append(self, err: BaseException) -> None:
        with self._lock:
            self._errors.append(err)

    def __len__(self) -> int:
        with self._lock:
            return len(self._errors)

    def __iter__(self):
        with self._lock:
            return iter(list(self._errors))

    def __str__(self) -> str:
        with self._lock:
            errors = list(self._errors)
        if not errors:
            return ""
        if len(errors) == 1:
            return str(errors[0])
        return "multi errors:" + ", ".join(str(e) for e in errors)


def set_default_num(value, default):
    """Return ``default`` if ``value`` is zero, else ``value``."""
    return default if value == 0 else value


def set_default_unsigned_num(value, default):
    """Return ``default`` if ``value`` is zero or negative, else ``value``."""
    return default if value <= 0 else value


def set_default_string(value: str, default: str) -> str:
    """Return ``default`` if ``value`` is empty, else ``value``."""
    return value if value else default


def check_num_range(v, lo, hi) -> bool:
    """Return True if ``lo <= v <= hi``."""
    return lo <= v <= hi


# ---------------------------------------------------------------------------
# Weakly typed decoding

_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_WORDS = {"0", "f", "F", "FALSE", "false", "False"}
_ZERO_TYPES = (int, float, str, bool, bytes, bytearray, list, dict, tuple, set, frozenset)
_SEQUENCE_TYPES = (list, tuple, set, frozenset)
_NAMED_TYPES = {
    "int": int,
    "float": float,
    "str": str,
    "bool": bool,
    "bytes": bytes,
    "bytearray": bytearray,
    "list": list,
    "dict": dict,
    "tuple": tuple,
    "set": set,
    "frozenset": frozenset,
    "Any": Any,
}


def weak_decode(data: Any, cls: Any) -> Any:
    """Decode ``data`` into an instance of ``cls``.

    Dataclass fields are looked up by their ``yaml`` metadata key (or their
    name). Scalars are converted loosely between bool, int, float and str,
    single values are wrapped into sequences, and unknown keys are an error.
    Field annotations written as strings are understood for plain builtin
    names only; other string annotations accept any value as is.
    Raises ValueError or TypeError when the data cannot be decoded.
    """
    return _decode(data, cls, "")


def _where(path: str) -> str:
    return path or "value"


def _field_type(f: dataclasses.Field) -> Any:
    tp = f.type
    if isinstance(tp, str):
        return _NAMED_TYPES.get(tp.strip(), Any)
    return tp


def _zero(tp: Any) -> Any:
    origin = get_origin(tp)
    if origin is Union or origin is UnionType:
        return None
    if dataclasses.is_dataclass(tp) and isinstance(tp, type):
        return _decode_dataclass({}, tp, "")
    target = origin or tp
    if target in _ZERO_TYPES:
        return target()
    return None


def _decode(value: Any, tp: Any, path: str) -> Any:
    if tp is Any or tp is object:
        return value
    origin = get_origin(tp)
    if origin is Union or origin is UnionType:
        return _decode_union(value, tp, path)
    if dataclasses.is_dataclass(tp) and isinstance(tp, type):
        return _decode_dataclass(value, tp, path)
    container = origin or tp
    if container in (bytes, bytearray):
        return container(_to_bytes(value, path))
    if container in _SEQUENCE_TYPES:
        return _decode_sequence(value, tp, path)
    if container is dict:
        return _decode_mapping(value, tp, path)
    if value is None:
        return _zero(tp)
    if tp is bool:
        return _to_bool(value, path)
    if tp is int:
        return _to_int(value, path)
    if tp is float:
        return _to_float(value, path)
    if tp is str:
        return _to_str(value, path)
    if isinstance(tp, type) and isinstance(value, tp):
        return value
    raise TypeError(f"{_where(path)}: cannot decode {type(value).__name__} into {tp!r}")


def _decode_union(value: Any, tp: Any, path: str) -> Any:
    args = get_args(tp)
    if value is None and type(None) in args:
        return None
    failures = []
    for arg in args:
        if arg is type(None):
            continue
        try:
            return _decode(value, arg, path)
        except (TypeError, ValueError) as exc:
            failures.append(str(exc))
    raise TypeError(f"{_where(path)}: no type of {tp!r} fits: {'; '.join(failures)}")


def _decode_dataclass(value: Any, cls: type, path: str) -> Any:
    if value is None:
        value = {}
    if not isinstance(value, Mapping):
        raise TypeError(f"{_where(path)}: expected a mapping for {cls.__name__}, got {type(value).__name__}")
    remaining = dict(value)
    kwargs = {}
    for f in dataclasses.fields(cls):
        if not f.init:
            continue
        key = f.metadata.get("yaml", f.name)
        field_path = f"{path}.{key}" if path else str(key)
        field_type = _field_type(f)
        if key in remaining:
            kwargs[f.name] = _decode(remaining.pop(key), field_type, field_path)
        elif f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING:
            kwargs[f.name] = _zero(field_type)
    if remaining:
        unused = ", ".join(sorted(str(k) for k in remaining))
        raise ValueError(f"{_where(path)}: has invalid keys: {unused}")
    return cls(**kwargs)


def _decode_sequence(value: Any, tp: Any, path: str) -> Any:
    container = get_origin(tp) or tp
    args = get_args(tp)
    if value is None:
        return container()
    items = list(value) if isinstance(value, _SEQUENCE_TYPES) else [value]
    if container is tuple and args and not (len(args) == 2 and args[1] is Ellipsis):
        if len(args) != len(items):
            raise ValueError(f"{_where(path)}: expected {len(args)} items, got {len(items)}")
        item_types = list(args)
    else:
        item_types = [args[0] if args else Any] * len(items)
    decoded = [
        _decode(item, item_type, f"{_where(path)}[{i}]")
        for i, (item, item_type) in enumerate(zip(items, item_types))
    ]
    return container(decoded)


def _decode_mapping(value: Any, tp: Any, path: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise TypeError(f"{_where(path)}: expected a mapping, got {type(value).__name__}")
    args = get_args(tp)
    key_type, value_type = args if len(args) == 2 else (Any, Any)
    return {
        _decode(k, key_type, f"{_where(path)}[{k!r}]"): _decode(v, value_type, f"{_where(path)}[{k!r}]")
        for k, v in value.items()
    }


def _to_bytes(value: Any, path: str) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode()
    items = list(value) if isinstance(value, _SEQUENCE_TYPES) else [value]
    out = []
    for i, item in enumerate(items):
        n = _to_int(item, f"{_where(path)}[{i}]")
        if not 0 <= n <= 255:
            raise ValueError(f"{_where(path)}[{i}]: {n} overflows a byte")
        out.append(n)
    return bytes(out)


def _to_bool(value: Any, path: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        if value == "" or value in _FALSE_WORDS:
            return False
        if value in _TRUE_WORDS:
            return True
        raise ValueError(f"{_where(path)}: cannot parse {value!r} as bool")
    raise TypeError(f"{_where(path)}: cannot decode {type(value).__name__} into bool")


def _to_int(value: Any, path: str) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        if value == "":
            return 0
        try:
            return int(value, 0)
        except ValueError:
            try:
                return int(value, 10)
            except ValueError:
                raise ValueError(f"{_where(path)}: cannot parse {value!r} as int") from None
    raise TypeError(f"{_where(path)}: cannot decode {type(value).__name__} into int")


def _to_float(value: Any, path: str) -> float:
    if isinstance(value, (bool, int, float)):
        return float(value)
    if isinstance(value, str):
        if value == "":
            return 0.0
        try:
            return float(value)
        except ValueError:
            raise ValueError(f"{_where(path)}: cannot parse {value!r} as float") from None
    raise TypeError(f"{_where(path)}: cannot decode {type(value).__name__} into float")


def _to_str(value: Any, path: str) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode()
    raise TypeError(f"{_where(path)}: cannot decode {type(value).__name__} into str")


# ---------------------------------------------------------------------------
# Strings and addresses

_DECIMAL = re.compile(r"[+-]?[0-9]+")
_WORD = re.compile(r"[^\t\n\f\r ]+")


def parse_name_or_num(s: str, mapping: Mapping[str, int]) -> Optional[int]:
    """Parse ``s`` as a decimal number, or look it up in ``mapping``.

    Returns None if ``s`` is neither a number nor a known name.
    """
    if _DECIMAL.fullmatch(s):
        return int(s)
    return mapping.get(s)


def get_ip_from_addr(addr: Any):
    """Return the IP address held by ``addr``, or None.

    ``addr`` may be a socket address tuple, an ip address, interface or
    network object.
    """
    if isinstance(addr, (ipaddress.IPv4Interface, ipaddress.IPv6Interface)):
        return addr.ip
    if isinstance(addr, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return addr
    if isinstance(addr, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        return addr.network_address
    if isinstance(addr, tuple) and addr and isinstance(addr[0], str):
        try:
            return ipaddress.ip_address(addr[0])
        except ValueError:
            return None
    return None


def split_scheme_and_host(addr: str) -> tuple[str, str]:
    """Split ``scheme://host`` into its scheme and host."""
    parts = split_string2(addr, "://")
    if parts is None:
        return "", addr
    return parts


def split_line_reg(s: str) -> list[str]:
    """Return the runs of non-blank characters in ``s``."""
    return _WORD.findall(s)


def remove_comment(s: str, symbol: str) -> str:
    """Cut ``s`` at the first occurrence of ``symbol``."""
    i = s.find(symbol)
    return s[:i] if i >= 0 else s


def split_string2(s: str, symbol: str) -> Optional[tuple[str, str]]:
    """Split ``s`` in two at the first ``symbol``.

    An empty symbol gives ``("", s)``. Returns None if ``symbol`` is absent.
    """
    if not symbol:
        return "", s
    i = s.find(symbol)
    if i < 0:
        return None
    return s[:i], s[i + len(symbol):]


# ---------------------------------------------------------------------------
# Certificates

_PEM_CERT = re.compile(
    rb"-----BEGIN CERTIFICATE-----\s.*?-----END CERTIFICATE-----", re.DOTALL
)


def load_cert_pool(certs: Iterable[str]) -> list[x509.Certificate]:
    """Read PEM certificates from the given files.

    Raises OSError if a file cannot be read and ValueError if a file holds
    no certificate that can be parsed.
    """
    pool: list[x509.Certificate] = []
    for path in certs:
        with open(path, "rb") as fh:
            data = fh.read()
        loaded = []
        for block in _PEM_CERT.findall(data):
            try:
                loaded.append(x509.load_pem_x509_certificate(block))
            except ValueError:
                continue
        if not loaded:
            raise ValueError(f"no certificate was successfully parsed in {path}")
        pool.extend(loaded)
    return pool


def _add_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:  # February 29th in a non-leap target year
        return moment.replace(year=moment.year + years, month=3, day=1)


def generate_certificate(dns_name: str) -> tuple[bytes, bytes]:
    """Generate a self-signed ECDSA P-256 server certificate for ``dns_name``.

    Returns ``(certificate_pem, private_key_pem)``. Meant for tests.
    """
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, dns_name)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(secrets.randbelow((1 << 128) - 1) + 1)
        .not_valid_before(now)
        .not_valid_after(_add_years(now, 10))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(dns_name)]), critical=False)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return cert_pem, key_pem