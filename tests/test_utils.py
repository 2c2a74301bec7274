import ipaddress
import ssl
from dataclasses import dataclass, field
from typing import Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID

from dnsmux.utils import (
    Errors,
    check_num_range,
    generate_certificate,
    get_ip_from_addr,
    load_cert_pool,
    parse_name_or_num,
    remove_comment,
    set_default_num,
    set_default_string,
    set_default_unsigned_num,
    split_line_reg,
    split_scheme_and_host,
    split_string2,
    weak_decode,
)


@pytest.mark.parametrize(
    "s, symbol, expected",
    [
        ("", "", ("", "")),
        ("///", "", ("", "///")),
        ("///", "/", ("", "//")),
        ("--/", "/", ("--", "")),
        ("https://***.***.***", "://", ("https", "***.***.***")),
        ("://***.***.***", "://", ("", "***.***.***")),
        ("https://", "://", ("https", "")),
        ("--/", "*", None),
    ],
)
def test_split_string2(s, symbol, expected):
    assert split_string2(s, symbol) == expected


@pytest.mark.parametrize(
    "s, symbol, expected",
    [
        ("", "", ""),
        ("12345", "", ""),
        ("", "#", ""),
        ("123/456", "/", "123"),
        ("123//456", "//", "123"),
        ("123/*/456", "//", "123/*/456"),
    ],
)
def test_remove_comment(s, symbol, expected):
    assert remove_comment(s, symbol) == expected


@dataclass
class ArgsStruct:
    a: str = field(default="", metadata={"yaml": "1"})
    b: list[int] = field(default_factory=list, metadata={"yaml": "2"})


def test_weak_decode_struct():
    got = weak_decode({"1": "test", "2": [1, 2, 3]}, ArgsStruct)
    assert got == ArgsStruct(a="test", b=[1, 2, 3])


def test_weak_decode_list_into_bytes():
    assert weak_decode(["1", 2, 3], bytes) == b"\x01\x02\x03"


def test_weak_decode_converts_scalars():
    got = weak_decode({"1": 5, "2": ["4", True, 6.0]}, ArgsStruct)
    assert got == ArgsStruct(a="5", b=[4, 1, 6])


def test_weak_decode_wraps_single_value():
    assert weak_decode({"2": "7"}, ArgsStruct) == ArgsStruct(a="", b=[7])


def test_weak_decode_rejects_unused_keys():
    with pytest.raises(ValueError, match="invalid keys"):
        weak_decode({"1": "x", "extra": 1}, ArgsStruct)


def test_weak_decode_rejects_bad_number():
    with pytest.raises(ValueError):
        weak_decode({"2": ["abc"]}, ArgsStruct)


@dataclass
class Nested:
    inner: ArgsStruct
    flag: bool = False
    timeout: Optional[int] = None


def test_weak_decode_nested_and_optional():
    got = weak_decode({"inner": {"1": "x"}, "flag": "true", "timeout": "10"}, Nested)
    assert got == Nested(inner=ArgsStruct(a="x"), flag=True, timeout=10)


def test_weak_decode_missing_required_field_is_zero():
    got = weak_decode({}, Nested)
    assert got.inner == ArgsStruct()
    assert got.timeout is None


def test_weak_decode_byte_overflow():
    with pytest.raises(ValueError, match="overflows"):
        weak_decode([256], bytes)


def test_errors_formatting():
    errs = Errors()
    assert str(errs) == ""
    assert len(errs) == 0
    errs.append(ValueError("a"))
    assert str(errs) == "a"
    errs.append(ValueError("b"))
    errs.append(ValueError("c"))
    assert str(errs) == "multi errors:a, b, c"
    assert len(errs) == 3


def test_errors_can_be_raised_and_iterated():
    errs = Errors([RuntimeError("boom")])
    errs.append(KeyError("k"))
    assert [type(e) for e in errs] == [RuntimeError, KeyError]
    with pytest.raises(Errors) as excinfo:
        raise errs
    assert str(excinfo.value) == "multi errors:boom, 'k'"
    assert len(excinfo.value) == 2


def test_set_defaults():
    assert set_default_num(0, 5) == 5
    assert set_default_num(-1, 5) == -1
    assert set_default_unsigned_num(-1, 5) == 5
    assert set_default_unsigned_num(3, 5) == 3
    assert set_default_string("", "x") == "x"
    assert set_default_string("y", "x") == "y"


def test_check_num_range():
    assert check_num_range(5, 1, 10) is True
    assert check_num_range(1, 1, 10) is True
    assert check_num_range(11, 1, 10) is False
    assert check_num_range(0, 1, 10) is False


def test_parse_name_or_num():
    names = {"A": 1, "AAAA": 28}
    assert parse_name_or_num("28", names) == 28
    assert parse_name_or_num("-3", names) == -3
    assert parse_name_or_num("AAAA", names) == 28
    assert parse_name_or_num("MX", names) is None


def test_get_ip_from_addr():
    assert get_ip_from_addr(("127.0.0.1", 53)) == ipaddress.ip_address("127.0.0.1")
    assert get_ip_from_addr(("::1", 53, 0, 0)) == ipaddress.ip_address("::1")
    assert get_ip_from_addr(ipaddress.ip_interface("10.0.0.5/8")) == ipaddress.ip_address("10.0.0.5")
    assert get_ip_from_addr(ipaddress.ip_network("10.0.0.0/8")) == ipaddress.ip_address("10.0.0.0")
    assert get_ip_from_addr("/tmp/socket") is None
    assert get_ip_from_addr(("not-an-ip", 1)) is None


def test_split_scheme_and_host():
    assert split_scheme_and_host("udp://1.1.1.1") == ("udp", "1.1.1.1")
    assert split_scheme_and_host("1.1.1.1:53") == ("", "1.1.1.1:53")


def test_split_line_reg():
    assert split_line_reg("  a  b\tc\r\nd ") == ["a", "b", "c", "d"]
    assert split_line_reg("   ") == []


def test_generate_certificate(tmp_path):
    cert_pem, key_pem = generate_certificate("test")
    cert = x509.load_pem_x509_certificate(cert_pem)
    key = serialization.load_pem_private_key(key_pem, password=None)
    assert cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "test"
    san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert san.get_values_for_type(x509.DNSName) == ["test"]
    assert cert.public_key().public_numbers() == key.public_key().public_numbers()

    cert_file = tmp_path / "cert.pem"
    key_file = tmp_path / "key.pem"
    cert_file.write_bytes(cert_pem)
    key_file.write_bytes(key_pem)
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.load_cert_chain(str(cert_file), str(key_file))
    assert ctx.protocol == ssl.PROTOCOL_TLS_SERVER


def test_load_cert_pool(tmp_path):
    first = tmp_path / "a.pem"
    second = tmp_path / "b.pem"
    first.write_bytes(generate_certificate("a.example.com")[0])
    second.write_bytes(generate_certificate("b.example.com")[0])
    pool = load_cert_pool([str(first), str(second)])
    names = [c.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value for c in pool]
    assert names == ["a.example.com", "b.example.com"]


def test_load_cert_pool_rejects_garbage(tmp_path):
    bad = tmp_path / "bad.pem"
    bad.write_text("not a certificate")
    with pytest.raises(ValueError, match="no certificate"):
        load_cert_pool([str(bad)])


def test_load_cert_pool_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_cert_pool([str(tmp_path / "missing.pem")])