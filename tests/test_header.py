from datetime import datetime

import pytest

from sfsave import Header, TruncatedHeader, UnsupportedVersion
from builders import make_header


@pytest.mark.parametrize("header_version", [0, 5, 7, 8, 10, 11, 12, 13, 14])
def test_roundtrip(header_version):
    header = make_header(52, header_version)
    data = header.to_bytes()
    decoded, offset = Header.from_bytes(data + b"\xaa\xbb")
    assert decoded == header
    assert offset == len(data)


def test_fields_are_gated_by_header_version():
    header = Header(save_header_version=7, save_version=42, mod_metadata="ignored", save_name="ignored",
                    editor_object_version=40)
    decoded, _ = Header.from_bytes(header.to_bytes())
    assert decoded.editor_object_version == 40
    assert decoded.mod_metadata == ""
    assert decoded.save_name == ""
    assert len(header.to_bytes()) == len(Header(7, 42, editor_object_version=40).to_bytes())


def test_data_hash_only_when_valid():
    valid = Header(save_header_version=13, save_version=52, data_hash_valid=1, data_hash=b"\x01" * 16)
    invalid = Header(save_header_version=13, save_version=52, data_hash_valid=0)
    assert len(valid.to_bytes()) == len(invalid.to_bytes()) + 16
    assert Header.from_bytes(valid.to_bytes())[0].data_hash == b"\x01" * 16


def test_every_prefix_is_truncated():
    data = make_header().to_bytes()
    for cut in range(len(data)):
        with pytest.raises(TruncatedHeader):
            Header.from_bytes(data[:cut])


@pytest.mark.parametrize("header_version, save_version", [(15, 52), (-1, 52), (14, 41), (14, 53)])
def test_unsupported_versions(header_version, save_version):
    data = Header(save_header_version=14, save_version=52).to_bytes()
    data = header_version.to_bytes(4, 'little', signed=True) + save_version.to_bytes(4, 'little') + data[8:]
    with pytest.raises(UnsupportedVersion):
        Header.from_bytes(data)


def test_saved_at():
    when = datetime(2024, 1, 1, 12, 30)
    delta = when - datetime(1, 1, 1)
    ticks = (delta.days * 86400 + delta.seconds) * 10_000_000
    assert Header(14, 52, save_timestamp=ticks).saved_at == when
