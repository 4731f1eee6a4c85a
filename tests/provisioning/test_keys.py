"""Tests for clawcontrol.provisioning.keys: OpenSSH key encoding."""

import base64
import os
import stat
import struct

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_ssh_private_key,
    load_ssh_public_key,
)

from clawcontrol.provisioning.keys import (
    AUTH_MAGIC,
    PEM_BEGIN,
    PEM_END,
    PEM_LINE_WIDTH,
    encode_private_key,
    generate_key_pair,
    load_key_pair,
    save_key_pair,
)


def _decode_container(private_key):
    lines = private_key.strip().splitlines()
    assert lines[0] == PEM_BEGIN
    assert lines[-1] == PEM_END
    return base64.b64decode("".join(lines[1:-1]))


def _read_string(buf, offset):
    (length,) = struct.unpack(">I", buf[offset:offset + 4])
    start = offset + 4
    return buf[start:start + length], start + length


def _split_container(container):
    """Return (public_blob, private_section) from an openssh-key-v1 container."""
    assert container.startswith(AUTH_MAGIC)
    offset = len(AUTH_MAGIC)
    cipher, offset = _read_string(container, offset)
    kdf, offset = _read_string(container, offset)
    kdf_options, offset = _read_string(container, offset)
    assert (cipher, kdf, kdf_options) == (b"none", b"none", b"")
    (count,) = struct.unpack(">I", container[offset:offset + 4])
    assert count == 1
    public_blob, offset = _read_string(container, offset + 4)
    private_section, offset = _read_string(container, offset)
    assert offset == len(container)
    return public_blob, private_section


def _raw_key():
    key = Ed25519PrivateKey.generate()
    seed = key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
    point = key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    return seed, point


# ── public key ──────────────────────────────────────────────────


def test_public_key_format():
    pair = generate_key_pair("clawcontrol-demo")
    key_type, b64, comment = pair.public_key.split(" ")
    assert key_type == "ssh-ed25519"
    assert comment == "clawcontrol-demo"

    blob = base64.b64decode(b64)
    name, offset = _read_string(blob, 0)
    point, offset = _read_string(blob, offset)
    assert name == b"ssh-ed25519"
    assert len(point) == 32
    assert offset == len(blob)


def test_public_key_loads_with_cryptography():
    pair = generate_key_pair()
    loaded = load_ssh_public_key(pair.public_key.encode())
    assert len(loaded.public_bytes(Encoding.Raw, PublicFormat.Raw)) == 32


# ── private key ─────────────────────────────────────────────────


def test_private_key_loads_with_cryptography():
    pair = generate_key_pair("demo")
    loaded = load_ssh_private_key(pair.private_key.encode(), password=None)
    assert isinstance(loaded, Ed25519PrivateKey)


def test_private_and_public_point_match():
    pair = generate_key_pair("demo")
    public_blob, private_section = _split_container(_decode_container(pair.private_key))

    public_from_line = base64.b64decode(pair.public_key.split(" ")[1])
    assert public_blob == public_from_line

    _, offset = _read_string(public_blob, 0)
    point, _ = _read_string(public_blob, offset)

    offset = 8
    key_type, offset = _read_string(private_section, offset)
    private_point, offset = _read_string(private_section, offset)
    combined, offset = _read_string(private_section, offset)
    assert key_type == b"ssh-ed25519"
    assert private_point == point
    assert combined[32:] == point

    loaded = load_ssh_private_key(pair.private_key.encode(), password=None)
    assert loaded.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw) == point


def test_private_section_check_ints_and_comment():
    seed, point = _raw_key()
    pem = encode_private_key(seed, point, "my comment", check=b"\x01\x02\x03\x04")
    _, private_section = _split_container(_decode_container(pem))

    assert private_section[:4] == private_section[4:8] == b"\x01\x02\x03\x04"
    offset = 8
    for _ in range(3):
        _, offset = _read_string(private_section, offset)
    comment, offset = _read_string(private_section, offset)
    assert comment == b"my comment"

    padding = private_section[offset:]
    assert padding == bytes(range(1, len(padding) + 1))
    assert len(private_section) % 8 == 0


def test_padding_depends_on_comment_length():
    seed, point = _raw_key()
    lengths = set()
    for n in range(8):
        _, section = _split_container(_decode_container(encode_private_key(seed, point, "c" * n, b"abcd")))
        assert len(section) % 8 == 0
        lengths.add(len(section))
    assert len(lengths) > 1


def test_pem_lines_are_70_chars():
    pair = generate_key_pair("a-fairly-long-comment-to-force-several-lines")
    body = pair.private_key.strip().splitlines()[1:-1]
    assert all(len(line) == PEM_LINE_WIDTH for line in body[:-1])
    assert 0 < len(body[-1]) <= PEM_LINE_WIDTH
    assert pair.private_key.endswith(PEM_END + "\n")


def test_generated_pairs_differ():
    assert generate_key_pair().public_key != generate_key_pair().public_key


# ── save / load ─────────────────────────────────────────────────


def test_save_and_load_key_pair(tmp_path):
    ssh_dir = tmp_path / "ssh"
    pair = generate_key_pair("demo")
    private_path, public_path = save_key_pair(str(ssh_dir), pair)

    assert stat.S_IMODE(os.stat(private_path).st_mode) == 0o600
    assert stat.S_IMODE(os.stat(public_path).st_mode) == 0o644
    assert stat.S_IMODE(os.stat(ssh_dir).st_mode) == 0o700
    assert load_key_pair(str(ssh_dir)) == pair


def test_load_key_pair_missing(tmp_path):
    assert load_key_pair(str(tmp_path / "nope")) is None
