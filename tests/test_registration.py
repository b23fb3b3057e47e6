import pathlib

import pytest

from nix_relocator.registration import (
    RegistrationEntry,
    RegistrationFormatError,
    format_registration,
    parse_registration,
    read_registration,
    relocate_store_path,
    write_registration,
)


LIBC = RegistrationEntry(
    path="/nix/store/aaaa-glibc",
    nar_hash="sha256:1111",
    nar_size=4096,
    deriver=None,
    references=("/nix/store/aaaa-glibc",),
)
APP = RegistrationEntry(
    path="/nix/store/bbbb-hello",
    nar_hash="sha256:2222",
    nar_size=512,
    deriver="/nix/store/cccc-hello.drv",
    references=("/nix/store/aaaa-glibc",),
)


def test_format_matches_load_db_layout() -> None:
    text = format_registration([LIBC, APP])

    assert text == (
        "/nix/store/aaaa-glibc\n"
        "sha256:1111\n"
        "4096\n"
        "\n"
        "1\n"
        "/nix/store/aaaa-glibc\n"
        "/nix/store/bbbb-hello\n"
        "sha256:2222\n"
        "512\n"
        "/nix/store/cccc-hello.drv\n"
        "1\n"
        "/nix/store/aaaa-glibc\n"
    )


def test_format_empty() -> None:
    assert format_registration([]) == ""


def test_parse_reads_formatted_text(tmp_path: pathlib.Path) -> None:
    path = tmp_path / "out" / "registration"
    write_registration(path, [LIBC, APP])

    assert read_registration(path) == [LIBC, APP]


def test_parse_sorts_references_and_tolerates_trailing_blank_lines() -> None:
    text = "/nix/store/x\nsha256:0\n1\n\n2\n/nix/store/z\n/nix/store/y\n\n\n"

    [entry] = parse_registration(text)

    assert entry.references == ("/nix/store/y", "/nix/store/z")
    assert entry.deriver is None


@pytest.mark.parametrize(
    "text, message",
    [
        ("/nix/store/x\nsha256:0\n1\n\n", "truncated"),
        ("/nix/store/x\nsha256:0\n1\n\n2\n/nix/store/y\n", "truncated"),
        ("/nix/store/x\nsha256:0\nbig\n\n0\n", "invalid NAR size"),
        ("/nix/store/x\nsha256:0\n1\n\nmany\n", "invalid reference count"),
        ("nix/store/x\nsha256:0\n1\n\n0\n", "absolute"),
    ],
)
def test_parse_rejects_malformed_text(text: str, message: str) -> None:
    with pytest.raises(RegistrationFormatError, match=message):
        parse_registration(text)


def test_relocated_rewrites_every_store_path() -> None:
    dest = "/data/data/com.termux/files/nix/store"

    moved = APP.relocated(source_store="/nix/store", dest_store=dest)

    assert moved.path == dest + "/bbbb-hello"
    assert moved.deriver == dest + "/cccc-hello.drv"
    assert moved.references == (dest + "/aaaa-glibc",)
    assert moved.nar_hash == APP.nar_hash
    assert moved.nar_size == APP.nar_size
    assert moved.name == APP.name == "bbbb-hello"


def test_relocate_store_path_respects_component_boundary() -> None:
    assert relocate_store_path("/nix/store/x", source_store="/nix/store/", dest_store="/d") == "/d/x"
    assert relocate_store_path("/nix/storex/y", source_store="/nix/store", dest_store="/d") == "/nix/storex/y"
