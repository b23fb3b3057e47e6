import pathlib

import pytest
import yaml

from conftest import FakeStore, add_toolchain

from nix_relocator.cli import main
from nix_relocator.registration import parse_registration


def _write_config(
    tmp_path: pathlib.Path,
    fake_store: FakeStore,
    arches: dict[str, list[str]],
    registrations: dict[str, pathlib.Path] | None = None,
) -> pathlib.Path:
    registration = fake_store.write_registration(tmp_path / "closure" / "registration")
    overrides = registrations or {}
    doc = {
        "output_dir": "result",
        "architectures": {
            arch: {
                "roots": roots,
                "registration": str(overrides.get(arch, registration)),
                "content_root": str(fake_store.content_root),
            }
            for arch, roots in arches.items()
        },
    }
    path = tmp_path / "relocator.yaml"
    path.write_text(yaml.safe_dump(doc))
    return path


def test_build_one_architecture(fake_store: FakeStore, tmp_path: pathlib.Path) -> None:
    _, app = add_toolchain(fake_store)
    config = _write_config(tmp_path, fake_store, {"aarch64": [app], "x86_64": [app]})

    rc = main(["build", "--config", str(config), "--arch", "arm64", "-q"])

    assert rc == 0
    assert (tmp_path / "result" / "nix-termux-aarch64.tar.gz").is_file()
    assert (tmp_path / "result" / "nix-termux-aarch64.registration").is_file()
    assert not (tmp_path / "result" / "nix-termux-x86_64.tar.gz").exists()


def test_build_all_continues_past_failures(fake_store: FakeStore, tmp_path: pathlib.Path) -> None:
    _, app = add_toolchain(fake_store)
    ghost = fake_store.add("ghost", contents=False)
    config = _write_config(tmp_path, fake_store, {"aarch64": [ghost], "x86_64": [app]})
    out = tmp_path / "elsewhere"

    rc = main(["build", "--config", str(config), "--all", "-o", str(out), "-q", "-q"])

    assert rc == 1
    assert not (out / "nix-termux-aarch64.tar.gz").exists()
    assert (out / "nix-termux-x86_64.tar.gz").is_file()


def test_build_unknown_architecture(fake_store: FakeStore, tmp_path: pathlib.Path) -> None:
    _, app = add_toolchain(fake_store)
    config = _write_config(tmp_path, fake_store, {"aarch64": [app]})

    with pytest.raises(SystemExit) as exc:
        main(["build", "--config", str(config), "--arch", "x86_64"])

    assert exc.value.code == 2


def test_build_rejects_invalid_config(tmp_path: pathlib.Path) -> None:
    config = tmp_path / "relocator.yaml"
    config.write_text("architectures: {}\n")

    with pytest.raises(SystemExit) as exc:
        main(["build", "--config", str(config), "--all"])

    assert exc.value.code == 2


def test_closure_prints_relocated_registration(
    fake_store: FakeStore, tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str]
) -> None:
    libc, app = add_toolchain(fake_store)
    config = _write_config(tmp_path, fake_store, {"aarch64": [app]})

    rc = main(["closure", "--config", str(config), "--arch", "aarch64", "-q"])

    assert rc == 0
    entries = parse_registration(capsys.readouterr().out)
    names = [e.name for e in entries]
    assert names == [libc.rsplit("/", 1)[1], app.rsplit("/", 1)[1]]
    assert all(e.path.startswith("/data/data/com.termux/files/nix/store/") for e in entries)


def test_closure_reports_unresolved_roots(fake_store: FakeStore, tmp_path: pathlib.Path) -> None:
    _, app = add_toolchain(fake_store)
    config = _write_config(tmp_path, fake_store, {"aarch64": ["/nix/store/zzzz-unknown"]})

    assert main(["closure", "--config", str(config), "--arch", "aarch64", "-q", "-q"]) == 1


def _malformed_registration(tmp_path: pathlib.Path, app: str) -> pathlib.Path:
    path = tmp_path / "broken" / "registration"
    path.parent.mkdir(parents=True)
    path.write_text(f"{app}\nsha256:0\nnot-a-number\n\n0\n")
    return path


def test_build_all_continues_past_malformed_registration(fake_store: FakeStore, tmp_path: pathlib.Path) -> None:
    _, app = add_toolchain(fake_store)
    broken = _malformed_registration(tmp_path, app)
    config = _write_config(tmp_path, fake_store, {"aarch64": [app], "x86_64": [app]}, {"aarch64": broken})

    rc = main(["build", "--config", str(config), "--all", "-q", "-q"])

    assert rc == 1
    assert not (tmp_path / "result" / "nix-termux-aarch64.tar.gz").exists()
    assert (tmp_path / "result" / "nix-termux-x86_64.tar.gz").is_file()


def test_build_all_continues_past_undecodable_registration(fake_store: FakeStore, tmp_path: pathlib.Path) -> None:
    _, app = add_toolchain(fake_store)
    binary = tmp_path / "binary.registration"
    binary.write_bytes(b"\xff\xfe\x00garbage\n")
    config = _write_config(tmp_path, fake_store, {"aarch64": [app], "x86_64": [app]}, {"x86_64": binary})

    rc = main(["build", "--config", str(config), "--all", "-q", "-q"])

    assert rc == 1
    assert (tmp_path / "result" / "nix-termux-aarch64.tar.gz").is_file()
    assert not (tmp_path / "result" / "nix-termux-x86_64.tar.gz").exists()


def test_closure_reports_missing_registration(fake_store: FakeStore, tmp_path: pathlib.Path) -> None:
    _, app = add_toolchain(fake_store)
    config = _write_config(tmp_path, fake_store, {"aarch64": [app]}, {"aarch64": tmp_path / "missing"})

    assert main(["closure", "--config", str(config), "--arch", "aarch64", "-q", "-q"]) == 1


def test_closure_reports_malformed_registration(
    fake_store: FakeStore, tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str]
) -> None:
    _, app = add_toolchain(fake_store)
    broken = _malformed_registration(tmp_path, app)
    config = _write_config(tmp_path, fake_store, {"aarch64": [app]}, {"aarch64": broken})

    assert main(["closure", "--config", str(config), "--arch", "aarch64", "-q", "-q"]) == 1
    assert capsys.readouterr().out == ""
