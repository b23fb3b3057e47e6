import errno
import logging
import os
import pathlib
import platform
import subprocess
import sys

import pytest

from conftest import FakeStore, add_toolchain

from nix_relocator import installer
from nix_relocator.builder import build_installer_archive, render_install_script
from nix_relocator.closure import compute_closure
from nix_relocator.installer import (
    ArchitectureMismatch,
    InstallConfig,
    InstallError,
    install,
    normalize_arch,
)
from nix_relocator.target import SUPPORTED_ARCHES, resolve_target_config


def _config(tmp_path: pathlib.Path, arch: str = "aarch64") -> InstallConfig:
    prefix = tmp_path / "nix"
    return InstallConfig(
        arch=arch,
        prefix=str(prefix),
        store_dir=str(prefix / "store"),
        state_dir=str(prefix / "var"),
        conf_dir=str(prefix / "etc"),
    )


def _source(tmp_path: pathlib.Path, names: list[str], *, registration: str | None = "") -> pathlib.Path:
    """Create an extracted archive with one small store path per name."""

    src = tmp_path / "archive"
    for name in names:
        (src / "store" / name / "bin").mkdir(parents=True)
        (src / "store" / name / "bin" / "tool").write_text(name)
    (src / "store").mkdir(parents=True, exist_ok=True)
    if registration is not None:
        (src / "registration").write_text(registration)
    return src


def _install(src: pathlib.Path, config: InstallConfig, **kwargs) -> installer.InstallReport:
    return install(
        source_dir=src,
        config=config,
        logger=logging.getLogger("test"),
        machine="aarch64",
        user="u0_a123",
        **kwargs,
    )


def test_fresh_install(tmp_path: pathlib.Path) -> None:
    config = _config(tmp_path)
    src = _source(tmp_path, ["aaaa-glibc", "bbbb-hello"])

    report = _install(src, config)

    assert report.copied == ["aaaa-glibc", "bbbb-hello"]
    assert report.store_entries == ["aaaa-glibc", "bbbb-hello"]
    assert report.failed == []
    assert (pathlib.Path(config.store_dir) / "bbbb-hello" / "bin" / "tool").read_text() == "bbbb-hello"
    for sub in ("db", "gcroots", "profiles", "temproots"):
        assert (pathlib.Path(config.state_dir) / "nix" / sub).is_dir()


def test_single_path_archive_installs_one_entry(tmp_path: pathlib.Path) -> None:
    config = _config(tmp_path)

    report = _install(_source(tmp_path, ["aaaa-hello"]), config)

    assert report.store_entries == ["aaaa-hello"]


def test_install_is_idempotent(tmp_path: pathlib.Path) -> None:
    config = _config(tmp_path)
    src = _source(tmp_path, ["aaaa-glibc", "bbbb-hello"])
    _install(src, config)
    marker = pathlib.Path(config.store_dir) / "aaaa-glibc" / "bin" / "tool"
    marker.write_text("modified after install")

    report = _install(src, config)

    assert report.copied == []
    assert report.skipped == ["aaaa-glibc", "bbbb-hello"]
    assert report.store_entries == ["aaaa-glibc", "bbbb-hello"]
    # Existing destination entries are never overwritten.
    assert marker.read_text() == "modified after install"


def test_architecture_mismatch_aborts_before_writing(tmp_path: pathlib.Path) -> None:
    config = _config(tmp_path, arch="armv7l")
    src = _source(tmp_path, ["aaaa-hello"])

    with pytest.raises(ArchitectureMismatch, match="armv7l"):
        _install(src, config)

    assert not pathlib.Path(config.prefix).exists()


def test_missing_store_directory(tmp_path: pathlib.Path) -> None:
    with pytest.raises(InstallError, match="no store directory"):
        _install(tmp_path / "empty", _config(tmp_path))


def test_missing_import_tool_is_a_warning(tmp_path: pathlib.Path) -> None:
    report = _install(_source(tmp_path, ["aaaa-hello"]), _config(tmp_path))

    assert report.database_imported is False
    assert any("nix-store" in w for w in report.warnings)


def test_missing_registration_is_a_warning(tmp_path: pathlib.Path) -> None:
    report = _install(_source(tmp_path, ["aaaa-hello"], registration=None), _config(tmp_path))

    assert report.database_imported is False
    assert any("No registration" in w for w in report.warnings)


def _add_nix_store_tool(src: pathlib.Path, body: str) -> None:
    tool = src / "store" / "cccc-nix-2.31.0" / "bin" / "nix-store"
    tool.parent.mkdir(parents=True, exist_ok=True)
    tool.write_text("#!/bin/sh\n" + body)
    tool.chmod(0o755)


def test_database_import_uses_relocated_environment(tmp_path: pathlib.Path) -> None:
    config = _config(tmp_path)
    registration = "/x/store/aaaa-hello\nsha256:0\n1\n\n0\n"
    src = _source(tmp_path, ["aaaa-hello"], registration=registration)
    _add_nix_store_tool(
        src,
        'test "$1" = "--load-db" || exit 9\n'
        'cat > "$NIX_STATE_DIR/loaded"\n'
        'echo "$NIX_STORE_DIR $NIX_CONF_DIR" > "$NIX_STATE_DIR/env"\n',
    )

    report = _install(src, config)

    state = pathlib.Path(config.state_dir)
    assert report.database_imported is True
    assert (state / "loaded").read_text() == registration
    assert (state / "env").read_text().split() == [config.store_dir, config.conf_dir]


def test_failed_database_import_is_fatal(tmp_path: pathlib.Path) -> None:
    src = _source(tmp_path, ["aaaa-hello"])
    _add_nix_store_tool(src, "echo 'database is locked' >&2\nexit 3\n")

    with pytest.raises(InstallError, match="database is locked"):
        _install(src, _config(tmp_path))


def test_profile_link_and_nix_conf(tmp_path: pathlib.Path) -> None:
    config = _config(tmp_path)

    report = _install(_source(tmp_path, ["aaaa-hello"]), config)

    profiles = pathlib.Path(config.state_dir) / "nix" / "profiles"
    assert report.profile_linked is True
    assert os.readlink(profiles / "default") == str(profiles / "per-user" / "u0_a123" / "profile")
    conf = (pathlib.Path(config.conf_dir) / "nix" / "nix.conf").read_text()
    assert "sandbox = false" in conf
    assert f"store = {config.store_dir}" in conf


def test_transient_copy_errors_are_retried(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch) -> None:
    real_copy = installer._copy_path_atomic
    failures = {"bbbb-hello": 2}

    def flaky_copy(*, src: pathlib.Path, dest: pathlib.Path) -> None:
        if failures.get(src.name, 0) > 0:
            failures[src.name] -= 1
            raise OSError(errno.EIO, "I/O error")
        real_copy(src=src, dest=dest)

    monkeypatch.setattr(installer, "_copy_path_atomic", flaky_copy)
    delays: list[float] = []

    report = _install(_source(tmp_path, ["aaaa-glibc", "bbbb-hello"]), _config(tmp_path), sleep=delays.append)

    assert report.copied == ["aaaa-glibc", "bbbb-hello"]
    assert delays == [0.5, 1.0]


def test_copy_failures_are_reported_and_retried_on_rerun(
    tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config = _config(tmp_path)
    src = _source(tmp_path, ["aaaa-glibc", "bbbb-hello"])
    real_copy = installer._copy_path_atomic

    def failing_copy(*, src: pathlib.Path, dest: pathlib.Path) -> None:
        if src.name == "aaaa-glibc":
            raise OSError(errno.ENOSPC, "No space left on device")
        real_copy(src=src, dest=dest)

    monkeypatch.setattr(installer, "_copy_path_atomic", failing_copy)
    first = _install(src, config)

    assert first.copied == ["bbbb-hello"]
    assert [name for name, _ in first.failed] == ["aaaa-glibc"]
    assert first.store_entries == ["bbbb-hello"]

    monkeypatch.setattr(installer, "_copy_path_atomic", real_copy)
    second = _install(src, config)

    assert second.copied == ["aaaa-glibc"]
    assert second.store_entries == ["aaaa-glibc", "bbbb-hello"]


def test_interrupted_copy_leaves_no_entry(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch) -> None:
    src = tmp_path / "src"
    (src / "sub").mkdir(parents=True)
    (src / "sub" / "f").write_text("x")
    dest_dir = tmp_path / "store"
    dest_dir.mkdir()

    def failing_rename(a, b) -> None:
        raise OSError(errno.EIO, "I/O error")

    monkeypatch.setattr(installer.os, "rename", failing_rename)
    with pytest.raises(OSError):
        installer._copy_path_atomic(src=src, dest=dest_dir / "aaaa-x")
    monkeypatch.undo()

    assert list(dest_dir.iterdir()) == []


def test_config_json_round_trip_and_errors() -> None:
    config = InstallConfig(arch="aarch64", prefix="/p", store_dir="/p/store", state_dir="/p/var", conf_dir="/p/etc")

    assert InstallConfig.from_json(config.to_json()) == config
    with pytest.raises(InstallError, match="not valid JSON"):
        InstallConfig.from_json("{")
    with pytest.raises(InstallError, match="store_dir"):
        InstallConfig.from_json('{"arch": "aarch64", "prefix": "/p"}')


def test_main_requires_a_configuration(tmp_path: pathlib.Path) -> None:
    with pytest.raises(SystemExit) as exc:
        installer.main(["--source-dir", str(tmp_path), "-q"])

    assert exc.value.code == 2


def test_main_reports_architecture_mismatch(tmp_path: pathlib.Path) -> None:
    host = normalize_arch(platform.machine())
    other = "armv7l" if host != "armv7l" else "x86_64"
    config_path = tmp_path / "config.json"
    config_path.write_text(_config(tmp_path, arch=other).to_json())

    rc = installer.main(["--source-dir", str(_source(tmp_path, ["aaaa-hello"])), "--config", str(config_path), "-q", "-q"])

    assert rc == 1


def test_rendered_install_script_runs(fake_store: FakeStore, tmp_path: pathlib.Path) -> None:
    """Build an archive for this host, then run its ``install`` script as a user would."""

    host = normalize_arch(platform.machine())
    if host not in SUPPORTED_ARCHES:
        pytest.skip(f"unsupported host architecture {host}")
    target = resolve_target_config(arch=host, prefix=str(tmp_path / "device" / "nix"))
    _, app = add_toolchain(fake_store)
    store = fake_store.store()
    result = build_installer_archive(
        closure=compute_closure([app], store),
        store=store,
        target=target,
        output_dir=tmp_path / "out",
    )
    extract = tmp_path / "extract"
    extract.mkdir()
    subprocess.run(["tar", "-xzf", str(result.archive_path), "-C", str(extract)], check=True)

    proc = subprocess.run([sys.executable, str(extract / "install")], capture_output=True, text=True)

    assert proc.returncode == 0, proc.stderr
    assert sorted(p.name for p in pathlib.Path(target.store_dir).iterdir()) == sorted(
        p.name for p in (extract / "store").iterdir()
    )
    assert f'export NIX_STORE_DIR="{target.store_dir}"' in proc.stderr
    assert (pathlib.Path(target.conf_dir) / "nix" / "nix.conf").is_file()
    assert render_install_script(target) == (extract / "install").read_text()


def test_termux_prefix_without_termux_is_a_warning(tmp_path: pathlib.Path) -> None:
    prefix = "/data/data/com.termux/files/nix"
    config = InstallConfig(
        arch="aarch64", prefix=prefix, store_dir=f"{prefix}/store", state_dir=f"{prefix}/var", conf_dir=f"{prefix}/etc"
    )
    report = installer.InstallReport()

    installer._check_termux_prefix(
        config=config, termux_usr=tmp_path / "usr", report=report, logger=logging.getLogger("test")
    )
    assert any("Termux" in w for w in report.warnings)

    (tmp_path / "usr").mkdir()
    quiet = installer.InstallReport()
    installer._check_termux_prefix(
        config=config, termux_usr=tmp_path / "usr", report=quiet, logger=logging.getLogger("test")
    )
    assert quiet.warnings == []


def test_other_prefixes_skip_the_termux_check(tmp_path: pathlib.Path) -> None:
    report = _install(_source(tmp_path, ["aaaa-hello"]), _config(tmp_path), termux_usr=tmp_path / "missing")

    assert not any("Termux" in w for w in report.warnings)


def test_next_steps_list_environment(tmp_path: pathlib.Path, caplog: pytest.LogCaptureFixture) -> None:
    config = _config(tmp_path)
    bundle = pathlib.Path(config.store_dir) / "dddd-nss-cacert-3.101" / "etc" / "ssl" / "certs" / "ca-bundle.crt"
    bundle.parent.mkdir(parents=True)
    bundle.write_text("-----BEGIN CERTIFICATE-----\n")
    caplog.set_level(logging.INFO, logger="test")

    installer._log_next_steps(config, logging.getLogger("test"))

    assert f'export NIX_SSL_CERT_FILE="{bundle}"' in caplog.text
    assert f'export MANPATH="{config.state_dir}/nix/profiles/default/share/man:$MANPATH"' in caplog.text


def test_next_steps_without_cacert(tmp_path: pathlib.Path, caplog: pytest.LogCaptureFixture) -> None:
    config = _config(tmp_path)
    pathlib.Path(config.store_dir).mkdir(parents=True)
    caplog.set_level(logging.INFO, logger="test")

    installer._log_next_steps(config, logging.getLogger("test"))

    assert "NIX_SSL_CERT_FILE" not in caplog.text
    assert f'export NIX_STORE_DIR="{config.store_dir}"' in caplog.text
