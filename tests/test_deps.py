"""Aptfile parsing and apt-get sequencing inside the sandbox."""

import pathlib

from rpack.deps import install_from_manifest, install_system_packages, read_manifest
from rpack.sandbox import Sandbox


def test_read_manifest_keeps_order_and_duplicates(tmp_path: pathlib.Path):
    manifest = tmp_path / "Aptfile"
    manifest.write_text("libxml2-dev\n\n  libcurl4-openssl-dev   # for curl\nlibxml2-dev\r\ngdal-bin")
    assert read_manifest(manifest) == ["libxml2-dev", "libcurl4-openssl-dev", "libxml2-dev", "gdal-bin"]


def test_empty_manifest(tmp_path: pathlib.Path):
    manifest = tmp_path / "Aptfile"
    manifest.write_text("\n \n")
    assert read_manifest(manifest) == []


def test_install_sequence(tmp_path: pathlib.Path, fake_runner, logger):
    runner = fake_runner()
    sandbox = Sandbox(tmp_path / ".root", {}, runner=runner)
    packages = ["b-pkg", "a-pkg", "b-pkg", "c-pkg"]

    result = install_system_packages(sandbox, packages, logger)

    assert result.ok is True
    inner = runner.inner()
    assert inner[0] == ["apt-get", "-q", "update"]
    installs = [c for c in inner if "install" in c]
    assert len(installs) == 1
    assert installs[0][-4:] == packages
    assert inner[2] == ["apt-get", "clean"]
    assert inner[3] == ["/bin/sh", "-c", "rm -rf /var/lib/apt/lists/*"]
    assert all(c[0:4] == ["fakechroot", "fakeroot", "chroot", str(tmp_path / ".root")] for c in runner.calls)


def test_refresh_failure_stops_before_install(tmp_path: pathlib.Path, fake_runner, logger):
    runner = fake_runner(fail_on="update")
    result = install_system_packages(Sandbox(tmp_path, {}, runner=runner), ["x"], logger)
    assert result.ok is False
    assert "E: update failed" in result.diagnostics
    assert len(runner.calls) == 1


def test_install_failure_skips_cleanup(tmp_path: pathlib.Path, fake_runner, logger):
    runner = fake_runner(fail_on="install")
    result = install_system_packages(Sandbox(tmp_path, {}, runner=runner), ["x"], logger)
    assert result.ok is False
    assert "exit=100" in result.diagnostics
    assert len(runner.calls) == 2


def test_cleanup_failures_are_ignored(tmp_path: pathlib.Path, fake_runner, logger):
    runner = fake_runner(fail_on="clean")
    result = install_system_packages(Sandbox(tmp_path, {}, runner=runner), ["x"], logger)
    assert result.ok is True
    assert len(runner.calls) == 4


def test_no_packages_runs_nothing(tmp_path: pathlib.Path, fake_runner, logger):
    runner = fake_runner()
    (tmp_path / "Aptfile").write_text("\n")
    result = install_from_manifest(Sandbox(tmp_path, {}, runner=runner), tmp_path, logger)
    assert result.ok is True
    assert runner.calls == []
