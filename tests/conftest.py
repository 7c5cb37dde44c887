"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import tarfile
import zipfile
from collections.abc import Callable
from pathlib import Path

import pytest

from stablectl.distribution import REQUIRED_FILES
from stablectl.stable import Stable

# Stand-in for mysqld: answers --version, consumes the bootstrap script and,
# when started as a daemon, writes its PID file and removes it on SIGTERM.
STUB_MYSQLD = """#!/bin/sh
defaults=""
for arg in "$@"; do
  case "$arg" in
    --version)
      echo "$0  Ver {version} for linux-glibc2.5 on x86_64 (MySQL Community Server (GPL))"
      exit 0
      ;;
    --defaults-file=*)
      defaults="${{arg#--defaults-file=}}"
      ;;
    --bootstrap)
      if [ -n "$STUB_MYSQLD_FAIL_BOOTSTRAP" ]; then
        echo "bootstrap failed" >&2
        exit 1
      fi
      lines=$(wc -l)
      echo "bootstrap read $lines lines"
      exit 0
      ;;
  esac
done
pid_file=$(sed -n 's/^pid_file = //p' "$defaults")
echo $$ > "$pid_file"
trap 'rm -f "$pid_file"; exit 0' TERM
sleep 10 &
wait $!
rm -f "$pid_file"
"""

STUB_CLIENT = """#!/bin/sh
echo "client $*"
"""

VERSION_HEADER = """/* Copyright Abandoned 1996, 1999, 2001 MySQL AB */
#ifndef _mysql_version_h
#define _mysql_version_h
#define PROTOCOL_VERSION		10
#define MYSQL_SERVER_VERSION		"{version}"
#define MYSQL_BASE_VERSION		"mysqld-5.6"
#define MYSQL_PORT			{port}
#define MYSQL_UNIX_ADDR			"/tmp/mysql.sock"
#endif
"""

DistFactory = Callable[..., Path]


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def _write_executable(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    path.chmod(0o755)


@pytest.fixture
def make_distribution(tmp_path: Path) -> DistFactory:
    """Return a factory that lays out a fake binary distribution directory."""

    def _factory(
        name: str = "mysql-5.6.14",
        *,
        version: str = "5.6.14",
        port: str = "3306",
        parent: Path | None = None,
    ) -> Path:
        root = (parent or tmp_path / "sources") / name
        for relative in REQUIRED_FILES:
            path = root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            if relative.endswith(".sql"):
                path.write_text(f"-- {Path(relative).name}\nSELECT 1;\n", encoding="utf-8")
        (root / "include" / "mysql_version.h").write_text(
            VERSION_HEADER.format(version=version, port=port), encoding="utf-8"
        )
        (root / "share" / "english").mkdir(exist_ok=True)
        _write_executable(root / "bin" / "mysqld", STUB_MYSQLD.format(version=version))
        _write_executable(root / "bin" / "mysql", STUB_CLIENT)
        return root

    return _factory


@pytest.fixture
def dist_dir(make_distribution: DistFactory) -> Path:
    """An unpacked distribution directory."""
    return make_distribution()


@pytest.fixture
def dist_tarball(make_distribution: DistFactory, tmp_path: Path) -> Path:
    """A ``.tar.gz`` archive with a single top-level distribution directory."""
    root = make_distribution(parent=tmp_path / "tar-src")
    archive = tmp_path / "mysql-5.6.14-linux-x86_64.tar.gz"
    with tarfile.open(archive, "w:gz") as handle:
        handle.add(root, arcname=root.name)
    return archive


def _zip_tree(root: Path, archive: Path, *, prefix: str) -> Path:
    """Zip *root* below *prefix*, keeping the executable bits."""
    with zipfile.ZipFile(archive, "w") as handle:
        for path in sorted(root.rglob("*")):
            relative = path.relative_to(root).as_posix()
            handle.write(path, arcname=f"{prefix}{relative}")
    return archive


@pytest.fixture
def dist_tar(make_distribution: DistFactory, tmp_path: Path) -> Path:
    """An uncompressed ``.tar`` archive with a single top-level directory."""
    root = make_distribution(parent=tmp_path / "plain-tar-src")
    archive = tmp_path / "mysql-5.6.14-linux-x86_64.tar"
    with tarfile.open(archive, "w") as handle:
        handle.add(root, arcname=root.name)
    return archive


@pytest.fixture
def dist_zip(make_distribution: DistFactory, tmp_path: Path) -> Path:
    """A ``.zip`` archive with a single top-level distribution directory."""
    root = make_distribution(parent=tmp_path / "zip-src")
    return _zip_tree(root, tmp_path / "mysql-5.6.14-winx64.zip", prefix=f"{root.name}/")


@pytest.fixture
def dist_zip_flat(make_distribution: DistFactory, tmp_path: Path) -> Path:
    """A ``.zip`` archive holding the distribution files at its top level."""
    root = make_distribution(parent=tmp_path / "flat-zip-src")
    return _zip_tree(root, tmp_path / "custom-build.zip", prefix="")


@pytest.fixture
def stable(tmp_path: Path) -> Stable:
    """A freshly created, empty stable."""
    location = tmp_path / "work"
    location.mkdir()
    return Stable.create(location)
