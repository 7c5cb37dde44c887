"""Archive detection and extraction dispatch tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from stablectl.archive import ArchiveKind, detect_kind, extract, single_top_level_dir, strip_suffix
from stablectl.errors import InvalidDistributionError
from stablectl.providers.commands import CommandRunner


@pytest.mark.parametrize(
    ("name", "kind"),
    [
        ("mysql-5.6.14-linux-glibc2.5-i686.tar.gz", ArchiveKind.TAR_GZ),
        ("mysql.tgz", ArchiveKind.TAR_GZ),
        ("mysql.tar", ArchiveKind.TAR),
        ("mysql.zip", ArchiveKind.ZIP),
    ],
)
def test_detect_kind_by_suffix(tmp_path: Path, name: str, kind: ArchiveKind) -> None:
    """Archive kinds are recognised from the file name."""
    path = tmp_path / name
    path.write_bytes(b"")

    assert detect_kind(path) is kind


def test_detect_kind_directory(tmp_path: Path) -> None:
    """Directories are linked rather than unpacked, whatever their name."""
    path = tmp_path / "looks-like.tar"
    path.mkdir()

    assert detect_kind(path) is ArchiveKind.DIRECTORY


def test_detect_kind_rejects_unknown(tmp_path: Path) -> None:
    """Unsupported files raise InvalidDistributionError."""
    path = tmp_path / "mysql.rpm"
    path.write_bytes(b"")

    with pytest.raises(InvalidDistributionError):
        detect_kind(path)


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("mysql-5.6.14.tar.gz", "mysql-5.6.14"),
        ("mysql-5.6.14.tgz", "mysql-5.6.14"),
        ("mysql-5.6.14.tar", "mysql-5.6.14"),
        ("mysql-5.6.14.zip", "mysql-5.6.14"),
        ("mysql-5.6.14", "mysql-5.6.14"),
    ],
)
def test_strip_suffix(name: str, expected: str) -> None:
    """Known suffixes are removed, other names are unchanged."""
    assert strip_suffix(name) == expected


def test_extract_dispatches_to_runner(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Each archive kind maps onto the matching runner call."""
    calls: list[tuple[str, ...]] = []
    runner = CommandRunner()

    def fake_tar(self: CommandRunner, archive: Path, dest: Path, *, compressed: bool) -> None:
        calls.append(("tar", archive.name, str(compressed)))

    def fake_zip(self: CommandRunner, archive: Path, dest: Path) -> None:
        calls.append(("zip", archive.name))

    monkeypatch.setattr(CommandRunner, "extract_tar", fake_tar)
    monkeypatch.setattr(CommandRunner, "extract_zip", fake_zip)

    extract(tmp_path / "a.tgz", ArchiveKind.TAR_GZ, tmp_path, runner)
    extract(tmp_path / "b.tar", ArchiveKind.TAR, tmp_path, runner)
    extract(tmp_path / "c.zip", ArchiveKind.ZIP, tmp_path, runner)

    assert calls == [("tar", "a.tgz", "True"), ("tar", "b.tar", "False"), ("zip", "c.zip")]

    with pytest.raises(InvalidDistributionError):
        extract(tmp_path, ArchiveKind.DIRECTORY, tmp_path, runner)


def test_single_top_level_dir(tmp_path: Path) -> None:
    """Only a lone directory entry counts as the archive's top level."""
    (tmp_path / "only").mkdir()
    assert single_top_level_dir(tmp_path) == tmp_path / "only"

    (tmp_path / "README").write_text("x")
    assert single_top_level_dir(tmp_path) is None
