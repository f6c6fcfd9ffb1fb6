"""Unit tests for ZIP packaging."""

from __future__ import annotations

import io
import zipfile

import pytest

import archiver
from archiver import ArchiveError, archive_path, build_archive
from pipeline import ConversionRecord


def _record(folder: str, output_name: str, payload: bytes) -> ConversionRecord:
    return ConversionRecord(
        original_name=output_name.replace(".webp", ".png"),
        folder=folder,
        converted_bytes=payload,
        output_name=output_name,
        mime_type="image/webp",
    )


def test_archive_path_has_no_leading_separator_at_root() -> None:
    assert archive_path("", "a.webp") == "a.webp"
    assert archive_path("x/y", "a.webp") == "x/y/a.webp"


def test_build_archive_preserves_order_paths_and_content() -> None:
    records = [
        _record("", "cover.webp", b"cover"),
        _record("2024/jan", "a.webp", b"a" * 1000),
        _record("2024/jan", "b.webp", b"b"),
    ]

    payload = build_archive(records)

    with zipfile.ZipFile(io.BytesIO(payload)) as zf:
        assert zf.namelist() == ["cover.webp", "2024/jan/a.webp", "2024/jan/b.webp"]
        assert zf.read("2024/jan/a.webp") == b"a" * 1000
        assert all(info.compress_type == zipfile.ZIP_DEFLATED for info in zf.infolist())
        assert zf.testzip() is None


def test_build_archive_wraps_write_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    def failing_writestr(self: zipfile.ZipFile, *args: object, **kwargs: object) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(archiver.zipfile.ZipFile, "writestr", failing_writestr)

    with pytest.raises(ArchiveError, match="disk full"):
        build_archive([_record("", "a.webp", b"a")])
