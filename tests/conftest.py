"""Shared fixtures: stub transcoders and ImageMagick-generated sample images."""

from __future__ import annotations

import shutil
import subprocess
import uuid
from pathlib import Path
from typing import Callable

import pytest

from transcoder import DecodeError

requires_magick = pytest.mark.skipif(
    shutil.which("magick") is None, reason="ImageMagick (magick) is not installed"
)


async def fake_transcode(data: bytes, filename: str) -> bytes:
    """Stand-in transcoder: payloads starting with b"corrupt" fail to decode."""
    if data.startswith(b"corrupt"):
        raise DecodeError("cannot decode image: improper image header")
    return b"WEBP:" + data


@pytest.fixture
def make_image(tmp_path: Path) -> Callable[..., bytes]:
    """Render a solid-colour image with ImageMagick and return its bytes."""
    if shutil.which("magick") is None:
        pytest.skip("ImageMagick (magick) is not installed")

    def _make(fmt: str = "png", color: str = "blue", size: str = "16x16") -> bytes:
        path = tmp_path / f"{uuid.uuid4().hex}.{fmt}"
        subprocess.run(["magick", "-size", size, f"xc:{color}", str(path)], check=True)
        return path.read_bytes()

    return _make
