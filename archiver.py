#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
ZIP 打包

将所有转换成功的图像写入一个内存中的 ZIP 包，保留原始的文件夹层级。
"""

import io
import logging
import zipfile

import config

logger = logging.getLogger(__name__)


class ArchiveError(Exception):
    """ZIP 写入或封包失败。影响整个请求，而非单个文件。"""


def archive_path(folder: str, output_name: str) -> str:
    """ZIP 内部路径：folder/output_name，根目录下的文件不带前导分隔符。"""
    return f"{folder}/{output_name}" if folder else output_name


def build_archive(records) -> bytes:
    """
    按给定顺序将转换记录写入 ZIP（DEFLATE，最高压缩级别）。

    Args:
        records: 已排序的 ConversionRecord 序列。

    Returns:
        完整的 ZIP 字节。

    Raises:
        ArchiveError: 写入或封包过程中出现任何错误。
    """
    buffer = io.BytesIO()
    try:
        with zipfile.ZipFile(
            buffer, "w",
            compression=zipfile.ZIP_DEFLATED,
            compresslevel=config.ZIP_COMPRESSION_LEVEL
        ) as zf:
            for record in records:
                zf.writestr(archive_path(record.folder, record.output_name), record.converted_bytes)
    except (OSError, ValueError, zipfile.LargeZipFile) as e:
        raise ArchiveError(f"failed to build archive: {e}") from e

    payload = buffer.getvalue()
    logger.info(f"ZIP 打包完成: {len(records)} 个文件, {len(payload)} 字节")
    return payload
