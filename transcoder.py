#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
图像转码

通过 ImageMagick (`magick`) 将单个图像的原始字节转换为 WebP（最高质量）。
每次调用都是独立、无状态的：在独立的临时会话目录中执行，结束后立即清理。
"""

import asyncio
import logging
import os
import shutil
import uuid

import config

logger = logging.getLogger(__name__)


# --- 1. 单项错误类型 ---

class TranscodeError(Exception):
    """单个图像转换失败。只影响当前项，不会中断整个批次。"""


class DecodeError(TranscodeError):
    """输入字节无法解码为图像（扩展名不符、上传截断或数据损坏）。"""


class EncodeError(TranscodeError):
    """目标格式编码器拒绝了已解码的图像。"""


class TranscodeTimeoutError(TranscodeError):
    """Magick 进程执行超时。"""


class FileTooLargeError(TranscodeError):
    """图像超过 MAX_FILE_SIZE_MB 限制。"""


# --- 2. 辅助函数 ---

def magick_available() -> bool:
    """检查 ImageMagick 可执行文件是否在 PATH 中。"""
    return shutil.which("magick") is not None


def output_name_for(filename: str) -> str:
    """
    计算转换后的文件名：去掉最后一个扩展名，替换为输出格式。

    例如 "photo.final.JPG" -> "photo.final.webp"。
    """
    stem, dot, _ = filename.rpartition(".")
    if not dot:
        stem = filename
    return f"{stem}.{config.OUTPUT_FORMAT}"


def cleanup_temp_dir(temp_dir: str):
    """
    安全地清理临时会话目录。

    Args:
        temp_dir: 要递归删除的目录路径。
    """
    try:
        if os.path.exists(temp_dir):
            logger.debug(f"清理：正在删除临时目录: {temp_dir}")
            shutil.rmtree(temp_dir)
    except Exception as cleanup_error:
        logger.error(f"清理：删除 {temp_dir} 失败: {cleanup_error}", exc_info=True)


async def _run_magick(cmd: list) -> tuple:
    """
    异步执行 Magick 命令，超时则终止进程。

    Returns:
        (returncode, stderr 文本)

    Raises:
        TranscodeTimeoutError: 超过 TIMEOUT_SECONDS。
    """
    logger.debug(f"正在执行命令: {' '.join(cmd)}")
    process = await asyncio.subprocess.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE
    )
    try:
        _, stderr = await asyncio.wait_for(
            process.communicate(),
            timeout=config.TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        _kill(process)
        await process.wait()
        raise TranscodeTimeoutError(f"conversion timed out after {config.TIMEOUT_SECONDS} seconds")
    except asyncio.CancelledError:
        # 批次被取消时不留下孤立的 Magick 进程
        _kill(process)
        raise
    return process.returncode, stderr.decode(errors="replace").strip()


def _kill(process):
    try:
        process.kill()
    except ProcessLookupError:
        pass  # 进程已退出


# --- 3. 核心转换逻辑 ---

async def transcode_image(data: bytes, filename: str) -> bytes:
    """
    将图像字节转换为 WebP，质量固定为最高。

    Args:
        data: 上传的原始字节（声称是图像）。
        filename: 原始文件名，仅用于推断输入扩展名。

    Returns:
        WebP 编码后的字节。

    Raises:
        FileTooLargeError: 输入超过大小限制。
        DecodeError: 输入无法解码。
        EncodeError: 编码失败或未生成输出文件。
        TranscodeTimeoutError: Magick 执行超时。
    """
    size_mb = len(data) / (1024 * 1024)
    if size_mb > config.MAX_FILE_SIZE_MB:
        raise FileTooLargeError(f"file too large ({size_mb:.2f}MB, max {config.MAX_FILE_SIZE_MB}MB)")
    if not data:
        raise DecodeError("file is empty")

    _, dot, extension = filename.rpartition(".")
    extension = extension.lower() if dot else ""

    # 创建唯一的临时工作目录
    temp_dir = os.path.join(config.TEMP_DIR, str(uuid.uuid4()))
    os.makedirs(temp_dir, exist_ok=True)
    input_path = os.path.join(temp_dir, f"input.{extension}" if extension else "input")
    output_path = os.path.join(temp_dir, f"output.{config.OUTPUT_FORMAT}")

    try:
        with open(input_path, "wb") as buffer:
            buffer.write(data)

        # 1. 解码检查
        returncode, stderr = await _run_magick(['magick', 'identify', input_path])
        if returncode != 0:
            raise DecodeError(f"cannot decode image: {stderr[:500]}")

        # 2. 构建编码命令
        cmd = ['magick', input_path]
        # 仅对可能是动画的格式使用 -coalesce
        if extension in config.ANIMATED_EXTENSIONS:
            cmd.append('-coalesce')
        cmd.extend(['-quality', str(config.OUTPUT_QUALITY)])
        cmd.extend(['-define', 'webp:method=6'])
        cmd.append(output_path)

        returncode, stderr = await _run_magick(cmd)
        if returncode != 0:
            raise EncodeError(f"cannot encode {config.OUTPUT_FORMAT}: {stderr[:500]}")
        if not os.path.exists(output_path):
            raise EncodeError("magick succeeded but produced no output file")

        with open(output_path, "rb") as result:
            return result.read()
    finally:
        cleanup_temp_dir(temp_dir)
